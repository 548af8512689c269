"""Shared test fixtures for gut tests."""
import subprocess
from pathlib import Path

import pytest

from gut.core.delta_store import DeltaStore, FileClass, new_template_record
from gut.core.generator import Generator
from gut.core.patterns import PatternRule
from gut.core.session import SessionStore
from gut.services.git_store import GitStore


class Repo:
    """A scratch git repository driven the way a user would drive it."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.store = GitStore(self.path)

    def git(self, *args) -> str:
        result = subprocess.run(
            ["git", *args], cwd=self.path, check=True, capture_output=True, text=True
        )
        return result.stdout

    def write(self, rel: str, text: str) -> Path:
        target = self.path / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text)
        return target

    def read(self, rel: str) -> str:
        return (self.path / rel).read_text()

    def head(self) -> str:
        return self.git("rev-parse", "HEAD").strip()

    def commit(self, message: str = "change") -> str:
        self.git("add", "-A")
        self.git("commit", "--quiet", "-m", message)
        return self.head()

    def status(self) -> str:
        return self.git("status", "--porcelain", "--untracked-files=all")

    @property
    def deltas(self) -> DeltaStore:
        return DeltaStore(self.path)

    @property
    def sessions(self) -> SessionStore:
        return SessionStore.for_git_dir(self.store.git_dir())

    def record(self):
        return self.deltas.load()


class TemplateRepo(Repo):
    def publish(self, message: str = "template change") -> str:
        """Commit pending changes and publish that commit as the next version."""
        revision = self.commit(message)
        record = self.deltas.load()
        record.bump_version(revision)
        self.deltas.save(record)
        self.commit("Bump template version")
        return revision


@pytest.fixture(autouse=True)
def isolated_git(tmp_path, monkeypatch):
    """Give git a fixed identity and keep user config out of the tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Gut Tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Gut Tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@example.com")
    for name in ("GUT_CONFIG", "GUT_ROOT", "GUT_ORGANISATION", "GUT_TEMPLATE_CACHE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def template_repo(tmp_path):
    """A published template: rev 1 with one placeholder pattern.

    Layout:
        README.md, VERSION, src/__PROJECT__/main.py   required
        extra/optional.txt                           optional
        notes.txt                                    ignored
    """
    repo = TemplateRepo(tmp_path / "template")
    repo.path.mkdir()
    repo.git("init", "--quiet", "--initial-branch=main")

    repo.write("README.md", "# __PROJECT__\n\nGenerated service.\n")
    repo.write("VERSION", "1\n")
    repo.write("src/__PROJECT__/main.py", "def main():\n    print('__PROJECT__')\n")
    repo.write("extra/optional.txt", "optional __PROJECT__ extras\n")
    repo.write("notes.txt", "template maintainer notes\n")

    record = new_template_record("service-template")
    record.add_pattern(PatternRule.placeholder("__PROJECT__"))
    record.classify("extra/", FileClass.OPTIONAL)
    record.classify("notes.txt", FileClass.IGNORED)
    repo.deltas.save(record)

    revision = repo.commit("Initial template")
    record = repo.deltas.load()
    record.bump_version(revision)
    repo.deltas.save(record)
    repo.commit("Bump template version")
    return repo


@pytest.fixture
def generated_repo(template_repo, tmp_path):
    """A repository generated from ``template_repo`` with __PROJECT__=billing."""
    target = tmp_path / "billing"
    Generator(template_repo.store, template_repo.record(), str(template_repo.path)).generate(
        target, {"__PROJECT__": "billing"}
    )
    return Repo(target)

"""CLI tests using typer's CliRunner."""
import shutil
import subprocess

import pytest
import yaml
from typer.testing import CliRunner

from gut.cli import app
from gut.core.delta_store import DeltaStore, FileClass
from gut.core.session import ApplyState

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

runner = CliRunner()


def gut(tmp_path, *args):
    return runner.invoke(app, ["--config", str(tmp_path / "app.yml"), *args])


class TestHelp:
    def test_main_help(self):
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "template" in result.stdout
        assert "generate-repo" in result.stdout
        assert "config" in result.stdout

    def test_template_help(self):
        result = runner.invoke(app, ["template", "--help"])

        assert result.exit_code == 0
        for command in ("init", "bump-version", "add", "pattern", "apply", "install", "refresh", "status"):
            assert command in result.stdout


class TestTemplateAuthoring:
    """Turning a plain repository into a published template."""

    @pytest.fixture
    def plain_repo(self, tmp_path):
        repo = tmp_path / "tpl"
        repo.mkdir()
        subprocess.run(["git", "init", "--quiet", "--initial-branch=main"], cwd=repo, check=True)
        (repo / "README.md").write_text("# __NAME__\n")
        (repo / "notes.txt").write_text("internal\n")
        subprocess.run(["git", "add", "-A"], cwd=repo, check=True)
        subprocess.run(["git", "commit", "--quiet", "-m", "Initial"], cwd=repo, check=True)
        return repo

    def test_init_classify_and_publish(self, tmp_path, plain_repo):
        path = str(plain_repo)

        assert gut(tmp_path, "template", "init", "-C", path, "--name", "svc").exit_code == 0
        assert gut(tmp_path, "template", "pattern", "add", "__NAME__", "-C", path).exit_code == 0
        assert gut(tmp_path, "template", "add", "notes.txt", "--ignore", "-C", path).exit_code == 0

        result = gut(tmp_path, "template", "bump-version", "-C", path)
        assert result.exit_code == 0, result.output
        assert "rev 1" in result.output

        head = subprocess.run(
            ["git", "rev-parse", "HEAD"], cwd=plain_repo, check=True, capture_output=True, text=True
        ).stdout.strip()
        record = DeltaStore(plain_repo).load()
        assert record.name == "svc"
        assert record.rev_id == 1
        assert record.revision_anchor == head
        assert record.files == {"notes.txt": FileClass.IGNORED}
        assert record.patterns[0].replace == "${__NAME__}"

    def test_init_twice_needs_force(self, tmp_path, plain_repo):
        path = str(plain_repo)
        gut(tmp_path, "template", "init", "-C", path)

        result = gut(tmp_path, "template", "init", "-C", path)
        assert result.exit_code == 1
        assert "already exists" in result.output
        assert gut(tmp_path, "template", "init", "-C", path, "--force").exit_code == 0

    def test_bump_version_refuses_dirty_tree(self, tmp_path, plain_repo):
        path = str(plain_repo)
        gut(tmp_path, "template", "init", "-C", path)
        (plain_repo / "README.md").write_text("uncommitted\n")

        result = gut(tmp_path, "template", "bump-version", "-C", path)
        assert result.exit_code == 1
        assert "README.md" in result.output

    def test_add_flags_are_exclusive(self, tmp_path, plain_repo):
        result = gut(tmp_path, "template", "add", "x", "--optional", "--ignore", "-C", str(plain_repo))
        assert result.exit_code == 1


class TestGenerateRepo:
    def test_generate(self, tmp_path, template_repo):
        target = tmp_path / "out"
        result = gut(
            tmp_path, "generate-repo", str(template_repo.path),
            "-d", str(target), "-r", "__PROJECT__=orders", "--no-input",
        )

        assert result.exit_code == 0, result.output
        assert (target / "src" / "orders" / "main.py").exists()
        assert DeltaStore(target).load().replacements == {"__PROJECT__": "orders"}

    def test_missing_replacement_without_prompt(self, tmp_path, template_repo):
        result = gut(tmp_path, "generate-repo", str(template_repo.path), "-d", str(tmp_path / "out"), "--no-input")

        assert result.exit_code == 1
        assert "__PROJECT__" in result.output
        assert not (tmp_path / "out").exists()

    def test_prompts_for_missing_values(self, tmp_path, template_repo):
        target = tmp_path / "out"
        result = runner.invoke(
            app,
            ["--config", str(tmp_path / "app.yml"), "generate-repo", str(template_repo.path), "-d", str(target)],
            input="shipping\n",
        )

        assert result.exit_code == 0, result.output
        assert (target / "src" / "shipping" / "main.py").exists()

    def test_unknown_template(self, tmp_path):
        result = gut(tmp_path, "generate-repo", "no-such-template", "-d", str(tmp_path / "out"))
        assert result.exit_code == 1
        assert "not found" in result.output


class TestApply:
    """Exit codes and output of template apply."""

    def test_up_to_date(self, tmp_path, generated_repo):
        result = gut(tmp_path, "template", "apply", "-C", str(generated_repo.path))

        assert result.exit_code == 0
        assert "up to date" in result.output

    def test_clean_apply_then_continue(self, tmp_path, template_repo, generated_repo):
        template_repo.write("VERSION", "2\n")
        template_repo.publish()
        path = str(generated_repo.path)

        result = gut(tmp_path, "template", "apply", "-C", path)
        assert result.exit_code == 0, result.output
        assert "--continue" in result.output

        generated_repo.commit("Apply template rev 2")
        result = gut(tmp_path, "template", "apply", "--continue", "-C", path)
        assert result.exit_code == 0, result.output
        assert generated_repo.record().rev_id == 2

    def test_conflict_exit_code_and_abort(self, tmp_path, template_repo, generated_repo):
        generated_repo.write("VERSION", "1-local\n")
        generated_repo.commit("Local")
        template_repo.write("VERSION", "2\n")
        template_repo.publish()
        path = str(generated_repo.path)

        result = gut(tmp_path, "template", "apply", "-C", path)
        assert result.exit_code == 3
        assert "VERSION" in result.output
        assert "Rejected hunk" in result.output

        result = gut(tmp_path, "template", "apply", "-C", path)
        assert result.exit_code == 1
        assert "already in progress" in result.output

        result = gut(tmp_path, "template", "apply", "--abort", "-C", path)
        assert result.exit_code == 0
        assert generated_repo.read("VERSION") == "1-local\n"

    def test_conflict_exit_code_is_configurable(self, tmp_path, template_repo, generated_repo):
        (tmp_path / "app.yml").write_text("conflict_exit_code: 9\n")
        generated_repo.write("VERSION", "1-local\n")
        generated_repo.commit("Local")
        template_repo.write("VERSION", "2\n")
        template_repo.publish()

        result = gut(tmp_path, "template", "apply", "-C", str(generated_repo.path))
        assert result.exit_code == 9

    def test_continue_and_abort_exclusive(self, tmp_path, generated_repo):
        result = gut(tmp_path, "template", "apply", "--continue", "--abort", "-C", str(generated_repo.path))
        assert result.exit_code == 1

    def test_dirty_tree(self, tmp_path, generated_repo):
        generated_repo.write("README.md", "edit\n")
        result = gut(tmp_path, "template", "apply", "-C", str(generated_repo.path))

        assert result.exit_code == 1
        assert "uncommitted changes" in result.output

    def test_relative_template_ref_found_from_inside_repo(self, tmp_path, template_repo, monkeypatch):
        work = tmp_path / "work"
        work.mkdir()
        monkeypatch.chdir(work)
        result = gut(tmp_path, "generate-repo", "../template", "-d", "app", "-r", "__PROJECT__=app", "--no-input")
        assert result.exit_code == 0, result.output
        assert DeltaStore(work / "app").load().template_origin == str(template_repo.path.resolve())

        template_repo.write("VERSION", "2\n")
        template_repo.publish()
        monkeypatch.chdir(work / "app" / "src")

        result = gut(tmp_path, "template", "apply")
        assert result.exit_code == 0, result.output
        assert (work / "app" / "VERSION").read_text() == "2\n"

    def test_uncommitted_template_classification_is_not_published(self, tmp_path, template_repo, generated_repo):
        template_repo.write("VERSION", "2\n")
        template_repo.publish()
        assert gut(tmp_path, "template", "add", "VERSION", "--ignore", "-C", str(template_repo.path)).exit_code == 0

        result = gut(tmp_path, "template", "apply", "-C", str(generated_repo.path))

        assert result.exit_code == 0, result.output
        assert generated_repo.read("VERSION") == "2\n"
        assert generated_repo.sessions.load().state == ApplyState.PATCHED

    def test_dirty_tree_reported_before_template_lookup(self, tmp_path, generated_repo):
        record = generated_repo.record()
        record.template_origin = str(tmp_path / "moved-away")
        generated_repo.deltas.save(record)
        generated_repo.commit("Template moved")
        generated_repo.write("README.md", "edit\n")

        result = gut(tmp_path, "template", "apply", "-C", str(generated_repo.path))

        assert result.exit_code == 1
        assert "uncommitted changes" in result.output
        assert "not found" not in result.output


class TestRecordCommands:
    def test_status(self, tmp_path, generated_repo):
        result = gut(tmp_path, "template", "status", "-C", str(generated_repo.path))

        assert result.exit_code == 0
        assert "generated" in result.output
        assert "No apply in progress" in result.output

    def test_status_outside_repository(self, tmp_path):
        outside = tmp_path / "not-a-repo"
        outside.mkdir()
        result = gut(tmp_path, "template", "status", "-C", str(outside))

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_replacements(self, tmp_path, generated_repo):
        path = str(generated_repo.path)

        assert gut(tmp_path, "template", "replacement", "set", "owner", "team-a", "-C", path).exit_code == 0
        result = gut(tmp_path, "template", "replacement", "list", "-C", path)
        assert "owner = team-a" in result.output

        assert gut(tmp_path, "template", "replacement", "remove", "owner", "-C", path).exit_code == 0
        assert "owner" not in generated_repo.record().replacements

    def test_refresh_dry_run(self, tmp_path, generated_repo):
        generated_repo.write("docs.md", "__PROJECT__\n")
        generated_repo.commit("Docs")

        result = gut(tmp_path, "template", "refresh", "--dry-run", "-C", str(generated_repo.path))

        assert result.exit_code == 0
        assert "docs.md" in result.output
        assert generated_repo.read("docs.md") == "__PROJECT__\n"


class TestConfigCommands:
    def test_set_organisation_and_show(self, tmp_path):
        result = gut(tmp_path, "config", "set-organisation", "acme")
        assert result.exit_code == 0

        data = yaml.safe_load((tmp_path / "app.yml").read_text())
        assert data['default_organisation'] == "acme"

        result = gut(tmp_path, "config", "show")
        assert result.exit_code == 0
        assert "acme" in result.output


class TestPatternCommands:
    def test_undefined_group_rejected(self, tmp_path, template_repo):
        result = gut(
            tmp_path, "template", "pattern", "add", r"v(?P<major>\d+)",
            "--regex", "--replace", r"version-\g<minor>", "-C", str(template_repo.path),
        )

        assert result.exit_code == 1
        assert "minor" in result.output
        assert len(template_repo.record().patterns) == 1

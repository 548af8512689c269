"""Versioned storage backed by the git binary.

The template engine never touches git directly: revision lookup, diffing,
patch application and working-tree inspection all go through GitStore.
"""
import re
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from gut.core.errors import ConflictReport, GitCommandError, NotFound
from gut.core.logger import get_logger
from gut.core.patch import parse_diff
from gut.core.retry import is_transient, retry

logger = get_logger(__name__)

_PATCH_FAILED_RE = re.compile(r"error: patch failed: (?P<path>.+?)(?::(?P<line>\d+))?$")
_DOES_NOT_APPLY_RE = re.compile(r"error: (?P<path>.+?): patch does not apply$")
_ALREADY_EXISTS_RE = re.compile(r"error: (?P<path>.+?): already exists in working directory$")
_NOT_EXISTS_RE = re.compile(r"error: (?P<path>.+?): No such file or directory$")
_HUNK_REJECTED_RE = re.compile(r"Rejected hunk #(?P<hunk>\d+)\.")
_APPLYING_RE = re.compile(r"(?:Applying|Checking) patch (?P<path>.+?) with (?P<n>\d+) reject")


def parse_apply_failures(stderr: str) -> List[dict]:
    """Turn ``git apply --reject`` stderr into ``{path, hunk, line, reason}`` entries."""
    entries: List[dict] = []
    current_path = None

    for raw_line in stderr.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        match = _APPLYING_RE.match(line)
        if match:
            current_path = match.group('path')
            continue

        match = _HUNK_REJECTED_RE.match(line)
        if match:
            entries.append({
                'path': current_path,
                'hunk': int(match.group('hunk')),
                'line': None,
                'reason': 'hunk_rejected',
            })
            continue

        match = _PATCH_FAILED_RE.match(line)
        if match:
            line_text = match.group('line')
            entries.append({
                'path': match.group('path'),
                'hunk': None,
                'line': int(line_text) if line_text is not None else None,
                'reason': 'patch_failed',
            })
            continue

        for regex, reason in (
            (_DOES_NOT_APPLY_RE, 'does_not_apply'),
            (_ALREADY_EXISTS_RE, 'already_exists'),
            (_NOT_EXISTS_RE, 'missing_file'),
        ):
            match = regex.match(line)
            if match:
                entries.append({
                    'path': match.group('path'),
                    'hunk': None,
                    'line': None,
                    'reason': reason,
                })
                break

    # "patch failed" lines are followed by per-hunk rejects for the same
    # file; keep the hunk-level entries when both are present
    hunk_paths = {e['path'] for e in entries if e['reason'] == 'hunk_rejected'}
    return [
        e for e in entries
        if not (e['reason'] == 'patch_failed' and e['path'] in hunk_paths)
    ]


class GitStore:
    """Git operations on a single repository directory."""

    def __init__(self, repo_dir: Path, git_binary: str = "git"):
        self.repo_dir = Path(repo_dir)
        self.git_binary = git_binary

    def _run(
        self,
        args: Sequence[str],
        check: bool = True,
        input: Optional[str] = None,
        binary: bool = False,
        cwd: Optional[Path] = None,
    ) -> subprocess.CompletedProcess:
        """Run git in the repository; raise GitCommandError on failure when ``check``."""
        cmd = [self.git_binary, '-c', 'core.quotepath=off', *args]
        logger.debug(f"git {' '.join(args)}")

        kwargs = {'capture_output': True, 'cwd': cwd or self.repo_dir}
        if not binary:
            kwargs.update(text=True, encoding='utf-8', errors='surrogateescape')
        if input is not None:
            kwargs['input'] = input

        try:
            result = subprocess.run(cmd, **kwargs)
        except FileNotFoundError:
            raise GitCommandError(list(args), f"{self.git_binary} not found. Please install git first.", 127)

        if check and result.returncode != 0:
            stderr = result.stderr if not binary else result.stderr.decode('utf-8', 'replace')
            raise GitCommandError(list(args), stderr, result.returncode)
        return result

    # Repository inspection

    def is_repo(self) -> bool:
        if not self.repo_dir.is_dir():
            return False
        result = self._run(['rev-parse', '--is-inside-work-tree'], check=False)
        return result.returncode == 0 and result.stdout.strip() == 'true'

    def toplevel(self) -> Path:
        """Root of the working tree containing ``repo_dir``."""
        result = self._run(['rev-parse', '--show-toplevel'])
        return Path(result.stdout.strip())

    def git_dir(self) -> Path:
        """Absolute path of the repository's .git directory."""
        result = self._run(['rev-parse', '--absolute-git-dir'])
        return Path(result.stdout.strip())

    def resolve(self, ref: str) -> str:
        """Resolve a ref to a full commit id.

        Raises:
            NotFound: If the ref does not name a commit in this repository
        """
        result = self._run(['rev-parse', '--verify', '--quiet', f'{ref}^{{commit}}'], check=False)
        if result.returncode != 0:
            raise NotFound(f"Revision '{ref}'", str(self.repo_dir))
        return result.stdout.strip()

    def has_revision(self, rev: str) -> bool:
        result = self._run(['cat-file', '-e', f'{rev}^{{commit}}'], check=False)
        return result.returncode == 0

    def current_revision(self) -> Optional[str]:
        """Commit id of HEAD, or None in a repository with no commits."""
        result = self._run(['rev-parse', '--verify', '--quiet', 'HEAD'], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """True if ``ancestor`` is reachable from (or equal to) ``descendant``."""
        result = self._run(['merge-base', '--is-ancestor', ancestor, descendant], check=False)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise GitCommandError(['merge-base', '--is-ancestor', ancestor, descendant], result.stderr, result.returncode)

    def dirty_paths(self) -> List[str]:
        """Paths with uncommitted changes, untracked files included."""
        result = self._run(['status', '--porcelain', '--untracked-files=all', '-z'])
        paths = []
        for entry in result.stdout.split('\0'):
            if len(entry) > 3:
                paths.append(entry[3:])
        return paths

    def is_clean(self) -> bool:
        return not self.dirty_paths()

    def list_files(self, rev: Optional[str] = None) -> List[str]:
        """Tracked files at ``rev``, or in the index when ``rev`` is None."""
        if rev is None:
            result = self._run(['ls-files', '-z'])
        else:
            result = self._run(['ls-tree', '-r', '--name-only', '-z', rev])
        return [p for p in result.stdout.split('\0') if p]

    def read_blob(self, rev: str, path: str) -> bytes:
        result = self._run(['show', f'{rev}:{path}'], binary=True)
        return result.stdout

    def file_mode(self, rev: str, path: str) -> Optional[str]:
        result = self._run(['ls-tree', rev, '--', path])
        line = result.stdout.strip()
        return line.split()[0] if line else None

    # Diffing

    def changed_paths(self, from_rev: str, to_rev: str) -> List[str]:
        result = self._run(['diff', '--name-only', '--no-renames', '-z', from_rev, to_rev])
        return [p for p in result.stdout.split('\0') if p]

    def diff(self, from_rev: str, to_rev: str, path_filter: Callable[[str], bool]) -> str:
        """Unified diff between two revisions, limited to paths the filter accepts."""
        paths = [p for p in self.changed_paths(from_rev, to_rev) if path_filter(p)]
        if not paths:
            return ""
        result = self._run([
            '--literal-pathspecs', 'diff', '--binary', '--no-renames', '--full-index',
            '--no-color', '--no-ext-diff', from_rev, to_rev, '--', *paths,
        ])
        return result.stdout

    # Patching

    def apply_patch(self, patch: str) -> Optional[ConflictReport]:
        """Apply a patch to the working tree.

        Returns None when every hunk applied (changes are staged), otherwise
        a ConflictReport. Hunks that did apply stay in the working tree and
        rejected ones are left in ``*.rej`` files.
        """
        if not patch:
            return None

        result = self._run(
            ['apply', '--reject', '--whitespace=nowarn', '--verbose', '-'],
            input=patch,
            check=False,
        )
        touched = patched_paths(patch)

        if result.returncode == 0:
            self._run(['add', '-A', '--', *touched])
            logger.debug(f"Applied patch cleanly to {len(touched)} path(s)")
            return None

        failed = parse_apply_failures(result.stderr)
        if not failed:
            failed = [{'path': None, 'hunk': None, 'line': None, 'reason': 'unknown'}]
        rejects = self.find_rejects(touched)
        logger.debug(f"Patch conflicted: {result.stderr.strip()}")
        return ConflictReport(failed=failed, rejects=rejects, stderr=result.stderr)

    def find_rejects(self, paths: Iterable[str]) -> List[str]:
        return [f"{p}.rej" for p in paths if (self.repo_dir / f"{p}.rej").exists()]

    def remove_rejects(self, paths: Iterable[str]) -> None:
        for reject in self.find_rejects(paths):
            (self.repo_dir / reject).unlink()

    def revert_paths(self, base_rev: str, touched: Iterable[Tuple[str, bool]]) -> None:
        """Restore each touched path to its content at ``base_rev``.

        Args:
            base_rev: Revision the working tree matched before patching
            touched: (path, existed_before) pairs
        """
        touched = list(touched)
        self.remove_rejects(p for p, _ in touched)

        restore = [p for p, existed in touched if existed]
        created = [p for p, existed in touched if not existed]

        if restore:
            self._run(['--literal-pathspecs', 'checkout', base_rev, '--', *restore])
        for path in created:
            self._run(['--literal-pathspecs', 'rm', '--cached', '--quiet', '--ignore-unmatch', '--', path])
            target = self.repo_dir / path
            if target.exists():
                target.unlink()
            self._prune_empty_dirs(target.parent)

    def _prune_empty_dirs(self, directory: Path) -> None:
        while directory != self.repo_dir and directory.is_dir() and not any(directory.iterdir()):
            directory.rmdir()
            directory = directory.parent

    # Committing

    def init(self, initial_branch: str = "main") -> None:
        self.repo_dir.mkdir(parents=True, exist_ok=True)
        self._run(['init', '--quiet', f'--initial-branch={initial_branch}'])
        logger.debug(f"Initialized git repository in {self.repo_dir}")

    def commit_all(self, message: str) -> str:
        self._run(['add', '-A'])
        self._run(['commit', '--quiet', '-m', message])
        return self.current_revision()

    def commit_paths(self, paths: Sequence[str], message: str) -> str:
        self._run(['--literal-pathspecs', 'add', '--', *paths])
        self._run(['--literal-pathspecs', 'commit', '--quiet', '-m', message, '--', *paths])
        return self.current_revision()

    # Remote templates

    @retry(max_attempts=3, delay=2.0, exceptions=(GitCommandError,), when=is_transient)
    def clone_or_update(self, url: str) -> Path:
        """Clone ``url`` into this store's directory, or fast-forward an existing clone."""
        if (self.repo_dir / '.git').exists():
            logger.info(f"Updating template cache {self.repo_dir}")
            self._run(['fetch', '--quiet', 'origin'])
            self._run(['reset', '--quiet', '--hard', '@{upstream}'])
            return self.repo_dir

        if self.repo_dir.exists():
            shutil.rmtree(self.repo_dir)
        self.repo_dir.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Cloning template {url}")
        self._run(['clone', '--quiet', url, str(self.repo_dir)], cwd=self.repo_dir.parent)
        return self.repo_dir


def patched_paths(patch: str) -> List[str]:
    """Working-tree paths a patch touches (new side, or old side for deletions)."""
    return [p.path for p in parse_diff(patch)]

"""Error taxonomy for the template engine.

Every error names the thing the user has to act on (a path, a replacement
key, a revision pair) both in its message and as attributes, so the CLI
can print it and tests can assert on it.
"""
from typing import List, Optional


class GutError(Exception):
    """Base class for every error the template engine reports."""
    pass


class NotFound(GutError):
    """A delta record, apply session or template could not be found."""

    def __init__(self, what: str, path: Optional[str] = None):
        self.what = what
        self.path = path
        message = f"{what} not found" if path is None else f"{what} not found at {path}"
        super().__init__(message)


class MalformedRecord(GutError):
    """A persisted record exists but cannot be parsed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed record {path}: {reason}")


class InvalidState(GutError):
    """Operation is not valid for the record kind or the session state."""
    pass


class DirtyWorkingTree(GutError):
    """The target repository has uncommitted changes."""

    def __init__(self, repo: str, paths: Optional[List[str]] = None):
        self.repo = repo
        self.paths = list(paths or [])
        detail = f": {', '.join(self.paths)}" if self.paths else ""
        super().__init__(f"Working tree of {repo} has uncommitted changes{detail}")


class SessionInProgress(GutError):
    """An apply session already exists for the repository."""

    def __init__(self, session_file: str, state: Optional[str] = None):
        self.session_file = session_file
        self.state = state
        status = f" (state: {state})" if state else ""
        super().__init__(
            f"A template apply is already in progress{status}.\n"
            f"Run 'gut template apply --continue' or 'gut template apply --abort'. "
            f"Session file: {session_file}"
        )


class UpToDate(GutError):
    """The target already matches the template's published revision.

    Not a failure: the orchestrator turns it into a completed no-op.
    """

    def __init__(self, revision: str):
        self.revision = revision
        super().__init__(f"Already up to date with template revision {revision}")


class DivergedHistory(GutError):
    """The anchor is not an ancestor of the template's published revision."""

    def __init__(self, anchor: str, published: str):
        self.anchor = anchor
        self.published = published
        super().__init__(
            f"Template history diverged: anchor {anchor} is not an ancestor of "
            f"published revision {published}. Manual intervention required."
        )


class MissingReplacement(GutError):
    """A pattern rule references a replacement key with no value."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            f"Missing replacement value for '{key}'. "
            f"Set it with 'gut template replacement set {key} <value>'"
        )


class GitCommandError(GutError):
    """The git binary failed in a way the engine cannot interpret."""

    def __init__(self, args: List[str], stderr: str, returncode: int = 1):
        self.args_list = list(args)
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}")


class ConflictReport(GutError):
    """Partial patch application: some hunks applied, some were rejected.

    Returned (not raised) by the versioned store when ``git apply`` rejects
    hunks, and persisted on the apply session so it can be shown again.
    """

    def __init__(self, failed: List[dict], rejects: Optional[List[str]] = None, stderr: str = ""):
        self.failed = list(failed)
        self.rejects = list(rejects or [])
        self.stderr = stderr
        super().__init__(f"Patch conflicted in {', '.join(self.paths) or 'unknown paths'}")

    @property
    def paths(self) -> List[str]:
        """Distinct paths with at least one failed hunk, in report order."""
        seen = []
        for entry in self.failed:
            path = entry.get('path')
            if path and path not in seen:
                seen.append(path)
        return seen

    def to_dict(self) -> dict:
        return {'failed': self.failed, 'rejects': self.rejects, 'stderr': self.stderr}

    @classmethod
    def from_dict(cls, data: dict) -> "ConflictReport":
        return cls(
            failed=data.get('failed', []),
            rejects=data.get('rejects', []),
            stderr=data.get('stderr', ''),
        )

"""Persistent apply sessions.

A template apply can stop on conflicts and wait for the user across
separate gut invocations. The session file is both the saved state of the
apply state machine and the lock: while it exists no second apply can
start on the same repository.
"""
import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

from gut.core.errors import ConflictReport, MalformedRecord, SessionInProgress
from gut.core.logger import get_logger

logger = get_logger(__name__)

SESSION_DIR = "gut"
SESSION_FILE = "apply-session.json"


class ApplyState(Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    PATCHED = "patched"
    CONFLICTED = "conflicted"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def in_progress(self) -> bool:
        return self in (ApplyState.STARTED, ApplyState.PATCHED, ApplyState.CONFLICTED)


@dataclass
class TouchedPath:
    """A target path the working patch creates, modifies or deletes."""
    path: str
    existed_before: bool


@dataclass
class ApplySession:
    """Serializable state of one in-progress template apply."""

    state: ApplyState
    from_revision: str
    to_revision: str
    to_rev_id: int
    base_revision: Optional[str]
    template_dir: str
    working_patch: str = ""
    touched_paths: List[TouchedPath] = field(default_factory=list)
    skipped_paths: List[str] = field(default_factory=list)
    classification_updates: dict = field(default_factory=dict)
    conflicts: Optional[ConflictReport] = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'from_revision': self.from_revision,
            'to_revision': self.to_revision,
            'to_rev_id': self.to_rev_id,
            'base_revision': self.base_revision,
            'template_dir': self.template_dir,
            'working_patch': self.working_patch,
            'touched_paths': [
                {'path': t.path, 'existed_before': t.existed_before}
                for t in self.touched_paths
            ],
            'skipped_paths': list(self.skipped_paths),
            'classification_updates': dict(self.classification_updates),
            'conflicts': self.conflicts.to_dict() if self.conflicts else None,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApplySession":
        conflicts = data.get('conflicts')
        return cls(
            state=ApplyState(data['state']),
            from_revision=data['from_revision'],
            to_revision=data['to_revision'],
            to_rev_id=int(data.get('to_rev_id', 0)),
            base_revision=data.get('base_revision'),
            template_dir=data.get('template_dir', ''),
            working_patch=data.get('working_patch', ''),
            touched_paths=[
                TouchedPath(item['path'], bool(item['existed_before']))
                for item in data.get('touched_paths', [])
            ],
            skipped_paths=list(data.get('skipped_paths', [])),
            classification_updates=dict(data.get('classification_updates', {})),
            conflicts=ConflictReport.from_dict(conflicts) if conflicts else None,
            created_at=data.get('created_at', ''),
            updated_at=data.get('updated_at', ''),
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='seconds')


class SessionStore:
    """File-presence lock plus atomic persistence for an ApplySession."""

    def __init__(self, session_file: Path):
        self.session_file = Path(session_file)

    @classmethod
    def for_git_dir(cls, git_dir: Path) -> "SessionStore":
        return cls(Path(git_dir) / SESSION_DIR / SESSION_FILE)

    def exists(self) -> bool:
        return self.session_file.exists()

    def load(self) -> Optional[ApplySession]:
        """Load the session, or None when no apply is in progress.

        Raises:
            MalformedRecord: If a session file exists but cannot be read
        """
        if not self.session_file.exists():
            return None

        try:
            with open(self.session_file) as f:
                data = json.load(f)
            return ApplySession.from_dict(data)
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            raise MalformedRecord(str(self.session_file), str(e))

    def _write_temp(self, session: ApplySession) -> Path:
        self.session_file.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=self.session_file.name + ".", suffix=".tmp", dir=self.session_file.parent
        )
        with os.fdopen(fd, 'w') as f:
            json.dump(session.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        return Path(temp_name)

    def acquire(self, session: ApplySession) -> ApplySession:
        """Create the session file; fails if one already exists.

        The content is written to a temp file first and then hard-linked
        into place, so the file appears atomically and fully written.

        Raises:
            SessionInProgress: If a session already exists
        """
        session.created_at = session.updated_at = _now()
        temp_file = self._write_temp(session)
        try:
            os.link(temp_file, self.session_file)
        except FileExistsError:
            raise SessionInProgress(str(self.session_file), self._existing_state())
        finally:
            temp_file.unlink()

        logger.debug(f"Acquired apply session: {self.session_file}")
        return session

    def update(self, session: ApplySession) -> ApplySession:
        """Persist a state transition (write temp, then rename)."""
        session.updated_at = _now()
        temp_file = self._write_temp(session)
        os.replace(temp_file, self.session_file)
        logger.debug(f"Session {self.session_file} -> {session.state.value}")
        return session

    def release(self) -> None:
        """Delete the session file, ending the apply."""
        try:
            self.session_file.unlink()
            logger.debug(f"Released apply session: {self.session_file}")
        except FileNotFoundError:
            pass

    def _existing_state(self) -> Optional[str]:
        try:
            existing = self.load()
        except MalformedRecord:
            return "unreadable"
        return existing.state.value if existing else None

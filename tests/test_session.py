"""Tests for persistent apply sessions."""
import json

import pytest

from gut.core.errors import ConflictReport, MalformedRecord, SessionInProgress
from gut.core.session import ApplySession, ApplyState, SessionStore, TouchedPath


def make_session(state=ApplyState.STARTED):
    return ApplySession(
        state=state,
        from_revision="a" * 40,
        to_revision="b" * 40,
        to_rev_id=2,
        base_revision="c" * 40,
        template_dir="/templates/service",
        working_patch="diff --git a/VERSION b/VERSION\n",
        touched_paths=[TouchedPath("VERSION", True), TouchedPath("docs/new.md", False)],
        skipped_paths=["README.md"],
        classification_updates={"docs/new.md": "required"},
    )


class TestSessionStore:
    """Test the session file lock and persistence."""

    def test_acquire_creates_file(self, tmp_path):
        store = SessionStore.for_git_dir(tmp_path)
        store.acquire(make_session())

        assert store.session_file == tmp_path / "gut" / "apply-session.json"
        assert store.exists()
        loaded = store.load()
        assert loaded.state == ApplyState.STARTED
        assert loaded.touched_paths[1] == TouchedPath("docs/new.md", False)
        assert loaded.created_at

    def test_second_acquire_fails(self, tmp_path):
        store = SessionStore.for_git_dir(tmp_path)
        store.acquire(make_session())

        with pytest.raises(SessionInProgress) as exc_info:
            store.acquire(make_session())

        assert exc_info.value.state == "started"
        assert "--abort" in str(exc_info.value)
        assert not list(store.session_file.parent.glob("*.tmp"))

    def test_update_persists_transition(self, tmp_path):
        store = SessionStore.for_git_dir(tmp_path)
        session = store.acquire(make_session())

        session.state = ApplyState.CONFLICTED
        session.conflicts = ConflictReport(
            failed=[{'path': "VERSION", 'hunk': 1, 'line': None, 'reason': 'hunk_rejected'}],
            rejects=["VERSION.rej"],
            stderr="Rejected hunk #1.\n",
        )
        store.update(session)

        loaded = store.load()
        assert loaded.state == ApplyState.CONFLICTED
        assert loaded.conflicts.paths == ["VERSION"]
        assert loaded.conflicts.rejects == ["VERSION.rej"]
        assert loaded.conflicts.stderr == "Rejected hunk #1.\n"

    def test_release(self, tmp_path):
        store = SessionStore.for_git_dir(tmp_path)
        store.acquire(make_session())
        store.release()

        assert not store.exists()
        assert store.load() is None
        store.release()

    def test_corrupt_session(self, tmp_path):
        store = SessionStore.for_git_dir(tmp_path)
        store.session_file.parent.mkdir(parents=True)
        store.session_file.write_text("{not json")

        with pytest.raises(MalformedRecord):
            store.load()

    def test_corrupt_session_still_blocks_acquire(self, tmp_path):
        store = SessionStore.for_git_dir(tmp_path)
        store.session_file.parent.mkdir(parents=True)
        store.session_file.write_text(json.dumps({'state': 'bogus'}))

        with pytest.raises(SessionInProgress) as exc_info:
            store.acquire(make_session())
        assert exc_info.value.state == "unreadable"


class TestApplyState:
    @pytest.mark.parametrize("state", [ApplyState.STARTED, ApplyState.PATCHED, ApplyState.CONFLICTED])
    def test_in_progress(self, state):
        assert state.in_progress

    @pytest.mark.parametrize("state", [ApplyState.NOT_STARTED, ApplyState.COMPLETED, ApplyState.ABORTED])
    def test_not_in_progress(self, state):
        assert not state.in_progress

"""Template apply state machine.

    NotStarted --apply--> Started --patch--> Patched | Conflicted
    Patched | Conflicted --continue--> Completed
    Started | Patched | Conflicted --abort--> Aborted

The machine lives in the session file between invocations; every
transition is written before the command returns, and Completed/Aborted
delete the file.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from gut.core.delta_store import RECORD_RELPATH, DeltaRecord, DeltaStore, FileClass
from gut.core.errors import (
    ConflictReport,
    DirtyWorkingTree,
    InvalidState,
    NotFound,
    SessionInProgress,
    UpToDate,
)
from gut.core.logger import get_logger
from gut.core.patch import FilePatch, parse_diff, render_patches
from gut.core.patterns import PatternEngine
from gut.core.resolver import DeltaResolver
from gut.core.session import ApplySession, ApplyState, SessionStore, TouchedPath

logger = get_logger(__name__)


@dataclass
class ApplyResult:
    """Outcome of one apply/continue/abort invocation."""
    state: ApplyState
    from_revision: Optional[str] = None
    to_revision: Optional[str] = None
    rev_id: Optional[int] = None
    up_to_date: bool = False
    applied_paths: List[str] = field(default_factory=list)
    skipped_paths: List[str] = field(default_factory=list)
    conflicts: Optional[ConflictReport] = None

    @property
    def needs_resolution(self) -> bool:
        return self.state == ApplyState.CONFLICTED


class ApplyOrchestrator:
    """Drives a template apply on one generated repository.

    Args:
        target: Versioned store of the generated repository
        deltas: Delta store of the generated repository
        sessions: Session store of the generated repository
        template_store: Versioned store of the template (needed to start only)
        template_record: The template's delta record (needed to start only)
        commit_record: Commit the updated delta record when an apply completes
    """

    def __init__(
        self,
        target,
        deltas: DeltaStore,
        sessions: SessionStore,
        template_store=None,
        template_record: Optional[DeltaRecord] = None,
        commit_record: bool = True,
    ):
        self.target = target
        self.deltas = deltas
        self.sessions = sessions
        self.template_store = template_store
        self.template_record = template_record
        self.commit_record = commit_record

    def status(self) -> Optional[ApplySession]:
        return self.sessions.load()

    # NotStarted -> Started -> Patched | Conflicted

    def start(self) -> ApplyResult:
        """Begin applying the template's published changes.

        Raises:
            SessionInProgress: An apply is already in progress
            DirtyWorkingTree: The target has uncommitted changes
            DivergedHistory: The anchor is not an ancestor of the published revision
            MissingReplacement: A rewritten line needs an unset replacement
        """
        existing = self.sessions.load()
        if existing is not None:
            raise SessionInProgress(str(self.sessions.session_file), existing.state.value)

        dirty = self.target.dirty_paths()
        if dirty:
            raise DirtyWorkingTree(str(self.target.repo_dir), dirty)

        if self.template_store is None or self.template_record is None:
            raise InvalidState("Starting an apply needs the template repository")

        record = self.deltas.load_generated()
        resolver = DeltaResolver(self.template_store, self.template_record)

        try:
            delta = resolver.resolve(record)
        except UpToDate as done:
            logger.info(f"Already up to date with template revision {done.revision[:8]}")
            return ApplyResult(
                state=ApplyState.COMPLETED,
                from_revision=done.revision,
                to_revision=done.revision,
                rev_id=record.rev_id,
                up_to_date=True,
            )

        engine = PatternEngine(self.template_record.patterns, record.replacements)
        originals = parse_diff(delta.diff)
        patches = [(original, original.rewrite(engine)) for original in originals]
        target_files = set(self.target.list_files())
        included, skipped, updates = self._select_patches(patches, record, target_files)

        if not included:
            logger.info("No template changes apply to this repository; advancing anchor")
            self._advance(record, delta.to_revision, delta.to_rev_id, updates)
            return ApplyResult(
                state=ApplyState.COMPLETED,
                from_revision=delta.from_revision,
                to_revision=delta.to_revision,
                rev_id=delta.to_rev_id,
                skipped_paths=skipped,
            )

        session = ApplySession(
            state=ApplyState.STARTED,
            from_revision=delta.from_revision,
            to_revision=delta.to_revision,
            to_rev_id=delta.to_rev_id,
            base_revision=self.target.current_revision(),
            template_dir=str(self.template_store.repo_dir),
            working_patch=render_patches(included),
            touched_paths=[TouchedPath(p.path, p.path in target_files) for p in included],
            skipped_paths=skipped,
            classification_updates=updates,
        )
        self.sessions.acquire(session)
        logger.info(
            f"Apply started: template {delta.from_revision[:8]}..{delta.to_revision[:8]} "
            f"({len(included)} file(s))"
        )
        return self._patch(session)

    def _select_patches(self, patches, record: DeltaRecord, target_files: set):
        """Split rewritten file patches into the ones this target takes and the rest.

        Paths the generated record tracks are patched. A file the template
        adds is patched in when the target does not have it yet. Anything
        else is user-owned and left alone.
        """
        included, skipped, updates = [], [], {}
        for original, patch in patches:
            path = patch.path
            if record.is_synced(path):
                included.append(patch)
                if patch.is_deleted:
                    updates[path] = None
            elif patch.is_new and path not in target_files:
                included.append(patch)
                updates[path] = self._template_class_for(original).value
            else:
                skipped.append(path)
                logger.debug(f"Skipping user-owned path {path}")
        return included, skipped, updates

    def _template_class_for(self, original: FilePatch) -> FileClass:
        # looked up by the template-side (unrewritten) path
        tag = self.template_record.classification_of(original.path)
        return tag or FileClass.REQUIRED

    def _patch(self, session: ApplySession) -> ApplyResult:
        report = self.target.apply_patch(session.working_patch)
        if report is None:
            session.state = ApplyState.PATCHED
            session.conflicts = None
            logger.info("Template changes applied cleanly; review, commit, then run apply --continue")
        else:
            session.state = ApplyState.CONFLICTED
            session.conflicts = report
            logger.warning(f"Template changes conflicted in {', '.join(report.paths) or 'some paths'}")
        self.sessions.update(session)
        return self._result(session)

    # Patched | Conflicted -> Completed

    def resume(self) -> ApplyResult:
        """Continue an apply after the user reviewed/resolved and committed.

        Raises:
            NotFound: No apply in progress
            InvalidState: Rejected hunks remain, nothing was committed, or
                the anchor moved since the apply started
            DirtyWorkingTree: Resolution is not committed yet
        """
        session = self._require_session()

        if session.state == ApplyState.STARTED:
            logger.info("Resuming interrupted apply: applying working patch")
            return self._patch(session)

        if session.to_revision == session.from_revision:
            raise InvalidState("Apply session does not move the anchor forward")

        touched = [t.path for t in session.touched_paths]
        rejects = self.target.find_rejects(touched)
        if rejects:
            raise InvalidState(
                f"Resolve and delete reject files before continuing: {', '.join(rejects)}"
            )

        record = self.deltas.load_generated()
        # an earlier continue saved the advanced record but failed to commit it
        advanced = record.revision_anchor == session.to_revision

        dirty = self.target.dirty_paths()
        if advanced:
            dirty = [p for p in dirty if p != RECORD_RELPATH]
        if dirty:
            raise DirtyWorkingTree(str(self.target.repo_dir), dirty)

        if session.base_revision and self.target.current_revision() == session.base_revision:
            raise InvalidState("Commit the applied template changes before running apply --continue")

        if advanced:
            logger.info("Delta record already advanced; finishing the interrupted continue")
            self._commit_record(session.to_rev_id)
        else:
            if record.revision_anchor != session.from_revision:
                raise InvalidState(
                    f"Delta record anchor changed during the apply "
                    f"(expected {session.from_revision}, found {record.revision_anchor})"
                )
            self._advance(record, session.to_revision, session.to_rev_id, session.classification_updates)
        self.sessions.release()

        logger.info(f"Apply completed: anchor advanced to {session.to_revision[:8]}")
        result = self._result(session)
        result.state = ApplyState.COMPLETED
        return result

    # Started | Patched | Conflicted -> Aborted

    def abort(self) -> ApplyResult:
        """Undo the working patch and drop the session; the anchor is unchanged."""
        session = self._require_session()

        if session.base_revision:
            restore = [(t.path, t.existed_before) for t in session.touched_paths]
            if self._record_saved_uncommitted(session):
                restore.append((RECORD_RELPATH, True))
            self.target.revert_paths(session.base_revision, restore)
        self.sessions.release()

        logger.info("Apply aborted; working tree restored")
        result = self._result(session)
        result.state = ApplyState.ABORTED
        return result

    # Helpers

    def _require_session(self) -> ApplySession:
        session = self.sessions.load()
        if session is None:
            raise NotFound("Apply session", str(self.sessions.session_file))
        if not session.state.in_progress:
            raise InvalidState(f"Apply session is in terminal state {session.state.value}")
        return session

    def _advance(self, record: DeltaRecord, revision: str, rev_id: int, updates: dict) -> None:
        for path, tag in updates.items():
            if tag is None:
                record.unclassify(path)
            else:
                record.classify(path, FileClass(tag))
        record.advance_anchor(revision, rev_id)
        self.deltas.save(record)
        self._commit_record(rev_id)

    def _record_saved_uncommitted(self, session: ApplySession) -> bool:
        if RECORD_RELPATH not in self.target.dirty_paths():
            return False
        return self.deltas.load_generated().revision_anchor == session.to_revision

    def _commit_record(self, rev_id: int) -> None:
        if self.commit_record and RECORD_RELPATH in self.target.dirty_paths():
            self.target.commit_paths([RECORD_RELPATH], f"Update template to rev {rev_id}")

    @staticmethod
    def _result(session: ApplySession) -> ApplyResult:
        return ApplyResult(
            state=session.state,
            from_revision=session.from_revision,
            to_revision=session.to_revision,
            rev_id=session.to_rev_id,
            applied_paths=[t.path for t in session.touched_paths],
            skipped_paths=list(session.skipped_paths),
            conflicts=session.conflicts,
        )

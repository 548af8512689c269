"""Work out what a generated repository is missing from its template."""
from dataclasses import dataclass, field
from typing import List

from gut.core.delta_store import DeltaRecord, is_internal_path
from gut.core.errors import DivergedHistory, InvalidState, UpToDate
from gut.core.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ResolvedDelta:
    """Template change between a target's anchor and the published revision."""
    from_revision: str
    to_revision: str
    to_rev_id: int
    diff: str
    excluded_paths: List[str] = field(default_factory=list)


class DeltaResolver:
    """Compute the filtered template diff a generated repository needs.

    Args:
        template_store: Versioned store of the template repository
        template_record: The template's delta record; its classification
            (as published) decides which changed paths are included
    """

    def __init__(self, template_store, template_record: DeltaRecord):
        if not template_record.is_template:
            raise InvalidState("Delta resolution needs a template record")
        self.store = template_store
        self.template = template_record

    def published_revision(self) -> str:
        if not self.template.revision_anchor:
            raise InvalidState(
                "Template has no published version; run 'gut template bump-version' in the template"
            )
        return self.store.resolve(self.template.revision_anchor)

    def includes(self, path: str) -> bool:
        """True if a changed template path may flow to generated repos."""
        return not is_internal_path(path) and self.template.is_synced(path)

    def resolve(self, target: DeltaRecord) -> ResolvedDelta:
        """Return the template diff from the target's anchor to the published revision.

        Raises:
            UpToDate: Anchor already equals the published revision
            DivergedHistory: Anchor is unknown to the template or not an ancestor
        """
        if target.is_template:
            raise InvalidState("Cannot apply a template onto a template repository")
        if not target.revision_anchor:
            raise InvalidState("Generated record has no revision anchor")

        published = self.published_revision()
        anchor = target.revision_anchor

        if not self.store.has_revision(anchor):
            raise DivergedHistory(anchor, published)
        anchor = self.store.resolve(anchor)

        if anchor == published:
            raise UpToDate(published)

        if not self.store.is_ancestor(anchor, published):
            raise DivergedHistory(anchor, published)

        excluded: List[str] = []

        def path_filter(path: str) -> bool:
            if self.includes(path):
                return True
            excluded.append(path)
            return False

        diff = self.store.diff(anchor, published, path_filter)
        logger.debug(
            f"Resolved template delta {anchor[:8]}..{published[:8]} "
            f"({len(excluded)} path(s) excluded)"
        )
        return ResolvedDelta(
            from_revision=anchor,
            to_revision=published,
            to_rev_id=self.template.rev_id,
            diff=diff,
            excluded_paths=excluded,
        )

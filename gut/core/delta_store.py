"""Delta records: per-repository provenance for templates and generated repos.

A template repository and every repository generated from it carry a
``.gut/delta.yml`` file. For a template it records the published revision,
file classification and substitution rules; for a generated repository it
records which template revision its content was last synced to and the
replacement values used to generate it.
"""
import fnmatch
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from gut.core.errors import InvalidState, MalformedRecord, NotFound
from gut.core.logger import get_logger
from gut.core.patterns import PatternRule

logger = get_logger(__name__)

DELTA_DIR = ".gut"
RECORD_FILE = "delta.yml"
RECORD_RELPATH = f"{DELTA_DIR}/{RECORD_FILE}"


class RecordKind(Enum):
    TEMPLATE = "template"
    GENERATED = "generated"


class FileClass(Enum):
    """How template sync treats a path."""
    REQUIRED = "required"  # always generated and kept in sync
    OPTIONAL = "optional"  # generated on request, kept in sync once present
    IGNORED = "ignored"  # template-local, never leaves the template


def record_path(repo_dir: Path) -> Path:
    """Location of the delta record for a repository."""
    return Path(repo_dir) / DELTA_DIR / RECORD_FILE


def is_internal_path(path: str) -> bool:
    """True for paths under .gut/, which sync never touches."""
    return path == DELTA_DIR or path.startswith(DELTA_DIR + "/")


@dataclass
class DeltaRecord:
    """Provenance record for one repository.

    Attributes:
        kind: Template or Generated
        name: Template display name or generated repository name
        rev_id: Published version counter (template) or synced version (generated)
        revision_anchor: Commit the repository content is known to match
        template_origin: Template reference (generated records only)
        files: path/prefix/glob -> classification
        patterns: Ordered substitution rules
        replacements: Placeholder key -> literal value
        history: Sync and publish events, oldest first
    """

    kind: RecordKind
    name: str = ""
    rev_id: int = 0
    revision_anchor: Optional[str] = None
    template_origin: Optional[str] = None
    files: Dict[str, FileClass] = field(default_factory=dict)
    patterns: List[PatternRule] = field(default_factory=list)
    replacements: Dict[str, str] = field(default_factory=dict)
    history: List[dict] = field(default_factory=list)

    @property
    def is_template(self) -> bool:
        return self.kind == RecordKind.TEMPLATE

    # Classification

    def classify(self, path: str, tag: FileClass) -> None:
        """Set the classification of a path. Idempotent, last write wins."""
        key = _normalise_key(path)
        if is_internal_path(key):
            raise InvalidState(f"{DELTA_DIR}/ is managed by gut and cannot be classified")
        self.files[key] = tag

    def unclassify(self, path: str) -> bool:
        """Drop a path from the classification. Returns False if it was absent."""
        return self.files.pop(_normalise_key(path), None) is not None

    def classification_of(self, path: str) -> Optional[FileClass]:
        """Classification of a path, or None when the path is user-owned.

        Exact keys win over directory prefixes and globs; among those the
        longest key wins. Unlisted paths are Required in a template and
        user-owned (None) in a generated repository.
        """
        if is_internal_path(path):
            return None

        if path in self.files:
            return self.files[path]

        best_key = None
        for key in self.files:
            if key.endswith("/"):
                matched = path.startswith(key)
            else:
                matched = any(ch in key for ch in "*?[") and fnmatch.fnmatchcase(path, key)
            if matched and (best_key is None or len(key) > len(best_key)):
                best_key = key

        if best_key is not None:
            return self.files[best_key]

        return FileClass.REQUIRED if self.is_template else None

    def is_synced(self, path: str) -> bool:
        """True if template sync may touch this path."""
        return self.classification_of(path) in (FileClass.REQUIRED, FileClass.OPTIONAL)

    # Patterns and replacements

    def add_pattern(self, rule: PatternRule) -> None:
        """Append a rule, replacing an existing rule with the same match."""
        self.patterns = [p for p in self.patterns if p.match != rule.match]
        self.patterns.append(rule)

    def remove_pattern(self, match: str) -> bool:
        before = len(self.patterns)
        self.patterns = [p for p in self.patterns if p.match != match]
        return len(self.patterns) != before

    def set_replacement(self, key: str, value: str) -> None:
        if "\n" in value:
            raise InvalidState(f"Replacement value for '{key}' must be a single line")
        self.replacements[key] = value

    def remove_replacement(self, key: str) -> bool:
        return self.replacements.pop(key, None) is not None

    # Versions

    def bump_version(self, new_revision: str) -> int:
        """Publish a new template version at ``new_revision``.

        Raises:
            InvalidState: If this is not a template record
        """
        if not self.is_template:
            raise InvalidState("bump-version is only valid for template records")
        self.rev_id += 1
        self.revision_anchor = new_revision
        self.record_event("bump-version")
        return self.rev_id

    def advance_anchor(self, revision: str, rev_id: int, action: str = "apply") -> None:
        """Move a generated record's anchor forward after a completed sync."""
        if self.is_template:
            raise InvalidState("Template anchors only move through bump-version")
        self.revision_anchor = revision
        self.rev_id = rev_id
        self.record_event(action)

    def record_event(self, action: str) -> None:
        self.history.append({
            'action': action,
            'rev_id': self.rev_id,
            'revision': self.revision_anchor,
            'timestamp': datetime.now(timezone.utc).isoformat(timespec='seconds'),
        })

    # Serialisation

    def to_dict(self) -> dict:
        data = {
            'kind': self.kind.value,
            'name': self.name,
            'rev_id': self.rev_id,
            'revision_anchor': self.revision_anchor,
        }
        if not self.is_template:
            data['template_origin'] = self.template_origin
        data['files'] = {path: tag.value for path, tag in sorted(self.files.items())}
        data['patterns'] = [rule.to_dict() for rule in self.patterns]
        data['replacements'] = dict(sorted(self.replacements.items()))
        data['history'] = list(self.history)
        return data

    @classmethod
    def from_dict(cls, data: dict, source: str = "<record>") -> "DeltaRecord":
        """Build a record from parsed YAML.

        Raises:
            MalformedRecord: On a missing kind or any wrongly typed field
        """
        if not isinstance(data, dict):
            raise MalformedRecord(source, "expected a mapping at top level")

        try:
            kind = RecordKind(data.get('kind'))
        except ValueError:
            raise MalformedRecord(source, f"unknown kind {data.get('kind')!r}")

        files_raw = data.get('files') or {}
        patterns_raw = data.get('patterns') or []
        replacements_raw = data.get('replacements') or {}
        history_raw = data.get('history') or []

        if not isinstance(files_raw, dict):
            raise MalformedRecord(source, "'files' must be a mapping")
        if not isinstance(patterns_raw, list):
            raise MalformedRecord(source, "'patterns' must be a list")
        if not isinstance(replacements_raw, dict):
            raise MalformedRecord(source, "'replacements' must be a mapping")
        if not isinstance(history_raw, list):
            raise MalformedRecord(source, "'history' must be a list")

        files = {}
        for path, tag in files_raw.items():
            try:
                files[str(path)] = FileClass(tag)
            except ValueError:
                raise MalformedRecord(source, f"unknown classification {tag!r} for {path}")

        try:
            patterns = [PatternRule.from_dict(item) for item in patterns_raw]
        except (TypeError, KeyError, ValueError) as exc:
            raise MalformedRecord(source, f"invalid pattern: {exc}")

        try:
            rev_id = int(data.get('rev_id') or 0)
        except (TypeError, ValueError):
            raise MalformedRecord(source, "'rev_id' must be an integer")

        anchor = data.get('revision_anchor')
        return cls(
            kind=kind,
            name=str(data.get('name') or ""),
            rev_id=rev_id,
            revision_anchor=str(anchor) if anchor else None,
            template_origin=data.get('template_origin'),
            files=files,
            patterns=patterns,
            replacements={str(k): str(v) for k, v in replacements_raw.items()},
            history=history_raw,
        )


def _normalise_key(path: str) -> str:
    key = path.replace(os.sep, "/").strip()
    while key.startswith("./"):
        key = key[2:]
    if not key or key.startswith("/"):
        raise InvalidState(f"Classification path must be repository-relative: {path!r}")
    return key


def new_template_record(name: str, revision: Optional[str] = None) -> DeltaRecord:
    """Fresh template record. ``revision`` is recorded but not yet published."""
    record = DeltaRecord(kind=RecordKind.TEMPLATE, name=name)
    record.record_event("init")
    if revision:
        record.history[-1]['revision'] = revision
    return record


def new_generated_record(
    name: str,
    template: DeltaRecord,
    template_origin: str,
    replacements: Dict[str, str],
) -> DeltaRecord:
    """Generated record anchored at the template's published version."""
    if not template.is_template:
        raise InvalidState(f"{template_origin} is not a template repository")
    if not template.revision_anchor:
        raise InvalidState(
            f"Template {template_origin} has no published version; "
            "run 'gut template bump-version' in the template first"
        )
    return DeltaRecord(
        kind=RecordKind.GENERATED,
        name=name,
        rev_id=template.rev_id,
        revision_anchor=template.revision_anchor,
        template_origin=template_origin,
        patterns=list(template.patterns),
        replacements=dict(replacements),
    )


def parse_record(text: str, source: str = "<record>") -> DeltaRecord:
    """Parse a record from YAML text (e.g. a blob read from git)."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MalformedRecord(source, f"invalid YAML: {exc}")
    return DeltaRecord.from_dict(data, source=source)


def load_record(path: Path) -> DeltaRecord:
    """Load a delta record from disk.

    Raises:
        NotFound: If the file does not exist
        MalformedRecord: If the file cannot be parsed
    """
    path = Path(path)
    if not path.exists():
        raise NotFound("Delta record", str(path))

    try:
        text = path.read_text()
    except (IOError, OSError) as exc:
        raise MalformedRecord(str(path), f"unreadable: {exc}")

    record = parse_record(text, source=str(path))
    logger.debug(f"Loaded {record.kind.value} record from {path}")
    return record


def save_record(path: Path, record: DeltaRecord) -> None:
    """Write a delta record atomically (write temp file, then rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_file = path.with_name(path.name + ".tmp")
    with open(temp_file, 'w') as f:
        yaml.safe_dump(record.to_dict(), f, sort_keys=False, default_flow_style=False)
        f.flush()
        os.fsync(f.fileno())
    os.replace(temp_file, path)
    logger.debug(f"Saved {record.kind.value} record to {path}")


class DeltaStore:
    """Loads and saves the delta record of one repository directory."""

    def __init__(self, repo_dir: Path):
        self.repo_dir = Path(repo_dir)
        self.path = record_path(self.repo_dir)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> DeltaRecord:
        return load_record(self.path)

    def load_template(self) -> DeltaRecord:
        """Load the record and insist it is a template record."""
        record = self.load()
        if not record.is_template:
            raise InvalidState(f"{self.repo_dir} is a generated repository, not a template")
        return record

    def load_generated(self) -> DeltaRecord:
        """Load the record and insist it is a generated record."""
        record = self.load()
        if record.is_template:
            raise InvalidState(f"{self.repo_dir} is a template, not a generated repository")
        return record

    def save(self, record: DeltaRecord) -> None:
        save_record(self.path, record)

    def create(self, record: DeltaRecord, force: bool = False) -> None:
        """Save a brand new record, refusing to overwrite unless forced."""
        if self.exists() and not force:
            raise InvalidState(f"Delta record already exists at {self.path} (use --force to replace)")
        self.save(record)
        logger.info(f"Created {record.kind.value} record at {self.path}")

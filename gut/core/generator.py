"""Create generated repositories from a template, or adopt a template in place."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from gut.core.delta_store import (
    DeltaRecord,
    DeltaStore,
    FileClass,
    is_internal_path,
    new_generated_record,
)
from gut.core.errors import InvalidState, MissingReplacement
from gut.core.logger import get_logger
from gut.core.patterns import PatternEngine
from gut.services.git_store import GitStore

logger = get_logger(__name__)

EXECUTABLE_MODE = "100755"
SYMLINK_MODE = "120000"


@dataclass
class GenerateResult:
    """Files written by a generation run."""
    target_dir: Path
    revision: str
    rev_id: int
    files: List[Tuple[str, str]] = field(default_factory=list)  # (template path, target path)
    skipped_optional: List[str] = field(default_factory=list)
    commit: Optional[str] = None


def plan_files(
    template_record: DeltaRecord,
    template_files: List[str],
    engine: PatternEngine,
    include_optional: bool = True,
):
    """Map template paths at the published revision to target paths.

    Returns:
        (planned, skipped_optional) where planned is a list of
        (template path, target path, classification)
    """
    planned, skipped_optional, seen = [], [], {}
    for path in template_files:
        if is_internal_path(path):
            continue
        tag = template_record.classification_of(path)
        if tag == FileClass.IGNORED:
            continue
        if tag == FileClass.OPTIONAL and not include_optional:
            skipped_optional.append(path)
            continue

        target_path = engine.rewrite_path(path)
        if target_path in seen:
            raise InvalidState(
                f"Template paths {seen[target_path]} and {path} both generate {target_path}"
            )
        seen[target_path] = path
        planned.append((path, target_path, tag))
    return planned, skipped_optional


class Generator:
    """Instantiate template content at its published revision.

    Args:
        template_store: Versioned store of the template repository
        template_record: The template's delta record
        template_origin: Reference recorded in generated records
    """

    def __init__(self, template_store, template_record: DeltaRecord, template_origin: str):
        if not template_record.is_template:
            raise InvalidState(f"{template_origin} is not a template repository")
        self.store = template_store
        self.template = template_record
        self.origin = template_origin

    def published_revision(self) -> str:
        if not self.template.revision_anchor:
            raise InvalidState(
                f"Template {self.origin} has no published version; "
                "run 'gut template bump-version' in the template first"
            )
        return self.store.resolve(self.template.revision_anchor)

    def engine_for(self, replacements: Dict[str, str]) -> PatternEngine:
        """Pattern engine for these replacements; every referenced key must be set."""
        engine = PatternEngine(self.template.patterns, replacements)
        missing = engine.missing_keys()
        if missing:
            raise MissingReplacement(missing[0])
        return engine

    def generate(
        self,
        target_dir: Path,
        replacements: Dict[str, str],
        include_optional: bool = True,
        init_repo: bool = True,
        name: Optional[str] = None,
    ) -> GenerateResult:
        """Write a new repository from the template.

        Raises:
            InvalidState: Target directory is not empty, or two template
                paths rewrite to the same target path
            MissingReplacement: A pattern references an unset key
        """
        target_dir = Path(target_dir)
        if target_dir.exists() and any(target_dir.iterdir()):
            raise InvalidState(f"Target directory {target_dir} is not empty")

        revision = self.published_revision()
        engine = self.engine_for(replacements)
        planned, skipped_optional = plan_files(
            self.template, self.store.list_files(revision), engine, include_optional
        )

        target_dir.mkdir(parents=True, exist_ok=True)
        record = new_generated_record(
            name or target_dir.name, self.template, self.origin, replacements
        )
        record.revision_anchor = revision

        result = GenerateResult(target_dir, revision, self.template.rev_id, skipped_optional=skipped_optional)
        for path, target_path, tag in planned:
            self._write(revision, path, target_dir / target_path, engine)
            record.classify(target_path, tag)
            result.files.append((path, target_path))
            logger.debug(f"Generated {target_path}")

        record.record_event("generate")
        DeltaStore(target_dir).save(record)
        logger.info(f"Generated {len(result.files)} file(s) from {self.origin} rev {self.template.rev_id}")

        if init_repo:
            target_store = GitStore(target_dir, git_binary=getattr(self.store, 'git_binary', 'git'))
            target_store.init("main")
            result.commit = target_store.commit_all(
                f"Generate project from {self.template.name or self.origin} rev {self.template.rev_id}"
            )
        return result

    def _write(self, revision: str, path: str, target: Path, engine: PatternEngine) -> None:
        content = self.store.read_blob(revision, path)
        mode = self.store.file_mode(revision, path)
        target.parent.mkdir(parents=True, exist_ok=True)

        if mode == SYMLINK_MODE:
            link = content.decode('utf-8', 'surrogateescape')
            os.symlink(engine.rewrite(link), target)
            return

        try:
            text = content.decode('utf-8')
        except UnicodeDecodeError:
            target.write_bytes(content)
        else:
            target.write_bytes(engine.rewrite(text).encode('utf-8'))

        if mode == EXECUTABLE_MODE:
            target.chmod(target.stat().st_mode | 0o111)

    def install(self, target_dir: Path, replacements: Dict[str, str], force: bool = False) -> DeltaRecord:
        """Adopt the template in an existing repository.

        The anchor is set to the published revision, so the repository is
        assumed to already match it. Template files present in the target
        (after path rewriting) become tracked; everything else stays
        user-owned until the template adds it.
        """
        target_dir = Path(target_dir)
        revision = self.published_revision()
        engine = self.engine_for(replacements)
        planned, _ = plan_files(self.template, self.store.list_files(revision), engine)

        record = new_generated_record(target_dir.name, self.template, self.origin, replacements)
        record.revision_anchor = revision
        for _, target_path, tag in planned:
            if (target_dir / target_path).exists():
                record.classify(target_path, tag)
        record.record_event("install")

        DeltaStore(target_dir).create(record, force=force)
        return record

"""Re-apply a generated repository's replacements to its tracked files."""
import fnmatch
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from gut.core.delta_store import DeltaRecord, is_internal_path
from gut.core.errors import InvalidState
from gut.core.logger import get_logger
from gut.core.patterns import PatternEngine

logger = get_logger(__name__)


@dataclass
class RefreshResult:
    changed: List[str] = field(default_factory=list)
    skipped_binary: List[str] = field(default_factory=list)
    dry_run: bool = False


def matches_any(path: str, patterns: Optional[List[str]]) -> bool:
    """Glob match where ``**`` spans directories and bare names match suffixes."""
    if not patterns:
        return True
    for pattern in patterns:
        if fnmatch.fnmatchcase(path, pattern.replace("**/", "*")) or fnmatch.fnmatchcase(path, pattern):
            return True
        if "*" not in pattern and (path == pattern or path.endswith("/" + pattern)):
            return True
    return False


def refresh_repository(
    repo_dir: Path,
    store,
    record: DeltaRecord,
    dry_run: bool = False,
    file_patterns: Optional[List[str]] = None,
) -> RefreshResult:
    """Rewrite placeholders left in tracked text files.

    Raises:
        InvalidState: If the record is not a generated record or has no replacements
        MissingReplacement: If a matching rule references an unset key
    """
    if record.is_template:
        raise InvalidState("refresh only applies to generated repositories")
    if not record.replacements:
        raise InvalidState("No replacements defined in the delta record")

    engine = PatternEngine(record.patterns, record.replacements)
    result = RefreshResult(dry_run=dry_run)

    for path in store.list_files():
        if is_internal_path(path) or not matches_any(path, file_patterns):
            continue

        file_path = Path(repo_dir) / path
        if file_path.is_symlink() or not file_path.is_file():
            continue

        content = file_path.read_bytes()
        if b"\0" in content:
            result.skipped_binary.append(path)
            continue
        try:
            text = content.decode('utf-8')
        except UnicodeDecodeError:
            result.skipped_binary.append(path)
            continue

        new_text = engine.rewrite(text)
        if new_text == text:
            continue

        result.changed.append(path)
        if not dry_run:
            file_path.write_bytes(new_text.encode('utf-8'))
            logger.debug(f"Refreshed {path}")

    return result

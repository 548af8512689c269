"""Resolve a template reference to a local template checkout."""
import re
from pathlib import Path

from gut.core.config import GutConfig
from gut.core.delta_store import RECORD_RELPATH, DeltaRecord, parse_record
from gut.core.errors import InvalidState, NotFound
from gut.core.logger import get_logger
from gut.services.git_store import GitStore

logger = get_logger(__name__)

_SCP_LIKE_RE = re.compile(r"^[\w.-]+@[\w.-]+:.+")


def is_remote(ref: str) -> bool:
    return "://" in ref or bool(_SCP_LIKE_RE.match(ref))


def cache_name(url: str) -> str:
    """Directory name for a cached clone, e.g. ``org__repo``."""
    tail = re.split(r"[:/]", url.rstrip("/"))
    parts = [p for p in tail if p][-2:]
    name = "__".join(parts)
    return name[:-4] if name.endswith(".git") else name


def resolve_template_dir(ref: str, config: GutConfig) -> Path:
    """Find (or fetch) the template repository a reference names.

    Args:
        ref: Local path, git URL, ``org/name`` or bare ``name``
        config: Supplies the checkout root, default organisation and cache

    Raises:
        NotFound: If nothing matches the reference
    """
    path = Path(ref).expanduser()
    if path.is_dir():
        return path.resolve()

    if is_remote(ref):
        dest = config.template_cache / cache_name(ref)
        GitStore(dest, git_binary=config.git_binary).clone_or_update(ref)
        return dest

    parts = ref.strip("/").split("/")
    if len(parts) == 2:
        candidate = config.root / parts[0] / parts[1]
    elif len(parts) == 1 and config.default_organisation:
        candidate = config.root / config.default_organisation / parts[0]
    else:
        candidate = None

    if candidate is not None and candidate.is_dir():
        return candidate

    raise NotFound(f"Template '{ref}'", str(candidate) if candidate else None)


def template_origin(ref: str) -> str:
    """The reference to store in a generated record.

    Local directories are stored as absolute paths so ``apply`` finds the
    template from any working directory. URLs and ``org/name`` references
    are stored as given.
    """
    if is_remote(ref):
        return ref
    path = Path(ref).expanduser()
    return str(path.resolve()) if path.is_dir() else ref


def load_published_record(store: GitStore) -> DeltaRecord:
    """Load the template record committed at HEAD.

    Uncommitted edits to ``.gut/delta.yml`` in the template checkout are
    not published and do not affect generated repositories.

    Raises:
        NotFound: If HEAD does not contain a delta record
        InvalidState: If the committed record is not a template record
    """
    source = f"{store.repo_dir}@HEAD:{RECORD_RELPATH}"
    if store.current_revision() is None or RECORD_RELPATH not in store.list_files("HEAD"):
        raise NotFound("Committed template record", source)

    record = parse_record(store.read_blob("HEAD", RECORD_RELPATH).decode("utf-8"), source=source)
    if not record.is_template:
        raise InvalidState(f"{store.repo_dir} is a generated repository, not a template")
    return record


def open_template(ref: str, config: GutConfig):
    """Resolve a reference and load the template's store and published record.

    Returns:
        (template_dir, GitStore, template DeltaRecord)
    """
    template_dir = resolve_template_dir(ref, config)
    store = GitStore(template_dir, git_binary=config.git_binary)
    record = load_published_record(store)
    logger.debug(f"Using template {ref} at {template_dir} (rev {record.rev_id})")
    return template_dir, store, record

"""Logging for gut.

Every module logs through ``get_logger(__name__)``. Records from the whole
``gut`` hierarchy end up on one rich handler writing to stderr, so command
output on stdout stays clean. ``--verbose`` and ``--log-file`` only touch
the ``gut`` logger.
"""
import logging
import tempfile
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_NAME = "gut"
DEFAULT_LOG_FILE = Path.home() / ".local" / "state" / "gut" / "gut.log"
FILE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

console = Console(stderr=True)


def _root_logger() -> logging.Logger:
    root = logging.getLogger(ROOT_NAME)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(console=console, show_path=False, show_time=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
        root.setLevel(logging.INFO)
        root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    """Return a logger inside the ``gut`` hierarchy.

    Names outside it (e.g. ``__main__``) are nested under ``gut.`` so they
    share its handlers and level.
    """
    _root_logger()
    if name != ROOT_NAME and not name.startswith(ROOT_NAME + "."):
        name = f"{ROOT_NAME}.{name}"
    return logging.getLogger(name)


def set_verbose(verbose: bool) -> None:
    _root_logger().setLevel(logging.DEBUG if verbose else logging.INFO)


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> Path:
    """Mirror gut's log records into a plain text file.

    Args:
        log_file: Path to log file (defaults to ~/.local/state/gut/gut.log)
        verbose: Write DEBUG records too

    Returns:
        The file actually written, which is in the system temp directory
        when the requested directory cannot be created.
    """
    root = _root_logger()
    target = Path(log_file) if log_file else DEFAULT_LOG_FILE
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        target = Path(tempfile.gettempdir()) / "gut.log"

    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == target.absolute():
            return target

    handler = logging.FileHandler(target)
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)
    root.debug(f"Logging to {target}")
    return target

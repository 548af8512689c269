"""External collaborators used by the template engine."""
from .git_store import GitStore

__all__ = ['GitStore']

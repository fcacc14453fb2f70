"""PR document store: one markdown file with YAML front matter per tracked PR."""

from otto.store.lock import FileLock, LockTimeoutError
from otto.store.pr_store import (
    CorruptDocumentError,
    PRNotFoundError,
    PRStore,
    parse_document,
    render_document,
)
from otto.store.schemas import PRDocument

__all__ = [
    "CorruptDocumentError",
    "FileLock",
    "LockTimeoutError",
    "PRDocument",
    "PRNotFoundError",
    "PRStore",
    "parse_document",
    "render_document",
]

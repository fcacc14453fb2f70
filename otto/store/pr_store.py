"""PR documents in {store_dir}/{provider}__{id}.md.

Each file is YAML front matter between ``---`` lines followed by the markdown
activity log. Every read and write holds an advisory lock on the file's
``.lock`` sibling, so ``otto pr`` commands and the daemon can interleave.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, List

import yaml

from otto.store.lock import LOCK_TIMEOUT, FileLock
from otto.store.schemas import PRDocument

LOG = logging.getLogger("otto.store.pr_store")

FRONT_MATTER_DELIM = "---"
SUFFIX = ".md"


class PRNotFoundError(Exception):
    """No document for the requested PR."""


class CorruptDocumentError(Exception):
    """Document exists but cannot be parsed."""


def render_document(doc: PRDocument) -> str:
    """Front matter block, blank line, body."""
    raw = yaml.dump(
        doc.front_matter(),
        default_flow_style=False,
        allow_unicode=True,
        sort_keys=False,
        width=1000,
    )
    return f"{FRONT_MATTER_DELIM}\n{raw}{FRONT_MATTER_DELIM}\n\n{doc.body}"


def parse_document(text: str) -> PRDocument:
    """Inverse of render_document. Raises CorruptDocumentError."""
    lines = text.split("\n")
    if not lines or lines[0].strip() != FRONT_MATTER_DELIM:
        raise CorruptDocumentError("missing front matter")
    try:
        end = next(i for i in range(1, len(lines)) if lines[i].strip() == FRONT_MATTER_DELIM)
    except StopIteration as e:
        raise CorruptDocumentError("unterminated front matter") from e
    try:
        data = yaml.safe_load("\n".join(lines[1:end])) or {}
    except yaml.YAMLError as e:
        raise CorruptDocumentError(f"invalid front matter: {e}") from e
    if not isinstance(data, dict):
        raise CorruptDocumentError("front matter is not a mapping")
    body = "\n".join(lines[end + 1 :])
    if body.startswith("\n"):
        body = body[1:]
    try:
        return PRDocument.model_validate({**data, "body": body})
    except ValueError as e:
        raise CorruptDocumentError(str(e)) from e


class PRStore:
    """Lock-protected persistence of one PRDocument per (provider, id)."""

    def __init__(self, store_dir: Path, lock_timeout: float = LOCK_TIMEOUT) -> None:
        self.store_dir = Path(store_dir)
        self.lock_timeout = lock_timeout

    def path_for(self, provider: str, pr_id: str) -> Path:
        return self.store_dir / f"{provider}__{pr_id}{SUFFIX}"

    def _lock(self, path: Path, exclusive: bool) -> FileLock:
        return FileLock(path, exclusive=exclusive, timeout=self.lock_timeout)

    def exists(self, provider: str, pr_id: str) -> bool:
        return self.path_for(provider, pr_id).is_file()

    @staticmethod
    def _require(path: Path) -> None:
        # Checked before locking too, so a missing PR leaves no lock file behind
        if not path.is_file():
            raise PRNotFoundError(f"no tracked PR at {path}")

    def _read(self, path: Path) -> PRDocument:
        self._require(path)
        return parse_document(path.read_text(encoding="utf-8"))

    def _write(self, path: Path, doc: PRDocument) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(render_document(doc))
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def load(self, provider: str, pr_id: str) -> PRDocument:
        """Load one document. Raises PRNotFoundError, CorruptDocumentError, LockTimeoutError."""
        path = self.path_for(provider, pr_id)
        self._require(path)
        with self._lock(path, exclusive=False):
            return self._read(path)

    def save(self, doc: PRDocument) -> Path:
        """Atomically write the document (temp file + rename)."""
        path = self.path_for(doc.provider, doc.id)
        with self._lock(path, exclusive=True):
            self._write(path, doc)
        LOG.debug("Saved PR %s to %s", doc.key, path)
        return path

    def update(self, provider: str, pr_id: str, fn: Callable[[PRDocument], None]) -> PRDocument:
        """Locked read-modify-write; fn mutates the document in place.

        Raises PRNotFoundError when the document is gone; it is never recreated.
        """
        path = self.path_for(provider, pr_id)
        self._require(path)
        with self._lock(path, exclusive=True):
            doc = self._read(path)
            fn(doc)
            self._write(path, doc)
        return doc

    def delete(self, provider: str, pr_id: str) -> None:
        """Remove the document and its lock file."""
        path = self.path_for(provider, pr_id)
        self._require(path)
        lock = self._lock(path, exclusive=True)
        with lock:
            self._require(path)
            path.unlink()
            lock.lock_path.unlink(missing_ok=True)
        LOG.info("Removed PR %s/%s", provider, pr_id)

    def list(self) -> List[PRDocument]:
        """All readable documents; corrupt ones are logged and skipped."""
        if not self.store_dir.is_dir():
            return []
        docs: List[PRDocument] = []
        for path in sorted(self.store_dir.glob(f"*__*{SUFFIX}")):
            try:
                with self._lock(path, exclusive=False):
                    docs.append(self._read(path))
            except (CorruptDocumentError, PRNotFoundError, OSError) as e:
                LOG.warning("Skipping unreadable PR document %s: %s", path.name, e)
        return docs

    def find(self, pr_id: str) -> PRDocument:
        """Find a PR by id across providers; ambiguous ids are rejected."""
        matches = [d for d in self.list() if d.id == pr_id]
        if not matches:
            raise PRNotFoundError(f"PR {pr_id} is not tracked")
        if len(matches) > 1:
            providers = ", ".join(d.provider for d in matches)
            raise PRNotFoundError(f"PR {pr_id} is tracked by several providers ({providers}); specify --provider")
        return matches[0]

"""Advisory file lock shared by the CLI and the daemon (fcntl.flock)."""

import fcntl
import time
import types
from pathlib import Path

LOCK_TIMEOUT = 5.0
POLL_INTERVAL = 0.1


class LockTimeoutError(Exception):
    """Raised when the lock is not acquired within the timeout."""


class FileLock:
    """Lock on ``{path}.lock``; shared for readers, exclusive for writers.

    Usage::

        with FileLock(path, exclusive=True):
            ...
    """

    def __init__(
        self,
        path: Path,
        exclusive: bool = True,
        timeout: float = LOCK_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.lock_path = Path(f"{path}.lock")
        self.exclusive = exclusive
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fh = None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.release()

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.lock_path, "a+")
        mode = (fcntl.LOCK_EX if self.exclusive else fcntl.LOCK_SH) | fcntl.LOCK_NB
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fh.fileno(), mode)
                self._fh = fh
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    fh.close()
                    raise LockTimeoutError(f"timed out after {self.timeout}s waiting for lock {self.lock_path}")
                time.sleep(self.poll_interval)

    def release(self) -> None:
        if self._fh is None:
            return
        try:
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._fh.close()
            self._fh = None

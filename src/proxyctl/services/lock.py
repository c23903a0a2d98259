"""Host-wide exclusive lock.

Every operation on the rule tables runs while holding an flock on one
well-known path. A second invocation blocks until the first finishes;
there is no timeout. The lock file's content is never read.
"""

import fcntl
import os
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from proxyctl.core.exceptions import LockError
from proxyctl.core.output import Console, console as default_console


T = TypeVar("T")


class ExclusivityLock:
    """Blocking exclusive lock bound to ``path``.

    Usable as a context manager; not re-entrant. The controller accepts
    any context manager in its place, so tests can pass a
    ``threading.Lock``.
    """

    def __init__(self, path: Path, console: Optional[Console] = None) -> None:
        self.path = Path(path)
        self.console = console or default_console
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise LockError(
                f"Cannot open lock file: {self.path}",
                hint="Run with sudo or set lock_path in the config",
                details=[str(e)],
            ) from e

        self.console.debug(f"Waiting for lock {self.path}")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as e:
            os.close(fd)
            raise LockError(f"Cannot lock {self.path}", details=[str(e)]) from e

        self._fd = fd
        self.console.debug(f"Acquired lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        self.console.debug(f"Released lock {self.path}")

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "ExclusivityLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()

    def run(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``operation`` while holding the lock."""
        with self:
            return operation(*args, **kwargs)

"""Advisory file lock guarding the local store."""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path

from secretbroker.utils.decorators import retry
from secretbroker.utils.logging import get_logger
from secretbroker.vault.exceptions import StoreLockTimeoutError

logger = get_logger(__name__)


class StoreLock:
    """
    Single-writer/multiple-reader lock on a lock file next to the store.

    Each acquisition opens its own file descriptor, so threads of one
    process contend with each other exactly like separate processes do.

    Usage:
        lock = StoreLock(store_dir / ".lock")
        with lock.shared():
            ...read...
        with lock.exclusive():
            ...read-modify-write...
    """

    def __init__(
        self,
        path: Path,
        attempts: int = 20,
        delay: float = 0.01,
        backoff: float = 1.5,
    ):
        self.path = Path(path)
        self.attempts = attempts
        self.delay = delay
        self.backoff = backoff

    @contextmanager
    def shared(self):
        with self._hold(fcntl.LOCK_SH):
            yield

    @contextmanager
    def exclusive(self):
        with self._hold(fcntl.LOCK_EX):
            yield

    @contextmanager
    def _hold(self, mode: int):
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            self._acquire(fd, mode)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _acquire(self, fd: int, mode: int) -> None:
        @retry(
            max_attempts=self.attempts,
            delay=self.delay,
            backoff=self.backoff,
            exceptions=(BlockingIOError,),
        )
        def take_lock():
            fcntl.flock(fd, mode | fcntl.LOCK_NB)

        try:
            take_lock()
        except BlockingIOError as e:
            kind = "exclusive" if mode == fcntl.LOCK_EX else "shared"
            raise StoreLockTimeoutError(
                f"Could not acquire {kind} lock on {self.path} "
                f"after {self.attempts} attempts"
            ) from e

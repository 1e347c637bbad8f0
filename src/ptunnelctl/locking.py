"""Advisory file locks that keep provisioning runs from overlapping."""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "ptunnelctl"
POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout elapses."""


@dataclass(slots=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Hand out exclusive ``fcntl`` locks stored under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Record the lock directory and the default acquisition timeout."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str = GLOBAL_LOCK_NAME) -> Path:
        """Return the lockfile path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def exclusive(
        self,
        name: str = GLOBAL_LOCK_NAME,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the named lock for the duration of the block."""
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            }
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, (json.dumps(metadata) + "\n").encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]

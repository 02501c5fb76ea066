"""File-based locking primitives for sitectl.

Two kinds of locks live under the runtime directory:

* ``sitectl.lock`` guards every read-compute-write cycle against the site
  registry. It is held only for the duration of a single registry mutation.
* ``sites/<domain>.lock`` serialises provisioning workflows for one domain
  while collaborator calls (nginx reload, certbot, systemctl, git) run.

When both are needed the per-site lock is always taken first. Locks use
``fcntl.flock`` on dedicated files so they exclude other processes as well as
other threads that open the same file. Lock files are left behind after
release with JSON metadata describing the last holder for diagnostics.
"""
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

GLOBAL_LOCK_NAME = "sitectl.lock"
_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock file cannot be created or opened."""


class LockTimeoutError(LockError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and the time spent waiting for it."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire global and per-site locks below *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout (seconds)."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = float(default_timeout)

    @property
    def global_lock_path(self) -> Path:
        """Return the path of the registry-wide lock file."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    def site_lock_path(self, domain: str) -> Path:
        """Return the lock file path for *domain*."""
        safe = domain.strip().replace("/", "-")
        return self.runtime_dir / "sites" / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the registry-wide lock for the duration of the block."""
        with self._acquire(self.global_lock_path, timeout) as handle:
            yield handle

    @contextmanager
    def site_lock(self, domain: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for *domain* for the duration of the block."""
        with self._acquire(self.site_lock_path(domain), timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc
        started = time.monotonic()
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
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path, wait_ms)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path, wait_ms: int) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
        "wait_ms": wait_ms,
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError", "GLOBAL_LOCK_NAME"]

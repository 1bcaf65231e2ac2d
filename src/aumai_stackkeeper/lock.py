"""Singleton-execution guard backed by a PID file."""

from __future__ import annotations

import atexit
import os
import time
from collections.abc import Callable
from pathlib import Path

import psutil

from .logging import get_logger
from .models import LockRecord

__all__ = ["LockManager"]

log = get_logger("aumai_stackkeeper.lock")


class LockManager:
    """
    At most one live run per host.

    A record whose owner process is gone (or whose content is unreadable) is
    reclaimed immediately.  A record held by a live owner is waited on for at
    most ``wait_seconds``; after that ``acquire()`` gives up and returns
    ``False`` instead of breaking the other run's exclusion.

    Failing to *write* the record is not fatal: ``acquire()`` still returns
    ``True`` and the run proceeds unlocked (``held`` stays ``False``).
    """

    def __init__(
        self,
        path: str,
        wait_seconds: float = 60.0,
        interval: float = 2.0,
        pid: int | None = None,
        pid_alive: Callable[[int], bool] = psutil.pid_exists,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = Path(path)
        self.wait_seconds = wait_seconds
        self.interval = interval
        self.pid = pid if pid is not None else os.getpid()
        self.held = False
        self._pid_alive = pid_alive
        self._sleep = sleep

    def read(self) -> LockRecord | None:
        """Return the current record, or ``None`` if absent or unreadable."""
        try:
            text = self.path.read_text(encoding="utf-8").strip()
            return LockRecord(owner_pid=int(text))
        except (OSError, ValueError):
            return None

    def _remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.warning("lock_remove_failed", path=str(self.path), error=str(exc))

    def acquire(self) -> bool:
        waited = 0.0
        while self.path.exists():
            record = self.read()
            if record is None or record.owner_pid == self.pid:
                log.warning("lock_unreadable_or_ours", path=str(self.path))
                self._remove()
                break
            if not self._pid_alive(record.owner_pid):
                log.warning("lock_stale", owner_pid=record.owner_pid)
                self._remove()
                break
            if waited >= self.wait_seconds:
                log.error(
                    "lock_held",
                    owner_pid=record.owner_pid,
                    waited=waited,
                    path=str(self.path),
                )
                return False
            log.info(
                "lock_waiting",
                owner_pid=record.owner_pid,
                waited=waited,
                max_wait=self.wait_seconds,
            )
            self._sleep(self.interval)
            waited += self.interval

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(f"{self.pid}\n", encoding="utf-8")
        except OSError as exc:
            log.warning("lock_write_failed", path=str(self.path), error=str(exc))
            return True
        self.held = True
        atexit.register(self.release)
        log.debug("lock_acquired", pid=self.pid, path=str(self.path))
        return True

    def release(self) -> None:
        """Remove the record if it is ours.  Never raises."""
        if not self.held:
            return
        atexit.unregister(self.release)
        record = self.read()
        if record is None or record.owner_pid == self.pid:
            self._remove()
        self.held = False

    def __enter__(self) -> LockManager:
        self.acquire()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.release()

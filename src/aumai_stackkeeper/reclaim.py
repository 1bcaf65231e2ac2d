"""Terminate processes holding a port or matching a name pattern."""

from __future__ import annotations

import os
import re
import signal
import socket
import subprocess
import time
from collections.abc import Callable, Sequence

import psutil

from .logging import get_logger

__all__ = ["PidFinder", "Reclaimer", "port_in_use"]

log = get_logger("aumai_stackkeeper.reclaim")

PidFinder = Callable[[int], set[int]]


def port_in_use(port: int, host: str = "127.0.0.1", timeout: float = 2.0) -> bool:
    """True if something accepts a TCP connection on *host*:*port*."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _fuser_pids(port: int) -> set[int]:
    """PIDs with a socket on *port* according to ``fuser``."""
    try:
        proc = subprocess.run(
            ["fuser", "-n", "tcp", str(port)],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return set()
    return {int(tok) for tok in re.findall(r"\b(\d+)\b", proc.stdout)}


def _connection_table_pids(port: int) -> set[int]:
    """Listener PIDs from the system-wide connection table."""
    try:
        conns = psutil.net_connections(kind="tcp")
    except (psutil.AccessDenied, OSError):
        return set()
    return {
        c.pid
        for c in conns
        if c.pid and c.laddr and c.laddr.port == port and c.status == psutil.CONN_LISTEN
    }


def _process_sweep_pids(port: int) -> set[int]:
    """Listener PIDs found by walking each process's own socket table."""
    pids: set[int] = set()
    for proc in psutil.process_iter(["pid"]):
        try:
            for c in proc.net_connections(kind="tcp"):
                if c.laddr and c.laddr.port == port and c.status == psutil.CONN_LISTEN:
                    pids.add(proc.pid)
                    break
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return pids


def _send_signal(pid: int, sig: int) -> None:
    os.kill(pid, sig)


class Reclaimer:
    """
    Best-effort, non-fatal reclamation of ports and processes.

    ``reclaim_port`` applies each finder in order: ``fuser`` lookup with a
    graceful signal, then the connection table and a per-process sweep with
    ``SIGKILL``.  The orchestrator's own PID is never signalled.
    """

    def __init__(
        self,
        self_pid: int | None = None,
        settle: float = 1.0,
        finders: Sequence[tuple[str, PidFinder, int]] | None = None,
        kill: Callable[[int, int], None] = _send_signal,
        is_port_in_use: Callable[[int], bool] = port_in_use,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.self_pid = self_pid if self_pid is not None else os.getpid()
        self.settle = settle
        self.finders = list(finders) if finders is not None else [
            ("fuser", _fuser_pids, signal.SIGTERM),
            ("connection_table", _connection_table_pids, signal.SIGKILL),
            ("process_sweep", _process_sweep_pids, signal.SIGKILL),
        ]
        self._kill = kill
        self._in_use = is_port_in_use
        self._sleep = sleep

    def _signal(self, pid: int, sig: int) -> bool:
        if pid == self.self_pid:
            return False
        try:
            self._kill(pid, sig)
        except ProcessLookupError:
            return False
        except OSError as exc:
            log.debug("signal_failed", pid=pid, sig=int(sig), error=str(exc))
            return False
        return True

    def reclaim_port(self, port: int) -> set[int]:
        """Signal every process holding *port*.  Returns the PIDs signalled."""
        signalled: set[int] = set()
        for name, finder, sig in self.finders:
            try:
                pids = finder(port)
            except Exception as exc:  # finders wrap OS tools; never fatal
                log.debug("port_finder_failed", method=name, port=port, error=str(exc))
                continue
            pids.discard(self.self_pid)
            for pid in sorted(pids):
                if self._signal(pid, sig):
                    signalled.add(pid)
            if pids:
                log.info("port_reclaimed", method=name, port=port, pids=sorted(pids))
            self._sleep(self.settle)
        return signalled

    def verify_free(self, port: int, attempts: int = 5, pause: float = 2.0) -> bool:
        """Advisory: ``False`` only if *port* is still busy after all attempts."""
        for attempt in range(1, attempts + 1):
            if not self._in_use(port):
                return True
            if attempt == attempts:
                break
            log.debug("port_still_occupied", port=port, attempt=attempt, attempts=attempts)
            self.reclaim_port(port)
            self._sleep(pause)
        log.warning("port_not_free", port=port, attempts=attempts)
        return False

    def reclaim_processes(
        self,
        pattern: str,
        exclude_pid: int | None = None,
        grace: float = 3.0,
    ) -> list[int]:
        """SIGTERM processes whose command line matches *pattern*, then
        SIGKILL the survivors after *grace* seconds."""
        excluded = {self.self_pid}
        if exclude_pid is not None:
            excluded.add(exclude_pid)
        regex = re.compile(pattern)
        targets: list[psutil.Process] = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            if proc.info["pid"] in excluded:
                continue
            text = " ".join(proc.info.get("cmdline") or []) or (proc.info.get("name") or "")
            if regex.search(text):
                targets.append(proc)

        if not targets:
            log.debug("no_matching_processes", pattern=pattern)
            return []

        for proc in targets:
            try:
                proc.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        _, alive = psutil.wait_procs(targets, timeout=grace)
        for proc in alive:
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        pids = [p.pid for p in targets]
        log.info("processes_reclaimed", pattern=pattern, pids=pids, forced=[p.pid for p in alive])
        return pids

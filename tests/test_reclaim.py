"""Tests for aumai_stackkeeper.reclaim."""

from __future__ import annotations

import os
import signal
import socket
from collections.abc import Iterator

import psutil
import pytest

from aumai_stackkeeper import reclaim as reclaim_module
from aumai_stackkeeper.reclaim import Reclaimer, port_in_use


@pytest.fixture()
def listener() -> Iterator[socket.socket]:
    """A mock service listening on an ephemeral loopback port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    yield sock
    sock.close()


# ---------------------------------------------------------------------------
# Port reclamation
# ---------------------------------------------------------------------------


class TestReclaimPort:
    def test_convergence_and_self_exclusion(self, listener: socket.socket) -> None:
        port = listener.getsockname()[1]
        me = os.getpid()
        signalled: list[tuple[int, int]] = []

        def kill(pid: int, sig: int) -> None:
            signalled.append((pid, sig))
            if pid == 4242:
                listener.close()

        reclaimer = Reclaimer(
            self_pid=me,
            settle=0,
            finders=[("table", lambda p: {me, 4242} if p == port else set(), signal.SIGKILL)],
            kill=kill,
            sleep=lambda _: None,
        )
        assert port_in_use(port)
        assert reclaimer.verify_free(port, attempts=5, pause=0) is True
        assert (4242, signal.SIGKILL) in signalled
        assert all(pid != me for pid, _ in signalled)

    def test_verify_free_when_nothing_listens(self) -> None:
        calls: list[int] = []
        reclaimer = Reclaimer(
            self_pid=1, finders=[], is_port_in_use=lambda p: False, sleep=lambda _: None
        )
        reclaimer.reclaim_port = lambda port: calls.append(port) or set()  # type: ignore[method-assign]
        assert reclaimer.verify_free(11434) is True
        assert calls == []

    def test_verify_free_gives_up_after_attempts(self) -> None:
        checks: list[int] = []

        def busy(port: int) -> bool:
            checks.append(port)
            return True

        reclaimer = Reclaimer(self_pid=1, settle=0, finders=[], is_port_in_use=busy, sleep=lambda _: None)
        assert reclaimer.verify_free(8080, attempts=5, pause=0) is False
        assert len(checks) == 5

    def test_methods_run_in_order_and_failures_are_not_fatal(self) -> None:
        order: list[str] = []

        def failing(port: int) -> set[int]:
            order.append("fuser")
            raise FileNotFoundError("fuser")

        def table(port: int) -> set[int]:
            order.append("table")
            return {10}

        def sweep(port: int) -> set[int]:
            order.append("sweep")
            return {11}

        killed: list[int] = []
        reclaimer = Reclaimer(
            self_pid=1,
            settle=0,
            finders=[
                ("fuser", failing, signal.SIGTERM),
                ("table", table, signal.SIGKILL),
                ("sweep", sweep, signal.SIGKILL),
            ],
            kill=lambda pid, sig: killed.append(pid),
            sleep=lambda _: None,
        )
        assert reclaimer.reclaim_port(11434) == {10, 11}
        assert order == ["fuser", "table", "sweep"]
        assert killed == [10, 11]

    def test_vanished_process_is_ignored(self) -> None:
        def kill(pid: int, sig: int) -> None:
            raise ProcessLookupError(pid)

        reclaimer = Reclaimer(
            self_pid=1,
            settle=0,
            finders=[("table", lambda p: {10}, signal.SIGKILL)],
            kill=kill,
            sleep=lambda _: None,
        )
        assert reclaimer.reclaim_port(11434) == set()


# ---------------------------------------------------------------------------
# Process reclamation
# ---------------------------------------------------------------------------


class _FakeProc:
    def __init__(self, pid: int, cmdline: list[str]) -> None:
        self.pid = pid
        self.info = {"pid": pid, "name": cmdline[0], "cmdline": cmdline}
        self.terminated = False
        self.killed = False

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.killed = True


class TestReclaimProcesses:
    def test_terminates_matches_and_kills_survivors(self, monkeypatch: pytest.MonkeyPatch) -> None:
        me = _FakeProc(100, ["/usr/local/bin/ollama", "serve"])
        serve = _FakeProc(200, ["/usr/local/bin/ollama", "serve"])
        runner = _FakeProc(201, ["ollama", "runner", "--model", "x"])
        stubborn = _FakeProc(202, ["ollama", "serve"])
        other = _FakeProc(300, ["python3", "app.py"])
        procs = [me, serve, runner, stubborn, other]
        monkeypatch.setattr(reclaim_module.psutil, "process_iter", lambda attrs=None: iter(procs))
        monkeypatch.setattr(
            reclaim_module.psutil,
            "wait_procs",
            lambda targets, timeout=None: ([p for p in targets if p is not stubborn], [stubborn]),
        )

        reclaimer = Reclaimer(self_pid=100, settle=0, sleep=lambda _: None)
        pids = reclaimer.reclaim_processes(r"(^|/)ollama(\s|$)", exclude_pid=100)

        assert pids == [200, 201, 202]
        assert not me.terminated and not me.killed
        assert not other.terminated
        assert serve.terminated and not serve.killed
        assert stubborn.killed

    def test_explicit_exclusion(self, monkeypatch: pytest.MonkeyPatch) -> None:
        excluded = _FakeProc(555, ["ollama", "serve"])
        monkeypatch.setattr(reclaim_module.psutil, "process_iter", lambda attrs=None: iter([excluded]))
        reclaimer = Reclaimer(self_pid=1)
        assert reclaimer.reclaim_processes("ollama", exclude_pid=555) == []
        assert not excluded.terminated

    def test_access_denied_is_tolerated(self, monkeypatch: pytest.MonkeyPatch) -> None:
        proc = _FakeProc(10, ["ollama", "serve"])

        def deny() -> None:
            raise psutil.AccessDenied(10)

        proc.terminate = deny  # type: ignore[method-assign]
        monkeypatch.setattr(reclaim_module.psutil, "process_iter", lambda attrs=None: iter([proc]))
        monkeypatch.setattr(reclaim_module.psutil, "wait_procs", lambda targets, timeout=None: (targets, []))
        assert Reclaimer(self_pid=1).reclaim_processes("ollama") == [10]

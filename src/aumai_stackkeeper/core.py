"""Core orchestration pipeline for aumai-stackkeeper."""

from __future__ import annotations

import os
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from .assets import AssetDirectoryResolver, default_candidates, list_manifests
from .config import OrchestrationContext, Settings, invoking_user_home
from .derive import DerivationPipeline
from .drivers import (
    Accelerator,
    ContainerEngine,
    DockerEngine,
    GitHubReleaseFeed,
    OllamaDriver,
    ReleaseFeed,
    RuntimeDriver,
    SystemdDropIn,
)
from .errors import StackKeeperError
from .health import HealthProbe
from .lifecycle import ContainerLifecycle, RuntimeLifecycle
from .lock import LockManager
from .logging import get_logger
from .models import (
    AssetDirectory,
    PhaseOutcome,
    PhaseStatus,
    RunReport,
    ServiceKind,
    VersionDecision,
    VersionState,
)
from .report import StatusReporter
from .reclaim import Reclaimer
from .versions import compare_container, compare_runtime

__all__ = [
    "CancellationToken",
    "Orchestrator",
    "cancellation_signals",
]

log = get_logger("aumai_stackkeeper.core")

T = TypeVar("T")


class CancellationToken:
    """Set once by a signal handler; checked before every abortable phase."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self, signum: int | None = None, frame: Any = None) -> None:
        if not self._event.is_set():
            log.warning("cancellation_requested", signal=signum)
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@contextmanager
def cancellation_signals(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT/SIGTERM/SIGHUP to *token* for the duration of a run."""
    if threading.current_thread() is not threading.main_thread():
        yield token
        return
    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
        previous[sig] = signal.signal(sig, token.cancel)
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


class Orchestrator:
    """
    Runs the strictly sequential phase pipeline:

    lock -> resolve -> versions -> reclaim -> update -> configure -> derive
    -> ensure runtime -> ensure container -> report -> unlock

    Every phase yields a ``PhaseOutcome``; no phase failure stops the
    pipeline.  Phases before any teardown are abortable.  Once a service
    has been torn down, the phases that bring it back run even after
    cancellation.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        runtime_driver: RuntimeDriver | None = None,
        engine: ContainerEngine | None = None,
        feed: ReleaseFeed | None = None,
        reclaimer: Reclaimer | None = None,
        probe: HealthProbe | None = None,
        accelerator: Accelerator | None = None,
        dropin: SystemdDropIn | None = None,
        resolver: AssetDirectoryResolver | None = None,
        lock: LockManager | None = None,
        token: CancellationToken | None = None,
        self_pid: int | None = None,
    ) -> None:
        self.settings = settings
        self.self_pid = self_pid if self_pid is not None else os.getpid()
        self.runtime_driver = runtime_driver or OllamaDriver(
            base_url=settings.runtime_url,
            binary=settings.runtime_binary,
            install_command=settings.install_command,
            http_timeout=settings.http_timeout,
            self_pid=self.self_pid,
        )
        self.engine = engine or DockerEngine()
        self.feed = feed or GitHubReleaseFeed(settings.release_feed_url)
        self.reclaimer = reclaimer or Reclaimer(self_pid=self.self_pid)
        self.probe = probe or HealthProbe(timeout=settings.http_timeout)
        self.accelerator = accelerator or Accelerator()
        self.dropin = dropin or SystemdDropIn(settings.dropin_path)
        self.resolver = resolver or AssetDirectoryResolver(
            default_candidates(
                invoking_user_home(settings.sudo_user),
                settings.models_hint,
                settings.sudo_user,
            )
        )
        self.lock = lock or LockManager(
            settings.lock_file,
            wait_seconds=settings.lock_wait_seconds,
            interval=settings.lock_interval,
            pid=self.self_pid,
        )
        self.token = token or CancellationToken()
        self.context: OrchestrationContext | None = None

    # ------------------------------------------------------------------
    # Phase plumbing
    # ------------------------------------------------------------------

    def _step(
        self,
        report: RunReport,
        phase: str,
        fn: Callable[[], tuple[PhaseOutcome, T]],
        default: T,
        abortable: bool = True,
    ) -> T:
        if abortable and self.token.cancelled:
            report.cancelled = True
            report.record(PhaseOutcome(phase=phase, status=PhaseStatus.SKIPPED, detail="cancelled"))
            return default
        log.info("phase_started", phase=phase)
        try:
            outcome, value = fn()
        except StackKeeperError as exc:
            log.error("phase_failed", phase=phase, error=str(exc))
            report.record(PhaseOutcome(phase=phase, status=PhaseStatus.FAILED, detail=str(exc)))
            return default
        except Exception as exc:
            log.exception("phase_crashed", phase=phase)
            report.record(
                PhaseOutcome(phase=phase, status=PhaseStatus.FAILED, detail=f"{type(exc).__name__}: {exc}")
            )
            return default
        report.record(outcome)
        log.info("phase_finished", phase=phase, status=outcome.status.value)
        return value

    def _build_context(self, assets: AssetDirectory) -> OrchestrationContext:
        return OrchestrationContext(
            settings=self.settings,
            assets=assets,
            self_pid=self.self_pid,
            gpu_memory_gb=self.accelerator.memory_gb(),
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _resolve(self, create: bool = True) -> tuple[PhaseOutcome, OrchestrationContext]:
        assets = self.resolver.resolve(create=create)
        if assets.source == "missing":
            ctx = self._build_context(assets)
            return PhaseOutcome(
                phase="resolve",
                status=PhaseStatus.DEGRADED,
                detail=f"no asset directory found; a run would create {assets.path}",
            ), ctx
        manifests = list_manifests(assets.path)
        for name in manifests[:20]:
            log.info("existing_manifest", model=name)
        if not os.access(assets.path, os.W_OK):
            log.warning("asset_dir_not_writable", path=assets.path)
        ctx = self._build_context(assets)
        status = PhaseStatus.SUCCESS
        detail = f"{assets.path} ({assets.manifest_count} manifests, {assets.blob_count} blobs)"
        if assets.created:
            status = PhaseStatus.DEGRADED
            detail = f"{assets.path} created; no existing models found"
        return PhaseOutcome(phase="resolve", status=status, detail=detail), ctx

    def _fallback_context(self) -> OrchestrationContext:
        first = self.resolver.candidates[0] if self.resolver.candidates else "/tmp/ollama/models"
        path = Path(os.path.expanduser(first))
        return self._build_context(AssetDirectory(path=str(path), source="fallback"))

    def _versions(self) -> tuple[PhaseOutcome, dict[ServiceKind, VersionState]]:
        runtime = compare_runtime(self.runtime_driver, self.feed)
        container = compare_container(
            self.engine, self.settings.webui_image, self.settings.webui_container
        )
        detail = f"runtime {runtime.decision.value}, container {container.decision.value}"
        return PhaseOutcome(phase="versions", status=PhaseStatus.SUCCESS, detail=detail), {
            ServiceKind.RUNTIME: runtime,
            ServiceKind.CONTAINER: container,
        }

    @staticmethod
    def _skip(phase: str, detail: str) -> tuple[PhaseOutcome, bool]:
        log.info("phase_skipped", phase=phase, reason=detail)
        return PhaseOutcome(phase=phase, status=PhaseStatus.SKIPPED, detail=detail), False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> RunReport:
        report = RunReport()
        log.info("run_started", pid=self.self_pid)
        if not self.lock.acquire():
            holder = self.lock.read()
            report.lock_refused = True
            report.record(
                PhaseOutcome(
                    phase="lock",
                    status=PhaseStatus.FAILED,
                    detail=f"held by pid {holder.owner_pid if holder else 'unknown'}",
                )
            )
            return report
        report.record(
            PhaseOutcome(
                phase="lock",
                status=PhaseStatus.SUCCESS if self.lock.held else PhaseStatus.DEGRADED,
                detail=str(self.lock.path) if self.lock.held else "lock file not writable; running unlocked",
            )
        )
        try:
            self._pipeline(report)
        finally:
            self.lock.release()
            log.info("run_finished", cancelled=report.cancelled)
        return report

    def _pipeline(self, report: RunReport) -> None:
        ctx = self._step(report, "resolve", self._resolve, None)
        if ctx is None:
            ctx = self._fallback_context()
        self.context = ctx

        runtime = RuntimeLifecycle(ctx, self.runtime_driver, self.reclaimer, self.probe, self.dropin)
        container = ContainerLifecycle(ctx, self.engine, self.reclaimer, self.probe)
        pipeline = DerivationPipeline(ctx, self.runtime_driver, self.probe, self.reclaimer)

        versions = self._step(
            report,
            "versions",
            self._versions,
            {
                ServiceKind.RUNTIME: VersionState(
                    service=ServiceKind.RUNTIME, decision=VersionDecision.UNDETERMINED
                ),
                ServiceKind.CONTAINER: VersionState(
                    service=ServiceKind.CONTAINER, decision=VersionDecision.UNDETERMINED
                ),
            },
        )
        runtime_needs = versions[ServiceKind.RUNTIME].needs_update
        container_needs = versions[ServiceKind.CONTAINER].needs_update

        def reclaim_runtime() -> tuple[PhaseOutcome, bool]:
            if not runtime_needs:
                return self._skip("runtime_reclaim", "no update needed")
            return runtime.prepare_update(), True

        def reclaim_container() -> tuple[PhaseOutcome, bool]:
            if not container_needs:
                return self._skip("container_reclaim", "no update needed")
            return container.prepare_update(), True

        runtime_down = self._step(report, "runtime_reclaim", reclaim_runtime, False)
        container_down = self._step(report, "container_reclaim", reclaim_container, False)

        def update_runtime() -> tuple[PhaseOutcome, None]:
            if not runtime_needs:
                return self._skip("runtime_update", "already latest")[0], None
            return runtime.update(), None

        self._step(report, "runtime_update", update_runtime, None, abortable=not runtime_down)
        self._step(
            report,
            "runtime_configure",
            lambda: (runtime.configure(), None),
            None,
            abortable=not runtime_down,
        )
        self._step(report, "derive", lambda: pipeline.run(runtime_needs), None)
        self._step(
            report,
            "runtime_ensure",
            lambda: runtime.ensure_running(runtime_needs),
            None,
            abortable=not runtime_down,
        )
        self._step(
            report,
            "container_ensure",
            lambda: container.ensure_running(container_needs),
            None,
            abortable=not container_down,
        )

        reporter = StatusReporter(ctx, runtime, container, self.runtime_driver, self.accelerator)
        self._step(
            report,
            "report",
            lambda: (
                PhaseOutcome(phase="report", status=PhaseStatus.SUCCESS),
                reporter.collect(report, versions),
            ),
            report,
            abortable=False,
        )
        if self.token.cancelled:
            report.cancelled = True

    def status(self) -> RunReport:
        """Report-only: resolve and re-probe without touching anything."""
        report = RunReport()
        ctx = self._step(report, "resolve", lambda: self._resolve(create=False), None)
        if ctx is None:
            ctx = self._fallback_context()
        self.context = ctx
        runtime = RuntimeLifecycle(ctx, self.runtime_driver, self.reclaimer, self.probe, self.dropin)
        container = ContainerLifecycle(ctx, self.engine, self.reclaimer, self.probe)
        StatusReporter(ctx, runtime, container, self.runtime_driver, self.accelerator).collect(report)
        return report

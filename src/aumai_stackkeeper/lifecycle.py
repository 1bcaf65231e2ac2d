"""Idempotent ensure-running semantics for the runtime and the container."""

from __future__ import annotations

from pathlib import Path

from .config import OrchestrationContext
from .drivers import ContainerEngine, ContainerInfo, ContainerSpec, RuntimeDriver, SystemdDropIn
from .errors import DriverError
from .health import HealthProbe
from .logging import get_logger
from .models import PhaseOutcome, PhaseStatus, ServiceState
from .reclaim import Reclaimer

__all__ = ["ContainerLifecycle", "RuntimeLifecycle", "RUNTIME_PROCESS_PATTERN"]

log = get_logger("aumai_stackkeeper.lifecycle")

RUNTIME_PROCESS_PATTERN = r"(^|/)ollama(\s|$)"
_DATA_MOUNT = "/app/backend/data"


class RuntimeLifecycle:
    """Lifecycle of the native inference runtime."""

    def __init__(
        self,
        ctx: OrchestrationContext,
        driver: RuntimeDriver,
        reclaimer: Reclaimer,
        probe: HealthProbe,
        dropin: SystemdDropIn | None = None,
    ) -> None:
        self.ctx = ctx
        self.driver = driver
        self.reclaimer = reclaimer
        self.probe = probe
        self.dropin = dropin or SystemdDropIn(ctx.settings.dropin_path)

    @property
    def health_url(self) -> str:
        return f"{self.ctx.settings.runtime_url}/api/tags"

    def observe(self) -> ServiceState:
        # A foreign listener on the port does not count as the runtime
        if not self.driver.process_running():
            return ServiceState.ABSENT
        if self.probe.check(self.health_url):
            return ServiceState.RUNNING_RESPONDING
        return ServiceState.RUNNING_NOT_RESPONDING

    def prepare_update(self) -> PhaseOutcome:
        """Stop every runtime process and free the API port."""
        self.driver.stop_service()
        self.reclaimer.reclaim_processes(RUNTIME_PROCESS_PATTERN, exclude_pid=self.ctx.self_pid)
        self.reclaimer.reclaim_port(self.ctx.settings.runtime_port)
        log.info("runtime_stopped_for_update")
        return PhaseOutcome(phase="runtime_reclaim", status=PhaseStatus.SUCCESS)

    def update(self) -> PhaseOutcome:
        before = self.driver.installed_version()
        try:
            self.driver.install()
        except DriverError as exc:
            log.warning("runtime_update_failed", error=str(exc))
            return PhaseOutcome(
                phase="runtime_update",
                status=PhaseStatus.DEGRADED,
                detail=f"install failed, continuing with current version: {exc}",
            )
        after = self.driver.installed_version()
        log.info("runtime_updated", before=before or "none", after=after or "unknown")
        return PhaseOutcome(
            phase="runtime_update",
            status=PhaseStatus.SUCCESS,
            detail=f"{before or 'none'} -> {after or 'unknown'}",
        )

    def configure(self) -> PhaseOutcome:
        """Persist the runtime environment so it survives restarts elsewhere."""
        try:
            changed = self.dropin.write(self.ctx.persistent_env())
        except DriverError as exc:
            log.warning("runtime_configure_failed", error=str(exc))
            return PhaseOutcome(phase="runtime_configure", status=PhaseStatus.DEGRADED, detail=str(exc))
        detail = f"drop-in {'written' if changed else 'unchanged'}: {self.dropin.path}"
        log.info("runtime_configured", path=str(self.dropin.path), changed=changed)
        return PhaseOutcome(phase="runtime_configure", status=PhaseStatus.SUCCESS, detail=detail)

    def start(self) -> tuple[bool, str]:
        """Spawn the long-lived runtime and wait for its API."""
        settings = self.ctx.settings
        self.reclaimer.reclaim_port(settings.runtime_port)
        self.reclaimer.verify_free(settings.runtime_port)
        try:
            pid = self.driver.spawn(self.ctx.runtime_env(), settings.runtime_log)
        except DriverError as exc:
            log.error("runtime_start_failed", error=str(exc))
            return False, f"start failed: {exc}"
        result = self.probe.wait_ready(
            self.health_url, settings.runtime_probe_attempts, settings.probe_interval
        )
        if not result.ready:
            return False, f"pid {pid} not responding after {result.attempts} attempts (see {settings.runtime_log})"
        return True, f"started pid {pid}"

    def preload(self) -> None:
        suffix = f"-{self.ctx.settings.derivation_suffix}"
        try:
            names = [a.name for a in self.driver.list_assets()]
        except DriverError as exc:
            log.warning("runtime_list_failed", error=str(exc))
            return
        derived = [n for n in names if suffix in n]
        if not derived:
            return
        log.info("runtime_preloading", model=derived[0])
        try:
            self.driver.preload(derived[0])
        except DriverError as exc:
            log.warning("runtime_preload_failed", model=derived[0], error=str(exc))

    def ensure_running(self, needs_update: bool) -> tuple[PhaseOutcome, ServiceState]:
        if not needs_update:
            state = self.observe()
            if state is ServiceState.RUNNING_RESPONDING:
                log.info("runtime_already_running")
                return PhaseOutcome(
                    phase="runtime_ensure", status=PhaseStatus.SUCCESS, detail="already running"
                ), state
            log.info("runtime_needs_start", state=state.value)

        ok, detail = self.start()
        if not ok:
            log.warning("runtime_unhealthy", detail=detail)
            return PhaseOutcome(
                phase="runtime_ensure", status=PhaseStatus.DEGRADED, detail=detail
            ), self.observe()
        self.preload()
        return PhaseOutcome(
            phase="runtime_ensure", status=PhaseStatus.SUCCESS, detail=detail
        ), ServiceState.RUNNING_RESPONDING


class ContainerLifecycle:
    """Lifecycle of the containerised web front-end."""

    def __init__(
        self,
        ctx: OrchestrationContext,
        engine: ContainerEngine,
        reclaimer: Reclaimer,
        probe: HealthProbe,
    ) -> None:
        self.ctx = ctx
        self.engine = engine
        self.reclaimer = reclaimer
        self.probe = probe

    @property
    def name(self) -> str:
        return self.ctx.settings.webui_container

    def spec(self, gpus: bool = True) -> ContainerSpec:
        s = self.ctx.settings
        return ContainerSpec(
            name=self.name,
            image=s.webui_image,
            volumes={
                s.webui_volume: {"bind": _DATA_MOUNT, "mode": "rw"},
                self.ctx.models_dir: {"bind": s.container_models_path, "mode": "ro"},
            },
            environment=self.ctx.container_env(),
            mem_limit=s.container_memory,
            shm_size=s.container_shm_size,
            gpus=gpus,
        )

    def config_drift(self, info: ContainerInfo) -> list[str]:
        """Differences between the instance and the resolved asset directory."""
        target = self.ctx.settings.container_models_path
        problems = []
        source = info.mounts.get(target, "")
        if source != self.ctx.models_dir:
            problems.append(f"mount {source or 'none'} -> {target}, expected {self.ctx.models_dir}")
        env_value = info.env.get("OLLAMA_MODELS", "")
        if env_value != target:
            problems.append(f"OLLAMA_MODELS={env_value or 'unset'}, expected {target}")
        return problems

    def observe(self) -> ServiceState:
        try:
            info = self.engine.inspect(self.name)
        except DriverError as exc:
            log.warning("container_inspect_failed", error=str(exc))
            return ServiceState.ABSENT
        if info is None:
            return ServiceState.ABSENT
        if not info.running:
            return ServiceState.STOPPED
        if self.probe.check(self.ctx.settings.web_url):
            return ServiceState.RUNNING_RESPONDING
        return ServiceState.RUNNING_NOT_RESPONDING

    def teardown(self) -> None:
        """Stop and remove the instance; the data volume is kept."""
        try:
            self.engine.stop(self.name)
        except DriverError as exc:
            log.warning("container_stop_failed", error=str(exc))
        self.reclaimer.reclaim_port(self.ctx.settings.web_port)
        try:
            self.engine.remove(self.name)
        except DriverError as exc:
            log.warning("container_remove_failed", error=str(exc))

    def prepare_update(self) -> PhaseOutcome:
        self.teardown()
        log.info("container_stopped_for_update")
        return PhaseOutcome(phase="container_reclaim", status=PhaseStatus.SUCCESS)

    def _run(self) -> ContainerInfo:
        try:
            return self.engine.run(self.spec(gpus=True))
        except DriverError as exc:
            log.warning("container_gpu_start_failed", error=str(exc))
            self.engine.remove(self.name)
            return self.engine.run(self.spec(gpus=False))

    def ensure_running(self, needs_update: bool) -> tuple[PhaseOutcome, ServiceState]:
        s = self.ctx.settings
        reason = "updated"
        if not needs_update:
            try:
                info = self.engine.inspect(self.name)
            except DriverError as exc:
                log.error("container_engine_unavailable", error=str(exc))
                return PhaseOutcome(
                    phase="container_ensure", status=PhaseStatus.FAILED, detail=str(exc)
                ), ServiceState.ABSENT
            if info is None:
                reason = "absent"
            elif not info.running:
                reason = f"not running (status: {info.status})"
            else:
                drift = self.config_drift(info)
                responding = self.probe.check(s.web_url)
                if not drift and responding:
                    log.info("container_already_running")
                    return PhaseOutcome(
                        phase="container_ensure", status=PhaseStatus.SUCCESS, detail="already running"
                    ), ServiceState.RUNNING_RESPONDING
                if drift:
                    log.warning("container_config_drift", problems=drift)
                    reason = "configuration drift: " + "; ".join(drift)
                else:
                    reason = "not responding"
            log.info("container_needs_start", reason=reason)
            self.teardown()
        else:
            self.teardown()
            self.pull()

        try:
            Path(self.ctx.models_dir).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.warning("models_dir_create_failed", path=self.ctx.models_dir, error=str(exc))
        try:
            info = self._run()
        except DriverError as exc:
            log.error("container_start_failed", error=str(exc))
            return PhaseOutcome(
                phase="container_ensure",
                status=PhaseStatus.FAILED,
                detail=f"start failed ({exc}); check 'docker logs {self.name}'",
            ), self.observe()

        drift = self.config_drift(info)
        if drift:
            log.warning("container_config_unverified", problems=drift)
        else:
            log.info("container_config_verified", host=self.ctx.models_dir, container=s.container_models_path)

        result = self.probe.wait_ready(s.web_url, s.web_probe_attempts, s.probe_interval)
        if not result.ready:
            return PhaseOutcome(
                phase="container_ensure",
                status=PhaseStatus.DEGRADED,
                detail=f"{reason}; started but not responding yet (docker logs -f {self.name})",
            ), ServiceState.RUNNING_NOT_RESPONDING
        return PhaseOutcome(
            phase="container_ensure", status=PhaseStatus.SUCCESS, detail=f"started ({reason})"
        ), ServiceState.RUNNING_RESPONDING

    def pull(self) -> None:
        image = self.ctx.settings.webui_image
        log.info("container_pulling", image=image)
        try:
            self.engine.pull(image)
        except DriverError as exc:
            log.warning("container_pull_failed", image=image, error=str(exc))

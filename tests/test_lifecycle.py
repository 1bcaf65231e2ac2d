"""Tests for aumai_stackkeeper.lifecycle."""

from __future__ import annotations

from conftest import FakeDropIn, FakeEngine, FakeProbe, FakeRuntime, RecordingReclaimer

from aumai_stackkeeper.config import OrchestrationContext
from aumai_stackkeeper.drivers import ContainerInfo
from aumai_stackkeeper.errors import DriverError
from aumai_stackkeeper.lifecycle import (
    RUNTIME_PROCESS_PATTERN,
    ContainerLifecycle,
    RuntimeLifecycle,
)
from aumai_stackkeeper.models import PhaseStatus, ServiceState

RUNTIME_HEALTH = "http://localhost:11434/api/tags"
WEB = "http://localhost:8080"


def _runtime(ctx: OrchestrationContext, driver: FakeRuntime, probe: FakeProbe) -> tuple[RuntimeLifecycle, RecordingReclaimer, FakeDropIn]:
    reclaimer = RecordingReclaimer()
    dropin = FakeDropIn()
    return RuntimeLifecycle(ctx, driver, reclaimer, probe, dropin), reclaimer, dropin


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


class TestRuntimeLifecycle:
    def test_already_running_is_left_alone(self, ctx: OrchestrationContext) -> None:
        driver = FakeRuntime()
        lifecycle, reclaimer, _ = _runtime(ctx, driver, FakeProbe({RUNTIME_HEALTH}))
        outcome, state = lifecycle.ensure_running(needs_update=False)
        assert outcome.status is PhaseStatus.SUCCESS
        assert state is ServiceState.RUNNING_RESPONDING
        assert driver.calls == []
        assert reclaimer.ports == []

    def test_starts_with_resolved_directory(self, ctx: OrchestrationContext) -> None:
        driver = FakeRuntime(running=False, assets=["llama3.2:latest", "llama3.2-maxgpu:latest"])
        lifecycle, reclaimer, _ = _runtime(ctx, driver, FakeProbe())
        outcome, state = lifecycle.ensure_running(needs_update=False)
        assert outcome.status is PhaseStatus.SUCCESS
        assert state is ServiceState.RUNNING_RESPONDING
        assert reclaimer.ports == [11434]
        assert driver.spawned_env is not None
        assert driver.spawned_env["OLLAMA_MODELS"] == ctx.models_dir
        assert driver.spawned_env["OLLAMA_HOST"] == "0.0.0.0:11434"
        assert "preload:llama3.2-maxgpu:latest" in driver.calls

    def test_update_path_always_restarts(self, ctx: OrchestrationContext) -> None:
        driver = FakeRuntime()
        lifecycle, _, _ = _runtime(ctx, driver, FakeProbe({RUNTIME_HEALTH}))
        lifecycle.ensure_running(needs_update=True)
        assert "spawn" in driver.calls

    def test_not_ready_is_degraded(self, ctx: OrchestrationContext) -> None:
        driver = FakeRuntime(running=False)
        lifecycle, _, _ = _runtime(ctx, driver, FakeProbe(become_ready=False))
        outcome, state = lifecycle.ensure_running(needs_update=False)
        assert outcome.status is PhaseStatus.DEGRADED
        assert ctx.settings.runtime_log in outcome.detail
        assert state is ServiceState.RUNNING_NOT_RESPONDING

    def test_observe(self, ctx: OrchestrationContext) -> None:
        lifecycle, _, _ = _runtime(ctx, FakeRuntime(running=False), FakeProbe())
        assert lifecycle.observe() is ServiceState.ABSENT
        lifecycle, _, _ = _runtime(ctx, FakeRuntime(running=True), FakeProbe())
        assert lifecycle.observe() is ServiceState.RUNNING_NOT_RESPONDING

    def test_foreign_listener_is_not_the_runtime(self, ctx: OrchestrationContext) -> None:
        driver = FakeRuntime(running=False)
        lifecycle, reclaimer, _ = _runtime(ctx, driver, FakeProbe({RUNTIME_HEALTH}))
        assert lifecycle.observe() is ServiceState.ABSENT

        outcome, state = lifecycle.ensure_running(needs_update=False)
        assert outcome.status is PhaseStatus.SUCCESS
        assert state is ServiceState.RUNNING_RESPONDING
        assert "spawn" in driver.calls
        assert reclaimer.ports == [11434]

    def test_prepare_update_stops_everything(self, ctx: OrchestrationContext) -> None:
        driver = FakeRuntime()
        lifecycle, reclaimer, _ = _runtime(ctx, driver, FakeProbe())
        outcome = lifecycle.prepare_update()
        assert outcome.ok
        assert driver.calls == ["stop_service"]
        assert reclaimer.patterns == [RUNTIME_PROCESS_PATTERN]
        assert reclaimer.ports == [11434]

    def test_update_failure_is_degraded(self, ctx: OrchestrationContext) -> None:
        driver = FakeRuntime()
        driver.install_error = "download failed"
        lifecycle, _, _ = _runtime(ctx, driver, FakeProbe())
        outcome = lifecycle.update()
        assert outcome.status is PhaseStatus.DEGRADED
        assert "download failed" in outcome.detail

    def test_update_success(self, ctx: OrchestrationContext) -> None:
        lifecycle, _, _ = _runtime(ctx, FakeRuntime(version="0.5.7"), FakeProbe())
        outcome = lifecycle.update()
        assert outcome.status is PhaseStatus.SUCCESS
        assert outcome.detail == "0.5.7 -> 0.5.7"

    def test_configure_writes_persistent_env(self, ctx: OrchestrationContext) -> None:
        lifecycle, _, dropin = _runtime(ctx, FakeRuntime(), FakeProbe())
        outcome = lifecycle.configure()
        assert outcome.status is PhaseStatus.SUCCESS
        assert dropin.written[-1]["OLLAMA_MODELS"] == ctx.models_dir
        assert set(dropin.written[-1]) == {
            "OLLAMA_MODELS",
            "OLLAMA_MAX_LOADED_MODELS",
            "OLLAMA_NUM_PARALLEL",
            "OLLAMA_FLASH_ATTENTION",
            "OLLAMA_HOST",
        }

    def test_configure_failure_is_degraded(self, ctx: OrchestrationContext) -> None:
        class BrokenDropIn(FakeDropIn):
            def write(self, env: dict[str, str]) -> bool:
                raise DriverError("systemd.dropin", "read-only file system")

        lifecycle = RuntimeLifecycle(ctx, FakeRuntime(), RecordingReclaimer(), FakeProbe(), BrokenDropIn())
        assert lifecycle.configure().status is PhaseStatus.DEGRADED


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------


class TestContainerLifecycle:
    def test_healthy_instance_is_untouched(
        self, ctx: OrchestrationContext, healthy_container: ContainerInfo
    ) -> None:
        engine = FakeEngine(info=healthy_container)
        reclaimer = RecordingReclaimer()
        lifecycle = ContainerLifecycle(ctx, engine, reclaimer, FakeProbe({WEB}))
        outcome, state = lifecycle.ensure_running(needs_update=False)
        assert outcome.detail == "already running"
        assert state is ServiceState.RUNNING_RESPONDING
        assert engine.calls == []
        assert reclaimer.ports == []

    def test_mount_drift_recreates(
        self, ctx: OrchestrationContext, healthy_container: ContainerInfo
    ) -> None:
        drifted = healthy_container.model_copy(
            update={"mounts": {"/root/.ollama/models": "/home/someone/.ollama/models"}}
        )
        engine = FakeEngine(info=drifted)
        reclaimer = RecordingReclaimer()
        lifecycle = ContainerLifecycle(ctx, engine, reclaimer, FakeProbe({WEB}))
        outcome, _ = lifecycle.ensure_running(needs_update=False)
        assert outcome.status is PhaseStatus.SUCCESS
        assert "configuration drift" in outcome.detail
        assert engine.calls == ["stop", "remove", "run"]
        assert reclaimer.ports == [8080]

    def test_absent_instance_is_created(self, ctx: OrchestrationContext) -> None:
        engine = FakeEngine(info=None)
        lifecycle = ContainerLifecycle(ctx, engine, RecordingReclaimer(), FakeProbe())
        outcome, state = lifecycle.ensure_running(needs_update=False)
        assert outcome.status is PhaseStatus.SUCCESS
        assert state is ServiceState.RUNNING_RESPONDING
        assert "pull" not in engine.calls
        assert engine.runs[-1].volumes[ctx.models_dir] == {"bind": "/root/.ollama/models", "mode": "ro"}
        assert engine.runs[-1].volumes["open-webui"]["bind"] == "/app/backend/data"

    def test_update_pulls_and_recreates(
        self, ctx: OrchestrationContext, healthy_container: ContainerInfo
    ) -> None:
        engine = FakeEngine(info=healthy_container)
        lifecycle = ContainerLifecycle(ctx, engine, RecordingReclaimer(), FakeProbe({WEB}))
        outcome, _ = lifecycle.ensure_running(needs_update=True)
        assert outcome.status is PhaseStatus.SUCCESS
        assert engine.calls == ["stop", "remove", "pull", "run"]

    def test_gpu_failure_retries_without_gpu(self, ctx: OrchestrationContext) -> None:
        engine = FakeEngine(info=None, fail_gpu_run=True)
        lifecycle = ContainerLifecycle(ctx, engine, RecordingReclaimer(), FakeProbe())
        outcome, _ = lifecycle.ensure_running(needs_update=False)
        assert outcome.status is PhaseStatus.SUCCESS
        assert [spec.gpus for spec in engine.runs] == [True, False]
        assert engine.calls[-2:] == ["remove", "run"]

    def test_not_responding_after_start_is_degraded(self, ctx: OrchestrationContext) -> None:
        engine = FakeEngine(info=None)
        lifecycle = ContainerLifecycle(ctx, engine, RecordingReclaimer(), FakeProbe(become_ready=False))
        outcome, state = lifecycle.ensure_running(needs_update=False)
        assert outcome.status is PhaseStatus.DEGRADED
        assert state is ServiceState.RUNNING_NOT_RESPONDING

    def test_observe_states(self, ctx: OrchestrationContext, healthy_container: ContainerInfo) -> None:
        probe = FakeProbe()
        lifecycle = ContainerLifecycle(ctx, FakeEngine(info=None), RecordingReclaimer(), probe)
        assert lifecycle.observe() is ServiceState.ABSENT
        stopped = healthy_container.model_copy(update={"status": "exited"})
        lifecycle = ContainerLifecycle(ctx, FakeEngine(info=stopped), RecordingReclaimer(), probe)
        assert lifecycle.observe() is ServiceState.STOPPED
        lifecycle = ContainerLifecycle(ctx, FakeEngine(info=healthy_container), RecordingReclaimer(), probe)
        assert lifecycle.observe() is ServiceState.RUNNING_NOT_RESPONDING
        probe.healthy.add(WEB)
        assert lifecycle.observe() is ServiceState.RUNNING_RESPONDING

    def test_config_drift_reports_env(self, ctx: OrchestrationContext, healthy_container: ContainerInfo) -> None:
        lifecycle = ContainerLifecycle(ctx, FakeEngine(), RecordingReclaimer(), FakeProbe())
        assert lifecycle.config_drift(healthy_container) == []
        bad = healthy_container.model_copy(update={"env": {}})
        assert lifecycle.config_drift(bad) == ["OLLAMA_MODELS=unset, expected /root/.ollama/models"]

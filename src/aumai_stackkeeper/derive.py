"""Derive accelerator-maximised variants of every base model."""

from __future__ import annotations

from .config import OrchestrationContext
from .drivers import RuntimeDriver
from .errors import DriverError
from .health import HealthProbe
from .logging import get_logger
from .models import (
    DerivationResult,
    DerivedModelAsset,
    PhaseOutcome,
    PhaseStatus,
    canonical_name,
    derived_name,
    is_derived,
    legacy_derived_name,
)
from .reclaim import Reclaimer

__all__ = ["DerivationPipeline", "TRANSIENT_LOG"]

log = get_logger("aumai_stackkeeper.derive")

TRANSIENT_LOG = "/tmp/ollama-temp.log"


class DerivationPipeline:
    """
    For each base asset ``X`` create ``X-<suffix>`` carrying the fixed
    overlay, unless it already exists.

    Runs only after the runtime was updated.  Whatever answers on the runtime
    port at that point (typically the service the installer restarted) may
    still serve another asset directory, so it is stopped and a transient
    ``serve`` bound to this run's environment is started for the duration
    and always torn down afterwards.  One failed item never stops the others.
    """

    def __init__(
        self,
        ctx: OrchestrationContext,
        driver: RuntimeDriver,
        probe: HealthProbe,
        reclaimer: Reclaimer,
    ) -> None:
        self.ctx = ctx
        self.driver = driver
        self.probe = probe
        self.reclaimer = reclaimer

    @property
    def suffix(self) -> str:
        return self.ctx.settings.derivation_suffix

    def plan(self, names: list[str]) -> tuple[list[DerivedModelAsset], list[str]]:
        """Split *names* into derivations to create and targets already present."""
        existing = {canonical_name(n) for n in names}
        todo: list[DerivedModelAsset] = []
        present: list[str] = []
        for name in names:
            if is_derived(name, self.suffix):
                continue
            target = derived_name(name, self.suffix)
            legacy = legacy_derived_name(name, self.suffix)
            if target in existing or legacy in existing:
                present.append(target if target in existing else legacy)
                continue
            todo.append(DerivedModelAsset(name=target, base=name, overlay=self.ctx.overlay))
            existing.add(target)
        return todo, present

    def _start_transient(self) -> tuple[int | None, bool]:
        settings = self.ctx.settings
        health_url = f"{settings.runtime_url}/api/tags"
        self.driver.stop_service()
        self.reclaimer.reclaim_port(settings.runtime_port)
        self.reclaimer.verify_free(settings.runtime_port)
        log.info("transient_runtime_starting", models=self.ctx.models_dir)
        try:
            pid = self.driver.spawn(self.ctx.runtime_env(), TRANSIENT_LOG)
        except DriverError as exc:
            log.warning("transient_runtime_failed", error=str(exc))
            return None, False
        result = self.probe.wait_ready(
            health_url, settings.runtime_probe_attempts, settings.probe_interval
        )
        if not result.ready:
            log.warning("transient_runtime_not_ready", log=TRANSIENT_LOG)
        return pid, result.ready

    def run(self, runtime_updated: bool) -> tuple[PhaseOutcome, DerivationResult]:
        result = DerivationResult()
        if not runtime_updated:
            log.info("derivation_skipped", reason="runtime not updated")
            return PhaseOutcome(
                phase="derive",
                status=PhaseStatus.SKIPPED,
                detail="runtime not updated; existing derived models kept",
            ), result

        pid, ready = self._start_transient()
        try:
            if not ready:
                return PhaseOutcome(
                    phase="derive",
                    status=PhaseStatus.DEGRADED,
                    detail=f"runtime API unavailable (see {TRANSIENT_LOG})",
                ), result
            self._derive_all(result)
        finally:
            if pid is not None:
                log.info("transient_runtime_stopping", pid=pid)
                try:
                    self.driver.terminate(pid)
                except DriverError as exc:
                    log.warning("transient_runtime_stop_failed", pid=pid, error=str(exc))

        detail = (
            f"created {len(result.created)}, skipped {len(result.skipped)}, "
            f"failed {len(result.failed)}"
        )
        status = PhaseStatus.DEGRADED if result.failed else PhaseStatus.SUCCESS
        return PhaseOutcome(phase="derive", status=status, detail=detail), result

    def _derive_all(self, result: DerivationResult) -> None:
        try:
            names = [asset.name for asset in self.driver.list_assets()]
        except DriverError as exc:
            log.warning("derivation_list_failed", error=str(exc))
            result.failed["*"] = str(exc)
            return

        todo, present = self.plan(names)
        for target in present:
            log.info("derivation_exists", model=target)
        result.skipped.extend(present)
        if not todo and not present:
            log.info("no_models_to_derive", hint=f"OLLAMA_MODELS={self.ctx.models_dir} ollama pull llama3.2")

        timeout = self.ctx.settings.derivation_timeout
        for asset in todo:
            log.debug("derivation_started", base=asset.base, target=asset.name, modelfile=asset.modelfile())
            try:
                self.driver.create_derived(asset, timeout=timeout)
            except DriverError as exc:
                log.warning("derivation_failed", target=asset.name, error=str(exc))
                result.failed[asset.name] = str(exc)
                continue
            log.info("derivation_created", base=asset.base, target=asset.name)
            result.created.append(asset.name)

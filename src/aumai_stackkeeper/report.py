"""End-of-run status: re-probe everything and render an operator summary."""

from __future__ import annotations

import socket
from pathlib import Path

import psutil

from .assets import AssetDirectoryResolver
from .config import OrchestrationContext
from .drivers import Accelerator, RuntimeDriver
from .errors import DriverError
from .lifecycle import ContainerLifecycle, RuntimeLifecycle
from .logging import get_logger
from .models import RunReport, ServiceKind, ServiceReport, ServiceState, VersionState

__all__ = ["StatusReporter", "lan_address", "render"]

log = get_logger("aumai_stackkeeper.report")


def lan_address() -> str | None:
    """First non-loopback IPv4 address of this host."""
    try:
        interfaces = psutil.net_if_addrs()
    except OSError:
        return None
    for name, addrs in sorted(interfaces.items()):
        if name == "lo":
            continue
        for addr in addrs:
            if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                return addr.address
    return None


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "K", "M", "G", "T"):
        if value < 1024 or unit == "T":
            return f"{value:.1f}{unit}" if unit != "B" else f"{int(value)}B"
        value /= 1024
    return f"{size}B"


class StatusReporter:
    """Collects final state independently of the decisions made earlier."""

    def __init__(
        self,
        ctx: OrchestrationContext,
        runtime: RuntimeLifecycle,
        container: ContainerLifecycle,
        driver: RuntimeDriver,
        accelerator: Accelerator | None = None,
    ) -> None:
        self.ctx = ctx
        self.runtime = runtime
        self.container = container
        self.driver = driver
        self.accelerator = accelerator or Accelerator()

    def collect(
        self,
        report: RunReport,
        versions: dict[ServiceKind, VersionState] | None = None,
    ) -> RunReport:
        s = self.ctx.settings
        versions = versions or {}
        lan = lan_address() if s.bind_host == "0.0.0.0" else None

        runtime_state = self.runtime.observe()
        container_state = self.container.observe()
        report.services = [
            ServiceReport(
                kind=ServiceKind.RUNTIME,
                state=runtime_state,
                endpoint=s.runtime_url,
                lan_endpoint=f"http://{lan}:{s.runtime_port}" if lan else None,
                version=versions.get(ServiceKind.RUNTIME),
            ),
            ServiceReport(
                kind=ServiceKind.CONTAINER,
                state=container_state,
                endpoint=s.web_url,
                lan_endpoint=f"http://{lan}:{s.web_port}" if lan else None,
                version=versions.get(ServiceKind.CONTAINER),
            ),
        ]

        report.asset_directory = AssetDirectoryResolver.describe(
            Path(self.ctx.models_dir),
            source=self.ctx.assets.source,
            created=self.ctx.assets.created,
        )

        if runtime_state is ServiceState.RUNNING_RESPONDING:
            try:
                report.models = [a.name for a in self.driver.list_assets()]
            except DriverError as exc:
                log.warning("report_models_unavailable", error=str(exc))

        report.accelerator = self.accelerator.status()
        report.remediation = self.remediation(runtime_state, container_state)
        return report

    def remediation(self, runtime_state: ServiceState, container_state: ServiceState) -> list[str]:
        s = self.ctx.settings
        models = self.ctx.models_dir
        name = s.webui_container
        commands = [
            f"Pull model:   OLLAMA_MODELS={models} ollama pull llama3.2",
            f"List models:  OLLAMA_MODELS={models} ollama list",
            f"Test model:   OLLAMA_MODELS={models} ollama run llama3.2-{s.derivation_suffix}",
        ]
        if runtime_state is not ServiceState.RUNNING_RESPONDING:
            commands.append(f"Runtime logs: tail -f {s.runtime_log}")
        if container_state is not ServiceState.RUNNING_RESPONDING:
            commands.append(f"WebUI logs:   docker logs -f {name}")
        commands.extend(
            [
                "GPU status:   watch -n 1 nvidia-smi",
                "Verify mount: docker inspect "
                f"{name} --format='{{{{range .Mounts}}}}{{{{println .Source}}}} -> {{{{.Destination}}}}{{{{end}}}}'",
            ]
        )
        return commands


def render(report: RunReport, ctx: OrchestrationContext | None = None) -> list[str]:
    """Human-readable summary lines."""
    lines = ["=" * 48, "   STATUS", "=" * 48]
    if report.lock_refused:
        lines.append("Another run holds the lock; nothing was changed.")
    if report.cancelled:
        lines.append("Run was cancelled; remaining safe phases were skipped.")

    if report.outcomes:
        lines.append("")
        lines.append("Phases:")
        for outcome in report.outcomes:
            detail = f"  {outcome.detail}" if outcome.detail else ""
            lines.append(f"   [{outcome.status.value.upper():<8}] {outcome.phase}{detail}")

    if report.services:
        lines.append("")
        lines.append("Services:")
        for svc in report.services:
            ok = "OK" if svc.state is ServiceState.RUNNING_RESPONDING else "!!"
            lines.append(f"   [{ok}] {svc.kind.value:<9} {svc.state.value:<24} {svc.endpoint}")
            if svc.lan_endpoint:
                lines.append(f"        LAN: {svc.lan_endpoint}")
            if svc.version is not None:
                lines.append(
                    f"        version: {svc.version.current or 'unknown'} "
                    f"(latest {svc.version.latest or 'unknown'}, {svc.version.decision.value})"
                )

    if report.asset_directory is not None:
        assets = report.asset_directory
        lines.append("")
        lines.append("Assets:")
        lines.append(f"   Models dir (host):  {assets.path}")
        if ctx is not None:
            lines.append(f"   Models dir (container): {ctx.settings.container_models_path}")
        lines.append(
            f"   Manifests: {assets.manifest_count}  Blobs: {assets.blob_count}  "
            f"Size: {_human_size(assets.size_bytes)}"
        )
    if report.models:
        lines.append(f"   Models available: {len(report.models)}")
        lines.extend(f"     - {name}" for name in report.models)

    lines.append("")
    lines.append("Accelerator:")
    if report.accelerator:
        lines.extend(f"   {row}" for row in report.accelerator)
    else:
        lines.append("   not detected")

    if ctx is not None:
        lines.append("")
        lines.append("Logs:")
        lines.append(f"   Run log:     {ctx.settings.log_file}")
        lines.append(f"   Runtime log: {ctx.settings.runtime_log}")

    if report.remediation:
        lines.append("")
        lines.append("Commands:")
        lines.extend(f"   {cmd}" for cmd in report.remediation)
    return lines

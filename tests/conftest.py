"""Shared test fixtures for aumai-stackkeeper."""

from __future__ import annotations

from pathlib import Path

import pytest

from aumai_stackkeeper.config import OrchestrationContext, Settings
from aumai_stackkeeper.drivers import ContainerInfo, ContainerSpec
from aumai_stackkeeper.errors import DriverError
from aumai_stackkeeper.models import AssetDirectory, DerivedModelAsset, ModelAsset, ProbeResult
from aumai_stackkeeper.reclaim import Reclaimer


# ---------------------------------------------------------------------------
# Fakes for the driver protocols
# ---------------------------------------------------------------------------


class FakeFeed:
    def __init__(self, version: str | None = "0.5.0") -> None:
        self.version = version

    def latest_version(self) -> str:
        if self.version is None:
            raise DriverError("release_feed", "unreachable")
        return self.version


class FakeRuntime:
    """In-memory runtime: version, process table and asset list."""

    def __init__(
        self,
        version: str | None = "0.5.0",
        installed: bool = True,
        running: bool = True,
        assets: list[str] | None = None,
    ) -> None:
        self.version = version
        self.installed = installed
        self.running = running
        self.assets = list(assets or [])
        self.calls: list[str] = []
        self.created: list[DerivedModelAsset] = []
        self.fail_create: set[str] = set()
        self.spawned_env: dict[str, str] | None = None
        self.terminated: list[int] = []
        self.install_error: str | None = None

    def binary_present(self) -> bool:
        return self.installed

    def installed_version(self) -> str | None:
        return self.version if self.installed else None

    def install(self) -> None:
        self.calls.append("install")
        if self.install_error:
            raise DriverError("runtime.install", self.install_error)
        self.installed = True

    def stop_service(self) -> None:
        self.calls.append("stop_service")
        self.running = False

    def process_running(self) -> bool:
        return self.running

    def spawn(self, env: dict[str, str], log_path: str) -> int:
        self.calls.append("spawn")
        self.spawned_env = env
        self.running = True
        return 4321

    def terminate(self, pid: int, grace: float = 3.0) -> None:
        self.calls.append("terminate")
        self.terminated.append(pid)
        self.running = False

    def list_assets(self) -> list[ModelAsset]:
        return [ModelAsset(name=name) for name in self.assets]

    def create_derived(self, asset: DerivedModelAsset, timeout: float) -> None:
        if asset.name in self.fail_create:
            raise DriverError("runtime.post /api/create", "timed out")
        self.created.append(asset)
        self.assets.append(asset.name)

    def preload(self, name: str) -> None:
        self.calls.append(f"preload:{name}")


class FakeEngine:
    """In-memory container engine."""

    def __init__(
        self,
        info: ContainerInfo | None = None,
        remote: str | None = "abc",
        local: str | None = None,
        fail_gpu_run: bool = False,
    ) -> None:
        self.info = info
        self.remote = remote
        self.local = local
        self.fail_gpu_run = fail_gpu_run
        self.calls: list[str] = []
        self.runs: list[ContainerSpec] = []

    def inspect(self, name: str) -> ContainerInfo | None:
        return self.info

    def remote_digest(self, image: str) -> str:
        if self.remote is None:
            raise DriverError("docker.registry_data", "unreachable")
        return self.remote

    def local_image_id(self, image: str) -> str | None:
        return self.local

    def pull(self, image: str) -> None:
        self.calls.append("pull")

    def run(self, spec: ContainerSpec) -> ContainerInfo:
        self.calls.append("run")
        self.runs.append(spec)
        if spec.gpus and self.fail_gpu_run:
            raise DriverError("docker.run", "could not select device driver")
        mounts = {v["bind"]: host for host, v in spec.volumes.items()}
        self.info = ContainerInfo(
            name=spec.name,
            image_ref=spec.image,
            image_id="abc",
            repo_digest="abc",
            status="running",
            mounts=mounts,
            env=dict(spec.environment),
        )
        return self.info

    def stop(self, name: str, timeout: int = 10) -> None:
        self.calls.append("stop")
        if self.info is not None:
            self.info = self.info.model_copy(update={"status": "exited"})

    def remove(self, name: str) -> None:
        self.calls.append("remove")
        self.info = None


class FakeProbe:
    """Health probe answering from a set of healthy URLs."""

    def __init__(self, healthy: set[str] | None = None, become_ready: bool = True) -> None:
        self.healthy = set(healthy or set())
        self.become_ready = become_ready
        self.waited: list[str] = []

    def check(self, url: str) -> bool:
        return url in self.healthy

    def wait_ready(self, url: str, max_attempts: int = 30, interval: float = 2.0) -> ProbeResult:
        self.waited.append(url)
        if self.become_ready:
            self.healthy.add(url)
            return ProbeResult(url=url, ready=True, attempts=1)
        return ProbeResult(url=url, ready=False, attempts=max_attempts)


class RecordingReclaimer(Reclaimer):
    """Reclaimer that only records what it would have signalled."""

    def __init__(self) -> None:
        super().__init__(self_pid=1, settle=0, sleep=lambda _: None)
        self.ports: list[int] = []
        self.patterns: list[str] = []

    def reclaim_port(self, port: int) -> set[int]:
        self.ports.append(port)
        return set()

    def verify_free(self, port: int, attempts: int = 5, pause: float = 2.0) -> bool:
        return True

    def reclaim_processes(self, pattern: str, exclude_pid: int | None = None, grace: float = 3.0) -> list[int]:
        self.patterns.append(pattern)
        return []


class FakeDropIn:
    def __init__(self, path: str = "/etc/systemd/system/ollama.service.d/models.conf") -> None:
        self.path = Path(path)
        self.written: list[dict[str, str]] = []

    def write(self, env: dict[str, str]) -> bool:
        changed = not self.written or self.written[-1] != env
        self.written.append(env)
        return changed


class FakeAccelerator:
    def memory_gb(self) -> int | None:
        return 96

    def status(self) -> list[str]:
        return ["NVIDIA GB10, 1024, 98304, 3"]


# ---------------------------------------------------------------------------
# Settings / context fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("OLLAMA_MODELS", "SUDO_USER"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture()
def models_dir(tmp_path: Path) -> Path:
    """An asset directory holding one manifest and one blob."""
    d = tmp_path / "models"
    manifest = d / "manifests" / "registry.ollama.ai" / "library" / "llama3.2" / "latest"
    manifest.parent.mkdir(parents=True)
    manifest.write_text('{"schemaVersion": 2}', encoding="utf-8")
    blobs = d / "blobs"
    blobs.mkdir()
    (blobs / ("sha256-" + "a" * 64)).write_bytes(b"\x00" * 128)
    return d


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        lock_file=str(tmp_path / "run.lock"),
        log_file=str(tmp_path / "run.log"),
        runtime_log=str(tmp_path / "ollama.log"),
        dropin_path=str(tmp_path / "dropin" / "models.conf"),
        lock_wait_seconds=0.0,
        lock_interval=0.0,
        probe_interval=0.0,
    )


@pytest.fixture()
def ctx(settings: Settings, models_dir: Path) -> OrchestrationContext:
    return OrchestrationContext(
        settings=settings,
        assets=AssetDirectory(path=str(models_dir), manifest_count=1, blob_count=1),
        self_pid=1,
    )


@pytest.fixture()
def healthy_container(ctx: OrchestrationContext) -> ContainerInfo:
    """A running front-end whose configuration matches *ctx*."""
    return ContainerInfo(
        name="open-webui",
        image_ref="ghcr.io/open-webui/open-webui:main",
        image_id="abc",
        repo_digest="abc",
        status="running",
        mounts={
            "/app/backend/data": "/var/lib/docker/volumes/open-webui/_data",
            "/root/.ollama/models": ctx.models_dir,
        },
        env={"OLLAMA_MODELS": "/root/.ollama/models", "OLLAMA_BASE_URL": "http://localhost:11434"},
    )

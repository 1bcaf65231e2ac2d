"""
Narrow drivers for the external systems the orchestrator drives.

Comparators and lifecycle managers depend on the ``RuntimeDriver``,
``ContainerEngine`` and ``ReleaseFeed`` protocols and on the typed results
defined here, never on textual command output.  Every concrete driver turns
library and OS failures into ``DriverError``.
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any, Protocol

import docker
import docker.errors
import docker.types
import httpx
import psutil
from pydantic import BaseModel, Field

from .errors import DriverError
from .logging import get_logger
from .models import DerivedModelAsset, ModelAsset

__all__ = [
    "Accelerator",
    "ContainerEngine",
    "ContainerInfo",
    "ContainerSpec",
    "DockerEngine",
    "GitHubReleaseFeed",
    "OllamaDriver",
    "ReleaseFeed",
    "RuntimeDriver",
    "SystemdDropIn",
    "normalize_digest",
]

log = get_logger("aumai_stackkeeper.drivers")

_VERSION_RE = re.compile(r"version is\s+v?([0-9][0-9A-Za-z.\-]*)")


def normalize_digest(value: str | None) -> str | None:
    """Strip the ``sha256:`` prefix; empty values become ``None``."""
    if not value:
        return None
    value = value.strip()
    if "@" in value:
        value = value.split("@", 1)[1]
    if value.startswith("sha256:"):
        value = value[len("sha256:"):]
    return value or None


# ---------------------------------------------------------------------------
# Typed results
# ---------------------------------------------------------------------------


class ContainerInfo(BaseModel):
    name: str
    image_ref: str = ""
    image_id: str | None = None       # local image id, normalised
    repo_digest: str | None = None    # registry manifest digest, normalised
    status: str = "unknown"           # running | exited | created | ...
    mounts: dict[str, str] = Field(default_factory=dict)   # destination -> source
    env: dict[str, str] = Field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.status == "running"


class ContainerSpec(BaseModel):
    name: str
    image: str
    volumes: dict[str, dict[str, str]] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)
    network_mode: str = "host"
    mem_limit: str | None = None
    shm_size: str | None = None
    restart_policy: str = "unless-stopped"
    gpus: bool = True


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class ReleaseFeed(Protocol):
    def latest_version(self) -> str: ...


class RuntimeDriver(Protocol):
    def installed_version(self) -> str | None: ...
    def binary_present(self) -> bool: ...
    def install(self) -> None: ...
    def stop_service(self) -> None: ...
    def process_running(self) -> bool: ...
    def spawn(self, env: dict[str, str], log_path: str) -> int: ...
    def terminate(self, pid: int, grace: float = 3.0) -> None: ...
    def list_assets(self) -> list[ModelAsset]: ...
    def create_derived(self, asset: DerivedModelAsset, timeout: float) -> None: ...
    def preload(self, name: str) -> None: ...


class ContainerEngine(Protocol):
    def inspect(self, name: str) -> ContainerInfo | None: ...
    def remote_digest(self, image: str) -> str: ...
    def local_image_id(self, image: str) -> str | None: ...
    def pull(self, image: str) -> None: ...
    def run(self, spec: ContainerSpec) -> ContainerInfo: ...
    def stop(self, name: str, timeout: int = 10) -> None: ...
    def remove(self, name: str) -> None: ...


# ---------------------------------------------------------------------------
# Release feed
# ---------------------------------------------------------------------------


class GitHubReleaseFeed:
    """Latest published version from a GitHub ``releases/latest`` endpoint."""

    def __init__(self, url: str, timeout: float = 30.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    def latest_version(self) -> str:
        headers = {"Accept": "application/vnd.github+json"}
        try:
            if self._client is not None:
                resp = self._client.get(self.url, headers=headers)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.get(self.url, headers=headers)
            resp.raise_for_status()
            tag = resp.json().get("tag_name", "")
        except (httpx.HTTPError, ValueError) as exc:
            raise DriverError("release_feed", exc) from exc
        version = tag.lstrip("v").strip()
        if not version:
            raise DriverError("release_feed", "response carried no tag_name")
        return version


# ---------------------------------------------------------------------------
# Native runtime (Ollama)
# ---------------------------------------------------------------------------


class OllamaDriver:
    """Process control via the binary and psutil; assets via the HTTP API."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        binary: str = "ollama",
        install_command: str = "curl -fsSL https://ollama.com/install.sh | sh",
        service_name: str = "ollama",
        http_timeout: float = 10.0,
        client: httpx.Client | None = None,
        self_pid: int | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.binary = binary
        self.install_command = install_command
        self.service_name = service_name
        self.self_pid = self_pid if self_pid is not None else os.getpid()
        self._client = client or httpx.Client(base_url=self.base_url, timeout=http_timeout)

    # -- binary / process table ---------------------------------------------

    def binary_present(self) -> bool:
        return shutil.which(self.binary) is not None

    def installed_version(self) -> str | None:
        try:
            proc = subprocess.run(
                [self.binary, "--version"],
                capture_output=True,
                text=True,
                timeout=15,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("runtime_version_unavailable", error=str(exc))
            return None
        match = _VERSION_RE.search(proc.stdout + proc.stderr)
        return match.group(1) if match else None

    def install(self) -> None:
        log.info("runtime_install_started", command=self.install_command)
        try:
            proc = subprocess.run(
                self.install_command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=900,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise DriverError("runtime.install", exc) from exc
        for line in proc.stdout.splitlines()[-10:]:
            log.debug("runtime_install_output", line=line)
        if proc.returncode != 0:
            raise DriverError("runtime.install", f"exit {proc.returncode}: {proc.stderr.strip()[-200:]}")

    def stop_service(self) -> None:
        try:
            subprocess.run(
                ["systemctl", "stop", self.service_name],
                capture_output=True,
                timeout=30,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("runtime_service_stop_failed", error=str(exc))

    def _serve_processes(self) -> list[psutil.Process]:
        found = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            if proc.info["pid"] == self.self_pid:
                continue
            cmdline = proc.info.get("cmdline") or []
            if len(cmdline) >= 2 and Path(cmdline[0]).name == self.binary and cmdline[1] == "serve":
                found.append(proc)
        return found

    def process_running(self) -> bool:
        return bool(self._serve_processes())

    def spawn(self, env: dict[str, str], log_path: str) -> int:
        try:
            logfile = open(log_path, "ab")
        except OSError:
            logfile = subprocess.DEVNULL  # type: ignore[assignment]
        try:
            proc = subprocess.Popen(
                [self.binary, "serve"],
                env={**os.environ, **env},
                stdout=logfile,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise DriverError("runtime.spawn", exc) from exc
        finally:
            if logfile is not subprocess.DEVNULL:
                logfile.close()
        log.info("runtime_spawned", pid=proc.pid, log=log_path)
        return proc.pid

    def terminate(self, pid: int, grace: float = 3.0) -> None:
        """Graceful stop, then force-kill if still alive after *grace*."""
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            proc.wait(timeout=grace)
        except psutil.NoSuchProcess:
            return
        except psutil.TimeoutExpired:
            log.warning("runtime_kill", pid=pid, grace=grace)
            try:
                proc.kill()
                proc.wait(timeout=grace)
            except (psutil.NoSuchProcess, psutil.TimeoutExpired):
                pass
        except psutil.AccessDenied as exc:
            raise DriverError("runtime.terminate", exc) from exc

    # -- HTTP API -----------------------------------------------------------

    def _request(self, method: str, path: str, timeout: float | None = None, **kwargs: Any) -> httpx.Response:
        try:
            if timeout is not None:
                kwargs["timeout"] = timeout
            resp = self._client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise DriverError(f"runtime.{method.lower()} {path}", exc) from exc
        return resp

    def list_assets(self) -> list[ModelAsset]:
        data = self._request("GET", "/api/tags").json()
        return [
            ModelAsset(name=item.get("name", ""), manifest_ref=item.get("digest", ""))
            for item in data.get("models", [])
            if item.get("name")
        ]

    def create_derived(self, asset: DerivedModelAsset, timeout: float) -> None:
        self._request(
            "POST",
            "/api/create",
            timeout=timeout,
            json={
                "model": asset.name,
                "from": asset.base,
                "parameters": asset.overlay.parameters(),
                "stream": False,
            },
        )

    def preload(self, name: str) -> None:
        self._request(
            "POST",
            "/api/generate",
            timeout=120.0,
            json={"model": name, "keep_alive": -1, "prompt": "test", "stream": False},
        )


# ---------------------------------------------------------------------------
# Container engine (Docker)
# ---------------------------------------------------------------------------


class DockerEngine:
    """``ContainerEngine`` on top of the docker SDK."""

    def __init__(self, client: Any = None) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker.errors.DockerException as exc:
                raise DriverError("docker.connect", exc) from exc
        return self._client

    def _repo_digest(self, image_id: str, image_ref: str) -> str | None:
        repo = image_ref.rsplit(":", 1)[0] if "@" not in image_ref else image_ref.split("@", 1)[0]
        try:
            image = self.client.images.get(image_id)
        except docker.errors.DockerException:
            return None
        digests = image.attrs.get("RepoDigests") or []
        for entry in digests:
            if entry.split("@", 1)[0] == repo:
                return normalize_digest(entry)
        return normalize_digest(digests[0]) if digests else None

    def inspect(self, name: str) -> ContainerInfo | None:
        try:
            container = self.client.containers.get(name)
        except docker.errors.NotFound:
            return None
        except docker.errors.DockerException as exc:
            raise DriverError("docker.inspect", exc) from exc
        attrs = container.attrs
        config = attrs.get("Config") or {}
        image_id = attrs.get("Image", "")
        image_ref = config.get("Image", "")
        env = {}
        for item in config.get("Env") or []:
            key, sep, value = item.partition("=")
            if sep:
                env[key] = value
        return ContainerInfo(
            name=name,
            image_ref=image_ref,
            image_id=normalize_digest(image_id),
            repo_digest=self._repo_digest(image_id, image_ref) if image_id else None,
            status=(attrs.get("State") or {}).get("Status", "unknown"),
            mounts={
                m.get("Destination", ""): m.get("Source", "")
                for m in attrs.get("Mounts") or []
            },
            env=env,
        )

    def remote_digest(self, image: str) -> str:
        try:
            data = self.client.images.get_registry_data(image)
        except docker.errors.DockerException as exc:
            raise DriverError("docker.registry_data", exc) from exc
        digest = normalize_digest(data.id)
        if digest is None:
            raise DriverError("docker.registry_data", "empty digest")
        return digest

    def local_image_id(self, image: str) -> str | None:
        try:
            return normalize_digest(self.client.images.get(image).id)
        except docker.errors.ImageNotFound:
            return None
        except docker.errors.DockerException as exc:
            raise DriverError("docker.images", exc) from exc

    def pull(self, image: str) -> None:
        repository, _, tag = image.rpartition(":")
        if not repository or "/" in tag:
            repository, tag = image, "latest"
        try:
            self.client.images.pull(repository, tag=tag)
        except docker.errors.DockerException as exc:
            raise DriverError("docker.pull", exc) from exc

    def run(self, spec: ContainerSpec) -> ContainerInfo:
        kwargs: dict[str, Any] = {
            "name": spec.name,
            "detach": True,
            "network_mode": spec.network_mode,
            "volumes": spec.volumes,
            "environment": spec.environment,
            "restart_policy": {"Name": spec.restart_policy},
        }
        if spec.mem_limit:
            kwargs["mem_limit"] = spec.mem_limit
        if spec.shm_size:
            kwargs["shm_size"] = spec.shm_size
        if spec.gpus:
            kwargs["device_requests"] = [
                docker.types.DeviceRequest(count=-1, capabilities=[["gpu"]])
            ]
        try:
            self.client.containers.run(spec.image, **kwargs)
        except docker.errors.DockerException as exc:
            raise DriverError("docker.run", exc) from exc
        info = self.inspect(spec.name)
        if info is None:
            raise DriverError("docker.run", f"container {spec.name} vanished after start")
        return info

    def stop(self, name: str, timeout: int = 10) -> None:
        try:
            self.client.containers.get(name).stop(timeout=timeout)
        except docker.errors.NotFound:
            return
        except docker.errors.DockerException as exc:
            raise DriverError("docker.stop", exc) from exc

    def remove(self, name: str) -> None:
        """Force-remove the container.  Named volumes are never removed."""
        try:
            self.client.containers.get(name).remove(force=True, v=False)
        except docker.errors.NotFound:
            return
        except docker.errors.DockerException as exc:
            raise DriverError("docker.remove", exc) from exc


# ---------------------------------------------------------------------------
# Host configuration and accelerator
# ---------------------------------------------------------------------------


class SystemdDropIn:
    """Persist runtime environment in a systemd drop-in override."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    @staticmethod
    def render(env: dict[str, str]) -> str:
        lines = ["[Service]"]
        lines.extend(f'Environment="{key}={value}"' for key, value in env.items())
        return "\n".join(lines) + "\n"

    def write(self, env: dict[str, str]) -> bool:
        """Write the override and reload systemd.  Returns ``True`` if the
        file content changed."""
        content = self.render(env)
        try:
            if self.path.is_file() and self.path.read_text(encoding="utf-8") == content:
                return False
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise DriverError("systemd.dropin", exc) from exc
        try:
            subprocess.run(["systemctl", "daemon-reload"], capture_output=True, timeout=30)
        except (OSError, subprocess.SubprocessError) as exc:
            log.warning("systemd_reload_failed", error=str(exc))
        return True


class Accelerator:
    """Queries (never controls) the GPU through ``nvidia-smi``."""

    def __init__(self, binary: str = "nvidia-smi") -> None:
        self.binary = binary

    def _query(self, fields: str) -> list[str]:
        if shutil.which(self.binary) is None:
            return []
        try:
            proc = subprocess.run(
                [self.binary, f"--query-gpu={fields}", "--format=csv,noheader,nounits"],
                capture_output=True,
                text=True,
                timeout=15,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("accelerator_query_failed", error=str(exc))
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def memory_gb(self) -> int | None:
        lines = self._query("memory.total")
        try:
            return int(float(lines[0]) / 1024) if lines else None
        except ValueError:
            return None

    def status(self) -> list[str]:
        return self._query("name,memory.used,memory.total,utilization.gpu")

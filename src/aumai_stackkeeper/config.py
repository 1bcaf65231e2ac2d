"""Configuration management for aumai-stackkeeper."""

from __future__ import annotations

import os
import pwd
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import AssetDirectory, DerivationOverlay

__all__ = [
    "OrchestrationContext",
    "Settings",
    "get_settings",
    "invoking_user_home",
]


class Settings(BaseSettings):
    """Settings loaded from ``STACKKEEPER_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="STACKKEEPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Externally supplied hints (un-prefixed)
    models_hint: str = Field(
        default="",
        validation_alias=AliasChoices("OLLAMA_MODELS", "STACKKEEPER_MODELS_HINT"),
        description="Asset directory override / hint",
    )
    sudo_user: str = Field(
        default="",
        validation_alias=AliasChoices("SUDO_USER", "STACKKEEPER_SUDO_USER"),
        description="Unprivileged user that invoked the run",
    )

    # Ports
    runtime_port: int = Field(default=11434, description="Ollama API port")
    web_port: int = Field(default=8080, description="Open WebUI port")

    # Lock / logs
    lock_file: str = Field(default="/tmp/ollama-update.lock")
    lock_wait_seconds: float = Field(default=60.0)
    lock_interval: float = Field(default=2.0)
    log_file: str = Field(default="/var/log/ollama-webui-update.log")
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    # Native runtime
    runtime_binary: str = Field(default="ollama")
    runtime_log: str = Field(default="/var/log/ollama.log")
    release_feed_url: str = Field(
        default="https://api.github.com/repos/ollama/ollama/releases/latest"
    )
    install_command: str = Field(
        default="curl -fsSL https://ollama.com/install.sh | sh"
    )
    dropin_path: str = Field(
        default="/etc/systemd/system/ollama.service.d/models.conf"
    )
    max_loaded_models: int = Field(default=1)
    num_parallel: int = Field(default=1)
    flash_attention: bool = Field(default=True)
    bind_host: str = Field(default="0.0.0.0")

    # Container service
    webui_image: str = Field(default="ghcr.io/open-webui/open-webui:main")
    webui_container: str = Field(default="open-webui")
    webui_volume: str = Field(default="open-webui")
    container_models_path: str = Field(default="/root/.ollama/models")
    container_memory: str = Field(default="32g")
    container_shm_size: str = Field(default="16g")

    # Derivation
    derivation_suffix: str = Field(default="maxgpu")
    derivation_timeout: float = Field(default=120.0)

    # Health probing
    runtime_probe_attempts: int = Field(default=30)
    web_probe_attempts: int = Field(default=15)
    probe_interval: float = Field(default=2.0)
    http_timeout: float = Field(default=5.0)

    @property
    def runtime_url(self) -> str:
        return f"http://localhost:{self.runtime_port}"

    @property
    def web_url(self) -> str:
        return f"http://localhost:{self.web_port}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def invoking_user_home(sudo_user: str = "") -> Path:
    """Home directory of the user who escalated, else of the current user."""
    if sudo_user:
        try:
            return Path(pwd.getpwnam(sudo_user).pw_dir)
        except KeyError:
            pass
    return Path(os.path.expanduser("~"))


class OrchestrationContext(BaseModel):
    """Immutable per-run context, built once after directory resolution."""

    model_config = ConfigDict(frozen=True)

    settings: Settings
    assets: AssetDirectory
    self_pid: int = Field(default_factory=os.getpid)
    overlay: DerivationOverlay = Field(default_factory=DerivationOverlay)
    gpu_memory_gb: int | None = None

    @property
    def models_dir(self) -> str:
        return self.assets.path

    def runtime_env(self) -> dict[str, str]:
        """Environment injected into every runtime process we start."""
        s = self.settings
        env = {
            "OLLAMA_MODELS": self.assets.path,
            "OLLAMA_MAX_LOADED_MODELS": str(s.max_loaded_models),
            "OLLAMA_NUM_PARALLEL": str(s.num_parallel),
            "OLLAMA_FLASH_ATTENTION": "1" if s.flash_attention else "0",
            "OLLAMA_SCHED_SPREAD": "0",
            "OLLAMA_GPU_LAYERS": str(self.overlay.num_gpu),
            "OLLAMA_HOST": f"{s.bind_host}:{s.runtime_port}",
        }
        if self.gpu_memory_gb:
            env["OLLAMA_GPUMEMORY"] = f"{self.gpu_memory_gb}G"
        return env

    def persistent_env(self) -> dict[str, str]:
        """Subset written to the systemd drop-in override."""
        keys = (
            "OLLAMA_MODELS",
            "OLLAMA_MAX_LOADED_MODELS",
            "OLLAMA_NUM_PARALLEL",
            "OLLAMA_FLASH_ATTENTION",
            "OLLAMA_HOST",
        )
        env = self.runtime_env()
        return {key: env[key] for key in keys}

    def container_env(self) -> dict[str, str]:
        s = self.settings
        return {
            "OLLAMA_BASE_URL": f"http://localhost:{s.runtime_port}",
            "OLLAMA_MODELS": s.container_models_path,
        }

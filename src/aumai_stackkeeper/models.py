"""Pydantic models for aumai-stackkeeper."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "AssetDirectory",
    "DerivationOverlay",
    "DerivationResult",
    "DerivedModelAsset",
    "LockRecord",
    "ModelAsset",
    "PhaseOutcome",
    "PhaseStatus",
    "ProbeResult",
    "RunReport",
    "ServiceKind",
    "ServiceReport",
    "ServiceState",
    "VersionDecision",
    "VersionState",
    "canonical_name",
    "derived_name",
    "is_derived",
    "legacy_derived_name",
]


class ServiceKind(str, Enum):
    RUNTIME = "runtime"
    CONTAINER = "container"


class VersionDecision(str, Enum):
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    UNDETERMINED = "undetermined"


class ServiceState(str, Enum):
    """Observed state of a managed service.

    Always derived from a process/container probe *and* an HTTP check.
    """

    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING_RESPONDING = "running_responding"
    RUNNING_NOT_RESPONDING = "running_not_responding"


class PhaseStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    SKIPPED = "skipped"
    FAILED = "failed"


class VersionState(BaseModel):
    """Result of comparing the installed and published version of a service.

    ``current`` / ``latest`` of ``None`` mean "unknown".  ``reachable`` is
    ``False`` when the release feed or registry could not be contacted.
    """

    service: ServiceKind
    current: str | None = None
    latest: str | None = None
    reachable: bool = True
    decision: VersionDecision = VersionDecision.UNDETERMINED

    @property
    def needs_update(self) -> bool:
        """Apply the asymmetric policy for an undetermined decision.

        The runtime favours freshness (undetermined means update); the
        container favours stability (undetermined means skip).
        """
        if self.decision is VersionDecision.UPDATE_AVAILABLE:
            return True
        if self.decision is VersionDecision.UNDETERMINED:
            return self.service is ServiceKind.RUNTIME
        return False


class LockRecord(BaseModel):
    owner_pid: int


class AssetDirectory(BaseModel):
    """The resolved model-asset root and what was found in it."""

    path: str
    manifest_count: int = 0
    blob_count: int = 0
    size_bytes: int = 0
    created: bool = False
    source: str = "candidate"  # candidate | volume | created | missing


class ModelAsset(BaseModel):
    name: str
    manifest_ref: str = ""


def canonical_name(name: str) -> str:
    """Drop the ``library/`` namespace and a ``:latest`` tag."""
    if name.startswith("library/"):
        name = name[len("library/"):]
    if name.endswith(":latest"):
        name = name[: -len(":latest")]
    return name


def derived_name(base: str, suffix: str = "maxgpu") -> str:
    """Return ``<base>-<suffix>``.

    A non-default tag is folded into the name so ``qwen2.5:32b`` and
    ``qwen2.5:7b`` derive to distinct assets.
    """
    name, _, tag = canonical_name(base).partition(":")
    if tag:
        name = f"{name}-{tag}"
    return f"{name}-{suffix}"


def legacy_derived_name(base: str, suffix: str = "maxgpu") -> str:
    """Return ``<name>:<tag>-<suffix>``, the form older hosts already carry."""
    return f"{canonical_name(base)}-{suffix}"


def is_derived(name: str, suffix: str = "maxgpu") -> bool:
    """True if the name part or the tag part ends with ``-<suffix>``."""
    stem, _, tag = canonical_name(name).partition(":")
    marker = f"-{suffix}"
    return stem.endswith(marker) or tag.endswith(marker)


class DerivationOverlay(BaseModel):
    """Fixed parameter overlay applied to every derived asset."""

    model_config = ConfigDict(frozen=True)

    num_gpu: int = 999
    num_thread: int = 8
    num_ctx: int = 4096
    temperature: float = 0.7
    top_p: float = 0.9
    repeat_penalty: float = 1.1

    def parameters(self) -> dict[str, Any]:
        return self.model_dump()


class DerivedModelAsset(BaseModel):
    name: str
    base: str
    overlay: DerivationOverlay = Field(default_factory=DerivationOverlay)

    def modelfile(self) -> str:
        """Render the derivation definition submitted to the runtime."""
        lines = [f"FROM {self.base}"]
        for key, value in self.overlay.parameters().items():
            lines.append(f"PARAMETER {key} {value}")
        return "\n".join(lines) + "\n"


class DerivationResult(BaseModel):
    created: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


class ProbeResult(BaseModel):
    url: str
    ready: bool
    attempts: int


class PhaseOutcome(BaseModel):
    """Structured result every orchestration phase returns."""

    phase: str
    status: PhaseStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (PhaseStatus.SUCCESS, PhaseStatus.SKIPPED)


class ServiceReport(BaseModel):
    kind: ServiceKind
    state: ServiceState
    endpoint: str
    lan_endpoint: str | None = None
    version: VersionState | None = None


class RunReport(BaseModel):
    """Aggregated final state of a run."""

    outcomes: list[PhaseOutcome] = Field(default_factory=list)
    services: list[ServiceReport] = Field(default_factory=list)
    asset_directory: AssetDirectory | None = None
    models: list[str] = Field(default_factory=list)
    accelerator: list[str] = Field(default_factory=list)
    remediation: list[str] = Field(default_factory=list)
    lock_refused: bool = False
    cancelled: bool = False

    def record(self, outcome: PhaseOutcome) -> PhaseOutcome:
        self.outcomes.append(outcome)
        return outcome

    def outcome(self, phase: str) -> PhaseOutcome | None:
        for item in self.outcomes:
            if item.phase == phase:
                return item
        return None

    def exit_code(self, strict: bool = False) -> int:
        if self.lock_refused:
            return 75
        if self.cancelled:
            return 130
        if strict and any(
            o.status in (PhaseStatus.FAILED, PhaseStatus.DEGRADED)
            for o in self.outcomes
        ):
            return 1
        return 0

"""Model-asset directory discovery and inventory."""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Iterable
from pathlib import Path

import psutil

from .errors import AssetDirectoryError
from .logging import get_logger
from .models import AssetDirectory

__all__ = [
    "AssetDirectoryResolver",
    "default_candidates",
    "directory_size",
    "is_valid_asset_dir",
    "list_manifests",
    "secondary_volume_mounts",
]

log = get_logger("aumai_stackkeeper.assets")

_MANIFESTS = "manifests"
_BLOBS = "blobs"
_VOLUME_SUBPATH = "ollama/models"
_VOLUME_DEVICE_RE = re.compile(r"^/dev/(mapper|vg)")
_SYSTEM_FALLBACKS = (
    "/root/.ollama/models",
    "/home/{sudo_user}/.ollama/models",
    "/mnt/ollama/models",
    "/var/lib/ollama/models",
    "/opt/ollama/models",
    "/data/ollama/models",
)
_CREATE_FALLBACKS = ("/root/.ollama/models", "/tmp/ollama/models")


def _count_files(path: Path) -> int:
    if not path.is_dir():
        return 0
    return sum(1 for p in path.rglob("*") if p.is_file())


def _has_files(path: Path) -> bool:
    return path.is_dir() and any(p.is_file() for p in path.rglob("*"))


def is_valid_asset_dir(path: Path) -> bool:
    """
    A directory is authoritative only if it has a non-empty ``manifests`` or
    ``blobs`` subtree, or holds any file at all.  Missing directories and
    directories containing only empty subdirectories never qualify.
    """
    if not path.is_dir():
        return False
    if _has_files(path / _MANIFESTS) or _has_files(path / _BLOBS):
        return True
    try:
        return _has_files(path)
    except OSError:
        return False


def list_manifests(path: str | Path) -> list[str]:
    """Return manifest names relative to ``<path>/manifests``, sorted."""
    root = Path(path) / _MANIFESTS
    if not root.is_dir():
        return []
    return sorted(
        str(p.relative_to(root)) for p in root.rglob("*") if p.is_file()
    )


def directory_size(path: str | Path) -> int:
    total = 0
    if not Path(path).is_dir():
        return total
    for p in Path(path).rglob("*"):
        try:
            if p.is_file():
                total += p.stat().st_size
        except OSError:
            continue
    return total


def secondary_volume_mounts() -> list[str]:
    """Mount points backed by device-mapper / LVM volumes."""
    mounts: list[str] = []
    try:
        partitions = psutil.disk_partitions(all=False)
    except OSError as exc:
        log.warning("volume_scan_failed", error=str(exc))
        return mounts
    for part in partitions:
        if _VOLUME_DEVICE_RE.match(part.device):
            mounts.append(part.mountpoint)
    return mounts


def default_candidates(home: Path, hint: str = "", sudo_user: str = "") -> list[str]:
    """Search order: invoking-user home, external hint, system fallbacks."""
    candidates = [str(home / ".ollama" / "models"), hint]
    for template in _SYSTEM_FALLBACKS:
        if "{sudo_user}" in template and not sudo_user:
            continue
        candidates.append(template.format(sudo_user=sudo_user))
    return candidates


class AssetDirectoryResolver:
    """
    Resolve the single model-asset root for this host.

    Existing, valid candidates win in priority order.  Failing that, mounted
    secondary volumes are scanned for ``ollama/models``.  As a last resort
    the first-priority candidate is created, cascading through further
    fallback roots.  Nothing is ever deleted.
    """

    def __init__(
        self,
        candidates: Iterable[str],
        mounts: Callable[[], list[str]] = secondary_volume_mounts,
        create_fallbacks: Iterable[str] = _CREATE_FALLBACKS,
    ) -> None:
        self.candidates = [c for c in candidates if c]
        self._mounts = mounts
        self.create_fallbacks = list(create_fallbacks)

    @staticmethod
    def _expand(candidate: str) -> Path:
        return Path(os.path.expandvars(os.path.expanduser(candidate)))

    def resolve(self, create: bool = True) -> AssetDirectory:
        """
        Return the asset root for this host.

        With ``create=False`` nothing is written: when no valid directory
        exists the first-priority candidate is described with source
        ``missing`` instead of being created.
        """
        for candidate in self.candidates:
            path = self._expand(candidate)
            if is_valid_asset_dir(path):
                log.info("asset_dir_found", path=str(path))
                return self.describe(path, source="candidate")
            log.debug("asset_dir_rejected", path=str(path))

        log.info("asset_dir_scanning_volumes")
        for mount in self._mounts():
            path = Path(mount) / _VOLUME_SUBPATH
            if is_valid_asset_dir(path):
                log.info("asset_dir_found_on_volume", path=str(path), mount=mount)
                return self.describe(path, source="volume")

        targets = self.candidates[:1] + self.create_fallbacks
        if not create and targets:
            path = self._expand(targets[0])
            log.info("asset_dir_missing", path=str(path))
            return AssetDirectory(path=str(path), source="missing")
        for target in targets:
            path = self._expand(target)
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                log.warning("asset_dir_create_failed", path=str(path), error=str(exc))
                continue
            log.info("asset_dir_created", path=str(path))
            return self.describe(path, source="created", created=True)

        raise AssetDirectoryError(
            f"no usable asset directory among {', '.join(targets)}"
        )

    @staticmethod
    def describe(path: Path, source: str = "candidate", created: bool = False) -> AssetDirectory:
        """Collect discovery statistics for *path*."""
        manifests = _count_files(path / _MANIFESTS)
        blobs = _count_files(path / _BLOBS)
        log.info("asset_inventory", path=str(path), manifests=manifests, blobs=blobs)
        return AssetDirectory(
            path=str(path),
            manifest_count=manifests,
            blob_count=blobs,
            size_bytes=directory_size(path),
            created=created,
            source=source,
        )

"""Version comparators: semantic version for the runtime, digest for the container."""

from __future__ import annotations

from .drivers import ContainerEngine, ReleaseFeed, RuntimeDriver
from .errors import DriverError
from .logging import get_logger
from .models import ServiceKind, VersionDecision, VersionState

__all__ = ["compare_container", "compare_runtime"]

log = get_logger("aumai_stackkeeper.versions")


def compare_runtime(driver: RuntimeDriver, feed: ReleaseFeed) -> VersionState:
    """
    ``update_available`` iff installed and published versions are both known
    and differ.  A missing binary is an install, also ``update_available``.
    Anything else unknown is ``undetermined``, which for the runtime still
    means "update".
    """
    if not driver.binary_present():
        log.info("runtime_not_installed")
        return VersionState(
            service=ServiceKind.RUNTIME,
            decision=VersionDecision.UPDATE_AVAILABLE,
        )

    current = driver.installed_version()
    try:
        latest: str | None = feed.latest_version()
        reachable = True
    except DriverError as exc:
        log.warning("runtime_feed_unreachable", error=str(exc))
        latest, reachable = None, False

    if current is None or latest is None:
        decision = VersionDecision.UNDETERMINED
    elif current != latest:
        decision = VersionDecision.UPDATE_AVAILABLE
    else:
        decision = VersionDecision.UP_TO_DATE

    state = VersionState(
        service=ServiceKind.RUNTIME,
        current=current,
        latest=latest,
        reachable=reachable,
        decision=decision,
    )
    log.info(
        "runtime_version_checked",
        current=current or "unknown",
        latest=latest or "unknown",
        decision=decision.value,
        needs_update=state.needs_update,
    )
    return state


def compare_container(engine: ContainerEngine, image: str, name: str) -> VersionState:
    """
    Compare the running instance's image digest with the registry, falling
    back to the newest locally cached image for the tag when the registry
    is unreachable.  ``undetermined`` here means "leave it alone".
    """
    try:
        info = engine.inspect(name)
    except DriverError as exc:
        log.warning("container_inspect_failed", error=str(exc))
        info = None

    if info is None:
        log.info("container_not_found", name=name)
        return VersionState(
            service=ServiceKind.CONTAINER,
            decision=VersionDecision.UPDATE_AVAILABLE,
        )
    if not info.image_id:
        log.warning("container_image_unknown", name=name)
        return VersionState(
            service=ServiceKind.CONTAINER,
            decision=VersionDecision.UPDATE_AVAILABLE,
        )

    current = info.repo_digest or info.image_id
    try:
        remote = engine.remote_digest(image)
    except DriverError as exc:
        log.warning("registry_unreachable", image=image, error=str(exc))
        remote = None

    if remote is not None:
        decision = (
            VersionDecision.UP_TO_DATE
            if remote == current
            else VersionDecision.UPDATE_AVAILABLE
        )
        state = VersionState(
            service=ServiceKind.CONTAINER,
            current=current,
            latest=remote,
            reachable=True,
            decision=decision,
        )
    else:
        try:
            local = engine.local_image_id(image)
        except DriverError as exc:
            log.warning("local_images_unavailable", error=str(exc))
            local = None
        if local is None:
            decision = VersionDecision.UNDETERMINED
            log.warning("container_version_undetermined", hint=f"docker pull {image}")
        elif local == info.image_id:
            decision = VersionDecision.UP_TO_DATE
        else:
            decision = VersionDecision.UPDATE_AVAILABLE
        state = VersionState(
            service=ServiceKind.CONTAINER,
            current=info.image_id,
            latest=local,
            reachable=False,
            decision=decision,
        )

    log.info(
        "container_version_checked",
        current=(state.current or "unknown")[:12],
        latest=(state.latest or "unknown")[:12],
        reachable=state.reachable,
        decision=state.decision.value,
    )
    return state

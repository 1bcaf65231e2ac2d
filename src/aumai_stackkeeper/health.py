"""Bounded HTTP readiness polling."""

from __future__ import annotations

import time
from collections.abc import Callable

import httpx

from .logging import get_logger
from .models import ProbeResult

__all__ = ["HealthProbe"]

log = get_logger("aumai_stackkeeper.health")


class HealthProbe:
    """Poll an HTTP endpoint a bounded number of times.

    Any HTTP response below 500 counts as "responding".  The probe never
    retries past ``max_attempts``; callers decide what a timeout means.
    """

    def __init__(
        self,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._sleep = sleep

    def check(self, url: str) -> bool:
        try:
            resp = self._client.get(url)
        except httpx.HTTPError:
            return False
        return resp.status_code < 500

    def wait_ready(self, url: str, max_attempts: int = 30, interval: float = 2.0) -> ProbeResult:
        for attempt in range(1, max_attempts + 1):
            if self.check(url):
                log.info("endpoint_ready", url=url, attempts=attempt)
                return ProbeResult(url=url, ready=True, attempts=attempt)
            log.debug("endpoint_waiting", url=url, attempt=attempt, max_attempts=max_attempts)
            if attempt < max_attempts:
                self._sleep(interval)
        log.warning("endpoint_timeout", url=url, attempts=max_attempts)
        return ProbeResult(url=url, ready=False, attempts=max_attempts)

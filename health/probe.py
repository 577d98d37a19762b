"""
health/probe.py -- Periodic reachability checks for every known app URL.

Every CHECK_INTERVAL seconds the probe takes the union of static and
discovered URLs and checks them concurrently (at most MAX_CONCURRENT in
flight). One check:
  HEAD, 5 s timeout   -> 2xx/3xx or 401/403 means "online"
  otherwise GET, with its own 5 s window, classified the same way
  any transport error -> "offline"

Results are collected into a fresh dict and swapped in with one assignment
under the lock, so readers only ever see a complete sweep. URLs not yet
checked read as "unknown".

This is the only HTTP client in DashGate that skips TLS verification;
self-signed certificates are normal for the services being probed.

Layer rule: no imports from api/, auth/ or discovery/.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable

import httpx

logger = logging.getLogger("dashgate.health")

CHECK_INTERVAL = 30.0
CHECK_TIMEOUT = 5.0
MAX_CONCURRENT = 20

ONLINE = "online"
OFFLINE = "offline"
UNKNOWN = "unknown"


def is_healthy(status_code: int) -> bool:
    return 200 <= status_code < 400 or status_code in (401, 403)


class HealthProbe:
    """Usage:
    probe = HealthProbe(lambda: catalog.all_urls() + discovery.all_urls())
    task = asyncio.create_task(probe.run_forever())
    probe.status(url)
    """

    def __init__(
        self,
        url_source: Callable[[], Iterable[str]],
        transport: httpx.AsyncBaseTransport | None = None,
        interval: float = CHECK_INTERVAL,
    ) -> None:
        self._url_source = url_source
        self._transport = transport
        self.interval = interval
        self._lock = threading.Lock()
        self._statuses: dict[str, str] = {}

    def status(self, url: str) -> str:
        with self._lock:
            return self._statuses.get(url, UNKNOWN)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return self._statuses

    async def _check(self, client: httpx.AsyncClient, url: str) -> str:
        try:
            response = await client.head(url)
            if is_healthy(response.status_code):
                return ONLINE
        except (httpx.HTTPError, httpx.InvalidURL):
            return OFFLINE
        try:
            async with client.stream("GET", url) as response:
                return ONLINE if is_healthy(response.status_code) else OFFLINE
        except (httpx.HTTPError, httpx.InvalidURL):
            return OFFLINE

    async def run_checks(self) -> dict[str, str]:
        """One sweep over the current URL set. Returns the published map."""
        urls = sorted({u for u in self._url_source() if u})
        sem = asyncio.Semaphore(MAX_CONCURRENT)

        async with httpx.AsyncClient(
            verify=False,
            timeout=CHECK_TIMEOUT,
            follow_redirects=False,
            transport=self._transport,
        ) as client:

            async def _one(url: str) -> tuple[str, str]:
                async with sem:
                    return url, await self._check(client, url)

            results = await asyncio.gather(*(_one(u) for u in urls))

        fresh = dict(results)
        with self._lock:
            self._statuses = fresh
        logger.debug("Health sweep finished: %d URLs", len(fresh))
        return fresh

    async def run_forever(self) -> None:
        """Sweep now, then every interval. Faults are logged; cancellation stops the loop."""
        while True:
            try:
                await self.run_checks()
            except Exception:
                logger.exception("Health sweep failed")
            await asyncio.sleep(self.interval)

"""
discovery/base.py -- Shared poll-loop machinery for discovery sources.

A DiscoverySource owns one background asyncio task and one cached list of
DiscoveredApp. Subclasses implement poll(settings) only.

Lifecycle:
  start()  -- under the control lock: no-op if running, else create the stop
              event and the worker task and set the running flag.
  stop()   -- under the control lock: clear the flag, set the stop event, wait
              for the worker to exit, then clear the cache. The worker never
              takes the control lock, so waiting on it cannot deadlock.
  worker   -- one poll immediately, then one poll per interval until the stop
              event fires. Every poll fault is logged and swallowed so one
              source crashing never affects another.

Readers call snapshot(), which returns a shallow copy of the cached list.

Outbound HTTP:
  screen_url() runs core.urlvalidation.validate_discovery_url() in a thread
  before any socket is opened. fetch_json() streams the body and aborts past
  MAX_RESPONSE_BYTES.

Layer rule: no imports from api/. auth/ is imported for the SystemSettings
type only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Callable

import httpx

from auth.settings import SystemSettings
from core.models import DiscoveredApp
from core.urlvalidation import URLValidationError, validate_discovery_url

logger = logging.getLogger("dashgate.discovery")

POLL_INTERVAL = 60.0
REQUEST_TIMEOUT = 10.0
MAX_RESPONSE_BYTES = 10 * 1024 * 1024


class DiscoveryError(Exception):
    """One poll failed (screening, transport, status, or decode)."""


def title_name(raw: str) -> str:
    """ "my-app" -> "My App"."""
    return raw.replace("-", " ").title()


def host_label(host: str) -> str:
    """Display name from the first DNS label: "grafana.home.lan" -> "Grafana"."""
    return title_name(host.split(".", 1)[0])


async def screen_url(url: str) -> None:
    try:
        await asyncio.to_thread(validate_discovery_url, url)
    except URLValidationError as exc:
        raise DiscoveryError(f"SSRF protection: {exc}") from exc


async def fetch_json(client: httpx.AsyncClient, method: str, url: str, **kwargs):
    """Send one request and decode a JSON body of at most MAX_RESPONSE_BYTES.

    Raises DiscoveryError on transport errors, 401, any other non-200 status,
    an oversized body, or invalid JSON.
    """
    try:
        async with client.stream(method, url, **kwargs) as response:
            if response.status_code == 401:
                raise DiscoveryError("authentication required or invalid credentials")
            if response.status_code != 200:
                raise DiscoveryError(f"API returned status {response.status_code}")
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > MAX_RESPONSE_BYTES:
                    raise DiscoveryError("response exceeds size limit")
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise DiscoveryError(str(exc) or type(exc).__name__) from exc
    try:
        return json.loads(bytes(body))
    except ValueError as exc:
        raise DiscoveryError("failed to decode response") from exc


class DiscoverySource:
    """Base class: one cancellable poll loop plus a cached snapshot.

    settings: zero-argument callable returning the current SystemSettings.
    transport: optional httpx transport for TCP requests (tests pass a
        MockTransport).
    """

    tag = ""
    interval = POLL_INTERVAL

    def __init__(self, settings: Callable[[], SystemSettings], transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport
        self._apps: list[DiscoveredApp] = []
        self._apps_lock = threading.Lock()
        self._control = asyncio.Lock()
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    async def poll(self, settings: SystemSettings) -> list[DiscoveredApp]:
        raise NotImplementedError

    def _on_stop(self) -> None:
        """Drop per-source caches (e.g. auth tokens) after the worker exits."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """Start the worker. Returns False if it was already running."""
        async with self._control:
            if self._running:
                return False
            self._stop_event = asyncio.Event()
            self._task = asyncio.create_task(self._worker(self._stop_event), name=f"discovery-{self.tag}")
            self._running = True
        logger.info("%s discovery started", self.tag)
        return True

    async def stop(self) -> None:
        async with self._control:
            task, event = self._task, self._stop_event
            self._running = False
            self._task = None
            self._stop_event = None
            if event is not None:
                event.set()
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
            with self._apps_lock:
                self._apps = []
            self._on_stop()
        if task is not None:
            logger.info("%s discovery stopped", self.tag)

    async def _worker(self, stop: asyncio.Event) -> None:
        while True:
            await self.refresh()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                continue

    # ------------------------------------------------------------------
    # Polling and reads
    # ------------------------------------------------------------------

    async def refresh(self) -> int | None:
        """Run one poll and publish the result. Returns the app count, or None on failure."""
        try:
            apps = await self.poll(self._settings())
        except DiscoveryError as exc:
            logger.warning("%s discovery error: %s", self.tag, exc)
            return None
        except Exception:
            logger.exception("%s discovery poll crashed", self.tag)
            return None

        if not self._running:
            return len(apps)
        with self._apps_lock:
            self._apps = apps
        logger.info("%s discovery found %d apps", self.tag, len(apps))
        return len(apps)

    def snapshot(self) -> list[DiscoveredApp]:
        with self._apps_lock:
            return list(self._apps)

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport, **kwargs)

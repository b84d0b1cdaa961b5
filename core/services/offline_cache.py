"""
Offline cache controller for the app's service worker.

Two fixed strategies:
- Network-first for page navigations and the critical shell files, so auth
  and session UI never go stale once the network is reachable
- Cache-first for everything else (icons, manifest, static assets)

Cache generations are replaced wholesale: activating a new version deletes
every cache store whose name differs from the current version tag. The
browser globals (caches, fetch, clients) sit behind small protocols so the
policy runs and tests without a browser host.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol
from urllib.parse import urljoin, urlsplit

import structlog

from core.config import CacheConfig

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CacheRequest:
    """An intercepted request. ``mode == "navigate"`` marks a page load."""

    url: str
    method: str = "GET"
    mode: str = "no-cors"

    @property
    def is_navigation(self) -> bool:
        return self.mode == "navigate"

    @property
    def path(self) -> str:
        return urlsplit(self.url).path


@dataclass(frozen=True)
class CacheResponse:
    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class CacheStorage(Protocol):
    """The host's versioned cache stores (``self.caches`` in a worker)."""

    async def open_generation(self, name: str) -> None: ...

    async def match_cached_request(self, request: CacheRequest) -> CacheResponse | None: ...

    async def store(self, name: str, request: CacheRequest, response: CacheResponse) -> None: ...

    async def enumerate_cache_generations(self) -> list[str]: ...

    async def delete_cache_generation(self, name: str) -> bool: ...


class Network(Protocol):
    """Raises ConnectionError (or OSError/TimeoutError) when unreachable."""

    async def fetch(self, request: CacheRequest) -> CacheResponse: ...


class WorkerLifecycle(Protocol):
    async def skip_waiting(self) -> None: ...

    async def claim_clients(self) -> None: ...


class WorkerState(str, Enum):
    NEW = "new"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVE = "active"


class FetchStrategy(str, Enum):
    NETWORK_FIRST = "network_first"
    CACHE_FIRST = "cache_first"


_NETWORK_ERRORS = (ConnectionError, TimeoutError, OSError)


class OfflineCacheController:
    """Install, activate and per-request cache policy for one worker generation."""

    def __init__(
        self,
        config: CacheConfig,
        caches: CacheStorage,
        network: Network,
        lifecycle: WorkerLifecycle,
    ) -> None:
        self.config = config
        self.caches = caches
        self.network = network
        self.lifecycle = lifecycle
        self.state = WorkerState.NEW
        self.logger = logger.bind(component="offline_cache", generation=config.version_tag)
        self._pending_writes: set[asyncio.Task[None]] = set()

    @property
    def cache_name(self) -> str:
        return self.config.version_tag

    def resolve(self, asset: str) -> str:
        """Resolve a manifest path against the worker scope."""
        return urljoin(self.config.scope_url, asset)

    @property
    def root_request(self) -> CacheRequest:
        return CacheRequest(url=self.resolve("./"))

    async def install(self) -> None:
        """
        Populate this generation with the app shell, then skip waiting.

        Like ``cache.addAll`` nothing is stored unless every asset fetched
        successfully; any failure propagates and aborts activation.
        """
        self.state = WorkerState.INSTALLING
        await self.caches.open_generation(self.cache_name)

        fetched: list[tuple[CacheRequest, CacheResponse]] = []
        for asset in self.config.shell_assets:
            request = CacheRequest(url=self.resolve(asset))
            response = await self.network.fetch(request)
            if not response.ok:
                raise RuntimeError(f"Failed to cache {request.url}: HTTP {response.status}")
            fetched.append((request, response))

        for request, response in fetched:
            await self.caches.store(self.cache_name, request, response)

        self.logger.info("shell_cached", assets=len(fetched))
        await self.lifecycle.skip_waiting()
        self.state = WorkerState.INSTALLED

    async def activate(self) -> list[str]:
        """Delete every other cache generation and take control of open pages."""
        deleted: list[str] = []
        for name in await self.caches.enumerate_cache_generations():
            if name != self.cache_name:
                await self.caches.delete_cache_generation(name)
                deleted.append(name)
                self.logger.info("cache_generation_deleted", name=name)

        await self.lifecycle.claim_clients()
        self.state = WorkerState.ACTIVE
        return deleted

    def strategy_for(self, request: CacheRequest) -> FetchStrategy:
        filename = request.path.rsplit("/", 1)[-1]
        if request.is_navigation or filename in self.config.critical_files:
            return FetchStrategy.NETWORK_FIRST
        return FetchStrategy.CACHE_FIRST

    async def handle_fetch(self, request: CacheRequest) -> CacheResponse:
        if self.strategy_for(request) is FetchStrategy.NETWORK_FIRST:
            return await self._network_first(request)
        return await self._cache_first(request)

    async def _network_first(self, request: CacheRequest) -> CacheResponse:
        try:
            response = await self.network.fetch(request)
        except _NETWORK_ERRORS as e:
            self.logger.info("network_unavailable_serving_cache", url=request.url, error=str(e))
            cached = await self.caches.match_cached_request(request)
            if cached is not None:
                return cached
            shell = await self.caches.match_cached_request(self.root_request)
            if shell is not None:
                return shell
            raise

        if response.ok and request.method == "GET":
            self._store_in_background(request, response)
        return response

    async def _cache_first(self, request: CacheRequest) -> CacheResponse:
        cached = await self.caches.match_cached_request(request)
        if cached is not None:
            return cached

        response = await self.network.fetch(request)
        if response.status != 200 or request.method != "GET":
            return response

        self._store_in_background(request, response)
        return response

    def _store_in_background(self, request: CacheRequest, response: CacheResponse) -> None:
        task = asyncio.create_task(self._store_quietly(request, response))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _store_quietly(self, request: CacheRequest, response: CacheResponse) -> None:
        try:
            await self.caches.store(self.cache_name, request, response)
        except Exception as e:
            # Opportunistic write; the page already has its response.
            self.logger.warning("cache_write_failed", url=request.url, error=str(e))

    async def drain(self) -> None:
        """Wait for outstanding background cache writes."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

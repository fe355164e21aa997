"""Shell worker: the request interception layer.

Sits between clients and the network. Keeps a versioned cache namespace
populated with the application shell and serves requests network-first:

- install: open the namespace and add every shell asset (all-or-nothing)
- activate: take control of all current and future requests
- fetch: non-GET goes straight to the network; GET tries the network and
  falls back to the cache only when the network fails

Steady-state handling never writes to the cache; the namespace is filled
at install time only.
"""

import functools
import logging
import threading
from collections.abc import Callable, Sequence

from . import network
from .cache_store import BulkAddError, CacheNamespace, CacheStorage, CacheStoreError
from .config import Config
from .models import InterceptedRequest, StoredResponse, WorkerState
from .network import NetworkError

logger = logging.getLogger(__name__)

FetchFunc = Callable[[InterceptedRequest], StoredResponse]


class WorkerError(Exception):
    """Base class for shell worker errors."""

    pass


class InstallFailure(WorkerError):
    """Raised when the shell asset set cannot be cached at install time."""

    pass


class NetworkUnavailable(WorkerError):
    """Raised when a GET fails on the network and has no cached fallback."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Network unavailable for {url} and no cached response: {reason}")
        self.url = url
        self.reason = reason


class ShellWorker:
    """Network-first request interceptor backed by a static shell cache."""

    def __init__(
        self,
        storage: CacheStorage,
        cache_name: str,
        asset_urls: Sequence[str],
        fetch: FetchFunc,
        skip_waiting: bool = True,
    ) -> None:
        """Initialize the worker.

        Args:
            storage: Durable cache store holding the namespace.
            cache_name: Versioned name of the namespace to use.
            asset_urls: Absolute URLs of the shell asset set.
            fetch: Network primitive for outbound requests.
            skip_waiting: Activate immediately after a successful install.
        """
        self._storage = storage
        self._cache_name = cache_name
        self._asset_urls = tuple(dict.fromkeys(asset_urls))
        self._fetch = fetch
        self._skip_waiting = skip_waiting
        self._state = WorkerState.UNINSTALLED
        self._cache: CacheNamespace | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> WorkerState:
        """Current lifecycle state."""
        return self._state

    @property
    def is_active(self) -> bool:
        """Whether the worker controls requests."""
        return self._state is WorkerState.ACTIVE

    @property
    def cache_name(self) -> str:
        return self._cache_name

    @property
    def asset_urls(self) -> tuple[str, ...]:
        return self._asset_urls

    def install(self) -> None:
        """Handle the install lifecycle event.

        Opens (or creates) the cache namespace and adds the shell asset set.
        The worker state is unchanged if any asset cannot be cached.

        Raises:
            InstallFailure: If any shell asset is unreachable or not 2xx,
                or the cache store cannot be written.
        """
        logger.info("Installing shell cache '%s' (%d assets)", self._cache_name, len(self._asset_urls))

        try:
            cache = self._storage.open(self._cache_name)
            cache.add_all(self._asset_urls, self._fetch)
        except BulkAddError as e:
            logger.error("Install failed: %s", e)
            raise InstallFailure(str(e)) from e
        except CacheStoreError as e:
            logger.error("Install failed, cache store error: %s", e)
            raise InstallFailure(f"Cache store error: {e}") from e

        with self._lock:
            self._cache = cache
            if self._state is WorkerState.UNINSTALLED:
                self._state = WorkerState.INSTALLED

        logger.info("Shell cache '%s' installed", self._cache_name)

        if self._skip_waiting:
            self.activate()

    def activate(self) -> None:
        """Handle the activate lifecycle event.

        Claims every current and future client at once, without waiting
        for a previous worker to release them.

        Raises:
            WorkerError: If called before a successful install.
        """
        with self._lock:
            if self._state is WorkerState.ACTIVE:
                return
            if self._state is WorkerState.UNINSTALLED:
                raise WorkerError("Cannot activate before a successful install")
            self._state = WorkerState.ACTIVE

        logger.info("Shell worker active, claimed all clients (cache '%s')", self._cache_name)

    def handle_fetch(self, request: InterceptedRequest) -> StoredResponse:
        """Handle one intercepted request.

        Args:
            request: The outbound request.

        Returns:
            The network response, or the cached response when the network
            fails for a GET that is in the shell cache.

        Raises:
            NetworkError: For non-GET requests (and any request while the
                worker is not active) when the network fails.
            NetworkUnavailable: For GET requests when the network fails and
                no cached response exists.
        """
        # inactive workers pass every request through
        cache = self._cache if self.is_active else None
        if cache is None or not request.is_get:
            return self._fetch(request)

        try:
            return self._fetch(request)
        except NetworkError as e:
            cached = self._match(cache, request)
            if cached is None:
                logger.warning("%s %s failed with no cached fallback: %s", request.method, request.url, e.reason)
                raise NetworkUnavailable(request.url, e.reason) from e
            logger.info("Serving %s from cache '%s' (network: %s)", request.url, self._cache_name, e.reason)
            return cached

    def _match(self, cache: CacheNamespace, request: InterceptedRequest) -> StoredResponse | None:
        try:
            return cache.match(request)
        except CacheStoreError as e:
            logger.error("Cache lookup failed for %s: %s", request.url, e)
            return None


def create_worker(config: Config, storage: CacheStorage) -> ShellWorker:
    """Build a shell worker from configuration, using the real network."""
    return ShellWorker(
        storage,
        cache_name=config.cache.name,
        asset_urls=config.asset_urls,
        fetch=functools.partial(network.fetch, timeout=config.origin.timeout),
        skip_waiting=config.worker.skip_waiting,
    )

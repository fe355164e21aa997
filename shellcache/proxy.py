"""HTTP reverse proxy hosting the shell worker."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional

from .cache_store import CacheStorage, CacheStoreError
from .config import Config
from .models import InterceptedRequest, StoredResponse
from .network import NetworkError, filter_headers
from .worker import InstallFailure, NetworkUnavailable, ShellWorker

logger = logging.getLogger(__name__)

# Response headers rewritten by the proxy itself.
_RELAY_SKIP_HEADERS = frozenset({"content-length", "date", "server"})


class ProxyError(Exception):
    """Raised when the proxy server fails to start."""
    pass


class ProxyHandler(BaseHTTPRequestHandler):
    """Request handler that hands every request to the shell worker."""

    # Class-level references set by factory
    worker: Optional[ShellWorker] = None
    storage: Optional[CacheStorage] = None
    origin_url: str = ""
    health_path: str = ""

    protocol_version = "HTTP/1.1"

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Proxy %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)
        self.close_connection = True

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _relay(self, response: StoredResponse) -> None:
        """Write a worker response back to the client."""
        self.send_response(response.status, response.reason or None)
        for name, value in filter_headers(response.headers):
            if name.lower() not in _RELAY_SKIP_HEADERS:
                self.send_header(name, value)
        content_length = str(len(response.body))
        if self.command == "HEAD":
            content_length = response.header("Content-Length") or content_length
        self.send_header("Content-Length", content_length)
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)
        self.close_connection = True

    def _read_body(self) -> Optional[bytes]:
        length = self.headers.get("Content-Length")
        if not length:
            return None
        size = int(length)
        if size < 0:
            raise ValueError(f"Negative Content-Length: {size}")
        return self.rfile.read(size)

    def _build_request(self) -> InterceptedRequest:
        return InterceptedRequest(
            method=self.command,
            url=self.origin_url.rstrip("/") + self.path,
            headers=tuple(self.headers.items()),
            body=self._read_body(),
        )

    def _handle_health(self) -> None:
        """Handle the health endpoint - report worker state."""
        try:
            entries = self.storage.count(self.worker.cache_name)
        except CacheStoreError as e:
            logger.error("Cache store error in health check: %s", e)
            self._send_error_json(500, "Cache store error")
            return

        self._send_json(
            200,
            {
                "status": "ok",
                "state": self.worker.state.value,
                "cache": self.worker.cache_name,
                "entries": entries,
            },
        )

    def _dispatch(self) -> None:
        """Route a request to the health endpoint or through the worker."""
        if self.worker is None:
            self._send_error_json(503, "Worker not available")
            return

        if self.command in ("GET", "HEAD") and self.path == self.health_path:
            self._handle_health()
            return

        try:
            request = self._build_request()
        except ValueError:
            self._send_error_json(400, "Invalid Content-Length")
            return

        try:
            response = self.worker.handle_fetch(request)
        except NetworkUnavailable as e:
            self._send_error_json(504, "Network unavailable and no cached response")
            logger.debug("No fallback for %s: %s", request.url, e.reason)
            return
        except NetworkError as e:
            logger.warning("%s %s failed: %s", request.method, request.url, e.reason)
            self._send_error_json(502, f"Upstream request failed: {e.reason}")
            return
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")
            return

        self._relay(response)

    do_GET = _dispatch
    do_HEAD = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_PATCH = _dispatch
    do_DELETE = _dispatch
    do_OPTIONS = _dispatch


def _create_handler_class(
    worker: ShellWorker,
    storage: CacheStorage,
    origin_url: str,
    health_path: str,
) -> type:
    """Create a handler class with the worker and config bound."""

    class BoundProxyHandler(ProxyHandler):
        pass

    BoundProxyHandler.worker = worker
    BoundProxyHandler.storage = storage
    BoundProxyHandler.origin_url = origin_url
    BoundProxyHandler.health_path = health_path
    return BoundProxyHandler


class ProxyServer:
    """Threaded reverse proxy that routes client traffic through the shell worker."""

    def __init__(
        self,
        config: Config,
        worker: ShellWorker,
        storage: CacheStorage,
    ) -> None:
        """Initialize the proxy server.

        Args:
            config: Full configuration (origin, worker and proxy sections).
            worker: Shell worker handling lifecycle events and fetches.
            storage: Cache store, used by the health endpoint.
        """
        self.config = config
        self.worker = worker
        self.storage = storage
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def install_worker(self) -> bool:
        """Dispatch the install and activate lifecycle events.

        Install is retried on failure as configured. Returns True once the
        worker is active, False if every install attempt failed.
        """
        attempts = self.config.worker.install_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self.worker.install()
                break
            except InstallFailure as e:
                if attempt == attempts:
                    logger.error(
                        "Shell install failed after %d attempt(s): %s. Serving uncontrolled traffic.",
                        attempts,
                        e,
                    )
                    return False
                logger.warning(
                    "Shell install attempt %d/%d failed, retrying in %.1fs",
                    attempt,
                    attempts,
                    self.config.worker.install_retry_delay,
                )
                if self._shutdown_event.wait(self.config.worker.install_retry_delay):
                    return False

        # skip_waiting activates on install; otherwise activate explicitly
        self.worker.activate()
        return True

    def start(self) -> None:
        """Install the worker and start serving in a background thread.

        Raises:
            ProxyError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Proxy server is already running")
            return

        port = self.config.proxy.port
        try:
            handler_class = _create_handler_class(
                self.worker,
                self.storage,
                self.config.origin.url,
                self.config.proxy.health_path,
            )
            self._server = ThreadingHTTPServer((self.config.proxy.host, port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks
        except OSError as e:
            # Provide specific guidance based on error type
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ProxyError(
                    f"Port {port} is already in use. "
                    f"Another process may be using this port, or shellcache is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ProxyError(
                    f"Permission denied for port {port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ProxyError(f"Failed to start proxy server on port {port}: {e}")

        self._shutdown_event.clear()
        try:
            self.install_worker()
        except Exception:
            self._server.server_close()
            self._server = None
            raise

        if self._shutdown_event.is_set():
            logger.info("Shutdown requested during install, not serving")
            self._server.server_close()
            self._server = None
            return

        self._thread = threading.Thread(
            target=self._serve_forever,
            name="proxy-server",
            daemon=True,
        )
        self._thread.start()

        logger.info("Proxy server started on port %d -> %s", port, self.config.origin.url)

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def request_shutdown(self) -> None:
        """Ask the server to stop, also cutting short any install retry wait.

        Safe to call from a signal handler; call stop() afterwards to join.
        """
        self._shutdown_event.set()

    def stop(self) -> None:
        """Stop the proxy server gracefully."""
        if self._thread is None:
            if self._server is not None:
                self._server.server_close()
                self._server = None
            return

        logger.info("Stopping proxy server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("Proxy server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def port(self) -> int:
        """Port the server is bound to."""
        if self._server is not None:
            return self._server.server_address[1]
        return self.config.proxy.port

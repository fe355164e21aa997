"""Shared fixtures: a local origin server and a cache store."""

import socket
import sqlite3
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from shellcache.cache_store import CacheStorage, init_store


def get_free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


def unreachable_url(path: str = "/") -> str:
    """Return a URL on a local port nothing listens on."""
    return f"http://127.0.0.1:{get_free_port()}{path}"


class Origin:
    """A tiny HTTP origin with configurable routes that records requests."""

    def __init__(self) -> None:
        self.routes: dict[str, tuple[int, dict[str, str], bytes]] = {
            "/": (200, {"Content-Type": "text/html"}, b"<html>root</html>"),
            "/index.html": (200, {"Content-Type": "text/html"}, b"<html>index</html>"),
            "/manifest.json": (200, {"Content-Type": "application/json"}, b'{"name": "TopView"}'),
        }
        self.requests: list[tuple[str, str, bytes]] = []
        self._lock = threading.Lock()
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def url(self) -> str:
        assert self._server is not None
        return f"http://127.0.0.1:{self._server.server_address[1]}"

    def start(self) -> None:
        origin = self

        class Handler(BaseHTTPRequestHandler):
            def log_message(self, format, *args):
                pass

            def _handle(self):
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length) if length else b""
                with origin._lock:
                    origin.requests.append((self.command, self.path, body))

                if self.command != "GET" and self.command != "HEAD":
                    status, headers, payload = 201, {"Content-Type": "text/plain"}, b"echo:" + body
                else:
                    status, headers, payload = origin.routes.get(
                        self.path, (404, {"Content-Type": "text/plain"}, b"not found")
                    )

                self.send_response(status)
                for name, value in headers.items():
                    self.send_header(name, value)
                if "Content-Length" not in headers:
                    self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                if self.command != "HEAD":
                    self.wfile.write(payload)

            do_GET = _handle
            do_HEAD = _handle
            do_POST = _handle
            do_PUT = _handle
            do_DELETE = _handle

        self._server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Shut the origin down; further requests are refused."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._thread.join(timeout=5)
            self._server = None

    def paths(self, method: str = "GET") -> list[str]:
        with self._lock:
            return [path for m, path, _ in self.requests if m == method]


@pytest.fixture
def origin() -> Origin:
    """Run a local origin server for the duration of a test."""
    server = Origin()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def store_conn(tmp_path: Path) -> sqlite3.Connection:
    """Create a cache store connection with initialized tables."""
    conn = init_store(str(tmp_path / "cache.db"))
    yield conn
    conn.close()


@pytest.fixture
def storage(store_conn: sqlite3.Connection) -> CacheStorage:
    """Cache storage over a fresh store."""
    return CacheStorage(store_conn)

"""SQLite-backed durable cache store for named response namespaces."""

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from .models import InterceptedRequest, StoredResponse
from .network import NetworkError

logger = logging.getLogger(__name__)


class CacheStoreError(Exception):
    """Raised when a cache store operation fails."""

    pass


class BulkAddError(CacheStoreError):
    """Raised when a bulk add rejects one of its resources.

    Nothing is written to the namespace when this is raised.
    """

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to add {url}: {reason}")
        self.url = url
        self.reason = reason


# Global lock for thread-safe store access.
# SQLite allows concurrent reads but only one writer at a time.
# Proxy handler threads and the install path share one connection.
_store_lock = threading.Lock()


def init_store(store_path: str) -> sqlite3.Connection:
    """Initialize the cache store and create tables if they don't exist.

    Args:
        store_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        CacheStoreError: If store initialization fails.
    """
    try:
        parent_dir = Path(store_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(store_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS namespaces (
                name TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                namespace TEXT NOT NULL,
                method TEXT NOT NULL,
                url TEXT NOT NULL,
                status INTEGER NOT NULL,
                reason TEXT NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                response_url TEXT NOT NULL,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (namespace, method, url)
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entries_namespace
            ON entries(namespace)
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise CacheStoreError(f"Failed to initialize cache store: {e}")
    except OSError as e:
        raise CacheStoreError(f"Failed to create cache store directory: {e}")


def _row_to_response(row: sqlite3.Row) -> StoredResponse:
    return StoredResponse(
        status=row["status"],
        reason=row["reason"],
        headers=tuple((k, v) for k, v in json.loads(row["headers"])),
        body=bytes(row["body"]),
        url=row["response_url"],
    )


def _entry_params(namespace: str, request: InterceptedRequest, response: StoredResponse, stored_at: str) -> tuple:
    return (
        namespace,
        request.method,
        request.url,
        response.status,
        response.reason,
        json.dumps([list(pair) for pair in response.headers]),
        sqlite3.Binary(response.body),
        response.url or request.url,
        stored_at,
    )


_UPSERT_ENTRY = """
    INSERT OR REPLACE INTO entries
    (namespace, method, url, status, reason, headers, body, response_url, stored_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


class CacheNamespace:
    """A single named cache mapping GET request identities to responses."""

    def __init__(self, conn: sqlite3.Connection, name: str) -> None:
        self._conn = conn
        self.name = name

    def __repr__(self) -> str:
        return f"CacheNamespace({self.name!r})"

    def match(self, request: InterceptedRequest) -> StoredResponse | None:
        """Look up the stored response for a request.

        Only GET requests can match; any other method returns None.

        Raises:
            CacheStoreError: If the query fails.
        """
        if not request.is_get:
            return None

        try:
            with _store_lock:
                row = self._conn.execute(
                    """
                    SELECT status, reason, headers, body, response_url
                    FROM entries
                    WHERE namespace = ? AND method = ? AND url = ?
                    """,
                    (self.name, request.method, request.url),
                ).fetchone()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to look up {request.url}: {e}")

        return _row_to_response(row) if row is not None else None

    def add_all(
        self,
        urls: Iterable[str],
        fetch: Callable[[InterceptedRequest], StoredResponse],
    ) -> None:
        """Fetch every URL and store all responses in a single transaction.

        The add is all-or-nothing: if any fetch raises or returns a non-2xx
        response, nothing is written. Re-adding an existing URL overwrites it.

        Args:
            urls: Absolute URLs to fetch with GET.
            fetch: Network primitive used to retrieve each URL.

        Raises:
            BulkAddError: If any resource could not be fetched or was not 2xx.
            CacheStoreError: If the write fails.
        """
        fetched: list[tuple[InterceptedRequest, StoredResponse]] = []
        for url in urls:
            request = InterceptedRequest("GET", url)
            try:
                response = fetch(request)
            except NetworkError as e:
                raise BulkAddError(url, e.reason) from e
            if not response.ok:
                raise BulkAddError(url, f"HTTP {response.status} {response.reason}".rstrip())
            fetched.append((request, response))

        stored_at = datetime.now(UTC).isoformat()
        try:
            with _store_lock:
                with self._conn:
                    self._conn.executemany(
                        _UPSERT_ENTRY,
                        [_entry_params(self.name, req, resp, stored_at) for req, resp in fetched],
                    )
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to store resources in '{self.name}': {e}")

        logger.debug("Added %d resource(s) to cache '%s'", len(fetched), self.name)

    def keys(self) -> list[str]:
        """Return the URLs stored in this namespace, sorted."""
        try:
            with _store_lock:
                rows = self._conn.execute(
                    "SELECT url FROM entries WHERE namespace = ? ORDER BY url",
                    (self.name,),
                ).fetchall()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to list entries of '{self.name}': {e}")
        return [row["url"] for row in rows]

    def count(self) -> int:
        """Return the number of entries in this namespace."""
        try:
            with _store_lock:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM entries WHERE namespace = ?",
                    (self.name,),
                ).fetchone()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to count entries of '{self.name}': {e}")
        return row[0]


class CacheStorage:
    """Registry of named cache namespaces in one store.

    Namespaces are created on first open and never destroyed; a namespace
    whose name is no longer configured is simply left unreferenced.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def open(self, name: str) -> CacheNamespace:
        """Open the namespace with the given name, creating it if needed.

        Raises:
            CacheStoreError: If the namespace cannot be created.
        """
        try:
            with _store_lock:
                cursor = self._conn.execute(
                    "INSERT OR IGNORE INTO namespaces (name, created_at) VALUES (?, ?)",
                    (name, datetime.now(UTC).isoformat()),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to open cache '{name}': {e}")

        if cursor.rowcount:
            logger.info("Created cache namespace '%s'", name)
        return CacheNamespace(self._conn, name)

    def keys(self) -> list[str]:
        """Return all namespace names in creation order."""
        try:
            with _store_lock:
                rows = self._conn.execute(
                    "SELECT name FROM namespaces ORDER BY created_at, name"
                ).fetchall()
        except sqlite3.Error as e:
            raise CacheStoreError(f"Failed to list caches: {e}")
        return [row["name"] for row in rows]

    def count(self, name: str) -> int:
        """Return the number of entries in a namespace (0 if it doesn't exist)."""
        return CacheNamespace(self._conn, name).count()

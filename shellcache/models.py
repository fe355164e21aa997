"""Data models for intercepted requests and cached responses."""

from dataclasses import dataclass, field
from enum import Enum


class WorkerState(Enum):
    """Lifecycle state of the shell worker."""

    UNINSTALLED = "uninstalled"
    INSTALLED = "installed"
    ACTIVE = "active"


@dataclass(frozen=True)
class InterceptedRequest:
    """A single outbound request passing through the worker.

    Attributes:
        method: HTTP method, upper-cased on creation.
        url: Absolute URL of the request.
        headers: Request headers as (name, value) pairs, in arrival order.
        body: Request body, or None for bodiless requests.
    """

    method: str
    url: str
    headers: tuple[tuple[str, str], ...] = ()
    body: bytes | None = None

    def __post_init__(self) -> None:
        # frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "headers", tuple((str(k), str(v)) for k, v in self.headers))

    @property
    def is_get(self) -> bool:
        """Whether this request is eligible for cache fallback."""
        return self.method == "GET"


@dataclass(frozen=True)
class StoredResponse:
    """A response as returned by the network or the cache.

    Attributes:
        status: HTTP status code.
        reason: HTTP reason phrase (e.g., "OK", "Not Found").
        headers: Response headers as (name, value) pairs.
        body: Full response body.
        url: Final URL the response was served from.
    """

    status: int
    reason: str = ""
    headers: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    body: bytes = b""
    url: str = ""

    @property
    def ok(self) -> bool:
        """True for 2xx responses."""
        return 200 <= self.status <= 299

    def header(self, name: str) -> str | None:
        """Return the first header value matching name (case-insensitive)."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

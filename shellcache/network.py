"""Outbound network primitive used by the shell worker."""

import http.client
import logging
import urllib.error
import urllib.request
from urllib.parse import urljoin

from .models import InterceptedRequest, StoredResponse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10

# Connection-scoped headers that must not be forwarded (RFC 9110, section 7.6.1).
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# Recomputed by urllib from the target URL and body.
_RECOMPUTED_REQUEST_HEADERS = frozenset({"host", "content-length"})


class NetworkError(Exception):
    """Raised when an outbound request fails before producing a response."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class _RedirectHandler(urllib.request.HTTPRedirectHandler):
    """Redirect handler that follows 307 and 308 redirects."""

    def http_error_307(self, req, fp, code, msg, headers):
        """Handle 307 Temporary Redirect."""
        return self._do_redirect(req, fp, code, msg, headers)

    def http_error_308(self, req, fp, code, msg, headers):
        """Handle 308 Permanent Redirect."""
        return self._do_redirect(req, fp, code, msg, headers)

    def _do_redirect(self, req, fp, code, msg, headers):
        """Follow redirect preserving the original method and body."""
        new_url = headers.get("Location")
        if not new_url:
            return None
        fp.read()
        fp.close()
        new_req = urllib.request.Request(
            urljoin(req.full_url, new_url),
            data=req.data,
            method=req.get_method(),
            headers=dict(req.header_items()),
        )
        return self.parent.open(new_req, timeout=req.timeout)


# Create opener with custom redirect handler
_opener = urllib.request.build_opener(_RedirectHandler())


def filter_headers(headers, drop: frozenset[str] = HOP_BY_HOP_HEADERS) -> list[tuple[str, str]]:
    """Return header pairs without hop-by-hop headers.

    Headers named in a Connection header are dropped as well.
    """
    pairs = list(headers)
    connection_tokens = {
        token.strip().lower()
        for name, value in pairs
        if name.lower() == "connection"
        for token in value.split(",")
    }
    return [
        (name, value)
        for name, value in pairs
        if name.lower() not in drop and name.lower() not in connection_tokens
    ]


def _to_response(resp, url: str) -> StoredResponse:
    body = resp.read()
    return StoredResponse(
        status=resp.status,
        reason=resp.reason or "",
        headers=tuple(filter_headers(resp.headers.items())),
        body=body,
        url=resp.geturl() or url,
    )


def fetch(request: InterceptedRequest, timeout: float = DEFAULT_TIMEOUT) -> StoredResponse:
    """Send a request to the network and return its full response.

    HTTP error statuses are returned as responses; only transport-level
    failures (refused connection, DNS failure, timeout, malformed reply)
    raise.

    Args:
        request: The request to send.
        timeout: Socket timeout in seconds.

    Returns:
        The response with its body fully read.

    Raises:
        NetworkError: If no response could be obtained.
    """
    headers = {
        name: value
        for name, value in filter_headers(request.headers)
        if name.lower() not in _RECOMPUTED_REQUEST_HEADERS
    }
    outbound = urllib.request.Request(
        request.url,
        data=request.body,
        method=request.method,
        headers=headers,
    )

    try:
        try:
            with _opener.open(outbound, timeout=timeout) as resp:
                response = _to_response(resp, request.url)
        except urllib.error.HTTPError as e:
            # error bodies are read here too, so a cut-off body is a transport failure
            try:
                response = _to_response(e, request.url)
            finally:
                e.close()
    except urllib.error.URLError as e:
        reason = str(e.reason) if e.reason else "Connection failed"
        raise NetworkError(request.url, reason) from e
    except (OSError, http.client.HTTPException) as e:
        raise NetworkError(request.url, str(e) or type(e).__name__) from e
    except ValueError as e:
        # urllib raises ValueError for URLs it cannot send
        raise NetworkError(request.url, str(e)) from e

    logger.debug("%s %s -> %d", request.method, request.url, response.status)
    return response

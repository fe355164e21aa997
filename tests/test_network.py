"""Tests for the network module."""

import pytest

from conftest import Origin, unreachable_url
from shellcache.models import InterceptedRequest
from shellcache.network import NetworkError, fetch, filter_headers


class TestFilterHeaders:
    """Tests for filter_headers function."""

    def test_drops_hop_by_hop(self) -> None:
        """Connection-scoped headers are removed."""
        headers = [
            ("Content-Type", "text/html"),
            ("Connection", "keep-alive"),
            ("Transfer-Encoding", "chunked"),
            ("Keep-Alive", "timeout=5"),
        ]
        assert filter_headers(headers) == [("Content-Type", "text/html")]

    def test_drops_headers_named_by_connection(self) -> None:
        """Headers listed in Connection are treated as hop-by-hop."""
        headers = [("Connection", "close, X-Trace"), ("X-Trace", "abc"), ("X-Keep", "1")]
        assert filter_headers(headers) == [("X-Keep", "1")]

    def test_is_case_insensitive(self) -> None:
        """Header names match regardless of case."""
        assert filter_headers([("UPGRADE", "websocket"), ("accept", "*/*")]) == [("accept", "*/*")]


class TestFetch:
    """Tests for fetch function against a local origin."""

    def test_returns_full_response(self, origin: Origin) -> None:
        """A 200 response is returned with status, headers and body."""
        response = fetch(InterceptedRequest("GET", origin.url + "/index.html"))

        assert response.status == 200
        assert response.reason == "OK"
        assert response.body == b"<html>index</html>"
        assert response.header("content-type") == "text/html"
        assert response.url == origin.url + "/index.html"

    def test_http_error_is_a_response(self, origin: Origin) -> None:
        """A 404 from the origin is returned, not raised."""
        response = fetch(InterceptedRequest("GET", origin.url + "/missing"))

        assert response.status == 404
        assert response.body == b"not found"
        assert not response.ok

    def test_server_error_is_a_response(self, origin: Origin) -> None:
        """A 503 from the origin is returned, not raised."""
        origin.routes["/busy"] = (503, {"Retry-After": "1"}, b"busy")

        response = fetch(InterceptedRequest("GET", origin.url + "/busy"))

        assert response.status == 503
        assert response.header("Retry-After") == "1"

    def test_truncated_error_body_raises(self, origin: Origin) -> None:
        """An error response cut off before its Content-Length is a network failure."""
        origin.routes["/busy"] = (503, {"Content-Length": "100"}, b"short")

        with pytest.raises(NetworkError) as exc_info:
            fetch(InterceptedRequest("GET", origin.url + "/busy"), timeout=2)

        assert exc_info.value.url == origin.url + "/busy"

    def test_truncated_ok_body_raises(self, origin: Origin) -> None:
        """A 200 cut off before its Content-Length is a network failure."""
        origin.routes["/index.html"] = (200, {"Content-Length": "100"}, b"short")

        with pytest.raises(NetworkError):
            fetch(InterceptedRequest("GET", origin.url + "/index.html"), timeout=2)

    def test_forwards_method_and_body(self, origin: Origin) -> None:
        """Non-GET requests reach the origin with their body."""
        response = fetch(InterceptedRequest("POST", origin.url + "/projects", body=b'{"name": "Villa"}'))

        assert response.status == 201
        assert response.body == b'echo:{"name": "Villa"}'
        assert origin.requests[-1] == ("POST", "/projects", b'{"name": "Villa"}')

    def test_strips_hop_by_hop_request_headers(self, origin: Origin) -> None:
        """Host and hop-by-hop headers from the client are not forwarded."""
        request = InterceptedRequest(
            "GET",
            origin.url + "/",
            headers=(("Host", "proxy.local:8080"), ("Proxy-Connection", "keep-alive"), ("Accept", "text/html")),
        )
        response = fetch(request)
        assert response.status == 200

    def test_connection_refused_raises(self) -> None:
        """Unreachable host raises NetworkError."""
        url = unreachable_url("/index.html")
        with pytest.raises(NetworkError) as exc_info:
            fetch(InterceptedRequest("GET", url), timeout=2)
        assert exc_info.value.url == url

    def test_unknown_scheme_raises(self) -> None:
        """A URL urllib cannot handle raises NetworkError."""
        with pytest.raises(NetworkError):
            fetch(InterceptedRequest("GET", "gopher://shell.test/"))

"""Tests for the HTTP registration client."""
from __future__ import annotations

import json

import httpx
import pytest

from ptunnelctl.errors import InvalidRegistrationResponse, RegistrationFailed
from ptunnelctl.models import RegistrationRequest, RegistrationResponse
from ptunnelctl.providers.registration import HttpRegistrationClient

URL = "http://203.0.113.9/register-tunnel"
REQUEST = RegistrationRequest(public_key="ssh-ed25519 AAAA host", hostname="db-host-01")


def _client(handler: httpx.MockTransport) -> HttpRegistrationClient:
    return HttpRegistrationClient(URL, timeout=5.0, transport=handler)


def test_register_posts_json_and_parses_response() -> None:
    """The public key and hostname are posted and the assignment returned."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"port": 51000, "gateway_ip": "203.0.113.9"})

    client = _client(httpx.MockTransport(handler))
    try:
        response = client.register(REQUEST)
    finally:
        client.close()

    assert response == RegistrationResponse(port=51000, gateway_ip="203.0.113.9")
    (request,) = seen
    assert request.method == "POST"
    assert str(request.url) == URL
    assert request.headers["content-type"] == "application/json"
    assert json.loads(request.content) == {
        "public_key": "ssh-ed25519 AAAA host",
        "hostname": "db-host-01",
    }
    assert request.headers["user-agent"].startswith("ptunnelctl/")


@pytest.mark.parametrize("status", [400, 403, 500, 503])
def test_http_errors_are_registration_failed(status: int) -> None:
    """Non-2xx responses abort registration."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text="nope")

    with pytest.raises(RegistrationFailed, match=str(status)):
        _client(httpx.MockTransport(handler)).register(REQUEST)


def test_transport_errors_are_registration_failed() -> None:
    """Connection failures abort registration."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RegistrationFailed, match="connection refused"):
        _client(httpx.MockTransport(handler)).register(REQUEST)


def test_timeouts_are_registration_failed() -> None:
    """Timeouts are transport errors too."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(RegistrationFailed):
        _client(httpx.MockTransport(handler)).register(REQUEST)


def test_non_json_body_is_invalid_response() -> None:
    """A body that is not JSON is rejected."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>ok</html>")

    with pytest.raises(InvalidRegistrationResponse, match="not valid JSON"):
        _client(httpx.MockTransport(handler)).register(REQUEST)


def test_missing_fields_are_invalid_response() -> None:
    """JSON without the assignment fields is rejected."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"port": 51000})

    with pytest.raises(InvalidRegistrationResponse, match="gateway_ip"):
        _client(httpx.MockTransport(handler)).register(REQUEST)

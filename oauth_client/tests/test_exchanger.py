"""Tests for the token exchanger against a mocked token endpoint."""
import base64
import json
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from oauth_client.credential_store import CredentialStore, TokenTriple
from oauth_client.errors import InvalidGrant, MalformedResponse, NetworkFailure
from oauth_client.exchanger import TokenExchanger, basic_auth_header
from oauth_client.manager import TokenLifecycleManager
from oauth_client.secure_storage import MemorySecureStorage
from oauth_client.tests.conftest import NOW

TOKEN_BODY = {"access_token": "A2", "refresh_token": "R2", "expires_in": 3600, "token_type": "Bearer"}


def _exchanger(settings, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TokenExchanger(settings, client=client, clock=lambda: NOW)


def test_basic_auth_header():
    header = basic_auth_header("client1", "secret1")
    assert header.startswith("Basic ")
    assert base64.b64decode(header[6:]).decode() == "client1:secret1"


async def test_exchange_code_request_shape(settings):
    seen = {}

    def handler(request: httpx.Request):
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json=TOKEN_BODY)

    triple = await _exchanger(settings, handler).exchange_code("auth-code-xyz")

    assert seen["method"] == "POST"
    assert seen["url"] == settings.token_url
    assert seen["headers"]["authorization"] == basic_auth_header("client1", "secret1")
    assert seen["headers"]["accept"] == "application/json"
    assert seen["headers"]["content-type"] == "application/x-www-form-urlencoded"
    assert seen["form"] == {
        "grant_type": ["authorization_code"],
        "code": ["auth-code-xyz"],
        "redirect_uri": [settings.redirect_uri],
    }
    assert triple.access_token == "A2"
    assert triple.refresh_token == "R2"
    assert triple.expires_at == NOW + timedelta(seconds=3600)


async def test_exchange_refresh_token_request_shape(settings):
    seen = {}

    def handler(request: httpx.Request):
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json=TOKEN_BODY)

    triple = await _exchanger(settings, handler).exchange_refresh_token("R1")
    assert seen["form"] == {"grant_type": ["refresh_token"], "refresh_token": ["R1"]}
    assert triple.refresh_token == "R2"


async def test_refresh_keeps_refresh_token_when_not_rotated(settings):
    body = {"access_token": "A2", "expires_in": 3600}
    triple = await _exchanger(settings, lambda r: httpx.Response(200, json=body)).exchange_refresh_token("R1")
    assert triple.refresh_token == "R1"


async def test_code_exchange_without_refresh_token_is_malformed(settings):
    body = {"access_token": "A2", "expires_in": 3600}
    with pytest.raises(MalformedResponse):
        await _exchanger(settings, lambda r: httpx.Response(200, json=body)).exchange_code("c")


async def test_expires_in_as_string(settings):
    body = {**TOKEN_BODY, "expires_in": "60"}
    triple = await _exchanger(settings, lambda r: httpx.Response(200, json=body)).exchange_code("c")
    assert triple.expires_at == NOW + timedelta(seconds=60)


@pytest.mark.parametrize("status", [400, 401])
async def test_rejected_grant(settings, status):
    body = {"error": "invalid_grant", "error_description": "Refresh token expired"}
    with pytest.raises(InvalidGrant) as exc:
        await _exchanger(settings, lambda r: httpx.Response(status, json=body)).exchange_refresh_token("R1")
    assert exc.value.status == status
    assert exc.value.error == "invalid_grant"
    assert exc.value.retryable is False
    assert "Refresh token expired" in str(exc.value)


async def test_rejected_grant_without_json_body(settings):
    with pytest.raises(InvalidGrant) as exc:
        await _exchanger(settings, lambda r: httpx.Response(403, text="Forbidden")).exchange_code("c")
    assert exc.value.status == 403
    assert exc.value.error is None


@pytest.mark.parametrize("status", [500, 503, 429, 408])
async def test_transient_status_is_network_failure(settings, status):
    with pytest.raises(NetworkFailure) as exc:
        await _exchanger(settings, lambda r: httpx.Response(status)).exchange_refresh_token("R1")
    assert exc.value.status == status
    assert exc.value.retryable is True


async def test_transport_error_is_network_failure(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkFailure):
        await _exchanger(settings, handler).exchange_code("c")


async def test_timeout_is_network_failure(settings):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(NetworkFailure, match="timed out"):
        await _exchanger(settings, handler).exchange_refresh_token("R1")


async def test_non_json_success_is_malformed(settings):
    with pytest.raises(MalformedResponse) as exc:
        await _exchanger(settings, lambda r: httpx.Response(200, text="<html>")).exchange_code("c")
    assert isinstance(exc.value, NetworkFailure)


@pytest.mark.parametrize(
    "body",
    [
        {"refresh_token": "R2", "expires_in": 3600},
        {"access_token": "A2", "refresh_token": "R2"},
        {"access_token": "A2", "refresh_token": "R2", "expires_in": "soon"},
        {"access_token": "A2", "refresh_token": "R2", "expires_in": True},
        {"access_token": "A2", "refresh_token": "R2", "expires_in": 1e30},
        {"access_token": "A2", "refresh_token": "R2", "expires_in": "1e30"},
        {"access_token": "A2", "refresh_token": "R2", "expires_in": "inf"},
        {"access_token": "A2", "refresh_token": "R2", "expires_in": "nan"},
        ["not", "an", "object"],
    ],
)
async def test_incomplete_body_is_malformed(settings, body):
    def handler(request):
        return httpx.Response(200, content=json.dumps(body), headers={"content-type": "application/json"})

    with pytest.raises(MalformedResponse):
        await _exchanger(settings, handler).exchange_code("c")


@pytest.mark.parametrize("expires_in", [1e30, "1e30", "inf", "nan"])
async def test_out_of_range_expiry_during_refresh_returns_none(settings, expires_in):
    body = {"access_token": "A2", "refresh_token": "R2", "expires_in": expires_in}
    store = CredentialStore(MemorySecureStorage())
    await store.save(TokenTriple("A1", "R1", NOW + timedelta(seconds=30)))
    exchanger = _exchanger(settings, lambda r: httpx.Response(200, json=body))
    m = TokenLifecycleManager(settings, store, exchanger=exchanger, clock=lambda: NOW)

    assert await m.get_valid_access_token() is None
    assert (await store.load()).access_token == "A1"

"""
Shared fixtures for oauth_client tests. Everything runs against in-memory storage and a fake exchanger.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from oauth_client.config import ClientSettings
from oauth_client.credential_store import CredentialStore, TokenTriple
from oauth_client.errors import InvalidGrant
from oauth_client.manager import TokenLifecycleManager
from oauth_client.secure_storage import MemorySecureStorage

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


class FakeExchanger:
    """Stands in for TokenExchanger; counts calls and can be held open to simulate a slow provider."""

    def __init__(self, result=None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.refresh_calls: list[str] = []
        self.code_calls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def _answer(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result

    async def exchange_refresh_token(self, refresh_token: str) -> TokenTriple:
        self.refresh_calls.append(refresh_token)
        return await self._answer()

    async def exchange_code(self, code: str) -> TokenTriple:
        self.code_calls.append(code)
        return await self._answer()


@pytest.fixture
def settings():
    return ClientSettings(
        client_id="client1",
        client_secret="secret1",
        redirect_uri="https://app.example/callback",
        authorize_url="https://idp.example/oauth-v1/auth",
        token_url="https://idp.example/oauth-v1/token",
        refresh_attempts=1,
    )


@pytest.fixture
def storage():
    return MemorySecureStorage()


@pytest.fixture
def store(storage):
    return CredentialStore(storage)


@pytest.fixture
def exchanger():
    return FakeExchanger(
        result=TokenTriple(access_token="A2", refresh_token="R2", expires_at=NOW + timedelta(seconds=3600))
    )


@pytest.fixture
def manager(settings, store, exchanger):
    return TokenLifecycleManager(settings, store, exchanger=exchanger, clock=lambda: NOW)


@pytest.fixture
def invalid_grant():
    return InvalidGrant(400, error="invalid_grant", description="Refresh token expired")

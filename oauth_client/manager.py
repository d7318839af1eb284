"""
Token lifecycle manager: the one entry point the application uses for credentials.
get_valid_access_token() returns a usable access token or None ("log in again");
start_login()/interceptor cover the interactive path; logout() drops everything.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from oauth_client.audit import (
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    EVENT_LOGOUT,
    EVENT_REFRESH_FAIL,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    log_audit,
)
from oauth_client.callback import CallbackInterceptor, CallbackResult
from oauth_client.config import ClientSettings
from oauth_client.credential_store import CredentialStore
from oauth_client.errors import InvalidGrant, NetworkFailure, OAuthClientError
from oauth_client.exchanger import TokenExchanger
from oauth_client.flow import AuthorizationFlow, AuthorizationRequest, ConsentSurface

logger = logging.getLogger(__name__)

# Seconds between refresh attempts after a transient failure
RETRY_BACKOFF = 0.5


class TokenLifecycleManager:
    def __init__(
        self,
        settings: ClientSettings,
        store: CredentialStore,
        exchanger: TokenExchanger | None = None,
        flow: AuthorizationFlow | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.exchanger = exchanger or TokenExchanger(settings, clock=self._clock)
        self.flow = flow or AuthorizationFlow(settings)
        self.interceptor = CallbackInterceptor(settings.redirect_uri, self.flow, self.complete_login)
        # refresh_token -> the single in-flight exchange for it
        self._inflight: dict[str, asyncio.Task] = {}

    async def get_valid_access_token(self) -> str | None:
        """
        Cached access token if it is not within the refresh threshold of expiry,
        otherwise the result of a refresh. None means interactive login is required.
        """
        triple = await self.store.load()
        if triple is None:
            return None
        if triple.due_for_refresh(self.settings.refresh_threshold, now=self._clock()):
            logger.info("Access token expired or expiring soon; refreshing")
            # Might be None if the refresh token has expired or been revoked
            return await self.refresh(triple.refresh_token)
        return triple.access_token

    async def refresh(self, refresh_token: str) -> str | None:
        """
        Exchange refresh_token for a new triple and persist it. Concurrent callers with the
        same refresh token share one exchange. None when the provider cannot or will not refresh.
        """
        task = self._inflight.get(refresh_token)
        if task is None:
            current = await self.store.load()
            if (
                current is not None
                and current.refresh_token != refresh_token
                and not current.due_for_refresh(self.settings.refresh_threshold, now=self._clock())
            ):
                # Someone already rotated this refresh token
                return current.access_token
            task = self._inflight.get(refresh_token)
        if task is None:
            task = asyncio.ensure_future(self._refresh_once(refresh_token))
            self._inflight[refresh_token] = task
            task.add_done_callback(lambda t: self._release(refresh_token, t))
        return await asyncio.shield(task)

    def _release(self, refresh_token: str, task: asyncio.Task) -> None:
        if self._inflight.get(refresh_token) is task:
            del self._inflight[refresh_token]

    async def _refresh_once(self, refresh_token: str) -> str | None:
        attempts = max(1, self.settings.refresh_attempts)
        for attempt in range(1, attempts + 1):
            try:
                triple = await self.exchanger.exchange_refresh_token(refresh_token)
            except InvalidGrant as e:
                log_audit(EVENT_REFRESH_FAIL, outcome=OUTCOME_FAIL, status=e.status, error=e.error)
                return None
            except NetworkFailure as e:
                logger.warning("Refresh attempt %s/%s failed: %s", attempt, attempts, e)
                if attempt == attempts:
                    log_audit(EVENT_REFRESH_FAIL, outcome=OUTCOME_FAIL, status=e.status, error="network")
                    return None
                await asyncio.sleep(RETRY_BACKOFF * attempt)
                continue
            await self.store.save(triple)
            log_audit(EVENT_TOKEN_REFRESHED, client_id=self.settings.client_id)
            return triple.access_token
        return None

    async def force_refresh(self) -> str | None:
        """Refresh now with the stored refresh token, whatever the expiry. None if none is stored."""
        refresh_token = await self.store.stored_refresh_token()
        if not refresh_token:
            return None
        return await self.refresh(refresh_token)

    def start_login(self, surface: ConsentSurface) -> AuthorizationRequest:
        return self.flow.start_login(surface)

    async def complete_login(self, result: CallbackResult) -> str:
        """Exchange the callback's code and persist the triple. Exchanger errors propagate."""
        try:
            triple = await self.exchanger.exchange_code(result.code)
        except OAuthClientError as e:
            log_audit(EVENT_LOGIN_FAIL, outcome=OUTCOME_FAIL, client_id=self.settings.client_id, error=type(e).__name__)
            raise
        await self.store.save(triple)
        log_audit(EVENT_LOGIN_OK, client_id=self.settings.client_id)
        return triple.access_token

    async def logout(self) -> None:
        self.flow.abandon()
        await self.store.clear()
        log_audit(EVENT_LOGOUT, client_id=self.settings.client_id)

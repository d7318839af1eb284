"""
Token exchanger: POST /token for authorization_code and refresh_token grants.
Stateless; returns a TokenTriple and never persists it. Confidential client, HTTP Basic auth.
"""
import base64
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx

from oauth_client.config import ClientSettings
from oauth_client.credential_store import TokenTriple
from oauth_client.errors import InvalidGrant, MalformedResponse, NetworkFailure

logger = logging.getLogger(__name__)

# Statuses worth retrying; every other non-2xx means the grant was rejected
_TRANSIENT_STATUSES = {408, 429}


def basic_auth_header(client_id: str, client_secret: str) -> str:
    """'Basic base64(client_id:client_secret)' (RFC 6749 §2.3.1)."""
    credentials = base64.b64encode(f"{client_id}:{client_secret}".encode("utf-8")).decode("ascii")
    return f"Basic {credentials}"


def _error_fields(r: httpx.Response) -> tuple[str | None, str | None]:
    """(error, error_description) from an OAuth error body, if it is JSON."""
    try:
        body = r.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    return body.get("error"), body.get("error_description")


class TokenExchanger:
    def __init__(
        self,
        settings: ClientSettings,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings
        self._client = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def exchange_code(self, code: str) -> TokenTriple:
        """Exchange an authorization code for the initial token triple."""
        data = await self._post(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.redirect_uri,
            }
        )
        return self._parse(data)

    async def exchange_refresh_token(self, refresh_token: str) -> TokenTriple:
        """
        Exchange a refresh token for a new triple.
        Providers that do not rotate refresh tokens omit it; the presented one is kept.
        """
        data = await self._post({"grant_type": "refresh_token", "refresh_token": refresh_token})
        return self._parse(data, fallback_refresh_token=refresh_token)

    async def _post(self, form: dict[str, str]) -> dict:
        headers = {
            "Authorization": basic_auth_header(self.settings.client_id, self.settings.client_secret),
            "Accept": "application/json",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        grant_type = form["grant_type"]
        try:
            if self._client is not None:
                r = await self._client.post(
                    self.settings.token_url, data=form, headers=headers, timeout=self.settings.http_timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.settings.http_timeout) as client:
                    r = await client.post(self.settings.token_url, data=form, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Token request (%s) timed out: %s", grant_type, e)
            raise NetworkFailure(f"Token endpoint timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("Token request (%s) failed: %s", grant_type, e)
            raise NetworkFailure(f"Token endpoint unreachable: {e}") from e

        if r.is_success:
            try:
                data = r.json()
            except ValueError as e:
                raise MalformedResponse("Token response is not JSON", status=r.status_code) from e
            if not isinstance(data, dict):
                raise MalformedResponse("Token response is not a JSON object", status=r.status_code)
            return data

        if r.status_code >= 500 or r.status_code in _TRANSIENT_STATUSES:
            logger.warning("Token request (%s) returned transient status %s", grant_type, r.status_code)
            raise NetworkFailure(f"Token endpoint returned HTTP {r.status_code}", status=r.status_code)
        error, description = _error_fields(r)
        logger.warning("Token request (%s) rejected: HTTP %s %s", grant_type, r.status_code, error or "")
        raise InvalidGrant(r.status_code, error=error, description=description)

    def _parse(self, data: dict, fallback_refresh_token: str | None = None) -> TokenTriple:
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token") or fallback_refresh_token
        expires_in = data.get("expires_in")
        if not isinstance(access_token, str) or not access_token:
            raise MalformedResponse("Token response has no access_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise MalformedResponse("Token response has no refresh_token")
        # bool is an int subclass; reject it explicitly
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float, str)):
            raise MalformedResponse("Token response has no usable expires_in")
        try:
            seconds = float(expires_in)
        except (ValueError, OverflowError) as e:
            raise MalformedResponse(f"Token response expires_in is not a number: {expires_in!r}") from e
        if not math.isfinite(seconds):
            raise MalformedResponse(f"Token response expires_in is not finite: {expires_in!r}")
        try:
            expires_at = self._clock() + timedelta(seconds=seconds)
        except (OverflowError, ValueError) as e:
            raise MalformedResponse(f"Token response expires_in is out of range: {expires_in!r}") from e
        return TokenTriple(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)

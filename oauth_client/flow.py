"""
Authorization flow initiator: state generation, authorize URL, and the one pending login.
The pending request lives in memory only; a restart or abandon() makes its nonce unusable.
"""
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urlencode

from oauth_client.audit import EVENT_LOGIN_STARTED, EVENT_STATE_MISMATCH, OUTCOME_FAIL, log_audit
from oauth_client.config import ClientSettings
from oauth_client.errors import StateMismatch

logger = logging.getLogger(__name__)


class ConsentSurface(Protocol):
    """Browser or web view that renders the provider's login and consent pages."""

    def load_url(self, url: str) -> None: ...


def generate_state() -> str:
    """Opaque value for CSRF protection; returned in callback."""
    return secrets.token_urlsafe(32)


def build_authorize_url(
    *,
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
) -> str:
    """Build the provider's authorize URL; access_type=offline so a refresh token is issued."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": scope,
        "access_type": "offline",
        "state": state,
    }
    return f"{authorize_url}?{urlencode(params)}"


@dataclass
class AuthorizationRequest:
    state: str
    url: str
    created_at: float = field(default_factory=time.monotonic)

    def expired(self, ttl: float) -> bool:
        return (time.monotonic() - self.created_at) > ttl


class AuthorizationFlow:
    def __init__(self, settings: ClientSettings):
        self.settings = settings
        self._pending: AuthorizationRequest | None = None

    @property
    def pending(self) -> AuthorizationRequest | None:
        return self._pending

    def start_login(self, surface: ConsentSurface) -> AuthorizationRequest:
        """New nonce and authorize URL; replaces any pending request and sends the surface there."""
        state = generate_state()
        url = build_authorize_url(
            authorize_url=self.settings.authorize_url,
            client_id=self.settings.client_id,
            redirect_uri=self.settings.redirect_uri,
            scope=self.settings.scope,
            state=state,
        )
        request = AuthorizationRequest(state=state, url=url)
        self._pending = request
        log_audit(EVENT_LOGIN_STARTED, client_id=self.settings.client_id)
        surface.load_url(url)
        return request

    def _mismatch_reason(self, request: AuthorizationRequest | None, state: str | None) -> str | None:
        if request is None:
            return "no pending login"
        if not state or not secrets.compare_digest(state.encode("utf-8"), request.state.encode("utf-8")):
            return "state differs from pending request"
        if request.expired(self.settings.flow_ttl):
            return "pending login expired"
        return None

    def _reject(self, reason: str) -> None:
        log_audit(EVENT_STATE_MISMATCH, outcome=OUTCOME_FAIL, client_id=self.settings.client_id, reason=reason)
        raise StateMismatch(f"Callback rejected: {reason}")

    def verify_state(self, state: str | None) -> AuthorizationRequest:
        """
        Consume the pending request and check the echoed state against it.
        Single use: the pending request is gone afterwards whether or not it matched.
        """
        request, self._pending = self._pending, None
        reason = self._mismatch_reason(request, state)
        if reason:
            self._reject(reason)
        return request

    def check_state(self, state: str | None) -> AuthorizationRequest:
        """Like verify_state, but leaves the pending request in place."""
        request = self._pending
        reason = self._mismatch_reason(request, state)
        if reason:
            self._reject(reason)
        return request

    def abandon(self) -> None:
        if self._pending is not None:
            logger.info("Abandoning pending login")
        self._pending = None

"""
Callback interceptor: watches consent-surface navigations for the redirect target.
Matching navigations are suppressed, their state checked against the pending login,
and the code handed on as a CallbackResult message.
"""
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable
from urllib.parse import parse_qs, urlsplit

from oauth_client.errors import AuthorizationDenied
from oauth_client.flow import AuthorizationFlow

logger = logging.getLogger(__name__)


@dataclass
class NavigationEvent:
    url: str
    # Set by the interceptor; the surface must not load the URL when True
    cancel: bool = False


@dataclass(frozen=True)
class CallbackResult:
    code: str
    state: str


def _first(params: dict[str, list[str]], name: str) -> str | None:
    values = params.get(name)
    return values[0] if values else None


# Plain http is only accepted for redirect targets on the local machine (RFC 8252 §7.3)
_LOOPBACK_HOSTS = {"127.0.0.1", "::1", "localhost"}


class CallbackInterceptor:
    def __init__(
        self,
        redirect_uri: str,
        flow: AuthorizationFlow,
        on_callback: Callable[[CallbackResult], Awaitable[object]],
    ):
        target = urlsplit(redirect_uri)
        self.redirect_host = (target.hostname or "").lower()
        self.allowed_schemes = {"https", "http"} if self.redirect_host in _LOOPBACK_HOSTS else {"https"}
        self.flow = flow
        self.on_callback = on_callback

    def is_redirect_target(self, url: str) -> bool:
        parts = urlsplit(url)
        return parts.scheme in self.allowed_schemes and (parts.hostname or "").lower() == self.redirect_host

    async def on_navigating(self, event: NavigationEvent) -> CallbackResult | None:
        """
        Handle one navigation. Other hosts pass through untouched (returns None).
        Raises AuthorizationDenied when the provider returned an error, StateMismatch on a bad state.
        """
        if not self.is_redirect_target(event.url):
            return None
        event.cancel = True

        params = parse_qs(urlsplit(event.url).query, keep_blank_values=False)
        state = _first(params, "state")
        error = _first(params, "error")
        if error:
            # Only an error carrying the pending state may cancel the login
            self.flow.check_state(state)
            self.flow.abandon()
            logger.warning("Provider returned error on callback: %s", error)
            raise AuthorizationDenied(error, _first(params, "error_description"))

        code = _first(params, "code")
        if not code:
            logger.info("Redirect target reached without a code; nothing to exchange")
            return None

        self.flow.verify_state(state)
        result = CallbackResult(code=code, state=state)
        await self.on_callback(result)
        return result

"""
Web front end for the token lifecycle: get token, refresh token, remove token, plus the login redirect and callback.
The browser is the consent surface; /callback is where the provider sends it back.
"""
import html
import logging
from contextlib import asynccontextmanager
from urllib.parse import urlsplit, urlunsplit

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from oauth_client.callback import NavigationEvent
from oauth_client.config import load_settings
from oauth_client.credential_store import CredentialStore
from oauth_client.errors import AuthorizationDenied, InvalidGrant, NetworkFailure, StateMismatch
from oauth_client.manager import TokenLifecycleManager
from oauth_client.secure_storage import SqlSecureStorage, load_or_create_storage_key

logger = logging.getLogger(__name__)


class RedirectSurface:
    """Consent surface for a plain browser: remembers where to send it; the route issues the 302."""

    def __init__(self):
        self.url: str | None = None

    def load_url(self, url: str) -> None:
        self.url = url


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  {body}
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


def build_default_manager() -> TokenLifecycleManager:
    """Manager from environment settings with encrypted SQLite storage. Raises ConfigMissing or StorageKeyInvalid."""
    settings = load_settings()
    storage = SqlSecureStorage(settings.storage_url, load_or_create_storage_key(settings.storage_key_path))
    return TokenLifecycleManager(settings, CredentialStore(storage))


def create_app(manager: TokenLifecycleManager | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the manager from the environment unless one was injected; missing config aborts startup."""
        if getattr(app.state, "manager", None) is None:
            app.state.manager = build_default_manager()
        yield
        app.state.manager.flow.abandon()

    app = FastAPI(title="OAuth Client", version="1.0.0", lifespan=lifespan)
    app.state.manager = manager

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "oauth_client"}

    @app.get("/", response_class=HTMLResponse)
    def home():
        """Home page with the three token actions."""
        return _page(
            "OAuth Client",
            """<p><a href="/token">Get token</a></p>
  <p><a href="/refresh">Refresh token</a></p>
  <p><a href="/logout">Remove token</a></p>""",
        )

    @app.get("/token", response_class=HTMLResponse)
    async def get_token(request: Request):
        """Show a valid access token, refreshing if needed; no token means log in."""
        token = await request.app.state.manager.get_valid_access_token()
        if token is None:
            return RedirectResponse(url="/start-login", status_code=302)
        return _page("Token already exists", f"<p><code>{html.escape(token)}</code></p>")

    @app.get("/refresh", response_class=HTMLResponse)
    async def refresh(request: Request):
        """Refresh with the stored refresh token now; failure means log in."""
        token = await request.app.state.manager.force_refresh()
        if token is None:
            return RedirectResponse(url="/start-login", status_code=302)
        return _page("Token refreshed", f"<p><code>{html.escape(token)}</code></p>")

    @app.get("/logout", response_class=HTMLResponse)
    async def logout(request: Request):
        await request.app.state.manager.logout()
        return _page("Token removed", "<p>Token has been removed.</p>")

    @app.get("/start-login")
    def start_login(request: Request):
        """New state and authorize URL; redirect the browser to the provider."""
        surface = RedirectSurface()
        request.app.state.manager.start_login(surface)
        return RedirectResponse(url=surface.url, status_code=302)

    @app.get("/callback", response_class=HTMLResponse)
    async def callback(request: Request):
        """
        Provider redirect. This route is the redirect target, so the navigation handed to the
        interceptor is the configured redirect URI plus the incoming query (TLS may end at a proxy).
        State is checked before any code exchange.
        """
        manager: TokenLifecycleManager = request.app.state.manager
        redirect = urlsplit(manager.settings.redirect_uri)
        event = NavigationEvent(url=urlunsplit(redirect._replace(query=request.url.query, fragment="")))
        try:
            result = await manager.interceptor.on_navigating(event)
        except StateMismatch:
            return _page(
                "Security error",
                "<p>Invalid or expired state. Please try logging in again.</p>",
                status_code=400,
            )
        except AuthorizationDenied as e:
            return _page("Login error", f"<p>{html.escape(str(e))}</p>", status_code=400)
        except InvalidGrant as e:
            return _page("Token exchange failed", f"<p>{html.escape(str(e))}</p>", status_code=400)
        except NetworkFailure as e:
            return _page("Token exchange failed", f"<p>{html.escape(str(e))}</p><p>Try again.</p>", status_code=502)

        if not event.cancel:
            return _page("Error", "<p>Configured redirect URI is not a secure redirect target.</p>", status_code=400)
        if result is None:
            return _page("Error", "<p>Missing code parameter.</p>", status_code=400)
        return _page("Login", "<p>Token received and saved.</p><p><a href=\"/token\">Get token</a></p>")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "oauth_client.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )

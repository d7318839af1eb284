"""
OAuth client configuration.
Defaults come from the environment; the client secret never lives in code.
load_settings() freezes them into one ClientSettings value that is passed to the manager.
"""
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping

from oauth_client.errors import ConfigMissing

# Identity provider endpoints
AUTHORIZE_URL = os.environ.get("OAUTH_AUTHORIZE_URL", "https://apps.fortnox.se/oauth-v1/auth")
TOKEN_URL = os.environ.get("OAUTH_TOKEN_URL", "https://apps.fortnox.se/oauth-v1/token")

# Fixed scope string requested on every login
DEFAULT_SCOPE = os.environ.get("OAUTH_SCOPE", "customer price article invoice")

# Seconds before a token request to the provider is abandoned (transient failure)
HTTP_TIMEOUT = float(os.environ.get("OAUTH_HTTP_TIMEOUT", "15"))

# Access tokens this close to expiry are refreshed before use
REFRESH_THRESHOLD = timedelta(minutes=2)

# Refresh attempts when the provider is unreachable; invalid grants are never retried
REFRESH_ATTEMPTS = 2

# Pending login flows older than this (seconds) are rejected at callback time
FLOW_TTL = 600

# Durable credential storage (SQLite by default) and its Fernet key file
STORAGE_URL = os.environ.get("OAUTH_STORAGE_URL", "sqlite:///./oauth_client.db")
STORAGE_KEY_PATH = os.environ.get("OAUTH_STORAGE_KEY_PATH", ".oauth_storage_key")

_REQUIRED = {
    "OAUTH_CLIENT_ID": "client_id",
    "OAUTH_CLIENT_SECRET": "client_secret",
    "OAUTH_REDIRECT_URI": "redirect_uri",
}


@dataclass(frozen=True)
class ClientSettings:
    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str
    scope: str = DEFAULT_SCOPE
    authorize_url: str = AUTHORIZE_URL
    token_url: str = TOKEN_URL
    http_timeout: float = HTTP_TIMEOUT
    refresh_threshold: timedelta = REFRESH_THRESHOLD
    refresh_attempts: int = REFRESH_ATTEMPTS
    flow_ttl: int = FLOW_TTL
    storage_url: str = STORAGE_URL
    storage_key_path: str = STORAGE_KEY_PATH


def load_settings(environ: Mapping[str, str] | None = None) -> ClientSettings:
    """
    Build ClientSettings from the environment.
    Raises ConfigMissing listing every required variable that is unset or blank.
    """
    env = os.environ if environ is None else environ
    values = {attr: (env.get(var) or "").strip() for var, attr in _REQUIRED.items()}
    missing = [var for var, attr in _REQUIRED.items() if not values[attr]]
    if missing:
        raise ConfigMissing(missing)
    return ClientSettings(
        client_id=values["client_id"],
        client_secret=values["client_secret"],
        redirect_uri=values["redirect_uri"],
        scope=env.get("OAUTH_SCOPE", DEFAULT_SCOPE),
        authorize_url=env.get("OAUTH_AUTHORIZE_URL", AUTHORIZE_URL),
        token_url=env.get("OAUTH_TOKEN_URL", TOKEN_URL),
        http_timeout=float(env.get("OAUTH_HTTP_TIMEOUT", HTTP_TIMEOUT)),
        storage_url=env.get("OAUTH_STORAGE_URL", STORAGE_URL),
        storage_key_path=env.get("OAUTH_STORAGE_KEY_PATH", STORAGE_KEY_PATH),
    )

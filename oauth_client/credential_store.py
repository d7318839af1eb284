"""
Credential store: the persisted token triple (access_token, refresh_token, expires_at).
Single stored triple (no per-user accounts). The three keys are written, read and removed as one unit.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from oauth_client.secure_storage import SecureStorage

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
EXPIRES_AT_KEY = "expires_at"


@dataclass(frozen=True)
class TokenTriple:
    access_token: str
    refresh_token: str
    expires_at: datetime

    def due_for_refresh(self, threshold: timedelta, now: datetime | None = None) -> bool:
        """True if the access token is expired or expires within threshold (proactive refresh)."""
        now = now or datetime.now(timezone.utc)
        return now + threshold >= self.expires_at


def parse_expiry(value: str) -> datetime | None:
    """Parse a stored ISO-8601 expiry. Naive values are taken as UTC. None if unparsable."""
    try:
        expires_at = datetime.fromisoformat(value)
    except ValueError:
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at


class CredentialStore:
    """Reads and writes the token triple on top of a SecureStorage backend."""

    def __init__(self, storage: SecureStorage):
        self.storage = storage
        self._lock = asyncio.Lock()

    async def load(self) -> TokenTriple | None:
        """Current triple, or None if any part is missing or the expiry cannot be parsed."""
        async with self._lock:
            access_token = await self.storage.get(ACCESS_TOKEN_KEY)
            refresh_token = await self.storage.get(REFRESH_TOKEN_KEY)
            expires_at_str = await self.storage.get(EXPIRES_AT_KEY)
        if not access_token or not refresh_token or not expires_at_str:
            logger.debug("No complete token triple stored")
            return None
        expires_at = parse_expiry(expires_at_str)
        if expires_at is None:
            logger.warning("Stored token expiry is unparsable; treating credentials as absent")
            return None
        return TokenTriple(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)

    async def save(self, triple: TokenTriple) -> None:
        """Overwrite the stored triple. expires_at goes last so an interrupted write reads as absent."""
        async with self._lock:
            await self.storage.remove(EXPIRES_AT_KEY)
            await self.storage.set(ACCESS_TOKEN_KEY, triple.access_token)
            await self.storage.set(REFRESH_TOKEN_KEY, triple.refresh_token)
            await self.storage.set(EXPIRES_AT_KEY, triple.expires_at.isoformat())
        logger.info("Stored token triple (expires %s)", triple.expires_at.isoformat())

    async def clear(self) -> None:
        async with self._lock:
            await self.storage.remove(EXPIRES_AT_KEY)
            await self.storage.remove(ACCESS_TOKEN_KEY)
            await self.storage.remove(REFRESH_TOKEN_KEY)
        logger.info("Cleared stored token triple")

    async def stored_refresh_token(self) -> str | None:
        """Refresh token alone, even if the rest of the triple is incomplete or expired."""
        async with self._lock:
            return await self.storage.get(REFRESH_TOKEN_KEY)

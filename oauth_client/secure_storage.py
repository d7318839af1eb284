"""
Secure local key/value storage for credentials.
Values are opaque strings. SqlSecureStorage encrypts them at rest with Fernet and commits
every set/remove in its own transaction, so each key is crash-atomic.
"""
import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import DateTime, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from oauth_client.errors import StorageKeyInvalid

logger = logging.getLogger(__name__)


class SecureStorage(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemorySecureStorage:
    """Process-local storage. Nothing survives a restart; used in tests and throwaway sessions."""

    def __init__(self):
        self._values: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def remove(self, key: str) -> None:
        self._values.pop(key, None)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class StoredSecret(Base):
    __tablename__ = "stored_secrets"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    # Fernet token (urlsafe base64), never the plaintext
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)


def load_or_create_storage_key(path: str | None) -> bytes:
    """
    Load the Fernet key from path, or generate one and save it owner-only (0600).
    An existing file without a valid key raises StorageKeyInvalid and is left untouched.
    """
    if not path:
        path = ".oauth_storage_key"
    p = Path(path)
    if p.exists():
        key = p.read_bytes().strip()
        try:
            Fernet(key)
        except ValueError as e:
            logger.error("Invalid storage key in %s: %s", path, e)
            raise StorageKeyInvalid(str(path)) from e
        return key
    key = Fernet.generate_key()
    try:
        # Owner-only from creation
        fd = os.open(p, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        logger.info("Generated and saved storage key to %s", path)
    except OSError as e:
        logger.warning("Could not save storage key to %s: %s", path, e)
    return key


class SqlSecureStorage:
    """
    SQLAlchemy-backed storage; SQLite file by default.
    Blocking database work runs in a worker thread so the event loop stays free.
    """

    def __init__(self, url: str, key: bytes):
        # In-memory SQLite needs StaticPool so every connection sees the same DB
        if url.startswith("sqlite:///:memory:"):
            self._engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            connect_args = {"check_same_thread": False} if "sqlite" in url else {}
            self._engine = create_engine(url, connect_args=connect_args)
        self._sessions = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        self._fernet = Fernet(key)
        Base.metadata.create_all(bind=self._engine)

    def _get(self, key: str) -> str | None:
        with self._sessions() as db:
            row = db.get(StoredSecret, key)
            if row is None:
                return None
            try:
                return self._fernet.decrypt(row.value.encode("ascii")).decode("utf-8")
            except InvalidToken:
                # Written under a different key; unreadable is the same as absent
                logger.warning("Stored value for %s cannot be decrypted; ignoring it", key)
                return None

    def _set(self, key: str, value: str) -> None:
        token = self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
        with self._sessions() as db:
            row = db.get(StoredSecret, key)
            if row is None:
                db.add(StoredSecret(key=key, value=token))
            else:
                row.value = token
            db.commit()

    def _remove(self, key: str) -> None:
        with self._sessions() as db:
            row = db.get(StoredSecret, key)
            if row is not None:
                db.delete(row)
                db.commit()

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)

    def raw_value(self, key: str) -> str | None:
        """Ciphertext as stored on disk (diagnostics and tests)."""
        with self._sessions() as db:
            row = db.get(StoredSecret, key)
            return row.value if row is not None else None

    def dispose(self) -> None:
        self._engine.dispose()

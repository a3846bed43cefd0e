"""
Credential store for Graph access credentials.

Persists one credential per kind, encrypted at rest, and hands out only
credentials that have not expired.

SECURITY:
- Secrets are Fernet-encrypted via graph_auth.platform.secrets before they
  reach the database and decrypted only on read
- Secrets are NEVER logged; log lines carry the kind and expiry only

CONCURRENCY:
- Operations on one kind are serialised by a per-kind lock; different
  kinds never contend
- Encryption and decryption happen outside the lock
- Each write is a single transaction; a failed write leaves the previous
  row untouched

Usage:
    from graph_auth.services.credential_store import CredentialStore, CredentialKind

    store = CredentialStore(session_factory)
    await store.upsert(CredentialKind.IG_LONG_LIVED, token, timedelta(days=60))
    credential = await store.get_valid(CredentialKind.IG_LONG_LIVED)
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from graph_auth.models.credential import StoredCredential
from graph_auth.platform.secrets import (
    EncryptionError,
    decrypt_secret,
    encrypt_secret,
    mask_secret,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

Clock = Callable[[], datetime]


class CredentialKind(str, Enum):
    """Kinds of stored credential."""
    IG_LONG_LIVED = "ig_long_lived"
    FB_LONG_LIVED = "fb_long_lived"
    IG_SHORT_LIVED = "ig_short_lived"
    FB_SHORT_LIVED = "fb_short_lived"

    @property
    def is_long_lived(self) -> bool:
        return self.value.endswith("_long_lived")


DEFAULT_CREDENTIAL_KIND = CredentialKind.IG_LONG_LIVED

KindLike = Union[CredentialKind, str]


class CredentialStoreError(Exception):
    """Base error for credential store operations."""
    pass


class StoreUnavailableError(CredentialStoreError):
    """Raised when the backing store cannot be read or written."""
    kind = "store_unavailable"


class CredentialNotAvailableError(CredentialStoreError):
    """Raised when no unexpired credential of the requested kind exists."""
    kind = "credential_not_available"

    def __init__(self, credential_kind: KindLike):
        self.credential_kind = CredentialKind(credential_kind)
        super().__init__(f"No valid credential of kind {self.credential_kind.value}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """
    An access credential read from the store.

    Instances are immutable snapshots; a rotation produces a new row and
    callers holding an old snapshot keep a consistent view.
    """
    kind: CredentialKind
    secret: str = field(repr=False)
    expires_at: datetime
    updated_at: datetime

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or _utcnow()
        return (self.expires_at - now).total_seconds()

    def remaining_days(self, now: Optional[datetime] = None) -> int:
        """Whole days left, rounded up; 0 once expired."""
        remaining = self.remaining_seconds(now)
        if remaining <= 0:
            return 0
        return math.ceil(remaining / SECONDS_PER_DAY)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) < self.expires_at

    @property
    def preview(self) -> str:
        """Masked secret, safe for status listings."""
        return mask_secret(self.secret)


class CredentialStore:
    """
    Persistent store of encrypted credentials, one per kind.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the credential store.

        Args:
            session_factory: SQLAlchemy session factory
            clock: Returns the current UTC time (tests pin it)
        """
        self._session_factory = session_factory
        self._clock = clock or _utcnow
        self._locks: Dict[CredentialKind, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def _lock_for(self, kind: CredentialKind) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(kind)
            if lock is None:
                lock = threading.Lock()
                self._locks[kind] = lock
            return lock

    # =========================================================================
    # Read
    # =========================================================================

    def _read_row(self, kind: CredentialKind) -> Optional[Tuple[str, datetime, datetime]]:
        with self._lock_for(kind):
            session = self._session_factory()
            try:
                row = session.execute(
                    select(StoredCredential).where(StoredCredential.kind == kind.value)
                ).scalar_one_or_none()
                if row is None:
                    return None
                return row.secret_encrypted, row.expires_at, row.updated_at
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(
                    "Credential read failed",
                    extra={"credential_kind": kind.value, "error": type(e).__name__},
                )
                raise StoreUnavailableError(f"Credential store read failed: {type(e).__name__}") from e
            finally:
                session.close()

    async def _to_credential(
        self,
        kind: CredentialKind,
        row: Tuple[str, datetime, datetime],
    ) -> Credential:
        encrypted, expires_at, updated_at = row
        try:
            secret = await decrypt_secret(encrypted)
        except EncryptionError as e:
            logger.error(
                "Stored credential could not be decrypted",
                extra={"credential_kind": kind.value},
            )
            raise StoreUnavailableError(f"Stored {kind.value} credential is unreadable") from e
        return Credential(
            kind=kind,
            secret=secret,
            expires_at=expires_at,
            updated_at=updated_at,
        )

    async def get_valid(self, kind: KindLike = DEFAULT_CREDENTIAL_KIND) -> Optional[Credential]:
        """
        Return the credential of `kind` if it has not expired.

        Returns:
            Credential, or None when absent or expired

        Raises:
            StoreUnavailableError: If the store cannot be read
        """
        kind = CredentialKind(kind)
        row = self._read_row(kind)
        if row is None:
            return None

        if self.now() >= row[1]:
            logger.info(
                "Stored credential has expired",
                extra={"credential_kind": kind.value, "expires_at": row[1].isoformat()},
            )
            return None

        return await self._to_credential(kind, row)

    async def get_latest(self, kind: KindLike = DEFAULT_CREDENTIAL_KIND) -> Optional[Credential]:
        """Return the stored credential of `kind` even if it has expired."""
        kind = CredentialKind(kind)
        row = self._read_row(kind)
        if row is None:
            return None
        return await self._to_credential(kind, row)

    def list_kinds(self) -> List[CredentialKind]:
        """Kinds that currently have a stored row."""
        session = self._session_factory()
        try:
            values = session.execute(select(StoredCredential.kind)).scalars().all()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailableError(f"Credential store read failed: {type(e).__name__}") from e
        finally:
            session.close()

        kinds = []
        for value in values:
            try:
                kinds.append(CredentialKind(value))
            except ValueError:
                logger.warning("Ignoring credential of unknown kind", extra={"credential_kind": value})
        return kinds

    async def list_credentials(self) -> List[Credential]:
        """All stored credentials, expired ones included, ordered by last update."""
        credentials = []
        for kind in self.list_kinds():
            credential = await self.get_latest(kind)
            if credential is not None:
                credentials.append(credential)
        return sorted(credentials, key=lambda c: c.updated_at, reverse=True)

    # =========================================================================
    # Write
    # =========================================================================

    async def upsert(
        self,
        kind: KindLike,
        secret: str,
        ttl: timedelta,
    ) -> Credential:
        """
        Replace the credential of `kind` with `secret`, expiring after `ttl`.

        Args:
            kind: Credential kind
            secret: Plaintext access token
            ttl: Lifetime from now; must be positive

        Returns:
            The stored Credential

        Raises:
            ValueError: On an empty secret or non-positive ttl
            StoreUnavailableError: If the write fails (previous row is kept)
        """
        kind = CredentialKind(kind)
        if not secret:
            raise ValueError("Cannot store an empty credential")
        if ttl.total_seconds() <= 0:
            raise ValueError("Credential ttl must be positive")

        encrypted = await encrypt_secret(secret)

        with self._lock_for(kind):
            now = self.now()
            expires_at = now + ttl
            self._write_row(kind, encrypted, expires_at, now)

        logger.info(
            "Credential stored",
            extra={
                "credential_kind": kind.value,
                "expires_at": expires_at.isoformat(),
                "ttl_days": round(ttl.total_seconds() / SECONDS_PER_DAY, 2),
            },
        )

        return Credential(kind=kind, secret=secret, expires_at=expires_at, updated_at=now)

    def _write_row(
        self,
        kind: CredentialKind,
        encrypted: str,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        # A concurrent first insert from another process surfaces as an
        # IntegrityError on the unique kind; the second pass updates instead.
        for attempt in range(2):
            session = self._session_factory()
            try:
                row = session.execute(
                    select(StoredCredential)
                    .where(StoredCredential.kind == kind.value)
                    .with_for_update()
                ).scalar_one_or_none()

                if row is None:
                    session.add(StoredCredential(
                        kind=kind.value,
                        secret_encrypted=encrypted,
                        expires_at=expires_at,
                        created_at=now,
                        updated_at=now,
                    ))
                else:
                    row.secret_encrypted = encrypted
                    row.expires_at = expires_at
                    row.updated_at = now

                session.commit()
                return
            except IntegrityError as e:
                session.rollback()
                if attempt == 0:
                    continue
                raise StoreUnavailableError("Credential write conflicted twice") from e
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(
                    "Credential write failed",
                    extra={"credential_kind": kind.value, "error": type(e).__name__},
                )
                raise StoreUnavailableError(f"Credential store write failed: {type(e).__name__}") from e
            finally:
                session.close()

    def delete(self, kind: KindLike) -> bool:
        """
        Remove the credential of `kind`.

        Returns:
            True if a row was removed
        """
        kind = CredentialKind(kind)
        with self._lock_for(kind):
            session = self._session_factory()
            try:
                row = session.execute(
                    select(StoredCredential).where(StoredCredential.kind == kind.value)
                ).scalar_one_or_none()
                if row is None:
                    return False
                session.delete(row)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StoreUnavailableError(f"Credential delete failed: {type(e).__name__}") from e
            finally:
                session.close()

        logger.info("Credential deleted", extra={"credential_kind": kind.value})
        return True

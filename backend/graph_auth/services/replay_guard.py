"""
Replay protection for the OAuth callback.

Two concerns:
- State: an unguessable value bound to one flow, checked on callback (CSRF)
- Authorization codes: each code may drive at most one exchange

Code reservation is an atomic check-and-insert. The coordinator reserves a
code before exchanging it, releases it if the exchange fails (so the user
can retry), and commits it once a credential is stored. Codes are
forgotten once they are older than the code retention window, which
outlives the provider's code lifetime.

Two backends share one interface:
- InMemoryReplayGuard: process-local, lost on restart
- DatabaseReplayGuard: survives restarts and is shared between processes
"""

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from graph_auth.config.settings import DEFAULT_CODE_RETENTION_SECONDS, DEFAULT_STATE_TTL_SECONDS
from graph_auth.models.authorization_code import ConsumedAuthorizationCode, hash_code
from graph_auth.models.oauth_state import OAuthState
from graph_auth.services.credential_store import StoreUnavailableError

logger = logging.getLogger(__name__)

STATE_BYTES = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReplayDetectedError(Exception):
    """Raised when an authorization code has already been reserved or used."""
    kind = "replay_detected"

    def __init__(self, message: str = "Authorization code has already been used"):
        super().__init__(message)
        self.message = message


class ReplayGuard(ABC):
    """
    Interface for state issuance and code reservation.

    Args (implementations):
        state_ttl: How long an issued state stays valid
        single_use_state: Whether a validated state is consumed
        code_retention: How long a reserved or used code is remembered.
            Must outlive the provider's code lifetime
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        state_ttl: timedelta = timedelta(seconds=DEFAULT_STATE_TTL_SECONDS),
        single_use_state: bool = True,
        code_retention: timedelta = timedelta(seconds=DEFAULT_CODE_RETENTION_SECONDS),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.state_ttl = state_ttl
        self.single_use_state = single_use_state
        self.code_retention = code_retention
        self._clock = clock or _utcnow

    @staticmethod
    def new_state() -> str:
        return secrets.token_urlsafe(STATE_BYTES)

    @abstractmethod
    def begin_state(self, flow_id: str) -> str:
        """Issue and remember a fresh state for `flow_id`."""

    @abstractmethod
    def validate_state(self, flow_id: str, state: str) -> bool:
        """True iff `state` was issued for `flow_id`, is unexpired and (if single-use) unused."""

    @abstractmethod
    def reserve_code(self, code: str) -> bool:
        """Atomically mark `code` as in use. False if it already was."""

    @abstractmethod
    def release_code(self, code: str) -> None:
        """Undo an uncommitted reservation so the code may be retried."""

    @abstractmethod
    def commit_code(self, code: str) -> None:
        """Make a reservation permanent after a successful exchange."""


# =============================================================================
# In-memory backend
# =============================================================================

@dataclass
class _IssuedState:
    state: str
    expires_at: datetime
    used_at: Optional[datetime] = None


class InMemoryReplayGuard(ReplayGuard):
    """
    Process-local replay guard.

    All structures are guarded by one lock; each operation is a single
    critical section, so reserve_code is atomic.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.Lock()
        self._states: Dict[str, _IssuedState] = {}
        # code hash -> reserved_at
        self._reserved: Dict[str, datetime] = {}
        self._committed: Dict[str, datetime] = {}

    def begin_state(self, flow_id: str) -> str:
        state = self.new_state()
        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            self._states[flow_id] = _IssuedState(state=state, expires_at=now + self.state_ttl)
        return state

    def _purge_expired(self, now: datetime) -> None:
        expired = [fid for fid, s in self._states.items() if s.expires_at <= now]
        for fid in expired:
            del self._states[fid]

    def validate_state(self, flow_id: str, state: str) -> bool:
        if not flow_id or not state:
            return False

        now = self._clock()
        with self._lock:
            issued = self._states.get(flow_id)
            if issued is None or issued.expires_at <= now:
                return False
            if not secrets.compare_digest(issued.state, state):
                return False
            if self.single_use_state:
                if issued.used_at is not None:
                    return False
                issued.used_at = now
            return True

    def reserve_code(self, code: str) -> bool:
        digest = hash_code(code)
        now = self._clock()
        with self._lock:
            self._purge_codes(now - self.code_retention)
            if digest in self._reserved or digest in self._committed:
                return False
            self._reserved[digest] = now
            return True

    def _purge_codes(self, cutoff: datetime) -> None:
        for codes in (self._reserved, self._committed):
            for digest in [d for d, at in codes.items() if at <= cutoff]:
                del codes[digest]

    def release_code(self, code: str) -> None:
        digest = hash_code(code)
        with self._lock:
            self._reserved.pop(digest, None)

    def commit_code(self, code: str) -> None:
        digest = hash_code(code)
        with self._lock:
            self._committed[digest] = self._reserved.pop(digest, self._clock())


# =============================================================================
# Database backend
# =============================================================================

class DatabaseReplayGuard(ReplayGuard):
    """
    Replay guard backed by the oauth_states and authorization_codes tables.

    Code reservation relies on the primary key of authorization_codes: the
    insert of a second reservation fails with an IntegrityError, whichever
    process attempts it.
    """

    def __init__(self, session_factory: sessionmaker, **kwargs):
        super().__init__(**kwargs)
        self._session_factory = session_factory

    def _fail(self, session, operation: str, error: SQLAlchemyError):
        session.rollback()
        logger.error(
            "Replay guard storage error",
            extra={"operation": operation, "error": type(error).__name__},
        )
        raise StoreUnavailableError(f"Replay guard {operation} failed: {type(error).__name__}") from error

    def begin_state(self, flow_id: str) -> str:
        state = self.new_state()
        now = self._clock()
        session = self._session_factory()
        try:
            session.execute(delete(OAuthState).where(OAuthState.expires_at <= now))
            session.execute(delete(OAuthState).where(OAuthState.flow_id == flow_id))
            session.add(OAuthState(
                flow_id=flow_id,
                state=state,
                expires_at=now + self.state_ttl,
                created_at=now,
                updated_at=now,
            ))
            session.commit()
        except SQLAlchemyError as e:
            self._fail(session, "begin_state", e)
        finally:
            session.close()

        logger.info("Created OAuth state", extra={"flow_id": flow_id})
        return state

    def validate_state(self, flow_id: str, state: str) -> bool:
        if not flow_id or not state:
            return False

        now = self._clock()
        session = self._session_factory()
        try:
            oauth_state = session.execute(
                select(OAuthState)
                .where(OAuthState.flow_id == flow_id)
                .with_for_update()
            ).scalar_one_or_none()

            if oauth_state is None or oauth_state.is_expired(now):
                return False
            if not secrets.compare_digest(oauth_state.state, state):
                return False
            if self.single_use_state:
                if oauth_state.is_used:
                    return False
                oauth_state.used_at = now
                session.commit()
            return True
        except SQLAlchemyError as e:
            self._fail(session, "validate_state", e)
        finally:
            session.close()

    def reserve_code(self, code: str) -> bool:
        now = self._clock()
        session = self._session_factory()
        try:
            session.execute(
                delete(ConsumedAuthorizationCode).where(
                    ConsumedAuthorizationCode.reserved_at <= now - self.code_retention
                )
            )
            session.add(ConsumedAuthorizationCode(
                code_hash=hash_code(code),
                reserved_at=now,
            ))
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False
        except SQLAlchemyError as e:
            self._fail(session, "reserve_code", e)
        finally:
            session.close()

    def release_code(self, code: str) -> None:
        session = self._session_factory()
        try:
            session.execute(
                delete(ConsumedAuthorizationCode).where(
                    ConsumedAuthorizationCode.code_hash == hash_code(code),
                    ConsumedAuthorizationCode.committed_at.is_(None),
                )
            )
            session.commit()
        except SQLAlchemyError as e:
            self._fail(session, "release_code", e)
        finally:
            session.close()

    def commit_code(self, code: str) -> None:
        session = self._session_factory()
        try:
            row = session.get(ConsumedAuthorizationCode, hash_code(code))
            if row is None:
                row = ConsumedAuthorizationCode(code_hash=hash_code(code), reserved_at=self._clock())
                session.add(row)
            row.committed_at = self._clock()
            session.commit()
        except SQLAlchemyError as e:
            self._fail(session, "commit_code", e)
        finally:
            session.close()


def build_replay_guard(
    backend: str,
    session_factory: Optional[sessionmaker] = None,
    state_ttl: timedelta = timedelta(seconds=DEFAULT_STATE_TTL_SECONDS),
    single_use_state: bool = True,
    code_retention: timedelta = timedelta(seconds=DEFAULT_CODE_RETENTION_SECONDS),
) -> ReplayGuard:
    """Create the replay guard selected by REPLAY_GUARD_BACKEND."""
    options = dict(
        state_ttl=state_ttl,
        single_use_state=single_use_state,
        code_retention=code_retention,
    )
    if backend == "database":
        if session_factory is None:
            raise ValueError("database replay guard requires a session factory")
        return DatabaseReplayGuard(session_factory, **options)
    if backend == "memory":
        return InMemoryReplayGuard(**options)
    raise ValueError(f"Unknown replay guard backend: {backend}")

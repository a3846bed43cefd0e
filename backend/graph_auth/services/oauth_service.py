"""
OAuth service for the Graph authorization code flow.

Handles:
- Flow creation (state issuance, authorize URL)
- Callback validation (parameters, state, authorization code replay)
- Code exchange for a short-lived token, then for a long-lived token
- Storing the long-lived credential
- Optional business account resolution once the credential is stored
- Re-exchange of the current long-lived credential (rotation)

Each flow is tracked by an OAuthAttempt keyed by an opaque flow id, so the
state machine runs without any HTTP framework:

    INIT -> AWAITING_CALLBACK -> EXCHANGING -> RESOLVING -> COMPLETE
                                     \\-----------\\-----> FAILED
"""

import asyncio
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from graph_auth.config.settings import DEFAULT_LONG_LIVED_TTL_SECONDS
from graph_auth.integrations.graph.client import GraphAPIClient
from graph_auth.integrations.graph.exceptions import GraphAPIError
from graph_auth.integrations.graph.models import TokenResponse
from graph_auth.services.account_resolver import (
    AccountResolver,
    NoAccountFoundError,
    ResolvedAccount,
)
from graph_auth.services.credential_store import (
    DEFAULT_CREDENTIAL_KIND,
    Credential,
    CredentialKind,
    CredentialNotAvailableError,
    CredentialStore,
    KindLike,
)
from graph_auth.services.replay_guard import ReplayDetectedError, ReplayGuard

logger = logging.getLogger(__name__)

# Finished attempts are kept this long for status lookups
ATTEMPT_RETENTION = timedelta(hours=1)


class FlowStatus(str, Enum):
    """States of one authorization attempt."""
    INIT = "init"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    RESOLVING = "resolving"
    COMPLETE = "complete"
    FAILED = "failed"


_TRANSITIONS = {
    FlowStatus.INIT: {FlowStatus.AWAITING_CALLBACK, FlowStatus.FAILED},
    FlowStatus.AWAITING_CALLBACK: {FlowStatus.EXCHANGING, FlowStatus.FAILED},
    FlowStatus.EXCHANGING: {FlowStatus.RESOLVING, FlowStatus.COMPLETE, FlowStatus.FAILED},
    FlowStatus.RESOLVING: {FlowStatus.COMPLETE, FlowStatus.FAILED},
    FlowStatus.COMPLETE: set(),
    FlowStatus.FAILED: set(),
}


class OAuthError(Exception):
    """Base exception for OAuth errors."""
    kind = "oauth_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class MissingParameterError(OAuthError):
    """Raised when the callback lacks a required parameter."""
    kind = "missing_parameter"

    def __init__(self, parameter: str):
        super().__init__(f"Missing required parameter: {parameter}")
        self.parameter = parameter

    def to_dict(self) -> dict:
        return {**super().to_dict(), "parameter": self.parameter}


class InvalidStateError(OAuthError):
    """Raised when OAuth state is unknown, expired, mismatched or already used."""
    kind = "invalid_state"


class AuthorizationDeniedError(OAuthError):
    """Raised when the provider redirected back with an error instead of a code."""
    kind = "authorization_denied"

    def __init__(
        self,
        error: str,
        error_reason: Optional[str] = None,
        error_description: Optional[str] = None,
    ):
        super().__init__(error_description or f"Authorization denied: {error}")
        self.error = error
        self.error_reason = error_reason

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "provider_error": self.error,
            "provider_error_reason": self.error_reason,
        }


class InvalidTransitionError(Exception):
    """Raised on an illegal OAuthAttempt state change (programming error)."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OAuthAttempt:
    """One run of the authorization flow."""
    flow_id: str
    status: FlowStatus = FlowStatus.INIT
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    credential_kind: Optional[CredentialKind] = None
    credential_expires_at: Optional[datetime] = None
    account: Optional[ResolvedAccount] = None
    failure_kind: Optional[str] = None
    failure_detail: Optional[str] = None
    resolution_error: Optional[str] = None
    claimed: bool = False
    history: List[FlowStatus] = field(default_factory=list)

    def transition(self, status: FlowStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"{self.status.value} -> {status.value}")
        self.history.append(self.status)
        self.status = status
        self.updated_at = _utcnow()

    def fail(self, kind: str, detail: str) -> None:
        if self.status in (FlowStatus.COMPLETE, FlowStatus.FAILED):
            return
        self.transition(FlowStatus.FAILED)
        self.failure_kind = kind
        self.failure_detail = detail

    @property
    def is_finished(self) -> bool:
        return self.status in (FlowStatus.COMPLETE, FlowStatus.FAILED)


@dataclass(frozen=True)
class FlowStart:
    flow_id: str
    state: str
    authorize_url: str


class OAuthService:
    """Service for the Graph authorization code flow."""

    def __init__(
        self,
        client: GraphAPIClient,
        store: CredentialStore,
        replay_guard: ReplayGuard,
        redirect_uri: str,
        scopes: Sequence[str],
        strict_state: bool = True,
        default_ttl: timedelta = timedelta(seconds=DEFAULT_LONG_LIVED_TTL_SECONDS),
        credential_kind: CredentialKind = DEFAULT_CREDENTIAL_KIND,
        resolver: Optional[AccountResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the OAuth service.

        Args:
            client: Graph API client
            store: Credential store the long-lived credential is written to
            replay_guard: State and authorization code guard
            redirect_uri: Registered callback URI
            scopes: Scopes requested in the authorization dialog
            strict_state: Reject callbacks whose state fails validation.
                False only logs the failure (test environments only)
            default_ttl: Lifetime used when the provider omits expires_in
            credential_kind: Kind written on a successful flow
            resolver: Resolves the business account after the credential is stored
            clock: Returns the current UTC time
        """
        if not redirect_uri:
            raise ValueError("redirect_uri is required")

        self.client = client
        self.store = store
        self.replay_guard = replay_guard
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes)
        self.strict_state = strict_state
        self.default_ttl = default_ttl
        self.credential_kind = credential_kind
        self.resolver = resolver
        self._clock = clock or _utcnow
        self._attempts: Dict[str, OAuthAttempt] = {}
        self._attempts_lock = threading.Lock()

        if not strict_state:
            logger.warning("OAuth state validation is relaxed; do not run this way in production")

    # =========================================================================
    # Attempt registry
    # =========================================================================

    def _register(self, attempt: OAuthAttempt) -> None:
        cutoff = self._clock() - ATTEMPT_RETENTION
        with self._attempts_lock:
            stale = [
                fid for fid, a in self._attempts.items()
                if a.updated_at < cutoff
            ]
            for fid in stale:
                del self._attempts[fid]
            self._attempts[attempt.flow_id] = attempt

    def get_attempt(self, flow_id: str) -> Optional[OAuthAttempt]:
        with self._attempts_lock:
            return self._attempts.get(flow_id)

    # =========================================================================
    # Flow start
    # =========================================================================

    def start_flow(self) -> FlowStart:
        """
        Begin an authorization attempt.

        Returns:
            FlowStart with the flow id (to bind to the browser), the state
            and the provider authorize URL
        """
        flow_id = secrets.token_urlsafe(16)
        now = self._clock()
        attempt = OAuthAttempt(flow_id=flow_id, created_at=now, updated_at=now)

        state = self.replay_guard.begin_state(flow_id)
        authorize_url = self.client.build_authorize_url(
            redirect_uri=self.redirect_uri,
            state=state,
            scopes=self.scopes,
        )

        attempt.transition(FlowStatus.AWAITING_CALLBACK)
        self._register(attempt)

        logger.info("OAuth flow started", extra={"flow_id": flow_id})
        return FlowStart(flow_id=flow_id, state=state, authorize_url=authorize_url)

    # =========================================================================
    # Callback
    # =========================================================================

    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        flow_id: Optional[str],
        *,
        error: Optional[str] = None,
        error_reason: Optional[str] = None,
        error_description: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Credential:
        """
        Complete an authorization attempt.

        Args:
            code: Authorization code from the callback
            state: State from the callback
            flow_id: Flow id bound to the browser at flow start
            error: Provider error parameter (user denied, etc.)
            error_reason: Provider error_reason parameter
            error_description: Provider error_description parameter
            timeout: Seconds before the code exchange is cancelled. Account
                resolution gets its own budget of the same length and only
                records a timeout on the attempt

        Returns:
            The stored long-lived Credential

        Raises:
            AuthorizationDeniedError: The provider returned an error
            MissingParameterError: code or state is missing
            ReplayDetectedError: The code was already used or is in use
            InvalidStateError: State validation failed (strict mode)
            GraphAPIError: A provider exchange failed (classified)
            StoreUnavailableError: The credential could not be stored
            asyncio.TimeoutError: The timeout elapsed
        """
        attempt = self._attempt_for_callback(flow_id)

        exchange = self._exchange_phase(attempt, code, state, error, error_reason, error_description)
        try:
            if timeout is not None:
                credential = await asyncio.wait_for(exchange, timeout)
            else:
                credential = await exchange
        except asyncio.TimeoutError:
            attempt.fail("timeout", f"code exchange did not complete within {timeout}s")
            logger.warning("OAuth callback timed out", extra={"flow_id": attempt.flow_id})
            raise
        except asyncio.CancelledError:
            attempt.fail("cancelled", "callback was cancelled")
            raise

        attempt.credential_kind = credential.kind
        attempt.credential_expires_at = credential.expires_at

        # The credential is stored and the code committed from here on, so
        # nothing below may fail the attempt.
        if self.resolver is not None:
            attempt.transition(FlowStatus.RESOLVING)
            await self._resolve_into(attempt, credential, timeout)

        attempt.transition(FlowStatus.COMPLETE)
        logger.info(
            "OAuth flow completed",
            extra={
                "flow_id": attempt.flow_id,
                "credential_kind": credential.kind.value,
                "expires_at": credential.expires_at.isoformat(),
            },
        )
        return credential

    def _attempt_for_callback(self, flow_id: Optional[str]) -> OAuthAttempt:
        """
        Claim the attempt a callback belongs to.

        Only the first callback for a flow drives the registered attempt.
        Duplicate callbacks, and callbacks for flows this process never
        started (e.g. after a restart), get their own attempt record.
        """
        with self._attempts_lock:
            registered = self._attempts.get(flow_id) if flow_id else None
            if (
                registered is not None
                and registered.status == FlowStatus.AWAITING_CALLBACK
                and not registered.claimed
            ):
                registered.claimed = True
                return registered

        now = self._clock()
        attempt = OAuthAttempt(
            flow_id=flow_id or secrets.token_urlsafe(16),
            created_at=now,
            updated_at=now,
            claimed=True,
        )
        attempt.transition(FlowStatus.AWAITING_CALLBACK)
        if registered is None:
            self._register(attempt)
        return attempt

    async def _exchange_phase(
        self,
        attempt: OAuthAttempt,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
        error_reason: Optional[str],
        error_description: Optional[str],
    ) -> Credential:
        if error:
            attempt.fail(AuthorizationDeniedError.kind, error_reason or error)
            logger.warning(
                "OAuth authorization denied",
                extra={"flow_id": attempt.flow_id, "provider_error": error, "error_reason": error_reason},
            )
            raise AuthorizationDeniedError(error, error_reason, error_description)

        for name, value in (("code", code), ("state", state)):
            if not value:
                attempt.fail(MissingParameterError.kind, name)
                raise MissingParameterError(name)

        # The code is reserved before the single-use state is consumed so a
        # replayed callback is always reported as a replay.
        if not self.replay_guard.reserve_code(code):
            attempt.fail(ReplayDetectedError.kind, "authorization code already used")
            logger.warning("OAuth code replay detected", extra={"flow_id": attempt.flow_id})
            raise ReplayDetectedError()

        committed = False
        try:
            if not self.replay_guard.validate_state(attempt.flow_id, state):
                if self.strict_state:
                    attempt.fail(InvalidStateError.kind, "state validation failed")
                    logger.warning("OAuth state rejected", extra={"flow_id": attempt.flow_id})
                    raise InvalidStateError("OAuth state is invalid, expired or already used")
                logger.warning(
                    "OAuth state validation failed; continuing (relaxed mode)",
                    extra={"flow_id": attempt.flow_id},
                )

            attempt.transition(FlowStatus.EXCHANGING)
            credential = await self._exchange_and_store(code)

            self.replay_guard.commit_code(code)
            committed = True
        except GraphAPIError as e:
            attempt.fail(e.kind.value, e.message)
            raise
        except Exception as e:
            attempt.fail(getattr(e, "kind", type(e).__name__), str(e))
            raise
        finally:
            if not committed:
                self.replay_guard.release_code(code)

        return credential

    async def _exchange_and_store(self, code: str) -> Credential:
        short_lived = await self.client.exchange_code(code, self.redirect_uri)
        long_lived = await self.client.exchange_long_lived(short_lived.access_token)
        return await self.store.upsert(
            self.credential_kind,
            long_lived.access_token,
            self._ttl_for(long_lived),
        )

    def _ttl_for(self, token: TokenResponse) -> timedelta:
        if token.expires_in and token.expires_in > 0:
            return timedelta(seconds=token.expires_in)
        return self.default_ttl

    async def _resolve_into(
        self,
        attempt: OAuthAttempt,
        credential: Credential,
        timeout: Optional[float],
    ) -> None:
        # The credential is already stored; a resolution failure is recorded
        # on the attempt and does not undo the flow.
        try:
            result = await self.resolver.resolve(credential, timeout=timeout)
        except asyncio.TimeoutError:
            attempt.resolution_error = f"account resolution did not complete within {timeout}s"
            logger.warning(
                "Account resolution after OAuth timed out",
                extra={"flow_id": attempt.flow_id},
            )
            return
        except (NoAccountFoundError, GraphAPIError) as e:
            attempt.resolution_error = str(e)
            logger.warning(
                "Account resolution after OAuth failed",
                extra={"flow_id": attempt.flow_id, "error_kind": getattr(e, "kind", None)},
            )
            return
        attempt.account = result.account

    # =========================================================================
    # Rotation
    # =========================================================================

    async def refresh(self, kind: KindLike = DEFAULT_CREDENTIAL_KIND) -> Credential:
        """
        Re-exchange the current long-lived credential for a fresh one.

        Raises:
            CredentialNotAvailableError: No unexpired credential to exchange
            GraphAPIError: The provider refused the exchange
            StoreUnavailableError: The new credential could not be stored
        """
        kind = CredentialKind(kind)
        current = await self.store.get_valid(kind)
        if current is None:
            raise CredentialNotAvailableError(kind)

        refreshed = await self.client.exchange_long_lived(current.secret)
        credential = await self.store.upsert(kind, refreshed.access_token, self._ttl_for(refreshed))

        logger.info(
            "Credential refreshed",
            extra={
                "credential_kind": kind.value,
                "previous_expires_at": current.expires_at.isoformat(),
                "expires_at": credential.expires_at.isoformat(),
            },
        )
        return credential

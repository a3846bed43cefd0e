"""
Rotation manager for long-lived Graph credentials.

Handles the credential rotation lifecycle:
- Proactive rotation: background loop re-exchanging credentials near expiry
- Lazy rotation: readers schedule a rotation without waiting for it
- Single-flight: at most one provider exchange per kind at a time; concurrent
  callers await the rotation already in flight
- Status: remaining lifetime and rotation need per kind

SECURITY:
- Tokens are NEVER logged or exposed; outcomes carry kinds and expiries only

Usage:
    manager = TokenManager(oauth_service, store, threshold_days=7)

    # Proactive: rotate every credential that is due
    stats = await manager.refresh_expiring()

    # Lazy: kick off a rotation for a credential a caller just read
    manager.schedule_rotation(credential)

    # Background loop from the application lifespan
    manager.start()
    await manager.stop()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from graph_auth.integrations.graph.exceptions import (
    GraphAPIError,
    GraphInvalidGrantError,
    ProviderErrorKind,
)
from graph_auth.services.credential_store import (
    Credential,
    CredentialKind,
    CredentialNotAvailableError,
    CredentialStore,
    KindLike,
    StoreUnavailableError,
)
from graph_auth.services.oauth_service import OAuthService

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_DAYS = 7
DEFAULT_INTERVAL_SECONDS = 3600


class RefreshResult(str, Enum):
    """Outcome of a rotation attempt."""
    SUCCESS = "success"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_PERMANENT = "failed_permanent"
    SKIPPED_EXPIRED = "skipped_expired"


@dataclass
class RefreshOutcome:
    """Result of a single rotation attempt."""
    credential_kind: CredentialKind
    result: RefreshResult
    error: Optional[str] = None
    error_kind: Optional[str] = None
    new_expires_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "credential_kind": self.credential_kind.value,
            "result": self.result.value,
            "error": self.error,
            "error_kind": self.error_kind,
            "new_expires_at": self.new_expires_at.isoformat() if self.new_expires_at else None,
        }


@dataclass
class RefreshStats:
    """Aggregate stats from a proactive rotation run."""
    credentials_checked: int = 0
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0
    errors: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "credentials_checked": self.credentials_checked,
            "refreshed": self.refreshed,
            "failed": self.failed,
            "skipped": self.skipped,
            "expired": self.expired,
            "error_count": len(self.errors),
        }


def needs_rotation(
    credential: Credential,
    threshold_days: float = DEFAULT_THRESHOLD_DAYS,
    now: Optional[datetime] = None,
) -> bool:
    """True when the credential expires within `threshold_days` (inclusive)."""
    now = now or datetime.now(timezone.utc)
    return credential.expires_at - now <= timedelta(days=threshold_days)


class TokenManager:
    """
    Rotates long-lived credentials before they expire.

    Rotation is a re-exchange of the current credential through
    OAuthService.refresh. Callers never block on a rotation they did not
    ask to await.
    """

    def __init__(
        self,
        oauth_service: OAuthService,
        store: CredentialStore,
        threshold_days: float = DEFAULT_THRESHOLD_DAYS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if threshold_days < 0:
            raise ValueError("threshold_days must be >= 0")
        self.oauth_service = oauth_service
        self.store = store
        self.threshold_days = threshold_days
        self.interval_seconds = interval_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._inflight: Dict[CredentialKind, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    def needs_rotation(self, credential: Credential) -> bool:
        return needs_rotation(credential, self.threshold_days, self._clock())

    # =========================================================================
    # Single-flight rotation
    # =========================================================================

    async def rotate(self, kind: KindLike) -> RefreshOutcome:
        """
        Rotate the credential of `kind`, joining a rotation already in flight.

        Cancelling the caller does not cancel the shared rotation.
        """
        kind = CredentialKind(kind)
        task = self._inflight.get(kind)
        if task is None:
            task = asyncio.create_task(self._rotate(kind))
            self._inflight[kind] = task
            task.add_done_callback(lambda t, k=kind: self._clear_inflight(k, t))
        else:
            logger.debug("Joining in-flight rotation", extra={"credential_kind": kind.value})
        return await asyncio.shield(task)

    def _clear_inflight(self, kind: CredentialKind, task: asyncio.Task) -> None:
        if self._inflight.get(kind) is task:
            del self._inflight[kind]

    def is_rotating(self, kind: KindLike) -> bool:
        return CredentialKind(kind) in self._inflight

    async def _rotate(self, kind: CredentialKind) -> RefreshOutcome:
        try:
            credential = await self.oauth_service.refresh(kind)
        except CredentialNotAvailableError as exc:
            logger.warning(
                "Rotation skipped, no valid credential to exchange",
                extra={"credential_kind": kind.value},
            )
            return RefreshOutcome(
                credential_kind=kind,
                result=RefreshResult.SKIPPED_EXPIRED,
                error=str(exc),
                error_kind=exc.kind,
            )
        except GraphInvalidGrantError as exc:
            logger.error(
                "Rotation rejected by provider; re-authorization required",
                extra={"credential_kind": kind.value, "graph_code": exc.code},
            )
            return RefreshOutcome(
                credential_kind=kind,
                result=RefreshResult.FAILED_PERMANENT,
                error=exc.message,
                error_kind=exc.kind.value,
            )
        except GraphAPIError as exc:
            logger.error(
                "Rotation failed",
                extra={"credential_kind": kind.value, "error_kind": exc.kind.value},
            )
            return RefreshOutcome(
                credential_kind=kind,
                result=RefreshResult.FAILED_PERMANENT
                if exc.kind == ProviderErrorKind.INSUFFICIENT_SCOPE
                else RefreshResult.FAILED_RETRYABLE,
                error=exc.message,
                error_kind=exc.kind.value,
            )
        except StoreUnavailableError as exc:
            logger.error(
                "Rotation could not store the new credential",
                extra={"credential_kind": kind.value},
            )
            return RefreshOutcome(
                credential_kind=kind,
                result=RefreshResult.FAILED_RETRYABLE,
                error=str(exc),
                error_kind=exc.kind,
            )

        return RefreshOutcome(
            credential_kind=kind,
            result=RefreshResult.SUCCESS,
            new_expires_at=credential.expires_at,
        )

    # =========================================================================
    # Lazy Rotation
    # =========================================================================

    def schedule_rotation(self, credential: Credential) -> Optional[asyncio.Task]:
        """
        Start a background rotation if `credential` is due. Never waits.

        Returns:
            The background task, or None if no rotation was started
        """
        if not credential.kind.is_long_lived or not self.needs_rotation(credential):
            return None
        if self.is_rotating(credential.kind):
            return None

        logger.info(
            "Scheduling credential rotation",
            extra={
                "credential_kind": credential.kind.value,
                "remaining_days": credential.remaining_days(self._clock()),
            },
        )
        task = asyncio.create_task(self.rotate(credential.kind))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # =========================================================================
    # Proactive Rotation
    # =========================================================================

    async def refresh_expiring(self) -> RefreshStats:
        """
        Check every stored long-lived credential and rotate those that are due.

        Returns:
            RefreshStats with counts of outcomes
        """
        stats = RefreshStats()

        for kind in self.store.list_kinds():
            if not kind.is_long_lived:
                continue
            stats.credentials_checked += 1

            credential = await self.store.get_latest(kind)
            if credential is None:
                stats.skipped += 1
                continue

            if not credential.is_valid(self._clock()):
                stats.expired += 1
                logger.warning(
                    "Credential expired before rotation; re-authorization required",
                    extra={"credential_kind": kind.value},
                )
                continue

            if not self.needs_rotation(credential):
                stats.skipped += 1
                continue

            outcome = await self.rotate(kind)
            self._record_outcome(outcome, stats)

        logger.info("Proactive rotation completed", extra=stats.to_dict())
        return stats

    def _record_outcome(self, outcome: RefreshOutcome, stats: RefreshStats) -> None:
        if outcome.result == RefreshResult.SUCCESS:
            stats.refreshed += 1
        elif outcome.result == RefreshResult.SKIPPED_EXPIRED:
            stats.expired += 1
        elif outcome.result in (RefreshResult.FAILED_RETRYABLE, RefreshResult.FAILED_PERMANENT):
            stats.failed += 1
            stats.errors.append(outcome.to_dict())
        else:
            stats.skipped += 1

    # =========================================================================
    # Background Loop
    # =========================================================================

    async def run_forever(self) -> None:
        """Run refresh_expiring every interval_seconds until cancelled."""
        logger.info(
            "Rotation loop started",
            extra={
                "interval_seconds": self.interval_seconds,
                "threshold_days": self.threshold_days,
            },
        )
        while True:
            try:
                await self.refresh_expiring()
            except StoreUnavailableError as exc:
                logger.error("Rotation check failed, store unavailable", extra={"error": str(exc)})
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        tasks = list(self._background)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
            self._loop_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Rotation loop stopped")

    # =========================================================================
    # Status Checks
    # =========================================================================

    async def get_token_status(self, kind: KindLike) -> Dict[str, Any]:
        """
        Status summary for `kind` (safe for API response).
        """
        kind = CredentialKind(kind)
        credential = await self.store.get_latest(kind)
        if credential is None:
            return {
                "kind": kind.value,
                "has_token": False,
                "is_valid": False,
                "remaining_days": 0,
                "needs_rotation": True,
                "rotation_in_progress": self.is_rotating(kind),
                "expires_at": None,
                "last_updated": None,
                "preview": None,
            }

        now = self._clock()
        return {
            "kind": kind.value,
            "has_token": True,
            "is_valid": credential.is_valid(now),
            "remaining_days": credential.remaining_days(now),
            "needs_rotation": needs_rotation(credential, self.threshold_days, now),
            "rotation_in_progress": self.is_rotating(kind),
            "expires_at": credential.expires_at.isoformat(),
            "last_updated": credential.updated_at.isoformat(),
            "preview": credential.preview,
        }

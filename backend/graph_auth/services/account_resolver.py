"""
Business account resolution.

Finds the business account a credential can act on by running a fixed
chain of lookup strategies against the Graph API:

1. direct_identity  - me?fields=id,name. Proves the credential works but
                      never yields a business account on its own.
2. parent_entity    - me/accounts with the shallow business account
                      reference; the first page with a reference wins.
3. expanded_fields  - me/accounts with the business account's extended
                      fields in one call. Finds an account when 2 did not,
                      or enriches the account 2 found.

The first strategy to produce an account id is authoritative; later
strategies only fill in fields that are still empty. Every strategy's
outcome is recorded so a NoAccountFoundError tells the operator exactly
what was tried.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from graph_auth.integrations.graph.client import GraphAPIClient
from graph_auth.integrations.graph.exceptions import GraphAPIError, GraphInvalidGrantError
from graph_auth.services.credential_store import Credential

logger = logging.getLogger(__name__)

PAGE_LIMIT = 100
MAX_PAGES = 5

SHALLOW_PAGE_FIELDS = "id,name,instagram_business_account"
EXPANDED_PAGE_FIELDS = (
    "id,name,instagram_business_account"
    "{id,username,name,media_count,followers_count,profile_picture_url}"
)

_ENRICHABLE_FIELDS = (
    "username",
    "display_name",
    "media_count",
    "followers_count",
    "profile_picture_url",
)


class AttemptStatus(str, Enum):
    """Outcome of one strategy in the chain."""
    SUCCEEDED = "succeeded"
    SUCCEEDED_INSUFFICIENT = "succeeded_insufficient"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ResolvedAccount:
    """The business account a credential can act on."""
    business_account_id: str
    resolution_strategy: str
    parent_entity_id: Optional[str] = None
    parent_entity_name: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    media_count: Optional[int] = None
    followers_count: Optional[int] = None
    profile_picture_url: Optional[str] = None

    @property
    def is_enriched(self) -> bool:
        return self.username is not None and self.media_count is not None

    def merge(self, other: "ResolvedAccount") -> "ResolvedAccount":
        """
        Fill empty fields from `other`.

        The identifier and strategy tag of self always win.
        """
        updates = {
            name: getattr(other, name)
            for name in _ENRICHABLE_FIELDS + ("parent_entity_id", "parent_entity_name")
            if getattr(self, name) is None and getattr(other, name) is not None
        }
        return replace(self, **updates) if updates else self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StrategyAttempt:
    """Diagnostic record of one strategy run."""
    strategy: str
    status: AttemptStatus
    detail: str = ""
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "status": self.status.value,
            "detail": self.detail,
            "error_kind": self.error_kind,
        }


@dataclass
class StrategyOutcome:
    status: AttemptStatus
    account: Optional[ResolvedAccount] = None
    detail: str = ""


class NoAccountFoundError(Exception):
    """Raised when no strategy yields a business account id."""
    kind = "no_account_found"

    def __init__(self, attempts: Sequence[StrategyAttempt]):
        self.attempts = list(attempts)
        tried = ", ".join(f"{a.strategy}={a.status.value}" for a in self.attempts)
        super().__init__(f"No business account found ({tried})")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "detail": str(self),
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass
class ResolutionResult:
    account: ResolvedAccount
    attempts: List[StrategyAttempt] = field(default_factory=list)


def _account_from_page(page: Dict[str, Any], strategy: str) -> Optional[ResolvedAccount]:
    reference = page.get("instagram_business_account")
    if not isinstance(reference, dict) or not reference.get("id"):
        return None
    return ResolvedAccount(
        business_account_id=str(reference["id"]),
        resolution_strategy=strategy,
        parent_entity_id=page.get("id"),
        parent_entity_name=page.get("name"),
        username=reference.get("username"),
        display_name=reference.get("name"),
        media_count=reference.get("media_count"),
        followers_count=reference.get("followers_count"),
        profile_picture_url=reference.get("profile_picture_url"),
    )


async def _list_pages(
    client: GraphAPIClient,
    credential: Credential,
    fields: str,
) -> List[Dict[str, Any]]:
    """Enumerate the parent pages of the identity, following cursors."""
    pages: List[Dict[str, Any]] = []
    after: Optional[str] = None

    for _ in range(MAX_PAGES):
        data = await client.get_pages(credential.secret, fields, limit=PAGE_LIMIT, after=after)
        pages.extend(p for p in data.get("data", []) if isinstance(p, dict))

        paging = data.get("paging") or {}
        after = (paging.get("cursors") or {}).get("after")
        if not paging.get("next") or not after:
            break

    return pages


# =============================================================================
# Strategies
# =============================================================================

class ResolutionStrategy(ABC):
    """One step of the resolution chain."""

    name: str = ""

    def should_run(self, current: Optional[ResolvedAccount]) -> bool:
        return current is None

    @abstractmethod
    async def run(
        self,
        client: GraphAPIClient,
        credential: Credential,
        current: Optional[ResolvedAccount],
    ) -> StrategyOutcome:
        ...


class DirectIdentityStrategy(ResolutionStrategy):
    name = "direct_identity"

    async def run(self, client, credential, current):
        data = await client.get_me(credential.secret)
        identity_id = data.get("id")
        if not identity_id:
            return StrategyOutcome(AttemptStatus.FAILED, detail="identity response had no id")
        return StrategyOutcome(
            AttemptStatus.SUCCEEDED_INSUFFICIENT,
            detail=f"identity {identity_id} confirmed; no business account on identity",
        )


class ParentEntityStrategy(ResolutionStrategy):
    name = "parent_entity"

    async def run(self, client, credential, current):
        pages = await _list_pages(client, credential, SHALLOW_PAGE_FIELDS)
        for page in pages:
            account = _account_from_page(page, self.name)
            if account is not None:
                return StrategyOutcome(
                    AttemptStatus.SUCCEEDED,
                    account=account,
                    detail=f"found on page {page.get('id')}",
                )
        return StrategyOutcome(
            AttemptStatus.FAILED,
            detail=f"no business account on {len(pages)} page(s)",
        )


class ExpandedFieldStrategy(ResolutionStrategy):
    name = "expanded_fields"

    def should_run(self, current: Optional[ResolvedAccount]) -> bool:
        return current is None or not current.is_enriched

    async def run(self, client, credential, current):
        pages = await _list_pages(client, credential, EXPANDED_PAGE_FIELDS)
        candidates = [
            account
            for account in (_account_from_page(page, self.name) for page in pages)
            if account is not None
        ]

        if current is not None:
            for candidate in candidates:
                if candidate.business_account_id == current.business_account_id:
                    return StrategyOutcome(
                        AttemptStatus.SUCCEEDED,
                        account=current.merge(candidate),
                        detail="enriched resolved account",
                    )
            return StrategyOutcome(
                AttemptStatus.SUCCEEDED_INSUFFICIENT,
                account=current,
                detail="resolved account not present in expanded listing",
            )

        if candidates:
            return StrategyOutcome(
                AttemptStatus.SUCCEEDED,
                account=candidates[0],
                detail=f"found on page {candidates[0].parent_entity_id}",
            )
        return StrategyOutcome(
            AttemptStatus.FAILED,
            detail=f"no business account on {len(pages)} page(s)",
        )


DEFAULT_STRATEGIES = (
    DirectIdentityStrategy(),
    ParentEntityStrategy(),
    ExpandedFieldStrategy(),
)


# =============================================================================
# Resolver
# =============================================================================

class AccountResolver:
    """
    Runs the strategy chain for a credential.

    Provider errors other than an invalid grant are recorded against the
    strategy and the chain continues. An invalid grant means the
    credential itself is dead, so the chain stops and the error is raised.
    """

    def __init__(
        self,
        client: GraphAPIClient,
        strategies: Sequence[ResolutionStrategy] = DEFAULT_STRATEGIES,
    ):
        self.client = client
        self.strategies = list(strategies)

    async def resolve(
        self,
        credential: Credential,
        timeout: Optional[float] = None,
    ) -> ResolutionResult:
        """
        Resolve the business account for `credential`.

        Args:
            credential: Credential to resolve with
            timeout: Seconds before the in-flight provider call is cancelled

        Returns:
            ResolutionResult with the account and per-strategy attempts

        Raises:
            NoAccountFoundError: No strategy produced an account id
            GraphInvalidGrantError: The credential was rejected
            asyncio.TimeoutError: The timeout elapsed
        """
        if timeout is not None:
            return await asyncio.wait_for(self._run_chain(credential), timeout)
        return await self._run_chain(credential)

    async def _run_chain(self, credential: Credential) -> ResolutionResult:
        account: Optional[ResolvedAccount] = None
        attempts: List[StrategyAttempt] = []

        for strategy in self.strategies:
            if not strategy.should_run(account):
                attempts.append(StrategyAttempt(
                    strategy=strategy.name,
                    status=AttemptStatus.SKIPPED,
                    detail="account already resolved",
                ))
                continue

            try:
                outcome = await strategy.run(self.client, credential, account)
            except GraphInvalidGrantError as e:
                logger.warning(
                    "Account resolution aborted, credential rejected",
                    extra={"strategy": strategy.name, "graph_code": e.code},
                )
                raise
            except GraphAPIError as e:
                logger.warning(
                    "Account resolution strategy failed",
                    extra={"strategy": strategy.name, "error_kind": e.kind.value},
                )
                attempts.append(StrategyAttempt(
                    strategy=strategy.name,
                    status=AttemptStatus.FAILED,
                    detail=e.message,
                    error_kind=e.kind.value,
                ))
                continue

            attempts.append(StrategyAttempt(
                strategy=strategy.name,
                status=outcome.status,
                detail=outcome.detail,
            ))
            if outcome.account is not None:
                # First id wins; later strategies may only enrich it
                if account is None:
                    account = outcome.account
                elif outcome.account.business_account_id == account.business_account_id:
                    account = account.merge(outcome.account)

        if account is None:
            logger.warning(
                "No business account found",
                extra={"attempts": [a.to_dict() for a in attempts]},
            )
            raise NoAccountFoundError(attempts)

        logger.info(
            "Business account resolved",
            extra={
                "business_account_id": account.business_account_id,
                "resolution_strategy": account.resolution_strategy,
            },
        )
        return ResolutionResult(account=account, attempts=attempts)

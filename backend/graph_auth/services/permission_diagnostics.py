"""
Permission diagnostics for the stored credential.

evaluate_permissions() is a pure function over scope sets. The service
wrapper fetches the granted scopes through token introspection and
evaluates them against the configured scope policy. It also reports the
app mode: an app in development mode only works for users holding an app
role, so the report says whether the credential's user has one.

permission_level is the share of capability buckets satisfied by the
granted scopes, as a whole percentage. Without configured buckets every
required scope is its own bucket.
"""

import logging
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from graph_auth.config.scope_policy import ScopePolicyLoader
from graph_auth.integrations.graph.client import GraphAPIClient
from graph_auth.integrations.graph.exceptions import GraphAPIError
from graph_auth.services.credential_store import (
    DEFAULT_CREDENTIAL_KIND,
    CredentialNotAvailableError,
    CredentialStore,
    KindLike,
)

logger = logging.getLogger(__name__)

RECOMMEND_GRANT_REQUIRED = "grant missing required scopes"
RECOMMEND_CONSIDER_RECOMMENDED = "consider recommended scopes"
RECOMMEND_SUFFICIENT = "sufficient"

APP_MODE_DEVELOPMENT = "development"
APP_MODE_LIVE = "live"
NOTICE_TESTER_REQUIRED = "app is in development mode; the user needs an app role (tester)"

DEFAULT_THRESHOLDS = (50, 75)


@dataclass(frozen=True)
class PermissionReport:
    """Result of evaluating granted scopes against the policy."""
    granted_scopes: Tuple[str, ...]
    required_missing: Tuple[str, ...]
    recommended_missing: Tuple[str, ...]
    permission_level: int
    recommendations: Tuple[str, ...]
    token_valid: Optional[bool] = None
    details: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granted_scopes": list(self.granted_scopes),
            "required_missing": list(self.required_missing),
            "recommended_missing": list(self.recommended_missing),
            "permission_level": self.permission_level,
            "recommendations": list(self.recommendations),
            "token_valid": self.token_valid,
            "details": dict(self.details),
        }


def _ordered_missing(expected: Iterable[str], granted: frozenset) -> Tuple[str, ...]:
    seen = set()
    missing = []
    for scope in expected:
        if scope not in granted and scope not in seen:
            missing.append(scope)
            seen.add(scope)
    return tuple(missing)


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def recommendation_for(level: int, thresholds: Tuple[int, int] = DEFAULT_THRESHOLDS) -> str:
    insufficient_below, sufficient_from = thresholds
    if level < insufficient_below:
        return RECOMMEND_GRANT_REQUIRED
    if level < sufficient_from:
        return RECOMMEND_CONSIDER_RECOMMENDED
    return RECOMMEND_SUFFICIENT


def evaluate_permissions(
    granted: Iterable[str],
    required: Sequence[str],
    recommended: Sequence[str] = (),
    buckets: Optional[Sequence[Sequence[str]]] = None,
    thresholds: Tuple[int, int] = DEFAULT_THRESHOLDS,
) -> PermissionReport:
    """
    Evaluate granted scopes against required and recommended scopes.

    Args:
        granted: Scopes the credential holds
        required: Scopes the service cannot work without
        recommended: Scopes that unlock optional capabilities
        buckets: Capability buckets; a bucket is satisfied when all of its
            scopes are granted. Defaults to one bucket per required scope
        thresholds: (insufficient_below, sufficient_from) level cut-offs

    Returns:
        PermissionReport with exactly one recommendation
    """
    granted_set = frozenset(granted)
    effective_buckets = [tuple(b) for b in buckets] if buckets else [(s,) for s in dict.fromkeys(required)]

    if effective_buckets:
        satisfied = sum(
            1 for bucket in effective_buckets
            if all(scope in granted_set for scope in bucket)
        )
        level = _round_half_up(Decimal(100 * satisfied) / Decimal(len(effective_buckets)))
    else:
        level = 100

    return PermissionReport(
        granted_scopes=tuple(sorted(granted_set)),
        required_missing=_ordered_missing(required, granted_set),
        recommended_missing=_ordered_missing(recommended, granted_set),
        permission_level=level,
        recommendations=(recommendation_for(level, thresholds),),
    )


class PermissionDiagnosticsService:
    """
    Builds a PermissionReport for a stored credential.

    Granted scopes come from the debug_token introspection endpoint, called
    with the app access token.
    """

    def __init__(
        self,
        client: GraphAPIClient,
        store: CredentialStore,
        policy: ScopePolicyLoader,
    ):
        self.client = client
        self.store = store
        self.policy = policy

    def evaluate(self, granted: Iterable[str]) -> PermissionReport:
        return evaluate_permissions(
            granted,
            self.policy.required_scopes,
            self.policy.recommended_scopes,
            buckets=self.policy.capability_buckets,
            thresholds=self.policy.thresholds,
        )

    async def get_health_report(self, kind: KindLike = DEFAULT_CREDENTIAL_KIND) -> PermissionReport:
        """
        Report on the permissions of the current credential of `kind`.

        Raises:
            CredentialNotAvailableError: No unexpired credential is stored
            GraphAPIError: Token introspection failed
        """
        credential = await self.store.get_valid(kind)
        if credential is None:
            raise CredentialNotAvailableError(kind)

        info = await self.client.debug_token(credential.secret)
        details = {
            "remaining_days": credential.remaining_days(self.store.now()),
            "token_expires_at": info.expires_at.isoformat() if info.expires_at else None,
        }
        details.update(await self.app_access(info.user_id))
        report = replace(
            self.evaluate(info.scopes),
            token_valid=info.is_valid,
            details=details,
        )

        logger.info(
            "Permission report generated",
            extra={
                "credential_kind": credential.kind.value,
                "permission_level": report.permission_level,
                "required_missing": list(report.required_missing),
                "token_valid": info.is_valid,
            },
        )
        return report

    async def app_access(self, user_id: Optional[str]) -> Dict[str, Any]:
        """
        App mode and, in development mode, whether `user_id` holds an app role.

        A failed lookup is reported under "app_access_error" instead of
        failing the whole report.

        Returns:
            Dict with app_mode, has_app_role (None when not checked) and
            notices
        """
        access: Dict[str, Any] = {"app_mode": None, "has_app_role": None, "notices": []}
        try:
            app = await self.client.get_app_info()
            if not app.get("is_app_in_development_mode"):
                access["app_mode"] = APP_MODE_LIVE
                return access

            access["app_mode"] = APP_MODE_DEVELOPMENT
            if user_id:
                roles = await self.client.get_app_roles()
                access["has_app_role"] = any(str(r.get("user")) == str(user_id) for r in roles)
        except GraphAPIError as e:
            logger.warning(
                "App mode lookup failed",
                extra={"error_kind": e.kind.value, "graph_code": e.code},
            )
            access["app_access_error"] = e.kind.value
            return access

        if access["has_app_role"] is not True:
            access["notices"].append(NOTICE_TESTER_REQUIRED)
        return access

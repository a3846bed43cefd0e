"""
Credential diagnostics routes.

Operator-facing, read-only views of the stored credential:
- GET /api/credentials/{kind}/status   - lifetime and rotation status
- GET /api/diagnostics/permissions     - granted scopes vs the scope policy
- GET /api/diagnostics/account         - business account resolution

SECURITY: Responses carry masked previews only, never a credential.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from graph_auth.api.dependencies import get_credential_service
from graph_auth.api.errors import HANDLED_ERRORS, error_response
from graph_auth.api.schemas.auth import (
    ErrorResponse,
    ResolvedAccountResponse,
    TokenStatusResponse,
)
from graph_auth.api.schemas.diagnostics import (
    AccountResolutionResponse,
    PermissionReportResponse,
    StrategyAttemptResponse,
)
from graph_auth.services.credential_service import CredentialService
from graph_auth.services.credential_store import DEFAULT_CREDENTIAL_KIND, CredentialKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["credential-diagnostics"])

ACCOUNT_RESOLUTION_TIMEOUT_SECONDS = 30.0


def _parse_kind(kind: str) -> CredentialKind:
    try:
        return CredentialKind(kind)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown credential kind: {kind}",
        )


# =============================================================================
# Credential status
# =============================================================================

@router.get(
    "/credentials/{kind}/status",
    response_model=TokenStatusResponse,
    responses={503: {"model": ErrorResponse}},
)
async def get_credential_status(
    kind: str,
    service: CredentialService = Depends(get_credential_service),
):
    """Remaining lifetime and rotation status of one credential kind."""
    credential_kind = _parse_kind(kind)
    try:
        token_status = await service.get_token_status(credential_kind)
    except HANDLED_ERRORS as e:
        return error_response(e)
    return TokenStatusResponse(**token_status)


# =============================================================================
# Permissions
# =============================================================================

@router.get(
    "/diagnostics/permissions",
    response_model=PermissionReportResponse,
    responses={
        404: {"model": ErrorResponse, "description": "No valid credential stored"},
        502: {"model": ErrorResponse, "description": "Token introspection failed"},
    },
)
async def get_permission_report(
    kind: str = Query(DEFAULT_CREDENTIAL_KIND.value),
    service: CredentialService = Depends(get_credential_service),
):
    """
    Evaluate the scopes granted to the current credential.

    Lists missing required and recommended scopes, the permission level
    and one recommendation for the operator.
    """
    credential_kind = _parse_kind(kind)
    try:
        report = await service.get_health_report(credential_kind)
    except HANDLED_ERRORS as e:
        return error_response(e)
    return PermissionReportResponse(**report.to_dict())


# =============================================================================
# Account resolution
# =============================================================================

@router.get(
    "/diagnostics/account",
    response_model=AccountResolutionResponse,
    responses={
        404: {
            "model": ErrorResponse,
            "description": "No valid credential, or no business account (with attempts)",
        },
        504: {"model": ErrorResponse, "description": "Resolution timed out"},
    },
)
async def get_account_resolution(
    kind: str = Query(DEFAULT_CREDENTIAL_KIND.value),
    service: CredentialService = Depends(get_credential_service),
):
    """
    Resolve the business account behind the current credential.

    On failure the body lists every strategy that was tried and why it
    did not produce an account.
    """
    credential_kind = _parse_kind(kind)
    try:
        result = await service.resolve_account(
            credential_kind, timeout=ACCOUNT_RESOLUTION_TIMEOUT_SECONDS
        )
    except HANDLED_ERRORS as e:
        return error_response(e)

    return AccountResolutionResponse(
        account=ResolvedAccountResponse(**result.account.to_dict()),
        attempts=[StrategyAttemptResponse(**a.to_dict()) for a in result.attempts],
    )

"""
Diagnostics API response schemas.

Pydantic models for the permission report and account resolution routes.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from graph_auth.api.schemas.auth import ResolvedAccountResponse


class PermissionReportResponse(BaseModel):
    """Granted scopes of the current credential evaluated against the policy."""

    granted_scopes: list[str] = Field(
        default_factory=list, description="Scopes the credential holds, sorted"
    )
    required_missing: list[str] = Field(
        default_factory=list, description="Required scopes not granted"
    )
    recommended_missing: list[str] = Field(
        default_factory=list, description="Recommended scopes not granted"
    )
    permission_level: int = Field(
        description="Share of capability buckets satisfied (0 - 100)",
        ge=0,
        le=100,
    )
    recommendations: list[str] = Field(
        default_factory=list, description="Exactly one operator recommendation"
    )
    token_valid: Optional[bool] = Field(
        None, description="Validity reported by token introspection"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description=(
            "Remaining lifetime of the credential, app mode (live or development), "
            "whether the user holds an app role, and operator notices"
        ),
    )


class StrategyAttemptResponse(BaseModel):
    """Outcome of one resolution strategy."""

    strategy: str = Field(description="Strategy name")
    status: str = Field(
        description="succeeded, succeeded_insufficient, failed or skipped"
    )
    detail: str = Field("", description="What the strategy saw")
    error_kind: Optional[str] = Field(None, description="Provider error kind on failure")


class AccountResolutionResponse(BaseModel):
    """Resolved business account with the strategies that were tried."""

    account: ResolvedAccountResponse
    attempts: list[StrategyAttemptResponse] = Field(default_factory=list)

"""
Auth API response schemas.

Pydantic models for the OAuth callback and credential listing routes.
Credential secrets only ever appear as masked previews.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Structured error body shared by every route."""

    error: str = Field(description="Machine-readable error kind (e.g. replay_detected)")
    detail: str = Field(description="Human-readable message")


class ResolvedAccountResponse(BaseModel):
    """Business account behind a credential."""

    business_account_id: str = Field(description="Instagram business account id")
    resolution_strategy: str = Field(
        description="Strategy that found the id: parent_entity or expanded_fields"
    )
    parent_entity_id: Optional[str] = Field(None, description="Facebook page id")
    parent_entity_name: Optional[str] = Field(None, description="Facebook page name")
    username: Optional[str] = Field(None, description="Instagram username")
    display_name: Optional[str] = Field(None, description="Instagram display name")
    media_count: Optional[int] = Field(None, description="Number of media objects")
    followers_count: Optional[int] = Field(None, description="Number of followers")
    profile_picture_url: Optional[str] = Field(None, description="Profile picture URL")


class OAuthCallbackResponse(BaseModel):
    """Result of a completed authorization flow."""

    success: bool = Field(description="True when a credential was stored")
    flow_id: Optional[str] = Field(None, description="Opaque id of the authorization attempt")
    status: str = Field(description="Final flow status")
    credential_kind: str = Field(description="Kind of the stored credential")
    preview: str = Field(description="Masked preview of the stored credential")
    expires_at: str = Field(description="ISO timestamp when the credential expires")
    account: Optional[ResolvedAccountResponse] = Field(
        None, description="Business account, when resolution succeeded"
    )
    resolution_error: Optional[str] = Field(
        None, description="Why account resolution failed, if it did"
    )


class CredentialSummary(BaseModel):
    """Masked view of one stored credential."""

    kind: str = Field(description="Credential kind")
    preview: str = Field(description="Masked preview (first 10 and last 4 characters)")
    expires_at: str = Field(description="ISO timestamp when the credential expires")
    updated_at: str = Field(description="ISO timestamp of the last write")
    is_valid: bool = Field(description="False once the credential has expired")
    remaining_days: int = Field(description="Whole days until expiry, 0 once expired")


class CredentialListResponse(BaseModel):
    """Every stored credential, newest first."""

    credentials: list[CredentialSummary] = Field(default_factory=list)
    total: int = Field(description="Number of stored credentials")


class TokenStatusResponse(BaseModel):
    """Lifetime and rotation status of one credential kind."""

    kind: str = Field(description="Credential kind")
    has_token: bool = Field(description="True when any credential of this kind is stored")
    is_valid: bool = Field(description="True when the stored credential has not expired")
    remaining_days: int = Field(description="Whole days until expiry, 0 once expired")
    needs_rotation: bool = Field(description="True when within the rotation threshold")
    rotation_in_progress: bool = Field(description="True while a rotation is in flight")
    expires_at: Optional[str] = Field(None, description="ISO timestamp of expiry")
    last_updated: Optional[str] = Field(None, description="ISO timestamp of the last write")
    preview: Optional[str] = Field(None, description="Masked credential preview")

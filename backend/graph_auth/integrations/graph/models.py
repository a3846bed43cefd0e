"""
Graph API response models.

Dataclasses for the token endpoint and token introspection responses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any


@dataclass
class TokenResponse:
    """Response from the oauth/access_token endpoint."""
    access_token: str = field(repr=False)
    token_type: Optional[str] = None
    expires_in: Optional[int] = None  # seconds; omitted for some long-lived tokens

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenResponse":
        expires_in = data.get("expires_in")
        return cls(
            access_token=data.get("access_token", ""),
            token_type=data.get("token_type"),
            expires_in=int(expires_in) if expires_in else None,
        )


@dataclass
class TokenDebugInfo:
    """Introspection data from the debug_token endpoint."""
    is_valid: bool
    app_id: Optional[str] = None
    user_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenDebugInfo":
        payload = data.get("data", data)
        expires_at = None
        raw_expires = payload.get("expires_at")
        # 0 means the token never expires
        if raw_expires:
            expires_at = datetime.fromtimestamp(int(raw_expires), tz=timezone.utc)
        return cls(
            is_valid=bool(payload.get("is_valid", False)),
            app_id=payload.get("app_id"),
            user_id=payload.get("user_id"),
            scopes=list(payload.get("scopes", []) or []),
            expires_at=expires_at,
        )

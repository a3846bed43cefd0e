"""
OAuth state model for the Graph authorization flow.

Stores the state value issued for each flow for CSRF protection.
States expire after a short TTL and are single-use.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, Text

from graph_auth.db_base import Base
from graph_auth.models.base import TimestampMixin, UTCDateTime, generate_uuid


class OAuthState(Base, TimestampMixin):
    """
    OAuth state for CSRF protection during the authorization flow.

    States are:
    - Bound to one flow id
    - Short-lived (10-minute TTL by default)
    - Cryptographically secure (32-byte random)
    """

    __tablename__ = "oauth_states"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    flow_id = Column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
        comment="Authorization attempt the state was issued for"
    )

    state = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Cryptographically secure state parameter (32 bytes)"
    )

    scopes = Column(
        Text,
        nullable=True,
        comment="OAuth scopes requested"
    )

    expires_at = Column(
        UTCDateTime(),
        nullable=False,
        index=True,
        comment="When this state expires"
    )

    used_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="When this state was consumed (single-use)"
    )

    def __repr__(self) -> str:
        return f"<OAuthState(flow_id={self.flow_id}, state={self.state[:8]}...)>"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if state has expired."""
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    @property
    def is_used(self) -> bool:
        """Check if state has been consumed."""
        return self.used_at is not None

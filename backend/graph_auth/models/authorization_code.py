"""
Authorization code reservations.

A code is reserved before it is exchanged. The hash of the code is the
primary key, so a second reservation of the same code fails at insert
time regardless of which process attempts it. Plaintext codes are never
stored.
"""

import hashlib

from sqlalchemy import Column, String

from graph_auth.db_base import Base
from graph_auth.models.base import UTCDateTime, utcnow


def hash_code(code: str) -> str:
    """SHA-256 hex digest of an authorization code."""
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class ConsumedAuthorizationCode(Base):
    """
    Reserved or consumed authorization code.

    committed_at is NULL while the exchange is in flight; a released
    reservation deletes the row. Rows older than the replay guard's code
    retention window are purged on the next reservation.
    """

    __tablename__ = "authorization_codes"

    code_hash = Column(
        String(64),
        primary_key=True,
        comment="SHA-256 of the authorization code"
    )

    reserved_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="When the code was reserved"
    )

    committed_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="When the exchange using this code completed"
    )

    def __repr__(self) -> str:
        return f"<ConsumedAuthorizationCode(code_hash={self.code_hash[:8]}..., committed={self.committed_at is not None})>"

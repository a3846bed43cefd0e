"""
Stored Graph access credential.

One row per credential kind. The secret is Fernet-encrypted at rest and
only decrypted by CredentialStore.
"""

from sqlalchemy import Column, String, Text, Index

from graph_auth.db_base import Base
from graph_auth.models.base import TimestampMixin, UTCDateTime, generate_uuid


class StoredCredential(Base, TimestampMixin):
    """
    Encrypted access credential.

    Invariants:
    - At most one row per kind (unique constraint)
    - expires_at is always set; a credential is usable only while now < expires_at
    """

    __tablename__ = "credentials"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    kind = Column(
        String(32),
        nullable=False,
        unique=True,
        comment="Credential kind (ig_long_lived, fb_long_lived, ...)"
    )

    secret_encrypted = Column(
        Text,
        nullable=False,
        comment="Encrypted access token. NEVER store plaintext."
    )

    expires_at = Column(
        UTCDateTime(),
        nullable=False,
        index=True,
        comment="Absolute expiry of the access token"
    )

    __table_args__ = (
        Index("ix_credentials_kind_expires_at", "kind", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<StoredCredential(kind={self.kind}, expires_at={self.expires_at})>"

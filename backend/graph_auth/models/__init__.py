"""
Database models for stored credentials and OAuth replay protection.
"""

from graph_auth.models.base import TimestampMixin, UTCDateTime
from graph_auth.models.credential import StoredCredential
from graph_auth.models.oauth_state import OAuthState
from graph_auth.models.authorization_code import ConsumedAuthorizationCode, hash_code

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "StoredCredential",
    "OAuthState",
    "ConsumedAuthorizationCode",
    "hash_code",
]

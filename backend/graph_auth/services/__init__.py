"""
Credential lifecycle services.
"""

from graph_auth.services.credential_store import (
    Credential,
    CredentialKind,
    CredentialNotAvailableError,
    CredentialStore,
    StoreUnavailableError,
)
from graph_auth.services.replay_guard import (
    DatabaseReplayGuard,
    InMemoryReplayGuard,
    ReplayDetectedError,
    ReplayGuard,
)
from graph_auth.services.account_resolver import (
    AccountResolver,
    NoAccountFoundError,
    ResolvedAccount,
)
from graph_auth.services.oauth_service import OAuthService, FlowStatus
from graph_auth.services.permission_diagnostics import PermissionReport, evaluate_permissions
from graph_auth.services.token_manager import TokenManager, needs_rotation
from graph_auth.services.credential_service import CredentialService, build_credential_service

__all__ = [
    "Credential",
    "CredentialKind",
    "CredentialNotAvailableError",
    "CredentialStore",
    "StoreUnavailableError",
    "DatabaseReplayGuard",
    "InMemoryReplayGuard",
    "ReplayDetectedError",
    "ReplayGuard",
    "AccountResolver",
    "NoAccountFoundError",
    "ResolvedAccount",
    "OAuthService",
    "FlowStatus",
    "PermissionReport",
    "evaluate_permissions",
    "TokenManager",
    "needs_rotation",
    "CredentialService",
    "build_credential_service",
]

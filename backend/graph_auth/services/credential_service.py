"""
Credential service facade.

The single entry point other features use:
- get_current_credential(kind): the credential to call the Graph API with
- start_auth_flow() / complete_auth_flow(...): the OAuth callback route
- get_health_report(): the operator diagnostics page
- get_token_status(kind) / list_credentials(): masked status listings
- resolve_account(): the business account behind the current credential

build_credential_service() wires the components from OAuthSettings.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from graph_auth.config.scope_policy import ScopePolicyLoader, get_scope_policy_loader
from graph_auth.config.settings import DEFAULT_CALLBACK_TIMEOUT_SECONDS, OAuthSettings
from graph_auth.integrations.graph.client import GraphAPIClient
from graph_auth.services.account_resolver import AccountResolver, ResolutionResult
from graph_auth.services.credential_store import (
    DEFAULT_CREDENTIAL_KIND,
    Credential,
    CredentialNotAvailableError,
    CredentialStore,
    KindLike,
)
from graph_auth.services.oauth_service import FlowStart, OAuthAttempt, OAuthService
from graph_auth.services.permission_diagnostics import (
    PermissionDiagnosticsService,
    PermissionReport,
)
from graph_auth.services.replay_guard import ReplayGuard, build_replay_guard
from graph_auth.services.token_manager import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class CredentialService:
    """Facade over the credential lifecycle components."""

    client: GraphAPIClient
    store: CredentialStore
    replay_guard: ReplayGuard
    oauth: OAuthService
    resolver: AccountResolver
    diagnostics: PermissionDiagnosticsService
    token_manager: TokenManager
    callback_timeout: Optional[float] = DEFAULT_CALLBACK_TIMEOUT_SECONDS
    secure_cookies: bool = False

    async def get_current_credential(self, kind: KindLike = DEFAULT_CREDENTIAL_KIND) -> Credential:
        """
        Return the valid credential of `kind`.

        A credential that is due for rotation is still returned; the
        rotation runs in the background.

        Raises:
            CredentialNotAvailableError: No unexpired credential is stored
            StoreUnavailableError: The store cannot be read
        """
        credential = await self.store.get_valid(kind)
        if credential is None:
            raise CredentialNotAvailableError(kind)
        self.token_manager.schedule_rotation(credential)
        return credential

    async def active_secret(self) -> str:
        """Token source for GraphAPIClient.call(use_active_credential=True)."""
        credential = await self.get_current_credential()
        return credential.secret

    def start_auth_flow(self) -> FlowStart:
        return self.oauth.start_flow()

    async def complete_auth_flow(
        self,
        code: Optional[str],
        state: Optional[str],
        flow_id: Optional[str],
        *,
        error: Optional[str] = None,
        error_reason: Optional[str] = None,
        error_description: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Credential:
        """Complete a flow; `timeout` defaults to OAUTH_CALLBACK_TIMEOUT_SECONDS."""
        return await self.oauth.handle_callback(
            code,
            state,
            flow_id,
            error=error,
            error_reason=error_reason,
            error_description=error_description,
            timeout=timeout if timeout is not None else self.callback_timeout,
        )

    def get_attempt(self, flow_id: str) -> Optional[OAuthAttempt]:
        return self.oauth.get_attempt(flow_id)

    async def get_health_report(self, kind: KindLike = DEFAULT_CREDENTIAL_KIND) -> PermissionReport:
        return await self.diagnostics.get_health_report(kind)

    async def get_token_status(self, kind: KindLike = DEFAULT_CREDENTIAL_KIND) -> Dict[str, Any]:
        return await self.token_manager.get_token_status(kind)

    async def list_credentials(self) -> List[Dict[str, Any]]:
        """Masked listing of every stored credential."""
        now = self.store.now()
        return [
            {
                "kind": c.kind.value,
                "preview": c.preview,
                "expires_at": c.expires_at.isoformat(),
                "updated_at": c.updated_at.isoformat(),
                "is_valid": c.is_valid(now),
                "remaining_days": c.remaining_days(now),
            }
            for c in await self.store.list_credentials()
        ]

    async def resolve_account(
        self,
        kind: KindLike = DEFAULT_CREDENTIAL_KIND,
        timeout: Optional[float] = None,
    ) -> ResolutionResult:
        credential = await self.get_current_credential(kind)
        return await self.resolver.resolve(credential, timeout=timeout)

    async def close(self) -> None:
        await self.token_manager.stop()
        await self.client.close()


def build_credential_service(
    settings: OAuthSettings,
    session_factory: sessionmaker,
    policy: Optional[ScopePolicyLoader] = None,
    client: Optional[GraphAPIClient] = None,
) -> CredentialService:
    """
    Wire the credential lifecycle components.

    Args:
        settings: Environment settings
        session_factory: SQLAlchemy session factory for the store and replay guard
        policy: Scope policy (default: the singleton loader)
        client: Graph client override (tests pass one with a mock transport)
    """
    policy = policy or get_scope_policy_loader()
    client = client or GraphAPIClient.from_settings(settings)

    store = CredentialStore(session_factory)
    replay_guard = build_replay_guard(
        settings.replay_backend,
        session_factory=session_factory,
        state_ttl=timedelta(seconds=settings.state_ttl_seconds),
        single_use_state=settings.strict_state,
        code_retention=timedelta(seconds=settings.code_retention_seconds),
    )
    resolver = AccountResolver(client)
    oauth = OAuthService(
        client=client,
        store=store,
        replay_guard=replay_guard,
        redirect_uri=settings.redirect_uri,
        scopes=policy.authorize_scopes,
        strict_state=settings.strict_state,
        default_ttl=timedelta(seconds=settings.default_long_lived_ttl_seconds),
        resolver=resolver,
    )
    token_manager = TokenManager(
        oauth,
        store,
        threshold_days=settings.rotation_threshold_days,
        interval_seconds=settings.rotation_interval_seconds,
    )
    diagnostics = PermissionDiagnosticsService(client, store, policy)

    service = CredentialService(
        client=client,
        store=store,
        replay_guard=replay_guard,
        oauth=oauth,
        resolver=resolver,
        diagnostics=diagnostics,
        token_manager=token_manager,
        callback_timeout=settings.callback_timeout_seconds,
        secure_cookies=settings.environment == "production",
    )
    client.set_token_source(service.active_secret)

    logger.info(
        "Credential service initialized",
        extra={
            "graph_api_version": settings.graph_api_version,
            "replay_backend": settings.replay_backend,
            "strict_state": settings.strict_state,
        },
    )
    return service

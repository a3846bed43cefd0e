"""
Tests for the CredentialService facade and its wiring.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from graph_auth.config.settings import OAuthSettings
from graph_auth.services.credential_store import CredentialKind, CredentialNotAvailableError
from graph_auth.services.oauth_service import FlowStatus
from graph_auth.services.replay_guard import DatabaseReplayGuard, InMemoryReplayGuard
from graph_auth.services.credential_service import build_credential_service
from graph_auth.tests.fakes import (
    APP_ID,
    APP_SECRET,
    LONG_LIVED_TOKEN,
    REDIRECT_URI,
    token_endpoint,
)

CURRENT_TOKEN = "EAAcurrentTOKENabcdefghijklmnopqrstu5555"


def make_settings(**overrides):
    values = {
        "app_id": APP_ID,
        "app_secret": APP_SECRET,
        "redirect_uri": REDIRECT_URI,
        "replay_backend": "memory",
    }
    values.update(overrides)
    return OAuthSettings(**values)


@pytest_asyncio.fixture
async def service(session_factory, graph_client):
    service = build_credential_service(make_settings(), session_factory, client=graph_client)
    yield service
    await service.token_manager.stop()


class TestWiring:
    """Tests for build_credential_service."""

    @pytest.mark.asyncio
    async def test_memory_backend(self, service):
        assert isinstance(service.replay_guard, InMemoryReplayGuard)
        assert service.oauth.redirect_uri == REDIRECT_URI
        assert service.oauth.scopes[0] == "pages_show_list"
        assert service.oauth.resolver is service.resolver

    @pytest.mark.asyncio
    async def test_database_backend(self, session_factory, graph_client):
        service = build_credential_service(
            make_settings(replay_backend="database", state_ttl_seconds=300),
            session_factory,
            client=graph_client,
        )

        assert isinstance(service.replay_guard, DatabaseReplayGuard)
        assert service.replay_guard.state_ttl == timedelta(seconds=300)

    @pytest.mark.asyncio
    async def test_callback_settings(self, session_factory, graph_client):
        service = build_credential_service(
            make_settings(
                environment="production",
                callback_timeout_seconds=15.0,
                code_retention_seconds=3600,
            ),
            session_factory,
            client=graph_client,
        )

        assert service.callback_timeout == 15.0
        assert service.secure_cookies is True
        assert service.replay_guard.code_retention == timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_configured_timeout_applied(self, service):
        seen = {}

        async def handle_callback(code, state, flow_id, **kwargs):
            seen.update(kwargs)

        service.oauth.handle_callback = handle_callback

        await service.complete_auth_flow("code-1", "state", "flow-1")
        assert seen["timeout"] == 60.0

        await service.complete_auth_flow("code-1", "state", "flow-1", timeout=5.0)
        assert seen["timeout"] == 5.0


class TestCurrentCredential:
    """Tests for get_current_credential."""

    @pytest.mark.asyncio
    async def test_missing(self, service):
        with pytest.raises(CredentialNotAvailableError) as exc_info:
            await service.get_current_credential()

        assert exc_info.value.credential_kind == CredentialKind.IG_LONG_LIVED

    @pytest.mark.asyncio
    async def test_fresh_credential_returned(self, service, fake_graph):
        await service.store.upsert(CredentialKind.IG_LONG_LIVED, CURRENT_TOKEN, timedelta(days=30))

        credential = await service.get_current_credential()

        assert credential.secret == CURRENT_TOKEN
        assert not service.token_manager._background
        assert fake_graph.requests == []

    @pytest.mark.asyncio
    async def test_due_credential_returned_and_rotated(self, service, fake_graph):
        await service.store.upsert(CredentialKind.IG_LONG_LIVED, CURRENT_TOKEN, timedelta(days=2))
        fake_graph.on("oauth/access_token", token_endpoint())

        credential = await service.get_current_credential()

        # The caller gets the current credential without waiting
        assert credential.secret == CURRENT_TOKEN
        await asyncio.gather(*list(service.token_manager._background))
        rotated = await service.get_current_credential()
        assert rotated.secret == LONG_LIVED_TOKEN

    @pytest.mark.asyncio
    async def test_active_credential_used_by_client(self, service, fake_graph):
        await service.store.upsert(CredentialKind.IG_LONG_LIVED, CURRENT_TOKEN, timedelta(days=30))
        fake_graph.on("me", (200, {"id": "1001"}))

        await service.client.call("me", use_active_credential=True)

        assert fake_graph.params(fake_graph.requests[0])["access_token"] == CURRENT_TOKEN


class TestListings:
    """Tests for masked listings."""

    @pytest.mark.asyncio
    @pytest.mark.security
    async def test_list_credentials_masked(self, service):
        await service.store.upsert(CredentialKind.IG_LONG_LIVED, LONG_LIVED_TOKEN, timedelta(days=30))

        listing = await service.list_credentials()

        assert len(listing) == 1
        entry = listing[0]
        assert entry["kind"] == "ig_long_lived"
        assert entry["preview"] == "EAAlongliv...9876"
        assert entry["is_valid"] is True
        assert entry["remaining_days"] == 30
        assert LONG_LIVED_TOKEN not in str(listing)

    @pytest.mark.asyncio
    async def test_token_status(self, service):
        status = await service.get_token_status()

        assert status["kind"] == "ig_long_lived"
        assert status["has_token"] is False


class TestAuthFlow:
    """End-to-end flow through the facade."""

    @pytest.mark.asyncio
    async def test_flow_resolves_account(self, service, fake_graph):
        fake_graph.on("oauth/access_token", token_endpoint())
        fake_graph.on("me", (200, {"id": "1001"}))
        fake_graph.on("me/accounts", (200, {"data": [{
            "id": "page-1",
            "name": "Page",
            "instagram_business_account": {"id": "17841400000000001", "username": "shop", "media_count": 1},
        }]}))
        flow = service.start_auth_flow()

        credential = await service.complete_auth_flow("code-1", flow.state, flow.flow_id)

        assert credential.secret == LONG_LIVED_TOKEN
        attempt = service.get_attempt(flow.flow_id)
        assert attempt.status == FlowStatus.COMPLETE
        assert attempt.account.username == "shop"

        result = await service.resolve_account()
        assert result.account.business_account_id == "17841400000000001"

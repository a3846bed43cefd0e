"""
Unit tests for GraphAPIClient.

Tests cover:
- Error classification by HTTP status and Graph error code
- Retry with exponential backoff for transport and rate-limit failures
- Retry-After handling
- Token endpoint exchanges, introspection and the authorize URL
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from graph_auth.integrations.graph.client import (
    GraphAPIClient,
    RetryConfig,
    classify_error,
    extract_scope,
)
from graph_auth.integrations.graph.exceptions import (
    GraphAPIError,
    GraphInsufficientScopeError,
    GraphInvalidGrantError,
    GraphRateLimitError,
    GraphTransportError,
    ProviderErrorKind,
)
from graph_auth.services.credential_store import CredentialNotAvailableError, CredentialKind
from graph_auth.tests.fakes import (
    APP_ID,
    APP_SECRET,
    LONG_LIVED_TOKEN,
    REDIRECT_URI,
    SHORT_LIVED_TOKEN,
    graph_error,
    token_endpoint,
)


def _error_body(code, subcode=None, message="error"):
    error = {"message": message, "type": "OAuthException", "code": code}
    if subcode is not None:
        error["error_subcode"] = subcode
    return {"error": error}


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_default_values(self):
        config = RetryConfig()

        assert config.max_retries == 3
        assert config.initial_delay == 1.0
        assert config.max_delay == 30.0
        assert config.backoff_multiplier == 2.0

    def test_exponential_delays_capped(self):
        config = RetryConfig(initial_delay=1.0, max_delay=5.0, backoff_multiplier=2.0)

        assert [config.delay_for(a) for a in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_retry_after_takes_precedence(self):
        config = RetryConfig(initial_delay=1.0)

        assert config.delay_for(0, retry_after=7.0) == 7.0


class TestClassifyError:
    """Tests for response classification."""

    @pytest.mark.parametrize("code", [190, 102, 463, 467])
    def test_invalid_grant_codes(self, code):
        error = classify_error(400, _error_body(code))

        assert isinstance(error, GraphInvalidGrantError)
        assert error.kind == ProviderErrorKind.INVALID_GRANT
        assert error.code == code

    @pytest.mark.parametrize("subcode", [36007, 36008, 36009])
    def test_rejected_authorization_code(self, subcode):
        error = classify_error(400, _error_body(100, subcode))

        assert error.kind == ProviderErrorKind.INVALID_GRANT
        assert error.subcode == subcode

    def test_plain_code_100_is_unknown(self):
        assert classify_error(400, _error_body(100)).kind == ProviderErrorKind.UNKNOWN

    @pytest.mark.parametrize("code", [4, 17, 32, 613, 80001, 80014])
    def test_rate_limit_codes(self, code):
        error = classify_error(400, _error_body(code))

        assert isinstance(error, GraphRateLimitError)
        assert error.retryable

    def test_http_429_with_retry_after(self):
        error = classify_error(429, {}, httpx.Headers({"Retry-After": "12"}))

        assert error.kind == ProviderErrorKind.RATE_LIMITED
        assert error.retry_after == 12.0

    @pytest.mark.parametrize("status_code", [500, 502, 503])
    def test_server_errors_are_transport(self, status_code):
        error = classify_error(status_code, {})

        assert isinstance(error, GraphTransportError)
        assert error.retryable

    @pytest.mark.parametrize("code", [10, 200, 299])
    def test_permission_codes(self, code):
        error = classify_error(
            403,
            _error_body(code, message="(#10) Requires instagram_manage_insights permission"),
        )

        assert isinstance(error, GraphInsufficientScopeError)
        assert error.scope == "instagram_manage_insights"
        assert not error.retryable

    def test_unknown(self):
        error = classify_error(400, _error_body(1))

        assert error.kind == ProviderErrorKind.UNKNOWN
        assert not error.retryable

    def test_to_dict_omits_response(self):
        error = classify_error(400, _error_body(190, message="Session has expired"))

        data = error.to_dict()

        assert data["error"] == "invalid_grant"
        assert data["detail"] == "Session has expired"
        assert data["provider_code"] == 190
        assert "response" not in data


def test_extract_scope_skips_non_scopes():
    assert extract_scope("Invalid access_token for pages_read_engagement") == "pages_read_engagement"
    assert extract_scope("Something went wrong") is None


class TestCall:
    """Tests for GraphAPIClient.call."""

    @pytest.mark.asyncio
    async def test_success_sends_access_token(self, graph_client, fake_graph):
        fake_graph.on("me", (200, {"id": "42", "name": "Tester"}))

        data = await graph_client.call("me", {"fields": "id,name"}, access_token="tok")

        assert data == {"id": "42", "name": "Tester"}
        params = fake_graph.params(fake_graph.requests[0])
        assert params["access_token"] == "tok"
        assert params["fields"] == "id,name"

    @pytest.mark.asyncio
    async def test_transport_failure_retried(self, graph_client, fake_graph, sleeps):
        fake_graph.on("me", (503, {}), (502, {}), (200, {"id": "42"}))

        data = await graph_client.call("me", access_token="tok")

        assert data["id"] == "42"
        assert len(fake_graph.requests) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, graph_client, fake_graph, sleeps):
        fake_graph.on("me", (500, {}))

        with pytest.raises(GraphTransportError):
            await graph_client.call("me", access_token="tok")

        assert len(fake_graph.requests) == 4
        assert sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self, graph_client, fake_graph, sleeps):
        fake_graph.on(
            "me",
            (429, _error_body(4), {"Retry-After": "5"}),
            (200, {"id": "42"}),
        )

        await graph_client.call("me", access_token="tok")

        assert sleeps == [5.0]

    @pytest.mark.asyncio
    async def test_retry_after_beyond_max_delay_not_retried(self, graph_client, fake_graph, sleeps):
        fake_graph.on("me", (429, _error_body(4), {"Retry-After": "3600"}))

        with pytest.raises(GraphRateLimitError) as exc_info:
            await graph_client.call("me", access_token="tok")

        assert exc_info.value.retry_after == 3600.0
        assert len(fake_graph.requests) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_invalid_grant_not_retried(self, graph_client, fake_graph, sleeps):
        fake_graph.on("me", graph_error("Session has expired", 190))

        with pytest.raises(GraphInvalidGrantError):
            await graph_client.call("me", access_token="tok")

        assert len(fake_graph.requests) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_error_in_200_body(self, graph_client, fake_graph):
        fake_graph.on("me", (200, _error_body(10, message="Requires email permission")))

        with pytest.raises(GraphInsufficientScopeError):
            await graph_client.call("me", access_token="tok")

    @pytest.mark.asyncio
    async def test_network_error_is_transport(self, graph_client, fake_graph, sleeps):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        fake_graph.on("me", refuse)

        with pytest.raises(GraphTransportError):
            await graph_client.call("me", access_token="tok")

        assert len(sleeps) == 3

    @pytest.mark.asyncio
    async def test_non_json_error_body(self, graph_client, fake_graph):
        fake_graph.on("me", lambda request: httpx.Response(400, text="<html>bad</html>"))

        with pytest.raises(GraphAPIError) as exc_info:
            await graph_client.call("me", access_token="tok")

        assert exc_info.value.kind == ProviderErrorKind.UNKNOWN
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_active_credential_token_source(self, graph_client, fake_graph):
        async def source():
            return LONG_LIVED_TOKEN

        graph_client.set_token_source(source)
        fake_graph.on("me", (200, {"id": "42"}))

        await graph_client.call("me", use_active_credential=True)

        assert fake_graph.params(fake_graph.requests[0])["access_token"] == LONG_LIVED_TOKEN

    @pytest.mark.asyncio
    async def test_active_credential_unavailable(self, graph_client, fake_graph):
        async def source():
            raise CredentialNotAvailableError(CredentialKind.IG_LONG_LIVED)

        graph_client.set_token_source(source)

        with pytest.raises(CredentialNotAvailableError):
            await graph_client.call("me", use_active_credential=True)

        assert fake_graph.requests == []


class TestOAuthEndpoints:
    """Tests for the token endpoint, introspection and authorize URL."""

    def test_authorize_url(self, graph_client):
        url = graph_client.build_authorize_url(
            redirect_uri=REDIRECT_URI,
            state="state-123",
            scopes=["instagram_basic", "pages_show_list"],
        )

        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://www.facebook.com/v19.0/dialog/oauth"
        )
        assert params == {
            "client_id": APP_ID,
            "redirect_uri": REDIRECT_URI,
            "scope": "instagram_basic pages_show_list",
            "response_type": "code",
            "state": "state-123",
        }

    @pytest.mark.asyncio
    async def test_exchange_code(self, graph_client, fake_graph):
        fake_graph.on("oauth/access_token", token_endpoint())

        token = await graph_client.exchange_code("auth-code", REDIRECT_URI)

        assert token.access_token == SHORT_LIVED_TOKEN
        params = fake_graph.params(fake_graph.requests[0])
        assert params["code"] == "auth-code"
        assert params["client_secret"] == APP_SECRET
        assert params["redirect_uri"] == REDIRECT_URI

    @pytest.mark.asyncio
    async def test_exchange_long_lived(self, graph_client, fake_graph):
        fake_graph.on("oauth/access_token", token_endpoint(expires_in=5183944))

        token = await graph_client.exchange_long_lived(SHORT_LIVED_TOKEN)

        assert token.access_token == LONG_LIVED_TOKEN
        assert token.expires_in == 5183944
        params = fake_graph.params(fake_graph.requests[0])
        assert params["grant_type"] == "fb_exchange_token"
        assert params["fb_exchange_token"] == SHORT_LIVED_TOKEN

    @pytest.mark.asyncio
    async def test_token_response_without_access_token(self, graph_client, fake_graph):
        fake_graph.on("oauth/access_token", (200, {"token_type": "bearer"}))

        with pytest.raises(GraphAPIError, match="missing access_token"):
            await graph_client.exchange_code("auth-code", REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_used_code_is_invalid_grant(self, graph_client, fake_graph):
        fake_graph.on(
            "oauth/access_token",
            graph_error("This authorization code has been used.", 100, subcode=36009),
        )

        with pytest.raises(GraphInvalidGrantError):
            await graph_client.exchange_code("auth-code", REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_debug_token_uses_app_token(self, graph_client, fake_graph):
        fake_graph.on(
            "debug_token",
            (200, {"data": {
                "is_valid": True,
                "app_id": APP_ID,
                "user_id": "17841400000000000",
                "scopes": ["email", "instagram_basic"],
                "expires_at": 1714521600,
            }}),
        )

        info = await graph_client.debug_token(LONG_LIVED_TOKEN)

        assert info.is_valid is True
        assert info.scopes == ["email", "instagram_basic"]
        assert info.expires_at is not None
        params = fake_graph.params(fake_graph.requests[0])
        assert params["input_token"] == LONG_LIVED_TOKEN
        assert params["access_token"] == f"{APP_ID}|{APP_SECRET}"

    @pytest.mark.asyncio
    async def test_debug_token_never_expires(self, graph_client, fake_graph):
        fake_graph.on("debug_token", (200, {"data": {"is_valid": True, "expires_at": 0}}))

        info = await graph_client.debug_token(LONG_LIVED_TOKEN)

        assert info.expires_at is None


class TestGraphObjects:
    """Tests for the identity and page listing helpers."""

    @pytest.mark.asyncio
    async def test_get_pages_passes_cursor(self, graph_client, fake_graph):
        fake_graph.on("me/accounts", (200, {"data": []}))

        await graph_client.get_pages("tok", "id,name", limit=25, after="cursor-1")

        params = fake_graph.params(fake_graph.requests[0])
        assert params["after"] == "cursor-1"
        assert params["limit"] == "25"
        assert params["access_token"] == "tok"

    @pytest.mark.asyncio
    async def test_get_me(self, graph_client, fake_graph):
        fake_graph.on("me", (200, {"id": "1001", "name": "Owner"}))

        assert await graph_client.get_me("tok") == {"id": "1001", "name": "Owner"}
        assert fake_graph.params(fake_graph.requests[0])["fields"] == "id,name"

    @pytest.mark.asyncio
    async def test_get_app_info_uses_app_token(self, graph_client, fake_graph):
        fake_graph.on(APP_ID, (200, {"id": APP_ID, "is_app_in_development_mode": True}))

        app = await graph_client.get_app_info()

        assert app["is_app_in_development_mode"] is True
        params = fake_graph.params(fake_graph.requests[0])
        assert params["access_token"] == f"{APP_ID}|{APP_SECRET}"
        assert "is_app_in_development_mode" in params["fields"]

    @pytest.mark.asyncio
    async def test_get_app_roles(self, graph_client, fake_graph):
        fake_graph.on(f"{APP_ID}/roles", (200, {"data": [
            {"app_id": APP_ID, "user": "1001", "role": "testers"},
            "not-a-role",
        ]}))

        roles = await graph_client.get_app_roles()

        assert roles == [{"app_id": APP_ID, "user": "1001", "role": "testers"}]
        assert fake_graph.params(fake_graph.requests[0])["access_token"] == f"{APP_ID}|{APP_SECRET}"


@pytest.mark.asyncio
async def test_client_as_context_manager(fake_graph):
    fake_graph.on("me", (200, {"id": "1"}))

    async with GraphAPIClient(APP_ID, APP_SECRET, transport=httpx.MockTransport(fake_graph)) as client:
        await client.call("me", access_token="tok")

    assert client._client.is_closed


def test_client_requires_credentials():
    with pytest.raises(ValueError):
        GraphAPIClient(APP_ID, "")

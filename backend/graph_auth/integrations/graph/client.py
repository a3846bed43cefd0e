"""
Graph API client.

This client handles:
- Authenticated Graph calls with the active credential or an explicit token
- Classification of every failure into a ProviderErrorKind
- Bounded retries with exponential backoff for transport and rate-limit failures
- The OAuth token endpoint (code exchange, long-lived exchange)
- Token introspection (debug_token)

Documentation: https://developers.facebook.com/docs/graph-api

SECURITY:
- Access tokens and the app secret are sent as query parameters and must
  never be logged; only endpoint names and classifications are logged
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlencode

import httpx

from graph_auth.config.settings import (
    DEFAULT_DIALOG_BASE_URL,
    DEFAULT_GRAPH_API_BASE_URL,
    DEFAULT_GRAPH_API_VERSION,
    OAuthSettings,
)
from graph_auth.integrations.graph.exceptions import (
    GraphAPIError,
    GraphInsufficientScopeError,
    GraphInvalidGrantError,
    GraphRateLimitError,
    GraphTransportError,
    ProviderErrorKind,
)
from graph_auth.integrations.graph.models import TokenDebugInfo, TokenResponse
from graph_auth.platform.secrets import app_access_token

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0

# Graph error codes
INVALID_GRANT_CODES = frozenset({102, 190, 463, 467})
RATE_LIMIT_CODES = frozenset({4, 17, 32, 341, 613})
BUSINESS_RATE_LIMIT_CODES = range(80001, 80015)
PERMISSION_CODES = frozenset({10})
PERMISSION_CODE_RANGE = range(200, 300)

# Code 100 subcodes for an authorization code that is malformed, expired or already used
CODE_REJECTED_SUBCODES = frozenset({36007, 36008, 36009})

_SCOPE_PATTERN = re.compile(r"\b([a-z]+(?:_[a-z]+)+)\b")
_NOT_SCOPES = frozenset({"access_token", "user_id", "app_id", "error_subcode"})

TokenSource = Callable[[], Awaitable[str]]


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry policy for transport and rate-limit failures.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        initial_delay: Delay before the first retry, in seconds
        max_delay: Cap on any single delay; a Retry-After above it is not waited out
        backoff_multiplier: Growth factor between consecutive delays
    """
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (0-indexed)."""
        delay = min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _parse_retry_after(headers: Optional[httpx.Headers]) -> Optional[float]:
    if not headers:
        return None
    raw = headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def extract_scope(message: str) -> Optional[str]:
    """Return the first permission name mentioned in a provider message."""
    for match in _SCOPE_PATTERN.finditer(message or ""):
        candidate = match.group(1)
        if candidate not in _NOT_SCOPES:
            return candidate
    return None


def classify_error(
    status_code: int,
    body: Any,
    headers: Optional[httpx.Headers] = None,
) -> GraphAPIError:
    """
    Map a failed Graph response to a typed GraphAPIError.

    Args:
        status_code: HTTP status of the response
        body: Decoded JSON body ({} when the body is not JSON)
        headers: Response headers (for Retry-After)

    Returns:
        GraphAPIError subclass matching the ProviderErrorKind
    """
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}

    message = error.get("message") or f"Graph API error: HTTP {status_code}"
    code = _as_int(error.get("code"))
    subcode = _as_int(error.get("error_subcode"))
    common = {
        "status_code": status_code,
        "code": code,
        "subcode": subcode,
        "response": body if isinstance(body, dict) else {},
    }

    if status_code == 429 or code in RATE_LIMIT_CODES or (
        code is not None and code in BUSINESS_RATE_LIMIT_CODES
    ):
        return GraphRateLimitError(
            message, retry_after=_parse_retry_after(headers), **common
        )

    if status_code >= 500:
        return GraphTransportError(message, **common)

    if (
        code in INVALID_GRANT_CODES
        or (code == 100 and subcode in CODE_REJECTED_SUBCODES)
        or status_code == 401
    ):
        return GraphInvalidGrantError(message, **common)

    if code in PERMISSION_CODES or (code is not None and code in PERMISSION_CODE_RANGE) or status_code == 403:
        return GraphInsufficientScopeError(message, scope=extract_scope(message), **common)

    return GraphAPIError(message, kind=ProviderErrorKind.UNKNOWN, **common)


class GraphAPIClient:
    """
    Async client for the Graph API.

    All failures surface as GraphAPIError with a ProviderErrorKind set at
    classification time. Transport and rate-limit failures are retried up
    to RetryConfig.max_retries times; every other kind propagates at once.

    SECURITY: Access tokens and the app secret must never be logged.
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        api_version: str = DEFAULT_GRAPH_API_VERSION,
        base_url: str = DEFAULT_GRAPH_API_BASE_URL,
        dialog_base_url: str = DEFAULT_DIALOG_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        retry_config: Optional[RetryConfig] = None,
        token_source: Optional[TokenSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize Graph API client.

        Args:
            app_id: Application id (client_id)
            app_secret: Application secret (client_secret)
            api_version: Graph API version path segment (e.g. v19.0)
            base_url: Graph API host
            dialog_base_url: Host of the authorization dialog
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
            retry_config: Retry policy (default: 3 retries, 1s doubling to 30s)
            token_source: Async callable returning the active credential secret
            transport: httpx transport override (tests use httpx.MockTransport)
            sleep: Awaitable used between retries
        """
        if not app_id or not app_secret:
            raise ValueError("Graph API client requires app_id and app_secret")

        self.app_id = app_id
        self._app_secret = app_secret
        self.api_version = api_version
        self.base_url = f"{base_url.rstrip('/')}/{api_version}"
        self.dialog_url = f"{dialog_base_url.rstrip('/')}/{api_version}/dialog/oauth"
        self.retry_config = retry_config or RetryConfig()
        self._token_source = token_source
        self._sleep = sleep

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: OAuthSettings,
        token_source: Optional[TokenSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GraphAPIClient":
        return cls(
            app_id=settings.app_id,
            app_secret=settings.app_secret,
            api_version=settings.graph_api_version,
            base_url=settings.graph_api_base_url,
            dialog_base_url=settings.dialog_base_url,
            timeout=settings.http_timeout_seconds,
            retry_config=RetryConfig(
                max_retries=settings.max_retries,
                initial_delay=settings.retry_initial_delay,
                max_delay=settings.retry_max_delay,
            ),
            token_source=token_source,
            transport=transport,
        )

    def set_token_source(self, token_source: TokenSource) -> None:
        """Attach the active-credential provider after construction."""
        self._token_source = token_source

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "GraphAPIClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Core call
    # =========================================================================

    async def call(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        method: str = "GET",
        access_token: Optional[str] = None,
        use_active_credential: bool = False,
    ) -> Dict[str, Any]:
        """
        Call a Graph endpoint and return the decoded JSON body.

        Args:
            endpoint: Path relative to the versioned base (e.g. "me/accounts")
            params: Query parameters
            method: HTTP method
            access_token: Explicit token to authenticate with
            use_active_credential: Authenticate with the token_source credential

        Returns:
            Response data as dictionary

        Raises:
            GraphAPIError: Classified failure after retries are exhausted
            CredentialNotAvailableError: use_active_credential with no valid credential
        """
        request_params = dict(params or {})
        if use_active_credential:
            if self._token_source is None:
                raise ValueError("use_active_credential requires a token_source")
            access_token = await self._token_source()
        if access_token:
            request_params["access_token"] = access_token

        attempt = 0
        while True:
            try:
                return await self._request_once(method, endpoint, request_params)
            except GraphAPIError as e:
                if not e.retryable or attempt >= self.retry_config.max_retries:
                    raise

                delay = self.retry_config.delay_for(attempt, e.retry_after)
                if delay > self.retry_config.max_delay:
                    logger.warning(
                        "Graph API Retry-After exceeds max delay, not retrying",
                        extra={"endpoint": endpoint, "retry_after": e.retry_after},
                    )
                    raise

                logger.warning(
                    "Graph API call failed, retrying",
                    extra={
                        "endpoint": endpoint,
                        "error_kind": e.kind.value,
                        "attempt": attempt + 1,
                        "delay_seconds": delay,
                    },
                )
                attempt += 1
                await self._sleep(delay)

    async def _request_once(
        self,
        method: str,
        endpoint: str,
        params: Dict[str, Any],
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        try:
            response = await self._client.request(method=method, url=url, params=params)
        except httpx.TimeoutException as e:
            logger.error(
                "Graph API timeout",
                extra={"endpoint": endpoint, "error": type(e).__name__},
            )
            raise GraphTransportError(f"Request timeout: {type(e).__name__}")
        except httpx.RequestError as e:
            logger.error(
                "Graph API connection error",
                extra={"endpoint": endpoint, "error": type(e).__name__},
            )
            raise GraphTransportError(f"Connection error: {type(e).__name__}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or (isinstance(body, dict) and "error" in body):
            error = classify_error(response.status_code, body, response.headers)
            logger.error(
                "Graph API error",
                extra={
                    "endpoint": endpoint,
                    "status_code": response.status_code,
                    "error_kind": error.kind.value,
                    "graph_code": error.code,
                    "graph_subcode": error.subcode,
                },
            )
            raise error

        if not isinstance(body, dict):
            raise GraphAPIError(
                f"Unexpected Graph response for {endpoint}",
                status_code=response.status_code,
            )

        return body

    # =========================================================================
    # OAuth
    # =========================================================================

    def build_authorize_url(
        self,
        redirect_uri: str,
        state: str,
        scopes: Iterable[str],
    ) -> str:
        """Build the authorization dialog URL for a flow."""
        params = {
            "client_id": self.app_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "response_type": "code",
            "state": state,
        }
        return f"{self.dialog_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        """
        Exchange an authorization code for a short-lived user token.

        Raises:
            GraphAPIError: On provider rejection (invalid_grant for a bad/used code)
        """
        data = await self.call(
            "oauth/access_token",
            {
                "client_id": self.app_id,
                "client_secret": self._app_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        return self._token_response(data, "code exchange")

    async def exchange_long_lived(self, token: str) -> TokenResponse:
        """
        Exchange a short-lived (or current long-lived) token for a long-lived one.

        Raises:
            GraphAPIError: On provider rejection
        """
        data = await self.call(
            "oauth/access_token",
            {
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self._app_secret,
                "fb_exchange_token": token,
            },
        )
        return self._token_response(data, "long-lived exchange")

    async def debug_token(self, token: str) -> TokenDebugInfo:
        """Introspect a token with the app access token."""
        data = await self.call(
            "debug_token",
            {"input_token": token},
            access_token=app_access_token(self.app_id, self._app_secret),
        )
        return TokenDebugInfo.from_dict(data)

    # =========================================================================
    # Graph objects
    # =========================================================================

    async def get_me(self, token: str, fields: str = "id,name") -> Dict[str, Any]:
        """Identity behind `token`."""
        return await self.call("me", {"fields": fields}, access_token=token)

    async def get_pages(
        self,
        token: str,
        fields: str,
        limit: int = 100,
        after: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        One page of the parent entities (Facebook pages) of the identity.

        Returns:
            Raw response with "data" and "paging" (pass paging.cursors.after
            back as `after` for the next page)
        """
        params: Dict[str, Any] = {"fields": fields, "limit": limit}
        if after:
            params["after"] = after
        return await self.call("me/accounts", params, access_token=token)

    async def get_app_info(self, fields: str = "name,app_type,is_app_in_development_mode") -> Dict[str, Any]:
        """This app's own object, read with the app access token."""
        return await self.call(
            self.app_id,
            {"fields": fields},
            access_token=app_access_token(self.app_id, self._app_secret),
        )

    async def get_app_roles(self, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Users holding a role (administrator, developer, tester) on this app.

        Returns:
            Role entries with "user" and "role" keys
        """
        data = await self.call(
            f"{self.app_id}/roles",
            {"limit": limit},
            access_token=app_access_token(self.app_id, self._app_secret),
        )
        return [r for r in data.get("data", []) if isinstance(r, dict)]

    @staticmethod
    def _token_response(data: Dict[str, Any], operation: str) -> TokenResponse:
        token = TokenResponse.from_dict(data)
        if not token.access_token:
            raise GraphAPIError(f"Token response for {operation} missing access_token")
        logger.info(
            "Graph token obtained",
            extra={"operation": operation, "expires_in": token.expires_in},
        )
        return token

"""
Graph API integration.

Provides authenticated Graph calls with error classification and retries,
the OAuth token endpoint and token introspection.
"""

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
from graph_auth.integrations.graph.models import TokenDebugInfo, TokenResponse

__all__ = [
    # Client
    "GraphAPIClient",
    "RetryConfig",
    "classify_error",
    "extract_scope",
    # Exceptions
    "GraphAPIError",
    "GraphInsufficientScopeError",
    "GraphInvalidGrantError",
    "GraphRateLimitError",
    "GraphTransportError",
    "ProviderErrorKind",
    # Models
    "TokenDebugInfo",
    "TokenResponse",
]

"""
Graph API exceptions.

Every failed Graph call surfaces as a GraphAPIError whose `kind` is set
once, when the response is classified. Callers branch on the kind (or the
subclass) rather than on HTTP status codes or Graph error codes.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ProviderErrorKind(str, Enum):
    """Classification of a failed provider call."""
    TRANSPORT_FAILURE = "transport_failure"  # network, timeout, 5xx - retryable
    RATE_LIMITED = "rate_limited"  # throttled - retryable after a delay
    INVALID_GRANT = "invalid_grant"  # token or code rejected - not retryable
    INSUFFICIENT_SCOPE = "insufficient_scope"  # permission missing - not retryable
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({
    ProviderErrorKind.TRANSPORT_FAILURE,
    ProviderErrorKind.RATE_LIMITED,
})


class GraphAPIError(Exception):
    """Base exception for Graph API errors."""

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        scope: Optional[str] = None,
        retry_after: Optional[float] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.code = code
        self.subcode = subcode
        self.scope = scope
        self.retry_after = retry_after
        self.response = response or {}

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for API error bodies. Never includes the response payload."""
        data: Dict[str, Any] = {
            "error": self.kind.value,
            "detail": self.message,
        }
        if self.code is not None:
            data["provider_code"] = self.code
        if self.subcode is not None:
            data["provider_subcode"] = self.subcode
        if self.scope:
            data["scope"] = self.scope
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(message={self.message!r}, kind={self.kind.value}, "
            f"status_code={self.status_code}, code={self.code})"
        )


class GraphTransportError(GraphAPIError):
    """Raised on network errors, timeouts and provider 5xx responses."""

    def __init__(
        self,
        message: str = "Transport failure - unable to reach Graph API",
        **kwargs,
    ):
        super().__init__(message, kind=ProviderErrorKind.TRANSPORT_FAILURE, **kwargs)


class GraphRateLimitError(GraphAPIError):
    """Raised when the provider throttles the caller (429 or throttling codes)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded - please retry after a delay",
        **kwargs,
    ):
        super().__init__(message, kind=ProviderErrorKind.RATE_LIMITED, **kwargs)


class GraphInvalidGrantError(GraphAPIError):
    """Raised when a token or authorization code is rejected (expired, revoked, used)."""

    def __init__(
        self,
        message: str = "Credential or authorization code rejected",
        **kwargs,
    ):
        super().__init__(message, kind=ProviderErrorKind.INVALID_GRANT, **kwargs)


class GraphInsufficientScopeError(GraphAPIError):
    """Raised when the credential lacks a permission the call needs."""

    def __init__(
        self,
        message: str = "Credential lacks a required permission",
        **kwargs,
    ):
        super().__init__(message, kind=ProviderErrorKind.INSUFFICIENT_SCOPE, **kwargs)

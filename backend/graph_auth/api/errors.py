"""
Mapping of credential lifecycle errors to HTTP responses.

Every error body has the shape {"error": <kind>, "detail": <message>, ...}
with the structured fields of the exception (offending parameter, scope,
per-strategy attempts). Provider error bodies are never echoed back.
"""

import asyncio
import logging
from typing import Any, Dict

from fastapi import status
from fastapi.responses import JSONResponse

from graph_auth.integrations.graph.exceptions import GraphAPIError, ProviderErrorKind
from graph_auth.services.account_resolver import NoAccountFoundError
from graph_auth.services.credential_store import (
    CredentialNotAvailableError,
    StoreUnavailableError,
)
from graph_auth.services.oauth_service import OAuthError
from graph_auth.services.replay_guard import ReplayDetectedError

logger = logging.getLogger(__name__)

# Errors a route converts into a structured response
HANDLED_ERRORS = (
    OAuthError,
    ReplayDetectedError,
    GraphAPIError,
    NoAccountFoundError,
    CredentialNotAvailableError,
    StoreUnavailableError,
    asyncio.TimeoutError,
)

_PROVIDER_STATUS = {
    ProviderErrorKind.INVALID_GRANT: status.HTTP_400_BAD_REQUEST,
    ProviderErrorKind.INSUFFICIENT_SCOPE: status.HTTP_403_FORBIDDEN,
    ProviderErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ProviderErrorKind.TRANSPORT_FAILURE: status.HTTP_502_BAD_GATEWAY,
    ProviderErrorKind.UNKNOWN: status.HTTP_502_BAD_GATEWAY,
}


def status_for(exc: Exception) -> int:
    """HTTP status code for a handled error."""
    if isinstance(exc, (OAuthError, ReplayDetectedError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, GraphAPIError):
        return _PROVIDER_STATUS.get(exc.kind, status.HTTP_502_BAD_GATEWAY)
    if isinstance(exc, (NoAccountFoundError, CredentialNotAvailableError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, StoreUnavailableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, asyncio.TimeoutError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, (OAuthError, GraphAPIError, NoAccountFoundError)):
        return exc.to_dict()
    if isinstance(exc, CredentialNotAvailableError):
        return {
            "error": exc.kind,
            "detail": str(exc),
            "credential_kind": exc.credential_kind.value,
        }
    if isinstance(exc, (ReplayDetectedError, StoreUnavailableError)):
        return {"error": exc.kind, "detail": str(exc)}
    if isinstance(exc, asyncio.TimeoutError):
        return {"error": "timeout", "detail": "The operation did not complete in time"}
    return {"error": "internal_error", "detail": "An unexpected error occurred"}


def error_response(exc: Exception) -> JSONResponse:
    status_code = status_for(exc)
    body = error_body(exc)

    headers = None
    if isinstance(exc, GraphAPIError) and exc.retry_after:
        headers = {"Retry-After": str(int(exc.retry_after))}

    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request failed",
        extra={"error_kind": body["error"], "status_code": status_code},
    )
    return JSONResponse(status_code=status_code, content=body, headers=headers)

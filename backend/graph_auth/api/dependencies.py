"""
FastAPI dependencies for the credential routes.
"""

from fastapi import HTTPException, Request, status

from graph_auth.services.credential_service import CredentialService


def get_credential_service(request: Request) -> CredentialService:
    """
    The CredentialService built in the application lifespan.

    Tests override this dependency with a service wired to an in-memory
    database and a mock Graph transport.
    """
    service = getattr(request.app.state, "credential_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Credential service is not configured",
        )
    return service

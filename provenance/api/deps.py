"""
Dependency injection for API routes.

The service lives on app.state (built in the application lifespan).
The caller identity arrives already authenticated from the upstream
identity layer in the X-Principal header.
"""

from fastapi import Header, HTTPException, Request, status

from ..core.service import ProvenanceService


def get_service(request: Request) -> ProvenanceService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger service not initialized",
        )
    return service


def get_caller(x_principal: str = Header(..., min_length=1)) -> str:
    """The authenticated principal making the request."""
    return x_principal

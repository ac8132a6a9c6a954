"""
FastAPI dependencies for the API.

The service graph is built once during app startup and stored on
``app.state``; routes receive it through ``Services``.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from silent_trust.services import SilentTrustServices


def get_services(request: Request) -> SilentTrustServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return services


# Type alias for dependency injection
Services = Annotated[SilentTrustServices, Depends(get_services)]

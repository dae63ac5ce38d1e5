"""
StockSentry API Dependencies

Dependency injection for the automation runtime, auth, and tenant context.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.config import get_settings
from core.container import AutomationRuntime

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

DEV_TENANT_ID = "00000000-0000-0000-0000-000000000001"


def get_runtime(request: Request) -> AutomationRuntime:
    """The runtime built in the app lifespan (overridable in tests)."""
    return request.app.state.runtime


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if get_settings().debug:
        return {
            "sub": "dev-user",
            "email": "dev@stocksentry.io",
            "tenant_id": DEV_TENANT_ID,
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


async def get_tenant_id(user: dict = Depends(get_current_user)) -> str:
    tenant_id = user.get("tenant_id")
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No tenant context",
        )
    return str(tenant_id)

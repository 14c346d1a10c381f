"""
Authentication dependencies for FastAPI.

The management API is called by the internal CRUD/UI layer with a shared
bearer token. When MANAGEMENT_API_TOKEN is unset, auth is disabled.
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings


# Security scheme
security = HTTPBearer(auto_error=False)


async def require_service_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(security)
) -> None:
    """
    Dependency that requires the management bearer token.

    Raises 401 if the token is missing or wrong.

    Usage:
        @router.get("/protected", dependencies=[Depends(require_service_token)])
    """
    expected = settings.MANAGEMENT_API_TOKEN
    if not expected:
        return

    supplied = credentials.credentials if credentials else ""
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing service token",
            headers={"WWW-Authenticate": "Bearer"},
        )

from typing import Optional
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ..core.exceptions import AuthError, ForbiddenError
from ..core.security import Principal, principal_from_token, ROLE_NGO, ROLE_HOSPITAL
from ..models.database import get_db, NGO, Hospital

logger = structlog.get_logger()

bearer_scheme = HTTPBearer(auto_error=False)

ROLE_MODELS = {
    ROLE_NGO: NGO,
    ROLE_HOSPITAL: Hospital,
}


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db)
) -> Principal:
    """Resolve the caller from a bearer token or the ``accessToken`` cookie."""
    token = credentials.credentials if credentials else request.cookies.get("accessToken")
    if not token:
        raise AuthError("Unauthorized request")

    principal = principal_from_token(token)

    model = ROLE_MODELS.get(principal.role)
    if model is not None and await db.get(model, principal.entity_id) is None:
        logger.warning("Token subject no longer exists", role=principal.role, entity_id=principal.entity_id)
        raise AuthError("Invalid access token")

    return principal


async def require_ngo(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_ngo:
        raise ForbiddenError("Access denied: NGO authorization required")
    return principal


async def require_hospital(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_hospital:
        raise ForbiddenError("Access denied: Hospital authorization required")
    return principal

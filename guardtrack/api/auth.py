from fastapi import APIRouter, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Annotated, Any

from guardtrack.core.security import decode_access_token
from guardtrack.database import SessionDep
from guardtrack.errors import AuthenticationError, UnauthorizedError
from guardtrack.models.user import User, UserRead, UserRole

router = APIRouter()
security = HTTPBearer(auto_error=False)

async def get_current_user(
    db: SessionDep,
    credentials: HTTPAuthorizationCredentials | None = Depends(security)
) -> User:
    if credentials is None:
        raise AuthenticationError("Access token required")

    payload = decode_access_token(credentials.credentials)

    user = await db.get(User, payload["sub"])
    if user is None or not user.is_active:
        raise AuthenticationError("User not found or inactive")

    return user

CurrentUser = Annotated[User, Depends(get_current_user)]

def require_roles(*roles: UserRole):
    """Dependency factory: 403 unless the caller holds one of `roles`"""
    async def checker(current_user: CurrentUser) -> User:
        if current_user.role not in roles:
            raise UnauthorizedError("Insufficient permissions")
        return current_user

    return checker

@router.get("/me")
async def read_current_user(current_user: CurrentUser) -> dict[str, Any]:
    return {
        "success": True,
        "data": UserRead.model_validate(current_user, from_attributes=True)
    }

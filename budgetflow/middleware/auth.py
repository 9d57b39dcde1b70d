import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from budgetflow.database import get_db
from budgetflow.models.user import User
from budgetflow.services.auth_service import verify_access_token

logger = structlog.get_logger()

security = HTTPBearer()


def _unauthenticated(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": {"code": code, "message": message}},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Verify the bearer JWT and return its claims.

    Approvers are resolved from these claims, so a token whose user has since
    been deactivated is refused even before it expires.
    """
    try:
        payload = verify_access_token(credentials.credentials)
        user = {
            "user_id": payload["sub"],
            "role": payload["role"],
            "email": payload["email"],
            "department_id": payload.get("department_id"),
        }
        user_uuid = uuid.UUID(str(user["user_id"]))
    except (JWTError, KeyError, ValueError) as e:
        logger.warning("auth_token_invalid", error=str(e))
        raise _unauthenticated("AUTH_TOKEN_INVALID", "Invalid or expired token")

    is_active = (
        await db.execute(
            select(User.is_active).where(User.id == user_uuid, User.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if not is_active:
        logger.warning("auth_user_inactive", user_id=user["user_id"])
        raise _unauthenticated("AUTH_USER_INACTIVE", "User account is inactive")

    structlog.contextvars.bind_contextvars(user_id=user["user_id"])
    return user

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.config import settings
from budgetflow.database import get_db
from budgetflow.middleware.auth import get_current_user
from budgetflow.models.user import User
from budgetflow.schemas.auth import LoginRequest, TokenResponse, UserResponse
from budgetflow.services.auth_service import authenticate, create_access_token

router = APIRouter()


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Authenticate user and return an access token."""
    user = await authenticate(db, body.email, body.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": {
                    "code": "AUTH_INVALID_CREDENTIALS",
                    "message": "Invalid email or password",
                }
            },
        )

    token = create_access_token(
        user_id=str(user.id),
        role=user.role,
        email=user.email,
        department_id=str(user.department_id) if user.department_id else None,
    )
    return TokenResponse(
        access_token=token,
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.get("/me", response_model=UserResponse)
async def me(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(User).where(User.id == current_user["user_id"]))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserResponse(
        id=str(user.id),
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        department_id=str(user.department_id) if user.department_id else None,
        supervisor_id=str(user.supervisor_id) if user.supervisor_id else None,
        is_active=user.is_active,
    )

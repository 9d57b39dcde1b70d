from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from budgetflow.config import settings
from budgetflow.models.user import User

logger = structlog.get_logger()

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# ---------- password helpers ----------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


# ---------- signing keys ----------

_private_key: Optional[str] = None
_public_key: Optional[str] = None


def _uses_shared_secret() -> bool:
    return settings.JWT_ALGORITHM.startswith("HS")


def _signing_key() -> str:
    global _private_key
    if _uses_shared_secret():
        if not settings.JWT_SECRET:
            raise RuntimeError("JWT_SECRET must be set for HS* algorithms")
        return settings.JWT_SECRET
    if _private_key is None:
        with open(settings.JWT_PRIVATE_KEY_PATH, "r") as f:
            _private_key = f.read()
    return _private_key


def _verification_key() -> str:
    global _public_key
    if _uses_shared_secret():
        return _signing_key()
    if _public_key is None:
        with open(settings.JWT_PUBLIC_KEY_PATH, "r") as f:
            _public_key = f.read()
    return _public_key


# ---------- tokens ----------

def create_access_token(
    user_id: str,
    role: str,
    email: str,
    department_id: Optional[str] = None,
) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "iat": now,
        "exp": now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        "type": "access",
    }
    if department_id:
        claims["department_id"] = str(department_id)
    return jwt.encode(claims, _signing_key(), algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> dict:
    """Verify an access token and return its claims. Raises JWTError."""
    payload = jwt.decode(token, _verification_key(), algorithms=[settings.JWT_ALGORITHM])
    if payload.get("type") != "access":
        raise JWTError("Not an access token")
    return payload


async def authenticate(session: AsyncSession, email: str, password: str) -> Optional[User]:
    result = await session.execute(
        select(User).where(
            User.email == email.lower(),
            User.is_active == True,  # noqa: E712
            User.deleted_at.is_(None),
        )
    )
    user = result.scalar_one_or_none()
    if not user or not user.password_hash or not verify_password(password, user.password_hash):
        logger.warning("login_failed", email=email)
        return None

    user.last_login_at = datetime.utcnow()
    logger.info("login_succeeded", user_id=str(user.id), role=user.role)
    return user

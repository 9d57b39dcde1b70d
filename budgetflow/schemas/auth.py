from typing import Optional

from pydantic import BaseModel, EmailStr, Field

VALID_ROLES = (
    "admin",
    "employee",
    "supervisor",
    "department_head",
    "finance_officer",
    "supply_chain_coordinator",
    "buyer",
    "project_coordinator",
    "head_of_business",
)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    department_id: Optional[str] = None
    supervisor_id: Optional[str] = None
    is_active: bool

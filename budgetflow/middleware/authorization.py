from fastapi import Depends, HTTPException, status

from budgetflow.middleware.auth import get_current_user

FINANCE_ROLES = ("finance_officer", "admin")
SUPPLY_CHAIN_ROLES = ("supply_chain_coordinator", "buyer", "admin")


def require_roles(*allowed_roles: str):
    """
    FastAPI dependency factory for role-based access control.

    Usage:
        @router.post("/{code_id}/deduct")
        async def deduct(
            current_user: dict = Depends(get_current_user),
            _auth: None = Depends(require_roles(*FINANCE_ROLES)),
        ):
    """
    async def check_role(current_user: dict = Depends(get_current_user)):
        if current_user["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": {
                        "code": "INSUFFICIENT_PERMISSIONS",
                        "message": (
                            f"Role '{current_user['role']}' cannot perform this action. "
                            f"Required: {allowed_roles}"
                        ),
                    }
                },
            )
        return None

    return check_role


def check_requester(current_user: dict, requester_id) -> None:
    """Only the requester may edit or submit their own draft."""
    if str(current_user["user_id"]) != str(requester_id) and current_user["role"] != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": {
                    "code": "INSUFFICIENT_PERMISSIONS",
                    "message": "Only the requester can modify this request",
                }
            },
        )

"""
Domain errors raised by the ledger, the approval chain and the workflows.

Each one is an HTTPException carrying the {"error": {"code", "message"}}
envelope, so routes let them propagate and the app's exception handler
renders them unchanged. Every raise happens before any mutation.
"""

from typing import Any

from fastapi import HTTPException, status as http_status


class DomainError(HTTPException):
    status_code: int = http_status.HTTP_400_BAD_REQUEST
    code: str = "DOMAIN_ERROR"
    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        error = {"code": self.code, "message": message, **context}
        if self.retryable:
            error["retryable"] = True
        super().__init__(status_code=self.status_code, detail={"error": error})

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# ---------- ledger ----------


class InsufficientFunds(DomainError):
    status_code = http_status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "BUDGET_INSUFFICIENT_FUNDS"


class AllocationExceeded(DomainError):
    status_code = http_status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "BUDGET_ALLOCATION_EXCEEDED"


class NoActiveAllocation(DomainError):
    status_code = http_status.HTTP_409_CONFLICT
    code = "BUDGET_NO_ACTIVE_ALLOCATION"


class AllocationConflict(DomainError):
    status_code = http_status.HTTP_409_CONFLICT
    code = "BUDGET_ALLOCATION_CONFLICT"


class DuplicateDisbursement(DomainError):
    status_code = http_status.HTTP_409_CONFLICT
    code = "BUDGET_DUPLICATE_DISBURSEMENT"


class InvalidAmount(DomainError):
    status_code = http_status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "BUDGET_INVALID_AMOUNT"


class BudgetCodeInactive(DomainError):
    status_code = http_status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "BUDGET_CODE_INACTIVE"


class RevisionPending(DomainError):
    status_code = http_status.HTTP_409_CONFLICT
    code = "BUDGET_REVISION_PENDING"


class InvalidTransfer(DomainError):
    status_code = http_status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "BUDGET_INVALID_TRANSFER"


# ---------- approval chain ----------


class Unauthorized(DomainError):
    status_code = http_status.HTTP_403_FORBIDDEN
    code = "APPROVAL_NOT_YOUR_TURN"


class AlreadyDecided(DomainError):
    status_code = http_status.HTTP_409_CONFLICT
    code = "APPROVAL_ALREADY_DECIDED"


class InvalidDecision(DomainError):
    status_code = http_status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "APPROVAL_INVALID_DECISION"


class ApproverNotFound(DomainError):
    status_code = http_status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "APPROVAL_APPROVER_NOT_FOUND"


# ---------- workflow / persistence ----------


class InvalidTransition(DomainError):
    status_code = http_status.HTTP_400_BAD_REQUEST
    code = "WORKFLOW_INVALID_TRANSITION"


class NotFound(DomainError):
    status_code = http_status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ConcurrentUpdate(DomainError):
    status_code = http_status.HTTP_409_CONFLICT
    code = "CONCURRENT_UPDATE"
    retryable = True

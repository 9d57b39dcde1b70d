"""Transient ORM objects for tests that never touch a database."""

import uuid
from datetime import datetime
from typing import Optional

from budgetflow.models.approval import ApprovalStep, STEP_PENDING
from budgetflow.models.budget_code import BudgetCode
from budgetflow.models.purchase_requisition import PurchaseRequisition


def make_code(
    total_cents: int = 1_000_000,
    used_cents: int = 0,
    code: str = "OPS-2026",
    active: bool = True,
    department_id: Optional[uuid.UUID] = None,
) -> BudgetCode:
    return BudgetCode(
        id=uuid.uuid4(),
        code=code,
        name="Operations",
        budget_type="operational",
        budget_period="yearly",
        fiscal_year=2026,
        total_cents=total_cents,
        used_cents=used_cents,
        active=active,
        department_id=department_id,
    )


def make_steps(entity_type: str, entity_id, specs, cycle: int = 1) -> list[ApprovalStep]:
    """specs: iterable of (stage, approver_email) in level order."""
    return [
        ApprovalStep(
            id=uuid.uuid4(),
            entity_type=entity_type,
            entity_id=entity_id,
            cycle=cycle,
            level=level,
            stage=stage,
            approver_name=email.split("@")[0],
            approver_email=email,
            approver_role=stage.title(),
            status=STEP_PENDING,
            created_at=datetime(2026, 1, 1),
        )
        for level, (stage, email) in enumerate(specs, start=1)
    ]


def make_requisition(
    status: str = "DRAFT",
    total_cents: int = 400_000,
    requester_id: Optional[str] = None,
    requester_email: str = "employee@example.com",
) -> PurchaseRequisition:
    return PurchaseRequisition(
        id=uuid.uuid4(),
        requisition_number="PR-000001",
        requester_id=requester_id or str(uuid.uuid4()),
        requester_email=requester_email,
        department_id=uuid.uuid4(),
        title="Laptops for field team",
        status=status,
        total_cents=total_cents,
    )

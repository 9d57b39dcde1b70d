"""Central model registry: import all models so Alembic autodiscover works."""

from budgetflow.database import Base  # noqa: F401

from budgetflow.models.user import User  # noqa: F401
from budgetflow.models.department import Department  # noqa: F401
from budgetflow.models.budget_code import (  # noqa: F401
    BudgetCode,
    BudgetAllocation,
    LedgerTransaction,
    BudgetRevision,
    BudgetHistory,
    BudgetTransfer,
)
from budgetflow.models.approval import ApprovalStep  # noqa: F401
from budgetflow.models.purchase_requisition import (  # noqa: F401
    PurchaseRequisition,
    PrLineItem,
    PrRejection,
)
from budgetflow.models.project_plan import ProjectPlan  # noqa: F401
from budgetflow.models.audit_log import AuditLog  # noqa: F401

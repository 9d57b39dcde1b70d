import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Text,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from budgetflow.database import Base

STEP_PENDING = "PENDING"
STEP_APPROVED = "APPROVED"
STEP_REJECTED = "REJECTED"

ENTITY_PURCHASE_REQUISITION = "PURCHASE_REQUISITION"
ENTITY_PROJECT_PLAN = "PROJECT_PLAN"
ENTITY_BUDGET_REVISION = "BUDGET_REVISION"
ENTITY_BUDGET_TRANSFER = "BUDGET_TRANSFER"


class ApprovalStep(Base):
    """One gate of an approval chain.

    The approver columns are a snapshot taken when the chain is built; later
    directory changes do not touch an in-flight chain.

    An entity that is resubmitted gets a fresh chain under the next `cycle`;
    the earlier cycle is kept, stamped `archived_at`, as its decision record.
    """

    __tablename__ = "approval_steps"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    approver_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    approver_name: Mapped[str] = mapped_column(String(200), nullable=False)
    approver_email: Mapped[str] = mapped_column(String(255), nullable=False)
    approver_role: Mapped[str] = mapped_column(String(100), nullable=False)
    approver_department: Mapped[Optional[str]] = mapped_column(String(200))
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    comments: Mapped[Optional[str]] = mapped_column(Text)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "entity_type", "entity_id", "cycle", "level", name="uq_approval_step_level"
        ),
        CheckConstraint("level > 0", name="chk_approval_level_positive"),
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED')",
            name="chk_approval_status",
        ),
        Index("idx_approval_steps_entity", "entity_type", "entity_id"),
        Index("idx_approval_steps_approver", "approver_email", "status"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", STEP_PENDING)
        kwargs.setdefault("cycle", 1)
        super().__init__(**kwargs)

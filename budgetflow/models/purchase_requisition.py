import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    BigInteger,
    Integer,
    DateTime,
    Text,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from budgetflow.database import Base


class PurchaseRequisition(Base):
    __tablename__ = "purchase_requisitions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    requisition_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    requester_email: Mapped[str] = mapped_column(String(255), nullable=False)
    department_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("departments.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    justification: Mapped[Optional[str]] = mapped_column(Text)
    urgency: Mapped[str] = mapped_column(String(20), default="medium")
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="XAF")

    # Finance verification
    budget_code_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("budget_codes.id")
    )
    finance_assigned_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    finance_cost_center: Mapped[Optional[str]] = mapped_column(String(100))
    finance_comments: Mapped[Optional[str]] = mapped_column(Text)
    finance_decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    finance_decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Supply chain review and buyer assignment
    sourcing_type: Mapped[Optional[str]] = mapped_column(String(50))
    purchase_type: Mapped[Optional[str]] = mapped_column(String(50))
    assigned_buyer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    buyer_assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    supply_chain_comments: Mapped[Optional[str]] = mapped_column(Text)
    supply_chain_decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    supply_chain_decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Head of business
    head_comments: Mapped[Optional[str]] = mapped_column(Text)
    head_decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    head_decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Resubmission after rejection
    resubmission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_resubmitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    line_items: Mapped[list["PrLineItem"]] = relationship(
        order_by="PrLineItem.line_number",
        cascade="all, delete-orphan",
    )
    rejections: Mapped[list["PrRejection"]] = relationship(
        order_by="PrRejection.cycle",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        CheckConstraint("total_cents >= 0", name="chk_pr_total"),
        Index("idx_pr_status", "status"),
        Index("idx_pr_requester", "requester_id"),
        Index("idx_pr_department", "department_id"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", "DRAFT")
        kwargs.setdefault("urgency", "medium")
        kwargs.setdefault("currency", "XAF")
        kwargs.setdefault("resubmission_count", 0)
        kwargs.setdefault("rejections", [])
        super().__init__(**kwargs)


class PrLineItem(Base):
    __tablename__ = "pr_line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    pr_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("purchase_requisitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    measuring_unit: Mapped[Optional[str]] = mapped_column(String(50))
    category: Mapped[Optional[str]] = mapped_column(String(50))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("pr_id", "line_number", name="uq_pr_line_item"),
        CheckConstraint("quantity > 0", name="chk_pr_line_qty"),
        CheckConstraint(
            "unit_price_cents > 0", name="chk_pr_line_price"
        ),
        Index("idx_pr_items_pr", "pr_id"),
    )


class PrRejection(Base):
    """Why a chain cycle ended in rejection, kept when the requester resubmits."""

    __tablename__ = "pr_rejections"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    pr_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("purchase_requisitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    cycle: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_status: Mapped[str] = mapped_column(String(50), nullable=False)
    level: Mapped[Optional[int]] = mapped_column(Integer)
    stage: Mapped[Optional[str]] = mapped_column(String(50))
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    rejector_name: Mapped[Optional[str]] = mapped_column(String(200))
    rejector_role: Mapped[Optional[str]] = mapped_column(String(100))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resubmitted_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    resubmitted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resubmission_notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("pr_id", "cycle", name="uq_pr_rejection_cycle"),
    )

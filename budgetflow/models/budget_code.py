import uuid
from datetime import datetime, date
from typing import Optional

from sqlalchemy import (
    String,
    BigInteger,
    Boolean,
    Integer,
    Date,
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

ALLOCATION_ALLOCATED = "ALLOCATED"
ALLOCATION_SPENT = "SPENT"
ALLOCATION_RELEASED = "RELEASED"
ACTIVE_ALLOCATION_STATUSES = (ALLOCATION_ALLOCATED, ALLOCATION_SPENT)

TXN_RESERVATION = "RESERVATION"
TXN_DEDUCTION = "DEDUCTION"
TXN_RETURN = "RETURN"
TXN_RELEASE = "RELEASE"

REVISION_PENDING = "PENDING"
REVISION_APPROVED = "APPROVED"
REVISION_REJECTED = "REJECTED"

TRANSFER_PENDING = "PENDING"
TRANSFER_APPROVED = "APPROVED"
TRANSFER_REJECTED = "REJECTED"
TRANSFER_CANCELLED = "CANCELLED"

BUDGET_TYPES = ("departmental", "project", "capital", "operational", "emergency", "maintenance")
BUDGET_PERIODS = ("monthly", "quarterly", "yearly", "project")


class BudgetCode(Base):
    """A named pool of money. Allocations, transactions, revisions and history
    are only ever mutated through this aggregate (see services/ledger.py)."""

    __tablename__ = "budget_codes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("departments.id")
    )
    budget_type: Mapped[str] = mapped_column(String(20), nullable=False)
    budget_period: Mapped[str] = mapped_column(String(20), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_owner: Mapped[Optional[str]] = mapped_column(String(200))
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    used_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    allocations: Mapped[list["BudgetAllocation"]] = relationship(
        back_populates="budget_code",
        order_by="BudgetAllocation.allocated_at",
        cascade="all, delete-orphan",
    )
    transactions: Mapped[list["LedgerTransaction"]] = relationship(
        back_populates="budget_code",
        order_by="LedgerTransaction.created_at",
        cascade="all, delete-orphan",
    )
    revisions: Mapped[list["BudgetRevision"]] = relationship(
        back_populates="budget_code",
        order_by="BudgetRevision.created_at",
        cascade="all, delete-orphan",
    )
    history: Mapped[list["BudgetHistory"]] = relationship(
        back_populates="budget_code",
        order_by="BudgetHistory.changed_at",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        UniqueConstraint("code", name="uq_budget_code"),
        CheckConstraint("total_cents >= 0", name="chk_budget_code_total"),
        CheckConstraint("used_cents >= 0", name="chk_budget_code_used_nonneg"),
        CheckConstraint("used_cents <= total_cents", name="chk_budget_code_used"),
        CheckConstraint(
            "budget_period IN ('monthly', 'quarterly', 'yearly', 'project')",
            name="chk_budget_code_period",
        ),
        Index("idx_budget_codes_department", "department_id", "active"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("used_cents", 0)
        kwargs.setdefault("active", True)
        super().__init__(**kwargs)

    @property
    def committed_cents(self) -> int:
        """Reserved but not yet disbursed (nor returned) across active allocations."""
        return sum(a.outstanding_cents for a in self.allocations if a.is_active)

    @property
    def remaining_cents(self) -> int:
        return self.total_cents - self.used_cents - self.committed_cents

    @property
    def unspent_cents(self) -> int:
        return self.total_cents - self.used_cents

    @property
    def utilization_percentage(self) -> float:
        if not self.total_cents:
            return 0.0
        return round(self.used_cents / self.total_cents * 100, 2)

    def allocation_for(self, request_id) -> Optional["BudgetAllocation"]:
        """Most recent allocation held by a requesting workflow instance."""
        request_id = str(request_id)
        matches = [a for a in self.allocations if str(a.request_id) == request_id]
        return matches[-1] if matches else None

    def pending_revision(self) -> Optional["BudgetRevision"]:
        for revision in self.revisions:
            if revision.status == REVISION_PENDING:
                return revision
        return None


class BudgetAllocation(Base):
    __tablename__ = "budget_allocations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    budget_code_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("budget_codes.id"), nullable=False
    )
    request_type: Mapped[str] = mapped_column(String(50), nullable=False)
    request_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    actual_spent_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    disbursement_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_returned_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    allocated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    first_spent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_disbursement_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    release_reason: Mapped[Optional[str]] = mapped_column(Text)
    allocated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    budget_code: Mapped["BudgetCode"] = relationship(back_populates="allocations")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="chk_allocation_amount_positive"),
        CheckConstraint(
            "actual_spent_cents <= amount_cents", name="chk_allocation_spent"
        ),
        CheckConstraint(
            "status IN ('ALLOCATED', 'SPENT', 'RELEASED')",
            name="chk_allocation_status",
        ),
        Index("idx_allocations_budget", "budget_code_id", "status"),
        Index("idx_allocations_request", "request_id"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", ALLOCATION_ALLOCATED)
        kwargs.setdefault("actual_spent_cents", 0)
        kwargs.setdefault("disbursement_count", 0)
        kwargs.setdefault("balance_returned_cents", 0)
        super().__init__(**kwargs)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ALLOCATION_STATUSES

    @property
    def disbursable_cents(self) -> int:
        """Ceiling for cumulative disbursement: the reservation minus what was handed back."""
        return self.amount_cents - self.balance_returned_cents

    @property
    def outstanding_cents(self) -> int:
        return max(self.disbursable_cents - self.actual_spent_cents, 0)


class LedgerTransaction(Base):
    """Append-only audit entry. Never updated or deleted."""

    __tablename__ = "budget_ledger_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    budget_code_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("budget_codes.id"), nullable=False
    )
    allocation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("budget_allocations.id")
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    request_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    used_after_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    disbursement_ref: Mapped[Optional[str]] = mapped_column(String(100))
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    budget_code: Mapped["BudgetCode"] = relationship(back_populates="transactions")
    allocation: Mapped[Optional["BudgetAllocation"]] = relationship()

    __table_args__ = (
        UniqueConstraint(
            "budget_code_id", "disbursement_ref", name="uq_ledger_disbursement_ref"
        ),
        CheckConstraint(
            "type IN ('RESERVATION', 'DEDUCTION', 'RETURN', 'RELEASE')",
            name="chk_ledger_txn_type",
        ),
        CheckConstraint("amount_cents > 0", name="chk_ledger_txn_amount"),
        Index("idx_ledger_txn_budget", "budget_code_id", "created_at"),
        Index("idx_ledger_txn_request", "request_id"),
    )


class BudgetRevision(Base):
    __tablename__ = "budget_revisions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    budget_code_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("budget_codes.id"), nullable=False
    )
    previous_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    requested_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    change_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    requested_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    budget_code: Mapped["BudgetCode"] = relationship(back_populates="revisions")

    __table_args__ = (
        CheckConstraint("requested_cents > 0", name="chk_revision_requested"),
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED')",
            name="chk_revision_status",
        ),
        Index("idx_revisions_budget", "budget_code_id", "status"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", REVISION_PENDING)
        super().__init__(**kwargs)


class BudgetHistory(Base):
    __tablename__ = "budget_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    budget_code_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("budget_codes.id"), nullable=False
    )
    revision_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("budget_revisions.id")
    )
    transfer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("budget_transfers.id")
    )
    previous_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    new_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    changed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    budget_code: Mapped["BudgetCode"] = relationship(back_populates="history")


class BudgetTransfer(Base):
    """Funds moved from one code's total to another's once its chain approves.

    A pending transfer holds nothing on the source code; availability is
    checked on request and again at the final approval.
    """

    __tablename__ = "budget_transfers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    from_budget_code_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("budget_codes.id"), nullable=False
    )
    to_budget_code_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("budget_codes.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    requested_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="chk_transfer_amount_positive"),
        CheckConstraint(
            "from_budget_code_id <> to_budget_code_id", name="chk_transfer_distinct_codes"
        ),
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'CANCELLED')",
            name="chk_transfer_status",
        ),
        Index("idx_transfers_from", "from_budget_code_id", "status"),
        Index("idx_transfers_to", "to_budget_code_id", "status"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", TRANSFER_PENDING)
        super().__init__(**kwargs)

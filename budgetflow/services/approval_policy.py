"""
Chain policy table and directory snapshot.

The policy maps a request type (optionally overridden per department code) to
the ordered roles whose sign-off is needed. The directory snapshot resolves
those roles to people once, at chain build time.

Purchase requisition:
  L1 supervisor (falls back to department head)   → SUPERVISOR
  L2 finance officer                               → FINANCE
  L3 supply chain coordinator                      → SUPPLY_CHAIN
  L4 supply chain coordinator (buyer assignment)   → BUYER_ASSIGNMENT
  L5 head of business                              → HEAD
"""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from budgetflow.models.approval import (
    ENTITY_BUDGET_REVISION,
    ENTITY_BUDGET_TRANSFER,
    ENTITY_PROJECT_PLAN,
    ENTITY_PURCHASE_REQUISITION,
)
from budgetflow.models.department import Department
from budgetflow.models.user import User

logger = structlog.get_logger()

# Stages
STAGE_SUPERVISOR = "SUPERVISOR"
STAGE_FINANCE = "FINANCE"
STAGE_SUPPLY_CHAIN = "SUPPLY_CHAIN"
STAGE_BUYER_ASSIGNMENT = "BUYER_ASSIGNMENT"
STAGE_HEAD = "HEAD"
STAGE_PROJECT_COORDINATOR = "PROJECT_COORDINATOR"
STAGE_DEPARTMENT_HEAD = "DEPARTMENT_HEAD"

# Directory roles
ROLE_SUPERVISOR = "supervisor"
ROLE_DEPARTMENT_HEAD = "department_head"
ROLE_FINANCE_OFFICER = "finance_officer"
ROLE_SUPPLY_CHAIN_COORDINATOR = "supply_chain_coordinator"
ROLE_HEAD_OF_BUSINESS = "head_of_business"
ROLE_PROJECT_COORDINATOR = "project_coordinator"
ROLE_BUYER = "buyer"
ROLE_EMPLOYEE = "employee"
ROLE_ADMIN = "admin"

# Roles resolved from the requester's position, not by a global role lookup.
RELATIONAL_ROLES = (ROLE_SUPERVISOR, ROLE_DEPARTMENT_HEAD)


@dataclass(frozen=True)
class ApproverIdentity:
    name: str
    email: str
    role: str
    department: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class Requester:
    email: str
    user_id: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class PolicyEntry:
    role: str
    stage: str
    required: bool = True
    skip_if_requester: bool = False
    title: Optional[str] = None


@dataclass(frozen=True)
class ChainPolicy:
    request_type: str
    entries: tuple[PolicyEntry, ...]


@dataclass
class DirectorySnapshot:
    """Role → approver identities, taken once per chain build.

    Each role may list several candidates; the first is used. The supervisor
    role falls back to the department head when the requester has none.
    """

    approvers: dict[str, list[ApproverIdentity]] = field(default_factory=dict)

    def add(self, role: str, identity: ApproverIdentity) -> None:
        self.approvers.setdefault(role, []).append(identity)

    def lookup(self, role: str) -> Optional[ApproverIdentity]:
        candidates = self.approvers.get(role) or []
        if candidates:
            return candidates[0]
        if role == ROLE_SUPERVISOR:
            return self.lookup(ROLE_DEPARTMENT_HEAD)
        return None


DEFAULT_POLICIES: dict[str, ChainPolicy] = {
    ENTITY_PURCHASE_REQUISITION: ChainPolicy(
        request_type=ENTITY_PURCHASE_REQUISITION,
        entries=(
            PolicyEntry(ROLE_SUPERVISOR, STAGE_SUPERVISOR, skip_if_requester=True, title="Supervisor"),
            PolicyEntry(ROLE_FINANCE_OFFICER, STAGE_FINANCE, title="Finance Officer"),
            PolicyEntry(ROLE_SUPPLY_CHAIN_COORDINATOR, STAGE_SUPPLY_CHAIN, title="Supply Chain Coordinator"),
            PolicyEntry(ROLE_SUPPLY_CHAIN_COORDINATOR, STAGE_BUYER_ASSIGNMENT, title="Buyer Assignment"),
            PolicyEntry(ROLE_HEAD_OF_BUSINESS, STAGE_HEAD, title="Head of Business"),
        ),
    ),
    ENTITY_PROJECT_PLAN: ChainPolicy(
        request_type=ENTITY_PROJECT_PLAN,
        entries=(
            PolicyEntry(ROLE_PROJECT_COORDINATOR, STAGE_PROJECT_COORDINATOR, title="Project Coordinator"),
            PolicyEntry(ROLE_SUPPLY_CHAIN_COORDINATOR, STAGE_SUPPLY_CHAIN, title="Supply Chain Coordinator"),
            PolicyEntry(ROLE_HEAD_OF_BUSINESS, STAGE_HEAD, title="Head of Business"),
        ),
    ),
    ENTITY_BUDGET_REVISION: ChainPolicy(
        request_type=ENTITY_BUDGET_REVISION,
        entries=(
            PolicyEntry(ROLE_DEPARTMENT_HEAD, STAGE_DEPARTMENT_HEAD, title="Department Head"),
            PolicyEntry(ROLE_HEAD_OF_BUSINESS, STAGE_HEAD, title="Head of Business"),
            PolicyEntry(ROLE_FINANCE_OFFICER, STAGE_FINANCE, title="Finance Officer"),
        ),
    ),
    ENTITY_BUDGET_TRANSFER: ChainPolicy(
        request_type=ENTITY_BUDGET_TRANSFER,
        entries=(
            PolicyEntry(ROLE_DEPARTMENT_HEAD, STAGE_DEPARTMENT_HEAD, title="Department Head"),
            PolicyEntry(ROLE_FINANCE_OFFICER, STAGE_FINANCE, title="Finance Officer"),
            PolicyEntry(ROLE_HEAD_OF_BUSINESS, STAGE_HEAD, title="Head of Business"),
        ),
    ),
}


class PolicyTable:
    """Injected `(request_type, department_code) -> ChainPolicy` lookup."""

    def __init__(
        self,
        policies: Optional[dict[str, ChainPolicy]] = None,
        overrides: Optional[dict[tuple[str, str], ChainPolicy]] = None,
    ):
        self.policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self.overrides = dict(overrides or {})

    def resolve(self, request_type: str, department_code: Optional[str] = None) -> ChainPolicy:
        if department_code:
            override = self.overrides.get((request_type, department_code.upper()))
            if override:
                return override
        try:
            return self.policies[request_type]
        except KeyError:
            raise KeyError(f"No approval policy configured for '{request_type}'") from None

    def roles_for(self, request_type: str, department_code: Optional[str] = None) -> set[str]:
        return {e.role for e in self.resolve(request_type, department_code).entries}


_policy_table = PolicyTable()


def get_policy_table() -> PolicyTable:
    return _policy_table


# ---------- directory ----------


def identity_for(user: User, department_name: Optional[str] = None) -> ApproverIdentity:
    return ApproverIdentity(
        name=user.full_name,
        email=user.email,
        role=user.role,
        department=department_name,
        user_id=str(user.id),
    )


async def _active_user(session: AsyncSession, user_id) -> Optional[User]:
    if not user_id:
        return None
    result = await session.execute(
        select(User).where(User.id == user_id, User.is_active == True)  # noqa: E712
    )
    return result.scalar_one_or_none()


async def _first_with_role(session: AsyncSession, role: str) -> Optional[User]:
    result = await session.execute(
        select(User)
        .where(
            User.role == role,
            User.is_active == True,  # noqa: E712
            User.deleted_at.is_(None),
        )
        .order_by(User.created_at)
    )
    return result.scalars().first()


async def load_directory(
    session: AsyncSession,
    requester: User,
    department: Optional[Department],
    roles: set[str],
) -> DirectorySnapshot:
    """Resolve only the roles the policy needs.

    supervisor      → requester.supervisor_id
    department_head → department.manager_id
    anything else   → first active user holding that role
    """
    snapshot = DirectorySnapshot()
    dept_name = department.name if department else None

    if ROLE_SUPERVISOR in roles:
        supervisor = await _active_user(session, requester.supervisor_id)
        if supervisor:
            snapshot.add(ROLE_SUPERVISOR, identity_for(supervisor, dept_name))

    if ROLE_SUPERVISOR in roles or ROLE_DEPARTMENT_HEAD in roles:
        head = await _active_user(session, department.manager_id if department else None)
        if head:
            snapshot.add(ROLE_DEPARTMENT_HEAD, identity_for(head, dept_name))

    for role in sorted(roles):
        if role in RELATIONAL_ROLES:
            continue
        user = await _first_with_role(session, role)
        if user:
            snapshot.add(role, identity_for(user))

    logger.debug(
        "directory_snapshot_loaded",
        requester=requester.email,
        roles=sorted(snapshot.approvers),
    )
    return snapshot

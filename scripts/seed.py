"""
Seed script: one organisation with a user for every approval role, two
departments and a budget code per department.
Run from the project root: python -m scripts.seed
"""
import asyncio
import sys
import os
import uuid
from datetime import date

# Ensure the project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from budgetflow.database import session_scope
from budgetflow.models.user import User
from budgetflow.models.department import Department
from budgetflow.models.budget_code import BudgetCode
from budgetflow.services.auth_service import hash_password
from budgetflow.services.budget_service import default_end_date

# ---------- Fixed UUIDs ----------

DEPT_OPERATIONS_ID = uuid.UUID("d0000000-0000-0000-0000-000000000001")
DEPT_FINANCE_ID = uuid.UUID("d0000000-0000-0000-0000-000000000002")

USER_ADMIN_ID = uuid.UUID("a0000000-0000-0000-0000-000000000101")
USER_EMPLOYEE_ID = uuid.UUID("a0000000-0000-0000-0000-000000000102")
USER_SUPERVISOR_ID = uuid.UUID("a0000000-0000-0000-0000-000000000103")
USER_DEPT_HEAD_ID = uuid.UUID("a0000000-0000-0000-0000-000000000104")
USER_FINANCE_ID = uuid.UUID("a0000000-0000-0000-0000-000000000105")
USER_SUPPLY_CHAIN_ID = uuid.UUID("a0000000-0000-0000-0000-000000000106")
USER_BUYER_ID = uuid.UUID("a0000000-0000-0000-0000-000000000107")
USER_HEAD_ID = uuid.UUID("a0000000-0000-0000-0000-000000000108")
USER_PROJECT_COORD_ID = uuid.UUID("a0000000-0000-0000-0000-000000000109")

BUDGET_OPS_ID = uuid.UUID("b0000000-0000-0000-0000-000000000101")
BUDGET_FIN_ID = uuid.UUID("b0000000-0000-0000-0000-000000000102")

DEFAULT_PASSWORD = "BudgetFlow123!"


async def seed():
    async with session_scope() as db:
        result = await db.execute(select(Department).where(Department.id == DEPT_OPERATIONS_ID))
        if result.scalar_one_or_none():
            print("Seed data already exists. Skipping.")
            return

        hashed_pw = hash_password(DEFAULT_PASSWORD)

        # --- Departments (manager_id set once users exist) ---
        departments = [
            Department(id=DEPT_OPERATIONS_ID, name="Operations", code="OPS"),
            Department(id=DEPT_FINANCE_ID, name="Finance", code="FIN"),
        ]
        db.add_all(departments)
        await db.flush()

        def user(uid, email, first, last, role, dept=DEPT_OPERATIONS_ID, supervisor=None):
            return User(
                id=uid, email=email, password_hash=hashed_pw, first_name=first,
                last_name=last, role=role, department_id=dept, supervisor_id=supervisor,
                is_active=True,
            )

        users = [
            user(USER_ADMIN_ID, "admin@budgetflow.example.com", "System", "Admin", "admin", dept=None),
            user(USER_DEPT_HEAD_ID, "ops.head@budgetflow.example.com", "Amina", "Ngono", "department_head"),
            user(USER_SUPERVISOR_ID, "supervisor@budgetflow.example.com", "Paul", "Essomba", "supervisor",
                 supervisor=USER_DEPT_HEAD_ID),
            user(USER_EMPLOYEE_ID, "employee@budgetflow.example.com", "Claire", "Mbarga", "employee",
                 supervisor=USER_SUPERVISOR_ID),
            user(USER_FINANCE_ID, "finance@budgetflow.example.com", "Joseph", "Fouda", "finance_officer",
                 dept=DEPT_FINANCE_ID),
            user(USER_SUPPLY_CHAIN_ID, "supply.chain@budgetflow.example.com", "Brigitte", "Atangana",
                 "supply_chain_coordinator"),
            user(USER_BUYER_ID, "buyer@budgetflow.example.com", "Eric", "Tchoupo", "buyer"),
            user(USER_HEAD_ID, "head@budgetflow.example.com", "Martin", "Owona", "head_of_business", dept=None),
            user(USER_PROJECT_COORD_ID, "projects@budgetflow.example.com", "Nadia", "Biya",
                 "project_coordinator"),
        ]
        # Insert heads first so supervisor_id targets exist
        for u in users:
            db.add(u)
            await db.flush()

        departments[0].manager_id = USER_DEPT_HEAD_ID
        departments[1].manager_id = USER_FINANCE_ID

        # --- Budget codes ---
        start = date(date.today().year, 1, 1)
        budgets = [
            BudgetCode(id=BUDGET_OPS_ID, code=f"OPS-{start.year}", name="Operations running costs",
                       department_id=DEPT_OPERATIONS_ID, budget_type="operational",
                       budget_period="yearly", fiscal_year=start.year, total_cents=50_000_000_00,
                       start_date=start, end_date=default_end_date("yearly", start),
                       created_by=USER_FINANCE_ID),
            BudgetCode(id=BUDGET_FIN_ID, code=f"FIN-{start.year}", name="Finance departmental",
                       department_id=DEPT_FINANCE_ID, budget_type="departmental",
                       budget_period="quarterly", fiscal_year=start.year, total_cents=10_000_000_00,
                       start_date=start, end_date=default_end_date("quarterly", start),
                       created_by=USER_FINANCE_ID),
        ]
        db.add_all(budgets)

        print("Seed data inserted successfully!")
        print("  Departments: 2")
        print(f"  Users: {len(users)} (password: {DEFAULT_PASSWORD})")
        print("  Budget codes: 2")


if __name__ == "__main__":
    asyncio.run(seed())

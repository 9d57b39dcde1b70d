"""
Scheduled jobs triggered by an external scheduler hitting internal endpoints.

Jobs:
  - release-stale-reservations: Daily at 02:00 UTC
  - budget-alerts: Weekly Monday 8:00 UTC
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from budgetflow.config import settings
from budgetflow.database import get_db
from budgetflow.models.department import Department
from budgetflow.models.user import User
from budgetflow.services.approval_policy import ROLE_FINANCE_OFFICER
from budgetflow.services.budget_service import list_alerting_codes, release_stale_reservations
from budgetflow.services.notification_service import send_notification

logger = structlog.get_logger()
router = APIRouter()


async def _require_internal_auth(request: Request):
    """Validates the X-Internal-Secret header against INTERNAL_JOB_SECRET."""
    secret = settings.INTERNAL_JOB_SECRET
    if not secret:
        # In development (DEBUG=True), allow unauthenticated internal calls
        if settings.DEBUG:
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_JOB_SECRET is not configured",
        )
    provided = request.headers.get("X-Internal-Secret")
    if not provided or provided != secret:
        logger.warning("internal_auth_failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


@router.post("/release-stale-reservations")
async def release_stale(
    age_days: int = Query(None, ge=0),
    db: AsyncSession = Depends(get_db),
    _auth: None = Depends(_require_internal_auth),
):
    """Daily: release reservations that were never disbursed."""
    released = await release_stale_reservations(db, age_days=age_days)
    return {
        "released": len(released),
        "request_ids": [str(a.request_id) for a in released],
    }


@router.post("/budget-alerts")
async def budget_alerts(
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    _auth: None = Depends(_require_internal_auth),
):
    """Weekly: warn finance and department heads about codes at or above 75% utilization."""
    alerts = await list_alerting_codes(db)
    if not alerts:
        logger.info("budget_alerts_complete", alerted=0)
        return {"alerted": 0}

    result = await db.execute(
        select(User.email).where(
            User.role == ROLE_FINANCE_OFFICER,
            User.is_active == True,  # noqa: E712
            User.deleted_at.is_(None),
        )
    )
    finance_emails = list(result.scalars().all())

    dept_ids = {c.department_id for c, _ in alerts if c.department_id}
    head_emails: dict = {}
    if dept_ids:
        result = await db.execute(
            select(Department.id, User.email)
            .join(User, Department.manager_id == User.id)
            .where(Department.id.in_(dept_ids))
        )
        head_emails = {dept_id: email for dept_id, email in result.all()}

    for code, level in alerts:
        recipients = list(finance_emails)
        head = head_emails.get(code.department_id)
        if head and head not in recipients:
            recipients.append(head)
        logger.info(
            "budget_alert",
            budget_code=code.code,
            level=level,
            utilization=code.utilization_percentage,
        )
        background_tasks.add_task(
            send_notification,
            "budget_alert",
            recipients,
            {
                "code": code.code,
                "name": code.name,
                "utilization": code.utilization_percentage,
                "level": level,
                "remaining_cents": code.unspent_cents,
            },
        )

    logger.info("budget_alerts_complete", alerted=len(alerts))
    return {"alerted": len(alerts)}

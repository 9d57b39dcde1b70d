from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.database import get_db
from budgetflow.middleware.auth import get_current_user
from budgetflow.middleware.authorization import require_roles
from budgetflow.models.audit_log import AuditLog
from budgetflow.schemas.audit_log import AuditLogResponse
from budgetflow.schemas.common import PaginatedResponse, build_pagination, iso

router = APIRouter()


@router.get("", response_model=PaginatedResponse[AuditLogResponse])
async def list_audit_logs(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("admin", "finance_officer", "head_of_business")),
    db: AsyncSession = Depends(get_db),
):
    filters = []
    if entity_type:
        filters.append(AuditLog.entity_type == entity_type.upper())
    if entity_id:
        filters.append(AuditLog.entity_id == entity_id)
    if actor_id:
        filters.append(AuditLog.actor_id == actor_id)
    if from_date:
        filters.append(AuditLog.created_at >= datetime.combine(from_date, datetime.min.time()))
    if to_date:
        filters.append(AuditLog.created_at <= datetime.combine(to_date, datetime.max.time()))

    total = (await db.execute(select(func.count(AuditLog.id)).where(*filters))).scalar() or 0
    result = await db.execute(
        select(AuditLog)
        .where(*filters)
        .order_by(AuditLog.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    items = [
        AuditLogResponse(
            id=str(log.id),
            actor_id=str(log.actor_id) if log.actor_id else None,
            actor_email=log.actor_email,
            entity_type=log.entity_type,
            entity_id=str(log.entity_id),
            from_status=log.from_status,
            to_status=log.to_status,
            request_id=log.request_id,
            details=log.details or {},
            created_at=iso(log.created_at) or "",
        )
        for log in result.scalars().all()
    ]
    return PaginatedResponse(data=items, pagination=build_pagination(page, limit, total))

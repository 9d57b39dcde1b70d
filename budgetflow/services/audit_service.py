"""Audit trail: one row per workflow transition, in the caller's transaction."""

from typing import Optional
from datetime import datetime
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from budgetflow.models.audit_log import AuditLog

logger = structlog.get_logger()


def _to_uuid(value, field_name: str, required: bool = False) -> Optional[uuid.UUID]:
    if value is None:
        if required:
            raise ValueError(f"{field_name} is required")
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        if required:
            raise ValueError(f"{field_name} must be a valid UUID")
        logger.warning("audit_invalid_uuid", field=field_name, value=str(value))
        return None


def _json_safe(value):
    if isinstance(value, (uuid.UUID, datetime)):
        return str(value)
    return value


async def record_transition(
    session: AsyncSession,
    actor: Optional[dict],
    entity_type: str,
    entity_id,
    from_status: Optional[str],
    to_status: str,
    **details,
) -> AuditLog:
    """Stage an audit row; `actor` is the claims dict, or None for jobs.

    None-valued details are dropped.
    """
    actor = actor or {}
    audit = AuditLog(
        actor_id=_to_uuid(actor.get("user_id"), "actor_id"),
        actor_email=actor.get("email"),
        entity_type=entity_type,
        entity_id=_to_uuid(entity_id, "entity_id", required=True),
        from_status=from_status,
        to_status=to_status,
        request_id=structlog.contextvars.get_contextvars().get("request_id"),
        details={k: _json_safe(v) for k, v in details.items() if v is not None},
        created_at=datetime.utcnow(),
    )
    session.add(audit)
    await session.flush()

    logger.info(
        "audit_log_created",
        entity_type=entity_type,
        entity_id=str(entity_id),
        from_status=from_status,
        to_status=to_status,
        actor_id=actor.get("user_id"),
    )
    return audit

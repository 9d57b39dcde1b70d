from typing import Optional
from pydantic import BaseModel


class AuditLogResponse(BaseModel):
    id: str
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    entity_type: str
    entity_id: str
    from_status: Optional[str] = None
    to_status: str
    request_id: Optional[str] = None
    details: dict = {}
    created_at: str

from pydantic import BaseModel
from typing import Any, Dict, Optional
from uuid import UUID
from datetime import datetime


class AuditLogOut(BaseModel):
    id: UUID
    event_type: str
    entity: str
    entity_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Dict[str, Any]
    actor: str
    timestamp: datetime

    model_config = {"from_attributes": True}

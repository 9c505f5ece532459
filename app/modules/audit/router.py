from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from app.core.config import settings
from app.dependencies.dbDependecies import db_dependency
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.audit.schemas import AuditLogOut
from app.modules.audit.service import AuditLogService


audit_router = APIRouter(prefix="/audit-logs", tags=["Audit"])


@audit_router.get("", response_model=List[AuditLogOut])
async def list_audit_logs(
    db: db_dependency,
    entity: Optional[str] = Query(None, description="Entidad (CashSession, SettlementBatch, ...)"),
    entity_id: Optional[str] = Query(None, description="ID de la entidad"),
    event_type: Optional[str] = Query(None, description="Tipo de evento"),
    limit: int = Query(settings.MAX_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin", "accountant"])),
):
    """Eventos de auditoría en orden cronológico."""
    service = AuditLogService(db)
    return service.list_logs(entity=entity, entity_id=entity_id, event_type=event_type,
                             limit=limit, offset=offset)

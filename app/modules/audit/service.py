"""
Sink de auditoría

record() es fire-and-forget: un fallo al escribir el evento se registra como
WARNING y nunca hace fallar la operación de negocio, que ya fue confirmada.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.common.mixins import utcnow
from app.modules.audit.models import AuditLog

logger = logging.getLogger(__name__)


class AuditEventType:
    CASH_SESSION_OPENED = "CASH_SESSION_OPENED"
    CASH_MOVEMENT_RECORDED = "CASH_MOVEMENT_RECORDED"
    CASH_SESSION_CLOSED = "CASH_SESSION_CLOSED"
    SETTLEMENT_BATCH_IMPORTED = "SETTLEMENT_BATCH_IMPORTED"
    SETTLEMENT_BATCH_MATCHED = "SETTLEMENT_BATCH_MATCHED"
    SETTLEMENT_RECORD_RESOLVED = "SETTLEMENT_RECORD_RESOLVED"


@dataclass
class AuditEvent:
    type: str
    entity: str
    entity_id: Optional[str]
    after_state: Dict[str, Any]
    actor: str
    before_state: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None:
        ...


class DatabaseAuditSink:
    """Persiste eventos en audit_logs dentro de un SAVEPOINT de la sesión actual"""

    def __init__(self, db: Session):
        self.db = db

    def record(self, event: AuditEvent) -> None:
        try:
            with self.db.begin_nested():
                self.db.add(AuditLog(
                    event_type=event.type,
                    entity=event.entity,
                    entity_id=event.entity_id,
                    before_state=event.before_state,
                    after_state=event.after_state,
                    actor=event.actor,
                    timestamp=event.timestamp,
                ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"No se pudo registrar evento de auditoría {event.type} ({event.entity_id}): {e}")


class LoggingAuditSink:
    """Sink alternativo: sólo deja el evento en el log"""

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

    def record(self, event: AuditEvent) -> None:
        self.logger.info(
            f"{event.type} {event.entity}={event.entity_id} actor={event.actor} "
            f"before={event.before_state} after={event.after_state}"
        )


def safe_record(sink: AuditSink, event: AuditEvent) -> None:
    """Entregar el evento a cualquier sink sin propagar su fallo"""
    try:
        sink.record(event)
    except Exception as e:
        logger.warning(f"Audit sink {type(sink).__name__} falló para {event.type} ({event.entity_id}): {e}")


class AuditLogService:
    """Consultas sobre el registro de auditoría"""

    def __init__(self, db: Session):
        self.db = db

    def list_logs(self, entity: Optional[str] = None, entity_id: Optional[str] = None,
                  event_type: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[AuditLog]:
        query = self.db.query(AuditLog)
        if entity:
            query = query.filter(AuditLog.entity == entity)
        if entity_id:
            query = query.filter(AuditLog.entity_id == entity_id)
        if event_type:
            query = query.filter(AuditLog.event_type == event_type)
        return query.order_by(AuditLog.timestamp, AuditLog.id).offset(offset).limit(limit).all()

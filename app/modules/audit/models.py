"""
Modelo de auditoría

Cada transición de estado de caja o conciliación deja una fila con el estado
anterior y posterior. Las filas nunca se modifican.
"""
from app.database.database import Base
from sqlalchemy import Column, String, DateTime, JSON, Uuid
from uuid import uuid4
from app.common.mixins import utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_type = Column(String(60), nullable=False, index=True)
    entity = Column(String(60), nullable=False, index=True)
    entity_id = Column(String(64), nullable=True, index=True)
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=False)
    actor = Column(String(100), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

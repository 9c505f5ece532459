"""
Common mixins for models
"""
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, Integer


def utcnow() -> datetime:
    """UTC naive, igual que las columnas DateTime de los modelos"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CreatedAtMixin:
    """Mixin for append-only rows: only creation time is tracked"""

    created_at = Column(DateTime, default=utcnow, nullable=False)


class TimestampMixin(CreatedAtMixin):
    """Mixin for models that need timestamp tracking"""

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SequenceMixin:
    """
    Mixin that adds a monotonically increasing insertion sequence.

    Los listados "en orden de inserción" ordenan por esta columna, no por
    timestamps (dos filas pueden compartir el mismo instante).
    """

    seq = Column(Integer, nullable=False, index=True)

"""
Modelos SQLAlchemy para el módulo de Caja

Este módulo maneja el ciclo de vida del cajón de efectivo:
- CashRegister: Caja física (identidad estable, sin ciclo de vida propio)
- CashSession: Una apertura→cierre de la caja, con arqueo
- CashMovement: Movimientos de efectivo de la sesión (append-only)

Reglas:
- Como máximo una sesión OPEN por caja (índice único parcial)
- Los movimientos nunca se modifican ni se borran; las correcciones se
  registran como movimientos compensatorios
- Importes en unidades menores (BigInteger) + moneda, ver app.common.money
"""

from app.database.database import Base
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, BigInteger, Enum, Text, JSON,
    UniqueConstraint, Index, event, text
)
from sqlalchemy.orm import relationship
from sqlalchemy import Uuid
from uuid import uuid4
from app.common.mixins import TimestampMixin, CreatedAtMixin, SequenceMixin, utcnow
from app.common.money import Currency, Money
from app.common.exceptions import ImmutableRecordError
import enum


# ===== ENUMS =====

class CashSessionStatus(enum.Enum):
    """Estados de sesión de caja"""
    OPEN = "OPEN"       # Caja abierta
    CLOSED = "CLOSED"   # Caja cerrada (terminal)


class MovementType(enum.Enum):
    """Tipos de movimiento de caja"""
    SALE = "SALE"               # Venta en efectivo (ingreso)
    REFUND = "REFUND"           # Devolución (egreso)
    MANUAL_IN = "MANUAL_IN"     # Ingreso manual del operador
    MANUAL_OUT = "MANUAL_OUT"   # Retiro manual del operador


INFLOW_TYPES = (MovementType.SALE, MovementType.MANUAL_IN)
OUTFLOW_TYPES = (MovementType.REFUND, MovementType.MANUAL_OUT)


# ===== MODELOS =====

class CashRegister(Base, TimestampMixin):
    """Caja física del punto de venta"""
    __tablename__ = "cash_registers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(100), nullable=False, unique=True, index=True)
    currency = Column(Enum(Currency), nullable=False)

    sessions = relationship("CashSession", back_populates="register", order_by="CashSession.opened_at")


class CashSession(Base, TimestampMixin):
    """
    Sesión de caja: una apertura y su cierre con arqueo.

    expected/counted/difference sólo se completan al cerrar. La diferencia se
    informa, nunca se corrige con un movimiento automático.
    """
    __tablename__ = "cash_sessions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    register_id = Column(Uuid, ForeignKey("cash_registers.id"), nullable=False, index=True)
    status = Column(Enum(CashSessionStatus), nullable=False, default=CashSessionStatus.OPEN, index=True)
    currency = Column(Enum(Currency), nullable=False)

    # Balances (unidades menores)
    opening_amount_minor = Column(BigInteger, nullable=False)
    expected_closing_amount_minor = Column(BigInteger, nullable=True)
    counted_closing_amount_minor = Column(BigInteger, nullable=True)
    difference_minor = Column(BigInteger, nullable=True)
    counted_breakdown = Column(JSON, nullable=True)  # [{"denomination_minor": .., "quantity": ..}]

    # Control de apertura/cierre
    opened_by = Column(String(100), nullable=False)
    closed_by = Column(String(100), nullable=True)
    opened_at = Column(DateTime, nullable=False, default=utcnow)
    closed_at = Column(DateTime, nullable=True)

    opening_notes = Column(Text, nullable=True)
    closing_notes = Column(Text, nullable=True)

    register = relationship("CashRegister", back_populates="sessions")

    __table_args__ = (
        Index(
            "uq_cash_sessions_one_open_per_register",
            "register_id",
            unique=True,
            postgresql_where=text("status = 'OPEN'"),
            sqlite_where=text("status = 'OPEN'"),
        ),
    )

    @property
    def opening_amount(self) -> Money:
        return Money(self.opening_amount_minor, self.currency)

    @property
    def expected_closing_amount(self):
        if self.expected_closing_amount_minor is None:
            return None
        return Money(self.expected_closing_amount_minor, self.currency)

    @property
    def counted_closing_amount(self):
        if self.counted_closing_amount_minor is None:
            return None
        return Money(self.counted_closing_amount_minor, self.currency)

    @property
    def difference(self):
        """counted − expected; positivo = sobrante, negativo = faltante"""
        if self.difference_minor is None:
            return None
        return Money(self.difference_minor, self.currency)

    def snapshot(self) -> dict:
        """Estado serializable para el registro de auditoría"""
        return {
            "id": str(self.id),
            "register_id": str(self.register_id),
            "status": self.status.value,
            "currency": self.currency.value,
            "opening_amount_minor": self.opening_amount_minor,
            "expected_closing_amount_minor": self.expected_closing_amount_minor,
            "counted_closing_amount_minor": self.counted_closing_amount_minor,
            "difference_minor": self.difference_minor,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


class CashMovement(Base, CreatedAtMixin, SequenceMixin):
    """
    Movimiento de efectivo de una sesión.

    amount_minor es siempre positivo; el sentido lo da el tipo.
    """
    __tablename__ = "cash_movements"

    id = Column(Uuid, primary_key=True, default=uuid4)
    session_id = Column(Uuid, ForeignKey("cash_sessions.id"), nullable=False, index=True)
    type = Column(Enum(MovementType), nullable=False, index=True)
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(Enum(Currency), nullable=False)
    occurred_at = Column(DateTime, nullable=False, default=utcnow)
    note = Column(Text, nullable=True)
    reference = Column(String(100), nullable=True)
    created_by = Column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_cash_movement_session_seq"),
    )

    @property
    def amount(self) -> Money:
        return Money(self.amount_minor, self.currency)

    def snapshot(self) -> dict:
        return {
            "id": str(self.id),
            "session_id": str(self.session_id),
            "seq": self.seq,
            "type": self.type.value,
            "amount_minor": self.amount_minor,
            "currency": self.currency.value,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "note": self.note,
        }


@event.listens_for(CashMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise ImmutableRecordError(
        "Los movimientos de caja no se modifican; registre un movimiento compensatorio",
        entity="CashMovement",
        entity_id=target.id,
    )


@event.listens_for(CashMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise ImmutableRecordError(
        "Los movimientos de caja no se eliminan",
        entity="CashMovement",
        entity_id=target.id,
    )

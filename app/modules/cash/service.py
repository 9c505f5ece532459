"""
Servicios de negocio para el módulo de Caja

CashSessionService es dueño del ciclo de vida de la sesión:

    OPEN --close--> CLOSED (terminal)

- Una sola sesión OPEN por caja: lock por caja en proceso, row lock sobre la
  caja y un índice único parcial en la base
- Movimientos serializados por sesión, independientes entre sesiones
- Al cerrar se calcula el saldo esperado desde el libro de movimientos y se
  informa la diferencia contra lo contado, sin corregirla
- Cada transición queda en el sink de auditoría con estado anterior/posterior
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID
import logging

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.common.exceptions import (
    ConflictError, CurrencyMismatchError, DependencyTimeoutError,
    InvalidStateError, NotFoundError
)
from app.common.locks import LockRegistry, aggregate_locks
from app.common.mixins import utcnow
from app.common.money import Currency, Money
from app.core.config import settings
from app.database.database import is_timeout_error
from app.modules.audit.service import (
    AuditEvent, AuditEventType, AuditSink, DatabaseAuditSink, safe_record
)
from app.modules.cash.ledger import CashMovementLedger
from app.modules.cash.models import (
    CashMovement, CashRegister, CashSession, CashSessionStatus,
    MovementType, INFLOW_TYPES, OUTFLOW_TYPES
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CloseSummary:
    """Arqueo calculado de una sesión (lectura X o cierre Z)"""
    session_id: UUID
    status: CashSessionStatus
    opening_amount: Money
    totals_by_type: Dict[MovementType, Money]
    expected_closing_amount: Money
    counted_closing_amount: Optional[Money]
    difference: Optional[Money]
    movement_count: int


def sum_breakdown(breakdown: List[dict], currency: Currency) -> Money:
    """Sumar un conteo por denominación [{denomination_minor, quantity}]"""
    total = Money.zero(currency)
    for item in breakdown:
        denomination = int(item["denomination_minor"])
        quantity = int(item["quantity"])
        if denomination <= 0 or quantity < 0:
            raise ValueError(f"Conteo inválido: {item}")
        total = total + Money(denomination * quantity, currency)
    return total


class CashSessionService:
    """Servicio para apertura, movimientos y cierre de sesiones de caja"""

    def __init__(self, db: Session, audit_sink: Optional[AuditSink] = None,
                 locks: Optional[LockRegistry] = None):
        self.db = db
        self.audit = audit_sink or DatabaseAuditSink(db)
        self.locks = locks or aggregate_locks
        self.ledger = CashMovementLedger(db)

    # ----- cajas -----

    def create_register(self, name: str, currency: Optional[Currency] = None) -> CashRegister:
        currency = Currency(currency) if currency else Currency(settings.DEFAULT_CURRENCY)
        register = CashRegister(name=name.strip(), currency=currency)
        self.db.add(register)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Ya existe una caja con nombre '{name}'", entity="CashRegister")
        self.db.refresh(register)
        logger.info(f"Cash register created: {register.id} ({register.name})")
        return register

    def list_registers(self) -> List[CashRegister]:
        return self.db.query(CashRegister).order_by(CashRegister.name).all()

    def _get_register(self, register_id: UUID, for_update: bool = False) -> CashRegister:
        query = self.db.query(CashRegister).filter(CashRegister.id == register_id)
        if for_update:
            query = query.with_for_update()
        register = query.first()
        if not register:
            raise NotFoundError("Caja registradora no encontrada", entity="CashRegister", entity_id=register_id)
        return register

    # ----- sesiones -----

    def _get_session(self, session_id: UUID, for_update: bool = False) -> CashSession:
        query = self.db.query(CashSession).filter(CashSession.id == session_id)
        if for_update:
            query = query.with_for_update()
        session = query.first()
        if not session:
            raise NotFoundError("Sesión de caja no encontrada", entity="CashSession", entity_id=session_id)
        return session

    def get_session(self, session_id: UUID) -> CashSession:
        return self._get_session(session_id)

    def get_current_session(self, register_id: UUID) -> Optional[CashSession]:
        """Sesión abierta actual de la caja, o None"""
        self._get_register(register_id)
        return self.db.query(CashSession).filter(
            CashSession.register_id == register_id,
            CashSession.status == CashSessionStatus.OPEN
        ).first()

    def list_sessions(self, register_id: Optional[UUID] = None, status: Optional[CashSessionStatus] = None,
                      opened_from: Optional[datetime] = None, opened_to: Optional[datetime] = None,
                      limit: int = 20, offset: int = 0):
        query = self.db.query(CashSession)
        if register_id:
            query = query.filter(CashSession.register_id == register_id)
        if status:
            query = query.filter(CashSession.status == status)
        if opened_from:
            query = query.filter(CashSession.opened_at >= opened_from)
        if opened_to:
            query = query.filter(CashSession.opened_at <= opened_to)
        total = query.count()
        sessions = query.order_by(CashSession.opened_at.desc()).offset(offset).limit(limit).all()
        return sessions, total

    def open_session(self, register_id: UUID, opening_amount: Money, actor: str,
                     notes: Optional[str] = None) -> CashSession:
        """Abrir sesión; ConflictError si la caja ya tiene una sesión OPEN"""
        with self.locks.hold("register", register_id):
            register = self._get_register(register_id, for_update=True)
            if opening_amount.currency != register.currency:
                raise CurrencyMismatchError(
                    f"La caja opera en {register.currency.value}, se recibió {opening_amount.currency.value}",
                    entity="CashRegister",
                    entity_id=register_id,
                )
            if opening_amount.amount_minor_units < 0:
                raise ValueError("El saldo inicial no puede ser negativo")

            existing = self.db.query(CashSession).filter(
                CashSession.register_id == register_id,
                CashSession.status == CashSessionStatus.OPEN
            ).first()
            if existing:
                raise ConflictError(
                    f"Ya existe una sesión abierta en la caja '{register.name}'",
                    entity="CashRegister",
                    entity_id=register_id,
                )

            session = CashSession(
                register_id=register_id,
                status=CashSessionStatus.OPEN,
                currency=register.currency,
                opening_amount_minor=opening_amount.amount_minor_units,
                opened_by=actor,
                opened_at=utcnow(),
                opening_notes=notes,
            )
            self.db.add(session)
            self._commit("CashRegister", register_id, conflict_detail="Ya existe una sesión abierta en la caja")
            self.db.refresh(session)

        logger.info(f"Cash session {session.id} opened on register {register_id} with {opening_amount}")
        safe_record(self.audit, AuditEvent(
            type=AuditEventType.CASH_SESSION_OPENED,
            entity="CashSession",
            entity_id=str(session.id),
            before_state=None,
            after_state=session.snapshot(),
            actor=actor,
        ))
        return session

    def record_movement(self, session_id: UUID, movement_type: MovementType, amount: Money, actor: str,
                        note: Optional[str] = None, reference: Optional[str] = None,
                        occurred_at: Optional[datetime] = None) -> CashMovement:
        """Agregar un movimiento a una sesión abierta"""
        movement_type = MovementType(movement_type)
        if amount.amount_minor_units <= 0:
            raise ValueError("El monto debe ser mayor a cero")

        with self.locks.hold("session", session_id):
            session = self._get_session(session_id, for_update=True)
            if session.status != CashSessionStatus.OPEN:
                raise InvalidStateError(
                    "La sesión está cerrada; no admite movimientos",
                    entity="CashSession",
                    entity_id=session_id,
                )
            if amount.currency != session.currency:
                raise CurrencyMismatchError(
                    f"La sesión opera en {session.currency.value}, se recibió {amount.currency.value}",
                    entity="CashSession",
                    entity_id=session_id,
                )

            movement = CashMovement(
                session_id=session_id,
                type=movement_type,
                amount_minor=amount.amount_minor_units,
                currency=amount.currency,
                occurred_at=occurred_at or utcnow(),
                note=note,
                reference=reference,
                created_by=actor,
            )
            self.ledger.append(movement)
            self._commit("CashSession", session_id, conflict_detail="Movimiento concurrente en la sesión")
            self.db.refresh(movement)

        logger.info(f"Cash movement {movement.type.value} {amount} recorded on session {session_id}")
        safe_record(self.audit, AuditEvent(
            type=AuditEventType.CASH_MOVEMENT_RECORDED,
            entity="CashMovement",
            entity_id=str(movement.id),
            before_state=None,
            after_state=movement.snapshot(),
            actor=actor,
        ))
        return movement

    def list_movements(self, session_id: UUID) -> List[CashMovement]:
        self._get_session(session_id)
        return self.ledger.list_by_session(session_id)

    def _compute_summary(self, session: CashSession, counted: Optional[Money]) -> CloseSummary:
        totals = self.ledger.totals_by_type(session.id, session.currency)
        inflows = Money.zero(session.currency)
        for movement_type in INFLOW_TYPES:
            inflows = inflows + totals[movement_type]
        outflows = Money.zero(session.currency)
        for movement_type in OUTFLOW_TYPES:
            outflows = outflows + totals[movement_type]
        expected = session.opening_amount + inflows - outflows
        difference = counted - expected if counted is not None else None
        movement_count = len(self.ledger.list_by_session(session.id))
        return CloseSummary(
            session_id=session.id,
            status=session.status,
            opening_amount=session.opening_amount,
            totals_by_type=totals,
            expected_closing_amount=expected,
            counted_closing_amount=counted,
            difference=difference,
            movement_count=movement_count,
        )

    def preview_close(self, session_id: UUID, counted: Optional[Money] = None) -> CloseSummary:
        """Lectura X: arqueo sin cerrar ni modificar la sesión"""
        session = self._get_session(session_id)
        return self._compute_summary(session, counted)

    def close_session(self, session_id: UUID, counted_closing_amount: Optional[Money], actor: str,
                      counted_breakdown: Optional[List[dict]] = None,
                      notes: Optional[str] = None) -> CashSession:
        """
        Cerrar sesión con arqueo.

        expected = apertura + Σ(SALE, MANUAL_IN) − Σ(REFUND, MANUAL_OUT).
        Si se informa el conteo por denominación, el total contado es su suma.
        """
        register_id = self._get_session(session_id).register_id

        with self.locks.hold("register", register_id), self.locks.hold("session", session_id):
            session = self._get_session(session_id, for_update=True)
            if session.status == CashSessionStatus.CLOSED:
                raise InvalidStateError(
                    "La sesión ya está cerrada",
                    entity="CashSession",
                    entity_id=session_id,
                )

            if counted_breakdown:
                counted = sum_breakdown(counted_breakdown, session.currency)
            elif counted_closing_amount is not None:
                counted = counted_closing_amount
            else:
                raise ValueError("Se requiere el saldo contado o el conteo por denominación")
            if counted.currency != session.currency:
                raise CurrencyMismatchError(
                    f"La sesión opera en {session.currency.value}, se contó en {counted.currency.value}",
                    entity="CashSession",
                    entity_id=session_id,
                )

            before = session.snapshot()
            summary = self._compute_summary(session, counted)

            session.status = CashSessionStatus.CLOSED
            session.expected_closing_amount_minor = summary.expected_closing_amount.amount_minor_units
            session.counted_closing_amount_minor = counted.amount_minor_units
            session.difference_minor = summary.difference.amount_minor_units
            session.counted_breakdown = list(counted_breakdown) if counted_breakdown else None
            session.closed_by = actor
            session.closed_at = utcnow()
            session.closing_notes = notes
            self._commit("CashSession", session_id)
            self.db.refresh(session)

        if not summary.difference.is_zero:
            logger.warning(
                f"Cash session {session_id} closed with difference {summary.difference} "
                f"(expected {summary.expected_closing_amount}, counted {counted})"
            )
        else:
            logger.info(f"Cash session {session_id} closed balanced at {counted}")
        safe_record(self.audit, AuditEvent(
            type=AuditEventType.CASH_SESSION_CLOSED,
            entity="CashSession",
            entity_id=str(session.id),
            before_state=before,
            after_state=session.snapshot(),
            actor=actor,
        ))
        return session

    def _commit(self, entity: str, entity_id, conflict_detail: str = "Conflicto de integridad"):
        """Confirmar la escritura; nunca se reintenta"""
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(conflict_detail, entity=entity, entity_id=entity_id)
        except OperationalError as e:
            self.db.rollback()
            if is_timeout_error(e):
                raise DependencyTimeoutError(
                    "La base de datos excedió el plazo durante la escritura",
                    entity=entity,
                    entity_id=entity_id,
                )
            raise

"""
Libro de movimientos de caja

Almacén append-only por sesión. append() es el único mutador; las consultas
alimentan el cálculo de saldo esperado de CashSessionService.
"""
from typing import Iterable, List
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.common.exceptions import CurrencyMismatchError
from app.common.money import Currency, Money
from app.modules.cash.models import CashMovement, MovementType


class CashMovementLedger:

    def __init__(self, db: Session):
        self.db = db

    def append(self, movement: CashMovement) -> CashMovement:
        """
        Agregar un movimiento al final de la sesión.

        El llamador debe tener serializadas las altas de la sesión (lock de
        sesión); la restricción única (session_id, seq) detecta cualquier carrera.
        """
        last_seq = self.db.query(func.max(CashMovement.seq)).filter(
            CashMovement.session_id == movement.session_id
        ).scalar()
        movement.seq = (last_seq or 0) + 1
        self.db.add(movement)
        self.db.flush()
        return movement

    def list_by_session(self, session_id: UUID) -> List[CashMovement]:
        return self.db.query(CashMovement).filter(
            CashMovement.session_id == session_id
        ).order_by(CashMovement.seq).all()

    def sum_by_types(self, session_id: UUID, types: Iterable[MovementType], currency: Currency) -> Money:
        types = list(types)
        rows = self.db.query(
            CashMovement.currency,
            func.coalesce(func.sum(CashMovement.amount_minor), 0)
        ).filter(
            CashMovement.session_id == session_id,
            CashMovement.type.in_(types)
        ).group_by(CashMovement.currency).all()

        total = Money.zero(currency)
        for row_currency, amount_minor in rows:
            if row_currency != currency:
                raise CurrencyMismatchError(
                    f"La sesión tiene movimientos en {row_currency.value}, se esperaba {currency.value}",
                    entity="CashSession",
                    entity_id=session_id,
                )
            total = total + Money(int(amount_minor), currency)
        return total

    def totals_by_type(self, session_id: UUID, currency: Currency) -> dict:
        """Totales por tipo de movimiento (lectura X)"""
        return {
            movement_type: self.sum_by_types(session_id, [movement_type], currency)
            for movement_type in MovementType
        }

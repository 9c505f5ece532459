"""
Store de pagos internos (colaborador de la conciliación)

find_candidate_payments() es de sólo lectura: el llamador puede reintentarla
ante DependencyTimeoutError. El "consumo" de un pago durante una corrida de
conciliación vive en la corrida (ver SettlementMatcher), no aquí.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Protocol
from uuid import UUID
import logging
import time

from sqlalchemy import exists, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.common.exceptions import DependencyTimeoutError
from app.common.money import Currency, Money
from app.database.database import is_postgres, is_timeout_error
from app.modules.payments.models import Payment, PaymentStatus
from app.modules.settlements.models import SettlementRecord, MatchStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidatePayment:
    payment_id: UUID
    amount: Money
    occurred_at: datetime


class PaymentStore(Protocol):
    def find_candidate_payments(self, currency: Currency, amount: Money,
                                window_start: datetime, window_end: datetime,
                                exclude_ids: Iterable[UUID] = ()) -> List[CandidatePayment]:
        ...

    def get_payment(self, payment_id: UUID) -> Optional[Payment]:
        ...


class SqlPaymentStore:
    """
    Búsqueda de candidatos sobre la tabla payments.

    Sólo pagos APPROVED, misma moneda, importe dentro de la tolerancia y
    occurred_at dentro de la ventana. Excluye los pagos ya conciliados por
    cualquier SettlementRecord MATCHED.
    """

    def __init__(self, db: Session, timeout_seconds: float, amount_tolerance_minor: int = 0):
        self.db = db
        self.timeout_seconds = timeout_seconds
        self.amount_tolerance_minor = amount_tolerance_minor

    def find_candidate_payments(self, currency: Currency, amount: Money,
                                window_start: datetime, window_end: datetime,
                                exclude_ids: Iterable[UUID] = ()) -> List[CandidatePayment]:
        if amount.currency != currency:
            return []
        started = time.monotonic()
        try:
            if is_postgres(self.db):
                self.db.execute(text(f"SET LOCAL statement_timeout = {int(self.timeout_seconds * 1000)}"))

            already_matched = exists().where(
                SettlementRecord.matched_payment_id == Payment.id,
                SettlementRecord.match_status == MatchStatus.MATCHED
            )
            query = self.db.query(Payment).filter(
                Payment.status == PaymentStatus.APPROVED,
                Payment.currency == currency,
                Payment.amount_minor >= amount.amount_minor_units - self.amount_tolerance_minor,
                Payment.amount_minor <= amount.amount_minor_units + self.amount_tolerance_minor,
                Payment.occurred_at >= window_start,
                Payment.occurred_at <= window_end,
                ~already_matched
            )
            exclude_ids = list(exclude_ids)
            if exclude_ids:
                query = query.filter(Payment.id.notin_(exclude_ids))
            payments = query.order_by(Payment.occurred_at, Payment.id).all()
        except OperationalError as e:
            self.db.rollback()
            if is_timeout_error(e):
                raise DependencyTimeoutError(
                    "La búsqueda de pagos candidatos excedió el plazo",
                    entity="Payment",
                )
            raise

        elapsed = time.monotonic() - started
        if elapsed > self.timeout_seconds:
            raise DependencyTimeoutError(
                f"La búsqueda de pagos candidatos tardó {elapsed:.2f}s (límite {self.timeout_seconds}s)",
                entity="Payment",
            )

        return [
            CandidatePayment(payment_id=p.id, amount=p.amount, occurred_at=p.occurred_at)
            for p in payments
        ]

    def get_payment(self, payment_id: UUID) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.id == payment_id).first()

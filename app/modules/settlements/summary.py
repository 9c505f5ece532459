"""
Resumen de conciliación por lote y por período

net_discrepancy considera sólo registros MATCHED (diferencia "confirmada");
los importes UNMATCHED y DISPUTED se informan aparte como volumen pendiente
de investigación.

El resumen por período suma los lotes cuyo período cae dentro del rango,
opcionalmente de una sola pasarela. No convierte monedas: resume una por vez.
Las devoluciones se informan aparte y no se descuentan del neto.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from app.common.exceptions import NotFoundError
from app.common.money import Currency, Money
from app.core.config import settings
from app.modules.payments.models import Payment
from app.modules.settlements.models import (
    MatchStatus, SettlementBatch, SettlementBatchStatus, SettlementGateway, SettlementRecord
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationSummary:
    batch_id: UUID
    status: SettlementBatchStatus
    currency: Currency
    total_records: int
    matched_count: int
    unmatched_count: int
    disputed_count: int
    total_settled_amount: Money
    total_fees: Money
    total_net_amount: Money
    total_refunds: Money
    chargeback_count: int
    total_matched_internal_amount: Money
    net_discrepancy: Money
    unmatched_amount: Money
    disputed_amount: Money
    fee_pct: Decimal
    import_errors: int
    missing_payments: int


@dataclass(frozen=True)
class PeriodSummary:
    period_from: datetime
    period_to: datetime
    gateway: Optional[SettlementGateway]
    currency: Currency
    batch_count: int
    record_count: int
    total_settled_amount: Money
    total_fees: Money
    total_refunds: Money
    chargeback_count: int
    total_net_amount: Money
    fee_pct: Decimal


def fee_percentage(fees: Money, settled: Money) -> Decimal:
    """Comisión sobre bruto con 4 decimales; 0 si no hubo importe liquidado"""
    if not settled.amount_minor_units:
        return Decimal("0")
    return (Decimal(fees.amount_minor_units) / Decimal(settled.amount_minor_units)).quantize(Decimal("0.0001"))


class ReconciliationSummaryBuilder:

    def __init__(self, db: Session):
        self.db = db

    def _get_batch(self, batch_id: UUID) -> SettlementBatch:
        batch = self.db.query(SettlementBatch).filter(SettlementBatch.id == batch_id).first()
        if not batch:
            raise NotFoundError("Lote de liquidación no encontrado", entity="SettlementBatch", entity_id=batch_id)
        return batch

    def summarize(self, batch_id: UUID) -> ReconciliationSummary:
        batch = self._get_batch(batch_id)
        currency = batch.currency
        records = self.db.query(SettlementRecord).filter(SettlementRecord.batch_id == batch_id).all()

        zero = Money.zero(currency)
        settled = fees = net = refunds = zero
        chargebacks = 0
        matched_settled = matched_fees = zero
        unmatched_amount = disputed_amount = zero
        counts = {status: 0 for status in MatchStatus}
        matched_payment_ids = []

        for record in records:
            counts[record.match_status] += 1
            settled = settled + record.amount
            fees = fees + record.fee_amount
            net = net + record.net_amount
            refunds = refunds + record.refund_amount
            if record.chargeback:
                chargebacks += 1
            if record.match_status == MatchStatus.MATCHED:
                matched_settled = matched_settled + record.amount
                matched_fees = matched_fees + record.fee_amount
                matched_payment_ids.append(record.matched_payment_id)
            elif record.match_status == MatchStatus.DISPUTED:
                disputed_amount = disputed_amount + record.amount
            else:
                unmatched_amount = unmatched_amount + record.amount

        internal = zero
        missing = 0
        if matched_payment_ids:
            payments = self.db.query(Payment).filter(Payment.id.in_(matched_payment_ids)).all()
            for payment in payments:
                internal = internal + payment.amount
            missing = len(set(matched_payment_ids)) - len(payments)
            if missing:
                logger.warning(f"Settlement batch {batch_id}: {missing} matched payments no longer exist")

        return ReconciliationSummary(
            batch_id=batch.id,
            status=batch.status,
            currency=currency,
            total_records=len(records),
            matched_count=counts[MatchStatus.MATCHED],
            unmatched_count=counts[MatchStatus.UNMATCHED],
            disputed_count=counts[MatchStatus.DISPUTED],
            total_settled_amount=settled,
            total_fees=fees,
            total_net_amount=net,
            total_refunds=refunds,
            chargeback_count=chargebacks,
            total_matched_internal_amount=internal,
            net_discrepancy=matched_settled - matched_fees - internal,
            unmatched_amount=unmatched_amount,
            disputed_amount=disputed_amount,
            fee_pct=fee_percentage(fees, settled),
            import_errors=batch.import_errors,
            missing_payments=missing,
        )

    def export_rows(self, batch_id: UUID) -> List[Dict[str, Any]]:
        """Filas para exportar el detalle del lote a CSV"""
        batch = self._get_batch(batch_id)
        return [
            {
                "gateway_reference": r.gateway_reference,
                "settled_at": r.settled_at,
                "currency": r.currency.value,
                "amount": r.amount.to_decimal(),
                "fee_amount": r.fee_amount.to_decimal(),
                "net_amount": r.net_amount.to_decimal(),
                "refund_amount": r.refund_amount.to_decimal(),
                "chargeback": r.chargeback,
                "match_status": r.match_status.value,
                "matched_payment_id": r.matched_payment_id,
            }
            for r in batch.records
        ]

    def summarize_period(self, period_from: datetime, period_to: datetime,
                         gateway: Optional[SettlementGateway] = None,
                         currency: Optional[Currency] = None) -> PeriodSummary:
        """
        Totales de los lotes con period_start >= period_from y
        period_end <= period_to. Sin moneda se usa DEFAULT_CURRENCY.
        """
        if period_to < period_from:
            raise ValueError("El rango termina antes de empezar")
        currency = Currency(currency) if currency else Currency(settings.DEFAULT_CURRENCY)

        query = self.db.query(SettlementBatch).filter(
            SettlementBatch.period_start >= period_from,
            SettlementBatch.period_end <= period_to,
            SettlementBatch.currency == currency,
        )
        if gateway:
            query = query.filter(SettlementBatch.gateway == SettlementGateway(gateway))
        batch_ids = [batch.id for batch in query.all()]

        records = []
        if batch_ids:
            records = self.db.query(SettlementRecord).filter(SettlementRecord.batch_id.in_(batch_ids)).all()

        zero = Money.zero(currency)
        settled = fees = refunds = net = zero
        chargebacks = 0
        for record in records:
            settled = settled + record.amount
            fees = fees + record.fee_amount
            refunds = refunds + record.refund_amount
            net = net + record.net_amount
            if record.chargeback:
                chargebacks += 1

        return PeriodSummary(
            period_from=period_from,
            period_to=period_to,
            gateway=SettlementGateway(gateway) if gateway else None,
            currency=currency,
            batch_count=len(batch_ids),
            record_count=len(records),
            total_settled_amount=settled,
            total_fees=fees,
            total_refunds=refunds,
            chargeback_count=chargebacks,
            total_net_amount=net,
            fee_pct=fee_percentage(fees, settled),
        )

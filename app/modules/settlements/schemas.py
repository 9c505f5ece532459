"""
Esquemas Pydantic para el módulo de Liquidaciones
"""

from pydantic import BaseModel, Field, model_validator
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID
from datetime import datetime

from app.common.money import Currency
from app.modules.cash.schemas import MoneyOut
from app.modules.settlements.models import (
    MatchStatus, SettlementBatchStatus, SettlementGateway, SettlementSource
)


# ===== IMPORT SCHEMAS =====

class SettlementFeedImport(BaseModel):
    """Importación desde un feed estructurado (JSON) de la pasarela"""
    gateway: SettlementGateway = Field(..., description="Pasarela de origen")
    payload: Any = Field(..., description="Feed crudo: lista de operaciones o {'results': [...]}")
    period_start: Optional[datetime] = Field(None, description="Inicio del período liquidado")
    period_end: Optional[datetime] = Field(None, description="Fin del período liquidado")

    @model_validator(mode="after")
    def validate_period(self):
        if self.period_start and self.period_end and self.period_end < self.period_start:
            raise ValueError("period_end no puede ser anterior a period_start")
        return self


class RowErrorOut(BaseModel):
    row: Optional[int] = None
    detail: str


class SettlementBatchOut(BaseModel):
    id: UUID
    gateway: SettlementGateway
    currency: Currency
    period_start: datetime
    period_end: datetime
    status: SettlementBatchStatus
    source: SettlementSource
    imported_at: datetime
    imported_by: str
    record_count: int
    import_errors: int
    last_matched_at: Optional[datetime] = None
    processed_count: int

    model_config = {"from_attributes": True}


class ImportResultOut(BaseModel):
    batch: SettlementBatchOut
    import_errors: int
    duplicates: int
    row_errors: List[RowErrorOut]

    @classmethod
    def from_result(cls, result) -> "ImportResultOut":
        return cls(
            batch=SettlementBatchOut.model_validate(result.batch),
            import_errors=result.import_errors,
            duplicates=result.duplicates,
            row_errors=[RowErrorOut(row=e.row, detail=e.detail) for e in result.row_errors],
        )


class SettlementBatchList(BaseModel):
    batches: List[SettlementBatchOut]
    total: int
    limit: int
    offset: int


# ===== RECORD SCHEMAS =====

class SettlementRecordOut(BaseModel):
    id: UUID
    batch_id: UUID
    seq: int
    gateway_reference: str
    amount: MoneyOut
    fee_amount: MoneyOut
    net_amount: MoneyOut
    refund_amount: MoneyOut
    chargeback: bool = False
    settled_at: datetime
    match_status: MatchStatus
    matched_payment_id: Optional[UUID] = None
    candidate_count: Optional[int] = None
    resolved_by: Optional[str] = None

    @classmethod
    def from_model(cls, record) -> "SettlementRecordOut":
        return cls(
            id=record.id,
            batch_id=record.batch_id,
            seq=record.seq,
            gateway_reference=record.gateway_reference,
            amount=MoneyOut.from_money(record.amount),
            fee_amount=MoneyOut.from_money(record.fee_amount),
            net_amount=MoneyOut.from_money(record.net_amount),
            refund_amount=MoneyOut.from_money(record.refund_amount),
            chargeback=record.chargeback,
            settled_at=record.settled_at,
            match_status=record.match_status,
            matched_payment_id=record.matched_payment_id,
            candidate_count=record.candidate_count,
            resolved_by=record.resolved_by,
        )


class SettlementBatchDetail(SettlementBatchOut):
    records: List[SettlementRecordOut]


class ResolveDispute(BaseModel):
    """Asignación manual de un pago a un registro en disputa"""
    payment_id: UUID = Field(..., description="Pago interno a conciliar")


# ===== SUMMARY SCHEMAS =====

class ReconciliationSummaryOut(BaseModel):
    batch_id: UUID
    status: SettlementBatchStatus
    currency: Currency
    total_records: int
    matched_count: int
    unmatched_count: int
    disputed_count: int
    total_settled_amount: MoneyOut
    total_fees: MoneyOut
    total_net_amount: MoneyOut
    total_refunds: MoneyOut
    chargeback_count: int
    total_matched_internal_amount: MoneyOut
    net_discrepancy: MoneyOut = Field(description="Liquidado − comisiones − pagos internos, sólo MATCHED")
    unmatched_amount: MoneyOut
    disputed_amount: MoneyOut
    fee_pct: Decimal = Field(description="Comisiones / liquidado bruto")
    import_errors: int
    missing_payments: int

    @classmethod
    def from_summary(cls, summary) -> "ReconciliationSummaryOut":
        return cls(
            batch_id=summary.batch_id,
            status=summary.status,
            currency=summary.currency,
            total_records=summary.total_records,
            matched_count=summary.matched_count,
            unmatched_count=summary.unmatched_count,
            disputed_count=summary.disputed_count,
            total_settled_amount=MoneyOut.from_money(summary.total_settled_amount),
            total_fees=MoneyOut.from_money(summary.total_fees),
            total_net_amount=MoneyOut.from_money(summary.total_net_amount),
            total_refunds=MoneyOut.from_money(summary.total_refunds),
            chargeback_count=summary.chargeback_count,
            total_matched_internal_amount=MoneyOut.from_money(summary.total_matched_internal_amount),
            net_discrepancy=MoneyOut.from_money(summary.net_discrepancy),
            unmatched_amount=MoneyOut.from_money(summary.unmatched_amount),
            disputed_amount=MoneyOut.from_money(summary.disputed_amount),
            fee_pct=summary.fee_pct,
            import_errors=summary.import_errors,
            missing_payments=summary.missing_payments,
        )


class PeriodSummaryOut(BaseModel):
    """Totales de liquidación de un período, opcionalmente por pasarela"""
    period_from: datetime
    period_to: datetime
    gateway: Optional[SettlementGateway] = None
    currency: Currency
    batch_count: int
    record_count: int
    total_settled_amount: MoneyOut
    total_fees: MoneyOut
    total_refunds: MoneyOut
    chargeback_count: int
    total_net_amount: MoneyOut = Field(description="Liquidado − comisiones")
    fee_pct: Decimal = Field(description="Comisiones / liquidado bruto")

    @classmethod
    def from_summary(cls, summary) -> "PeriodSummaryOut":
        return cls(
            period_from=summary.period_from,
            period_to=summary.period_to,
            gateway=summary.gateway,
            currency=summary.currency,
            batch_count=summary.batch_count,
            record_count=summary.record_count,
            total_settled_amount=MoneyOut.from_money(summary.total_settled_amount),
            total_fees=MoneyOut.from_money(summary.total_fees),
            total_refunds=MoneyOut.from_money(summary.total_refunds),
            chargeback_count=summary.chargeback_count,
            total_net_amount=MoneyOut.from_money(summary.total_net_amount),
            fee_pct=summary.fee_pct,
        )


class MatchTaskOut(BaseModel):
    task_id: str
    batch_id: UUID
    status: str = "queued"

"""
Importación de lotes de liquidación

Convierte el payload de una pasarela en un SettlementBatch PENDING con sus
SettlementRecord. La importación nunca marca el lote como procesado: eso le
corresponde al conciliador.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional
import logging

from sqlalchemy.orm import Session

from app.common.exceptions import ImportFormatError
from app.common.mixins import utcnow
from app.common.money import Currency
from app.core.config import settings
from app.modules.audit.service import (
    AuditEvent, AuditEventType, AuditSink, DatabaseAuditSink, safe_record
)
from app.modules.settlements.adapters import SettlementDraft, get_adapter
from app.modules.settlements.models import (
    MatchStatus, SettlementBatch, SettlementBatchStatus, SettlementGateway, SettlementRecord
)

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    batch: SettlementBatch
    import_errors: int
    row_errors: List[ImportFormatError] = field(default_factory=list)
    duplicates: int = 0


def dedupe_drafts(drafts: List[SettlementDraft]):
    """Colapsar referencias repetidas: gana la primera fila válida"""
    seen = set()
    unique, duplicates = [], 0
    for draft in drafts:
        if draft.gateway_reference in seen:
            duplicates += 1
            continue
        seen.add(draft.gateway_reference)
        unique.append(draft)
    return unique, duplicates


class SettlementBatchImporter:

    def __init__(self, db: Session, audit_sink: Optional[AuditSink] = None):
        self.db = db
        self.audit = audit_sink or DatabaseAuditSink(db)

    def import_batch(self, gateway: Any, raw_payload: Any, actor: str,
                     period_start: Optional[datetime] = None, period_end: Optional[datetime] = None,
                     default_currency: Optional[Currency] = None) -> ImportResult:
        """
        Importar un payload crudo de la pasarela.

        Las filas ilegibles se descartan y se cuentan en import_errors; un
        payload ilegible en su totalidad lanza ImportFormatError sin crear lote.
        Las filas sin moneda usan default_currency (DEFAULT_CURRENCY si no se indica).
        """
        default_currency = Currency(default_currency) if default_currency else Currency(settings.DEFAULT_CURRENCY)
        adapter = get_adapter(gateway)
        gateway = SettlementGateway(gateway)
        parsed = adapter(raw_payload, default_currency=default_currency)

        # Un lote opera en una sola moneda: la de su primera fila válida
        currency = parsed.drafts[0].amount.currency if parsed.drafts else default_currency
        same_currency = []
        for draft in parsed.drafts:
            if draft.amount.currency != currency:
                parsed.errors.append(ImportFormatError(
                    f"Moneda {draft.amount.currency.value} distinta a la del lote ({currency.value})",
                    entity="SettlementRecord",
                    row=draft.row,
                ))
                continue
            same_currency.append(draft)
        parsed.errors.sort(key=lambda e: e.row or 0)
        drafts, duplicates = dedupe_drafts(same_currency)

        if drafts:
            settled = [d.settled_at for d in drafts]
            period_start = period_start or min(settled)
            period_end = period_end or max(settled)
        now = utcnow()
        period_start = period_start or now
        period_end = period_end or now
        if period_end < period_start:
            raise ImportFormatError("El período termina antes de empezar", entity="SettlementBatch")

        batch = SettlementBatch(
            gateway=gateway,
            currency=currency,
            period_start=period_start,
            period_end=period_end,
            status=SettlementBatchStatus.PENDING,
            source=parsed.source,
            imported_at=now,
            imported_by=actor,
            record_count=len(drafts),
            import_errors=len(parsed.errors),
        )
        self.db.add(batch)
        self.db.flush()

        for seq, draft in enumerate(drafts, start=1):
            self.db.add(SettlementRecord(
                batch_id=batch.id,
                seq=seq,
                gateway_reference=draft.gateway_reference,
                currency=draft.amount.currency,
                amount_minor=draft.amount.amount_minor_units,
                fee_amount_minor=draft.fee_amount.amount_minor_units,
                refund_amount_minor=draft.refund_amount.amount_minor_units,
                chargeback=draft.chargeback,
                net_amount_minor=(draft.amount - draft.fee_amount).amount_minor_units,
                settled_at=draft.settled_at,
                match_status=MatchStatus.UNMATCHED,
            ))
        self.db.commit()
        self.db.refresh(batch)

        if parsed.errors:
            logger.warning(
                f"Settlement batch {batch.id} ({gateway.value}) imported with {len(parsed.errors)} "
                f"rejected rows out of {parsed.rows_read}"
            )
        logger.info(
            f"Settlement batch {batch.id} ({gateway.value}) imported: {len(drafts)} records, "
            f"{duplicates} duplicates collapsed"
        )
        safe_record(self.audit, AuditEvent(
            type=AuditEventType.SETTLEMENT_BATCH_IMPORTED,
            entity="SettlementBatch",
            entity_id=str(batch.id),
            before_state=None,
            after_state=batch.snapshot(),
            actor=actor,
        ))
        return ImportResult(
            batch=batch,
            import_errors=len(parsed.errors),
            row_errors=parsed.errors,
            duplicates=duplicates,
        )

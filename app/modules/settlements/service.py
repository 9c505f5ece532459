"""
Consultas sobre lotes y registros de liquidación
"""
from datetime import datetime
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from app.common.exceptions import NotFoundError
from app.modules.settlements.models import (
    MatchStatus, SettlementBatch, SettlementBatchStatus, SettlementGateway, SettlementRecord
)


class SettlementService:

    def __init__(self, db: Session):
        self.db = db

    def get_batch(self, batch_id: UUID) -> SettlementBatch:
        batch = self.db.query(SettlementBatch).filter(SettlementBatch.id == batch_id).first()
        if not batch:
            raise NotFoundError("Lote de liquidación no encontrado", entity="SettlementBatch", entity_id=batch_id)
        return batch

    def list_batches(self, gateway: Optional[SettlementGateway] = None,
                     status: Optional[SettlementBatchStatus] = None,
                     imported_from: Optional[datetime] = None, imported_to: Optional[datetime] = None,
                     limit: int = 20, offset: int = 0) -> Tuple[List[SettlementBatch], int]:
        query = self.db.query(SettlementBatch)
        if gateway:
            query = query.filter(SettlementBatch.gateway == gateway)
        if status:
            query = query.filter(SettlementBatch.status == status)
        if imported_from:
            query = query.filter(SettlementBatch.imported_at >= imported_from)
        if imported_to:
            query = query.filter(SettlementBatch.imported_at <= imported_to)
        total = query.count()
        batches = query.order_by(SettlementBatch.imported_at.desc()).offset(offset).limit(limit).all()
        return batches, total

    def list_records(self, batch_id: UUID, match_status: Optional[MatchStatus] = None) -> List[SettlementRecord]:
        self.get_batch(batch_id)
        query = self.db.query(SettlementRecord).filter(SettlementRecord.batch_id == batch_id)
        if match_status:
            query = query.filter(SettlementRecord.match_status == match_status)
        return query.order_by(SettlementRecord.seq).all()

    def batches_pending_match(self) -> List[UUID]:
        """Lotes con registros UNMATCHED (o nunca conciliados) para la corrida periódica"""
        with_unmatched = self.db.query(SettlementRecord.batch_id).filter(
            SettlementRecord.match_status == MatchStatus.UNMATCHED
        ).distinct()
        rows = self.db.query(SettlementBatch.id).filter(
            SettlementBatch.status != SettlementBatchStatus.FAILED,
            SettlementBatch.id.in_(with_unmatched)
        ).order_by(SettlementBatch.imported_at).all()
        return [row[0] for row in rows]

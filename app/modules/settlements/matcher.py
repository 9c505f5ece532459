"""
Conciliación de registros de liquidación contra pagos internos

Para cada registro UNMATCHED del lote, en orden de settled_at:

1. Buscar pagos candidatos: misma moneda, mismo importe (la comisión nunca
   entra en la comparación) y occurred_at dentro de ±N días de settled_at
2. Descartar pagos ya consumidos en esta corrida
3. Un candidato → MATCHED; ninguno → UNMATCHED; varios → DISPUTED (no se
   elige automáticamente, lo resuelve un operador)

Los registros MATCHED y DISPUTED no se vuelven a evaluar, así que repetir la
corrida sobre un lote PROCESSED sólo intenta los que siguen UNMATCHED.

Una sola corrida por lote: lock en proceso más una marca en la fila del lote
que ven los demás procesos (API y workers de Celery).
"""
from datetime import timedelta
from threading import Event
from typing import Callable, List, Optional, Set
from uuid import UUID, uuid4
import logging
import time

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.common.exceptions import (
    ConflictError, CurrencyMismatchError, DependencyTimeoutError,
    InvalidStateError, NotFoundError, OperationCancelledError, ResourceBusyError
)
from app.common.locks import LockRegistry, aggregate_locks
from app.common.mixins import utcnow
from app.core.config import settings
from app.database.database import is_timeout_error
from app.modules.audit.service import (
    AuditEvent, AuditEventType, AuditSink, DatabaseAuditSink, safe_record
)
from app.modules.payments.store import CandidatePayment, PaymentStore, SqlPaymentStore
from app.modules.settlements.models import (
    MatchStatus, SettlementBatch, SettlementBatchStatus, SettlementRecord
)

logger = logging.getLogger(__name__)


class SettlementMatcher:

    def __init__(self, db: Session, payment_store: Optional[PaymentStore] = None,
                 audit_sink: Optional[AuditSink] = None, locks: Optional[LockRegistry] = None,
                 window_days: Optional[int] = None, lookup_retries: Optional[int] = None,
                 lookup_backoff_seconds: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.db = db
        self.payment_store = payment_store or SqlPaymentStore(
            db,
            timeout_seconds=settings.PAYMENT_STORE_TIMEOUT_SECONDS,
            amount_tolerance_minor=settings.SETTLEMENT_AMOUNT_TOLERANCE_MINOR,
        )
        self.audit = audit_sink or DatabaseAuditSink(db)
        self.locks = locks or aggregate_locks
        self.window = timedelta(days=settings.SETTLEMENT_MATCH_WINDOW_DAYS if window_days is None else window_days)
        self.lookup_retries = settings.SETTLEMENT_LOOKUP_RETRIES if lookup_retries is None else lookup_retries
        self.lookup_backoff_seconds = (
            settings.SETTLEMENT_LOOKUP_BACKOFF_SECONDS if lookup_backoff_seconds is None else lookup_backoff_seconds
        )
        self.sleep = sleep
        self.lease = timedelta(seconds=settings.SETTLEMENT_MATCH_LEASE_SECONDS)

    def _get_batch(self, batch_id: UUID) -> SettlementBatch:
        batch = self.db.query(SettlementBatch).filter(SettlementBatch.id == batch_id).first()
        if not batch:
            raise NotFoundError("Lote de liquidación no encontrado", entity="SettlementBatch", entity_id=batch_id)
        return batch

    def _find_candidates(self, record: SettlementRecord, consumed: Set[UUID]) -> List[CandidatePayment]:
        """Búsqueda de sólo lectura: se reintenta con backoff ante timeouts"""
        attempt = 0
        while True:
            try:
                return self.payment_store.find_candidate_payments(
                    record.currency,
                    record.amount,
                    record.settled_at - self.window,
                    record.settled_at + self.window,
                    exclude_ids=consumed,
                )
            except DependencyTimeoutError:
                if attempt >= self.lookup_retries:
                    raise
                delay = self.lookup_backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Candidate lookup for record {record.id} timed out, retry {attempt}/{self.lookup_retries} in {delay}s"
                )
                self.sleep(delay)

    def _commit(self, entity: str, entity_id):
        """Confirmar una decisión; las escrituras nunca se reintentan"""
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("El pago ya fue conciliado por otro registro", entity=entity, entity_id=entity_id)
        except OperationalError as e:
            self.db.rollback()
            if is_timeout_error(e):
                raise DependencyTimeoutError(
                    "La base de datos excedió el plazo al confirmar la conciliación",
                    entity=entity,
                    entity_id=entity_id,
                )
            raise

    # ----- marca de conciliación en curso -----

    def _claim(self, batch_id: UUID) -> str:
        """
        Marcar el lote como en conciliación. La fila se lee FOR UPDATE, así dos
        procesos no ven la marca libre a la vez; si otra corrida tiene una marca
        vigente lanza ResourceBusyError.
        """
        batch = self.db.query(SettlementBatch).filter(
            SettlementBatch.id == batch_id
        ).with_for_update().first()
        if not batch:
            self.db.rollback()
            raise NotFoundError("Lote de liquidación no encontrado", entity="SettlementBatch", entity_id=batch_id)

        now = utcnow()
        if batch.matching_token and batch.matching_started_at and batch.matching_started_at > now - self.lease:
            self.db.rollback()
            raise ResourceBusyError(
                "El lote ya se está conciliando en otro proceso",
                entity="SettlementBatch",
                entity_id=batch_id,
            )
        if batch.matching_token:
            logger.warning(
                f"Settlement batch {batch_id}: taking over stale matching claim from {batch.matching_started_at}"
            )

        token = uuid4().hex
        batch.matching_token = token
        batch.matching_started_at = now
        self._commit("SettlementBatch", batch_id)
        return token

    def _release(self, batch_id: UUID, token: str):
        """Quitar la marca propia; si falla, la marca vence sola con el lease"""
        try:
            self.db.query(SettlementBatch).filter(
                SettlementBatch.id == batch_id,
                SettlementBatch.matching_token == token
            ).update(
                {SettlementBatch.matching_token: None, SettlementBatch.matching_started_at: None},
                synchronize_session=False,
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(
                f"Could not release matching claim on batch {batch_id}; it expires in {self.lease}",
                exc_info=True,
            )

    # ----- conciliación -----

    def match_batch(self, batch_id: UUID, actor: str = "system",
                    cancel_event: Optional[Event] = None) -> SettlementBatch:
        """
        Conciliar el lote. Queda PROCESSED aunque haya registros sin conciliar o
        en disputa; FAILED sólo si la importación no produjo ningún registro.

        Cada decisión se confirma al tomarse. Si cancel_event se activa, la
        corrida se detiene antes del siguiente registro, lo ya decidido queda y
        se lanza OperationCancelledError con la cantidad procesada.

        Una corrida concurrente sobre el mismo lote, en este proceso o en otro,
        lanza ResourceBusyError.
        """
        with self.locks.hold_exclusive("batch", batch_id):
            token = self._claim(batch_id)
            try:
                batch = self._get_batch(batch_id)
                before = batch.snapshot()
                self._run(batch, cancel_event)
            finally:
                self._release(batch_id, token)

        self.db.refresh(batch)
        self._audit_batch(batch, before, actor)
        return batch

    def _run(self, batch: SettlementBatch, cancel_event: Optional[Event]):
        batch_id = batch.id
        if batch.record_count == 0:
            batch.status = SettlementBatchStatus.FAILED
            batch.last_matched_at = utcnow()
            batch.processed_count = 0
            self._commit("SettlementBatch", batch_id)
            logger.warning(f"Settlement batch {batch_id} has no parsed records, marked FAILED")
            return

        records = self.db.query(SettlementRecord).filter(
            SettlementRecord.batch_id == batch_id,
            SettlementRecord.match_status == MatchStatus.UNMATCHED
        ).order_by(SettlementRecord.settled_at, SettlementRecord.seq).all()

        # Pagos consumidos en esta corrida; se descarta al terminar
        consumed: Set[UUID] = set()
        processed = 0
        counts = {status: 0 for status in MatchStatus}

        for record in records:
            if cancel_event is not None and cancel_event.is_set():
                batch.processed_count = processed
                self._commit("SettlementBatch", batch_id)
                logger.warning(f"Matching of batch {batch_id} cancelled after {processed} records")
                raise OperationCancelledError(
                    f"Conciliación cancelada tras procesar {processed} registros",
                    entity="SettlementBatch",
                    entity_id=batch_id,
                    processed=processed,
                )

            # Sólo se decide sobre registros que siguen UNMATCHED en la base
            self.db.refresh(record)
            if record.match_status != MatchStatus.UNMATCHED:
                logger.info(f"Settlement record {record.id} already {record.match_status.value}, skipped")
                continue

            candidates = [
                c for c in self._find_candidates(record, consumed)
                if c.payment_id not in consumed
            ]
            record.candidate_count = len(candidates)
            if len(candidates) == 1:
                record.match_status = MatchStatus.MATCHED
                record.matched_payment_id = candidates[0].payment_id
                consumed.add(candidates[0].payment_id)
            elif len(candidates) == 0:
                record.match_status = MatchStatus.UNMATCHED
            else:
                record.match_status = MatchStatus.DISPUTED
            self._commit("SettlementRecord", record.id)
            counts[record.match_status] += 1
            processed += 1

        batch.status = SettlementBatchStatus.PROCESSED
        batch.last_matched_at = utcnow()
        batch.processed_count = processed
        self._commit("SettlementBatch", batch_id)

        logger.info(
            f"Settlement batch {batch_id} matched: {processed} evaluated, "
            f"{counts[MatchStatus.MATCHED]} matched, {counts[MatchStatus.DISPUTED]} disputed, "
            f"{counts[MatchStatus.UNMATCHED]} unmatched"
        )

    def _audit_batch(self, batch: SettlementBatch, before: dict, actor: str):
        safe_record(self.audit, AuditEvent(
            type=AuditEventType.SETTLEMENT_BATCH_MATCHED,
            entity="SettlementBatch",
            entity_id=str(batch.id),
            before_state=before,
            after_state=batch.snapshot(),
            actor=actor,
        ))

    def resolve_dispute(self, record_id: UUID, payment_id: UUID, actor: str) -> SettlementRecord:
        """Resolución manual: asignar un pago concreto a un registro DISPUTED o UNMATCHED"""
        record = self.db.query(SettlementRecord).filter(SettlementRecord.id == record_id).first()
        if not record:
            raise NotFoundError("Registro de liquidación no encontrado", entity="SettlementRecord", entity_id=record_id)

        batch_id = record.batch_id
        with self.locks.hold_exclusive("batch", batch_id):
            token = self._claim(batch_id)
            try:
                self.db.refresh(record)
                if record.match_status == MatchStatus.MATCHED:
                    raise InvalidStateError(
                        "El registro ya está conciliado",
                        entity="SettlementRecord",
                        entity_id=record_id,
                    )
                payment = self.payment_store.get_payment(payment_id)
                if payment is None:
                    raise NotFoundError("Pago no encontrado", entity="Payment", entity_id=payment_id)
                if payment.currency != record.currency:
                    raise CurrencyMismatchError(
                        f"El pago está en {payment.currency.value} y el registro en {record.currency.value}",
                        entity="SettlementRecord",
                        entity_id=record_id,
                    )
                taken = self.db.query(SettlementRecord.id).filter(
                    SettlementRecord.matched_payment_id == payment_id
                ).first()
                if taken:
                    raise ConflictError(
                        "El pago ya fue conciliado por otro registro",
                        entity="Payment",
                        entity_id=payment_id,
                    )

                before = record.snapshot()
                record.match_status = MatchStatus.MATCHED
                record.matched_payment_id = payment_id
                record.resolved_by = actor
                self._commit("SettlementRecord", record_id)
            finally:
                self._release(batch_id, token)
        self.db.refresh(record)

        logger.info(f"Settlement record {record_id} resolved to payment {payment_id} by {actor}")
        safe_record(self.audit, AuditEvent(
            type=AuditEventType.SETTLEMENT_RECORD_RESOLVED,
            entity="SettlementRecord",
            entity_id=str(record.id),
            before_state=before,
            after_state=record.snapshot(),
            actor=actor,
        ))
        return record

"""
Tareas asíncronas de Celery para la conciliación de liquidaciones.
"""
import logging
from uuid import UUID

from app.common.exceptions import ConflictError, DependencyTimeoutError, NotFoundError, ResourceBusyError
from app.core.celery import celery_app
from app.database.database import SessionLocal
from app.modules.settlements.matcher import SettlementMatcher
from app.modules.settlements.service import SettlementService

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def match_settlement_batch(self, batch_id: str, actor: str = "system"):
    """
    Conciliar un lote en segundo plano.

    Un timeout del store de pagos se reintenta con backoff exponencial; el
    lote ya tomado por otra corrida se informa como "busy" sin reintentar. Un
    conflicto de integridad (pago ya conciliado por otro registro) se informa
    como "conflict": lo decidido hasta ese registro queda confirmado.
    """
    db = SessionLocal()
    try:
        batch = SettlementMatcher(db).match_batch(UUID(batch_id), actor=actor)
        return {"status": batch.status.value, "batch_id": batch_id, "processed": batch.processed_count}
    except ResourceBusyError as exc:
        logger.info(f"Settlement batch {batch_id} already being matched: {exc.detail}")
        return {"status": "busy", "batch_id": batch_id}
    except ConflictError as exc:
        logger.error(f"Integrity conflict matching settlement batch {batch_id} ({exc.entity} {exc.entity_id}): {exc.detail}")
        return {"status": "conflict", "batch_id": batch_id, "error": exc.detail}
    except NotFoundError as exc:
        logger.error(f"Settlement batch {batch_id} not found: {exc.detail}")
        return {"status": "not_found", "batch_id": batch_id}
    except DependencyTimeoutError as exc:
        logger.error(f"Matching of settlement batch {batch_id} timed out: {exc.detail}")
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))
        return {"status": "failed", "batch_id": batch_id, "error": exc.detail}
    finally:
        db.close()


@celery_app.task
def rematch_pending_batches():
    """
    Tarea periódica: encola la conciliación de los lotes que aún tienen
    registros sin conciliar (pagos internos que llegaron tarde).
    """
    db = SessionLocal()
    try:
        batch_ids = SettlementService(db).batches_pending_match()
    finally:
        db.close()

    for batch_id in batch_ids:
        match_settlement_batch.delay(str(batch_id))
    logger.info(f"Queued re-matching for {len(batch_ids)} settlement batches")
    return {"queued": len(batch_ids)}

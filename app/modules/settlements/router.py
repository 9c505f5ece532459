"""
Routers FastAPI para el módulo de Liquidaciones

Define los endpoints REST para:
- Importación de liquidaciones (archivo CSV o feed JSON)
- Conciliación síncrona o encolada en Celery
- Resumen de conciliación por lote y por período, exportación CSV
- Resolución manual de registros en disputa
"""

from fastapi import APIRouter, Depends, File, Form, HTTPException, Path, Query, UploadFile, status
from typing import Optional
from uuid import UUID
from datetime import datetime

from app.common.csv_export import create_csv_response
from app.common.money import Currency
from app.core.config import settings
from app.dependencies.dbDependecies import db_dependency
from app.modules.auth.dependencies import AuthDependencies, READ_ROLES, RECONCILIATION_ROLES
from app.modules.auth.schemas import AuthContext
from app.modules.settlements.importer import SettlementBatchImporter
from app.modules.settlements.matcher import SettlementMatcher
from app.modules.settlements.models import MatchStatus, SettlementBatchStatus, SettlementGateway
from app.modules.settlements.schemas import (
    ImportResultOut, MatchTaskOut, PeriodSummaryOut, ReconciliationSummaryOut, ResolveDispute,
    SettlementBatchDetail, SettlementBatchList, SettlementBatchOut,
    SettlementFeedImport, SettlementRecordOut
)
from app.modules.settlements.service import SettlementService
from app.modules.settlements.summary import ReconciliationSummaryBuilder
from app.modules.settlements.tasks import match_settlement_batch


settlements_router = APIRouter(prefix="/settlements", tags=["Settlements"])

EXPORT_HEADERS = {
    "gateway_reference": "Referencia",
    "settled_at": "Fecha liquidación",
    "currency": "Moneda",
    "amount": "Importe bruto",
    "fee_amount": "Comisión",
    "net_amount": "Neto",
    "refund_amount": "Devolución",
    "chargeback": "Contracargo",
    "match_status": "Estado",
    "matched_payment_id": "Pago interno",
}


# ===== IMPORT =====

@settlements_router.post("/import", response_model=ImportResultOut, status_code=status.HTTP_201_CREATED)
async def import_settlement_file(
    db: db_dependency,
    gateway: SettlementGateway = Form(..., description="Pasarela de origen"),
    file: UploadFile = File(..., description="Archivo de liquidación (CSV o JSON)"),
    period_start: Optional[datetime] = Form(None, description="Inicio del período liquidado"),
    period_end: Optional[datetime] = Form(None, description="Fin del período liquidado"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(RECONCILIATION_ROLES)),
):
    """
    Importar un archivo de liquidación.

    Las filas ilegibles se informan en row_errors y no abortan el lote. Un
    archivo completamente ilegible responde 422 sin crear el lote.
    """
    content = await file.read()
    if len(content) > settings.MAX_IMPORT_FILE_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"El archivo supera el máximo de {settings.MAX_IMPORT_FILE_SIZE} bytes"
        )
    importer = SettlementBatchImporter(db)
    result = importer.import_batch(
        gateway=gateway,
        raw_payload=content,
        actor=auth_context.actor,
        period_start=period_start,
        period_end=period_end,
    )
    return ImportResultOut.from_result(result)


@settlements_router.post("/import/feed", response_model=ImportResultOut, status_code=status.HTTP_201_CREATED)
async def import_settlement_feed(
    feed: SettlementFeedImport,
    db: db_dependency,
    auth_context: AuthContext = Depends(AuthDependencies.require_role(RECONCILIATION_ROLES)),
):
    """Importar un feed estructurado (JSON) tal como lo entrega la pasarela."""
    importer = SettlementBatchImporter(db)
    result = importer.import_batch(
        gateway=feed.gateway,
        raw_payload=feed.payload,
        actor=auth_context.actor,
        period_start=feed.period_start,
        period_end=feed.period_end,
    )
    return ImportResultOut.from_result(result)


# ===== BATCHES =====

@settlements_router.get("", response_model=SettlementBatchList)
async def list_settlement_batches(
    db: db_dependency,
    gateway: Optional[SettlementGateway] = Query(None, description="Filtrar por pasarela"),
    batch_status: Optional[SettlementBatchStatus] = Query(None, alias="status", description="Filtrar por estado"),
    imported_from: Optional[datetime] = Query(None, description="Importados desde"),
    imported_to: Optional[datetime] = Query(None, description="Importados hasta"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES)),
):
    service = SettlementService(db)
    batches, total = service.list_batches(
        gateway=gateway,
        status=batch_status,
        imported_from=imported_from,
        imported_to=imported_to,
        limit=limit,
        offset=offset,
    )
    return SettlementBatchList(
        batches=[SettlementBatchOut.model_validate(b) for b in batches],
        total=total,
        limit=limit,
        offset=offset,
    )


@settlements_router.get("/summary/range", response_model=PeriodSummaryOut)
async def get_period_summary(
    db: db_dependency,
    period_from: datetime = Query(..., description="Inicio del rango (period_start del lote)"),
    period_to: datetime = Query(..., description="Fin del rango (period_end del lote)"),
    gateway: Optional[SettlementGateway] = Query(None, description="Filtrar por pasarela"),
    currency: Optional[Currency] = Query(None, description="Moneda a resumir (por defecto DEFAULT_CURRENCY)"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES)),
):
    """Totales de los lotes del período: liquidado, comisiones, devoluciones, contracargos y neto."""
    if period_to < period_from:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="period_to no puede ser anterior a period_from"
        )
    summary = ReconciliationSummaryBuilder(db).summarize_period(period_from, period_to, gateway, currency)
    return PeriodSummaryOut.from_summary(summary)


@settlements_router.get("/{batch_id}", response_model=SettlementBatchDetail)
async def get_settlement_batch(
    db: db_dependency,
    batch_id: UUID = Path(..., description="ID del lote"),
    match_status: Optional[MatchStatus] = Query(None, description="Filtrar registros por estado"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES)),
):
    service = SettlementService(db)
    batch = service.get_batch(batch_id)
    records = service.list_records(batch_id, match_status)
    return SettlementBatchDetail(
        **SettlementBatchOut.model_validate(batch).model_dump(),
        records=[SettlementRecordOut.from_model(r) for r in records],
    )


# ===== MATCHING =====

@settlements_router.post("/{batch_id}/match", response_model=SettlementBatchOut)
async def match_settlement_batch_now(
    db: db_dependency,
    batch_id: UUID = Path(..., description="ID del lote"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(RECONCILIATION_ROLES)),
):
    """
    Conciliar el lote contra los pagos internos.

    - Un candidato: MATCHED
    - Ninguno: queda UNMATCHED (se reintenta en la próxima corrida)
    - Varios: DISPUTED, requiere resolución manual

    Si otra corrida tiene el lote, responde 409.
    """
    matcher = SettlementMatcher(db)
    batch = matcher.match_batch(batch_id, actor=auth_context.actor)
    return SettlementBatchOut.model_validate(batch)


@settlements_router.post("/{batch_id}/match/async", response_model=MatchTaskOut,
                         status_code=status.HTTP_202_ACCEPTED)
async def enqueue_settlement_batch_match(
    db: db_dependency,
    batch_id: UUID = Path(..., description="ID del lote"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(RECONCILIATION_ROLES)),
):
    """Encolar la conciliación del lote en Celery."""
    SettlementService(db).get_batch(batch_id)
    async_result = match_settlement_batch.delay(str(batch_id), actor=auth_context.actor)
    return MatchTaskOut(task_id=async_result.id, batch_id=batch_id)


@settlements_router.post("/records/{record_id}/resolve", response_model=SettlementRecordOut)
async def resolve_settlement_record(
    resolve_data: ResolveDispute,
    db: db_dependency,
    record_id: UUID = Path(..., description="ID del registro de liquidación"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(RECONCILIATION_ROLES)),
):
    """Asignar manualmente un pago interno a un registro DISPUTED o UNMATCHED."""
    matcher = SettlementMatcher(db)
    record = matcher.resolve_dispute(record_id, resolve_data.payment_id, actor=auth_context.actor)
    return SettlementRecordOut.from_model(record)


# ===== SUMMARY & EXPORT =====

@settlements_router.get("/{batch_id}/summary", response_model=ReconciliationSummaryOut)
async def get_reconciliation_summary(
    db: db_dependency,
    batch_id: UUID = Path(..., description="ID del lote"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES)),
):
    """Totales del lote: conteos por estado, importes, comisiones y discrepancia neta."""
    summary = ReconciliationSummaryBuilder(db).summarize(batch_id)
    return ReconciliationSummaryOut.from_summary(summary)


@settlements_router.get("/{batch_id}/export")
async def export_settlement_batch(
    db: db_dependency,
    batch_id: UUID = Path(..., description="ID del lote"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES)),
):
    """Exportar los registros del lote en CSV."""
    rows = ReconciliationSummaryBuilder(db).export_rows(batch_id)
    return create_csv_response(rows, f"liquidacion_{batch_id}.csv", headers=EXPORT_HEADERS)

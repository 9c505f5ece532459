"""
Routers FastAPI para el módulo de Caja

Define los endpoints REST para:
- CashRegisters: alta y listado de cajas, apertura de sesión
- CashSessions: movimientos, lectura X y cierre con arqueo

Los errores de dominio (409/404/504) los traduce el handler global de
app.main a la respuesta estructurada {"error", "entity", "entity_id", "detail"}.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Query, Path
from typing import Optional, List
from uuid import UUID
from datetime import datetime

from app.dependencies.dbDependecies import db_dependency
from app.modules.auth.dependencies import AuthDependencies, CASHIER_ROLES, READ_ROLES
from app.modules.auth.schemas import AuthContext
from app.common.money import Money
from app.core.config import settings
from app.modules.cash.models import CashSessionStatus, MovementType
from app.modules.cash.service import CashSessionService, CloseSummary
from app.modules.cash.schemas import (
    CashRegisterCreate, CashRegisterOut,
    CashSessionOpen, CashSessionClose, CashSessionOut, CashSessionList,
    CashMovementCreate, CashMovementOut, CloseSummaryOut, MoneyOut
)


def _summary_out(summary: CloseSummary) -> CloseSummaryOut:
    totals = summary.totals_by_type
    return CloseSummaryOut(
        session_id=summary.session_id,
        status=summary.status,
        opening_amount=MoneyOut.from_money(summary.opening_amount),
        total_sales=MoneyOut.from_money(totals[MovementType.SALE]),
        total_refunds=MoneyOut.from_money(totals[MovementType.REFUND]),
        total_manual_in=MoneyOut.from_money(totals[MovementType.MANUAL_IN]),
        total_manual_out=MoneyOut.from_money(totals[MovementType.MANUAL_OUT]),
        expected_closing_amount=MoneyOut.from_money(summary.expected_closing_amount),
        counted_closing_amount=MoneyOut.from_money(summary.counted_closing_amount),
        difference=MoneyOut.from_money(summary.difference),
        movement_count=summary.movement_count,
    )


# ===== CASH REGISTERS ROUTER =====

cash_registers_router = APIRouter(prefix="/cash-registers", tags=["Cash"])


@cash_registers_router.post("", response_model=CashRegisterOut, status_code=status.HTTP_201_CREATED)
async def create_cash_register(
    register_data: CashRegisterCreate,
    db: db_dependency,
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin"])),
):
    """Crear una caja física. El nombre es único."""
    service = CashSessionService(db)
    return service.create_register(register_data.name, register_data.currency)


@cash_registers_router.get("", response_model=List[CashRegisterOut])
async def list_cash_registers(
    db: db_dependency,
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES)),
):
    service = CashSessionService(db)
    return service.list_registers()


@cash_registers_router.post("/{register_id}/sessions", response_model=CashSessionOut,
                            status_code=status.HTTP_201_CREATED)
async def open_cash_session(
    open_data: CashSessionOpen,
    db: db_dependency,
    register_id: UUID = Path(..., description="ID de la caja registradora"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(CASHIER_ROLES)),
):
    """
    Abrir sesión de caja.

    Validaciones:
    - Solo una sesión abierta por caja simultáneamente (409 conflict)
    - La moneda del saldo inicial debe coincidir con la de la caja
    """
    service = CashSessionService(db)
    session = service.open_session(
        register_id=register_id,
        opening_amount=open_data.opening_amount.to_money(),
        actor=auth_context.actor,
        notes=open_data.opening_notes,
    )
    return CashSessionOut.from_model(session)


@cash_registers_router.get("/{register_id}/sessions/current", response_model=CashSessionOut)
async def get_current_cash_session(
    db: db_dependency,
    register_id: UUID = Path(..., description="ID de la caja registradora"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES)),
):
    """Devuelve la sesión abierta actual de la caja; 404 si no hay ninguna."""
    service = CashSessionService(db)
    session = service.get_current_session(register_id)
    if not session:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No hay sesión abierta para esta caja")
    return CashSessionOut.from_model(session)


# ===== CASH SESSIONS ROUTER =====

cash_sessions_router = APIRouter(prefix="/cash-sessions", tags=["Cash"])


@cash_sessions_router.get("", response_model=CashSessionList)
async def list_cash_sessions(
    db: db_dependency,
    register_id: Optional[UUID] = Query(None, description="Filtrar por caja"),
    session_status: Optional[CashSessionStatus] = Query(None, alias="status", description="Filtrar por estado"),
    opened_from: Optional[datetime] = Query(None, description="Apertura desde"),
    opened_to: Optional[datetime] = Query(None, description="Apertura hasta"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES)),
):
    service = CashSessionService(db)
    sessions, total = service.list_sessions(
        register_id=register_id,
        status=session_status,
        opened_from=opened_from,
        opened_to=opened_to,
        limit=limit,
        offset=offset,
    )
    return CashSessionList(
        sessions=[CashSessionOut.from_model(s) for s in sessions],
        total=total,
        limit=limit,
        offset=offset,
    )


@cash_sessions_router.get("/{session_id}", response_model=CashSessionOut)
async def get_cash_session(
    db: db_dependency,
    session_id: UUID = Path(..., description="ID de la sesión"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES)),
):
    service = CashSessionService(db)
    return CashSessionOut.from_model(service.get_session(session_id))


@cash_sessions_router.post("/{session_id}/movements", response_model=CashMovementOut,
                           status_code=status.HTTP_201_CREATED)
async def record_cash_movement(
    movement_data: CashMovementCreate,
    db: db_dependency,
    session_id: UUID = Path(..., description="ID de la sesión"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(CASHIER_ROLES)),
):
    """
    Registrar movimiento de efectivo.

    - **SALE** / **MANUAL_IN**: ingresos
    - **REFUND** / **MANUAL_OUT**: egresos

    Los movimientos no se editan ni eliminan; para corregir, registre uno compensatorio.
    """
    service = CashSessionService(db)
    movement = service.record_movement(
        session_id=session_id,
        movement_type=movement_data.type,
        amount=movement_data.amount.to_money(),
        actor=auth_context.actor,
        note=movement_data.note,
        reference=movement_data.reference,
    )
    return CashMovementOut.from_model(movement)


@cash_sessions_router.get("/{session_id}/movements", response_model=List[CashMovementOut])
async def list_cash_movements(
    db: db_dependency,
    session_id: UUID = Path(..., description="ID de la sesión"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES)),
):
    """Movimientos de la sesión en orden de registro."""
    service = CashSessionService(db)
    return [CashMovementOut.from_model(m) for m in service.list_movements(session_id)]


@cash_sessions_router.get("/{session_id}/preview-close", response_model=CloseSummaryOut)
async def preview_close_cash_session(
    db: db_dependency,
    session_id: UUID = Path(..., description="ID de la sesión"),
    counted_minor: Optional[int] = Query(None, ge=0, description="Saldo contado en centavos (opcional)"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(CASHIER_ROLES)),
):
    """Lectura X: totales por tipo, saldo esperado y diferencia, sin cerrar la sesión."""
    service = CashSessionService(db)
    session = service.get_session(session_id)
    counted = Money(counted_minor, session.currency) if counted_minor is not None else None
    return _summary_out(service.preview_close(session_id, counted))


@cash_sessions_router.post("/{session_id}/close", response_model=CashSessionOut)
async def close_cash_session(
    close_data: CashSessionClose,
    db: db_dependency,
    session_id: UUID = Path(..., description="ID de la sesión"),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(CASHIER_ROLES)),
):
    """
    Cerrar sesión con arqueo (cierre Z).

    - Calcula el saldo esperado desde los movimientos
    - Guarda esperado, contado y diferencia (no genera ajustes)
    - El cierre es terminal: la sesión no se reabre
    """
    if close_data.counted_closing_amount is None and not close_data.counted_breakdown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Se requiere counted_closing_amount o counted_breakdown"
        )
    service = CashSessionService(db)
    counted = close_data.counted_closing_amount.to_money() if close_data.counted_closing_amount else None
    breakdown = [c.model_dump() for c in close_data.counted_breakdown] if close_data.counted_breakdown else None
    session = service.close_session(
        session_id=session_id,
        counted_closing_amount=counted,
        actor=auth_context.actor,
        counted_breakdown=breakdown,
        notes=close_data.closing_notes,
    )
    return CashSessionOut.from_model(session)

"""
Esquemas Pydantic para el módulo de Caja

Los importes viajan en unidades menores (centavos) junto con su moneda, el
mismo formato en que se persisten. Las salidas agregan el importe decimal sólo
para mostrar.
"""

from pydantic import BaseModel, Field, field_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import datetime

from app.common.money import Currency, Money
from app.modules.cash.models import CashSessionStatus, MovementType


# ===== MONEY =====

class MoneyIn(BaseModel):
    amount_minor_units: int = Field(..., description="Importe en centavos")
    currency: Currency = Field(..., description="Moneda")

    def to_money(self) -> Money:
        return Money(self.amount_minor_units, self.currency)


class MoneyOut(BaseModel):
    amount_minor_units: int
    currency: Currency
    amount: Decimal = Field(description="Importe decimal (sólo visualización)")

    @classmethod
    def from_money(cls, money: Optional[Money]) -> Optional["MoneyOut"]:
        if money is None:
            return None
        return cls(
            amount_minor_units=money.amount_minor_units,
            currency=money.currency,
            amount=money.to_decimal(),
        )


# ===== CASH REGISTER SCHEMAS =====

class CashRegisterCreate(BaseModel):
    """Esquema para crear caja registradora"""
    name: str = Field(..., min_length=1, max_length=100, description="Nombre de la caja")
    currency: Optional[Currency] = Field(None, description="Moneda de la caja (por defecto DEFAULT_CURRENCY)")

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        cleaned = v.strip()
        if not cleaned:
            raise ValueError('El nombre no puede estar vacío')
        return cleaned


class CashRegisterOut(BaseModel):
    id: UUID
    name: str
    currency: Currency
    created_at: datetime

    model_config = {"from_attributes": True}


# ===== CASH SESSION SCHEMAS =====

class CashSessionOpen(BaseModel):
    """Esquema para abrir sesión de caja"""
    opening_amount: MoneyIn = Field(..., description="Saldo inicial de apertura")
    opening_notes: Optional[str] = Field(None, max_length=500, description="Notas de apertura")

    @field_validator('opening_amount')
    @classmethod
    def validate_opening(cls, v: MoneyIn) -> MoneyIn:
        if v.amount_minor_units < 0:
            raise ValueError('El saldo inicial no puede ser negativo')
        return v


class DenominationCount(BaseModel):
    denomination_minor: int = Field(..., gt=0, description="Valor del billete/moneda en centavos")
    quantity: int = Field(..., ge=0, description="Cantidad contada")


class CashSessionClose(BaseModel):
    """
    Esquema para cerrar sesión con arqueo.

    Se informa el total contado o el detalle por denominación (que se suma).
    """
    counted_closing_amount: Optional[MoneyIn] = Field(None, description="Saldo final contado")
    counted_breakdown: Optional[List[DenominationCount]] = Field(None, description="Conteo por denominación (en la moneda de la sesión)")
    closing_notes: Optional[str] = Field(None, max_length=500, description="Notas de cierre")

    @field_validator('counted_closing_amount')
    @classmethod
    def validate_counted(cls, v: Optional[MoneyIn]) -> Optional[MoneyIn]:
        if v is not None and v.amount_minor_units < 0:
            raise ValueError('El saldo contado no puede ser negativo')
        return v


class CashMovementCreate(BaseModel):
    """Esquema para registrar movimiento de caja"""
    type: MovementType = Field(..., description="Tipo de movimiento")
    amount: MoneyIn = Field(..., description="Monto (siempre positivo; el sentido lo da el tipo)")
    note: Optional[str] = Field(None, max_length=500, description="Nota del movimiento")
    reference: Optional[str] = Field(None, max_length=100, description="Referencia opcional")

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v: MoneyIn) -> MoneyIn:
        if v.amount_minor_units <= 0:
            raise ValueError('El monto debe ser mayor a cero')
        return v


class CashMovementOut(BaseModel):
    id: UUID
    session_id: UUID
    seq: int
    type: MovementType
    amount: MoneyOut
    occurred_at: datetime
    note: Optional[str] = None
    reference: Optional[str] = None
    created_by: str

    @classmethod
    def from_model(cls, movement) -> "CashMovementOut":
        return cls(
            id=movement.id,
            session_id=movement.session_id,
            seq=movement.seq,
            type=movement.type,
            amount=MoneyOut.from_money(movement.amount),
            occurred_at=movement.occurred_at,
            note=movement.note,
            reference=movement.reference,
            created_by=movement.created_by,
        )


class CashSessionOut(BaseModel):
    id: UUID
    register_id: UUID
    status: CashSessionStatus
    opening_amount: MoneyOut
    expected_closing_amount: Optional[MoneyOut] = None
    counted_closing_amount: Optional[MoneyOut] = None
    difference: Optional[MoneyOut] = None
    counted_breakdown: Optional[List[DenominationCount]] = None
    opened_by: str
    closed_by: Optional[str] = None
    opened_at: datetime
    closed_at: Optional[datetime] = None
    opening_notes: Optional[str] = None
    closing_notes: Optional[str] = None

    @classmethod
    def from_model(cls, session) -> "CashSessionOut":
        return cls(
            id=session.id,
            register_id=session.register_id,
            status=session.status,
            opening_amount=MoneyOut.from_money(session.opening_amount),
            expected_closing_amount=MoneyOut.from_money(session.expected_closing_amount),
            counted_closing_amount=MoneyOut.from_money(session.counted_closing_amount),
            difference=MoneyOut.from_money(session.difference),
            counted_breakdown=session.counted_breakdown,
            opened_by=session.opened_by,
            closed_by=session.closed_by,
            opened_at=session.opened_at,
            closed_at=session.closed_at,
            opening_notes=session.opening_notes,
            closing_notes=session.closing_notes,
        )


class CashSessionList(BaseModel):
    sessions: List[CashSessionOut]
    total: int
    limit: int
    offset: int


class CloseSummaryOut(BaseModel):
    """Lectura X: arqueo previo sin cerrar la sesión"""
    session_id: UUID
    status: CashSessionStatus
    opening_amount: MoneyOut
    total_sales: MoneyOut
    total_refunds: MoneyOut
    total_manual_in: MoneyOut
    total_manual_out: MoneyOut
    expected_closing_amount: MoneyOut
    counted_closing_amount: Optional[MoneyOut] = None
    difference: Optional[MoneyOut] = None
    movement_count: int

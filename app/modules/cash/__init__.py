"""
Módulo de Caja

ENTIDADES PRINCIPALES:
- CashRegister: Caja física
- CashSession: Apertura→cierre con arqueo (OPEN → CLOSED, terminal)
- CashMovement: Movimientos de efectivo, append-only

REGLAS DE NEGOCIO:
- Solo una sesión abierta por caja simultáneamente
- Movimientos sólo en sesiones abiertas, en la moneda de la caja
- Cierre: esperado = apertura + ventas + ingresos − devoluciones − retiros
- La diferencia de arqueo se informa, no se ajusta
"""

from .models import (
    CashRegister, CashSession, CashMovement,
    CashSessionStatus, MovementType
)
from .ledger import CashMovementLedger
from .service import CashSessionService, CloseSummary

__all__ = [
    "CashRegister", "CashSession", "CashMovement",
    "CashSessionStatus", "MovementType",
    "CashMovementLedger", "CashSessionService", "CloseSummary",
]

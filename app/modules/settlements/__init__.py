"""
Módulo de Liquidaciones

ENTIDADES PRINCIPALES:
- SettlementBatch: Exportación importada de una pasarela (PENDING → PROCESSED | FAILED)
- SettlementRecord: Línea liquidada, conciliable contra un pago interno

REGLAS DE NEGOCIO:
- Un lote opera en una sola moneda
- Coincidencia por moneda, importe exacto y fecha dentro de la ventana
- Un pago interno concilia con a lo sumo un registro
- Varios candidatos dejan el registro DISPUTED; nunca se elige automáticamente

Componentes:
- adapters.py: formatos de archivo por pasarela (MP, GETNET)
- importer.py: SettlementBatchImporter
- matcher.py: SettlementMatcher y resolución manual
- summary.py: ReconciliationSummaryBuilder y exportación
- tasks.py: conciliación en Celery
"""

# Sólo modelos: importer/matcher dependen de payments.store, que a su vez lee estos modelos
from .models import (
    SettlementBatch, SettlementRecord,
    SettlementGateway, SettlementBatchStatus, SettlementSource, MatchStatus
)

__all__ = [
    "SettlementBatch", "SettlementRecord",
    "SettlementGateway", "SettlementBatchStatus", "SettlementSource", "MatchStatus",
]

"""
Taxonomía de errores de dominio

Los servicios lanzan estas excepciones (nunca HTTPException); los handlers
registrados en app.main las traducen a una respuesta estructurada:

    {"error": <kind>, "entity": <entidad>, "entity_id": <id>, "detail": <mensaje>}
"""
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Error base con tipo y entidad involucrada"""

    kind = "domain_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str, entity: Optional[str] = None, entity_id: Any = None):
        super().__init__(detail)
        self.detail = detail
        self.entity = entity
        self.entity_id = entity_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "entity": self.entity,
            "entity_id": str(self.entity_id) if self.entity_id is not None else None,
            "detail": self.detail,
        }


class ConflictError(DomainError):
    """Violación de invariante (ej. segunda sesión abierta en la misma caja)"""
    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT


class CurrencyMismatchError(ConflictError):
    kind = "currency_mismatch"


class ResourceBusyError(ConflictError):
    """Otra operación tiene tomado el agregado; se puede reintentar más tarde"""
    kind = "busy"


class InvalidStateError(DomainError):
    """Operación no válida para el estado actual del ciclo de vida"""
    kind = "invalid_state"
    status_code = status.HTTP_409_CONFLICT


class ImmutableRecordError(InvalidStateError):
    kind = "immutable_record"


class NotFoundError(DomainError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class DependencyTimeoutError(DomainError):
    """Un colaborador externo (store, lock) excedió su plazo"""
    kind = "dependency_timeout"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class ImportFormatError(DomainError):
    """
    Payload o fila de liquidación imposible de interpretar.

    Por fila se acumulan en el resultado de la importación; sólo un payload
    completamente ilegible se propaga como excepción.
    """
    kind = "import_format"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, detail: str, entity: Optional[str] = None, entity_id: Any = None,
                 row: Optional[int] = None):
        super().__init__(detail, entity=entity, entity_id=entity_id)
        self.row = row

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["row"] = self.row
        return data


class OperationCancelledError(DomainError):
    """Operación cancelada por el llamador; informa cuánto se alcanzó a procesar"""
    kind = "cancelled"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, detail: str, entity: Optional[str] = None, entity_id: Any = None,
                 processed: int = 0):
        super().__init__(detail, entity=entity, entity_id=entity_id)
        self.processed = processed

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["processed"] = self.processed
        return data


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"{exc.kind} on {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

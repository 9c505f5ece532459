"""
Locks por agregado (caja, sesión, lote de liquidación)

Cada clave ("register:<id>", "session:<id>", "batch:<id>") tiene su propio
lock; no existe un lock global. Sólo serializa dentro de un proceso: entre
procesos la garantía la dan los row locks de cajas y sesiones
(SELECT ... FOR UPDATE), los índices únicos de la base y, para los lotes de
liquidación, la marca de conciliación en curso que toma el conciliador.

Las entradas se cuentan por usuario (quien tiene el lock más quienes lo
esperan) y se eliminan cuando el último lo libera.
"""
from contextlib import contextmanager
from typing import Dict, Optional
import threading
import logging

from app.common.exceptions import DependencyTimeoutError, ResourceBusyError
from app.core.config import settings

logger = logging.getLogger(__name__)


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class LockRegistry:

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        """Cantidad de claves con algún usuario activo"""
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> _LockEntry:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _LockEntry()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _LockEntry):
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, kind: str, entity_id, timeout: Optional[float] = None):
        """Esperar el lock del agregado; al vencer el plazo lanza DependencyTimeoutError."""
        key = f"{kind}:{entity_id}"
        entry = self._checkout(key)
        try:
            wait = self.timeout if timeout is None else timeout
            if not entry.lock.acquire(timeout=wait):
                logger.warning(f"Timeout esperando lock {key} ({wait}s)")
                raise DependencyTimeoutError(
                    f"No se pudo obtener el lock de {kind} en {wait}s",
                    entity=kind,
                    entity_id=entity_id,
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    @contextmanager
    def hold_exclusive(self, kind: str, entity_id):
        """Tomar el lock sin esperar; si otra operación lo tiene lanza ResourceBusyError."""
        key = f"{kind}:{entity_id}"
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(blocking=False):
                raise ResourceBusyError(
                    f"Ya hay una operación en curso sobre {kind}",
                    entity=kind,
                    entity_id=entity_id,
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)


aggregate_locks = LockRegistry(timeout=settings.LOCK_TIMEOUT_SECONDS)

"""
Tests para el módulo de Caja

Cubren:
- Libro de movimientos: orden de registro, sumas por tipo, inmutabilidad
- Ciclo de vida de la sesión: apertura, movimientos, lectura X, cierre
- Una sola sesión abierta por caja
- Fallos del sink de auditoría que no afectan la operación
- Endpoints REST y formato de error estructurado
"""

import threading
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.common.exceptions import (
    ConflictError, CurrencyMismatchError, DependencyTimeoutError,
    ImmutableRecordError, InvalidStateError, NotFoundError
)
from app.common.locks import LockRegistry
from app.common.money import MAX_MINOR_UNITS, Currency, Money
from app.core.config import settings
from app.database.database import Base
from app.modules.audit.models import AuditLog
from app.modules.audit.service import AuditEventType
from app.modules.cash.ledger import CashMovementLedger
from app.modules.cash.models import CashMovement, CashSessionStatus, MovementType
from app.modules.cash.service import CashSessionService, sum_breakdown


def ars(amount_minor: int) -> Money:
    return Money(amount_minor, Currency.ARS)


# ===== FIXTURES =====

@pytest.fixture
def service(db_session, recording_sink):
    return CashSessionService(db_session, audit_sink=recording_sink, locks=LockRegistry(timeout=1))


@pytest.fixture
def register(service):
    return service.create_register("Caja 1", Currency.ARS)


@pytest.fixture
def open_session(service, register):
    return service.open_session(register.id, ars(10000), actor="cajero@test.com")


# ===== TESTS DE MONEY =====

class TestMoney:
    """Tests del tipo valor Money"""

    def test_suma_y_resta_misma_moneda(self):
        assert ars(1000) + ars(250) == ars(1250)
        assert ars(1000) - ars(250) == ars(750)
        assert -ars(100) == ars(-100)

    def test_mezcla_de_monedas_falla(self):
        with pytest.raises(CurrencyMismatchError):
            ars(100) + Money(100, Currency.USD)
        with pytest.raises(CurrencyMismatchError):
            ars(100) < Money(100, Currency.USD)

    def test_solo_enteros(self):
        with pytest.raises(TypeError):
            Money(10.5, Currency.ARS)
        with pytest.raises(TypeError):
            Money(True, Currency.ARS)

    def test_from_decimal_exacto(self):
        assert Money.from_decimal("1234.56", Currency.ARS) == ars(123456)
        assert Money.from_decimal("10", "USD") == Money(1000, Currency.USD)
        with pytest.raises(ValueError):
            Money.from_decimal("1.005", Currency.ARS)
        with pytest.raises(ValueError):
            Money.from_decimal("abc", Currency.ARS)

    def test_from_decimal_fuera_de_rango(self):
        """Un importe que no entra en BIGINT se rechaza al convertir"""
        with pytest.raises(ValueError):
            Money.from_decimal(Decimal("1e30"), Currency.ARS)
        with pytest.raises(ValueError):
            Money.from_decimal("-100000000000000000000", Currency.ARS)
        assert Money.from_decimal(Decimal(MAX_MINOR_UNITS) / 100, Currency.ARS).amount_minor_units == MAX_MINOR_UNITS

    def test_formato(self):
        assert str(ars(14200)) == "142.00 ARS"
        assert ars(0).is_zero


# ===== TESTS DEL LIBRO DE MOVIMIENTOS =====

class TestCashMovementLedger:
    """Tests del libro append-only de movimientos"""

    def test_orden_de_registro(self, service, open_session, db_session):
        for movement_type, amount in [
            (MovementType.SALE, 500), (MovementType.REFUND, 100), (MovementType.MANUAL_IN, 300)
        ]:
            service.record_movement(open_session.id, movement_type, ars(amount), actor="cajero")

        movements = CashMovementLedger(db_session).list_by_session(open_session.id)
        assert [m.seq for m in movements] == [1, 2, 3]
        assert [m.type for m in movements] == [MovementType.SALE, MovementType.REFUND, MovementType.MANUAL_IN]

    def test_suma_por_tipos(self, service, open_session, db_session):
        service.record_movement(open_session.id, MovementType.SALE, ars(500), actor="cajero")
        service.record_movement(open_session.id, MovementType.SALE, ars(700), actor="cajero")
        service.record_movement(open_session.id, MovementType.MANUAL_OUT, ars(200), actor="cajero")

        ledger = CashMovementLedger(db_session)
        assert ledger.sum_by_types(open_session.id, [MovementType.SALE], Currency.ARS) == ars(1200)
        assert ledger.sum_by_types(open_session.id, [MovementType.REFUND], Currency.ARS) == ars(0)
        totals = ledger.totals_by_type(open_session.id, Currency.ARS)
        assert totals[MovementType.MANUAL_OUT] == ars(200)

    def test_movimiento_no_se_modifica(self, service, open_session, db_session):
        movement = service.record_movement(open_session.id, MovementType.SALE, ars(500), actor="cajero")
        movement.amount_minor = 1
        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

    def test_movimiento_no_se_elimina(self, service, open_session, db_session):
        movement = service.record_movement(open_session.id, MovementType.SALE, ars(500), actor="cajero")
        db_session.delete(movement)
        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()
        assert db_session.query(CashMovement).count() == 1


# ===== TESTS DE SESIONES =====

class TestCashSessionLifecycle:
    """Tests del ciclo de vida OPEN -> CLOSED"""

    def test_cierre_con_sobrante(self, service, open_session):
        """Apertura 10000, venta 5000, devolución 1000, contado 14200 -> esperado 14000, +200"""
        service.record_movement(open_session.id, MovementType.SALE, ars(5000), actor="cajero")
        service.record_movement(open_session.id, MovementType.REFUND, ars(1000), actor="cajero")

        closed = service.close_session(open_session.id, ars(14200), actor="cajero")

        assert closed.status == CashSessionStatus.CLOSED
        assert closed.expected_closing_amount == ars(14000)
        assert closed.counted_closing_amount == ars(14200)
        assert closed.difference == ars(200)
        assert closed.closed_by == "cajero"
        assert closed.closed_at is not None

    def test_segunda_apertura_en_la_misma_caja(self, service, register, open_session):
        with pytest.raises(ConflictError):
            service.open_session(register.id, ars(0), actor="otro")

    def test_reapertura_tras_cierre(self, service, register, open_session):
        service.close_session(open_session.id, ars(10000), actor="cajero")
        second = service.open_session(register.id, ars(5000), actor="cajero")
        assert second.status == CashSessionStatus.OPEN
        assert service.get_current_session(register.id).id == second.id

    def test_cajas_distintas_abren_en_paralelo(self, service, register, open_session):
        other = service.create_register("Caja 2", Currency.ARS)
        session = service.open_session(other.id, ars(0), actor="cajero")
        assert session.status == CashSessionStatus.OPEN

    def test_movimiento_en_sesion_cerrada(self, service, open_session):
        service.close_session(open_session.id, ars(10000), actor="cajero")
        with pytest.raises(InvalidStateError):
            service.record_movement(open_session.id, MovementType.SALE, ars(100), actor="cajero")

    def test_cierre_repetido(self, service, open_session):
        service.close_session(open_session.id, ars(10000), actor="cajero")
        with pytest.raises(InvalidStateError):
            service.close_session(open_session.id, ars(10000), actor="cajero")

    def test_moneda_distinta_a_la_caja(self, service, register, open_session):
        with pytest.raises(CurrencyMismatchError):
            service.record_movement(open_session.id, MovementType.SALE, Money(100, Currency.USD), actor="cajero")

    def test_apertura_en_otra_moneda(self, service):
        usd_register = service.create_register("Caja dólares", Currency.USD)
        with pytest.raises(CurrencyMismatchError):
            service.open_session(usd_register.id, ars(100), actor="cajero")

    def test_moneda_por_defecto_de_la_caja(self, service, monkeypatch):
        """Sin moneda explícita la caja toma DEFAULT_CURRENCY"""
        assert service.create_register("Caja pesos").currency == Currency.ARS
        monkeypatch.setattr(settings, "DEFAULT_CURRENCY", Currency.USD)
        assert service.create_register("Caja sin moneda").currency == Currency.USD

    def test_monto_no_positivo(self, service, open_session):
        with pytest.raises(ValueError):
            service.record_movement(open_session.id, MovementType.SALE, ars(0), actor="cajero")

    def test_caja_inexistente(self, service):
        with pytest.raises(NotFoundError):
            service.open_session(uuid4(), ars(0), actor="cajero")

    def test_nombre_de_caja_duplicado(self, service, register):
        with pytest.raises(ConflictError):
            service.create_register("Caja 1", Currency.ARS)

    def test_lectura_x_no_cierra(self, service, open_session):
        service.record_movement(open_session.id, MovementType.SALE, ars(2500), actor="cajero")
        service.record_movement(open_session.id, MovementType.MANUAL_OUT, ars(500), actor="cajero")

        summary = service.preview_close(open_session.id, ars(12000))

        assert summary.status == CashSessionStatus.OPEN
        assert summary.expected_closing_amount == ars(12000)
        assert summary.difference == ars(0)
        assert summary.movement_count == 2
        assert service.get_session(open_session.id).status == CashSessionStatus.OPEN

    def test_cierre_por_denominaciones(self, service, open_session):
        breakdown = [
            {"denomination_minor": 100000, "quantity": 0},
            {"denomination_minor": 5000, "quantity": 1},
            {"denomination_minor": 1000, "quantity": 4},
        ]
        closed = service.close_session(open_session.id, None, actor="cajero", counted_breakdown=breakdown)
        assert closed.counted_closing_amount == ars(9000)
        assert closed.difference == ars(-1000)
        assert closed.counted_breakdown == breakdown

    def test_sum_breakdown_invalido(self):
        with pytest.raises(ValueError):
            sum_breakdown([{"denomination_minor": 0, "quantity": 1}], Currency.ARS)

    def test_listado_con_filtros(self, service, register, open_session):
        service.close_session(open_session.id, ars(10000), actor="cajero")
        service.open_session(register.id, ars(0), actor="cajero")

        sessions, total = service.list_sessions(register_id=register.id)
        assert total == 2
        open_only, open_total = service.list_sessions(status=CashSessionStatus.OPEN)
        assert open_total == 1
        assert open_only[0].status == CashSessionStatus.OPEN


# ===== TESTS DE AUDITORÍA =====

class TestCashAudit:
    """Cada transición deja un evento; un sink caído no rompe la operación"""

    def test_eventos_registrados(self, service, open_session, recording_sink):
        service.record_movement(open_session.id, MovementType.SALE, ars(100), actor="cajero")
        service.close_session(open_session.id, ars(10100), actor="cajero")

        types = [e.type for e in recording_sink.events]
        assert types == [
            AuditEventType.CASH_SESSION_OPENED,
            AuditEventType.CASH_MOVEMENT_RECORDED,
            AuditEventType.CASH_SESSION_CLOSED,
        ]
        closed_event = recording_sink.events[-1]
        assert closed_event.before_state["status"] == "OPEN"
        assert closed_event.after_state["status"] == "CLOSED"

    def test_sink_caido_no_afecta_la_operacion(self, db_session, failing_sink):
        service = CashSessionService(db_session, audit_sink=failing_sink, locks=LockRegistry(timeout=1))
        register = service.create_register("Caja audit", Currency.ARS)
        session = service.open_session(register.id, ars(100), actor="cajero")
        service.record_movement(session.id, MovementType.SALE, ars(50), actor="cajero")
        closed = service.close_session(session.id, ars(150), actor="cajero")

        assert failing_sink.calls == 3
        assert closed.status == CashSessionStatus.CLOSED
        assert closed.difference == ars(0)

    def test_sink_de_base_de_datos(self, db_session):
        service = CashSessionService(db_session, locks=LockRegistry(timeout=1))
        register = service.create_register("Caja db", Currency.ARS)
        session = service.open_session(register.id, ars(100), actor="cajero")

        logs = db_session.query(AuditLog).filter(AuditLog.entity_id == str(session.id)).all()
        assert len(logs) == 1
        assert logs[0].event_type == AuditEventType.CASH_SESSION_OPENED
        assert logs[0].after_state["opening_amount_minor"] == 100


# ===== TESTS DE CONCURRENCIA =====

class TestAggregateLocks:
    """Locks por agregado"""

    def test_lock_ocupado_vence_el_plazo(self):
        locks = LockRegistry(timeout=0.05)
        with locks.hold("register", "r1"):
            errors = []

            def contender():
                try:
                    with locks.hold("register", "r1"):
                        pass
                except DependencyTimeoutError as e:
                    errors.append(e)

            thread = threading.Thread(target=contender)
            thread.start()
            thread.join()
        assert len(errors) == 1

    def test_agregados_distintos_no_se_bloquean(self):
        locks = LockRegistry(timeout=0.05)
        with locks.hold("register", "r1"):
            with locks.hold("register", "r2"):
                pass

    def test_lock_exclusivo_rechaza_sin_esperar(self):
        locks = LockRegistry(timeout=5)
        with locks.hold_exclusive("batch", "b1"):
            with pytest.raises(ConflictError):
                with locks.hold_exclusive("batch", "b1"):
                    pass

    def test_registro_vacio_al_liberar(self):
        """Las entradas se eliminan cuando el último usuario libera el lock"""
        locks = LockRegistry(timeout=0.05)
        with locks.hold("register", "r1"):
            with locks.hold("session", "s1"):
                assert len(locks) == 2
        assert len(locks) == 0

        with locks.hold_exclusive("batch", "b1"):
            with pytest.raises(ConflictError):
                with locks.hold_exclusive("batch", "b1"):
                    pass
            assert len(locks) == 1
        assert len(locks) == 0

    def test_registro_vacio_tras_timeout(self):
        locks = LockRegistry(timeout=0.05)
        errors = []

        def contender():
            try:
                with locks.hold("register", "r1"):
                    pass
            except DependencyTimeoutError as e:
                errors.append(e)

        with locks.hold("register", "r1"):
            thread = threading.Thread(target=contender)
            thread.start()
            thread.join()
            assert len(locks) == 1
        assert len(errors) == 1
        assert len(locks) == 0

    def test_muchas_claves_no_acumulan_entradas(self):
        locks = LockRegistry(timeout=0.05)
        for i in range(500):
            with locks.hold("session", i):
                pass
        assert len(locks) == 0

    def test_aperturas_concurrentes_sobre_la_misma_caja(self, tmp_path, recording_sink):
        """Solo una de varias aperturas simultáneas tiene éxito"""
        # Una conexión por hilo: base SQLite en archivo
        file_engine = create_engine(f"sqlite:///{tmp_path / 'caja.db'}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(bind=file_engine)
        FileSession = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
        setup = FileSession()
        register = CashSessionService(setup, audit_sink=recording_sink).create_register("Caja hilos", Currency.ARS)
        register_id = register.id
        setup.close()

        locks = LockRegistry(timeout=5)
        results, errors = [], []
        start = threading.Barrier(4)

        def attempt():
            db = FileSession()
            try:
                service = CashSessionService(db, audit_sink=recording_sink, locks=locks)
                start.wait()
                service.open_session(register_id, ars(0), actor="cajero")
                results.append(True)
            except ConflictError as e:
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        file_engine.dispose()

        assert len(results) == 1
        assert len(errors) == 3


# ===== TESTS DE ENDPOINTS =====

class TestCashEndpoints:
    """Tests de la API REST de caja"""

    def test_flujo_completo(self, client, auth_headers):
        response = client.post("/api/v1/cash-registers", json={"name": "Caja API"}, headers=auth_headers)
        assert response.status_code == 201
        register_id = response.json()["id"]

        response = client.post(
            f"/api/v1/cash-registers/{register_id}/sessions",
            json={"opening_amount": {"amount_minor_units": 10000, "currency": "ARS"}},
            headers=auth_headers,
        )
        assert response.status_code == 201
        session_id = response.json()["id"]

        for movement_type, amount in [("SALE", 5000), ("REFUND", 1000)]:
            response = client.post(
                f"/api/v1/cash-sessions/{session_id}/movements",
                json={"type": movement_type, "amount": {"amount_minor_units": amount, "currency": "ARS"}},
                headers=auth_headers,
            )
            assert response.status_code == 201

        response = client.get(f"/api/v1/cash-sessions/{session_id}/preview-close?counted_minor=14200",
                              headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["expected_closing_amount"]["amount_minor_units"] == 14000
        assert response.json()["total_sales"]["amount_minor_units"] == 5000

        response = client.post(
            f"/api/v1/cash-sessions/{session_id}/close",
            json={"counted_closing_amount": {"amount_minor_units": 14200, "currency": "ARS"}},
            headers=auth_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "CLOSED"
        assert data["difference"]["amount_minor_units"] == 200
        assert data["closed_by"] == "cajero@test.com"

        response = client.get(f"/api/v1/cash-sessions/{session_id}/movements", headers=auth_headers)
        assert [m["seq"] for m in response.json()] == [1, 2]

    def test_conflicto_estructurado(self, client, auth_headers):
        register_id = client.post("/api/v1/cash-registers", json={"name": "Caja 409"},
                                  headers=auth_headers).json()["id"]
        body = {"opening_amount": {"amount_minor_units": 0, "currency": "ARS"}}
        client.post(f"/api/v1/cash-registers/{register_id}/sessions", json=body, headers=auth_headers)

        response = client.post(f"/api/v1/cash-registers/{register_id}/sessions", json=body, headers=auth_headers)

        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "conflict"
        assert data["entity"] == "CashRegister"
        assert data["entity_id"] == register_id
        assert data["detail"]

    def test_movimiento_en_sesion_cerrada_responde_409(self, client, auth_headers):
        register_id = client.post("/api/v1/cash-registers", json={"name": "Caja cerrada"},
                                  headers=auth_headers).json()["id"]
        session_id = client.post(
            f"/api/v1/cash-registers/{register_id}/sessions",
            json={"opening_amount": {"amount_minor_units": 0, "currency": "ARS"}},
            headers=auth_headers,
        ).json()["id"]
        client.post(f"/api/v1/cash-sessions/{session_id}/close",
                    json={"counted_closing_amount": {"amount_minor_units": 0, "currency": "ARS"}},
                    headers=auth_headers)

        response = client.post(
            f"/api/v1/cash-sessions/{session_id}/movements",
            json={"type": "SALE", "amount": {"amount_minor_units": 100, "currency": "ARS"}},
            headers=auth_headers,
        )
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state"

    def test_sesion_inexistente_responde_404(self, client, auth_headers):
        response = client.get(f"/api/v1/cash-sessions/{uuid4()}", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_sin_sesion_actual(self, client, auth_headers):
        register_id = client.post("/api/v1/cash-registers", json={"name": "Caja vacía"},
                                  headers=auth_headers).json()["id"]
        response = client.get(f"/api/v1/cash-registers/{register_id}/sessions/current", headers=auth_headers)
        assert response.status_code == 404

    def test_cierre_sin_conteo(self, client, auth_headers):
        response = client.post(f"/api/v1/cash-sessions/{uuid4()}/close", json={}, headers=auth_headers)
        assert response.status_code == 422

    def test_monto_negativo_rechazado(self, client, auth_headers):
        response = client.post(
            f"/api/v1/cash-sessions/{uuid4()}/movements",
            json={"type": "SALE", "amount": {"amount_minor_units": -5, "currency": "ARS"}},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_requiere_autenticacion(self, client):
        response = client.get("/api/v1/cash-registers")
        assert response.status_code in (401, 403)

    def test_rol_sin_permiso(self, client, headers_for):
        headers = headers_for("viewer")
        response = client.post("/api/v1/cash-registers", json={"name": "Caja"}, headers=headers)
        assert response.status_code == 403

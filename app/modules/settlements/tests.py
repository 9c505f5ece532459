"""
Tests para el módulo de Liquidaciones

Cubren:
- Importación: adaptadores MP y GETNET, filas inválidas, duplicados, moneda única
- Conciliación: match único, disputa, corridas repetidas, pagos consumidos,
  lote vacío, cancelación, reintentos del store de pagos, resolución manual
- Marca de conciliación en curso compartida entre procesos
- Devoluciones y contracargos, resumen por lote y por período, exportación CSV
- Endpoints REST y tareas de Celery
"""

import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from app.common.exceptions import (
    ConflictError, CurrencyMismatchError, DependencyTimeoutError, ImportFormatError,
    InvalidStateError, NotFoundError, OperationCancelledError, ResourceBusyError
)
from app.common.locks import LockRegistry
from app.common.mixins import utcnow
from app.common.money import Currency, Money
from app.core.config import settings
from app.modules.audit.service import AuditEventType
from app.modules.payments.models import Payment, PaymentStatus
from app.modules.payments.store import SqlPaymentStore
from app.modules.settlements.adapters import parse_getnet_payload, parse_mp_payload
from app.modules.settlements.importer import SettlementBatchImporter, dedupe_drafts
from app.modules.settlements.matcher import SettlementMatcher
from app.modules.settlements.models import (
    MatchStatus, SettlementBatch, SettlementBatchStatus, SettlementGateway,
    SettlementRecord, SettlementSource
)
from app.modules.settlements.service import SettlementService
from app.modules.settlements.summary import ReconciliationSummaryBuilder


DAY_10 = datetime(2026, 3, 10, 12, 0, 0)


def ars(amount_minor: int) -> Money:
    return Money(amount_minor, Currency.ARS)


def mp_item(reference: str, amount: str, settled_at: datetime = DAY_10, fee: str = "0.00",
            currency: str = "ARS") -> dict:
    return {
        "id": reference,
        "transaction_amount": amount,
        "fee_amount": fee,
        "money_release_date": settled_at.isoformat() + "Z",
        "currency_id": currency,
    }


GETNET_CSV = (
    "Nro Operación;Importe Bruto;Arancel;Fecha Pago;Moneda\n"
    "1001;1.234,56;12,35;10/03/2026;ARS\n"
    "1002;500,00;5,00;11/03/2026 09:30;ARS\n"
)


# ===== FIXTURES =====

@pytest.fixture
def locks():
    return LockRegistry(timeout=1)


@pytest.fixture
def importer(db_session, recording_sink):
    return SettlementBatchImporter(db_session, audit_sink=recording_sink)


@pytest.fixture
def matcher(db_session, recording_sink, locks):
    return SettlementMatcher(db_session, audit_sink=recording_sink, locks=locks, window_days=3,
                             lookup_retries=2, lookup_backoff_seconds=0.5, sleep=lambda s: None)


@pytest.fixture
def import_mp(importer):
    def _import(items):
        return importer.import_batch(SettlementGateway.MP, items, actor="contador@test.com")
    return _import


class FlakyPaymentStore:
    """Store que excede el plazo las primeras N búsquedas"""

    def __init__(self, inner, failures: int):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    def find_candidate_payments(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise DependencyTimeoutError("store lento", entity="Payment")
        return self.inner.find_candidate_payments(*args, **kwargs)

    def get_payment(self, payment_id):
        return self.inner.get_payment(payment_id)


class CancellingPaymentStore:
    """Store que pide cancelar la corrida tras la primera búsqueda"""

    def __init__(self, inner, cancel_event: threading.Event):
        self.inner = inner
        self.cancel_event = cancel_event

    def find_candidate_payments(self, *args, **kwargs):
        self.cancel_event.set()
        return self.inner.find_candidate_payments(*args, **kwargs)

    def get_payment(self, payment_id):
        return self.inner.get_payment(payment_id)


class ConcurrentResolutionStore:
    """Store que, en la primera búsqueda, concilia otro registro del lote por fuera de la corrida"""

    def __init__(self, inner, db, record_id, payment_id):
        self.inner = inner
        self.db = db
        self.record_id = record_id
        self.payment_id = payment_id
        self.resolved = False

    def find_candidate_payments(self, *args, **kwargs):
        if not self.resolved:
            self.resolved = True
            self.db.query(SettlementRecord).filter(SettlementRecord.id == self.record_id).update(
                {
                    SettlementRecord.match_status: MatchStatus.MATCHED,
                    SettlementRecord.matched_payment_id: self.payment_id,
                    SettlementRecord.resolved_by: "otro-operador",
                },
                synchronize_session=False,
            )
            self.db.commit()
        return self.inner.find_candidate_payments(*args, **kwargs)

    def get_payment(self, payment_id):
        return self.inner.get_payment(payment_id)


# ===== TESTS DE ADAPTADORES =====

class TestSettlementAdapters:
    """Formatos de archivo por pasarela"""

    def test_getnet_formato_argentino(self):
        parsed = parse_getnet_payload(GETNET_CSV.encode("latin-1"))

        assert parsed.source == SettlementSource.CSV
        assert parsed.errors == []
        first, second = parsed.drafts
        assert first.gateway_reference == "1001"
        assert first.amount == ars(123456)
        assert first.fee_amount == ars(1235)
        assert first.settled_at == datetime(2026, 3, 10)
        assert second.settled_at == datetime(2026, 3, 11, 9, 30)

    def test_getnet_rechaza_feed_json(self):
        with pytest.raises(ImportFormatError):
            parse_getnet_payload([{"id": "1"}])

    def test_mp_feed_con_fee_details(self):
        payload = {"results": [{
            "id": 987,
            "transaction_amount": "150.00",
            "fee_details": [{"type": "mercadopago_fee", "amount": "4.50"}, {"amount": "1.50"}],
            "date_approved": "2026-03-10T10:00:00-03:00",
            "currency_id": "ARS",
        }]}
        parsed = parse_mp_payload(payload)

        assert parsed.source == SettlementSource.FEED
        draft = parsed.drafts[0]
        assert draft.gateway_reference == "987"
        assert draft.amount == ars(15000)
        assert draft.fee_amount == ars(600)
        assert draft.settled_at == datetime(2026, 3, 10, 13, 0)

    def test_mp_feed_como_texto_json(self):
        parsed = parse_mp_payload(b'[{"id": "a1", "transaction_amount": 10.25, '
                                  b'"money_release_date": "2026-03-10", "currency_id": "USD"}]')
        assert parsed.drafts[0].amount == Money(1025, Currency.USD)

    def test_mp_csv_columnas_genericas(self):
        text = "externalId,grossAmount,feeAmount,settledAt\nx-1,100.00,3.00,2026-03-10T12:00:00Z\n"
        parsed = parse_mp_payload(text)

        assert parsed.source == SettlementSource.CSV
        assert parsed.drafts[0].gateway_reference == "x-1"
        assert parsed.drafts[0].fee_amount == ars(300)

    def test_fila_sin_referencia(self):
        parsed = parse_mp_payload([{"transaction_amount": "1.00", "money_release_date": "2026-03-10"}])
        assert parsed.drafts == []
        assert parsed.errors[0].row == 1

    def test_mp_devoluciones_y_contracargos(self):
        parsed = parse_mp_payload({"results": [
            dict(mp_item("op-1", "100.00", fee="3.00"), transaction_amount_refunded="40.00"),
            dict(mp_item("op-2", "80.00"), status="charged_back"),
            dict(mp_item("op-3", "10.00"), status="approved"),
        ]})

        assert parsed.errors == []
        refunded, charged_back, plain = parsed.drafts
        assert refunded.refund_amount == ars(4000)
        assert refunded.chargeback is False
        assert charged_back.chargeback is True
        assert charged_back.refund_amount == ars(0)
        assert plain.chargeback is False

    def test_getnet_devolucion_y_contracargo(self):
        text = (
            "Nro Operación;Importe Bruto;Arancel;Devolución;Contracargo;Fecha Pago;Moneda\n"
            "2001;1.000,00;10,00;250,00;No;10/03/2026;ARS\n"
            "2002;300,00;3,00;;Sí;10/03/2026;ARS\n"
            "2003;300,00;3,00;;quizás;10/03/2026;ARS\n"
        )
        parsed = parse_getnet_payload(text.encode("latin-1"))

        first, second = parsed.drafts
        assert first.refund_amount == ars(25000)
        assert first.chargeback is False
        assert second.chargeback is True
        assert [e.row for e in parsed.errors] == [3]

    def test_importe_fuera_de_rango(self):
        parsed = parse_mp_payload([mp_item("op-1", Decimal("1e30"))])
        assert parsed.drafts == []
        assert parsed.errors[0].row == 1

    def test_moneda_por_defecto_configurable(self, monkeypatch):
        monkeypatch.setattr(settings, "DEFAULT_CURRENCY", Currency.USD)
        parsed = parse_mp_payload("externalId,grossAmount,settledAt\nx-1,10.00,2026-03-10\n")
        assert parsed.drafts[0].amount == Money(1000, Currency.USD)

    def test_payload_ilegible(self):
        with pytest.raises(ImportFormatError):
            parse_mp_payload("[not json")
        with pytest.raises(ImportFormatError):
            parse_mp_payload({"unexpected": True})
        with pytest.raises(ImportFormatError):
            parse_getnet_payload("   ")


# ===== TESTS DE IMPORTACIÓN =====

class TestSettlementBatchImporter:
    """Creación de lotes PENDING a partir de payloads crudos"""

    def test_fila_con_importe_invalido(self, import_mp):
        """3 filas, 1 con importe ilegible -> 2 registros y 1 error"""
        result = import_mp([
            mp_item("op-1", "50.00"),
            mp_item("op-2", "cincuenta"),
            mp_item("op-3", "75.10"),
        ])

        batch = result.batch
        assert batch.status == SettlementBatchStatus.PENDING
        assert batch.record_count == 2
        assert batch.import_errors == 1
        assert result.import_errors == 1
        assert result.row_errors[0].row == 2
        assert [r.gateway_reference for r in batch.records] == ["op-1", "op-3"]
        assert all(r.match_status == MatchStatus.UNMATCHED for r in batch.records)

    def test_importe_gigante_es_error_de_fila(self, import_mp, db_session):
        """Un importe que no entra en la columna no aborta el lote"""
        result = import_mp([
            mp_item("op-1", "50.00"),
            mp_item("op-big", Decimal("1e30")),
            mp_item("op-2", "60.00"),
        ])

        assert result.batch.record_count == 2
        assert result.import_errors == 1
        assert result.row_errors[0].row == 2
        assert db_session.query(SettlementRecord).count() == 2

    def test_moneda_por_defecto_del_lote(self, importer, monkeypatch):
        monkeypatch.setattr(settings, "DEFAULT_CURRENCY", Currency.USD)

        result = importer.import_batch("MP", "externalId,grossAmount,settledAt\nx-1,10.00,2026-03-10\n",
                                       actor="contador")
        assert result.batch.currency == Currency.USD
        assert result.batch.records[0].amount == Money(1000, Currency.USD)

        empty = importer.import_batch("MP", [], actor="contador")
        assert empty.batch.currency == Currency.USD

    def test_devolucion_y_contracargo_persistidos(self, import_mp):
        result = import_mp([
            dict(mp_item("op-1", "100.00", fee="3.00"), transaction_amount_refunded="40.00"),
            dict(mp_item("op-2", "80.00"), status="charged_back"),
        ])
        first, second = result.batch.records
        assert first.refund_amount == ars(4000)
        # La devolución se informa aparte: el neto sigue siendo bruto − comisión
        assert first.net_amount == ars(9700)
        assert first.chargeback is False
        assert second.chargeback is True

    def test_importe_neto(self, import_mp):
        result = import_mp([mp_item("op-1", "100.00", fee="3.50")])
        record = result.batch.records[0]
        assert record.amount == ars(10000)
        assert record.fee_amount == ars(350)
        assert record.net_amount == ars(9650)

    def test_referencias_duplicadas(self, import_mp):
        result = import_mp([
            mp_item("op-1", "50.00"),
            mp_item("op-1", "99.00"),
            mp_item("op-2", "10.00"),
        ])
        assert result.batch.record_count == 2
        assert result.duplicates == 1
        assert result.import_errors == 0
        assert dedupe_drafts([])[1] == 0
        first = next(r for r in result.batch.records if r.gateway_reference == "op-1")
        assert first.amount == ars(5000)

    def test_moneda_unica_por_lote(self, import_mp):
        result = import_mp([
            mp_item("op-1", "50.00"),
            mp_item("op-2", "20.00", currency="USD"),
            mp_item("op-3", "10.00"),
        ])
        assert result.batch.currency == Currency.ARS
        assert result.batch.record_count == 2
        assert result.import_errors == 1
        assert result.row_errors[0].row == 2

    def test_periodo_por_defecto(self, import_mp):
        result = import_mp([
            mp_item("op-1", "50.00", settled_at=DAY_10),
            mp_item("op-2", "10.00", settled_at=DAY_10 + timedelta(days=2)),
        ])
        assert result.batch.period_start == DAY_10
        assert result.batch.period_end == DAY_10 + timedelta(days=2)

    def test_getnet_csv(self, importer):
        result = importer.import_batch("GETNET", GETNET_CSV.encode("utf-8"), actor="contador")
        assert result.batch.gateway == SettlementGateway.GETNET
        assert result.batch.source == SettlementSource.CSV
        assert result.batch.record_count == 2

    def test_pasarela_desconocida(self, importer, db_session):
        with pytest.raises(ImportFormatError):
            importer.import_batch("STRIPE", [mp_item("op-1", "1.00")], actor="contador")
        assert db_session.query(SettlementBatch).count() == 0

    def test_evento_de_auditoria(self, import_mp, recording_sink):
        result = import_mp([mp_item("op-1", "50.00")])
        event = recording_sink.events[-1]
        assert event.type == AuditEventType.SETTLEMENT_BATCH_IMPORTED
        assert event.entity_id == str(result.batch.id)
        assert event.after_state["record_count"] == 1


# ===== TESTS DE CONCILIACIÓN =====

class TestSettlementMatcher:
    """Conciliación de registros contra pagos internos"""

    def test_un_candidato_concilia(self, import_mp, matcher, payment_factory):
        payment = payment_factory(5000, DAY_10 - timedelta(days=1))
        batch = import_mp([mp_item("op-1", "50.00")]).batch

        result = matcher.match_batch(batch.id)

        assert result.status == SettlementBatchStatus.PROCESSED
        record = result.records[0]
        assert record.match_status == MatchStatus.MATCHED
        assert record.matched_payment_id == payment.id
        assert record.candidate_count == 1

    def test_varios_candidatos_quedan_en_disputa(self, import_mp, matcher, payment_factory):
        payment_factory(5000, DAY_10 - timedelta(days=1))
        payment_factory(5000, DAY_10 + timedelta(days=2))
        batch = import_mp([mp_item("op-1", "50.00")]).batch

        result = matcher.match_batch(batch.id)

        record = result.records[0]
        assert record.match_status == MatchStatus.DISPUTED
        assert record.matched_payment_id is None
        assert record.candidate_count == 2

    def test_sin_candidatos(self, import_mp, matcher, payment_factory):
        payment_factory(5000, DAY_10 - timedelta(days=4))  # fuera de ventana
        payment_factory(5001, DAY_10)  # otro importe
        payment_factory(5000, DAY_10, currency=Currency.USD)
        payment_factory(5000, DAY_10, status=PaymentStatus.REJECTED)
        batch = import_mp([mp_item("op-1", "50.00")]).batch

        result = matcher.match_batch(batch.id)

        assert result.status == SettlementBatchStatus.PROCESSED
        assert result.records[0].match_status == MatchStatus.UNMATCHED

    def test_la_comision_no_afecta_la_comparacion(self, import_mp, matcher, payment_factory):
        payment_factory(5000, DAY_10)
        batch = import_mp([mp_item("op-1", "50.00", fee="2.00")]).batch
        assert matcher.match_batch(batch.id).records[0].match_status == MatchStatus.MATCHED

    def test_un_pago_no_concilia_dos_registros(self, import_mp, matcher, payment_factory):
        payment = payment_factory(5000, DAY_10)
        batch = import_mp([
            mp_item("op-late", "50.00", settled_at=DAY_10 + timedelta(days=1)),
            mp_item("op-early", "50.00", settled_at=DAY_10 - timedelta(days=1)),
        ]).batch

        result = matcher.match_batch(batch.id)

        by_ref = {r.gateway_reference: r for r in result.records}
        # Se procesa en orden de settled_at: gana el registro más antiguo
        assert by_ref["op-early"].matched_payment_id == payment.id
        assert by_ref["op-late"].match_status == MatchStatus.UNMATCHED

    def test_pago_conciliado_en_otro_lote(self, import_mp, matcher, payment_factory):
        payment_factory(5000, DAY_10)
        first = import_mp([mp_item("op-1", "50.00")]).batch
        matcher.match_batch(first.id)
        second = import_mp([mp_item("op-2", "50.00")]).batch

        result = matcher.match_batch(second.id)

        assert result.records[0].match_status == MatchStatus.UNMATCHED

    def test_corrida_repetida(self, import_mp, matcher, payment_factory, db_session):
        payment_factory(5000, DAY_10)
        batch = import_mp([mp_item("op-1", "50.00"), mp_item("op-2", "80.00")]).batch
        matcher.match_batch(batch.id)
        matched_before = {
            r.gateway_reference: (r.match_status, r.matched_payment_id) for r in batch.records
        }

        result = matcher.match_batch(batch.id)

        assert result.processed_count == 1  # sólo el UNMATCHED
        after = {r.gateway_reference: (r.match_status, r.matched_payment_id) for r in result.records}
        assert after == matched_before

        late = payment_factory(8000, DAY_10 + timedelta(hours=5))
        result = matcher.match_batch(batch.id)
        assert {r.gateway_reference: r.matched_payment_id for r in result.records}["op-2"] == late.id

    def test_lote_vacio_queda_failed(self, import_mp, matcher):
        batch = import_mp([mp_item("op-1", "no-es-importe")]).batch
        assert batch.record_count == 0

        result = matcher.match_batch(batch.id)

        assert result.status == SettlementBatchStatus.FAILED

    def test_lote_inexistente(self, matcher):
        from uuid import uuid4
        with pytest.raises(NotFoundError):
            matcher.match_batch(uuid4())

    def test_corrida_concurrente_rechazada(self, import_mp, matcher, locks):
        batch = import_mp([mp_item("op-1", "50.00")]).batch
        with locks.hold_exclusive("batch", batch.id):
            with pytest.raises(ConflictError):
                matcher.match_batch(batch.id)

    def test_lote_tomado_por_otro_proceso(self, import_mp, matcher, db_session):
        """Una marca vigente en la fila del lote rechaza la corrida aunque el lock en proceso esté libre"""
        batch = import_mp([mp_item("op-1", "50.00")]).batch
        batch.matching_token = "otro-worker"
        batch.matching_started_at = utcnow()
        db_session.commit()

        with pytest.raises(ResourceBusyError):
            matcher.match_batch(batch.id)

        db_session.refresh(batch)
        assert batch.status == SettlementBatchStatus.PENDING
        assert batch.matching_token == "otro-worker"
        assert all(r.match_status == MatchStatus.UNMATCHED for r in batch.records)

    def test_marca_vencida_se_retoma(self, import_mp, matcher, db_session, payment_factory):
        payment_factory(5000, DAY_10)
        batch = import_mp([mp_item("op-1", "50.00")]).batch
        batch.matching_token = "worker-caido"
        batch.matching_started_at = utcnow() - timedelta(seconds=settings.SETTLEMENT_MATCH_LEASE_SECONDS + 60)
        db_session.commit()

        result = matcher.match_batch(batch.id)

        assert result.status == SettlementBatchStatus.PROCESSED
        assert result.records[0].match_status == MatchStatus.MATCHED
        assert result.matching_token is None

    def test_marca_liberada_al_terminar(self, import_mp, db_session, recording_sink, locks):
        batch = import_mp([mp_item("op-1", "50.00")]).batch
        matcher = SettlementMatcher(db_session, audit_sink=recording_sink, locks=locks)
        matcher.match_batch(batch.id)
        db_session.refresh(batch)
        assert batch.matching_token is None
        assert batch.matching_started_at is None

        store = FlakyPaymentStore(SqlPaymentStore(db_session, timeout_seconds=5), failures=10)
        failing = SettlementMatcher(db_session, payment_store=store, audit_sink=recording_sink, locks=locks,
                                    lookup_retries=0, sleep=lambda s: None)
        with pytest.raises(DependencyTimeoutError):
            failing.match_batch(batch.id)
        db_session.refresh(batch)
        assert batch.matching_token is None
        assert len(locks) == 0

    def test_registro_resuelto_durante_la_corrida(self, import_mp, db_session, recording_sink, locks,
                                                  payment_factory):
        """Un registro conciliado por fuera mientras corre el lote no se vuelve a decidir"""
        first = payment_factory(5000, DAY_10)
        other = payment_factory(6000, DAY_10)
        batch = import_mp([
            mp_item("op-1", "50.00", settled_at=DAY_10),
            mp_item("op-2", "60.00", settled_at=DAY_10 + timedelta(hours=1)),
        ]).batch
        op_2 = next(r for r in batch.records if r.gateway_reference == "op-2")
        store = ConcurrentResolutionStore(SqlPaymentStore(db_session, timeout_seconds=5), db_session,
                                          op_2.id, other.id)
        matcher = SettlementMatcher(db_session, payment_store=store, audit_sink=recording_sink, locks=locks)

        result = matcher.match_batch(batch.id)

        assert result.processed_count == 1
        by_ref = {r.gateway_reference: r for r in result.records}
        assert by_ref["op-1"].matched_payment_id == first.id
        assert by_ref["op-2"].matched_payment_id == other.id
        assert by_ref["op-2"].resolved_by == "otro-operador"
        assert by_ref["op-2"].candidate_count is None

    def test_cancelacion(self, import_mp, db_session, recording_sink, locks, payment_factory):
        payment = payment_factory(5000, DAY_10)
        batch = import_mp([
            mp_item("op-1", "50.00", settled_at=DAY_10),
            mp_item("op-2", "60.00", settled_at=DAY_10 + timedelta(hours=1)),
        ]).batch
        cancel = threading.Event()
        store = CancellingPaymentStore(SqlPaymentStore(db_session, timeout_seconds=5), cancel)
        matcher = SettlementMatcher(db_session, payment_store=store, audit_sink=recording_sink, locks=locks)

        with pytest.raises(OperationCancelledError) as exc_info:
            matcher.match_batch(batch.id, cancel_event=cancel)

        assert exc_info.value.processed == 1
        db_session.refresh(batch)
        assert batch.status == SettlementBatchStatus.PENDING
        by_ref = {r.gateway_reference: r for r in batch.records}
        assert by_ref["op-1"].matched_payment_id == payment.id
        assert by_ref["op-2"].candidate_count is None

    def test_reintento_de_busqueda(self, import_mp, db_session, recording_sink, locks, payment_factory):
        payment_factory(5000, DAY_10)
        batch = import_mp([mp_item("op-1", "50.00")]).batch
        store = FlakyPaymentStore(SqlPaymentStore(db_session, timeout_seconds=5), failures=2)
        delays = []
        matcher = SettlementMatcher(db_session, payment_store=store, audit_sink=recording_sink, locks=locks,
                                    lookup_retries=2, lookup_backoff_seconds=0.5, sleep=delays.append)

        result = matcher.match_batch(batch.id)

        assert result.records[0].match_status == MatchStatus.MATCHED
        assert delays == [0.5, 1.0]
        assert store.calls == 3

    def test_reintentos_agotados(self, import_mp, db_session, recording_sink, locks):
        batch = import_mp([mp_item("op-1", "50.00")]).batch
        store = FlakyPaymentStore(SqlPaymentStore(db_session, timeout_seconds=5), failures=10)
        matcher = SettlementMatcher(db_session, payment_store=store, audit_sink=recording_sink, locks=locks,
                                    lookup_retries=1, lookup_backoff_seconds=0, sleep=lambda s: None)

        with pytest.raises(DependencyTimeoutError):
            matcher.match_batch(batch.id)
        assert store.calls == 2

    def test_ventana_configurable(self, import_mp, db_session, recording_sink, locks, payment_factory):
        payment_factory(5000, DAY_10 - timedelta(days=5))
        batch = import_mp([mp_item("op-1", "50.00")]).batch
        matcher = SettlementMatcher(db_session, audit_sink=recording_sink, locks=locks, window_days=7)
        assert matcher.match_batch(batch.id).records[0].match_status == MatchStatus.MATCHED

    def test_evento_de_auditoria(self, import_mp, matcher, recording_sink):
        batch = import_mp([mp_item("op-1", "50.00")]).batch
        matcher.match_batch(batch.id, actor="contador")
        event = recording_sink.events[-1]
        assert event.type == AuditEventType.SETTLEMENT_BATCH_MATCHED
        assert event.before_state["status"] == "PENDING"
        assert event.after_state["status"] == "PROCESSED"


class TestResolveDispute:
    """Resolución manual de registros en disputa"""

    @pytest.fixture
    def disputed(self, import_mp, matcher, payment_factory):
        first = payment_factory(5000, DAY_10 - timedelta(days=1))
        second = payment_factory(5000, DAY_10 + timedelta(days=1))
        batch = import_mp([mp_item("op-1", "50.00")]).batch
        record = matcher.match_batch(batch.id).records[0]
        assert record.match_status == MatchStatus.DISPUTED
        return record, first, second

    def test_resolver(self, matcher, disputed):
        record, first, _ = disputed
        resolved = matcher.resolve_dispute(record.id, first.id, actor="contador")
        assert resolved.match_status == MatchStatus.MATCHED
        assert resolved.matched_payment_id == first.id
        assert resolved.resolved_by == "contador"

    def test_registro_ya_conciliado(self, matcher, disputed):
        record, first, second = disputed
        matcher.resolve_dispute(record.id, first.id, actor="contador")
        with pytest.raises(InvalidStateError):
            matcher.resolve_dispute(record.id, second.id, actor="contador")

    def test_pago_ya_tomado(self, import_mp, matcher, disputed):
        record, first, _ = disputed
        matcher.resolve_dispute(record.id, first.id, actor="contador")
        other = import_mp([mp_item("op-9", "99.00")]).batch.records[0]
        with pytest.raises(ConflictError):
            matcher.resolve_dispute(other.id, first.id, actor="contador")

    def test_pago_inexistente(self, matcher, disputed):
        from uuid import uuid4
        record, _, _ = disputed
        with pytest.raises(NotFoundError):
            matcher.resolve_dispute(record.id, uuid4(), actor="contador")

    def test_pago_en_otra_moneda(self, matcher, disputed, payment_factory):
        record, _, _ = disputed
        usd = payment_factory(5000, DAY_10, currency=Currency.USD)
        with pytest.raises(CurrencyMismatchError):
            matcher.resolve_dispute(record.id, usd.id, actor="contador")


# ===== TESTS DE RESUMEN =====

class TestReconciliationSummary:
    """Totales del lote"""

    @pytest.fixture
    def processed_batch(self, import_mp, matcher, payment_factory):
        payment_factory(5000, DAY_10)                         # op-match
        payment_factory(2000, DAY_10 - timedelta(days=1))     # op-dispute (x2)
        payment_factory(2000, DAY_10 + timedelta(days=1))
        batch = import_mp([
            mp_item("op-match", "50.00", fee="2.00"),
            mp_item("op-none", "30.00", fee="1.00"),
            mp_item("op-dispute", "20.00", fee="0.50"),
            mp_item("op-bad", "x"),
        ]).batch
        return matcher.match_batch(batch.id)

    def test_totales(self, db_session, processed_batch):
        summary = ReconciliationSummaryBuilder(db_session).summarize(processed_batch.id)

        assert summary.currency == Currency.ARS
        assert summary.total_records == 3
        assert (summary.matched_count, summary.unmatched_count, summary.disputed_count) == (1, 1, 1)
        assert summary.total_settled_amount == ars(10000)
        assert summary.total_fees == ars(350)
        assert summary.total_net_amount == ars(9650)
        assert summary.total_matched_internal_amount == ars(5000)
        assert summary.net_discrepancy == ars(-200)
        assert summary.unmatched_amount == ars(3000)
        assert summary.disputed_amount == ars(2000)
        assert summary.fee_pct == Decimal("0.0350")
        assert summary.import_errors == 1
        assert summary.missing_payments == 0

    def test_pago_conciliado_eliminado(self, db_session, processed_batch):
        matched = next(r for r in processed_batch.records if r.match_status == MatchStatus.MATCHED)
        db_session.query(Payment).filter(Payment.id == matched.matched_payment_id).delete()
        db_session.commit()

        summary = ReconciliationSummaryBuilder(db_session).summarize(processed_batch.id)

        assert summary.missing_payments == 1
        assert summary.total_matched_internal_amount == ars(0)

    def test_lote_sin_registros(self, db_session, import_mp):
        batch = import_mp([]).batch
        summary = ReconciliationSummaryBuilder(db_session).summarize(batch.id)
        assert summary.total_records == 0
        assert summary.total_settled_amount == ars(0)
        assert summary.fee_pct == Decimal("0")

    def test_filas_de_exportacion(self, db_session, processed_batch):
        rows = ReconciliationSummaryBuilder(db_session).export_rows(processed_batch.id)
        assert [r["gateway_reference"] for r in rows] == ["op-match", "op-none", "op-dispute"]
        assert rows[0]["amount"] == Decimal("50.00")
        assert rows[0]["match_status"] == "MATCHED"

    def test_devoluciones_y_contracargos(self, db_session, import_mp):
        batch = import_mp([
            dict(mp_item("op-1", "100.00", fee="4.00"), transaction_amount_refunded="25.00"),
            dict(mp_item("op-2", "50.00", fee="1.00"), status="charged_back"),
            dict(mp_item("op-3", "50.00"), transaction_amount_refunded="5.00", status="charged_back"),
        ]).batch
        builder = ReconciliationSummaryBuilder(db_session)

        summary = builder.summarize(batch.id)

        assert summary.total_refunds == ars(3000)
        assert summary.chargeback_count == 2
        assert summary.total_net_amount == ars(19500)

        rows = builder.export_rows(batch.id)
        assert rows[0]["refund_amount"] == Decimal("25.00")
        assert [r["chargeback"] for r in rows] == [False, True, True]

    def test_resumen_por_periodo_y_pasarela(self, db_session, importer):
        builder = ReconciliationSummaryBuilder(db_session)
        importer.import_batch("MP", [
            dict(mp_item("op-1", "100.00", fee="4.00", settled_at=DAY_10), transaction_amount_refunded="10.00"),
            dict(mp_item("op-2", "50.00", fee="1.00", settled_at=DAY_10 + timedelta(days=1)),
                 status="charged_back"),
        ], actor="contador")
        importer.import_batch("GETNET", GETNET_CSV.encode("latin-1"), actor="contador")
        importer.import_batch("MP", [mp_item("op-9", "999.00", settled_at=DAY_10 + timedelta(days=40))],
                              actor="contador")
        importer.import_batch("MP", [mp_item("op-usd", "10.00", currency="USD")], actor="contador")

        summary = builder.summarize_period(datetime(2026, 3, 1), datetime(2026, 3, 31, 23, 59), gateway="MP")

        assert summary.batch_count == 1
        assert summary.record_count == 2
        assert summary.currency == Currency.ARS
        assert summary.gateway == SettlementGateway.MP
        assert summary.total_settled_amount == ars(15000)
        assert summary.total_fees == ars(500)
        assert summary.total_refunds == ars(1000)
        assert summary.chargeback_count == 1
        assert summary.total_net_amount == ars(14500)
        assert summary.fee_pct == Decimal("0.0333")

        all_gateways = builder.summarize_period(datetime(2026, 3, 1), datetime(2026, 3, 31, 23, 59))
        assert all_gateways.batch_count == 2
        assert all_gateways.total_settled_amount == ars(15000 + 123456 + 50000)
        assert all_gateways.total_fees == ars(500 + 1235 + 500)

        usd = builder.summarize_period(datetime(2026, 3, 1), datetime(2026, 3, 31, 23, 59), currency=Currency.USD)
        assert usd.batch_count == 1
        assert usd.total_settled_amount == Money(1000, Currency.USD)

    def test_resumen_de_periodo_vacio(self, db_session):
        builder = ReconciliationSummaryBuilder(db_session)
        summary = builder.summarize_period(datetime(2026, 1, 1), datetime(2026, 1, 31))
        assert summary.batch_count == 0
        assert summary.total_settled_amount == ars(0)
        assert summary.fee_pct == Decimal("0")
        with pytest.raises(ValueError):
            builder.summarize_period(datetime(2026, 2, 1), datetime(2026, 1, 1))

    def test_lotes_pendientes_de_conciliar(self, db_session, processed_batch, import_mp):
        empty = import_mp([]).batch
        pending = SettlementService(db_session).batches_pending_match()
        assert processed_batch.id in pending
        assert empty.id not in pending


# ===== TESTS DE ENDPOINTS =====

class TestSettlementEndpoints:
    """Tests de la API REST de liquidaciones"""

    def _import_feed(self, client, headers, items):
        response = client.post("/api/v1/settlements/import/feed",
                               json={"gateway": "MP", "payload": items}, headers=headers)
        assert response.status_code == 201
        return response.json()

    def test_importar_archivo(self, client, auth_headers):
        response = client.post(
            "/api/v1/settlements/import",
            data={"gateway": "GETNET"},
            files={"file": ("liquidacion.csv", GETNET_CSV.encode("latin-1"), "text/csv")},
            headers=auth_headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["batch"]["record_count"] == 2
        assert data["batch"]["status"] == "PENDING"
        assert data["row_errors"] == []

    def test_importar_feed_con_errores_de_fila(self, client, auth_headers):
        data = self._import_feed(client, auth_headers, [
            mp_item("op-1", "50.00"), mp_item("op-2", "??"), mp_item("op-3", "1.00")
        ])
        assert data["import_errors"] == 1
        assert data["row_errors"][0]["row"] == 2

    def test_payload_ilegible_responde_422(self, client, auth_headers):
        response = client.post("/api/v1/settlements/import/feed",
                               json={"gateway": "MP", "payload": {"foo": 1}}, headers=auth_headers)
        assert response.status_code == 422
        assert response.json()["error"] == "import_format"
        assert response.json()["entity"] == "SettlementBatch"

    def test_conciliar_resumir_y_exportar(self, client, auth_headers, payment_factory):
        payment_factory(5000, DAY_10)
        batch_id = self._import_feed(client, auth_headers, [mp_item("op-1", "50.00", fee="2.00")])["batch"]["id"]

        response = client.post(f"/api/v1/settlements/{batch_id}/match", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "PROCESSED"

        response = client.get(f"/api/v1/settlements/{batch_id}", headers=auth_headers)
        assert response.json()["records"][0]["match_status"] == "MATCHED"

        response = client.get(f"/api/v1/settlements/{batch_id}/summary", headers=auth_headers)
        summary = response.json()
        assert summary["matched_count"] == 1
        assert summary["net_discrepancy"]["amount_minor_units"] == -200
        assert Decimal(str(summary["fee_pct"])) == Decimal("0.04")

        response = client.get(f"/api/v1/settlements/{batch_id}/export", headers=auth_headers)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("Referencia,")
        assert len(lines) == 2
        assert "MATCHED" in lines[1]

    def test_listado(self, client, auth_headers):
        self._import_feed(client, auth_headers, [mp_item("op-1", "50.00")])
        self._import_feed(client, auth_headers, [mp_item("op-2", "50.00")])

        response = client.get("/api/v1/settlements?status=PENDING&limit=1", headers=auth_headers)
        data = response.json()
        assert data["total"] == 2
        assert len(data["batches"]) == 1

    def test_resolver_disputa(self, client, auth_headers, payment_factory):
        first = payment_factory(5000, DAY_10)
        payment_factory(5000, DAY_10 + timedelta(days=1))
        batch_id = self._import_feed(client, auth_headers, [mp_item("op-1", "50.00")])["batch"]["id"]
        client.post(f"/api/v1/settlements/{batch_id}/match", headers=auth_headers)
        record_id = client.get(f"/api/v1/settlements/{batch_id}", headers=auth_headers).json()["records"][0]["id"]

        response = client.post(f"/api/v1/settlements/records/{record_id}/resolve",
                               json={"payment_id": str(first.id)}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["match_status"] == "MATCHED"
        assert response.json()["resolved_by"] == "cajero@test.com"

    def test_conciliacion_encolada(self, client, auth_headers, monkeypatch):
        from app.modules.settlements import router as settlements_router_module
        queued = []

        class FakeAsyncResult:
            id = "task-123"

        def fake_delay(batch_id, actor="system"):
            queued.append((batch_id, actor))
            return FakeAsyncResult()

        monkeypatch.setattr(settlements_router_module.match_settlement_batch, "delay", fake_delay)
        batch_id = self._import_feed(client, auth_headers, [mp_item("op-1", "50.00")])["batch"]["id"]

        response = client.post(f"/api/v1/settlements/{batch_id}/match/async", headers=auth_headers)

        assert response.status_code == 202
        assert response.json()["task_id"] == "task-123"
        assert queued == [(batch_id, "cajero@test.com")]

    def test_lote_inexistente_responde_404(self, client, auth_headers):
        from uuid import uuid4
        response = client.get(f"/api/v1/settlements/{uuid4()}/summary", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_rol_sin_permiso_para_importar(self, client, headers_for):
        response = client.post("/api/v1/settlements/import/feed",
                               json={"gateway": "MP", "payload": []}, headers=headers_for("cashier"))
        assert response.status_code == 403

    def test_resumen_por_periodo(self, client, auth_headers):
        batch_id = self._import_feed(client, auth_headers, [
            dict(mp_item("op-1", "100.00", fee="4.00"), transaction_amount_refunded="10.00"),
            dict(mp_item("op-2", "50.00"), status="charged_back"),
        ])["batch"]["id"]

        response = client.get(
            "/api/v1/settlements/summary/range",
            params={"period_from": "2026-03-01T00:00:00", "period_to": "2026-03-31T23:59:59", "gateway": "MP"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["batch_count"] == 1
        assert data["record_count"] == 2
        assert data["total_refunds"]["amount_minor_units"] == 1000
        assert data["chargeback_count"] == 1
        assert data["total_net_amount"]["amount_minor_units"] == 14600

        record = client.get(f"/api/v1/settlements/{batch_id}", headers=auth_headers).json()["records"][1]
        assert record["chargeback"] is True

        response = client.get(f"/api/v1/settlements/{batch_id}/summary", headers=auth_headers)
        assert response.json()["chargeback_count"] == 1

        response = client.get(
            "/api/v1/settlements/summary/range",
            params={"period_from": "2026-04-01T00:00:00", "period_to": "2026-03-01T00:00:00"},
            headers=auth_headers,
        )
        assert response.status_code == 400

    def test_registro_de_auditoria(self, client, auth_headers):
        batch_id = self._import_feed(client, auth_headers, [mp_item("op-1", "50.00")])["batch"]["id"]

        response = client.get(f"/api/v1/audit-logs?entity=SettlementBatch&entity_id={batch_id}",
                              headers=auth_headers)

        assert response.status_code == 200
        logs = response.json()
        assert [log["event_type"] for log in logs] == [AuditEventType.SETTLEMENT_BATCH_IMPORTED]
        assert logs[0]["actor"] == "cajero@test.com"


# ===== TESTS DE TAREAS =====

class TestSettlementTasks:
    """Tareas de Celery ejecutadas en proceso"""

    def test_match_settlement_batch(self, db_session, import_mp, payment_factory):
        from app.modules.settlements.tasks import match_settlement_batch
        payment_factory(5000, DAY_10)
        batch = import_mp([mp_item("op-1", "50.00")]).batch

        result = match_settlement_batch.apply(args=[str(batch.id)]).get()

        assert result["status"] == "PROCESSED"
        record = db_session.query(SettlementRecord).filter(SettlementRecord.batch_id == batch.id).one()
        db_session.refresh(record)
        assert record.match_status == MatchStatus.MATCHED

    def test_rematch_pending_batches(self, import_mp, monkeypatch):
        from app.modules.settlements import tasks
        batch = import_mp([mp_item("op-1", "50.00")]).batch
        queued = []
        monkeypatch.setattr(tasks.match_settlement_batch, "delay", lambda batch_id: queued.append(batch_id))

        result = tasks.rematch_pending_batches.apply().get()

        assert result == {"queued": 1}
        assert queued == [str(batch.id)]

    def test_conflicto_de_integridad(self, monkeypatch, caplog):
        """Un pago ya conciliado por otro registro se informa como conflicto y con log de error"""
        from app.modules.settlements import tasks

        def conflicting_match(self, batch_id, actor="system", cancel_event=None):
            raise ConflictError("El pago ya fue conciliado por otro registro", entity="SettlementRecord",
                                entity_id="rec-1")

        monkeypatch.setattr(tasks.SettlementMatcher, "match_batch", conflicting_match)
        batch_id = str(uuid4())

        with caplog.at_level(logging.INFO, logger="app.modules.settlements.tasks"):
            result = tasks.match_settlement_batch.apply(args=[batch_id]).get()

        assert result["status"] == "conflict"
        assert result["error"] == "El pago ya fue conciliado por otro registro"
        errors = [r for r in caplog.records
                  if r.name == "app.modules.settlements.tasks" and r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "rec-1" in errors[0].getMessage()

    def test_lote_ocupado(self, monkeypatch, caplog):
        from app.modules.settlements import tasks

        def busy_match(self, batch_id, actor="system", cancel_event=None):
            raise ResourceBusyError("Ya hay una operación en curso sobre batch", entity="batch",
                                    entity_id=batch_id)

        monkeypatch.setattr(tasks.SettlementMatcher, "match_batch", busy_match)

        with caplog.at_level(logging.INFO, logger="app.modules.settlements.tasks"):
            result = tasks.match_settlement_batch.apply(args=[str(uuid4())]).get()

        assert result["status"] == "busy"
        assert not [r for r in caplog.records
                    if r.name == "app.modules.settlements.tasks" and r.levelno >= logging.ERROR]

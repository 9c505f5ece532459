"""
Tests para el módulo de Auditoría
"""

import logging

from app.modules.audit.models import AuditLog
from app.modules.audit.service import (
    AuditEvent, AuditEventType, AuditLogService, DatabaseAuditSink, LoggingAuditSink, safe_record
)


def make_event(entity_id: str = "s-1", event_type: str = AuditEventType.CASH_SESSION_OPENED) -> AuditEvent:
    return AuditEvent(
        type=event_type,
        entity="CashSession",
        entity_id=entity_id,
        after_state={"status": "OPEN"},
        actor="cajero",
    )


class TestAuditSinks:
    """Sinks de auditoría"""

    def test_sink_de_base_de_datos(self, db_session):
        DatabaseAuditSink(db_session).record(make_event())
        log = db_session.query(AuditLog).one()
        assert log.event_type == AuditEventType.CASH_SESSION_OPENED
        assert log.before_state is None
        assert log.after_state == {"status": "OPEN"}

    def test_sink_de_log(self, caplog):
        with caplog.at_level(logging.INFO, logger="audit"):
            LoggingAuditSink().record(make_event())
        assert "CASH_SESSION_OPENED" in caplog.text

    def test_safe_record_no_propaga(self, failing_sink, caplog):
        with caplog.at_level(logging.WARNING):
            safe_record(failing_sink, make_event())
        assert failing_sink.calls == 1
        assert "CASH_SESSION_OPENED" in caplog.text


class TestAuditLogService:
    """Consultas del registro de auditoría"""

    def test_filtros(self, db_session):
        sink = DatabaseAuditSink(db_session)
        sink.record(make_event("s-1"))
        sink.record(make_event("s-1", AuditEventType.CASH_SESSION_CLOSED))
        sink.record(make_event("s-2"))

        service = AuditLogService(db_session)
        assert len(service.list_logs(entity_id="s-1")) == 2
        closed = service.list_logs(event_type=AuditEventType.CASH_SESSION_CLOSED)
        assert [log.entity_id for log in closed] == ["s-1"]
        assert len(service.list_logs(entity="CashSession", limit=1)) == 1

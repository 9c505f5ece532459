from .models import AuditLog
from .service import (
    AuditEvent, AuditEventType, AuditSink, DatabaseAuditSink, LoggingAuditSink, safe_record
)

__all__ = [
    "AuditLog", "AuditEvent", "AuditEventType", "AuditSink",
    "DatabaseAuditSink", "LoggingAuditSink", "safe_record",
]

"""
Modelos SQLAlchemy para liquidaciones de pasarelas de pago

- SettlementBatch: una exportación importada de una pasarela (MP, GETNET)
- SettlementRecord: una línea de la liquidación, conciliable contra un pago

Invariantes en la base:
- matched_payment_id informado sii match_status = MATCHED (check constraint)
- un pago interno es destino de a lo sumo un registro MATCHED (unique)
- gateway_reference único dentro del lote

La conciliación de un lote se marca en la propia fila (matching_token y
matching_started_at): una corrida en otro proceso ve la marca y no arranca.
Una marca más vieja que SETTLEMENT_MATCH_LEASE_SECONDS se considera abandonada.
"""

from app.database.database import Base
from sqlalchemy import (
    Boolean, Column, String, DateTime, ForeignKey, BigInteger, Integer, Enum, Uuid,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.common.mixins import TimestampMixin, SequenceMixin, utcnow
from app.common.money import Currency, Money
import enum


class SettlementGateway(enum.Enum):
    MP = "MP"           # Mercado Pago
    GETNET = "GETNET"


class SettlementBatchStatus(enum.Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class SettlementSource(enum.Enum):
    CSV = "CSV"
    FEED = "FEED"


class MatchStatus(enum.Enum):
    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"
    DISPUTED = "DISPUTED"


class SettlementBatch(Base, TimestampMixin):
    __tablename__ = "settlement_batches"

    id = Column(Uuid, primary_key=True, default=uuid4)
    gateway = Column(Enum(SettlementGateway), nullable=False, index=True)
    currency = Column(Enum(Currency), nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    status = Column(Enum(SettlementBatchStatus), nullable=False, default=SettlementBatchStatus.PENDING, index=True)
    source = Column(Enum(SettlementSource), nullable=False)
    imported_at = Column(DateTime, nullable=False, default=utcnow)
    imported_by = Column(String(100), nullable=False)

    # Resultado de importación
    record_count = Column(Integer, nullable=False, default=0)
    import_errors = Column(Integer, nullable=False, default=0)

    # Última corrida de conciliación
    last_matched_at = Column(DateTime, nullable=True)
    processed_count = Column(Integer, nullable=False, default=0)

    # Conciliación en curso
    matching_token = Column(String(32), nullable=True)
    matching_started_at = Column(DateTime, nullable=True)

    records = relationship(
        "SettlementRecord",
        back_populates="batch",
        order_by="SettlementRecord.seq",
    )

    def snapshot(self) -> dict:
        return {
            "id": str(self.id),
            "gateway": self.gateway.value,
            "currency": self.currency.value,
            "status": self.status.value,
            "record_count": self.record_count,
            "import_errors": self.import_errors,
            "processed_count": self.processed_count,
        }


class SettlementRecord(Base, TimestampMixin, SequenceMixin):
    __tablename__ = "settlement_records"

    id = Column(Uuid, primary_key=True, default=uuid4)
    batch_id = Column(Uuid, ForeignKey("settlement_batches.id"), nullable=False, index=True)
    gateway_reference = Column(String(100), nullable=False)
    currency = Column(Enum(Currency), nullable=False)
    amount_minor = Column(BigInteger, nullable=False)        # bruto liquidado
    fee_amount_minor = Column(BigInteger, nullable=False, default=0)
    net_amount_minor = Column(BigInteger, nullable=False)    # bruto − comisión
    refund_amount_minor = Column(BigInteger, nullable=False, default=0)
    chargeback = Column(Boolean, nullable=False, default=False)
    settled_at = Column(DateTime, nullable=False, index=True)
    match_status = Column(Enum(MatchStatus), nullable=False, default=MatchStatus.UNMATCHED, index=True)
    matched_payment_id = Column(Uuid, nullable=True, unique=True)  # referencia débil a payments.id
    candidate_count = Column(Integer, nullable=True)  # candidatos en la última evaluación
    resolved_by = Column(String(100), nullable=True)

    batch = relationship("SettlementBatch", back_populates="records")

    __table_args__ = (
        UniqueConstraint("batch_id", "gateway_reference", name="uq_settlement_record_batch_reference"),
        UniqueConstraint("batch_id", "seq", name="uq_settlement_record_batch_seq"),
        CheckConstraint(
            "(match_status = 'MATCHED' AND matched_payment_id IS NOT NULL) OR "
            "(match_status <> 'MATCHED' AND matched_payment_id IS NULL)",
            name="ck_settlement_record_matched_payment",
        ),
    )

    @property
    def amount(self) -> Money:
        return Money(self.amount_minor, self.currency)

    @property
    def fee_amount(self) -> Money:
        return Money(self.fee_amount_minor, self.currency)

    @property
    def net_amount(self) -> Money:
        return Money(self.net_amount_minor, self.currency)

    @property
    def refund_amount(self) -> Money:
        return Money(self.refund_amount_minor or 0, self.currency)

    def snapshot(self) -> dict:
        return {
            "id": str(self.id),
            "batch_id": str(self.batch_id),
            "gateway_reference": self.gateway_reference,
            "amount_minor": self.amount_minor,
            "currency": self.currency.value,
            "refund_amount_minor": self.refund_amount_minor,
            "chargeback": self.chargeback,
            "match_status": self.match_status.value,
            "matched_payment_id": str(self.matched_payment_id) if self.matched_payment_id else None,
        }

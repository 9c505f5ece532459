"""
Modelo de lectura de pagos internos

Los pagos pertenecen al subsistema de ventas; la conciliación sólo los lee y
los referencia por id desde SettlementRecord.matched_payment_id.
"""
from app.database.database import Base
from sqlalchemy import Column, String, DateTime, BigInteger, Enum, Uuid, Index
from uuid import uuid4
from app.common.mixins import CreatedAtMixin
from app.common.money import Currency, Money
import enum


class PaymentStatus(enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REFUNDED = "REFUNDED"


class Payment(Base, CreatedAtMixin):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(Enum(Currency), nullable=False)
    occurred_at = Column(DateTime, nullable=False, index=True)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.APPROVED, index=True)
    gateway = Column(String(20), nullable=True)
    external_reference = Column(String(100), nullable=True)

    __table_args__ = (
        Index("idx_payments_currency_amount", "currency", "amount_minor"),
    )

    @property
    def amount(self) -> Money:
        return Money(self.amount_minor, self.currency)

"""
Pagos internos (modelo de lectura para la conciliación)
"""

from .models import Payment, PaymentStatus

__all__ = ["Payment", "PaymentStatus"]

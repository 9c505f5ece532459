"""
Tipo valor Money

Importe exacto en unidades menores (centavos) más su moneda. Toda la
aritmética de caja y conciliación pasa por aquí: nunca float, nunca mezcla de
monedas.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import enum

from app.common.exceptions import CurrencyMismatchError


class Currency(str, enum.Enum):
    ARS = "ARS"
    USD = "USD"


MINOR_UNITS_PER_MAJOR = 100
MAX_MINOR_UNITS = 2 ** 63 - 1  # BIGINT con signo de la base


@dataclass(frozen=True)
class Money:
    amount_minor_units: int
    currency: Currency

    def __post_init__(self):
        if isinstance(self.amount_minor_units, bool) or not isinstance(self.amount_minor_units, int):
            raise TypeError(f"amount_minor_units debe ser int, no {type(self.amount_minor_units).__name__}")
        if not isinstance(self.currency, Currency):
            object.__setattr__(self, "currency", Currency(self.currency))

    @classmethod
    def zero(cls, currency) -> "Money":
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, amount, currency) -> "Money":
        """
        Convertir un importe en unidades mayores ("1234.56") a Money.

        No redondea: más de dos decimales es un error. Un importe que no entra
        en un BIGINT también es un error.
        """
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Importe inválido: {amount!r}") from e
        if not value.is_finite():
            raise ValueError(f"Importe inválido: {amount!r}")
        minor = value * MINOR_UNITS_PER_MAJOR
        if minor != minor.to_integral_value():
            raise ValueError(f"Importe con más de dos decimales: {amount!r}")
        if abs(minor) > MAX_MINOR_UNITS:
            raise ValueError(f"Importe fuera de rango: {amount!r}")
        return cls(int(minor), currency)

    def to_decimal(self) -> Decimal:
        return (Decimal(self.amount_minor_units) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))

    def _check_currency(self, other: "Money"):
        if not isinstance(other, Money):
            raise TypeError(f"No se puede operar Money con {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(
                f"Operación entre monedas distintas: {self.currency.value} y {other.currency.value}",
                entity="Money",
            )

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount_minor_units + other.amount_minor_units, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount_minor_units - other.amount_minor_units, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount_minor_units, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_minor_units < other.amount_minor_units

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_minor_units <= other.amount_minor_units

    def __gt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_minor_units > other.amount_minor_units

    def __ge__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_minor_units >= other.amount_minor_units

    @property
    def is_zero(self) -> bool:
        return self.amount_minor_units == 0

    def __str__(self) -> str:
        return f"{self.to_decimal()} {self.currency.value}"

"""
Validadores y parsers para formatos de archivos de liquidación (Argentina)
"""
import re
import unicodedata
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any


def normalize_header(header: Any) -> str:
    """
    Normaliza un encabezado de columna para compararlo.
    "Nro. Operación" -> "nrooperacion", "GROSS_AMOUNT" -> "grossamount"
    """
    text = unicodedata.normalize("NFKD", str(header or ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r'[^0-9a-z]', '', text.lower())


def parse_amount(value: Any) -> Decimal:
    """
    Interpreta un importe en unidades mayores.
    Formatos válidos:
    - 1234.56 / 1234,56
    - 1.234,56 (argentino) / 1,234.56
    - $ 1.234,56
    - Decimal / int ya numéricos
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Importe inválido: {value!r}")
    if isinstance(value, (Decimal, int)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))

    cleaned = re.sub(r'[\s\$]', '', str(value))
    if not cleaned or not re.match(r'^[+-]?[0-9.,]+$', cleaned):
        raise ValueError(f"Importe inválido: {value!r}")

    if ',' in cleaned and '.' in cleaned:
        # El último separador es el decimal
        if cleaned.rfind(',') > cleaned.rfind('.'):
            cleaned = cleaned.replace('.', '').replace(',', '.')
        else:
            cleaned = cleaned.replace(',', '')
    elif ',' in cleaned:
        if cleaned.count(',') > 1:
            cleaned = cleaned.replace(',', '')
        else:
            cleaned = cleaned.replace(',', '.')
    elif cleaned.count('.') > 1:
        cleaned = cleaned.replace('.', '')

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Importe inválido: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Importe inválido: {value!r}")
    return amount


_DATE_FORMATS = (
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%Y-%m-%d %H:%M:%S",
)


def parse_datetime(value: Any) -> datetime:
    """
    Interpreta una fecha de liquidación y la devuelve en UTC naive.
    Acepta ISO 8601 (con o sin zona, "Z" incluido) y dd/mm/aaaa [hh:mm[:ss]].
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("Fecha vacía")
        parsed = None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            raise ValueError(f"Fecha inválida: {value!r}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


_TRUE_FLAGS = {"true", "1", "si", "s", "yes", "y", "x"}
_FALSE_FLAGS = {"false", "0", "no", "n"}


def parse_flag(value: Any) -> bool:
    """Interpreta una marca sí/no ("Sí", "true", "1", "X"); vacío es False"""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    text = normalize_header(value)
    if not text or text in _FALSE_FLAGS:
        return False
    if text in _TRUE_FLAGS:
        return True
    raise ValueError(f"Marca inválida: {value!r}")

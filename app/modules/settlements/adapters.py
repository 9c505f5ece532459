"""
Adaptadores de formato por pasarela

Cada pasarela tiene una función que convierte su payload crudo (CSV o feed
estructurado) en borradores canónicos {gateway_reference, amount, fee_amount,
refund_amount, chargeback, settled_at}. Una pasarela sin adaptador se
rechaza en el borde.

Las filas ilegibles no abortan el lote: se devuelven como ImportFormatError
con su número de fila.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import csv
import io
import json

from app.common.exceptions import ImportFormatError
from app.common.money import MAX_MINOR_UNITS, Currency, Money
from app.common.validators import normalize_header, parse_amount, parse_datetime, parse_flag
from app.core.config import settings
from app.modules.settlements.models import SettlementGateway, SettlementSource


@dataclass(frozen=True)
class SettlementDraft:
    row: int
    gateway_reference: str
    amount: Money
    fee_amount: Money
    refund_amount: Money
    chargeback: bool
    settled_at: datetime


@dataclass
class ParsedPayload:
    source: SettlementSource
    drafts: List[SettlementDraft] = field(default_factory=list)
    errors: List[ImportFormatError] = field(default_factory=list)
    rows_read: int = 0


MAX_REFERENCE_LENGTH = 100

# ===== COLUMNAS =====

GENERIC_COLUMNS = {
    "reference": ("externalid", "id", "reference", "gatewayreference"),
    "amount": ("grossamount", "amount"),
    "fee": ("feeamount", "fee"),
    "settled_at": ("settledat", "date"),
    "currency": ("currency",),
    "refund": ("refundamount", "refund"),
    "chargeback": ("chargeback",),
}

MP_COLUMNS = {
    "reference": ("sourceid",) + GENERIC_COLUMNS["reference"],
    "amount": ("transactionamount",) + GENERIC_COLUMNS["amount"],
    "fee": ("mpfeeamount",) + GENERIC_COLUMNS["fee"],
    "settled_at": ("moneyreleasedate", "dateapproved") + GENERIC_COLUMNS["settled_at"],
    "currency": ("currencyid",) + GENERIC_COLUMNS["currency"],
    "refund": ("transactionamountrefunded", "refundedamount") + GENERIC_COLUMNS["refund"],
    "chargeback": GENERIC_COLUMNS["chargeback"],
}

GETNET_COLUMNS = {
    "reference": ("nrooperacion", "numerooperacion", "nrodeoperacion", "idtransaccion") + GENERIC_COLUMNS["reference"],
    "amount": ("importebruto", "montobruto", "importe") + GENERIC_COLUMNS["amount"],
    "fee": ("arancel", "comision") + GENERIC_COLUMNS["fee"],
    "settled_at": ("fechapago", "fechadepago", "fechaliquidacion") + GENERIC_COLUMNS["settled_at"],
    "currency": ("moneda",) + GENERIC_COLUMNS["currency"],
    "refund": ("devolucion", "importedevuelto", "montodevuelto") + GENERIC_COLUMNS["refund"],
    "chargeback": ("contracargo",) + GENERIC_COLUMNS["chargeback"],
}


def _decode(raw: Any) -> str:
    if isinstance(raw, bytes):
        for encoding in ("utf-8-sig", "latin-1"):
            try:
                return raw.decode(encoding)
            except UnicodeDecodeError:
                continue
    if isinstance(raw, str):
        return raw.lstrip("\ufeff")
    raise ImportFormatError("El payload debe ser texto o bytes", entity="SettlementBatch")


def _pick(row: Dict[str, Any], aliases: Iterable[str]) -> Optional[Any]:
    for alias in aliases:
        value = row.get(alias)
        if value not in (None, ""):
            return value
    return None


def _draft_from_row(row_number: int, row: Dict[str, Any], columns: Dict[str, Tuple[str, ...]],
                    default_currency: Currency) -> SettlementDraft:
    """Arma un borrador desde una fila con encabezados normalizados; ValueError si no se puede"""
    reference = _pick(row, columns["reference"])
    if reference is None or not str(reference).strip():
        raise ValueError("Falta la referencia de la pasarela")
    reference = str(reference).strip()
    if len(reference) > MAX_REFERENCE_LENGTH:
        raise ValueError(f"Referencia de más de {MAX_REFERENCE_LENGTH} caracteres")

    currency_value = _pick(row, columns["currency"])
    try:
        currency = Currency(str(currency_value).strip().upper()) if currency_value else default_currency
    except ValueError:
        raise ValueError(f"Moneda no soportada: {currency_value!r}")

    amount_value = _pick(row, columns["amount"])
    if amount_value is None:
        raise ValueError("Falta el importe")
    amount = Money.from_decimal(parse_amount(amount_value), currency)

    fee_value = row.get("__fee_total") if "__fee_total" in row else _pick(row, columns["fee"])
    fee = Money.from_decimal(abs(parse_amount(fee_value)), currency) if fee_value is not None else Money.zero(currency)

    settled_value = _pick(row, columns["settled_at"])
    if settled_value is None:
        raise ValueError("Falta la fecha de liquidación")
    settled_at = parse_datetime(settled_value)

    refund_value = _pick(row, columns["refund"])
    refund = Money.from_decimal(abs(parse_amount(refund_value)), currency) if refund_value is not None else Money.zero(currency)
    chargeback = parse_flag(_pick(row, columns["chargeback"]))

    if abs(amount.amount_minor_units - fee.amount_minor_units) > MAX_MINOR_UNITS:
        raise ValueError("Importe neto fuera de rango")

    return SettlementDraft(
        row=row_number,
        gateway_reference=reference,
        amount=amount,
        fee_amount=fee,
        refund_amount=refund,
        chargeback=chargeback,
        settled_at=settled_at,
    )


def _collect(rows: Iterable[Dict[str, Any]], columns, default_currency: Optional[Currency],
             source: SettlementSource) -> ParsedPayload:
    """Filas sin moneda toman default_currency o, si no se indica, DEFAULT_CURRENCY"""
    default_currency = Currency(default_currency) if default_currency else Currency(settings.DEFAULT_CURRENCY)
    parsed = ParsedPayload(source=source)
    for row_number, row in enumerate(rows, start=1):
        parsed.rows_read += 1
        try:
            parsed.drafts.append(_draft_from_row(row_number, row, columns, default_currency))
        except ValueError as e:
            parsed.errors.append(ImportFormatError(str(e), entity="SettlementRecord", row=row_number))
    return parsed


def _csv_rows(text: str) -> List[Dict[str, Any]]:
    lines = text.splitlines()
    header_line = next((line for line in lines if line.strip()), None)
    if header_line is None:
        raise ImportFormatError("El archivo CSV está vacío", entity="SettlementBatch")
    delimiter = ';' if header_line.count(';') > header_line.count(',') else ','

    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    try:
        header = None
        rows = []
        for values in reader:
            if not any(v.strip() for v in values):
                continue
            if header is None:
                header = [normalize_header(h) for h in values]
                continue
            rows.append({header[i]: v.strip() for i, v in enumerate(values) if i < len(header)})
    except csv.Error as e:
        raise ImportFormatError(f"CSV ilegible: {e}", entity="SettlementBatch")
    return rows


def _mp_feed_rows(items: List[Any]) -> List[Dict[str, Any]]:
    rows = []
    for item in items:
        if not isinstance(item, dict):
            rows.append({})
            continue
        row = {normalize_header(k): v for k, v in item.items() if not isinstance(v, (dict, list))}
        if item.get("status") == "charged_back" and "chargeback" not in row:
            row["chargeback"] = True
        fee_details = item.get("fee_details")
        if isinstance(fee_details, list) and "feeamount" not in row:
            try:
                row["__fee_total"] = sum(
                    (abs(parse_amount(d.get("amount"))) for d in fee_details if isinstance(d, dict)),
                    Decimal("0"),
                )
            except ValueError:
                row["__fee_total"] = "invalid"
        rows.append(row)
    return rows


def parse_mp_payload(raw: Any, default_currency: Optional[Currency] = None) -> ParsedPayload:
    """
    Mercado Pago: feed JSON (lista o {"results": [...]}) o CSV de liberaciones.
    """
    if isinstance(raw, (list, dict)):
        payload = raw
    else:
        text = _decode(raw).strip()
        if not text.startswith(("[", "{")):
            return _collect(_csv_rows(text), MP_COLUMNS, default_currency, SettlementSource.CSV)
        try:
            payload = json.loads(text, parse_float=Decimal)
        except json.JSONDecodeError as e:
            raise ImportFormatError(f"Feed de Mercado Pago ilegible: {e}", entity="SettlementBatch")

    if isinstance(payload, dict):
        payload = payload.get("results")
    if not isinstance(payload, list):
        raise ImportFormatError("El feed de Mercado Pago debe contener una lista de resultados",
                                entity="SettlementBatch")
    return _collect(_mp_feed_rows(payload), MP_COLUMNS, default_currency, SettlementSource.FEED)


def parse_getnet_payload(raw: Any, default_currency: Optional[Currency] = None) -> ParsedPayload:
    """Getnet: CSV con separador ';' o ',' y números en formato argentino."""
    if isinstance(raw, (list, dict)):
        raise ImportFormatError("Getnet sólo admite archivos CSV", entity="SettlementBatch")
    return _collect(_csv_rows(_decode(raw)), GETNET_COLUMNS, default_currency, SettlementSource.CSV)


ADAPTERS: Dict[SettlementGateway, Callable[..., ParsedPayload]] = {
    SettlementGateway.MP: parse_mp_payload,
    SettlementGateway.GETNET: parse_getnet_payload,
}


def get_adapter(gateway: Any) -> Callable[..., ParsedPayload]:
    try:
        gateway = SettlementGateway(gateway)
    except ValueError:
        raise ImportFormatError(f"Pasarela desconocida: {gateway!r}", entity="SettlementBatch")
    adapter = ADAPTERS.get(gateway)
    if adapter is None:
        raise ImportFormatError(f"Pasarela sin adaptador: {gateway.value}", entity="SettlementBatch")
    return adapter

# api/services/normalizer.py
"""
Row Normalizer: raw tabular rows -> StandardLineItem.

Two strategies:
  1. Legacy layout (fixed SAP-style columns: Vendor, Invoice, Invoice Date,
     Service Month, Line Item, QTY, Unit Price, Total Price, Paid).
  2. Generic layout: a ColumnMapping is inferred, either by an external
     classifier or by the column-name heuristic below, then applied
     together with a list of declarative transform rules.

Everything here is a pure function of its inputs, apart from the single
optional classifier call in normalize_rows().
"""

import math
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import structlog
from dateutil import parser as date_parser

from api.schemas.imports import (
    ColumnMapping,
    MappingResult,
    RawRow,
    StandardLineItem,
    TransformRule,
)

logger = structlog.get_logger()

Classifier = Callable[[List[str], List[RawRow]], Awaitable[MappingResult]]

CLASSIFIER_SAMPLE_SIZE = 10
TWO_DIGIT_YEAR_PIVOT = 50

MONTH_ABBREVIATIONS = [
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
]

LEGACY_COLUMNS = {
    "vendor": "vendor",
    "invoice": "invoice",
    "invoice_date": "invoice date",
    "service_month": "service month",
    "line_item": "line item",
    "quantity": "qty",
    "unit_price": "unit price",
    "total_price": "total price",
    "paid": "paid",
}

# Known description typos in vendor exports.
_DESCRIPTION_FIXES = [
    (re.compile(r"Microsoft 65\b"), "Microsoft 365"),
]

_BLANK_AMOUNT_RE = re.compile(r"^[\s-]*$")
_AMOUNT_STRIP_RE = re.compile(r'[$"()\s,]')
_PERIOD_RE = re.compile(
    r"(\d{1,2}/\d{1,2}/\d{2,4})\s*-\s*(\d{1,2}/\d{1,2}/\d{2,4})\s*$"
)
_WHITESPACE_RE = re.compile(r"\s+")


class ImportValidationError(Exception):
    """Malformed import payload. Raised before any ledger access."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class NormalizationResult:
    line_items: List[StandardLineItem]
    mapping: MappingResult


# ---------------------------------------------------------------------------
# Scalar parsers
# ---------------------------------------------------------------------------


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_currency(value: Any) -> float:
    """
    Parse an export currency cell.

    Handles "25,202.04", "(1,234.56)", "$(12.00)", "-1,234.56", "$12.00"
    and blank or dash placeholders ("", "-", "  -  "), which all map to 0.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) if math.isfinite(value) else 0.0

    trimmed = _cell(value)
    if _BLANK_AMOUNT_RE.match(trimmed):
        return 0.0

    negative = "(" in trimmed or trimmed.startswith(("-", '"-', "$-", "-$"))
    cleaned = _AMOUNT_STRIP_RE.sub("", trimmed).lstrip("-")
    try:
        amount = float(cleaned)
    except ValueError:
        return 0.0
    if not math.isfinite(amount):
        return 0.0
    return -abs(amount) if negative else amount


def parse_quantity(value: Any) -> float:
    trimmed = _cell(value)
    if trimmed in ("", "-"):
        return 1.0
    try:
        quantity = float(trimmed.replace(",", ""))
    except ValueError:
        return 1.0
    return quantity if math.isfinite(quantity) else 1.0


def _expand_year(year: str) -> int:
    value = int(year)
    if len(year) == 2:
        return 1900 + value if value >= TWO_DIGIT_YEAR_PIVOT else 2000 + value
    return value


def parse_date(value: Any) -> str:
    """Parse a legacy M/D/YY (or M/D/YYYY) date into ISO YYYY-MM-DD.

    Values that are not slash dates are returned trimmed but otherwise
    untouched.
    """
    trimmed = _cell(value)
    if not trimmed:
        return ""

    parts = trimmed.split("/")
    if len(parts) != 3 or not all(p.strip().isdigit() for p in parts):
        return trimmed

    month, day, year = (p.strip() for p in parts)
    try:
        return date(_expand_year(year), int(month), int(day)).isoformat()
    except ValueError:
        return trimmed


def parse_flexible_date(value: Any) -> str:
    """Best-effort ISO date for the generic path. Unknown formats pass through."""
    trimmed = _cell(value)
    if not trimmed:
        return ""

    try:
        return date_parser.parse(trimmed).date().isoformat()
    except (ValueError, OverflowError):
        return trimmed


def to_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def month_name_from_date(value: str) -> str:
    parsed = to_date(value)
    return MONTH_ABBREVIATIONS[parsed.month - 1] if parsed else ""


_YEAR_RE = re.compile(r"\b(\d{4})\b")


def parse_service_month(service_month: str, default_year: Optional[int]) -> Optional[date]:
    """First day of a service month ("Apr", "April", "Apr 2025").

    The year comes from the value when present, else `default_year`
    (the invoice's year).
    """
    text = _cell(service_month)
    if len(text) < 3:
        return None
    prefix = text[:3].title()
    if prefix not in MONTH_ABBREVIATIONS:
        return None
    year_match = _YEAR_RE.search(text)
    year = int(year_match.group(1)) if year_match else default_year
    if year is None:
        return None
    return date(year, MONTH_ABBREVIATIONS.index(prefix) + 1, 1)


def vendor_logo_url(vendor_name: str) -> str:
    domain = _WHITESPACE_RE.sub("", vendor_name).lower()
    return f"https://www.google.com/s2/favicons?domain={domain}.com&sz=128"


# ---------------------------------------------------------------------------
# Descriptions and keys
# ---------------------------------------------------------------------------


def normalize_for_matching(text: str) -> str:
    """Lowercase, collapse internal whitespace, trim."""
    return _WHITESPACE_RE.sub(" ", (text or "").lower()).strip()


def fix_description(description: str) -> str:
    fixed = description
    for pattern, replacement in _DESCRIPTION_FIXES:
        fixed = pattern.sub(replacement, fixed)
    return fixed


def extract_period_from_description(description: str) -> Optional[Tuple[str, str]]:
    """Return (period_start, period_end) for a trailing "M/D/YY-M/D/YY" range."""
    match = _PERIOD_RE.search(description or "")
    if not match:
        return None
    start, end = parse_date(match.group(1)), parse_date(match.group(2))
    if not to_date(start) or not to_date(end):
        return None
    return start, end


def clean_service_name(description: str) -> str:
    """Description without its trailing service period, used as the catalog name."""
    stripped = _PERIOD_RE.sub("", description or "")
    stripped = _WHITESPACE_RE.sub(" ", stripped).strip()
    stripped = stripped.rstrip(" -:,")
    return stripped or _WHITESPACE_RE.sub(" ", (description or "")).strip()


def format_key_number(value: float) -> str:
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def generate_line_item_key(
    invoice_number: str,
    description: str,
    service_month: str,
    quantity: float,
    unit_price: float,
    total_price: float,
) -> str:
    # total_price keeps offsetting charge/credit pairs with the same
    # description apart.
    return "|".join(
        [
            invoice_number,
            normalize_for_matching(description),
            service_month,
            format_key_number(quantity),
            format_key_number(unit_price),
            format_key_number(total_price),
        ]
    )


def line_item_key(item: StandardLineItem) -> str:
    return generate_line_item_key(
        item.invoice_number,
        item.description,
        item.service_month,
        item.quantity,
        item.unit_price,
        item.total_price,
    )


# ---------------------------------------------------------------------------
# Legacy layout
# ---------------------------------------------------------------------------


def collect_headers(rows: Iterable[RawRow]) -> List[str]:
    headers: List[str] = []
    seen = set()
    for row in rows:
        for key in row.keys():
            if key not in seen:
                seen.add(key)
                headers.append(key)
    return headers


def is_legacy_format(headers: List[str]) -> bool:
    lower = [h.lower().strip() for h in headers]
    return "vendor" in lower and "invoice" in lower and any("line item" in h for h in lower)


def _legacy_column_index(headers: List[str]) -> Dict[str, str]:
    """Map logical legacy columns to the actual (possibly space-padded) header."""
    by_normalized = {h.lower().strip(): h for h in headers}
    return {
        logical: by_normalized[name]
        for logical, name in LEGACY_COLUMNS.items()
        if name in by_normalized
    }


def parse_legacy_rows(rows: List[RawRow], headers: Optional[List[str]] = None) -> List[StandardLineItem]:
    headers = headers or collect_headers(rows)
    columns = _legacy_column_index(headers)
    if "total_price" not in columns:
        raise ImportValidationError(
            "MISSING_REQUIRED_COLUMNS",
            "Legacy invoice export is missing the 'Total Price' column",
        )

    def get(row: RawRow, logical: str) -> str:
        column = columns.get(logical)
        return _cell(row.get(column)) if column else ""

    items: List[StandardLineItem] = []
    for row in rows:
        vendor = get(row, "vendor")
        invoice_number = get(row, "invoice")
        description = fix_description(get(row, "line_item"))
        if not (vendor and invoice_number and description):
            continue

        total_price = parse_currency(row.get(columns["total_price"]))
        if total_price == 0:
            continue

        paid_value = get(row, "paid")
        is_voided = paid_value.lower() == "voided"
        period = extract_period_from_description(description)

        items.append(
            StandardLineItem(
                vendor=vendor,
                invoice_number=invoice_number,
                invoice_date=parse_date(get(row, "invoice_date")),
                service_month=get(row, "service_month"),
                description=description,
                quantity=parse_quantity(get(row, "quantity")),
                unit_price=parse_currency(get(row, "unit_price")),
                total_price=total_price,
                paid_date=None if is_voided else (parse_date(paid_value) or None),
                is_voided=is_voided,
                period_start=period[0] if period else None,
                period_end=period[1] if period else None,
            )
        )
    return items


# ---------------------------------------------------------------------------
# Generic layout: heuristic mapping
# ---------------------------------------------------------------------------

_HEURISTIC_PATTERNS: Dict[str, List[str]] = {
    "vendor": ["vendor", "merchant", "clean merchant", "supplier", "payee"],
    "invoice_number": ["invoice", "invoice number", "invoice #", "reference", "ref"],
    "invoice_date": ["date", "invoice date", "transaction date", "posted"],
    "service_month": ["service month", "period", "billing period"],
    "description": ["line item", "description", "desc", "memo", "narrative"],
    "quantity": ["qty", "quantity", "units"],
    "unit_price": ["unit price", "price", "rate"],
    "total_price": ["total", "amount", "total price", "cost"],
    "paid_date": ["paid", "payment date", "cleared"],
    "status": ["status", "state", "approval"],
    "notes": ["notes", "comment", "memo", "remarks"],
    "category": ["category", "expense", "type", "class"],
    "transaction_id": ["transaction id", "trans id", "id"],
}


# Substring matches containing these terms are not taken for the field.
_EXCLUDED_TERMS: Dict[str, Tuple[str, ...]] = {
    "invoice_number": ("date",),
}


def _header_contains(header: str, pattern: str) -> bool:
    # Short patterns ("id", "ref", "qty") must match a whole word.
    if len(pattern) <= 3:
        return re.search(rf"\b{re.escape(pattern)}\b", header) is not None
    return pattern in header


def _find_column(
    field: str, headers: List[str], lower_headers: List[str], patterns: List[str]
) -> Optional[str]:
    for pattern in patterns:
        if pattern in lower_headers:
            return headers[lower_headers.index(pattern)]
    excluded = _EXCLUDED_TERMS.get(field, ())
    for pattern in patterns:
        for idx, header in enumerate(lower_headers):
            if any(term in header for term in excluded):
                continue
            if _header_contains(header, pattern):
                return headers[idx]
    return None


def heuristic_mapping(headers: List[str], sample_rows: List[RawRow]) -> MappingResult:
    """Deterministic column-name mapping. Always produces a result."""
    lower_headers = [h.lower().strip() for h in headers]

    has_invoice = any("invoice" in h for h in lower_headers)
    has_line_item = any("line item" in h for h in lower_headers)
    has_merchant = any("merchant" in h for h in lower_headers)
    has_transaction = any("transaction" in h for h in lower_headers)

    if has_invoice and has_line_item:
        format_type = "invoice"
    elif has_merchant or has_transaction:
        format_type = "transaction"
    else:
        format_type = "unknown"

    mapping = ColumnMapping(
        **{
            field: _find_column(field, headers, lower_headers, patterns)
            for field, patterns in _HEURISTIC_PATTERNS.items()
        }
    )

    rules: List[TransformRule] = []
    if mapping.total_price and sample_rows:
        first_amount = _cell(sample_rows[0].get(mapping.total_price))
        if "-" in first_amount or "(" in first_amount:
            rules.append(
                TransformRule(
                    field="total_price",
                    rule="abs_value",
                    description="Convert negative amounts to positive",
                )
            )

    return ensure_default_rules(
        MappingResult(
            format_type=format_type,
            confidence=0.3 if format_type == "unknown" else 0.7,
            mapping=mapping,
            transform_rules=rules,
            reasoning=f"Heuristic detection: {format_type} format based on column names",
            source="heuristic",
        )
    )


# ---------------------------------------------------------------------------
# Generic layout: transform rules
# ---------------------------------------------------------------------------

RULE_ALIASES = {
    "abs_value": "abs_value",
    "absolute_value": "abs_value",
    "negate_if_negative": "abs_value",
    "generate_invoice_number": "generate_invoice_number",
    "generate_from_date_vendor": "generate_invoice_number",
    "generate_from_date_vendor_amount": "generate_invoice_number",
    "derive_service_month": "derive_service_month",
    "service_month_from_date": "derive_service_month",
}


def ensure_default_rules(result: MappingResult) -> MappingResult:
    """Add the rules every generic import needs but a classifier may omit."""
    rules = list(result.transform_rules)
    present = {RULE_ALIASES.get(r.rule) for r in rules}
    mapping = result.mapping

    if (
        "generate_invoice_number" not in present
        and not mapping.invoice_number
        and not mapping.transaction_id
    ):
        rules.append(
            TransformRule(
                field="invoice_number",
                rule="generate_invoice_number",
                description="Generate invoice number from date + vendor + amount",
            )
        )
    if "derive_service_month" not in present and not mapping.service_month:
        rules.append(
            TransformRule(
                field="service_month",
                rule="derive_service_month",
                description="Derive service month from invoice date",
            )
        )
    return result.model_copy(update={"transform_rules": rules})


def _rule_abs_value(fields: Dict[str, Any], field: str, row_number: int) -> None:
    if isinstance(fields.get(field), (int, float)):
        fields[field] = abs(fields[field])


def _rule_generate_invoice_number(fields: Dict[str, Any], field: str, row_number: int) -> None:
    if fields.get("invoice_number"):
        return
    invoice_date = fields.get("invoice_date") or ""
    vendor = fields.get("vendor_raw") or ""
    if invoice_date or vendor:
        vendor_prefix = _WHITESPACE_RE.sub("", vendor[:10])
        fields["invoice_number"] = (
            f"{invoice_date}-{vendor_prefix}-{abs(fields.get('total_price', 0)):.0f}"
        )


def _rule_derive_service_month(fields: Dict[str, Any], field: str, row_number: int) -> None:
    if not fields.get("service_month"):
        fields["service_month"] = month_name_from_date(fields.get("invoice_date") or "")


_RULES: Dict[str, Callable[[Dict[str, Any], str, int], None]] = {
    "abs_value": _rule_abs_value,
    "generate_invoice_number": _rule_generate_invoice_number,
    "derive_service_month": _rule_derive_service_month,
}


def apply_transform_rules(fields: Dict[str, Any], rules: List[TransformRule], row_number: int) -> None:
    for rule in rules:
        handler = _RULES.get(RULE_ALIASES.get(rule.rule, ""))
        if handler is None:
            continue
        handler(fields, rule.field, row_number)


def unknown_rules(rules: List[TransformRule]) -> List[str]:
    return [r.rule for r in rules if r.rule not in RULE_ALIASES]


def _parse_magnitude(value: str) -> float:
    return abs(parse_currency(value))


def transform_to_standard(rows: List[RawRow], result: MappingResult) -> List[StandardLineItem]:
    """Apply a mapping and its transform rules to every row.

    Amounts are sign-normalized to their positive magnitude. Rows whose
    total resolves to exactly zero are dropped.
    """
    mapping = result.mapping
    rules = result.transform_rules

    def get(row: RawRow, field: str) -> str:
        column = getattr(mapping, field)
        return _cell(row.get(column)) if column else ""

    items: List[StandardLineItem] = []
    for idx, row in enumerate(rows):
        row_number = idx + 1
        vendor = get(row, "vendor")
        invoice_date = parse_flexible_date(get(row, "invoice_date"))
        notes = get(row, "notes")
        category = get(row, "category")
        transaction_id = get(row, "transaction_id")
        status = get(row, "status").lower()
        paid_raw = get(row, "paid_date")

        description = fix_description(
            get(row, "description") or notes or category or vendor or f"Transaction {row_number}"
        )
        quantity_raw = get(row, "quantity")
        try:
            quantity = float(quantity_raw.replace(",", "")) if quantity_raw else 1.0
        except ValueError:
            quantity = 1.0
        if not math.isfinite(quantity) or quantity == 0:
            quantity = 1.0

        fields: Dict[str, Any] = {
            "vendor_raw": vendor,
            "invoice_number": get(row, "invoice_number") or transaction_id,
            "invoice_date": invoice_date,
            "service_month": get(row, "service_month"),
            "unit_price": _parse_magnitude(get(row, "unit_price")),
            "total_price": _parse_magnitude(get(row, "total_price")),
        }
        apply_transform_rules(fields, rules, row_number)

        if fields["total_price"] == 0:
            continue

        is_voided = "void" in status or "cancel" in status
        is_paid = (
            "paid" in status
            or "approved" in status
            or "cleared" in status
            or bool(paid_raw)
        )
        paid_date = None
        if is_paid and not is_voided:
            paid_date = parse_flexible_date(paid_raw) or invoice_date or None

        period = extract_period_from_description(description)

        items.append(
            StandardLineItem(
                vendor=vendor or "Unknown Vendor",
                invoice_number=fields["invoice_number"] or f"ROW-{row_number}",
                invoice_date=invoice_date,
                service_month=fields["service_month"],
                description=description,
                quantity=quantity,
                unit_price=fields["unit_price"],
                total_price=fields["total_price"],
                paid_date=paid_date,
                is_voided=is_voided,
                period_start=period[0] if period else None,
                period_end=period[1] if period else None,
                notes=notes or None,
                category=category or None,
                transaction_id=transaction_id or None,
            )
        )
    return items


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def validate_rows(rows: Any) -> List[RawRow]:
    if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
        raise ImportValidationError(
            "INVALID_CSV_DATA", "csv_data must be an array of row objects"
        )
    return rows


async def resolve_mapping(
    headers: List[str],
    rows: List[RawRow],
    classifier: Optional[Classifier] = None,
) -> MappingResult:
    """Infer the generic-layout mapping. Never blocks on classifier failure."""
    if classifier is None:
        return heuristic_mapping(headers, rows[:CLASSIFIER_SAMPLE_SIZE])
    try:
        result = await classifier(headers, rows[:CLASSIFIER_SAMPLE_SIZE])
    except Exception as e:
        logger.warning("column_classifier_failed", error=str(e))
        return heuristic_mapping(headers, rows[:CLASSIFIER_SAMPLE_SIZE])
    return ensure_default_rules(result)


async def normalize_rows(
    rows: List[RawRow],
    headers: Optional[List[str]] = None,
    classifier: Optional[Classifier] = None,
    mapping: Optional[MappingResult] = None,
) -> NormalizationResult:
    """
    Normalize raw rows into canonical line items.

    A previously resolved `mapping` (e.g. from the analyze step) is reused
    as-is so that batched execution classifies a file only once.
    """
    rows = validate_rows(rows)
    headers = headers or collect_headers(rows)

    if mapping is None and is_legacy_format(headers):
        items = parse_legacy_rows(rows, headers)
        result = MappingResult(
            format_type="invoice",
            confidence=1.0,
            reasoning="Legacy invoice export layout",
            source="legacy",
        )
        logger.info("rows_normalized", format="legacy", rows=len(rows), line_items=len(items))
        return NormalizationResult(line_items=items, mapping=result)

    if mapping is not None and mapping.source == "legacy":
        items = parse_legacy_rows(rows, headers)
        return NormalizationResult(line_items=items, mapping=mapping)

    if mapping is not None:
        result = ensure_default_rules(mapping)
    else:
        result = await resolve_mapping(headers, rows, classifier)
    if not result.mapping.total_price:
        raise ImportValidationError(
            "MISSING_REQUIRED_COLUMNS",
            "No amount column could be identified in the import",
        )

    ignored = unknown_rules(result.transform_rules)
    if ignored:
        logger.warning("transform_rules_ignored", rules=ignored)

    items = transform_to_standard(rows, result)
    logger.info(
        "rows_normalized",
        format=result.format_type,
        source=result.source,
        confidence=result.confidence,
        rows=len(rows),
        line_items=len(items),
    )
    return NormalizationResult(line_items=items, mapping=result)

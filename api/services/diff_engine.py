# api/services/diff_engine.py
"""
Diff Engine: incoming ParsedInvoice vs existing ledger invoice.

Line-item matching, in priority order:
  1. Exact key: invoice_number | normalized description | quantity | unit price
  2. Fallback: normalized description only
Each existing line item is claimed by at most one incoming item. Existing
items left unclaimed are reported as REMOVED (only when the invoice already
exists and the incoming invoice is not voided).

Default selection: NEW, CHANGED and VOIDED line items are selected;
UNCHANGED and REMOVED are not.
"""

from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog

from api.config import settings
from api.schemas.imports import (
    ExistingInvoiceSummary,
    ExistingLineItemSnapshot,
    FieldDiff,
    ImportAnalysis,
    ImportSummary,
    IncomingInvoiceSummary,
    IncomingLineItemSnapshot,
    InvoiceDiff,
    InvoiceDiffStats,
    LineItemDiff,
    MappingResult,
    MergeStrategy,
    ParsedInvoice,
    RawRow,
    StandardLineItem,
    VendorAnalysis,
    VoidedAction,
)
from api.services.invoice_grouper import group_by_invoice
from api.services.ledger import Ledger
from api.services.normalizer import (
    MONTH_ABBREVIATIONS,
    Classifier,
    format_key_number,
    generate_line_item_key,
    line_item_key,
    normalize_for_matching,
    normalize_rows,
)

logger = structlog.get_logger()

AMOUNT_EPSILON = 0.01
LOW_CONFIDENCE_THRESHOLD = 0.5

DEFAULT_SELECTION = {
    "NEW": True,
    "CHANGED": True,
    "VOIDED": True,
    "UNCHANGED": False,
    "REMOVED": False,
}


def _decimal(value: Any) -> Decimal:
    # str() keeps the shortest repr, so 2.01 - 2.00 is exactly one cent.
    return Decimal(str(value))


def amounts_equal(a: float, b: float, epsilon: float = AMOUNT_EPSILON) -> bool:
    return abs(_decimal(a) - _decimal(b)) < _decimal(epsilon)


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value)


def existing_match_key(invoice_number: str, description: str, quantity: float, unit_price: float) -> str:
    return "|".join(
        [
            invoice_number,
            normalize_for_matching(description),
            format_key_number(quantity),
            format_key_number(unit_price),
        ]
    )


def compare_line_items(existing: Any, incoming: StandardLineItem) -> List[FieldDiff]:
    """Every field that differs by at least one cent, in a fixed order."""
    diffs: List[FieldDiff] = []
    pairs = (
        ("quantity", existing.quantity, incoming.quantity),
        ("unit_price", existing.unit_price, incoming.unit_price),
        ("total_amount", existing.total_amount, incoming.total_price),
    )
    for field, old, new in pairs:
        if not amounts_equal(old or 0, new or 0):
            diffs.append(FieldDiff(field=field, existing_value=old, new_value=new))
    return diffs


def _existing_snapshot(item: Any) -> ExistingLineItemSnapshot:
    return ExistingLineItemSnapshot(
        id=str(item.id) if item.id is not None else None,
        quantity=float(item.quantity or 0),
        unit_price=float(item.unit_price or 0),
        total_amount=float(item.total_amount or 0),
        period_start=_iso(item.period_start),
        period_end=_iso(item.period_end),
    )


def _incoming_snapshot(item: StandardLineItem) -> IncomingLineItemSnapshot:
    return IncomingLineItemSnapshot(
        quantity=item.quantity,
        unit_price=item.unit_price,
        total_amount=item.total_price,
        service_month=item.service_month,
    )


def _removed_key(invoice_number: str, item: Any) -> str:
    billing_month = getattr(item, "billing_month", None)
    month = MONTH_ABBREVIATIONS[billing_month.month - 1] if billing_month else ""
    return generate_line_item_key(
        invoice_number,
        item.description,
        month,
        float(item.quantity or 0),
        float(item.unit_price or 0),
        float(item.total_amount or 0),
    )


def diff_invoice(
    parsed: ParsedInvoice,
    existing_invoice: Optional[Any],
    existing_items: Sequence[Any],
    merge_strategy: MergeStrategy = "csv_wins",
    voided_action: VoidedAction = "skip",
) -> InvoiceDiff:
    by_key: Dict[str, List[Any]] = defaultdict(list)
    by_description: Dict[str, List[Any]] = defaultdict(list)
    for item in existing_items:
        by_key[
            existing_match_key(
                parsed.invoice_number,
                item.description,
                float(item.quantity or 0),
                float(item.unit_price or 0),
            )
        ].append(item)
        by_description[normalize_for_matching(item.description)].append(item)

    claimed = set()

    def claim(candidates: List[Any]) -> Optional[Any]:
        for candidate in candidates:
            if id(candidate) not in claimed:
                claimed.add(id(candidate))
                return candidate
        return None

    line_diffs: List[LineItemDiff] = []
    stats = InvoiceDiffStats()

    for item in parsed.line_items:
        match = claim(
            by_key.get(
                existing_match_key(
                    parsed.invoice_number, item.description, item.quantity, item.unit_price
                ),
                [],
            )
        ) or claim(by_description.get(normalize_for_matching(item.description), []))

        field_diffs: List[FieldDiff] = []
        if parsed.is_voided:
            diff_type = "VOIDED"
            stats.voided_line_items += 1
        elif match is None:
            diff_type = "NEW"
            stats.new_line_items += 1
        else:
            field_diffs = compare_line_items(match, item)
            if field_diffs:
                diff_type = "CHANGED"
                stats.changed_line_items += 1
            else:
                diff_type = "UNCHANGED"
                stats.unchanged_line_items += 1

        line_diffs.append(
            LineItemDiff(
                diff_type=diff_type,
                line_item_key=line_item_key(item),
                description=item.description,
                existing=_existing_snapshot(match) if match is not None else None,
                incoming=_incoming_snapshot(item),
                field_diffs=field_diffs,
                selected=DEFAULT_SELECTION[diff_type],
                merge_strategy=merge_strategy,
            )
        )

    if existing_invoice is not None and not parsed.is_voided:
        for item in existing_items:
            if id(item) in claimed:
                continue
            stats.removed_line_items += 1
            line_diffs.append(
                LineItemDiff(
                    diff_type="REMOVED",
                    line_item_key=_removed_key(parsed.invoice_number, item),
                    description=item.description,
                    existing=_existing_snapshot(item),
                    incoming=None,
                    selected=DEFAULT_SELECTION["REMOVED"],
                    merge_strategy=merge_strategy,
                )
            )

    if parsed.is_voided:
        invoice_type = "VOIDED"
    elif existing_invoice is None:
        invoice_type = "NEW"
    elif stats.new_line_items or stats.changed_line_items:
        invoice_type = "CHANGED"
    else:
        invoice_type = "UNCHANGED"

    selected = any(d.selected for d in line_diffs)
    if invoice_type == "VOIDED":
        selected = selected and voided_action == "import_unpaid"

    existing_summary = None
    if existing_invoice is not None:
        existing_summary = ExistingInvoiceSummary(
            id=str(existing_invoice.id),
            invoice_date=_iso(existing_invoice.invoice_date),
            total_amount=float(existing_invoice.total_amount or 0),
            status=existing_invoice.status,
            line_item_count=len(existing_items),
        )

    return InvoiceDiff(
        diff_type=invoice_type,
        invoice_number=parsed.invoice_number,
        vendor=parsed.vendor,
        existing=existing_summary,
        incoming=IncomingInvoiceSummary(
            invoice_date=parsed.invoice_date,
            total_amount=parsed.total_amount,
            is_voided=parsed.is_voided,
            paid_date=parsed.paid_date,
            line_item_count=len(parsed.line_items),
        ),
        line_item_diffs=line_diffs,
        stats=stats,
        selected=selected,
        merge_strategy=merge_strategy,
        voided_action=voided_action if invoice_type == "VOIDED" else None,
    )


async def diff_invoices(
    ledger: Ledger,
    invoices: List[ParsedInvoice],
    merge_strategy: MergeStrategy = "csv_wins",
    voided_action: Optional[VoidedAction] = None,
) -> List[InvoiceDiff]:
    voided_action = voided_action or settings.IMPORT_VOIDED_DEFAULT_ACTION
    diffs = []
    for parsed in invoices:
        existing = await ledger.find_invoice_by_number(parsed.invoice_number)
        existing_items = (
            await ledger.list_invoice_line_items(existing.id) if existing is not None else []
        )
        diffs.append(
            diff_invoice(parsed, existing, existing_items, merge_strategy, voided_action)
        )
    return diffs


def summarize(diffs: List[InvoiceDiff]) -> ImportSummary:
    summary = ImportSummary(total_invoices=len(diffs))
    for diff in diffs:
        if diff.diff_type == "NEW":
            summary.new_invoices += 1
        elif diff.diff_type == "CHANGED":
            summary.updated_invoices += 1
        elif diff.diff_type == "UNCHANGED":
            summary.unchanged_invoices += 1
        elif diff.diff_type == "VOIDED":
            summary.voided_invoices += 1

        summary.total_line_items += diff.incoming.line_item_count if diff.incoming else 0
        summary.new_line_items += diff.stats.new_line_items
        summary.changed_line_items += diff.stats.changed_line_items
        summary.unchanged_line_items += diff.stats.unchanged_line_items
        summary.removed_line_items += diff.stats.removed_line_items
        summary.voided_line_items += diff.stats.voided_line_items
    return summary


def _collect_warnings(
    invoices: List[ParsedInvoice], diffs: List[InvoiceDiff], mapping: MappingResult
) -> List[str]:
    warnings: List[str] = []

    voided = [d for d in diffs if d.diff_type == "VOIDED"]
    if voided:
        warnings.append(
            f"{len(voided)} invoice(s) are pending or voided and are skipped "
            "unless explicitly imported"
        )

    for parsed in invoices:
        credits = [i for i in parsed.line_items if i.total_price < 0]
        if credits:
            warnings.append(
                f"Invoice {parsed.invoice_number} ({parsed.vendor}) has "
                f"{len(credits)} credit/adjustment line(s) totalling "
                f"{sum(i.total_price for i in credits):.2f}"
            )

    if mapping.source != "legacy" and mapping.confidence < LOW_CONFIDENCE_THRESHOLD:
        warnings.append(
            f"Column mapping confidence is low ({mapping.confidence:.1f}); "
            "review the detected columns before importing"
        )
    return warnings


async def analyze_import(
    ledger: Ledger,
    rows: List[RawRow],
    classifier: Optional[Classifier] = None,
    filename: Optional[str] = None,
    mapping: Optional[MappingResult] = None,
    merge_strategy: MergeStrategy = "csv_wins",
    voided_action: Optional[VoidedAction] = None,
) -> ImportAnalysis:
    """
    Normalize, group and diff an import against the ledger. Read-only.
    """
    normalized = await normalize_rows(rows, classifier=classifier, mapping=mapping)
    invoices = group_by_invoice(normalized.line_items)
    diffs = await diff_invoices(ledger, invoices, merge_strategy, voided_action)

    vendors: Dict[str, VendorAnalysis] = {}
    for parsed in invoices:
        key = parsed.vendor.strip().lower()
        if key not in vendors:
            existing_vendor = await ledger.find_vendor_by_name(parsed.vendor)
            vendors[key] = VendorAnalysis(
                name=parsed.vendor, is_new=existing_vendor is None, invoice_count=0
            )
        vendors[key].invoice_count += 1

    summary = summarize(diffs)
    logger.info(
        "import_analyzed",
        filename=filename,
        format_type=normalized.mapping.format_type,
        invoices=summary.total_invoices,
        new_invoices=summary.new_invoices,
        updated_invoices=summary.updated_invoices,
        voided_invoices=summary.voided_invoices,
    )

    return ImportAnalysis(
        filename=filename or "import.csv",
        analyzed_at=datetime.utcnow().isoformat(),
        format_type=normalized.mapping.format_type,
        mapping=normalized.mapping,
        summary=summary,
        vendors=list(vendors.values()),
        invoice_diffs=diffs,
        warnings=_collect_warnings(invoices, diffs, normalized.mapping),
    )

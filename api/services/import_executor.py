# api/services/import_executor.py
"""
Batched Executor: apply ImportDecisions to the ledger.

Per invoice (sequential within a batch):
  1. Skip when the decision says skip, or the invoice is voided and the
     decision is not an explicit import.
  2. Find-or-create the vendor (case-insensitive name).
  3. Find-or-create the vendor's master subscription.
  4. Existing invoice + csv_wins: update the header and delete its line
     items; keep_existing / skip: leave it untouched. An invoice number
     already used by another vendor fails the invoice.
  5. Upsert one catalog service per clean description (fuzzy name match,
     pricing gated by invoice date).
  6. Insert line items linked to the resolved services.

Each invoice runs in its own savepoint. A failing invoice is recorded in
BatchResult.errors and the batch carries on with the next one.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog

from api.config import settings
from api.schemas.imports import (
    BatchResult,
    ImportDecision,
    ImportExecutionResult,
    InvoiceError,
    MappingResult,
    MergeStrategy,
    ParsedInvoice,
    RawRow,
    StandardLineItem,
)
from api.services.decisions import default_decisions
from api.services.diff_engine import diff_invoices
from api.services.invoice_grouper import count_batches, group_by_invoice, slice_batch
from api.services.ledger import Ledger
from api.services.matching_service import (
    ServiceCandidate,
    is_newer_pricing,
    match_service,
)
from api.services.normalizer import (
    Classifier,
    clean_service_name,
    line_item_key,
    normalize_rows,
    parse_service_month,
    to_date,
    vendor_logo_url,
)

logger = structlog.get_logger()


class InvoiceConflictError(Exception):
    """An incoming invoice number is already used by a different vendor."""


@dataclass
class ExecutionContext:
    """Vendors and subscriptions resolved within one execute call."""

    vendors: Dict[str, Any] = field(default_factory=dict)
    subscriptions: Dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        return dict(self.vendors), dict(self.subscriptions)

    def restore(self, snapshot: Tuple[Dict[str, Any], Dict[str, Any]]) -> None:
        self.vendors, self.subscriptions = dict(snapshot[0]), dict(snapshot[1])


def merge_batch_counts(target: Any, delta: BatchResult) -> None:
    for group in ("created", "updated", "skipped"):
        totals = getattr(target, group)
        for name, value in getattr(delta, group):
            setattr(totals, name, getattr(totals, name) + value)


async def _resolve_vendor(ledger: Ledger, ctx: ExecutionContext, name: str, delta: BatchResult):
    key = name.strip().lower()
    if key in ctx.vendors:
        return ctx.vendors[key]

    vendor = await ledger.find_vendor_by_name(name)
    if vendor is None:
        vendor = await ledger.create_vendor(name=name.strip(), logo_url=vendor_logo_url(name))
        delta.created.vendors += 1
        logger.info("vendor_created", vendor_id=str(vendor.id), name=vendor.name)
    ctx.vendors[key] = vendor
    return vendor


async def _resolve_subscription(ledger: Ledger, ctx: ExecutionContext, vendor, delta: BatchResult):
    key = str(vendor.id)
    if key in ctx.subscriptions:
        return ctx.subscriptions[key]

    subscription = await ledger.find_latest_subscription_by_vendor(vendor.id)
    if subscription is None:
        subscription = await ledger.create_subscription(
            vendor.id, f"{vendor.name} Master Agreement", logo_url=vendor.logo_url
        )
        delta.created.subscriptions += 1
        logger.info(
            "subscription_created",
            subscription_id=str(subscription.id),
            vendor_id=key,
        )
    ctx.subscriptions[key] = subscription
    return subscription


async def upsert_services(
    ledger: Ledger,
    subscription_id,
    items: List[StandardLineItem],
    invoice_date,
    currency: str,
    delta: BatchResult,
) -> Dict[str, Any]:
    """
    Resolve each clean description to a catalog service. Returns clean
    name -> service id.

    Services are priced as one aggregated unit (quantity 1, unit price = the
    total of every description on this invoice that resolves to it).
    Existing pricing is only replaced by an invoice dated on or after its
    price_as_of.
    """
    aggregates: Dict[str, float] = {}
    for item in items:
        name = clean_service_name(item.description)
        aggregates[name] = aggregates.get(name, 0.0) + item.total_price

    catalog = [
        ServiceCandidate(
            id=s.id,
            name=s.name,
            current_quantity=s.current_quantity,
            current_unit_price=s.current_unit_price,
            price_as_of=s.price_as_of,
        )
        for s in await ledger.list_services(subscription_id)
    ]

    # Resolve every name first; names that fuzzy-match the same service
    # are priced as one aggregate.
    resolved: Dict[str, ServiceCandidate] = {}
    totals: Dict[int, float] = {}
    targets: List[Tuple[ServiceCandidate, bool]] = []
    for name, total in aggregates.items():
        candidate = match_service(name, catalog)
        if candidate is None:
            candidate = ServiceCandidate(id=None, name=name)
            catalog.append(candidate)
            targets.append((candidate, True))
        elif id(candidate) not in totals:
            targets.append((candidate, False))
        resolved[name] = candidate
        totals[id(candidate)] = totals.get(id(candidate), 0.0) + total

    for candidate, is_new in targets:
        amount = round(totals[id(candidate)], 2)
        if is_new:
            service = await ledger.create_service(
                subscription_id, candidate.name, 1, amount, currency, invoice_date
            )
            candidate.id = service.id
            candidate.price_as_of = invoice_date
            delta.created.services += 1
        elif is_newer_pricing(candidate, invoice_date):
            await ledger.update_service_pricing(candidate.id, 1, amount, invoice_date)
            candidate.current_quantity = 1
            candidate.current_unit_price = amount
            candidate.price_as_of = invoice_date
            delta.updated.services += 1

    return {name: candidate.id for name, candidate in resolved.items()}


def _selected_items(
    parsed: ParsedInvoice, decision: Optional[ImportDecision], writes_all: bool
) -> List[StandardLineItem]:
    # A decision without line-item entries applies to the whole invoice.
    if writes_all or decision is None or not decision.line_item_decisions:
        return list(parsed.line_items)
    actions = {d.line_item_key: d.action for d in decision.line_item_decisions}
    return [i for i in parsed.line_items if actions.get(line_item_key(i)) == "import"]


async def _process_invoice(
    ledger: Ledger,
    ctx: ExecutionContext,
    parsed: ParsedInvoice,
    decision: Optional[ImportDecision],
    global_strategy: MergeStrategy,
    currency: str,
) -> BatchResult:
    delta = BatchResult()

    def skip_invoice() -> BatchResult:
        delta.skipped.invoices += 1
        delta.skipped.line_items += len(parsed.line_items)
        return delta

    if decision is not None and decision.action == "skip":
        return skip_invoice()
    if parsed.is_voided and (decision is None or decision.action != "import"):
        return skip_invoice()

    strategy = (decision.merge_strategy if decision else None) or global_strategy
    if strategy == "skip":
        return skip_invoice()

    invoice = await ledger.find_invoice_by_number(parsed.invoice_number)
    if invoice is not None and strategy == "keep_existing":
        return skip_invoice()

    # The existing line items are about to be deleted, so every incoming item
    # is rewritten regardless of line-item selection.
    updating = invoice is not None
    items = _selected_items(parsed, decision, writes_all=updating)
    delta.skipped.line_items += len(parsed.line_items) - len(items)
    if not items and not updating:
        delta.skipped.line_items = 0
        return skip_invoice()

    invoice_date = to_date(parsed.invoice_date)
    header = {
        "invoice_date": invoice_date,
        "paid_date": to_date(parsed.paid_date),
        "total_amount": parsed.total_amount,
        "status": "Paid" if parsed.paid_date else "Pending",
    }

    async with ledger.atomic():
        vendor = await _resolve_vendor(ledger, ctx, parsed.vendor, delta)
        subscription = await _resolve_subscription(ledger, ctx, vendor, delta)

        if updating and str(invoice.vendor_id) != str(vendor.id):
            raise InvoiceConflictError(
                f"Invoice {parsed.invoice_number} already belongs to another vendor"
            )

        if updating:
            await ledger.update_invoice(invoice.id, **header)
            removed = await ledger.delete_invoice_line_items(invoice.id)
            delta.updated.invoices += 1
            logger.info(
                "invoice_updated",
                invoice_number=parsed.invoice_number,
                removed_line_items=removed,
            )
        else:
            invoice = await ledger.create_invoice(
                invoice_number=parsed.invoice_number,
                vendor_id=vendor.id,
                subscription_id=subscription.id,
                currency=currency,
                **header,
            )
            delta.created.invoices += 1

        service_ids = await upsert_services(
            ledger, subscription.id, items, invoice_date, currency, delta
        )

        default_year = invoice_date.year if invoice_date else None
        rows = [
            {
                "invoice_id": invoice.id,
                "service_id": service_ids.get(clean_service_name(item.description)),
                "description": item.description,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total_amount": item.total_price,
                "period_start": to_date(item.period_start),
                "period_end": to_date(item.period_end),
                "billing_month": parse_service_month(item.service_month, default_year),
            }
            for item in items
        ]
        written = await ledger.add_line_items(rows) if rows else 0

    if updating:
        delta.updated.line_items += written
    else:
        delta.created.line_items += written
    return delta


async def execute_batch(
    ledger: Ledger,
    invoices: List[ParsedInvoice],
    decisions: Optional[List[ImportDecision]] = None,
    global_strategy: MergeStrategy = "csv_wins",
    batch_index: int = 0,
    batch_size: Optional[int] = None,
    total_batches: Optional[int] = None,
) -> BatchResult:
    """
    Apply one batch of grouped invoices.

    `invoices` is the full ordered invoice list of the import; the batch is
    the slice [batch_index * batch_size, +batch_size).
    """
    batch_size = batch_size or settings.IMPORT_BATCH_SIZE
    if total_batches is None:
        total_batches = count_batches(len(invoices), batch_size)
    batch = slice_batch(invoices, batch_index, batch_size)

    result = BatchResult(
        batch_index=batch_index,
        total_batches=total_batches,
        processed_in_batch=len(batch),
    )
    decision_map = {d.invoice_number: d for d in decisions or []}
    currency = settings.IMPORT_DEFAULT_CURRENCY
    ctx = ExecutionContext()

    for parsed in batch:
        snapshot = ctx.snapshot()
        try:
            delta = await _process_invoice(
                ledger,
                ctx,
                parsed,
                decision_map.get(parsed.invoice_number),
                global_strategy,
                currency,
            )
        except Exception as e:
            # Savepoint already rolled back; drop ids created inside it.
            ctx.restore(snapshot)
            logger.error(
                "import_invoice_failed",
                invoice_number=parsed.invoice_number,
                vendor=parsed.vendor,
                batch_index=batch_index,
                error=str(e),
                exc_info=True,
            )
            result.errors.append(
                InvoiceError(
                    vendor=parsed.vendor,
                    invoice_number=parsed.invoice_number,
                    message=str(e),
                )
            )
            continue
        merge_batch_counts(result, delta)

    result.success = not result.errors
    logger.info(
        "import_batch_executed",
        batch_index=batch_index,
        total_batches=total_batches,
        processed=len(batch),
        created_invoices=result.created.invoices,
        updated_invoices=result.updated.invoices,
        skipped_invoices=result.skipped.invoices,
        errors=len(result.errors),
    )
    return result


async def execute_rows(
    ledger: Ledger,
    rows: List[RawRow],
    decisions: Optional[List[ImportDecision]] = None,
    global_strategy: MergeStrategy = "csv_wins",
    batch_index: int = 0,
    batch_size: Optional[int] = None,
    total_batches: Optional[int] = None,
    classifier: Optional[Classifier] = None,
    mapping: Optional[MappingResult] = None,
) -> BatchResult:
    """Batch entry point over raw rows: normalize, group, execute one batch."""
    normalized = await normalize_rows(rows, classifier=classifier, mapping=mapping)
    invoices = group_by_invoice(normalized.line_items)
    return await execute_batch(
        ledger,
        invoices,
        decisions,
        global_strategy,
        batch_index,
        batch_size,
        total_batches,
    )


async def run_import(
    ledger: Ledger,
    rows: List[RawRow],
    decisions: Optional[List[ImportDecision]] = None,
    global_strategy: MergeStrategy = "csv_wins",
    batch_size: Optional[int] = None,
    start_batch: int = 0,
    max_batches: Optional[int] = None,
    classifier: Optional[Classifier] = None,
    mapping: Optional[MappingResult] = None,
) -> ImportExecutionResult:
    """
    Run every batch from `start_batch` sequentially, committing after each.

    Without `decisions`, they are derived from a fresh analysis using the
    default selection policy. With `max_batches`, the run stops early and
    reports `next_batch` so the caller can resume.
    """
    normalized = await normalize_rows(rows, classifier=classifier, mapping=mapping)
    invoices = group_by_invoice(normalized.line_items)

    if decisions is None:
        diffs = await diff_invoices(ledger, invoices, global_strategy)
        decisions = default_decisions(diffs, global_strategy)

    batch_size = batch_size or settings.IMPORT_BATCH_SIZE
    total = count_batches(len(invoices), batch_size)
    outcome = ImportExecutionResult(total_batches=total)

    batch_index = start_batch
    while batch_index < total:
        if max_batches is not None and outcome.batches_run >= max_batches:
            outcome.next_batch = batch_index
            break
        batch = await execute_batch(
            ledger, invoices, decisions, global_strategy, batch_index, batch_size, total
        )
        await ledger.commit()
        merge_batch_counts(outcome, batch)
        outcome.errors.extend(str(e) for e in batch.errors)
        outcome.batches_run += 1
        batch_index += 1

    outcome.success = not outcome.errors
    logger.info(
        "import_run_finished",
        batches_run=outcome.batches_run,
        total_batches=total,
        next_batch=outcome.next_batch,
        errors=len(outcome.errors),
    )
    return outcome

"""
Unit tests for api/services/import_executor.py

Runs the executor against the in-memory ledger from conftest, which gives
each invoice savepoint the same rollback behaviour as the SQL ledger.
"""

from datetime import date

import pytest

from api.schemas.imports import ImportDecision
from api.services.decisions import build_decisions
from api.services.diff_engine import diff_invoices
from api.services.import_executor import execute_rows, run_import
from api.services.invoice_grouper import group_by_invoice
from api.services.normalizer import normalize_rows


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _diffs(ledger, rows, voided_action="skip"):
    normalized = await normalize_rows(rows)
    return await diff_invoices(
        ledger, group_by_invoice(normalized.line_items), voided_action=voided_action
    )


def _vendor(ledger, name):
    return next(v for v in ledger.vendors.values() if v.name == name)


def _service(ledger, name):
    return next(s for s in ledger.services.values() if s.name == name)


def _invoice(ledger, number):
    return next(i for i in ledger.invoices.values() if i.invoice_number == number)


# ---------------------------------------------------------------------------
# First import
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_import_creates_everything(ledger, legacy_rows):
    result = await run_import(ledger, legacy_rows)

    assert result.success is True
    assert result.batches_run == 1
    assert result.total_batches == 1
    assert result.next_batch is None
    assert result.created.vendors == 2
    assert result.created.subscriptions == 2
    assert result.created.invoices == 2
    assert result.created.services == 3
    assert result.created.line_items == 3
    assert ledger.commits == 1


@pytest.mark.asyncio
async def test_first_import_record_contents(ledger, legacy_rows):
    await run_import(ledger, legacy_rows)

    acme = _vendor(ledger, "Acme Inc")
    assert acme.logo_url == "https://www.google.com/s2/favicons?domain=acmeinc.com&sz=128"
    subscriptions = [s for s in ledger.subscriptions.values() if s.vendor_id == acme.id]
    assert [s.name for s in subscriptions] == ["Acme Inc Master Agreement"]

    inv100 = _invoice(ledger, "INV-100")
    assert inv100.status == "Paid"
    assert inv100.paid_date == date(2025, 4, 20)
    assert inv100.invoice_date == date(2025, 4, 5)
    assert inv100.total_amount == 350
    assert inv100.subscription_id == subscriptions[0].id

    widget = ledger.items_for_invoice("INV-100")[0]
    assert widget.period_start == date(2025, 4, 1)
    assert widget.period_end == date(2025, 4, 30)
    assert widget.billing_month == date(2025, 4, 1)
    assert widget.service_id == _service(ledger, "Widget Support").id

    gx7 = _invoice(ledger, "GX-7")
    assert gx7.status == "Pending"
    assert gx7.paid_date is None
    assert ledger.items_for_invoice("GX-7")[0].billing_month == date(2025, 3, 1)

    service = _service(ledger, "Microsoft 365 Business Basic")
    assert service.current_quantity == 1
    assert service.current_unit_price == 60
    assert service.price_as_of == date(2025, 3, 1)


@pytest.mark.asyncio
async def test_existing_vendor_is_reused_case_insensitively(ledger, legacy_rows):
    ledger.seed_vendor("ACME INC")
    result = await run_import(ledger, legacy_rows)

    assert result.created.vendors == 1
    assert len(ledger.vendors) == 2


# ---------------------------------------------------------------------------
# Re-import and strategies
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reimport_with_default_decisions_changes_nothing(ledger, legacy_rows):
    await run_import(ledger, legacy_rows)
    result = await run_import(ledger, legacy_rows)

    assert result.created.invoices == 0
    assert result.updated.invoices == 0
    assert result.skipped.invoices == 2
    assert len(ledger.line_items) == 3
    assert len(ledger.services) == 3


@pytest.mark.asyncio
async def test_csv_wins_reimport_is_idempotent(ledger, legacy_rows):
    await run_import(ledger, legacy_rows)
    decisions = [
        ImportDecision(invoice_number="INV-100", action="import"),
        ImportDecision(invoice_number="GX-7", action="import"),
    ]

    result = await run_import(ledger, legacy_rows, decisions=decisions)

    assert result.updated.invoices == 2
    assert result.updated.line_items == 3
    assert result.created.vendors == 0
    assert result.created.services == 0
    assert len(ledger.vendors) == 2
    assert len(ledger.subscriptions) == 2
    assert len(ledger.invoices) == 2
    assert len(ledger.line_items) == 3
    assert len(ledger.services) == 3


@pytest.mark.asyncio
async def test_csv_wins_rewrites_all_lines_of_existing_invoice(ledger, legacy_row, legacy_rows):
    await run_import(ledger, legacy_rows)
    rows = [{**legacy_row, " Total Price ": "110.00"}, legacy_rows[1]]
    diffs = await _diffs(ledger, rows)
    widget_key = diffs[0].line_item_diffs[0].line_item_key

    result = await run_import(ledger, rows, decisions=build_decisions(diffs, {widget_key}))

    assert result.updated.invoices == 1
    assert result.updated.line_items == 2
    assert [li.total_amount for li in ledger.items_for_invoice("INV-100")] == [110, 250]
    assert _invoice(ledger, "INV-100").total_amount == 360


@pytest.mark.asyncio
async def test_keep_existing_leaves_invoice_untouched(ledger, legacy_row, legacy_rows):
    await run_import(ledger, legacy_rows)
    rows = [{**legacy_row, " Total Price ": "110.00"}, legacy_rows[1]]

    result = await run_import(ledger, rows, global_strategy="keep_existing")

    assert result.updated.invoices == 0
    assert result.skipped.invoices == 1
    assert [li.total_amount for li in ledger.items_for_invoice("INV-100")] == [100, 250]


@pytest.mark.asyncio
async def test_keep_existing_still_creates_new_invoices(ledger, legacy_rows):
    result = await run_import(ledger, legacy_rows, global_strategy="keep_existing")
    assert result.created.invoices == 2


@pytest.mark.asyncio
async def test_skip_strategy_on_decision(ledger, legacy_rows):
    decisions = [
        ImportDecision(invoice_number="INV-100", action="import", merge_strategy="skip"),
        ImportDecision(invoice_number="GX-7", action="import"),
    ]
    result = await run_import(ledger, legacy_rows, decisions=decisions)

    assert result.skipped.invoices == 1
    assert result.created.invoices == 1
    assert [i.invoice_number for i in ledger.invoices.values()] == ["GX-7"]


@pytest.mark.asyncio
async def test_unselected_lines_of_new_invoice_are_skipped(ledger, legacy_rows):
    diffs = await _diffs(ledger, legacy_rows)
    widget_key = diffs[0].line_item_diffs[0].line_item_key

    result = await run_import(ledger, legacy_rows, decisions=build_decisions(diffs, {widget_key}))

    assert result.created.invoices == 1
    assert result.created.line_items == 1
    assert result.skipped.invoices == 1
    assert result.skipped.line_items == 2
    assert [li.description for li in ledger.items_for_invoice("INV-100")] == [
        "Widget Support 4/1/25-4/30/25"
    ]


# ---------------------------------------------------------------------------
# Voided
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_voided_invoice_is_skipped_by_default(ledger, legacy_row):
    result = await run_import(ledger, [{**legacy_row, "Paid": "Voided"}])

    assert result.skipped.invoices == 1
    assert ledger.invoices == {}
    assert ledger.vendors == {}


@pytest.mark.asyncio
async def test_voided_invoice_imported_unpaid(ledger, legacy_row):
    rows = [{**legacy_row, "Paid": "Voided"}]
    diffs = await _diffs(ledger, rows)
    decisions = build_decisions(diffs, voided_actions={"INV-100": "import_unpaid"})

    result = await run_import(ledger, rows, decisions=decisions)

    assert result.created.invoices == 1
    invoice = _invoice(ledger, "INV-100")
    assert invoice.status == "Pending"
    assert invoice.paid_date is None


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failing_invoice_rolls_back_and_batch_continues(ledger, legacy_rows, monkeypatch):
    original = ledger.create_invoice

    async def flaky_create_invoice(**fields):
        if fields["invoice_number"] == "GX-7":
            raise RuntimeError("disk full")
        return await original(**fields)

    monkeypatch.setattr(ledger, "create_invoice", flaky_create_invoice)

    result = await execute_rows(ledger, legacy_rows)

    assert result.success is False
    assert [(e.invoice_number, e.message) for e in result.errors] == [("GX-7", "disk full")]
    assert result.created.invoices == 1
    # Globex was created inside the failed savepoint and rolled back with it.
    assert result.created.vendors == 1
    assert [v.name for v in ledger.vendors.values()] == ["Acme Inc"]
    assert [i.invoice_number for i in ledger.invoices.values()] == ["INV-100"]


@pytest.mark.asyncio
async def test_failed_invoice_can_be_retried(ledger, legacy_rows):
    ledger.fail_on["add_line_items"] = RuntimeError("connection reset")
    first = await run_import(ledger, legacy_rows)
    assert first.success is False
    assert len(first.errors) == 2
    assert first.errors[0].startswith("Invoice INV-100 (Acme Inc):")
    assert ledger.invoices == {}

    ledger.fail_on.clear()
    second = await run_import(ledger, legacy_rows)
    assert second.success is True
    assert second.created.invoices == 2
    assert len(ledger.line_items) == 3


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_execute_rows_processes_one_slice(ledger, legacy_rows):
    first = await execute_rows(ledger, legacy_rows, batch_index=0, batch_size=1)
    assert first.total_batches == 2
    assert first.processed_in_batch == 1
    assert [i.invoice_number for i in ledger.invoices.values()] == ["INV-100"]

    second = await execute_rows(ledger, legacy_rows, batch_index=1, batch_size=1)
    assert second.batch_index == 1
    assert sorted(i.invoice_number for i in ledger.invoices.values()) == ["GX-7", "INV-100"]

    beyond = await execute_rows(ledger, legacy_rows, batch_index=2, batch_size=1)
    assert beyond.processed_in_batch == 0


@pytest.mark.asyncio
async def test_run_import_max_batches_and_resume(ledger, legacy_rows):
    partial = await run_import(ledger, legacy_rows, batch_size=1, max_batches=1)

    assert partial.batches_run == 1
    assert partial.total_batches == 2
    assert partial.next_batch == 1
    assert ledger.commits == 1

    rest = await run_import(ledger, legacy_rows, batch_size=1, start_batch=1)
    assert rest.batches_run == 1
    assert rest.next_batch is None
    assert rest.created.invoices == 1
    assert ledger.commits == 2


# ---------------------------------------------------------------------------
# Service catalog
# ---------------------------------------------------------------------------


def _acme_row(legacy_row, invoice_number, invoice_date, total, line_item="Widget Support"):
    return {
        **legacy_row,
        "Invoice": invoice_number,
        "Invoice Date": invoice_date,
        "Line Item": line_item,
        "QTY": "1",
        " Unit Price ": total,
        " Total Price ": total,
    }


@pytest.mark.asyncio
async def test_service_pricing_only_moves_forward(ledger, legacy_row):
    await run_import(ledger, [_acme_row(legacy_row, "INV-100", "4/5/25", "100.00")])

    older = await run_import(ledger, [_acme_row(legacy_row, "INV-90", "3/5/25", "80.00")])
    service = _service(ledger, "Widget Support")
    assert older.updated.services == 0
    assert service.current_unit_price == 100
    assert service.price_as_of == date(2025, 4, 5)
    assert ledger.items_for_invoice("INV-90")[0].service_id == service.id

    newer = await run_import(ledger, [_acme_row(legacy_row, "INV-110", "5/5/25", "120.00")])
    assert newer.updated.services == 1
    assert newer.created.services == 0
    assert service.current_unit_price == 120
    assert service.price_as_of == date(2025, 5, 5)
    assert len(ledger.services) == 1


@pytest.mark.asyncio
async def test_lines_with_same_clean_name_share_one_service(ledger, legacy_row):
    rows = [
        _acme_row(legacy_row, "INV-100", "4/5/25", "100.00", "Widget Support 4/1/25-4/30/25"),
        _acme_row(legacy_row, "INV-100", "4/5/25", "40.00", "Widget Support 5/1/25-5/31/25"),
    ]
    result = await run_import(ledger, rows)

    assert result.created.services == 1
    service = _service(ledger, "Widget Support")
    assert service.current_unit_price == 140
    assert {li.service_id for li in ledger.items_for_invoice("INV-100")} == {service.id}


@pytest.mark.asyncio
async def test_fuzzy_service_match_by_containment(ledger, legacy_row):
    await run_import(ledger, [_acme_row(legacy_row, "INV-100", "4/5/25", "250.00", "Premium Hosting Plan")])
    result = await run_import(
        ledger, [_acme_row(legacy_row, "INV-101", "5/5/25", "275.00", "Premium Hosting Plan - EU")]
    )

    assert result.created.services == 0
    assert len(ledger.services) == 1
    assert _service(ledger, "Premium Hosting Plan").current_unit_price == 275


@pytest.mark.asyncio
async def test_descriptions_matching_one_service_are_priced_together(ledger, legacy_row):
    rows = [
        _acme_row(legacy_row, "INV-100", "4/5/25", "100.00", "Microsoft 365 Business Basic"),
        _acme_row(legacy_row, "INV-100", "4/5/25", "200.00", "Microsoft 365 Business Basic Annual"),
    ]
    result = await run_import(ledger, rows)

    assert result.created.services == 1
    (service,) = ledger.services.values()
    assert service.name == "Microsoft 365 Business Basic"
    assert service.current_unit_price == 300
    assert {li.service_id for li in ledger.items_for_invoice("INV-100")} == {service.id}


# ---------------------------------------------------------------------------
# Invoice ownership
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_invoice_number_owned_by_another_vendor_is_an_error(ledger, legacy_row):
    await run_import(ledger, [_acme_row(legacy_row, "INV-100", "4/5/25", "100.00")])
    acme_items = [li.id for li in ledger.items_for_invoice("INV-100")]

    other = {**_acme_row(legacy_row, "INV-100", "5/5/25", "75.00"), "Vendor": "Globex"}
    result = await execute_rows(ledger, [other])

    assert result.success is False
    assert [e.invoice_number for e in result.errors] == ["INV-100"]
    assert "another vendor" in result.errors[0].message
    assert result.updated.invoices == 0
    assert [li.id for li in ledger.items_for_invoice("INV-100")] == acme_items
    assert _invoice(ledger, "INV-100").vendor_id == _vendor(ledger, "Acme Inc").id
    assert [v.name for v in ledger.vendors.values()] == ["Acme Inc"]

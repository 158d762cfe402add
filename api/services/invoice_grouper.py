# api/services/invoice_grouper.py
"""
Invoice Grouper: fold canonical line items into per-invoice aggregates.

Invoices are keyed by (vendor, invoice_number) and keep the order in which
they first appear in the import. Line items keep their input order.
"""

from typing import Dict, List, Tuple

from api.schemas.imports import ParsedInvoice, StandardLineItem


def group_by_invoice(items: List[StandardLineItem]) -> List[ParsedInvoice]:
    groups: Dict[Tuple[str, str], List[StandardLineItem]] = {}
    for item in items:
        groups.setdefault((item.vendor, item.invoice_number), []).append(item)

    invoices: List[ParsedInvoice] = []
    for (vendor, invoice_number), members in groups.items():
        first = members[0]
        paid_date = next((m.paid_date for m in members if m.paid_date), None)
        invoices.append(
            ParsedInvoice(
                vendor=vendor,
                invoice_number=invoice_number,
                invoice_date=first.invoice_date,
                total_amount=round(sum(m.total_price for m in members), 2),
                is_voided=any(m.is_voided for m in members),
                paid_date=paid_date,
                line_items=members,
            )
        )
    return invoices


def count_batches(invoice_count: int, batch_size: int) -> int:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    return (invoice_count + batch_size - 1) // batch_size


def slice_batch(
    invoices: List[ParsedInvoice], batch_index: int, batch_size: int
) -> List[ParsedInvoice]:
    start = batch_index * batch_size
    return invoices[start : start + batch_size]

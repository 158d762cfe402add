import copy
import itertools
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from api.main import app
from api.middleware.ledger import get_import_classifier, get_ledger

_sequence = itertools.count()


@dataclass
class VendorRecord:
    name: str
    logo_url: Optional[str] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    seq: int = field(default_factory=lambda: next(_sequence))


@dataclass
class SubscriptionRecord:
    vendor_id: uuid.UUID
    name: str
    logo_url: Optional[str] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    seq: int = field(default_factory=lambda: next(_sequence))


@dataclass
class AssignmentRecord:
    subscription_id: uuid.UUID
    assignee_email: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass
class InvoiceRecord:
    invoice_number: str
    vendor_id: uuid.UUID
    subscription_id: Optional[uuid.UUID] = None
    status: str = "Pending"
    invoice_date: Optional[date] = None
    paid_date: Optional[date] = None
    total_amount: float = 0
    currency: str = "USD"
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass
class LineItemRecord:
    invoice_id: uuid.UUID
    description: str
    quantity: float = 1
    unit_price: float = 0
    total_amount: float = 0
    service_id: Optional[uuid.UUID] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    billing_month: Optional[date] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    seq: int = field(default_factory=lambda: next(_sequence))


@dataclass
class ServiceRecord:
    subscription_id: uuid.UUID
    name: str
    current_quantity: float = 1
    current_unit_price: float = 0
    currency: str = "USD"
    price_as_of: Optional[date] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    seq: int = field(default_factory=lambda: next(_sequence))


def _k(value) -> str:
    return str(value)


class InMemoryLedger:
    """Ledger fake with savepoint semantics (snapshot/restore on error)."""

    def __init__(self):
        self.vendors: Dict[str, VendorRecord] = {}
        self.subscriptions: Dict[str, SubscriptionRecord] = {}
        self.assignments: Dict[str, AssignmentRecord] = {}
        self.invoices: Dict[str, InvoiceRecord] = {}
        self.line_items: Dict[str, LineItemRecord] = {}
        self.services: Dict[str, ServiceRecord] = {}
        self.audit_logs: List[dict] = []
        self.commits = 0
        # method name -> exception raised when that method is called
        self.fail_on: Dict[str, Exception] = {}

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise self.fail_on[name]

    # --- seeding helpers ---

    def seed_vendor(self, name: str) -> VendorRecord:
        vendor = VendorRecord(name=name)
        self.vendors[_k(vendor.id)] = vendor
        return vendor

    def seed_subscription(self, vendor: VendorRecord, name: Optional[str] = None) -> SubscriptionRecord:
        sub = SubscriptionRecord(vendor_id=vendor.id, name=name or f"{vendor.name} Master Agreement")
        self.subscriptions[_k(sub.id)] = sub
        return sub

    def seed_assignment(self, subscription: SubscriptionRecord, assignee_email: str) -> AssignmentRecord:
        assignment = AssignmentRecord(subscription_id=subscription.id, assignee_email=assignee_email)
        self.assignments[_k(assignment.id)] = assignment
        return assignment

    def seed_service(self, subscription: SubscriptionRecord, name: str, **kwargs) -> ServiceRecord:
        service = ServiceRecord(subscription_id=subscription.id, name=name, **kwargs)
        self.services[_k(service.id)] = service
        return service

    def seed_invoice(self, vendor: VendorRecord, subscription: SubscriptionRecord, invoice_number: str, **kwargs) -> InvoiceRecord:
        invoice = InvoiceRecord(
            invoice_number=invoice_number,
            vendor_id=vendor.id,
            subscription_id=subscription.id,
            **kwargs,
        )
        self.invoices[_k(invoice.id)] = invoice
        return invoice

    def seed_line_item(self, invoice: InvoiceRecord, description: str, **kwargs) -> LineItemRecord:
        item = LineItemRecord(invoice_id=invoice.id, description=description, **kwargs)
        self.line_items[_k(item.id)] = item
        return item

    def items_for_invoice(self, invoice_number: str) -> List[LineItemRecord]:
        invoice = next(i for i in self.invoices.values() if i.invoice_number == invoice_number)
        return sorted(
            (li for li in self.line_items.values() if li.invoice_id == invoice.id),
            key=lambda li: li.seq,
        )

    # --- vendors / subscriptions ---

    async def find_vendor_by_name(self, name: str):
        matches = [v for v in self.vendors.values() if v.name.lower() == name.strip().lower()]
        return min(matches, key=lambda v: v.seq) if matches else None

    async def find_vendor_by_id(self, vendor_id):
        return self.vendors.get(_k(vendor_id))

    async def create_vendor(self, name: str, logo_url: Optional[str] = None):
        self._check("create_vendor")
        vendor = VendorRecord(name=name, logo_url=logo_url)
        self.vendors[_k(vendor.id)] = vendor
        return vendor

    async def rename_vendor(self, vendor_id, name: str) -> None:
        self.vendors[_k(vendor_id)].name = name

    async def find_latest_subscription_by_vendor(self, vendor_id):
        subs = [s for s in self.subscriptions.values() if _k(s.vendor_id) == _k(vendor_id)]
        return max(subs, key=lambda s: s.seq) if subs else None

    async def create_subscription(self, vendor_id, name: str, logo_url: Optional[str] = None):
        self._check("create_subscription")
        sub = SubscriptionRecord(vendor_id=vendor_id, name=name, logo_url=logo_url)
        self.subscriptions[_k(sub.id)] = sub
        return sub

    async def list_subscription_ids(self, vendor_id) -> List[uuid.UUID]:
        return [s.id for s in self.subscriptions.values() if _k(s.vendor_id) == _k(vendor_id)]

    # --- invoices / line items ---

    async def find_invoice_by_number(self, invoice_number: str):
        return next(
            (i for i in self.invoices.values() if i.invoice_number == invoice_number), None
        )

    async def create_invoice(self, **fields):
        self._check("create_invoice")
        invoice = InvoiceRecord(**fields)
        self.invoices[_k(invoice.id)] = invoice
        return invoice

    async def update_invoice(self, invoice_id, **fields) -> None:
        self._check("update_invoice")
        invoice = self.invoices[_k(invoice_id)]
        for key, value in fields.items():
            setattr(invoice, key, value)

    async def list_invoice_line_items(self, invoice_id) -> List[LineItemRecord]:
        return sorted(
            (li for li in self.line_items.values() if _k(li.invoice_id) == _k(invoice_id)),
            key=lambda li: li.seq,
        )

    async def delete_invoice_line_items(self, invoice_id) -> int:
        doomed = [k for k, li in self.line_items.items() if _k(li.invoice_id) == _k(invoice_id)]
        for key in doomed:
            del self.line_items[key]
        return len(doomed)

    async def add_line_items(self, items: List[Dict[str, Any]]) -> int:
        self._check("add_line_items")
        for item in items:
            record = LineItemRecord(**item)
            self.line_items[_k(record.id)] = record
        return len(items)

    # --- services ---

    async def list_services(self, subscription_id) -> List[ServiceRecord]:
        return sorted(
            (s for s in self.services.values() if _k(s.subscription_id) == _k(subscription_id)),
            key=lambda s: s.seq,
        )

    async def find_service_by_id(self, service_id):
        return self.services.get(_k(service_id))

    async def create_service(self, subscription_id, name, current_quantity, current_unit_price, currency, price_as_of):
        service = ServiceRecord(
            subscription_id=subscription_id,
            name=name,
            current_quantity=current_quantity,
            current_unit_price=current_unit_price,
            currency=currency,
            price_as_of=price_as_of,
        )
        self.services[_k(service.id)] = service
        return service

    async def update_service_pricing(self, service_id, current_quantity, current_unit_price, price_as_of) -> None:
        service = self.services[_k(service_id)]
        service.current_quantity = current_quantity
        service.current_unit_price = current_unit_price
        service.price_as_of = price_as_of

    # --- merge mutations ---

    async def reassign_invoices_to_vendor(self, source_vendor_id, target_vendor_id, target_subscription_id) -> int:
        moved = 0
        for invoice in self.invoices.values():
            if _k(invoice.vendor_id) == _k(source_vendor_id):
                invoice.vendor_id = target_vendor_id
                invoice.subscription_id = target_subscription_id
                moved += 1
        return moved

    async def reassign_services_to_subscription(self, subscription_ids, target_subscription_id) -> int:
        ids = {_k(i) for i in subscription_ids}
        moved = 0
        for service in self.services.values():
            if _k(service.subscription_id) in ids:
                service.subscription_id = target_subscription_id
                moved += 1
        return moved

    async def delete_assignments_by_subscription_ids(self, subscription_ids) -> int:
        ids = {_k(i) for i in subscription_ids}
        doomed = [k for k, a in self.assignments.items() if _k(a.subscription_id) in ids]
        for key in doomed:
            del self.assignments[key]
        return len(doomed)

    async def delete_subscriptions_by_ids(self, subscription_ids) -> int:
        removed = 0
        for sid in subscription_ids:
            if self.subscriptions.pop(_k(sid), None) is not None:
                removed += 1
        return removed

    async def delete_vendor(self, vendor_id) -> int:
        return 1 if self.vendors.pop(_k(vendor_id), None) is not None else 0

    async def reassign_line_items_to_service(self, source_service_id, target_service_id) -> int:
        moved = 0
        for item in self.line_items.values():
            if item.service_id is not None and _k(item.service_id) == _k(source_service_id):
                item.service_id = target_service_id
                moved += 1
        return moved

    async def delete_service(self, service_id) -> int:
        return 1 if self.services.pop(_k(service_id), None) is not None else 0

    # --- counts ---

    async def count_vendors_by_id(self, vendor_id) -> int:
        return 1 if _k(vendor_id) in self.vendors else 0

    async def count_subscriptions_by_vendor(self, vendor_id) -> int:
        return len(await self.list_subscription_ids(vendor_id))

    async def count_subscriptions_by_ids(self, subscription_ids) -> int:
        return sum(1 for sid in subscription_ids if _k(sid) in self.subscriptions)

    async def count_invoices_by_vendor(self, vendor_id) -> int:
        return sum(1 for i in self.invoices.values() if _k(i.vendor_id) == _k(vendor_id))

    async def count_services_by_subscription_ids(self, subscription_ids) -> int:
        ids = {_k(i) for i in subscription_ids}
        return sum(1 for s in self.services.values() if _k(s.subscription_id) in ids)

    async def count_services_by_id(self, service_id) -> int:
        return 1 if _k(service_id) in self.services else 0

    async def count_line_items_by_vendor(self, vendor_id) -> int:
        invoice_ids = {
            _k(i.id) for i in self.invoices.values() if _k(i.vendor_id) == _k(vendor_id)
        }
        return sum(1 for li in self.line_items.values() if _k(li.invoice_id) in invoice_ids)

    async def count_line_items_by_service(self, service_id) -> int:
        return sum(
            1 for li in self.line_items.values()
            if li.service_id is not None and _k(li.service_id) == _k(service_id)
        )

    async def sum_line_items_by_service(self, service_id) -> float:
        return sum(
            li.total_amount for li in self.line_items.values()
            if li.service_id is not None and _k(li.service_id) == _k(service_id)
        )

    # --- bookkeeping ---

    async def record_audit(self, action, entity_type, entity_id, before_state=None, after_state=None) -> None:
        self.audit_logs.append(
            {
                "action": action,
                "entity_type": entity_type,
                "entity_id": _k(entity_id),
                "before_state": before_state,
                "after_state": after_state,
            }
        )

    def _state(self):
        return (
            self.vendors,
            self.subscriptions,
            self.assignments,
            self.invoices,
            self.line_items,
            self.services,
            self.audit_logs,
        )

    @asynccontextmanager
    async def atomic(self):
        snapshot = copy.deepcopy(self._state())
        try:
            yield
        except BaseException:
            (
                self.vendors,
                self.subscriptions,
                self.assignments,
                self.invoices,
                self.line_items,
                self.services,
                self.audit_logs,
            ) = snapshot
            raise

    async def commit(self) -> None:
        self.commits += 1


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def legacy_row():
    """One row of the legacy vendor invoice export (note the padded headers)."""
    return {
        "Vendor": "Acme Inc",
        "Invoice": "INV-100",
        "Invoice Date": "4/5/25",
        "Service Month": "Apr",
        "Line Item": "Widget Support 4/1/25-4/30/25",
        "QTY": "2",
        " Unit Price ": "50.00",
        " Total Price ": "100.00",
        "Paid": "4/20/25",
    }


@pytest.fixture
def legacy_rows(legacy_row):
    return [
        legacy_row,
        {
            **legacy_row,
            "Line Item": "Premium Hosting Plan",
            "QTY": "1",
            " Unit Price ": "250.00",
            " Total Price ": "250.00",
        },
        {
            **legacy_row,
            "Vendor": "Globex",
            "Invoice": "GX-7",
            "Invoice Date": "3/1/25",
            "Service Month": "Mar",
            "Line Item": "Microsoft 65 Business Basic",
            "QTY": "10",
            " Unit Price ": "6.00",
            " Total Price ": "60.00",
            "Paid": "",
        },
    ]


@pytest.fixture
async def client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_import_classifier] = lambda: None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()

# api/services/ledger.py
"""
Ledger access for the import and merge core.

`Ledger` is the narrow set of store operations the core depends on;
`SqlLedger` implements it on an AsyncSession. The core never issues SQL
itself, so it can run against any implementation (tests use an in-memory
one). Every method flushes and leaves transaction control to the caller,
except `atomic()` (savepoint) and `commit()`.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Union

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from api.models.vendor import Vendor
from api.models.subscription import Subscription, Assignment
from api.models.service import Service
from api.models.invoice import Invoice, InvoiceLineItem
from api.services.audit_service import create_audit_log

logger = structlog.get_logger()

EntityId = Union[str, uuid.UUID]


class Ledger(Protocol):
    # --- vendors / subscriptions ---
    async def find_vendor_by_name(self, name: str) -> Optional[Any]: ...
    async def find_vendor_by_id(self, vendor_id: EntityId) -> Optional[Any]: ...
    async def create_vendor(self, name: str, logo_url: Optional[str] = None) -> Any: ...
    async def rename_vendor(self, vendor_id: EntityId, name: str) -> None: ...
    async def find_latest_subscription_by_vendor(self, vendor_id: EntityId) -> Optional[Any]: ...
    async def create_subscription(
        self, vendor_id: EntityId, name: str, logo_url: Optional[str] = None
    ) -> Any: ...
    async def list_subscription_ids(self, vendor_id: EntityId) -> List[Any]: ...

    # --- invoices / line items ---
    async def find_invoice_by_number(self, invoice_number: str) -> Optional[Any]: ...
    async def create_invoice(self, **fields: Any) -> Any: ...
    async def update_invoice(self, invoice_id: EntityId, **fields: Any) -> None: ...
    async def list_invoice_line_items(self, invoice_id: EntityId) -> List[Any]: ...
    async def delete_invoice_line_items(self, invoice_id: EntityId) -> int: ...
    async def add_line_items(self, items: List[Dict[str, Any]]) -> int: ...

    # --- service catalog ---
    async def list_services(self, subscription_id: EntityId) -> List[Any]: ...
    async def find_service_by_id(self, service_id: EntityId) -> Optional[Any]: ...
    async def create_service(
        self,
        subscription_id: EntityId,
        name: str,
        current_quantity: float,
        current_unit_price: float,
        currency: str,
        price_as_of: Optional[date],
    ) -> Any: ...
    async def update_service_pricing(
        self,
        service_id: EntityId,
        current_quantity: float,
        current_unit_price: float,
        price_as_of: Optional[date],
    ) -> None: ...

    # --- merge mutations ---
    async def reassign_invoices_to_vendor(
        self, source_vendor_id: EntityId, target_vendor_id: EntityId, target_subscription_id: EntityId
    ) -> int: ...
    async def reassign_services_to_subscription(
        self, subscription_ids: Sequence[EntityId], target_subscription_id: EntityId
    ) -> int: ...
    async def delete_assignments_by_subscription_ids(self, subscription_ids: Sequence[EntityId]) -> int: ...
    async def delete_subscriptions_by_ids(self, subscription_ids: Sequence[EntityId]) -> int: ...
    async def delete_vendor(self, vendor_id: EntityId) -> int: ...
    async def reassign_line_items_to_service(
        self, source_service_id: EntityId, target_service_id: EntityId
    ) -> int: ...
    async def delete_service(self, service_id: EntityId) -> int: ...

    # --- counts (preview and verification) ---
    async def count_vendors_by_id(self, vendor_id: EntityId) -> int: ...
    async def count_subscriptions_by_vendor(self, vendor_id: EntityId) -> int: ...
    async def count_subscriptions_by_ids(self, subscription_ids: Sequence[EntityId]) -> int: ...
    async def count_invoices_by_vendor(self, vendor_id: EntityId) -> int: ...
    async def count_services_by_subscription_ids(self, subscription_ids: Sequence[EntityId]) -> int: ...
    async def count_services_by_id(self, service_id: EntityId) -> int: ...
    async def count_line_items_by_vendor(self, vendor_id: EntityId) -> int: ...
    async def count_line_items_by_service(self, service_id: EntityId) -> int: ...
    async def sum_line_items_by_service(self, service_id: EntityId) -> float: ...

    # --- bookkeeping ---
    async def record_audit(
        self,
        action: str,
        entity_type: str,
        entity_id: EntityId,
        before_state: Optional[dict] = None,
        after_state: Optional[dict] = None,
    ) -> None: ...
    def atomic(self) -> Any: ...
    async def commit(self) -> None: ...


def _uuid(value: EntityId) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _uuids(values: Sequence[EntityId]) -> List[uuid.UUID]:
    return [_uuid(v) for v in values]


class SqlLedger:
    """Ledger on a SQLAlchemy AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _count(self, stmt) -> int:
        return (await self.session.execute(stmt)).scalar_one()

    async def _rowcount(self, stmt) -> int:
        result = await self.session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # --- vendors / subscriptions -------------------------------------------

    async def find_vendor_by_name(self, name: str) -> Optional[Vendor]:
        result = await self.session.execute(
            select(Vendor)
            .where(func.lower(Vendor.name) == name.strip().lower())
            .order_by(Vendor.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_vendor_by_id(self, vendor_id: EntityId) -> Optional[Vendor]:
        return await self.session.get(Vendor, _uuid(vendor_id))

    async def create_vendor(self, name: str, logo_url: Optional[str] = None) -> Vendor:
        vendor = Vendor(name=name, logo_url=logo_url)
        self.session.add(vendor)
        await self.session.flush()
        return vendor

    async def rename_vendor(self, vendor_id: EntityId, name: str) -> None:
        await self._rowcount(
            update(Vendor).where(Vendor.id == _uuid(vendor_id)).values(name=name)
        )

    async def find_latest_subscription_by_vendor(self, vendor_id: EntityId) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.vendor_id == _uuid(vendor_id))
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_subscription(
        self, vendor_id: EntityId, name: str, logo_url: Optional[str] = None
    ) -> Subscription:
        subscription = Subscription(
            vendor_id=_uuid(vendor_id),
            name=name,
            status="Active",
            billing_cycle="Monthly",
            payment_method="Invoice",
            logo_url=logo_url,
        )
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def list_subscription_ids(self, vendor_id: EntityId) -> List[uuid.UUID]:
        result = await self.session.execute(
            select(Subscription.id).where(Subscription.vendor_id == _uuid(vendor_id))
        )
        return list(result.scalars().all())

    # --- invoices / line items ---------------------------------------------

    async def find_invoice_by_number(self, invoice_number: str) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(Invoice.invoice_number == invoice_number)
        )
        return result.scalar_one_or_none()

    async def create_invoice(self, **fields: Any) -> Invoice:
        for key in ("vendor_id", "subscription_id"):
            if fields.get(key) is not None:
                fields[key] = _uuid(fields[key])
        invoice = Invoice(**fields)
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def update_invoice(self, invoice_id: EntityId, **fields: Any) -> None:
        invoice = await self.session.get(Invoice, _uuid(invoice_id))
        if invoice is None:
            raise LookupError(f"Invoice {invoice_id} not found")
        for key, value in fields.items():
            setattr(invoice, key, value)
        await self.session.flush()

    async def list_invoice_line_items(self, invoice_id: EntityId) -> List[InvoiceLineItem]:
        result = await self.session.execute(
            select(InvoiceLineItem)
            .where(InvoiceLineItem.invoice_id == _uuid(invoice_id))
            .order_by(InvoiceLineItem.created_at, InvoiceLineItem.id)
        )
        return list(result.scalars().all())

    async def delete_invoice_line_items(self, invoice_id: EntityId) -> int:
        return await self._rowcount(
            delete(InvoiceLineItem).where(InvoiceLineItem.invoice_id == _uuid(invoice_id))
        )

    async def add_line_items(self, items: List[Dict[str, Any]]) -> int:
        rows = []
        for item in items:
            item = dict(item)
            item["invoice_id"] = _uuid(item["invoice_id"])
            if item.get("service_id") is not None:
                item["service_id"] = _uuid(item["service_id"])
            rows.append(InvoiceLineItem(**item))
        self.session.add_all(rows)
        await self.session.flush()
        return len(rows)

    # --- service catalog ---------------------------------------------------

    async def list_services(self, subscription_id: EntityId) -> List[Service]:
        result = await self.session.execute(
            select(Service)
            .where(Service.subscription_id == _uuid(subscription_id))
            .order_by(Service.created_at, Service.id)
        )
        return list(result.scalars().all())

    async def find_service_by_id(self, service_id: EntityId) -> Optional[Service]:
        return await self.session.get(Service, _uuid(service_id))

    async def create_service(
        self,
        subscription_id: EntityId,
        name: str,
        current_quantity: float,
        current_unit_price: float,
        currency: str,
        price_as_of: Optional[date],
    ) -> Service:
        service = Service(
            subscription_id=_uuid(subscription_id),
            name=name,
            status="Active",
            current_quantity=current_quantity,
            current_unit_price=current_unit_price,
            currency=currency,
            price_as_of=price_as_of,
        )
        self.session.add(service)
        await self.session.flush()
        return service

    async def update_service_pricing(
        self,
        service_id: EntityId,
        current_quantity: float,
        current_unit_price: float,
        price_as_of: Optional[date],
    ) -> None:
        service = await self.session.get(Service, _uuid(service_id))
        if service is None:
            raise LookupError(f"Service {service_id} not found")
        service.current_quantity = current_quantity
        service.current_unit_price = current_unit_price
        service.price_as_of = price_as_of
        await self.session.flush()

    # --- merge mutations ---------------------------------------------------

    async def reassign_invoices_to_vendor(
        self, source_vendor_id: EntityId, target_vendor_id: EntityId, target_subscription_id: EntityId
    ) -> int:
        return await self._rowcount(
            update(Invoice)
            .where(Invoice.vendor_id == _uuid(source_vendor_id))
            .values(
                vendor_id=_uuid(target_vendor_id),
                subscription_id=_uuid(target_subscription_id),
            )
        )

    async def reassign_services_to_subscription(
        self, subscription_ids: Sequence[EntityId], target_subscription_id: EntityId
    ) -> int:
        if not subscription_ids:
            return 0
        return await self._rowcount(
            update(Service)
            .where(Service.subscription_id.in_(_uuids(subscription_ids)))
            .values(subscription_id=_uuid(target_subscription_id))
        )

    async def delete_assignments_by_subscription_ids(self, subscription_ids: Sequence[EntityId]) -> int:
        if not subscription_ids:
            return 0
        return await self._rowcount(
            delete(Assignment).where(Assignment.subscription_id.in_(_uuids(subscription_ids)))
        )

    async def delete_subscriptions_by_ids(self, subscription_ids: Sequence[EntityId]) -> int:
        if not subscription_ids:
            return 0
        return await self._rowcount(
            delete(Subscription).where(Subscription.id.in_(_uuids(subscription_ids)))
        )

    async def delete_vendor(self, vendor_id: EntityId) -> int:
        return await self._rowcount(delete(Vendor).where(Vendor.id == _uuid(vendor_id)))

    async def reassign_line_items_to_service(
        self, source_service_id: EntityId, target_service_id: EntityId
    ) -> int:
        return await self._rowcount(
            update(InvoiceLineItem)
            .where(InvoiceLineItem.service_id == _uuid(source_service_id))
            .values(service_id=_uuid(target_service_id))
        )

    async def delete_service(self, service_id: EntityId) -> int:
        return await self._rowcount(delete(Service).where(Service.id == _uuid(service_id)))

    # --- counts ------------------------------------------------------------

    async def count_vendors_by_id(self, vendor_id: EntityId) -> int:
        return await self._count(
            select(func.count()).select_from(Vendor).where(Vendor.id == _uuid(vendor_id))
        )

    async def count_subscriptions_by_vendor(self, vendor_id: EntityId) -> int:
        return await self._count(
            select(func.count())
            .select_from(Subscription)
            .where(Subscription.vendor_id == _uuid(vendor_id))
        )

    async def count_subscriptions_by_ids(self, subscription_ids: Sequence[EntityId]) -> int:
        if not subscription_ids:
            return 0
        return await self._count(
            select(func.count())
            .select_from(Subscription)
            .where(Subscription.id.in_(_uuids(subscription_ids)))
        )

    async def count_invoices_by_vendor(self, vendor_id: EntityId) -> int:
        return await self._count(
            select(func.count()).select_from(Invoice).where(Invoice.vendor_id == _uuid(vendor_id))
        )

    async def count_services_by_subscription_ids(self, subscription_ids: Sequence[EntityId]) -> int:
        if not subscription_ids:
            return 0
        return await self._count(
            select(func.count())
            .select_from(Service)
            .where(Service.subscription_id.in_(_uuids(subscription_ids)))
        )

    async def count_services_by_id(self, service_id: EntityId) -> int:
        return await self._count(
            select(func.count()).select_from(Service).where(Service.id == _uuid(service_id))
        )

    async def count_line_items_by_vendor(self, vendor_id: EntityId) -> int:
        return await self._count(
            select(func.count())
            .select_from(InvoiceLineItem)
            .join(Invoice, Invoice.id == InvoiceLineItem.invoice_id)
            .where(Invoice.vendor_id == _uuid(vendor_id))
        )

    async def count_line_items_by_service(self, service_id: EntityId) -> int:
        return await self._count(
            select(func.count())
            .select_from(InvoiceLineItem)
            .where(InvoiceLineItem.service_id == _uuid(service_id))
        )

    async def sum_line_items_by_service(self, service_id: EntityId) -> float:
        total = await self._count(
            select(func.coalesce(func.sum(InvoiceLineItem.total_amount), 0)).where(
                InvoiceLineItem.service_id == _uuid(service_id)
            )
        )
        return float(total)

    # --- bookkeeping -------------------------------------------------------

    async def record_audit(
        self,
        action: str,
        entity_type: str,
        entity_id: EntityId,
        before_state: Optional[dict] = None,
        after_state: Optional[dict] = None,
    ) -> None:
        await create_audit_log(
            self.session,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before_state=before_state,
            after_state=after_state,
        )

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """Savepoint: rolled back on exception, released otherwise."""
        async with self.session.begin_nested():
            yield

    async def commit(self) -> None:
        await self.session.commit()

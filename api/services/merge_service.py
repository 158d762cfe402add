# api/services/merge_service.py
"""
Vendor and service merges.

A merge moves every dependent row from the source record to the target and
then deletes the source. Each reassigning or deleting step is followed by a
read-back count (assert_postcondition). The whole merge runs in one
savepoint, so a failed check rolls everything back and the merge reports
{success: false, error}.
"""

from typing import Awaitable, Optional

import structlog

from api.schemas.merge import (
    ServiceMergePreview,
    ServiceMergeResult,
    VendorMergePreview,
    VendorMergeResult,
)
from api.services.ledger import EntityId, Ledger

logger = structlog.get_logger()


class MergeVerificationError(Exception):
    """A post-mutation count did not match the expected value."""

    def __init__(self, step: str, remaining: int, expected: int = 0):
        super().__init__(
            f"Verification failed after {step}: {remaining} row(s) remain (expected {expected})"
        )
        self.step = step
        self.remaining = remaining
        self.expected = expected


async def assert_postcondition(step: str, count: Awaitable[int], expected: int = 0) -> None:
    """Await a count query and raise MergeVerificationError unless it equals `expected`."""
    remaining = await count
    if remaining != expected:
        logger.error(
            "merge_verification_failed",
            step=step,
            remaining=remaining,
            expected=expected,
        )
        raise MergeVerificationError(step, remaining, expected)


# ---------------------------------------------------------------------------
# Vendors
# ---------------------------------------------------------------------------


async def preview_vendor_merge(ledger: Ledger, source_vendor_id: EntityId) -> VendorMergePreview:
    subscription_ids = await ledger.list_subscription_ids(source_vendor_id)
    return VendorMergePreview(
        subscriptions=await ledger.count_subscriptions_by_vendor(source_vendor_id),
        invoices=await ledger.count_invoices_by_vendor(source_vendor_id),
        services=await ledger.count_services_by_subscription_ids(subscription_ids),
        line_items=await ledger.count_line_items_by_vendor(source_vendor_id),
    )


async def merge_vendors(
    ledger: Ledger,
    source_vendor_id: EntityId,
    target_vendor_id: EntityId,
    new_name: Optional[str] = None,
) -> VendorMergeResult:
    """
    Merge the source vendor into the target.

    Invoices move to the target vendor and its master subscription, services
    move to that subscription as-is (no de-duplication by name), then the
    source's assignments, subscriptions and the vendor itself are deleted.
    """
    if str(source_vendor_id) == str(target_vendor_id):
        return VendorMergeResult(success=False, error="Cannot merge a vendor into itself")

    source = await ledger.find_vendor_by_id(source_vendor_id)
    target = await ledger.find_vendor_by_id(target_vendor_id)
    if source is None or target is None:
        return VendorMergeResult(success=False, error="Source or target vendor not found")

    source_name, original_target_name = source.name, target.name
    target_name = original_target_name
    preview = await preview_vendor_merge(ledger, source_vendor_id)

    try:
        async with ledger.atomic():
            if new_name and new_name.strip():
                await ledger.rename_vendor(target_vendor_id, new_name.strip())
                target_name = new_name.strip()

            subscription = await ledger.find_latest_subscription_by_vendor(target_vendor_id)
            if subscription is None:
                subscription = await ledger.create_subscription(
                    target_vendor_id,
                    f"{target_name} Master Agreement",
                    logo_url=target.logo_url,
                )

            source_subscription_ids = await ledger.list_subscription_ids(source_vendor_id)

            moved_invoices = await ledger.reassign_invoices_to_vendor(
                source_vendor_id, target_vendor_id, subscription.id
            )
            await assert_postcondition(
                "reassign_invoices", ledger.count_invoices_by_vendor(source_vendor_id)
            )

            moved_services = await ledger.reassign_services_to_subscription(
                source_subscription_ids, subscription.id
            )
            await assert_postcondition(
                "reassign_services",
                ledger.count_services_by_subscription_ids(source_subscription_ids),
            )

            await ledger.delete_assignments_by_subscription_ids(source_subscription_ids)
            await ledger.delete_subscriptions_by_ids(source_subscription_ids)
            await assert_postcondition(
                "delete_subscriptions",
                ledger.count_subscriptions_by_ids(source_subscription_ids),
            )

            await ledger.delete_vendor(source_vendor_id)
            await assert_postcondition(
                "delete_vendor", ledger.count_vendors_by_id(source_vendor_id)
            )

            moved = VendorMergePreview(
                subscriptions=len(source_subscription_ids),
                invoices=moved_invoices,
                services=moved_services,
                line_items=preview.line_items,
            )
            await ledger.record_audit(
                "VENDOR_MERGED",
                "vendor",
                target_vendor_id,
                before_state={
                    "source_vendor_id": str(source_vendor_id),
                    "source_name": source_name,
                    "target_name": original_target_name,
                    **preview.model_dump(),
                },
                after_state={"target_name": target_name, **moved.model_dump()},
            )
    except MergeVerificationError as e:
        return VendorMergeResult(success=False, error=str(e))
    except Exception as e:
        logger.error(
            "vendor_merge_failed",
            source_vendor_id=str(source_vendor_id),
            target_vendor_id=str(target_vendor_id),
            error=str(e),
            exc_info=True,
        )
        return VendorMergeResult(success=False, error=str(e))

    logger.info(
        "vendors_merged",
        source_vendor_id=str(source_vendor_id),
        target_vendor_id=str(target_vendor_id),
        invoices=moved.invoices,
        services=moved.services,
        line_items=moved.line_items,
    )
    return VendorMergeResult(success=True, moved=moved)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


async def preview_service_merge(ledger: Ledger, source_service_id: EntityId) -> ServiceMergePreview:
    return ServiceMergePreview(
        line_items=await ledger.count_line_items_by_service(source_service_id),
        total_amount=round(await ledger.sum_line_items_by_service(source_service_id), 2),
    )


async def merge_services(
    ledger: Ledger,
    source_service_id: EntityId,
    target_service_id: EntityId,
) -> ServiceMergeResult:
    if str(source_service_id) == str(target_service_id):
        return ServiceMergeResult(success=False, error="Cannot merge a service into itself")

    source = await ledger.find_service_by_id(source_service_id)
    target = await ledger.find_service_by_id(target_service_id)
    if source is None or target is None:
        return ServiceMergeResult(success=False, error="Source or target service not found")

    preview = await preview_service_merge(ledger, source_service_id)

    try:
        async with ledger.atomic():
            moved = await ledger.reassign_line_items_to_service(
                source_service_id, target_service_id
            )
            await assert_postcondition(
                "reassign_line_items", ledger.count_line_items_by_service(source_service_id)
            )

            await ledger.delete_service(source_service_id)
            await assert_postcondition(
                "delete_service", ledger.count_services_by_id(source_service_id)
            )

            await ledger.record_audit(
                "SERVICE_MERGED",
                "service",
                target_service_id,
                before_state={
                    "source_service_id": str(source_service_id),
                    "source_name": source.name,
                    "target_name": target.name,
                    **preview.model_dump(),
                },
                after_state={"moved_line_items": moved},
            )
    except MergeVerificationError as e:
        return ServiceMergeResult(success=False, error=str(e))
    except Exception as e:
        logger.error(
            "service_merge_failed",
            source_service_id=str(source_service_id),
            target_service_id=str(target_service_id),
            error=str(e),
            exc_info=True,
        )
        return ServiceMergeResult(success=False, error=str(e))

    logger.info(
        "services_merged",
        source_service_id=str(source_service_id),
        target_service_id=str(target_service_id),
        moved_line_items=moved,
    )
    return ServiceMergeResult(success=True, moved_line_items=moved)

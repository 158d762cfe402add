import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
import structlog

from api.middleware.ledger import get_ledger
from api.schemas.merge import MergeResponse, VendorMergePreview, VendorMergeRequest
from api.services.ledger import SqlLedger
from api.services.merge_service import merge_vendors, preview_vendor_merge

logger = structlog.get_logger()
router = APIRouter()


def _not_found(label: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "NOT_FOUND", "message": f"{label} vendor not found"},
    )


async def _load_vendor(ledger: SqlLedger, vendor_id: str, label: str):
    try:
        uuid.UUID(vendor_id)
    except ValueError:
        raise _not_found(label)
    vendor = await ledger.find_vendor_by_id(vendor_id)
    if vendor is None:
        raise _not_found(label)
    return vendor


@router.get("/merge", response_model=VendorMergePreview)
async def vendor_merge_preview(
    source_vendor_id: str = Query(...),
    ledger: SqlLedger = Depends(get_ledger),
):
    """Counts of the rows a merge would move off the source vendor."""
    await _load_vendor(ledger, source_vendor_id, "Source")
    return await preview_vendor_merge(ledger, source_vendor_id)


@router.post("/merge", response_model=MergeResponse)
async def vendor_merge(
    body: VendorMergeRequest,
    ledger: SqlLedger = Depends(get_ledger),
):
    if body.source_vendor_id == body.target_vendor_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_MERGE", "message": "Cannot merge a vendor into itself"},
        )

    source = await _load_vendor(ledger, body.source_vendor_id, "Source")
    target = await _load_vendor(ledger, body.target_vendor_id, "Target")
    source_name, target_name = source.name, body.new_name or target.name

    result = await merge_vendors(
        ledger, body.source_vendor_id, body.target_vendor_id, new_name=body.new_name
    )
    if not result.success:
        raise HTTPException(
            status_code=500,
            detail={"code": "MERGE_FAILED", "message": result.error or "Vendor merge failed"},
        )

    return MergeResponse(
        success=True,
        message=f"Merged '{source_name}' into '{target_name}'",
        moved=result.moved.model_dump(),
    )

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
import structlog

from api.middleware.ledger import get_ledger
from api.schemas.merge import MergeResponse, ServiceMergePreview, ServiceMergeRequest
from api.services.ledger import SqlLedger
from api.services.merge_service import merge_services, preview_service_merge

logger = structlog.get_logger()
router = APIRouter()


async def _load_service(ledger: SqlLedger, service_id: str, label: str):
    try:
        uuid.UUID(service_id)
        service = await ledger.find_service_by_id(service_id)
    except ValueError:
        service = None
    if service is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": f"{label} service not found"},
        )
    return service


@router.get("/merge", response_model=ServiceMergePreview)
async def service_merge_preview(
    source_service_id: str = Query(...),
    ledger: SqlLedger = Depends(get_ledger),
):
    await _load_service(ledger, source_service_id, "Source")
    return await preview_service_merge(ledger, source_service_id)


@router.post("/merge", response_model=MergeResponse)
async def service_merge(
    body: ServiceMergeRequest,
    ledger: SqlLedger = Depends(get_ledger),
):
    """Move all line items onto the target service and delete the source."""
    if body.source_service_id == body.target_service_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_MERGE", "message": "Cannot merge a service into itself"},
        )

    source = await _load_service(ledger, body.source_service_id, "Source")
    target = await _load_service(ledger, body.target_service_id, "Target")
    source_name, target_name = source.name, target.name

    result = await merge_services(ledger, body.source_service_id, body.target_service_id)
    if not result.success:
        raise HTTPException(
            status_code=500,
            detail={"code": "MERGE_FAILED", "message": result.error or "Service merge failed"},
        )

    return MergeResponse(
        success=True,
        message=f"Merged '{source_name}' into '{target_name}'",
        moved={"line_items": result.moved_line_items},
    )

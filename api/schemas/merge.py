from typing import Optional
from pydantic import BaseModel, Field


class VendorMergePreview(BaseModel):
    subscriptions: int = 0
    invoices: int = 0
    services: int = 0
    line_items: int = 0


class VendorMergeRequest(BaseModel):
    source_vendor_id: str
    target_vendor_id: str
    new_name: Optional[str] = Field(None, min_length=1, max_length=200)


class VendorMergeResult(BaseModel):
    success: bool
    moved: VendorMergePreview = Field(default_factory=VendorMergePreview)
    error: Optional[str] = None


class ServiceMergePreview(BaseModel):
    line_items: int = 0
    total_amount: float = 0


class ServiceMergeRequest(BaseModel):
    source_service_id: str
    target_service_id: str


class ServiceMergeResult(BaseModel):
    success: bool
    moved_line_items: int = 0
    error: Optional[str] = None


class MergeResponse(BaseModel):
    success: bool
    message: str
    moved: dict

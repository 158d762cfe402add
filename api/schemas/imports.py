from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator

DiffType = Literal["NEW", "CHANGED", "UNCHANGED", "REMOVED", "VOIDED"]
MergeStrategy = Literal["csv_wins", "keep_existing", "skip"]
VoidedAction = Literal["import_unpaid", "skip"]
ImportAction = Literal["import", "skip"]
LineItemAction = Literal["import", "skip"]
CSVFormatType = Literal["invoice", "transaction", "unknown"]

RawRow = Dict[str, Any]

CANONICAL_FIELDS = (
    "vendor",
    "invoice_number",
    "invoice_date",
    "service_month",
    "description",
    "quantity",
    "unit_price",
    "total_price",
    "paid_date",
    "status",
    "notes",
    "category",
    "transaction_id",
)


# ---------------------------------------------------------------------------
# Row normalization
# ---------------------------------------------------------------------------


class StandardLineItem(BaseModel):
    """One billing row in canonical form, independent of the source layout.

    total_price is the authoritative amount; quantity * unit_price is not
    assumed to equal it.
    """

    vendor: str
    invoice_number: str
    invoice_date: str = ""
    service_month: str = ""
    description: str
    quantity: float = 1
    unit_price: float = 0
    total_price: float
    paid_date: Optional[str] = None
    is_voided: bool = False
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    notes: Optional[str] = None
    category: Optional[str] = None
    transaction_id: Optional[str] = None

    model_config = {"frozen": True}


class ColumnMapping(BaseModel):
    vendor: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    service_month: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[str] = None
    unit_price: Optional[str] = None
    total_price: Optional[str] = None
    paid_date: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    category: Optional[str] = None
    transaction_id: Optional[str] = None

    model_config = {"extra": "ignore"}


class TransformRule(BaseModel):
    field: str
    rule: str
    description: str = ""


class MappingResult(BaseModel):
    format_type: CSVFormatType = "unknown"
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    mapping: ColumnMapping = Field(default_factory=ColumnMapping)
    transform_rules: List[TransformRule] = Field(default_factory=list)
    reasoning: str = ""
    source: Literal["classifier", "heuristic", "legacy"] = "heuristic"


class ParsedInvoice(BaseModel):
    vendor: str
    invoice_number: str
    invoice_date: str = ""
    total_amount: float = 0
    is_voided: bool = False
    paid_date: Optional[str] = None
    line_items: List[StandardLineItem] = Field(default_factory=list)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Diffs
# ---------------------------------------------------------------------------


class FieldDiff(BaseModel):
    field: str
    existing_value: Any = None
    new_value: Any = None


class ExistingLineItemSnapshot(BaseModel):
    id: Optional[str] = None
    quantity: float
    unit_price: float
    total_amount: float
    period_start: Optional[str] = None
    period_end: Optional[str] = None


class IncomingLineItemSnapshot(BaseModel):
    quantity: float
    unit_price: float
    total_amount: float
    service_month: str = ""


class LineItemDiff(BaseModel):
    diff_type: DiffType
    line_item_key: str
    description: str
    existing: Optional[ExistingLineItemSnapshot] = None
    incoming: Optional[IncomingLineItemSnapshot] = None
    field_diffs: List[FieldDiff] = Field(default_factory=list)
    selected: bool = False
    merge_strategy: MergeStrategy = "csv_wins"


class ExistingInvoiceSummary(BaseModel):
    id: str
    invoice_date: Optional[str] = None
    total_amount: float
    status: str
    line_item_count: int


class IncomingInvoiceSummary(BaseModel):
    invoice_date: str
    total_amount: float
    is_voided: bool
    paid_date: Optional[str] = None
    line_item_count: int


class InvoiceDiffStats(BaseModel):
    new_line_items: int = 0
    changed_line_items: int = 0
    unchanged_line_items: int = 0
    removed_line_items: int = 0
    voided_line_items: int = 0


class InvoiceDiff(BaseModel):
    diff_type: DiffType
    invoice_number: str
    vendor: str
    existing: Optional[ExistingInvoiceSummary] = None
    incoming: Optional[IncomingInvoiceSummary] = None
    line_item_diffs: List[LineItemDiff] = Field(default_factory=list)
    stats: InvoiceDiffStats = Field(default_factory=InvoiceDiffStats)
    selected: bool = False
    merge_strategy: MergeStrategy = "csv_wins"
    # Only set when diff_type is VOIDED.
    voided_action: Optional[VoidedAction] = None


class ImportSummary(BaseModel):
    total_invoices: int = 0
    new_invoices: int = 0
    updated_invoices: int = 0
    unchanged_invoices: int = 0
    voided_invoices: int = 0
    total_line_items: int = 0
    new_line_items: int = 0
    changed_line_items: int = 0
    unchanged_line_items: int = 0
    removed_line_items: int = 0
    voided_line_items: int = 0


class VendorAnalysis(BaseModel):
    name: str
    is_new: bool
    invoice_count: int


class ImportAnalysis(BaseModel):
    filename: str
    analyzed_at: str
    format_type: CSVFormatType
    mapping: MappingResult
    summary: ImportSummary
    vendors: List[VendorAnalysis] = Field(default_factory=list)
    invoice_diffs: List[InvoiceDiff] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class LineItemDecision(BaseModel):
    line_item_key: str
    action: LineItemAction
    merge_strategy: Optional[MergeStrategy] = None


class ImportDecision(BaseModel):
    invoice_number: str
    action: ImportAction
    # None defers to the request's global_strategy.
    merge_strategy: Optional[MergeStrategy] = None
    line_item_decisions: List[LineItemDecision] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class CreatedCounts(BaseModel):
    vendors: int = 0
    subscriptions: int = 0
    invoices: int = 0
    services: int = 0
    line_items: int = 0


class UpdatedCounts(BaseModel):
    invoices: int = 0
    services: int = 0
    line_items: int = 0


class SkippedCounts(BaseModel):
    invoices: int = 0
    line_items: int = 0


class InvoiceError(BaseModel):
    vendor: str
    invoice_number: str
    message: str

    def __str__(self) -> str:
        return f"Invoice {self.invoice_number} ({self.vendor}): {self.message}"


class BatchResult(BaseModel):
    success: bool = True
    batch_index: int = 0
    total_batches: int = 0
    processed_in_batch: int = 0
    created: CreatedCounts = Field(default_factory=CreatedCounts)
    updated: UpdatedCounts = Field(default_factory=UpdatedCounts)
    skipped: SkippedCounts = Field(default_factory=SkippedCounts)
    errors: List[InvoiceError] = Field(default_factory=list)


class ImportExecutionResult(BaseModel):
    success: bool = True
    batches_run: int = 0
    total_batches: int = 0
    next_batch: Optional[int] = None
    created: CreatedCounts = Field(default_factory=CreatedCounts)
    updated: UpdatedCounts = Field(default_factory=UpdatedCounts)
    skipped: SkippedCounts = Field(default_factory=SkippedCounts)
    errors: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class AnalyzeRequest(BaseModel):
    csv_data: List[RawRow]
    filename: Optional[str] = None


class BatchRequest(BaseModel):
    csv_data: List[RawRow]
    decisions: List[ImportDecision] = Field(default_factory=list)
    global_strategy: MergeStrategy = "csv_wins"
    batch_index: int = Field(0, ge=0)
    batch_size: int = Field(50, ge=1, le=1000)
    total_batches: Optional[int] = Field(None, ge=0)
    mapping: Optional[MappingResult] = None


class ExecuteRequest(BaseModel):
    csv_data: List[RawRow]
    decisions: Optional[List[ImportDecision]] = None
    global_strategy: MergeStrategy = "csv_wins"
    batch_size: Optional[int] = Field(None, ge=1, le=1000)
    start_batch: int = Field(0, ge=0)
    mapping: Optional[MappingResult] = None

    @field_validator("csv_data")
    @classmethod
    def _not_empty(cls, v: List[RawRow]) -> List[RawRow]:
        if not v:
            raise ValueError("csv_data must contain at least one row")
        return v

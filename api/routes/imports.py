# api/routes/imports.py
"""
Import reconciliation endpoints: analyze, execute one batch, execute all.
"""

from typing import Optional

from fastapi import APIRouter, Depends
import structlog

from api.middleware.ledger import get_import_classifier, get_ledger
from api.schemas.imports import (
    AnalyzeRequest,
    BatchRequest,
    BatchResult,
    ExecuteRequest,
    ImportAnalysis,
    ImportExecutionResult,
)
from api.services.diff_engine import analyze_import
from api.services.import_executor import execute_rows, run_import
from api.services.ledger import SqlLedger
from api.services.normalizer import Classifier

logger = structlog.get_logger()
router = APIRouter()


@router.post("/analyze", response_model=ImportAnalysis)
async def analyze(
    body: AnalyzeRequest,
    ledger: SqlLedger = Depends(get_ledger),
    classifier: Optional[Classifier] = Depends(get_import_classifier),
):
    """Diff an import against the ledger without writing anything."""
    logger.info("import_analyze_requested", rows=len(body.csv_data), filename=body.filename)
    return await analyze_import(
        ledger, body.csv_data, classifier=classifier, filename=body.filename
    )


@router.post("/execute-batch", response_model=BatchResult)
async def execute_batch(
    body: BatchRequest,
    ledger: SqlLedger = Depends(get_ledger),
    classifier: Optional[Classifier] = Depends(get_import_classifier),
):
    """
    Apply one batch. The orchestrator calls this once per batch index,
    sequentially, passing back the mapping returned by /analyze.
    """
    return await execute_rows(
        ledger,
        body.csv_data,
        decisions=body.decisions,
        global_strategy=body.global_strategy,
        batch_index=body.batch_index,
        batch_size=body.batch_size,
        total_batches=body.total_batches,
        classifier=classifier,
        mapping=body.mapping,
    )


@router.post("/execute", response_model=ImportExecutionResult)
async def execute(
    body: ExecuteRequest,
    ledger: SqlLedger = Depends(get_ledger),
    classifier: Optional[Classifier] = Depends(get_import_classifier),
):
    """Run every batch from start_batch; commits after each batch."""
    return await run_import(
        ledger,
        body.csv_data,
        decisions=body.decisions,
        global_strategy=body.global_strategy,
        batch_size=body.batch_size,
        start_batch=body.start_batch,
        classifier=classifier,
        mapping=body.mapping,
    )

#!/usr/bin/env python3
"""
Import a billing CSV export into the ledger.

Usage:
  python -m scripts.import_csv export.csv                        # dry-run analysis
  python -m scripts.import_csv export.csv --apply                # import with default decisions
  python -m scripts.import_csv export.csv --apply --strategy keep_existing
  python -m scripts.import_csv export.csv --apply --start-batch 4 --batch-size 25
"""

import argparse
import asyncio
import csv
import os
from typing import Optional

from api.config import settings
from api.database import AsyncSessionLocal, engine
from api.logging_config import setup_logging
from api.services.classifier import close_http_client, get_classifier
from api.services.diff_engine import analyze_import
from api.services.import_executor import run_import
from api.services.ledger import SqlLedger
from api.services.normalizer import ImportValidationError


def read_rows(path: str) -> list[dict]:
    # utf-8-sig drops the BOM that spreadsheet exports prepend.
    with open(path, newline="", encoding="utf-8-sig") as handle:
        return [dict(row) for row in csv.DictReader(handle)]


async def run(
    path: str,
    apply: bool,
    strategy: str,
    batch_size: Optional[int],
    start_batch: int,
    max_batches: Optional[int],
) -> int:
    rows = read_rows(path)
    classifier = get_classifier()

    try:
        async with AsyncSessionLocal() as db:
            ledger = SqlLedger(db)
            analysis = await analyze_import(
                ledger,
                rows,
                classifier=classifier,
                filename=os.path.basename(path),
                merge_strategy=strategy,
            )
            summary = analysis.summary

            print("Import analysis")
            print(f"  File: {analysis.filename} ({len(rows)} rows)")
            print(f"  Format: {analysis.format_type} via {analysis.mapping.source} "
                  f"(confidence {analysis.mapping.confidence:.1f})")
            print(f"  Invoices: {summary.total_invoices} total, {summary.new_invoices} new, "
                  f"{summary.updated_invoices} changed, {summary.unchanged_invoices} unchanged, "
                  f"{summary.voided_invoices} voided")
            print(f"  Line items: {summary.total_line_items} total, {summary.new_line_items} new, "
                  f"{summary.changed_line_items} changed, {summary.removed_line_items} removed")
            new_vendors = [v.name for v in analysis.vendors if v.is_new]
            if new_vendors:
                print(f"  New vendors: {', '.join(new_vendors)}")
            for warning in analysis.warnings:
                print(f"  ! {warning}")

            if not apply:
                print("\nDry run. Re-run with --apply to import.")
                return 0

            result = await run_import(
                ledger,
                rows,
                global_strategy=strategy,
                batch_size=batch_size,
                start_batch=start_batch,
                max_batches=max_batches,
                mapping=analysis.mapping,
            )
    except ImportValidationError as e:
        print(f"Import rejected ({e.code}): {e.message}")
        return 2
    finally:
        await close_http_client()
        await engine.dispose()

    print("\nImport result")
    print(f"  Batches run: {result.batches_run}/{result.total_batches}")
    print(f"  Created: {result.created.vendors} vendors, {result.created.subscriptions} subscriptions, "
          f"{result.created.invoices} invoices, {result.created.services} services, "
          f"{result.created.line_items} line items")
    print(f"  Updated: {result.updated.invoices} invoices, {result.updated.services} services, "
          f"{result.updated.line_items} line items")
    print(f"  Skipped: {result.skipped.invoices} invoices, {result.skipped.line_items} line items")
    if result.next_batch is not None:
        print(f"  Resume with --start-batch {result.next_batch}")

    if result.errors:
        print("\nErrors:")
        for item in result.errors:
            print(f"  - {item}")
    return 0 if result.success else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Import a billing CSV export")
    parser.add_argument("file", help="CSV file to import")
    parser.add_argument("--apply", action="store_true", help="Persist changes")
    parser.add_argument(
        "--strategy",
        choices=["csv_wins", "keep_existing", "skip"],
        default="csv_wins",
        help="Conflict policy for invoices that already exist",
    )
    parser.add_argument(
        "--batch-size", type=int, default=None,
        help=f"Invoices per batch (default {settings.IMPORT_BATCH_SIZE})",
    )
    parser.add_argument("--start-batch", type=int, default=0, help="Resume from this batch index")
    parser.add_argument("--max-batches", type=int, default=None, help="Stop after this many batches")
    args = parser.parse_args()

    setup_logging()
    raise SystemExit(
        asyncio.run(
            run(
                path=args.file,
                apply=args.apply,
                strategy=args.strategy,
                batch_size=args.batch_size,
                start_batch=args.start_batch,
                max_batches=args.max_batches,
            )
        )
    )

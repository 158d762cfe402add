# api/services/decisions.py
"""
Decision Model: InvoiceDiffs + a selection -> ImportDecision list.

Pure and deterministic: the same diffs and selection always produce the
same decisions. An invoice is imported iff at least one of its line items
is selected; a VOIDED invoice additionally needs voided_action
"import_unpaid".
"""

from typing import Dict, Iterable, List, Optional, Set

from api.schemas.imports import (
    ImportDecision,
    InvoiceDiff,
    LineItemDecision,
    MergeStrategy,
    VoidedAction,
)


def default_selection(diffs: Iterable[InvoiceDiff]) -> Set[str]:
    """Keys selected by the diff engine's default policy."""
    return {
        line.line_item_key
        for diff in diffs
        for line in diff.line_item_diffs
        if line.selected
    }


def build_decisions(
    diffs: List[InvoiceDiff],
    selected_keys: Optional[Set[str]] = None,
    global_strategy: MergeStrategy = "csv_wins",
    invoice_strategies: Optional[Dict[str, MergeStrategy]] = None,
    voided_actions: Optional[Dict[str, VoidedAction]] = None,
) -> List[ImportDecision]:
    if selected_keys is None:
        selected_keys = default_selection(diffs)
    invoice_strategies = invoice_strategies or {}
    voided_actions = voided_actions or {}

    decisions: List[ImportDecision] = []
    for diff in diffs:
        strategy = invoice_strategies.get(diff.invoice_number, global_strategy)

        line_decisions = [
            LineItemDecision(
                line_item_key=line.line_item_key,
                action="import" if line.line_item_key in selected_keys else "skip",
                merge_strategy=strategy,
            )
            for line in diff.line_item_diffs
        ]
        any_selected = any(d.action == "import" for d in line_decisions)

        if diff.diff_type == "VOIDED":
            voided_action = voided_actions.get(
                diff.invoice_number, diff.voided_action or "skip"
            )
            any_selected = any_selected and voided_action == "import_unpaid"

        decisions.append(
            ImportDecision(
                invoice_number=diff.invoice_number,
                action="import" if any_selected else "skip",
                merge_strategy=strategy,
                line_item_decisions=line_decisions,
            )
        )
    return decisions


def default_decisions(
    diffs: List[InvoiceDiff], global_strategy: MergeStrategy = "csv_wins"
) -> List[ImportDecision]:
    return build_decisions(diffs, None, global_strategy)

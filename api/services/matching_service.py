# api/services/matching_service.py
"""
Service catalog matching: imported line-item description -> catalog Service.

Matching Rules:
  1. Exact match on the normalized clean name (lowercase, collapsed whitespace)
  2. Containment in either direction, only when both names are longer
     than CONTAINMENT_MIN_LENGTH characters
  3. Otherwise no match: the caller creates a new catalog entry
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Optional, Sequence

import structlog

from api.services.normalizer import normalize_for_matching

logger = structlog.get_logger()

CONTAINMENT_MIN_LENGTH = 10


@dataclass
class ServiceCandidate:
    id: Any
    name: str
    current_quantity: Optional[float] = None
    current_unit_price: Optional[float] = None
    price_as_of: Optional[date] = None


def match_service(
    clean_name: str, candidates: Sequence[ServiceCandidate]
) -> Optional[ServiceCandidate]:
    """
    Find the catalog service a cleaned description belongs to.

    Returns None when neither the exact nor the containment rule matches.
    """
    target = normalize_for_matching(clean_name)
    if not target:
        return None

    for candidate in candidates:
        if normalize_for_matching(candidate.name) == target:
            return candidate

    if len(target) <= CONTAINMENT_MIN_LENGTH:
        return None

    for candidate in candidates:
        existing = normalize_for_matching(candidate.name)
        if len(existing) <= CONTAINMENT_MIN_LENGTH:
            continue
        if target in existing or existing in target:
            logger.debug(
                "service_matched_by_containment",
                incoming=clean_name,
                existing=candidate.name,
            )
            return candidate

    return None


def is_newer_pricing(candidate: ServiceCandidate, invoice_date: Optional[date]) -> bool:
    """Current pricing only moves forward in time."""
    if invoice_date is None:
        return False
    if candidate.price_as_of is None:
        return True
    return invoice_date >= candidate.price_as_of

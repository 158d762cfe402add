"""
Unit tests for api/services/matching_service.py

Tests the catalog match rules:
  - exact match on the normalized name
  - containment in either direction for long names only
  - no match
  - pricing recency gate
"""

from datetime import date

from api.services.matching_service import ServiceCandidate, is_newer_pricing, match_service


CATALOG = [
    ServiceCandidate(id="s1", name="Widget Support"),
    ServiceCandidate(id="s2", name="Premium Hosting Plan"),
    ServiceCandidate(id="s3", name="SMS"),
]


def test_exact_match_ignores_case_and_whitespace():
    assert match_service("  widget   SUPPORT ", CATALOG).id == "s1"


def test_exact_match_wins_over_containment():
    catalog = [ServiceCandidate(id="long", name="Premium Hosting Plan Plus"), *CATALOG]
    assert match_service("Premium Hosting Plan", catalog).id == "s2"


def test_incoming_name_contains_catalog_name():
    assert match_service("Premium Hosting Plan (annual)", CATALOG).id == "s2"


def test_catalog_name_contains_incoming_name():
    catalog = [ServiceCandidate(id="s9", name="Enterprise Backup Storage Tier 2")]
    assert match_service("Backup Storage Tier", catalog).id == "s9"


def test_short_names_do_not_match_by_containment():
    # "SMS" is inside "SMS Bundle" but is too short to qualify.
    assert match_service("SMS Bundle", CATALOG) is None
    assert match_service("Hosting", CATALOG) is None


def test_no_match_and_empty_name():
    assert match_service("Something Else Entirely", CATALOG) is None
    assert match_service("   ", CATALOG) is None
    assert match_service("Widget Support", []) is None


def test_is_newer_pricing():
    dated = ServiceCandidate(id="s1", name="x", price_as_of=date(2025, 4, 5))
    undated = ServiceCandidate(id="s2", name="y")

    assert is_newer_pricing(dated, date(2025, 5, 1)) is True
    assert is_newer_pricing(dated, date(2025, 4, 5)) is True
    assert is_newer_pricing(dated, date(2025, 3, 1)) is False
    assert is_newer_pricing(undated, date(2020, 1, 1)) is True
    assert is_newer_pricing(dated, None) is False

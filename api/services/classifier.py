# api/services/classifier.py
"""
Column classifier client.

Asks an OpenAI-compatible chat-completions endpoint to map arbitrary CSV
headers onto the canonical line-item fields. The reply is validated against
the closed canonical field set and the actual headers before use. Any
failure falls back to the deterministic heuristic in the normalizer.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)
import structlog

from api.config import settings
from api.schemas.imports import (
    CANONICAL_FIELDS,
    ColumnMapping,
    MappingResult,
    RawRow,
    TransformRule,
)
from api.services.normalizer import Classifier, ensure_default_rules, heuristic_mapping

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")
_FORMAT_TYPES = ("invoice", "transaction", "unknown")

# Module-level singleton, reuses TLS connections across imports
_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.CLASSIFIER_TIMEOUT_SECONDS, connect=5.0),
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None


class ClassifierError(Exception):
    """The classifier reply could not be used."""


class _ClassifierRetryableError(Exception):
    """Raised for 5xx or network errors that warrant a retry."""


def build_prompt(headers: List[str], sample_rows: List[RawRow]) -> str:
    sample = json.dumps(sample_rows[:5], default=str, indent=2)
    fields = ", ".join(CANONICAL_FIELDS)
    return (
        "You map billing CSV exports onto a fixed schema.\n\n"
        f"Headers: {json.dumps(headers)}\n"
        f"Sample rows:\n{sample}\n\n"
        f"Canonical fields: {fields}\n\n"
        "Reply with JSON only, shaped as:\n"
        '{"format_type": "invoice" | "transaction" | "unknown",\n'
        ' "confidence": 0.0-1.0,\n'
        ' "mapping": {"<canonical field>": "<header>" | null, ...},\n'
        ' "transform_rules": [{"field": "...", "rule": "...", "description": "..."}],\n'
        ' "reasoning": "..."}\n\n'
        "Use only headers from the list above. Known rules: abs_value, "
        "generate_invoice_number, derive_service_month."
    )


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def parse_reply(content: str) -> Dict[str, Any]:
    cleaned = _FENCE_RE.sub("", content or "").strip()
    try:
        data = json.loads(cleaned)
    except ValueError as e:
        raise ClassifierError(f"Classifier reply is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ClassifierError("Classifier reply is not a JSON object")
    return {_snake(k): v for k, v in data.items()}


def validate_mapping(data: Dict[str, Any], headers: List[str]) -> MappingResult:
    """
    Validate a classifier reply against the canonical fields and real headers.

    Unknown canonical fields are dropped; columns that are not present in
    `headers` are nulled.
    """
    raw_mapping = data.get("mapping")
    if not isinstance(raw_mapping, dict):
        raise ClassifierError("Classifier reply has no mapping object")

    header_set = set(headers)
    mapping: Dict[str, Optional[str]] = {}
    for key, column in raw_mapping.items():
        field = _snake(str(key))
        if field not in CANONICAL_FIELDS:
            continue
        mapping[field] = column if isinstance(column, str) and column in header_set else None

    rules = []
    for rule in data.get("transform_rules") or []:
        if isinstance(rule, dict) and rule.get("field") and rule.get("rule"):
            rules.append(
                TransformRule(
                    field=_snake(str(rule["field"])),
                    rule=str(rule["rule"]),
                    description=str(rule.get("description") or ""),
                )
            )

    format_type = data.get("format_type")
    if format_type not in _FORMAT_TYPES:
        format_type = "unknown"

    try:
        confidence = min(max(float(data.get("confidence", 0.5)), 0.0), 1.0)
    except (TypeError, ValueError):
        confidence = 0.5

    return MappingResult(
        format_type=format_type,
        confidence=confidence,
        mapping=ColumnMapping(**mapping),
        transform_rules=rules,
        reasoning=str(data.get("reasoning") or ""),
        source="classifier",
    )


@retry(
    retry=retry_if_exception_type(_ClassifierRetryableError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    before_sleep=before_sleep_log(_std_logger, logging.WARNING),
    reraise=True,
)
async def _complete_with_retry(payload: dict) -> str:
    client = get_http_client()
    try:
        response = await client.post(
            settings.CLASSIFIER_API_URL,
            headers={
                "Authorization": f"Bearer {settings.CLASSIFIER_API_KEY}",
                "Content-Type": "application/json",
            },
            json=payload,
        )
    except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
        logger.warning("classifier_network_error_retrying", error=str(exc))
        raise _ClassifierRetryableError(str(exc)) from exc

    if response.status_code >= 500:
        logger.warning("classifier_5xx_retrying", status_code=response.status_code)
        raise _ClassifierRetryableError(f"Classifier returned {response.status_code}")

    if response.status_code != 200:
        raise ClassifierError(f"Classifier returned {response.status_code}")

    try:
        body = response.json()
        return body["choices"][0]["message"]["content"] or ""
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise ClassifierError(f"Unexpected classifier response shape: {e}") from e


async def classify_columns(headers: List[str], sample_rows: List[RawRow]) -> MappingResult:
    """
    Map headers to canonical fields via the classifier.

    Never raises: every failure is logged and answered with the heuristic
    mapping.
    """
    if not settings.CLASSIFIER_API_KEY:
        return heuristic_mapping(headers, sample_rows)

    payload = {
        "model": settings.CLASSIFIER_MODEL,
        "messages": [{"role": "user", "content": build_prompt(headers, sample_rows)}],
        "temperature": 0.1,
    }

    try:
        content = await _complete_with_retry(payload)
        result = validate_mapping(parse_reply(content), headers)
    except (ClassifierError, _ClassifierRetryableError) as e:
        logger.warning("classifier_fallback_heuristic", error=str(e))
        return heuristic_mapping(headers, sample_rows)

    logger.info(
        "classifier_mapping_received",
        format_type=result.format_type,
        confidence=result.confidence,
    )
    return ensure_default_rules(result)


def get_classifier() -> Optional[Classifier]:
    """Classifier to hand to the normalizer, or None to use the heuristic directly."""
    if not settings.CLASSIFIER_API_KEY:
        return None
    return classify_columns

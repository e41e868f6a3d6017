"""
normalize.py
-------------
Tolerant mapping of plain upstream records (dict rows from CSV/JSON or an
extraction service) onto Fact objects, followed by the confidence gate.

Nothing here raises for bad business data: unknown enum values become
"unknown", unparseable dates and amounts become None, and out-of-range
confidence becomes 0 (and is therefore filtered out).
"""

import logging
import uuid
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Type

import pandas as pd

from config.config_loader import get_normalization_config
from core.models import (
    ClearingStatus,
    DateType,
    Direction,
    Fact,
    FactStatus,
    FactType,
    Recurrence,
    to_date,
)

logger = logging.getLogger(__name__)


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _clean_text(value: Any) -> Optional[str]:
    if _is_missing(value):
        return None
    return str(value).strip()


def _validate_enum(value: Any, enum_cls: Type[Enum], default: Enum) -> str:
    text = _clean_text(value)
    if text is None:
        return default.value
    text = text.lower()
    valid = {member.value for member in enum_cls}
    return text if text in valid else default.value


def _normalize_date(value: Any) -> Optional[str]:
    if _is_missing(value):
        return None
    parsed = to_date(value)
    return parsed.isoformat() if parsed else None


def _normalize_amount(value: Any) -> Optional[float]:
    if _is_missing(value) or isinstance(value, bool):
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    return None if pd.isna(amount) else amount


def _normalize_confidence(value: Any) -> float:
    amount = _normalize_amount(value)
    if amount is None:
        return 1.0 if _is_missing(value) else 0.0
    return amount if 0 <= amount <= 1 else 0.0


def normalize_fact(record: Mapping[str, Any], index: Optional[int] = None) -> Fact:
    """
    Maps one upstream record onto a Fact.

    Accepts either flat amount fields (amount_value, amount_currency) or a
    nested {"amount": {"value", "currency"}} object, and "id" or "fact_id".
    A missing confidence is treated as fully confident.
    """
    amount = record.get("amount")
    if isinstance(amount, Mapping):
        amount_value, currency = amount.get("value"), amount.get("currency")
    else:
        amount_value, currency = record.get("amount_value", amount), record.get("amount_currency")

    fact_id = _clean_text(record.get("id")) or _clean_text(record.get("fact_id"))
    if fact_id is None:
        fact_id = f"fact_{index}" if index is not None else str(uuid.uuid4())

    currency = _clean_text(currency)

    return Fact(
        id=fact_id,
        fact_type=_validate_enum(record.get("fact_type"), FactType, FactType.UNKNOWN),
        entity_name=_clean_text(record.get("entity_name")),
        entity_raw=_clean_text(record.get("entity_raw")),
        entity_canonical=_clean_text(record.get("entity_canonical")),
        amount_value=_normalize_amount(amount_value),
        amount_currency=currency.upper() if currency else None,
        date_value=_normalize_date(record.get("date_value", record.get("date"))),
        date_type=_validate_enum(record.get("date_type"), DateType, DateType.UNKNOWN),
        status=_validate_enum(record.get("status"), FactStatus, FactStatus.UNKNOWN),
        recurrence=_validate_enum(record.get("recurrence"), Recurrence, Recurrence.UNKNOWN),
        source_reference=_clean_text(record.get("source_reference")) or "",
        confidence=_normalize_confidence(record.get("confidence")),
        direction=_validate_enum(record.get("direction"), Direction, Direction.UNKNOWN),
        clearing_status=_validate_enum(record.get("clearing_status"), ClearingStatus, ClearingStatus.UNKNOWN),
    )


def normalize_facts(records: Iterable[Mapping[str, Any]]) -> list[Fact]:
    return [normalize_fact(record, index=i) for i, record in enumerate(records)]


def filter_low_confidence(facts: Iterable[Fact], threshold: Optional[float] = None) -> list[Fact]:
    if threshold is None:
        threshold = get_normalization_config()["min_confidence"]
    return [f for f in facts if f.confidence >= threshold]


def normalize_and_filter(records: Iterable[Mapping[str, Any]], confidence_threshold: Optional[float] = None) -> list[Fact]:
    """Normalizes every record and drops those under the confidence threshold."""
    facts = normalize_facts(records)
    kept = filter_low_confidence(facts, confidence_threshold)
    if len(kept) < len(facts):
        logger.info(f"Dropped {len(facts) - len(kept):,} low-confidence facts")
    return kept

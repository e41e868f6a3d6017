"""
base.py
--------
Shared helpers for every detector.

All detectors are plain functions `facts -> list[ProposedIssue]` that group
by the canonical entity key, never invent missing data, attach rationale and
evidence fact IDs, and leave impact None whenever it is uncertain.
"""

from collections import defaultdict
from typing import Callable, Iterable, Optional

from core.models import Fact, ProposedIssue, Recurrence, UNKNOWN_ENTITY, distinct_currencies, entity_key
from core.recurrence import RecurrenceMap, is_entity_monthly


Detector = Callable[[list[Fact]], list[ProposedIssue]]

DERIVED_CADENCE_NOTE = "Monthly cadence derived from transaction pattern."

# Explicit recurrence values that let the derived classification decide.
_FALLBACK_RECURRENCES = {None, Recurrence.ONE_TIME.value, Recurrence.UNKNOWN.value}


def group_by_entity(facts: Iterable[Fact], predicate: Optional[Callable[[Fact], bool]] = None) -> dict[str, list[Fact]]:
    """Groups facts by entity key, in first-seen order."""
    groups: dict[str, list[Fact]] = defaultdict(list)
    for fact in facts:
        if predicate is None or predicate(fact):
            groups[entity_key(fact)].append(fact)
    return dict(groups)


def display_name(key: str, facts: list[Fact]) -> Optional[str]:
    """Human-facing entity name: the first fact's entity_name, else the key."""
    if key == UNKNOWN_ENTITY:
        return None
    return facts[0].entity_name or key


def min_confidence(facts: list[Fact]) -> float:
    return min(f.confidence for f in facts)


def single_currency(facts: list[Fact]) -> Optional[str]:
    """The shared currency, or None when missing anywhere or mixed."""
    if any(not f.amount_currency for f in facts):
        return None
    currencies = distinct_currencies(facts)
    return currencies[0] if len(currencies) == 1 else None


def monthly_status(fact: Fact, derived_recurrence: Optional[RecurrenceMap]) -> tuple[bool, bool]:
    """
    Whether a fact counts as monthly.

    Returns (is_monthly, used_derived). Explicit "monthly" always counts.
    Otherwise, when the explicit value is one_time/unknown/unset, the
    entity's derived classification decides.
    """
    if fact.recurrence == Recurrence.MONTHLY:
        return True, False
    recurrence = getattr(fact.recurrence, "value", fact.recurrence)
    if derived_recurrence and recurrence in _FALLBACK_RECURRENCES:
        if is_entity_monthly(entity_key(fact), derived_recurrence):
            return True, True
    return False, False

"""
recurrence.py
--------------
Conservative two-tier monthly recurrence classifier.

Answers one question per canonical entity:

    "Is this entity billed monthly?"

It is used as a fallback when explicit recurrence metadata is missing
(billing detectors) and as the cadence source for every bank detector.

Tiers:
    strict  - >=2 gaps in [28,33] days, every amount within ±10% of median.
              Confidence clamped to [0.85, 1].
    likely  - only tried when strict fails. >=4 facts, >=2 gaps in [28,35]
              days, amounts within ±20% of median. Confidence clamped to
              [0.5, 0.75].
    none    - anything else.

Only qualifying facts count: outflow, cleared, dated, amounted. Pending,
reversed and inflow transactions are ignored entirely. False negatives are
preferred over false positives.

The classification map is built fresh for each analysis and never persisted.
"""

from collections import defaultdict
from typing import Iterable, Optional

import numpy as np

from config.config_loader import get_recurrence_config
from core.models import (
    ClearingStatus,
    Direction,
    Fact,
    IntervalStats,
    Recurrence,
    RecurrenceClassification,
    RecurrenceTier,
    entity_key,
    median,
    sort_by_date,
    to_date,
)


RecurrenceMap = dict[str, RecurrenceClassification]


def is_qualifying_fact(fact: Fact) -> bool:
    """Outflow, cleared, with both an amount and a parseable date."""
    return (
        fact.direction == Direction.OUTFLOW
        and fact.clearing_status == ClearingStatus.CLEARED
        and fact.amount_value is not None
        and to_date(fact.date_value) is not None
    )


class MonthlyRecurrenceClassifier:
    """
    Classifies monthly cadence per entity.

    Usage:
        classifier = MonthlyRecurrenceClassifier()
        by_entity = classifier.classify_by_entity(facts)
    """

    def __init__(self):
        self.config = get_recurrence_config()
        self.min_occurrences = self.config["min_occurrences"]
        self.min_valid_intervals = self.config["min_valid_intervals"]
        self.strict = self.config["strict"]
        self.likely = self.config["likely"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def classify_by_entity(self, facts: Iterable[Fact]) -> RecurrenceMap:
        """Groups facts by entity key and classifies each group."""
        groups: dict[str, list[Fact]] = defaultdict(list)
        for fact in facts:
            groups[entity_key(fact)].append(fact)
        return {key: self.classify(group) for key, group in groups.items()}

    def classify(self, facts: Iterable[Fact]) -> RecurrenceClassification:
        """Classifies a single entity's facts."""
        qualifying = sort_by_date(f for f in facts if is_qualifying_fact(f))
        count = len(qualifying)

        if count < self.min_occurrences:
            return RecurrenceClassification(
                is_monthly=False,
                tier=RecurrenceTier.NONE,
                confidence=0.0,
                evidence_count=count,
                median_amount=None,
                interval_stats=None,
            )

        ordinals = np.array([to_date(f.date_value).toordinal() for f in qualifying])
        gaps = np.diff(ordinals)
        amounts = np.abs(np.array([f.amount_value for f in qualifying], dtype=float))
        median_amount = median(amounts)
        stats = self._interval_stats(gaps)

        tier, confidence = self._classify_tier(gaps, amounts, median_amount, count, stats)

        return RecurrenceClassification(
            is_monthly=tier != RecurrenceTier.NONE,
            tier=tier,
            confidence=round(confidence, 4),
            evidence_count=count,
            median_amount=median_amount,
            interval_stats=stats,
        )

    # -------------------------------------------------------------------------
    # INTERNAL: TIERS
    # -------------------------------------------------------------------------

    def _classify_tier(
        self,
        gaps: np.ndarray,
        amounts: np.ndarray,
        median_amount: float,
        count: int,
        stats: IntervalStats,
    ) -> tuple[RecurrenceTier, float]:
        # Relative deviations are undefined around a zero median.
        if not median_amount:
            return RecurrenceTier.NONE, 0.0

        deviations = np.abs(amounts - median_amount) / median_amount
        total_gaps = len(gaps)

        # --- Strict tier ---
        strict = self.strict
        if (
            stats.within_range >= self.min_valid_intervals
            and bool(np.all(deviations <= strict["amount_tolerance"]))
        ):
            weights = strict["weights"]
            interval_consistency = stats.within_range / total_gaps
            amount_consistency = 1 - float(np.mean(deviations)) / strict["amount_tolerance"]
            evidence_boost = min(count / strict["evidence_full_at"], 1.0)
            raw = (
                interval_consistency * weights["interval"]
                + amount_consistency * weights["amount"]
                + evidence_boost * weights["evidence"]
            )
            return RecurrenceTier.STRICT, max(strict["confidence_floor"], min(1.0, raw))

        # --- Likely tier ---
        likely = self.likely
        if (
            count >= likely["min_occurrences"]
            and stats.within_loose_range >= self.min_valid_intervals
            and bool(np.all(deviations <= likely["amount_tolerance"]))
        ):
            weights = likely["weights"]
            interval_consistency = stats.within_loose_range / total_gaps
            amount_consistency = 1 - float(np.mean(deviations)) / likely["amount_tolerance"]
            extra = count - self.min_occurrences
            evidence_boost = min(extra / likely["evidence_extra_full_at"], 1.0)
            raw = (
                interval_consistency * weights["interval"]
                + amount_consistency * weights["amount"]
                + evidence_boost * weights["evidence"]
            )
            return (
                RecurrenceTier.LIKELY,
                min(likely["confidence_ceiling"], max(likely["confidence_floor"], raw)),
            )

        return RecurrenceTier.NONE, 0.0

    def _interval_stats(self, gaps: np.ndarray) -> IntervalStats:
        """Gap mean/std plus strict- and loose-window counts."""
        strict, likely = self.strict, self.likely
        within = int(np.sum((gaps >= strict["min_gap_days"]) & (gaps <= strict["max_gap_days"])))
        within_loose = int(np.sum((gaps >= likely["min_gap_days"]) & (gaps <= likely["max_gap_days"])))
        return IntervalStats(
            mean=round(float(np.mean(gaps)), 2),
            std_dev=round(float(np.std(gaps)), 2),
            within_range=within,
            within_loose_range=within_loose,
        )


# =============================================================================
# MODULE-LEVEL HELPERS
# =============================================================================

def classify_monthly_by_entity(facts: Iterable[Fact]) -> RecurrenceMap:
    """Builds the entity -> classification map for one analysis run."""
    return MonthlyRecurrenceClassifier().classify_by_entity(facts)


def is_entity_monthly(key: str, classifications: Optional[RecurrenceMap]) -> bool:
    classification = (classifications or {}).get(key)
    return bool(classification and classification.is_monthly)


def is_entity_strict_monthly(key: str, classifications: Optional[RecurrenceMap]) -> bool:
    classification = (classifications or {}).get(key)
    return bool(classification and classification.tier == RecurrenceTier.STRICT)


def get_derived_recurrence(fact: Fact, classifications: Optional[RecurrenceMap]) -> Optional[str]:
    """
    "monthly" when the fact's entity is classified monthly, otherwise the
    fact's own explicit recurrence.
    """
    if is_entity_monthly(entity_key(fact), classifications):
        return Recurrence.MONTHLY
    return fact.recurrence

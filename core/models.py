"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- Fact: one normalized input record (invoice, payment, bank transaction...).
  Immutable once produced upstream.

- RecurrenceClassification: derived "is this entity billed monthly?" answer,
  computed fresh for every analysis run and keyed by canonical entity key.

- ProposedIssue: candidate issue produced by a detector. Carries rationale,
  evidence fact IDs and a strictly computed (or null) impact.

- PruneResult / AnalysisResult: pruned output plus transparency counters.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Optional

import numpy as np
import pandas as pd


UNKNOWN_ENTITY = "_unknown_"


# =============================================================================
# ENUMERATIONS
# =============================================================================
# str-backed so values compare equal to the plain strings used upstream.

class FactType(str, Enum):
    INVOICE = "invoice"
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    DISCOUNT = "discount"
    NOTE = "note"
    BANK_TRANSACTION = "bank_transaction"
    UNKNOWN = "unknown"


class DateType(str, Enum):
    ISSUED = "issued"
    DUE = "due"
    PAID = "paid"
    FAILED = "failed"
    STARTED = "started"
    ENDED = "ended"
    POSTED = "posted"
    UNKNOWN = "unknown"


class FactStatus(str, Enum):
    PAID = "paid"
    UNPAID = "unpaid"
    FAILED = "failed"
    ACTIVE = "active"
    CANCELED = "canceled"
    PAUSED = "paused"
    UNKNOWN = "unknown"


class Recurrence(str, Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    UNKNOWN = "unknown"


class Direction(str, Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"
    UNKNOWN = "unknown"


class ClearingStatus(str, Enum):
    CLEARED = "cleared"
    PENDING = "pending"
    REVERSED = "reversed"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RecurrenceTier(str, Enum):
    STRICT = "strict"
    LIKELY = "likely"
    NONE = "none"


class ScanMode(str, Enum):
    BANK = "bank"
    BILLING = "billing"


class IssueType(str, Enum):
    UNPAID_INVOICE_AGING = "unpaid_invoice_aging"
    RECURRING_PAYMENT_GAP = "recurring_payment_gap"
    AMOUNT_DRIFT = "amount_drift"
    DUPLICATE_CHARGE = "duplicate_charge"
    NEW_RECURRING_CHARGE = "new_recurring_charge"
    PRICE_CREEP = "price_creep"
    UNUSUAL_SPIKE = "unusual_spike"


ISSUE_TYPE_LABELS: dict[IssueType, str] = {
    IssueType.UNPAID_INVOICE_AGING: "Unpaid Invoice Aging",
    IssueType.RECURRING_PAYMENT_GAP: "Recurring Payment Gap",
    IssueType.AMOUNT_DRIFT: "Amount Drift",
    IssueType.DUPLICATE_CHARGE: "Possible Duplicate Charge",
    IssueType.NEW_RECURRING_CHARGE: "New Recurring Charge",
    IssueType.PRICE_CREEP: "Price Creep",
    IssueType.UNUSUAL_SPIKE: "Unusual Spike",
}


# =============================================================================
# INPUT RECORD
# =============================================================================

@dataclass(frozen=True)
class Fact:
    """
    A single normalized financial record.

    entity_canonical is filled by the canonicalizer. direction and
    clearing_status are only meaningful for bank transactions. recurrence is
    the explicit, possibly unknown, classification supplied upstream; it is
    distinct from the derived RecurrenceClassification.
    """

    id: str
    fact_type: str = FactType.UNKNOWN
    entity_name: Optional[str] = None
    entity_raw: Optional[str] = None
    entity_canonical: Optional[str] = None
    amount_value: Optional[float] = None
    amount_currency: Optional[str] = None
    date_value: Optional[str] = None          # ISO YYYY-MM-DD
    date_type: str = DateType.UNKNOWN
    status: str = FactStatus.UNKNOWN
    recurrence: Optional[str] = Recurrence.UNKNOWN
    source_reference: str = ""
    confidence: float = 1.0
    direction: str = Direction.UNKNOWN
    clearing_status: str = ClearingStatus.UNKNOWN


# =============================================================================
# DERIVED RECURRENCE
# =============================================================================

@dataclass
class IntervalStats:
    """Day-gap statistics for one entity. Both window counts are always reported."""
    mean: float
    std_dev: float
    within_range: int                # Gaps inside the strict window
    within_loose_range: int          # Gaps inside the loose window


@dataclass
class RecurrenceClassification:
    is_monthly: bool
    tier: RecurrenceTier
    confidence: float
    evidence_count: int
    median_amount: Optional[float]
    interval_stats: Optional[IntervalStats] = None


# =============================================================================
# EVIDENCE & IMPACT
# =============================================================================

@dataclass
class DateRange:
    start: str
    end: str


@dataclass
class EvidenceStats:
    count: int
    date_range: Optional[DateRange]
    median_amount: Optional[float]
    currency: Optional[str]          # None whenever currencies are mixed
    source_references: list[str] = field(default_factory=list)


@dataclass
class ImpactResult:
    impact_min: Optional[float]
    impact_max: Optional[float]
    currency: Optional[str]
    reason: Optional[str] = None     # Why impact could not be computed

    @property
    def is_known(self) -> bool:
        return self.impact_min is not None


# =============================================================================
# ISSUES
# =============================================================================

@dataclass
class ProposedIssue:
    """
    Candidate issue produced by a detector.

    impact_min/impact_max stay None unless every strict impact rule held.
    details holds the detector's raw measurements (gap days, drift percent...).
    """

    issue_type: IssueType
    title: str
    severity: Severity
    confidence: float
    impact_min: Optional[float]
    impact_max: Optional[float]
    currency: Optional[str]
    rationale: list[str] = field(default_factory=list)
    evidence_fact_ids: list[str] = field(default_factory=list)
    entity_name: Optional[str] = None
    evidence_summary: Optional[str] = None
    evidence_stats: Optional[EvidenceStats] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PruneResult:
    issues: list[ProposedIssue]
    total_before_prune: int = 0
    dropped_low_evidence: int = 0
    dropped_duplicates: int = 0
    dropped_per_entity_cap: int = 0
    dropped_low_severity: int = 0
    dropped_by_cap: int = 0
    was_capped: bool = False
    max_issues: int = 8


@dataclass
class AnalysisResult:
    issues: list[ProposedIssue]
    not_flagged: list[str]
    scan_mode: ScanMode
    prune_stats: PruneResult
    bank_insights: Optional[Any] = None        # BankInsights in bank mode
    bank_diagnostics: Optional[Any] = None     # BankDiagnostics in bank mode


# =============================================================================
# SHARED HELPERS
# =============================================================================

def entity_key(fact: Fact) -> str:
    """Grouping key: canonical > raw > name > _unknown_."""
    return fact.entity_canonical or fact.entity_raw or fact.entity_name or UNKNOWN_ENTITY


def to_date(value: Any) -> Optional[date]:
    """Parses an ISO date string (or date/datetime) into a date. None if unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        ts = pd.Timestamp(value)
    except (ValueError, TypeError):
        return None
    if pd.isna(ts):
        return None
    return ts.date()


def days_between(start: Any, end: Any) -> Optional[int]:
    """Signed whole days from start to end, or None if either date is missing."""
    d1, d2 = to_date(start), to_date(end)
    if d1 is None or d2 is None:
        return None
    return (d2 - d1).days


def median(values: Iterable[float]) -> Optional[float]:
    """Median of the values (mean of the middle pair for even counts). None when empty."""
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return None
    return float(np.median(arr))


def sort_by_date(facts: Iterable[Fact]) -> list[Fact]:
    """Stable date sort. Facts without a parseable date are dropped."""
    dated = [(to_date(f.date_value), i, f) for i, f in enumerate(facts)]
    return [f for d, _, f in sorted((t for t in dated if t[0] is not None), key=lambda t: (t[0], t[1]))]


def distinct_currencies(facts: Iterable[Fact]) -> list[str]:
    """Distinct non-null currencies in first-seen order."""
    seen: list[str] = []
    for f in facts:
        if f.amount_currency and f.amount_currency not in seen:
            seen.append(f.amount_currency)
    return seen

"""
billing.py
-----------
Billing-mode detectors: unpaid invoice aging, recurring payment gap,
amount drift and duplicate charges.

Payment gap and amount drift accept the derived recurrence map: a payment
whose explicit recurrence is one_time/unknown/unset still counts as monthly
when its entity was classified monthly, and the issue says so in its
rationale.
"""

import logging
import math
from datetime import date
from typing import Optional

import numpy as np

from config.config_loader import get_detector_config
from core.evidence import (
    generate_amount_drift_summary,
    generate_duplicate_summary,
    generate_payment_gap_summary,
    generate_unpaid_invoice_summary,
)
from core.impact import (
    calculate_drift_impact,
    calculate_duplicate_impact,
    calculate_payment_gap_impact,
    calculate_unpaid_invoice_impact,
    format_impact_rationale,
)
from core.models import (
    DateType,
    Fact,
    FactStatus,
    FactType,
    IssueType,
    ProposedIssue,
    Severity,
    days_between,
    entity_key,
    median,
    sort_by_date,
    to_date,
)
from core.recurrence import RecurrenceMap
from detectors.base import (
    DERIVED_CADENCE_NOTE,
    display_name,
    group_by_entity,
    min_confidence,
    monthly_status,
)

logger = logging.getLogger(__name__)


# =============================================================================
# UNPAID INVOICE AGING
# =============================================================================

def detect_unpaid_invoice_aging(
    facts: list[Fact],
    aging_days: Optional[int] = None,
    as_of: Optional[date] = None,
) -> list[ProposedIssue]:
    """
    Flags entities with unpaid invoices whose due/issue date is at least
    aging_days before as_of (today by default).
    """
    cfg = get_detector_config("unpaid_invoice_aging")
    if aging_days is None:
        aging_days = cfg["aging_days"]
    today = to_date(as_of) or date.today()

    def qualifies(f: Fact) -> bool:
        return (
            f.fact_type == FactType.INVOICE
            and f.status == FactStatus.UNPAID
            and f.date_type in (DateType.DUE, DateType.ISSUED)
            and to_date(f.date_value) is not None
        )

    issues = []
    for key, invoices in group_by_entity(facts, qualifies).items():
        ages = {inv.id: days_between(inv.date_value, today) for inv in invoices}
        aged = [inv for inv in invoices if ages[inv.id] >= aging_days]
        if not aged:
            continue

        oldest_days = max(ages[inv.id] for inv in aged)
        oldest = max(aged, key=lambda inv: ages[inv.id])
        impact = calculate_unpaid_invoice_impact(aged)
        summary, stats = generate_unpaid_invoice_summary(aged, oldest_days)
        name = display_name(key, aged)

        if oldest_days > cfg["high_days"]:
            severity = Severity.HIGH
        elif oldest_days > cfg["medium_days"]:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW

        past = "due date" if oldest.date_type == DateType.DUE else "issue date"
        rationale = [
            f"{len(aged)} unpaid invoice(s) older than {aging_days} days",
            f"Oldest invoice is {oldest_days} days past {past}",
            format_impact_rationale(impact),
        ]

        issues.append(ProposedIssue(
            issue_type=IssueType.UNPAID_INVOICE_AGING,
            title=f"Aging unpaid invoices for {name or 'unknown entity'}",
            severity=severity,
            confidence=min_confidence(aged),
            impact_min=impact.impact_min,
            impact_max=impact.impact_max,
            currency=impact.currency,
            rationale=rationale,
            evidence_fact_ids=[inv.id for inv in aged],
            entity_name=name,
            evidence_summary=summary,
            evidence_stats=stats,
            details={"oldest_days": oldest_days, "aged_count": len(aged), "aging_days": aging_days},
        ))

    logger.debug(f"Unpaid invoice aging: {len(issues)} issue(s)")
    return issues


# =============================================================================
# RECURRING PAYMENT GAP
# =============================================================================

def detect_recurring_payment_gap(
    facts: list[Fact],
    derived_recurrence: Optional[RecurrenceMap] = None,
) -> list[ProposedIssue]:
    """
    Flags monthly payment streams with a gap longer than the threshold.
    When there are several gaps, the latest one is reported.
    """
    cfg = get_detector_config("recurring_payment_gap")
    derived_used: set[str] = set()

    def qualifies(f: Fact) -> bool:
        if f.fact_type != FactType.PAYMENT or f.status != FactStatus.PAID:
            return False
        if to_date(f.date_value) is None:
            return False
        is_monthly, used_derived = monthly_status(f, derived_recurrence)
        if used_derived:
            derived_used.add(entity_key(f))
        return is_monthly

    issues = []
    for key, payments in group_by_entity(facts, qualifies).items():
        if len(payments) < cfg["min_payments"]:
            continue

        ordered = sort_by_date(payments)
        gaps = [
            (i, days_between(ordered[i].date_value, ordered[i + 1].date_value))
            for i in range(len(ordered) - 1)
        ]
        gaps = [(i, days) for i, days in gaps if days > cfg["gap_threshold_days"]]
        if not gaps:
            continue

        index, gap_days = gaps[-1]
        gap_after = ordered[index].date_value
        months_missed = math.floor(gap_days / cfg["days_per_month"]) - 1
        before_gap = ordered[: index + 1]

        impact = calculate_payment_gap_impact(before_gap, months_missed)
        summary, stats = generate_payment_gap_summary(ordered, gap_days)
        name = display_name(key, ordered)

        if months_missed >= cfg["high_months_missed"]:
            severity = Severity.HIGH
        elif months_missed >= cfg["medium_months_missed"]:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW

        rationale = [
            f"{len(ordered)} monthly payments detected for this entity",
            f"Gap of {gap_days} days after {gap_after} (expected ~30 days)",
        ]
        if months_missed > 0:
            rationale.append(f"Approximately {months_missed} payment(s) may be missing")
        if key in derived_used:
            rationale.append(DERIVED_CADENCE_NOTE)
        rationale.append(format_impact_rationale(impact))

        issues.append(ProposedIssue(
            issue_type=IssueType.RECURRING_PAYMENT_GAP,
            title=f"Recurring payment gap for {name or 'unknown entity'}",
            severity=severity,
            confidence=min_confidence(ordered),
            impact_min=impact.impact_min,
            impact_max=impact.impact_max,
            currency=impact.currency,
            rationale=rationale,
            evidence_fact_ids=[p.id for p in ordered],
            entity_name=name,
            evidence_summary=summary,
            evidence_stats=stats,
            details={"gap_days": gap_days, "months_missed": months_missed, "gap_after_date": gap_after},
        ))

    logger.debug(f"Recurring payment gap: {len(issues)} issue(s)")
    return issues


# =============================================================================
# AMOUNT DRIFT
# =============================================================================

def detect_amount_drift(
    facts: list[Fact],
    derived_recurrence: Optional[RecurrenceMap] = None,
) -> list[ProposedIssue]:
    """
    Flags monthly payments whose two most recent amounts average at least
    20% below a stable prior median.
    """
    cfg = get_detector_config("amount_drift")
    recent_count = cfg["recent_count"]
    derived_used: set[str] = set()

    def qualifies(f: Fact) -> bool:
        if f.fact_type != FactType.PAYMENT or f.amount_value is None:
            return False
        if to_date(f.date_value) is None:
            return False
        is_monthly, used_derived = monthly_status(f, derived_recurrence)
        if used_derived:
            derived_used.add(entity_key(f))
        return is_monthly

    issues = []
    for key, payments in group_by_entity(facts, qualifies).items():
        if len(payments) < cfg["min_occurrences"]:
            continue

        ordered = sort_by_date(payments)
        amounts = np.array([p.amount_value for p in ordered], dtype=float)
        prior, recent = amounts[:-recent_count], amounts[-recent_count:]

        prior_median = median(prior)
        if not prior_median:
            continue
        if np.max(np.abs(prior - prior_median) / abs(prior_median)) > cfg["stability_threshold"]:
            continue

        recent_avg = float(np.mean(recent))
        drift = (prior_median - recent_avg) / prior_median
        if drift < cfg["drift_threshold"]:
            continue

        drift_percent = drift * 100
        impact = calculate_drift_impact(ordered, prior_median, recent_avg)
        summary, stats = generate_amount_drift_summary(ordered, prior_median, recent_avg, drift_percent)
        name = display_name(key, ordered)

        if drift >= cfg["high_drift"]:
            severity = Severity.HIGH
        elif drift >= cfg["medium_drift"]:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW

        rationale = [
            f"{len(ordered)} monthly payments analyzed",
            f"Prior stable amount: {prior_median:.2f}/month",
            f"Recent average: {recent_avg:.2f}/month",
            f"Decrease of {drift_percent:.1f}% detected",
        ]
        if key in derived_used:
            rationale.append(DERIVED_CADENCE_NOTE)
        rationale.append(format_impact_rationale(impact))

        issues.append(ProposedIssue(
            issue_type=IssueType.AMOUNT_DRIFT,
            title=f"Payment amount decreased for {name or 'unknown entity'}",
            severity=severity,
            confidence=min_confidence(ordered),
            impact_min=impact.impact_min,
            impact_max=impact.impact_max,
            currency=impact.currency,
            rationale=rationale,
            evidence_fact_ids=[p.id for p in ordered],
            entity_name=name,
            evidence_summary=summary,
            evidence_stats=stats,
            details={
                "prior_median": prior_median,
                "recent_avg": recent_avg,
                "drift_percent": round(drift_percent, 2),
            },
        ))

    logger.debug(f"Amount drift: {len(issues)} issue(s)")
    return issues


# =============================================================================
# DUPLICATE CHARGES (BILLING)
# =============================================================================

def detect_duplicate_charges(facts: list[Fact]) -> list[ProposedIssue]:
    """
    Flags payments sharing entity, date and amount. Always low severity:
    same-day repeats are often legitimate and need manual review. The
    exclusion list is not applied.
    """
    cfg = get_detector_config("duplicate_charge")

    groups: dict[tuple[str, str, float], list[Fact]] = {}
    for f in facts:
        if f.fact_type != FactType.PAYMENT or f.amount_value is None:
            continue
        day = to_date(f.date_value)
        if day is None:
            continue
        groups.setdefault((entity_key(f), day.isoformat(), f.amount_value), []).append(f)

    issues = []
    for (key, day, amount), group in groups.items():
        if len(group) < 2:
            continue

        impact = calculate_duplicate_impact(group)
        summary, stats = generate_duplicate_summary(group, day)
        name = display_name(key, group)

        currency = group[0].amount_currency
        amount_text = f"{currency} {amount:.2f}" if currency else f"{amount:.2f}"
        rationale = [
            f"{len(group)} payments with identical amount on the same day",
            f"Entity: {name or 'Unknown'}",
            f"Date: {day}",
            f"Amount: {amount_text} each",
            format_impact_rationale(impact),
        ]

        issues.append(ProposedIssue(
            issue_type=IssueType.DUPLICATE_CHARGE,
            title=f"Possible duplicate charges for {name or 'unknown entity'}",
            severity=Severity.LOW,
            confidence=min_confidence(group) * cfg["confidence_factor"],
            impact_min=impact.impact_min,
            impact_max=impact.impact_max,
            currency=impact.currency,
            rationale=rationale,
            evidence_fact_ids=[p.id for p in group],
            entity_name=name,
            evidence_summary=summary,
            evidence_stats=stats,
            details={"date": day, "amount": amount, "count": len(group)},
        ))

    logger.debug(f"Duplicate charges: {len(issues)} issue(s)")
    return issues

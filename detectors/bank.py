"""
bank.py
--------
Bank-mode detectors. They only look at qualifying transactions (outflow,
cleared, dated, amounted) and compare absolute amounts.

    new recurring charge  - derived monthly entity that started recently
    price creep           - last charge well above a stable baseline
    duplicate charge      - same entity/date/amount on one day
    unusual spike         - latest charge a multiple of the history median

Non-merchant transactions (transfers, card payments, bank fees) are skipped
by every detector here except duplicate charge.
"""

import logging
from typing import Optional

from config.config_loader import get_detector_config
from core.evidence import (
    compute_evidence_stats,
    format_money,
    generate_new_recurring_summary,
    generate_price_creep_summary,
    generate_spike_summary,
)
from core.exclusions import is_excluded
from core.impact import calculate_duplicate_impact, format_impact_rationale
from core.models import (
    Fact,
    IssueType,
    ProposedIssue,
    RecurrenceTier,
    Severity,
    days_between,
    entity_key,
    median,
    sort_by_date,
    to_date,
)
from core.recurrence import RecurrenceMap, is_qualifying_fact
from detectors.base import display_name, group_by_entity, min_confidence, single_currency

logger = logging.getLogger(__name__)


def _merchant_groups(facts: list[Fact]) -> dict[str, list[Fact]]:
    """Qualifying transactions grouped by entity, non-merchants removed, date-sorted."""
    groups = group_by_entity(facts, is_qualifying_fact)
    result = {}
    for key, group in groups.items():
        raw = next((f.entity_raw for f in group if f.entity_raw), None)
        if is_excluded(key, raw):
            logger.debug(f"Skipping non-merchant entity {key}")
            continue
        result[key] = sort_by_date(group)
    return result


def _dataset_end_date(facts: list[Fact]) -> Optional[str]:
    dates = [to_date(f.date_value) for f in facts]
    dates = [d for d in dates if d is not None]
    return max(dates).isoformat() if dates else None


# =============================================================================
# NEW RECURRING CHARGE
# =============================================================================

def detect_new_recurring_charge(
    facts: list[Fact],
    derived_recurrence: RecurrenceMap,
    dataset_end_date: Optional[str] = None,
) -> list[ProposedIssue]:
    """
    Flags derived-monthly merchants whose first charge falls within the last
    recent_days of the dataset. Informational: helps spot new subscriptions.
    """
    cfg = get_detector_config("new_recurring_charge")
    end_date = dataset_end_date or _dataset_end_date(facts)
    if end_date is None:
        return []

    issues = []
    for key, ordered in _merchant_groups(facts).items():
        classification = (derived_recurrence or {}).get(key)
        if classification is None or not classification.is_monthly:
            continue
        if classification.evidence_count < cfg["min_occurrences"]:
            continue

        first_date = ordered[0].date_value
        days_since_first = days_between(first_date, end_date)
        if days_since_first > cfg["recent_days"]:
            continue

        monthly = classification.median_amount
        currency = single_currency(ordered)
        annual = monthly * 12 if monthly is not None else None
        severity = Severity.HIGH if annual and annual > cfg["high_annual_amount"] else Severity.MEDIUM

        if classification.tier == RecurrenceTier.STRICT:
            tier_note = "Monthly cadence derived from transaction pattern (strict match)"
        else:
            tier_note = "Monthly cadence derived from transaction pattern (likely match, looser criteria)"

        rationale = [
            f"New monthly recurring charge started {days_since_first} days ago",
            f"{classification.evidence_count} occurrences detected with consistent ~30-day intervals",
            tier_note,
        ]
        if monthly is not None and currency:
            rationale.append(f"Typical amount: {format_money(monthly, currency, 2)}")
            rationale.append(f"Annualized: {format_money(annual, currency, 2)}")

        summary, stats = generate_new_recurring_summary(ordered)
        stats.median_amount = monthly
        name = display_name(key, ordered)
        impact = monthly if currency else None

        issues.append(ProposedIssue(
            issue_type=IssueType.NEW_RECURRING_CHARGE,
            title=f"New recurring charge detected: {name or 'unknown merchant'}",
            severity=severity,
            confidence=classification.confidence,
            impact_min=impact,
            impact_max=impact,
            currency=currency,
            rationale=rationale,
            evidence_fact_ids=[f.id for f in ordered],
            entity_name=name,
            evidence_summary=summary,
            evidence_stats=stats,
            details={
                "days_since_first": days_since_first,
                "tier": classification.tier.value,
                "annual_amount": annual,
            },
        ))

    logger.debug(f"New recurring charge: {len(issues)} issue(s)")
    return issues


# =============================================================================
# PRICE CREEP
# =============================================================================

def detect_price_creep(
    facts: list[Fact],
    derived_recurrence: Optional[RecurrenceMap] = None,
) -> list[ProposedIssue]:
    """
    Flags merchants whose latest charge is at least 15% above the median of
    a stable (±10%) baseline formed by all earlier charges.
    """
    cfg = get_detector_config("price_creep")

    issues = []
    for key, ordered in _merchant_groups(facts).items():
        if len(ordered) < cfg["min_occurrences"]:
            continue

        baseline, last = ordered[:-1], ordered[-1]
        baseline_amounts = [abs(f.amount_value) for f in baseline]
        baseline_median = median(baseline_amounts)
        if not baseline_median:
            continue
        if any(abs(a - baseline_median) / baseline_median > cfg["baseline_stability"] for a in baseline_amounts):
            continue

        last_amount = abs(last.amount_value)
        percent_increase = (last_amount - baseline_median) / baseline_median
        if percent_increase < cfg["increase_threshold"]:
            continue

        annual_delta = (last_amount - baseline_median) * 12
        currency = single_currency(ordered)
        severity = Severity.HIGH if annual_delta > cfg["high_annual_delta"] else Severity.MEDIUM

        shown_currency = last.amount_currency
        rationale = [
            f"Last charge ({format_money(last_amount, shown_currency, 2)}) is "
            f"{percent_increase * 100:.0f}% higher than baseline",
            f"Baseline median: {format_money(baseline_median, shown_currency, 2)} ({len(baseline)} prior charges)",
            "Baseline amounts were stable (within ±10%)",
        ]

        classification = (derived_recurrence or {}).get(key)
        if classification is not None and classification.is_monthly:
            rationale.append("Monthly cadence derived from transaction pattern")
            base_confidence = classification.confidence
        else:
            base_confidence = cfg["default_confidence"]
        if currency:
            rationale.append(f"Annualized impact of increase: {format_money(annual_delta, currency, 2)}")

        evidence_boost = min(len(ordered) / cfg["evidence_full_at"], 1.0) * cfg["evidence_boost"]
        confidence = min(base_confidence + evidence_boost, cfg["max_confidence"])

        summary, stats = generate_price_creep_summary(ordered, baseline_median, last_amount, percent_increase)
        name = display_name(key, ordered)
        impact = annual_delta if currency else None

        issues.append(ProposedIssue(
            issue_type=IssueType.PRICE_CREEP,
            title=f"Recurring charge increased: {name or 'unknown merchant'}",
            severity=severity,
            confidence=confidence,
            impact_min=impact,
            impact_max=impact,
            currency=currency,
            rationale=rationale,
            evidence_fact_ids=[f.id for f in ordered],
            entity_name=name,
            evidence_summary=summary,
            evidence_stats=stats,
            details={
                "baseline_median": baseline_median,
                "last_amount": last_amount,
                "percent_increase": round(percent_increase * 100, 2),
                "annual_delta": annual_delta,
            },
        ))

    logger.debug(f"Price creep: {len(issues)} issue(s)")
    return issues


# =============================================================================
# DUPLICATE CHARGES (BANK)
# =============================================================================

def detect_bank_duplicate_charges(facts: list[Fact]) -> list[ProposedIssue]:
    """
    Same entity, same day, same amount, two or more times. The exclusion
    list is not applied: duplicated transfers count too.
    """
    cfg = get_detector_config("bank_duplicate_charge")

    groups: dict[tuple[str, str, float], list[Fact]] = {}
    for f in facts:
        if not is_qualifying_fact(f):
            continue
        day = to_date(f.date_value).isoformat()
        groups.setdefault((entity_key(f), day, f.amount_value), []).append(f)

    issues = []
    for (key, day, _), group in groups.items():
        if len(group) < 2:
            continue

        amount = abs(group[0].amount_value)
        impact = calculate_duplicate_impact(group)
        severity = Severity.MEDIUM if amount >= cfg["medium_amount"] else Severity.LOW
        name = display_name(key, group)
        currency = group[0].amount_currency

        rationale = [
            f"{len(group)} identical charges on the same day",
            f"Date: {day}",
        ]
        if currency:
            rationale.append(f"Amount: {format_money(amount, currency, 2)} each")
        rationale.append(format_impact_rationale(impact))

        stats = compute_evidence_stats(group)
        stats.median_amount = amount

        issues.append(ProposedIssue(
            issue_type=IssueType.DUPLICATE_CHARGE,
            title=f"Possible duplicate charge: {name or 'unknown merchant'}",
            severity=severity,
            confidence=min_confidence(group) * cfg["confidence_factor"],
            impact_min=impact.impact_min,
            impact_max=impact.impact_max,
            currency=impact.currency,
            rationale=rationale,
            evidence_fact_ids=[f.id for f in group],
            entity_name=name,
            evidence_summary=f"{len(group)} charges of {format_money(amount, currency, 2)} on {day}",
            evidence_stats=stats,
            details={"date": day, "amount": amount, "count": len(group)},
        ))

    logger.debug(f"Bank duplicate charges: {len(issues)} issue(s)")
    return issues


# =============================================================================
# UNUSUAL SPIKE
# =============================================================================

def detect_unusual_spike(facts: list[Fact]) -> list[ProposedIssue]:
    """
    Flags a merchant's latest charge when it is at least 2.5x the median of
    at least 6 earlier charges.
    """
    cfg = get_detector_config("unusual_spike")

    issues = []
    for key, ordered in _merchant_groups(facts).items():
        if len(ordered) < cfg["min_history"] + 1:
            continue

        history, recent = ordered[:-1], ordered[-1]
        history_median = median(abs(f.amount_value) for f in history)
        if not history_median:
            continue

        recent_amount = abs(recent.amount_value)
        multiplier = recent_amount / history_median
        if multiplier < cfg["multiplier"]:
            continue

        spike_amount = recent_amount - history_median
        currency = single_currency(ordered)
        severity = Severity.HIGH if spike_amount >= cfg["high_spike_amount"] else Severity.MEDIUM

        shown_currency = recent.amount_currency
        rationale = [
            f"Recent charge ({format_money(recent_amount, shown_currency, 2)}) is "
            f"{multiplier:.1f}x the historical median",
            f"Historical median: {format_money(history_median, shown_currency, 2)} ({len(history)} prior charges)",
            f"Date of spike: {recent.date_value}",
        ]
        if currency:
            rationale.append(f"Amount above typical: {format_money(spike_amount, currency, 2)}")

        confidence = min(
            cfg["base_confidence"] + (len(history) / cfg["history_full_at"]) * cfg["history_weight"],
            cfg["max_confidence"],
        )

        summary, stats = generate_spike_summary(ordered, recent_amount, history_median, multiplier)
        name = display_name(key, ordered)
        impact = spike_amount if currency else None

        issues.append(ProposedIssue(
            issue_type=IssueType.UNUSUAL_SPIKE,
            title=f"Unusual charge amount: {name or 'unknown merchant'}",
            severity=severity,
            confidence=confidence,
            impact_min=impact,
            impact_max=impact,
            currency=currency,
            rationale=rationale,
            evidence_fact_ids=[f.id for f in ordered],
            entity_name=name,
            evidence_summary=summary,
            evidence_stats=stats,
            details={
                "history_median": history_median,
                "recent_amount": recent_amount,
                "multiplier": round(multiplier, 2),
                "spike_amount": spike_amount,
            },
        ))

    logger.debug(f"Unusual spike: {len(issues)} issue(s)")
    return issues

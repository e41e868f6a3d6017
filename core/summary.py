"""
summary.py
-----------
Deterministic executive summary and the prune transparency message.
"""

from dataclasses import dataclass, field
from typing import Optional

from core.evidence import format_money
from core.models import ProposedIssue, PruneResult, ScanMode, Severity


@dataclass
class SummaryResult:
    executive_summary: str
    issue_titles: list[str] = field(default_factory=list)
    cap_message: Optional[str] = None


_NO_ISSUES = {
    ScanMode.BILLING: (
        "No high-confidence billing or revenue issues were detected in this scan. "
        "The analysis applied conservative rules for invoice aging, payment gaps, "
        "amount drift, and duplicate charges. This does not guarantee absence of issues, "
        "only that none met the detection thresholds."
    ),
    ScanMode.BANK: (
        "No high-confidence issues were detected in these bank/card transactions. "
        "The analysis applied conservative rules for new recurring charges, price increases, "
        "duplicate charges, and unusual spikes. This does not guarantee absence of issues, "
        "only that none met the detection thresholds."
    ),
}

_SUBJECT = {
    ScanMode.BILLING: "billing/revenue",
    ScanMode.BANK: "bank/card",
}


def generate_cap_message(prune_stats: Optional[PruneResult]) -> Optional[str]:
    """Explains why fewer issues are shown than were detected."""
    if prune_stats is None:
        return None

    parts = []
    if prune_stats.was_capped:
        parts.append(f"Showing top {prune_stats.max_issues} issues (conservative cap)")
    if prune_stats.dropped_low_evidence:
        parts.append(f"{prune_stats.dropped_low_evidence} low-evidence issue(s) filtered")
    if prune_stats.dropped_duplicates:
        parts.append(f"{prune_stats.dropped_duplicates} duplicate(s) removed")
    if prune_stats.dropped_per_entity_cap:
        parts.append(f"{prune_stats.dropped_per_entity_cap} extra issue(s) for the same entity hidden")
    if prune_stats.dropped_low_severity:
        parts.append(f"{prune_stats.dropped_low_severity} low-severity issue(s) hidden")

    return " · ".join(parts) if parts else None


def _impact_sentence(issues: list[ProposedIssue]) -> str:
    # Impact is only summed when every known impact shares one currency.
    with_impact = [i for i in issues if i.impact_min is not None]
    if not with_impact:
        return ""
    currencies = {i.currency for i in with_impact}
    if len(currencies) != 1 or None in currencies:
        return " Estimated impact spans multiple currencies and is not summed."

    currency = with_impact[0].currency
    total_min = sum(i.impact_min for i in with_impact)
    total_max = sum(i.impact_max if i.impact_max is not None else i.impact_min for i in with_impact)
    if total_min == total_max:
        return f" Estimated impact: {format_money(total_min, currency)}."
    return (
        f" Estimated impact range: {format_money(total_min, currency)}"
        f" to {format_money(total_max, currency)}."
    )


def generate_summary(
    issues: list[ProposedIssue],
    prune_stats: Optional[PruneResult] = None,
    scan_mode: ScanMode = ScanMode.BILLING,
) -> SummaryResult:
    scan_mode = ScanMode(scan_mode)
    cap_message = generate_cap_message(prune_stats)

    if not issues:
        return SummaryResult(executive_summary=_NO_ISSUES[scan_mode], cap_message=cap_message)

    breakdown = []
    for severity in (Severity.HIGH, Severity.MEDIUM, Severity.LOW):
        count = sum(1 for i in issues if i.severity == severity)
        if count:
            breakdown.append(f"{count} {severity.value}-severity")

    executive_summary = (
        f"This scan identified {len(issues)} potential {_SUBJECT[scan_mode]} issue(s): "
        f"{', '.join(breakdown)}.{_impact_sentence(issues)} "
        "These findings are based on pattern detection and require manual verification. "
        "No recommendations are provided; review the evidence and apply business judgment."
    )

    return SummaryResult(
        executive_summary=executive_summary,
        issue_titles=[i.title for i in issues[:3]],
        cap_message=cap_message,
    )

"""
pruning.py
-----------
Deterministic issue pruning and ranking.

Turns the full candidate list from every detector that ran into a short,
ordered, trustworthy list. Six stages, in this order:

    1. Score & sort      severity*10 + confidence*5 + log10(impact+1) + evidence*0.2
    2. Evidence gate     per-issue-type minimum evidence count
    3. Dedup             one issue per (entity, issue type), best score wins
    4. Per-entity cap    at most N issues per entity
    5. Low-severity      optional filter, lows kept only to fill the quota
    6. Total cap         truncate to max_issues

Reordering the stages changes the output. Every drop counter is surfaced to
users, so the counts must be exact.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from config.config_loader import get_prune_profile, get_pruning_config
from core.models import IssueType, PruneResult, ProposedIssue, ScanMode, Severity, UNKNOWN_ENTITY

logger = logging.getLogger(__name__)


@dataclass
class PruneOptions:
    """
    Explicit prune settings, built once per analysis.

    tighten_after_non_low: when set, allow_low_severity is forced off once
    this many non-low issues survive the per-entity cap (bank profile).
    """

    max_issues: int = 8
    max_per_entity: int = 2
    allow_low_severity: bool = True
    min_evidence_by_type: dict[str, int] = field(default_factory=dict)
    severity_weights: dict[str, float] = field(default_factory=lambda: {"high": 3, "medium": 2, "low": 1})
    score_weights: dict[str, float] = field(
        default_factory=lambda: {"severity": 10, "confidence": 5, "evidence": 0.2}
    )
    tighten_after_non_low: Optional[int] = None

    @classmethod
    def for_mode(cls, scan_mode: ScanMode = ScanMode.BILLING, **overrides) -> "PruneOptions":
        """Builds options from the config profile for the mode, then applies overrides."""
        pruning = get_pruning_config()
        profile = get_prune_profile(ScanMode(scan_mode).value)
        options = cls(
            max_issues=profile["max_issues"],
            max_per_entity=profile["max_per_entity"],
            allow_low_severity=profile["allow_low_severity"],
            min_evidence_by_type=dict(pruning["min_evidence_by_type"]),
            severity_weights=dict(pruning["severity_weights"]),
            score_weights=dict(pruning["score_weights"]),
            tighten_after_non_low=profile.get("tighten_after_non_low"),
        )
        for name, value in overrides.items():
            if value is None:
                continue
            if not hasattr(options, name):
                raise KeyError(f"Unknown prune option '{name}'")
            setattr(options, name, value)
        return options


# =============================================================================
# SCORING
# =============================================================================

def score_issue(issue: ProposedIssue, options: PruneOptions) -> float:
    """Ranking score. Higher is more important."""
    weights = options.score_weights
    severity_weight = options.severity_weights[Severity(issue.severity).value]
    impact = max(issue.impact_min or 0, issue.impact_max or 0, 0)
    return (
        severity_weight * weights["severity"]
        + issue.confidence * weights["confidence"]
        + math.log10(impact + 1)
        + len(issue.evidence_fact_ids) * weights["evidence"]
    )


def _entity(issue: ProposedIssue) -> str:
    return issue.entity_name or UNKNOWN_ENTITY


def _is_low(issue: ProposedIssue) -> bool:
    return issue.severity == Severity.LOW


# =============================================================================
# STAGES
# =============================================================================

def _evidence_gate(issues: list[ProposedIssue], options: PruneOptions) -> list[ProposedIssue]:
    def minimum(issue: ProposedIssue) -> int:
        return options.min_evidence_by_type.get(IssueType(issue.issue_type).value, 1)

    return [i for i in issues if len(i.evidence_fact_ids) >= minimum(i)]


def _dedup(issues: list[ProposedIssue]) -> list[ProposedIssue]:
    seen: set[tuple[str, str]] = set()
    kept = []
    for issue in issues:
        key = (_entity(issue), IssueType(issue.issue_type).value)
        if key not in seen:
            seen.add(key)
            kept.append(issue)
    return kept


def _per_entity_cap(issues: list[ProposedIssue], max_per_entity: int) -> list[ProposedIssue]:
    counts: dict[str, int] = defaultdict(int)
    kept = []
    for issue in issues:
        entity = _entity(issue)
        if counts[entity] < max_per_entity:
            counts[entity] += 1
            kept.append(issue)
    return kept


def _low_severity_filter(issues: list[ProposedIssue], max_issues: int) -> list[ProposedIssue]:
    """Drops lows, except the best-scored ones needed to reach max_issues."""
    non_low_count = sum(1 for i in issues if not _is_low(i))
    low_slots = max(max_issues - non_low_count, 0)
    kept = []
    for issue in issues:
        if _is_low(issue):
            if low_slots == 0:
                continue
            low_slots -= 1
        kept.append(issue)
    return kept


# =============================================================================
# PUBLIC INTERFACE
# =============================================================================

def prune_issues(
    issues: list[ProposedIssue],
    options: Optional[PruneOptions] = None,
    scan_mode: ScanMode = ScanMode.BILLING,
) -> PruneResult:
    """
    Applies the six-stage pruning policy.

    Args:
        issues:    Candidate issues from every detector that ran.
        options:   Explicit options. Defaults to the profile for scan_mode.
        scan_mode: Selects the default profile when options is None.

    Returns:
        PruneResult with the surviving ordered issues and all drop counters.
    """
    if options is None:
        options = PruneOptions.for_mode(scan_mode)

    total_before = len(issues)

    # Stage 1: score & sort (stable, so input order breaks ties)
    result = sorted(issues, key=lambda i: score_issue(i, options), reverse=True)

    # Stage 2: evidence gate
    after = _evidence_gate(result, options)
    dropped_low_evidence = len(result) - len(after)
    result = after

    # Stage 3: dedup by (entity, issue type)
    after = _dedup(result)
    dropped_duplicates = len(result) - len(after)
    result = after

    # Stage 4: per-entity cap
    after = _per_entity_cap(result, options.max_per_entity)
    dropped_per_entity = len(result) - len(after)
    result = after

    # Stage 5: low-severity filter, with dynamic tightening
    allow_low = options.allow_low_severity
    if options.tighten_after_non_low is not None:
        non_low = sum(1 for i in result if not _is_low(i))
        if non_low >= options.tighten_after_non_low:
            allow_low = False
    dropped_low_severity = 0
    if not allow_low:
        after = _low_severity_filter(result, options.max_issues)
        dropped_low_severity = len(result) - len(after)
        result = after

    # Stage 6: total cap
    dropped_by_cap = max(len(result) - options.max_issues, 0)
    result = result[: options.max_issues]

    prune_result = PruneResult(
        issues=result,
        total_before_prune=total_before,
        dropped_low_evidence=dropped_low_evidence,
        dropped_duplicates=dropped_duplicates,
        dropped_per_entity_cap=dropped_per_entity,
        dropped_low_severity=dropped_low_severity,
        dropped_by_cap=dropped_by_cap,
        was_capped=dropped_by_cap > 0 or dropped_per_entity > 0,
        max_issues=options.max_issues,
    )

    logger.debug(
        f"Pruned {total_before} -> {len(result)} (evidence={dropped_low_evidence} "
        f"dup={dropped_duplicates} entity={dropped_per_entity} "
        f"low={dropped_low_severity} cap={dropped_by_cap})"
    )
    return prune_result

"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. Entity canonicalization    →  facts with stable grouping keys
    2. Recurrence classification  →  entity -> monthly classification map
    3. Scan-mode selection        →  bank or billing
    4. Detectors                  →  candidate issues
    5. Pruning                    →  final ordered issues + drop counters
    6. Transparency               →  not-flagged messages, bank insights/diagnostics

This is the single entry point for running an analysis. Everything else is
internal machinery. Each run builds and discards its own lookup maps; no
state is shared between runs.

Usage:
    from pipeline import ChaosScanPipeline

    pipeline = ChaosScanPipeline()
    result = pipeline.run(facts)
    issues_df = pipeline.to_frame(result)
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

import pandas as pd

from config.config_loader import get_detector_config, load_config
from core.canonicalize import canonicalize_facts
from core.models import (
    AnalysisResult,
    Fact,
    FactStatus,
    FactType,
    ISSUE_TYPE_LABELS,
    IssueType,
    ProposedIssue,
    ScanMode,
)
from core.pruning import PruneOptions, prune_issues
from core.recurrence import RecurrenceMap, classify_monthly_by_entity, is_qualifying_fact
from core.scan_mode import detect_scan_mode
from detectors.registry import get_detectors
from diagnostics.bank_diagnostics import BankDiagnostics, compute_bank_diagnostics
from diagnostics.bank_insights import generate_bank_insights

logger = logging.getLogger(__name__)


ISSUE_COLUMNS = [
    "issue_type", "issue_label", "title", "severity", "confidence", "impact_min", "impact_max",
    "currency", "entity_name", "evidence_count", "evidence_fact_ids",
    "evidence_summary", "rationale",
]


@dataclass
class AnalysisOptions:
    """
    Per-run settings, built once and passed down explicitly.

    scan_mode: force a mode instead of detecting it.
    as_of: "today" for invoice aging.
    max_issues / max_per_entity / allow_low_severity: override the prune
    profile of the selected mode when set.
    """

    scan_mode: Optional[ScanMode] = None
    as_of: Optional[date] = None
    dataset_end_date: Optional[str] = None
    max_issues: Optional[int] = None
    max_per_entity: Optional[int] = None
    allow_low_severity: Optional[bool] = None

    def prune_options(self, scan_mode: ScanMode) -> PruneOptions:
        return PruneOptions.for_mode(
            scan_mode,
            max_issues=self.max_issues,
            max_per_entity=self.max_per_entity,
            allow_low_severity=self.allow_low_severity,
        )


class ChaosScanPipeline:
    """
    End-to-end chaos scan over an in-memory list of facts.

    Orchestrates canonicalize → classify → detect → prune without exposing
    intermediate objects to callers.
    """

    def __init__(self, options: Optional[AnalysisOptions] = None):
        self.config = load_config()
        self.options = options or AnalysisOptions()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(self, facts: list[Fact]) -> AnalysisResult:
        """
        Run the full analysis.

        Args:
            facts: Normalized facts (already confidence-filtered upstream).

        Returns:
            AnalysisResult with pruned issues, not-flagged messages, the scan
            mode, prune counters and, in bank mode, insights and diagnostics.
        """
        logger.info(f"Analysis starting. Input: {len(facts):,} facts.")

        # --- Stage 1: Canonical entity keys ---
        facts = canonicalize_facts(facts)

        # --- Stage 2: Derived recurrence, once per run ---
        derived = classify_monthly_by_entity(facts)
        monthly = sum(1 for c in derived.values() if c.is_monthly)
        logger.info(f"Recurrence classified. Entities: {len(derived):,}, monthly: {monthly:,}.")

        # --- Stage 3: Scan mode ---
        scan_mode = ScanMode(self.options.scan_mode) if self.options.scan_mode else detect_scan_mode(facts)
        logger.info(f"Scan mode: {scan_mode.value}.")

        # --- Stage 4: Detectors ---
        candidates, by_detector = self._run_detectors(facts, derived, scan_mode)
        self._assert_evidence_exists(candidates, facts)

        # --- Stage 5: Pruning ---
        prune_result = prune_issues(candidates, self.options.prune_options(scan_mode))
        logger.info(
            f"Pruning complete. {prune_result.total_before_prune} -> {len(prune_result.issues)} issues "
            f"(low evidence: {prune_result.dropped_low_evidence}, duplicates: {prune_result.dropped_duplicates}, "
            f"per entity: {prune_result.dropped_per_entity_cap}, low severity: {prune_result.dropped_low_severity}, "
            f"cap: {prune_result.dropped_by_cap})."
        )

        # --- Stage 6: Transparency ---
        bank_insights = None
        bank_diagnostics = None
        if scan_mode == ScanMode.BANK:
            bank_insights = generate_bank_insights(facts, derived)
            bank_diagnostics = compute_bank_diagnostics(facts, derived)
            not_flagged = self._bank_not_flagged(facts, by_detector, bank_diagnostics)
        else:
            not_flagged = self._billing_not_flagged(facts, by_detector)

        return AnalysisResult(
            issues=prune_result.issues,
            not_flagged=not_flagged,
            scan_mode=scan_mode,
            prune_stats=prune_result,
            bank_insights=bank_insights,
            bank_diagnostics=bank_diagnostics,
        )

    @staticmethod
    def to_frame(result: AnalysisResult) -> pd.DataFrame:
        """
        Flattens the final issues into a DataFrame, one row per issue in
        ranked order. Evidence IDs and rationale lines are joined with "|".
        """
        if not result.issues:
            return pd.DataFrame(columns=ISSUE_COLUMNS)

        rows = []
        for issue in result.issues:
            rows.append({
                "issue_type": issue.issue_type.value,
                "issue_label": ISSUE_TYPE_LABELS[IssueType(issue.issue_type)],
                "title": issue.title,
                "severity": issue.severity.value,
                "confidence": round(issue.confidence, 4),
                "impact_min": issue.impact_min,
                "impact_max": issue.impact_max,
                "currency": issue.currency,
                "entity_name": issue.entity_name,
                "evidence_count": len(issue.evidence_fact_ids),
                "evidence_fact_ids": "|".join(issue.evidence_fact_ids),
                "evidence_summary": issue.evidence_summary,
                "rationale": " | ".join(issue.rationale),
            })
        return pd.DataFrame(rows, columns=ISSUE_COLUMNS)

    # -------------------------------------------------------------------------
    # INTERNAL: DETECTION
    # -------------------------------------------------------------------------

    def _run_detectors(
        self, facts: list[Fact], derived: RecurrenceMap, scan_mode: ScanMode
    ) -> tuple[list[ProposedIssue], dict[str, list[ProposedIssue]]]:
        detectors = get_detectors(
            scan_mode,
            derived,
            as_of=self.options.as_of,
            dataset_end_date=self.options.dataset_end_date,
        )

        candidates: list[ProposedIssue] = []
        by_detector: dict[str, list[ProposedIssue]] = {}
        for name, detector in detectors:
            found = detector(facts)
            by_detector[name] = found
            candidates.extend(found)
            logger.info(f"Detector {name}: {len(found)} candidate(s).")

        return candidates, by_detector

    @staticmethod
    def _assert_evidence_exists(issues: list[ProposedIssue], facts: list[Fact]) -> None:
        known_ids = {f.id for f in facts}
        for issue in issues:
            missing = [fid for fid in issue.evidence_fact_ids if fid not in known_ids]
            assert not missing, f"{issue.issue_type.value} references unknown fact ids: {missing}"

    # -------------------------------------------------------------------------
    # INTERNAL: NOT-FLAGGED MESSAGES
    # -------------------------------------------------------------------------

    @staticmethod
    def _billing_not_flagged(facts: list[Fact], by_detector: dict[str, list[ProposedIssue]]) -> list[str]:
        invoices = sum(1 for f in facts if f.fact_type == FactType.INVOICE)
        payments = sum(1 for f in facts if f.fact_type == FactType.PAYMENT)
        active_subscriptions = sum(
            1 for f in facts if f.fact_type == FactType.SUBSCRIPTION and f.status == FactStatus.ACTIVE
        )
        aging_days = get_detector_config("unpaid_invoice_aging")["aging_days"]
        gap_min = get_detector_config("recurring_payment_gap")["min_payments"]
        drift_min = get_detector_config("amount_drift")["min_occurrences"]

        messages = []
        if invoices > 0 and not by_detector.get("unpaid_invoice_aging"):
            messages.append(f"All invoices are current (none older than {aging_days} days)")
        if payments >= gap_min and not by_detector.get("recurring_payment_gap"):
            messages.append("No significant gaps detected in recurring payment patterns")
        if payments >= drift_min and not by_detector.get("amount_drift"):
            messages.append("Recurring payment amounts are stable (no drift detected)")
        if payments >= 2 and not by_detector.get("duplicate_charge"):
            messages.append("No duplicate charges detected on the same day")
        if active_subscriptions > 0:
            messages.append(f"{active_subscriptions} active subscription(s) confirmed")
        return messages

    @staticmethod
    def _bank_not_flagged(
        facts: list[Fact],
        by_detector: dict[str, list[ProposedIssue]],
        diagnostics: BankDiagnostics,
    ) -> list[str]:
        eligibility = diagnostics.detector_eligibility
        recent_days = get_detector_config("new_recurring_charge")["recent_days"]
        qualifying = sum(1 for f in facts if is_qualifying_fact(f))

        messages = []
        if eligibility.new_recurring_eligible and not by_detector.get("new_recurring_charge"):
            messages.append(f"No new recurring charges started in the last {recent_days} days")
        if eligibility.price_creep_eligible and not by_detector.get("price_creep"):
            messages.append("No price increases detected on recurring charges")
        if qualifying >= 2 and not by_detector.get("bank_duplicate_charge"):
            messages.append("No duplicate charges detected on the same day")
        if eligibility.spike_eligible and not by_detector.get("unusual_spike"):
            messages.append("No unusual charge spikes detected")
        return messages

"""
bank_diagnostics.py
--------------------
Explains why a bank scan produced few or no issues.

Reports data coverage (dates, amounts), qualifying transaction counts,
exclusion rates, per-detector eligibility and a ranked list of
human-readable "top blockers". Computed for every bank-mode scan.

All thresholds come from config.yaml.
"""

from dataclasses import dataclass, field

import pandas as pd

from config.config_loader import get_detector_config, get_diagnostics_config, get_recurrence_config
from core.exclusions import is_excluded
from core.models import ClearingStatus, Direction, Fact, UNKNOWN_ENTITY, entity_key, to_date
from core.recurrence import RecurrenceMap, is_qualifying_fact


@dataclass
class DetectorEligibility:
    new_recurring_eligible: int = 0
    price_creep_eligible: int = 0
    spike_eligible: int = 0
    duplicate_eligible: int = 0

    @property
    def any_eligible(self) -> bool:
        return any((
            self.new_recurring_eligible,
            self.price_creep_eligible,
            self.spike_eligible,
            self.duplicate_eligible,
        ))


@dataclass
class BankDiagnostics:
    """Coverage and eligibility statistics for one bank scan. Rates are 0-1."""
    total_facts: int
    bank_facts: int                          # direction known
    with_date_count: int
    missing_date_count: int
    date_coverage_percent: float
    date_parse_failure_rate: float
    with_amount_count: int
    missing_amount_count: int
    outflow_cleared_count: int
    qualifying_for_analysis: int             # outflow + cleared + date + amount
    unique_merchants: int
    excluded_merchant_count: int
    excluded_merchant_rate: float
    excluded_merchants: list[str] = field(default_factory=list)
    candidate_recurring_merchants: int = 0   # >=3 qualifying outflows
    derived_monthly_merchants_count: int = 0
    detector_eligibility: DetectorEligibility = field(default_factory=DetectorEligibility)
    top_blockers: list[str] = field(default_factory=list)


class BankDiagnosticsCalculator:
    """
    Usage:
        diagnostics = BankDiagnosticsCalculator().compute(facts, derived_recurrence)
    """

    def __init__(self):
        self.config = get_diagnostics_config()
        self.min_occurrences = get_recurrence_config()["min_occurrences"]
        self.price_creep_min = get_detector_config("price_creep")["min_occurrences"]
        self.spike_min = get_detector_config("unusual_spike")["min_history"] + 1
        self.new_recurring_min = get_detector_config("new_recurring_charge")["min_occurrences"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def compute(self, facts: list[Fact], derived_recurrence: RecurrenceMap) -> BankDiagnostics:
        df = self._to_frame(facts)
        total = len(df)

        with_date = int(df["has_date"].sum()) if total else 0
        with_amount = int(df["has_amount"].sum()) if total else 0
        missing_date = total - with_date
        failure_rate = missing_date / total if total else 0.0

        outflow_cleared = int(df["outflow_cleared"].sum()) if total else 0
        qualifying = df[df["qualifying"]] if total else df

        # Merchant exclusion, evaluated once per entity key
        known = df[df["key"] != UNKNOWN_ENTITY] if total else df
        merchants = list(dict.fromkeys(known["key"])) if total else []
        raw_by_key = known.dropna(subset=["raw"]).groupby("key")["raw"].first().to_dict() if total else {}
        excluded = [k for k in merchants if is_excluded(k, raw_by_key.get(k))]
        excluded_set = set(excluded)
        excluded_rate = len(excluded) / len(merchants) if merchants else 0.0

        merchant_counts = (
            qualifying[~qualifying["key"].isin(excluded_set)].groupby("key").size()
            if len(qualifying) else pd.Series(dtype=int)
        )
        candidates = int((merchant_counts >= self.min_occurrences).sum())
        derived_monthly = sum(1 for c in derived_recurrence.values() if c.is_monthly)

        eligibility = self._eligibility(qualifying, merchant_counts, excluded_set, derived_recurrence)

        diagnostics = BankDiagnostics(
            total_facts=total,
            bank_facts=int(df["has_direction"].sum()) if total else 0,
            with_date_count=with_date,
            missing_date_count=missing_date,
            date_coverage_percent=round(with_date / total * 100, 1) if total else 0.0,
            date_parse_failure_rate=failure_rate,
            with_amount_count=with_amount,
            missing_amount_count=total - with_amount,
            outflow_cleared_count=outflow_cleared,
            qualifying_for_analysis=len(qualifying),
            unique_merchants=len(merchants),
            excluded_merchant_count=len(excluded),
            excluded_merchant_rate=excluded_rate,
            excluded_merchants=excluded[: self.config["excluded_sample_size"]],
            candidate_recurring_merchants=candidates,
            derived_monthly_merchants_count=derived_monthly,
            detector_eligibility=eligibility,
        )
        diagnostics.top_blockers = self._top_blockers(diagnostics)
        return diagnostics

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_frame(facts: list[Fact]) -> pd.DataFrame:
        rows = [
            {
                "key": entity_key(f),
                "raw": f.entity_raw,
                "date": to_date(f.date_value),
                "amount": f.amount_value,
                "has_date": to_date(f.date_value) is not None,
                "has_amount": f.amount_value is not None,
                "has_direction": f.direction in (Direction.INFLOW, Direction.OUTFLOW),
                "outflow_cleared": f.direction == Direction.OUTFLOW and f.clearing_status == ClearingStatus.CLEARED,
                "qualifying": is_qualifying_fact(f),
            }
            for f in facts
        ]
        return pd.DataFrame(rows)

    def _eligibility(
        self,
        qualifying: pd.DataFrame,
        merchant_counts: pd.Series,
        excluded: set[str],
        derived_recurrence: RecurrenceMap,
    ) -> DetectorEligibility:
        new_recurring = sum(
            1 for key, c in derived_recurrence.items()
            if c.is_monthly and c.evidence_count >= self.new_recurring_min and key not in excluded
        )

        duplicates = 0
        if len(qualifying):
            group_sizes = qualifying.groupby(["key", "date", "amount"]).size()
            duplicates = int((group_sizes >= 2).sum())

        return DetectorEligibility(
            new_recurring_eligible=new_recurring,
            price_creep_eligible=int((merchant_counts >= self.price_creep_min).sum()),
            spike_eligible=int((merchant_counts >= self.spike_min).sum()),
            duplicate_eligible=duplicates,
        )

    def _top_blockers(self, d: BankDiagnostics) -> list[str]:
        """Blockers in order of how badly they limit the scan."""
        cfg = self.config
        blockers = []

        if d.date_parse_failure_rate > cfg["high_missing_date_rate"]:
            blockers.append(
                f"{round(d.date_parse_failure_rate * 100)}% of transactions are missing a parseable date. "
                "Your export may use an unsupported date format."
            )

        if d.total_facts > 0 and d.bank_facts == 0:
            blockers.append(
                "No transactions have direction (inflow/outflow) detected. "
                "The CSV format may not be recognized as bank data."
            )

        if d.total_facts > 0 and d.qualifying_for_analysis < cfg["min_qualifying_facts"]:
            blockers.append(
                f"Only {d.qualifying_for_analysis} transactions qualify for analysis "
                "(need outflow + cleared + date + amount)."
            )

        if d.candidate_recurring_merchants == 0 and d.qualifying_for_analysis >= cfg["min_qualifying_facts"]:
            blockers.append(
                f"No merchants have {self.min_occurrences}+ dated outflows needed for recurrence detection."
            )

        if d.candidate_recurring_merchants > 0 and d.derived_monthly_merchants_count == 0:
            blockers.append(
                f"{d.candidate_recurring_merchants} merchant(s) have enough history "
                "but none met monthly criteria (28-35 day intervals, stable amounts)."
            )

        if d.excluded_merchant_rate > cfg["high_exclusion_rate"]:
            blockers.append(
                f"{round(d.excluded_merchant_rate * 100)}% of merchants matched exclusion patterns "
                "(transfers, payments). This is unusually high and may indicate overreach."
            )

        if not d.detector_eligibility.any_eligible:
            blockers.append(
                "No merchants are eligible for any detector. "
                "This typically means insufficient transaction history or missing dates."
            )

        if not blockers:
            blockers.append(
                "Data coverage looks adequate. No issues were detected because all patterns appear normal."
            )
        return blockers


def compute_bank_diagnostics(facts: list[Fact], derived_recurrence: RecurrenceMap) -> BankDiagnostics:
    return BankDiagnosticsCalculator().compute(facts, derived_recurrence)


def summarize_diagnostics(diagnostics: BankDiagnostics) -> str:
    """One-line digest, e.g. "120 transactions analyzed · 98 qualifying for analysis · 4 recurring merchants found"."""
    parts = [f"{diagnostics.total_facts} transactions analyzed"]
    if diagnostics.date_parse_failure_rate > get_diagnostics_config()["summary_missing_date_rate"]:
        parts.append(f"{round(diagnostics.date_parse_failure_rate * 100)}% missing dates")
    parts.append(f"{diagnostics.qualifying_for_analysis} qualifying for analysis")
    parts.append(f"{diagnostics.derived_monthly_merchants_count} recurring merchants found")
    return " · ".join(parts)

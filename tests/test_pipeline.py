"""
test_pipeline.py
-----------------
Scan mode, full pipeline (integration), bank insights/diagnostics,
summaries, record normalization, config and the CLI.

Run from the project root:
    python -m pytest tests/test_pipeline.py -v
"""

import json
import os
from dataclasses import replace
from datetime import date

import pandas as pd
import pytest

from config.config_loader import (
    get_all_detector_names,
    get_detector_config,
    get_prune_profile,
    load_config,
    reset_config,
)
from core.models import Direction, Fact, IssueType, ScanMode, Severity
from core.normalize import normalize_and_filter, normalize_fact
from core.pruning import prune_issues
from core.recurrence import classify_monthly_by_entity
from core.scan_mode import detect_scan_mode, get_scan_mode_terminology
from core.summary import generate_cap_message, generate_summary
from diagnostics.bank_diagnostics import compute_bank_diagnostics, summarize_diagnostics
from diagnostics.bank_insights import generate_bank_insights
from main import load_records, main, parse_args
from pipeline import ISSUE_COLUMNS, AnalysisOptions, ChaosScanPipeline

from factories import make_acme_gap_payments, make_issue, make_series, make_txn


def _bank_facts() -> list[Fact]:
    """Two monthly subscriptions plus one same-day duplicate coffee charge."""
    netflix = make_series("n", "NETFLIX", [-15.99] * 6)
    spotify = make_series("s", "SPOTIFY USA", [-9.99] * 6)
    coffee = [
        make_txn("c1", "STARBUCKS STORE #123", -5.50, "2024-03-03"),
        make_txn("c2", "STARBUCKS STORE #123", -5.50, "2024-03-03"),
    ]
    return netflix + spotify + coffee


# =============================================================================
# CONFIG
# =============================================================================

class TestConfig:
    def test_config_loads_successfully(self):
        config = load_config()
        for section in ("scan_mode", "recurrence", "detectors", "impact", "exclusions", "pruning", "diagnostics"):
            assert section in config

    def test_all_detectors_configured(self):
        assert set(get_all_detector_names()) == {
            "unpaid_invoice_aging", "recurring_payment_gap", "amount_drift", "duplicate_charge",
            "new_recurring_charge", "price_creep", "bank_duplicate_charge", "unusual_spike",
        }

    def test_missing_detector_raises(self):
        with pytest.raises(KeyError):
            get_detector_config("Nonexistent Detector")

    def test_missing_profile_raises(self):
        with pytest.raises(KeyError):
            get_prune_profile("crypto")

    def test_missing_file_raises(self, tmp_path):
        reset_config()
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))


# =============================================================================
# SCAN MODE
# =============================================================================

class TestScanMode:
    def _facts(self, with_direction: int, total: int = 10) -> list[Fact]:
        return [
            Fact(id=f"f{i}", direction=Direction.OUTFLOW if i < with_direction else Direction.UNKNOWN)
            for i in range(total)
        ]

    def test_exactly_80_percent_is_billing(self):
        assert detect_scan_mode(self._facts(8)) == ScanMode.BILLING

    def test_above_80_percent_is_bank(self):
        assert detect_scan_mode(self._facts(9)) == ScanMode.BANK

    def test_empty_is_billing(self):
        assert detect_scan_mode([]) == ScanMode.BILLING

    def test_terminology(self):
        assert get_scan_mode_terminology(ScanMode.BANK).entity_type == "merchant"
        assert get_scan_mode_terminology("billing").transaction_type == "payments"


# =============================================================================
# FULL PIPELINE (INTEGRATION)
# =============================================================================

class TestBillingPipeline:
    def test_acme_end_to_end(self):
        result = ChaosScanPipeline(AnalysisOptions(as_of=date(2024, 12, 31))).run(make_acme_gap_payments())

        assert result.scan_mode == ScanMode.BILLING
        assert len(result.issues) == 1
        issue = result.issues[0]
        assert issue.issue_type == IssueType.RECURRING_PAYMENT_GAP
        assert issue.details["months_missed"] == 2
        assert issue.severity == Severity.MEDIUM
        assert issue.impact_min == pytest.approx(17000.0)

        assert "Recurring payment amounts are stable (no drift detected)" in result.not_flagged
        assert "No duplicate charges detected on the same day" in result.not_flagged
        assert result.bank_insights is None
        assert result.bank_diagnostics is None

    def test_forced_scan_mode(self):
        result = ChaosScanPipeline(AnalysisOptions(scan_mode=ScanMode.BANK)).run(make_acme_gap_payments())
        assert result.scan_mode == ScanMode.BANK
        assert result.bank_diagnostics is not None

    def test_max_issues_override(self):
        facts = [
            replace(f, id=f"{n}-{f.id}", entity_name=f"Vendor {n}")
            for n in range(5)
            for f in make_acme_gap_payments()
        ]
        result = ChaosScanPipeline(AnalysisOptions(max_issues=3)).run(facts)
        assert len(result.issues) == 3
        assert result.prune_stats.dropped_by_cap == 2

    def test_no_issues(self):
        result = ChaosScanPipeline().run([])
        assert result.issues == []
        assert result.not_flagged == []
        assert result.prune_stats.total_before_prune == 0

    def test_evidence_must_exist(self):
        issue = make_issue("Acme")
        with pytest.raises(AssertionError):
            ChaosScanPipeline._assert_evidence_exists([issue], make_acme_gap_payments())

    def test_to_frame(self):
        pipeline = ChaosScanPipeline(AnalysisOptions(as_of=date(2024, 12, 31)))
        result = pipeline.run(make_acme_gap_payments())
        df = pipeline.to_frame(result)
        assert list(df.columns) == ISSUE_COLUMNS
        assert len(df) == 1
        row = df.iloc[0]
        assert row["issue_type"] == "recurring_payment_gap"
        assert row["issue_label"] == "Recurring Payment Gap"
        assert row["evidence_fact_ids"] == "p1|p2|p3|p4|p5"
        assert row["evidence_count"] == 5

    def test_to_frame_empty(self):
        df = ChaosScanPipeline.to_frame(ChaosScanPipeline().run([]))
        assert df.empty
        assert list(df.columns) == ISSUE_COLUMNS


class TestBankPipeline:
    def test_bank_end_to_end(self):
        result = ChaosScanPipeline().run(_bank_facts())

        assert result.scan_mode == ScanMode.BANK
        assert [i.issue_type for i in result.issues] == [IssueType.DUPLICATE_CHARGE]
        assert result.issues[0].severity == Severity.LOW

        assert "No new recurring charges started in the last 60 days" in result.not_flagged
        assert "No price increases detected on recurring charges" in result.not_flagged
        assert "No unusual charge spikes detected" not in result.not_flagged
        assert "No duplicate charges detected on the same day" not in result.not_flagged

    def test_bank_insights(self):
        result = ChaosScanPipeline().run(_bank_facts())
        insights = result.bank_insights
        assert insights.recurring_merchant_count == 2
        assert insights.can_sum_recurring
        assert insights.recurring_currency == "USD"
        assert insights.total_monthly_recurring == pytest.approx(25.98)
        assert [m.name for m in insights.recurring_merchants] == ["Netflix", "Spotify"]
        assert insights.total_transactions == 14
        assert insights.date_range.start == "2024-01-01"

    def test_insights_mixed_currency_not_summed(self):
        facts = make_series("n", "NETFLIX", [-15.99] * 3) + make_series("s", "SPOTIFY", [-9.99] * 3, currency="EUR")
        insights = generate_bank_insights(facts, classify_monthly_by_entity(facts))
        assert insights.recurring_merchant_count == 2
        assert not insights.can_sum_recurring
        assert insights.total_monthly_recurring is None

    def test_merchant_billed_in_two_currencies_not_summed(self):
        hulu = make_series("h", "HULU", [-10.0] * 3)
        hulu = hulu[:1] + [replace(f, amount_currency="EUR") for f in hulu[1:]]
        facts = make_series("n", "NETFLIX", [-15.0] * 3) + hulu
        insights = generate_bank_insights(facts, classify_monthly_by_entity(facts))
        assert insights.recurring_merchant_count == 2
        assert [(m.name, m.currency) for m in insights.recurring_merchants] == [("Netflix", "USD"), ("Hulu", None)]
        assert not insights.can_sum_recurring
        assert insights.total_monthly_recurring is None
        assert insights.recurring_currency is None

    def test_bank_diagnostics(self):
        result = ChaosScanPipeline().run(_bank_facts())
        diagnostics = result.bank_diagnostics
        assert diagnostics.total_facts == 14
        assert diagnostics.qualifying_for_analysis == 14
        assert diagnostics.date_coverage_percent == 100.0
        assert diagnostics.unique_merchants == 3
        assert diagnostics.excluded_merchant_count == 0
        assert diagnostics.candidate_recurring_merchants == 2
        assert diagnostics.derived_monthly_merchants_count == 2
        assert diagnostics.detector_eligibility.new_recurring_eligible == 2
        assert diagnostics.detector_eligibility.price_creep_eligible == 2
        assert diagnostics.detector_eligibility.spike_eligible == 0
        assert diagnostics.detector_eligibility.duplicate_eligible == 1
        assert diagnostics.top_blockers[0].startswith("Data coverage looks adequate")
        assert summarize_diagnostics(diagnostics) == (
            "14 transactions analyzed · 14 qualifying for analysis · 2 recurring merchants found"
        )

    def test_diagnostics_missing_dates(self):
        facts = [make_txn(f"t{i}", "NETFLIX", -15.99, None) for i in range(4)]
        diagnostics = compute_bank_diagnostics(facts, classify_monthly_by_entity(facts))
        assert diagnostics.date_parse_failure_rate == 1.0
        assert diagnostics.top_blockers[0].startswith("100% of transactions are missing a parseable date")
        assert any(b.startswith("Only 0 transactions qualify") for b in diagnostics.top_blockers)
        assert "100% missing dates" in summarize_diagnostics(diagnostics)

    def test_diagnostics_excluded_merchants(self):
        facts = make_series("z", "ZELLE TO JOHN SMITH", [-50.0] * 3)
        diagnostics = compute_bank_diagnostics(facts, classify_monthly_by_entity(facts))
        assert diagnostics.excluded_merchant_count == 1
        assert diagnostics.excluded_merchant_rate == 1.0
        assert any("matched exclusion patterns" in b for b in diagnostics.top_blockers)

    def test_diagnostics_empty(self):
        diagnostics = compute_bank_diagnostics([], {})
        assert diagnostics.total_facts == 0
        assert not diagnostics.detector_eligibility.any_eligible


# =============================================================================
# SUMMARY
# =============================================================================

class TestSummary:
    def test_no_issues(self):
        summary = generate_summary([], scan_mode=ScanMode.BANK)
        assert summary.executive_summary.startswith("No high-confidence issues were detected in these bank/card")
        assert summary.issue_titles == []

    def test_single_currency_impact_summed(self):
        issues = [
            make_issue("Acme", severity=Severity.HIGH, impact=100.0),
            make_issue("Initech", severity=Severity.MEDIUM, impact=200.0),
        ]
        summary = generate_summary(issues)
        assert "2 potential billing/revenue issue(s): 1 high-severity, 1 medium-severity." in summary.executive_summary
        assert "Estimated impact: $300." in summary.executive_summary
        assert summary.issue_titles == [i.title for i in issues]

    def test_mixed_currency_not_summed(self):
        issues = [
            make_issue("Acme", impact=100.0, currency="USD"),
            make_issue("Initech", impact=200.0, currency="EUR"),
        ]
        assert "spans multiple currencies" in generate_summary(issues).executive_summary

    def test_cap_message(self):
        issues = [make_issue(f"Entity {n}") for n in range(10)] + [make_issue("Entity 0", severity=Severity.LOW)]
        message = generate_cap_message(prune_issues(issues))
        assert message == "Showing top 8 issues (conservative cap) · 1 duplicate(s) removed"

    def test_no_cap_message_when_nothing_dropped(self):
        assert generate_cap_message(prune_issues([make_issue("Acme")])) is None
        assert generate_cap_message(None) is None


# =============================================================================
# NORMALIZATION
# =============================================================================

class TestNormalize:
    def test_messy_record(self):
        fact = normalize_fact({
            "id": 17,
            "fact_type": "PAYMENT",
            "entity_name": "  Acme Corp ",
            "amount_value": "100.50",
            "amount_currency": "usd",
            "date_value": "01/15/2024",
            "status": "settled",
            "recurrence": "Monthly",
        })
        assert fact.id == "17"
        assert fact.fact_type == "payment"
        assert fact.entity_name == "Acme Corp"
        assert fact.amount_value == 100.5
        assert fact.amount_currency == "USD"
        assert fact.date_value == "2024-01-15"
        assert fact.status == "unknown"
        assert fact.recurrence == "monthly"
        assert fact.confidence == 1.0

    def test_nested_amount_and_fallback_id(self):
        fact = normalize_fact({"amount": {"value": 42, "currency": "eur"}, "date_value": "garbage"}, index=3)
        assert fact.id == "fact_3"
        assert fact.amount_value == 42.0
        assert fact.amount_currency == "EUR"
        assert fact.date_value is None

    @pytest.mark.parametrize("raw, expected", [(0.9, 0.9), (1.5, 0.0), (-0.1, 0.0), ("abc", 0.0), (None, 1.0)])
    def test_confidence(self, raw, expected):
        assert normalize_fact({"confidence": raw}).confidence == expected

    def test_low_confidence_filtered(self):
        records = [{"id": "a", "confidence": 0.9}, {"id": "b", "confidence": 0.5}, {"id": "c", "confidence": 0.6}]
        assert [f.id for f in normalize_and_filter(records)] == ["a", "c"]
        assert [f.id for f in normalize_and_filter(records, confidence_threshold=0.95)] == []

    def test_pandas_missing_values(self):
        record = pd.DataFrame([{"id": "x", "amount_value": float("nan"), "entity_raw": None}]).to_dict("records")[0]
        fact = normalize_fact(record)
        assert fact.amount_value is None
        assert fact.entity_raw is None


# =============================================================================
# CLI
# =============================================================================

class TestCli:
    def _write_facts(self, path):
        rows = [
            {
                "id": f.id,
                "fact_type": "payment",
                "entity_name": f.entity_name,
                "amount_value": f.amount_value,
                "amount_currency": f.amount_currency,
                "date_value": f.date_value,
                "date_type": "paid",
                "status": "paid",
                "recurrence": "monthly",
            }
            for f in make_acme_gap_payments()
        ]
        pd.DataFrame(rows).to_csv(path, index=False)

    def test_missing_columns_raises(self, tmp_path):
        path = tmp_path / "bad.csv"
        pd.DataFrame({"entity_name": ["Acme"]}).to_csv(path, index=False)
        with pytest.raises(ValueError, match="Missing required columns"):
            load_records(str(path))

    def test_json_records(self, tmp_path):
        path = tmp_path / "facts.json"
        path.write_text(json.dumps([{"id": "1", "amount_value": 10.0, "date_value": "2024-01-01"}]))
        assert len(load_records(str(path))) == 1

    def test_main_writes_issues_csv(self, tmp_path, capsys):
        input_path = tmp_path / "facts.csv"
        self._write_facts(input_path)
        output_dir = tmp_path / "out"

        main(["--input", str(input_path), "--output-dir", str(output_dir), "--as-of", "2024-12-31"])

        written = os.listdir(output_dir)
        assert len(written) == 1 and written[0].startswith("issues_")
        df = pd.read_csv(output_dir / written[0])
        assert list(df["issue_type"]) == ["recurring_payment_gap"]
        assert "REVENUE & BILLING CHAOS SCAN" in capsys.readouterr().out

    def test_main_missing_input_exits(self, tmp_path):
        with pytest.raises(SystemExit):
            main(["--input", str(tmp_path / "nope.csv"), "--output-dir", str(tmp_path)])

    def test_as_of_parsed_to_date(self):
        args = parse_args(["--input", "facts.csv", "--as-of", "2024-12-31"])
        assert args.as_of == date(2024, 12, 31)
        assert parse_args(["--input", "facts.csv"]).as_of is None

    @pytest.mark.parametrize("value", ["2024-13-45", "yesterday"])
    def test_invalid_as_of_rejected(self, value, capsys):
        with pytest.raises(SystemExit) as excinfo:
            parse_args(["--input", "facts.csv", "--as-of", value])
        assert excinfo.value.code == 2
        assert "--as-of" in capsys.readouterr().err

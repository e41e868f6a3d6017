"""
test_detectors.py
------------------
Billing-mode and bank-mode detectors, plus the detector registry.

Run from the project root:
    python -m pytest tests/test_detectors.py -v
"""

from datetime import date, timedelta

import pytest

from core.canonicalize import canonicalize_facts
from core.models import (
    ClearingStatus,
    DateType,
    FactStatus,
    IssueType,
    Recurrence,
    ScanMode,
    Severity,
)
from core.recurrence import classify_monthly_by_entity
from detectors.bank import (
    detect_bank_duplicate_charges,
    detect_new_recurring_charge,
    detect_price_creep,
    detect_unusual_spike,
)
from detectors.base import DERIVED_CADENCE_NOTE
from detectors.billing import (
    detect_amount_drift,
    detect_duplicate_charges,
    detect_recurring_payment_gap,
    detect_unpaid_invoice_aging,
)
from detectors.registry import get_detectors

from factories import (
    make_acme_gap_payments,
    make_invoice,
    make_payment,
    make_series,
    make_txn,
    spaced_dates,
)


AS_OF = date(2024, 6, 30)


def _days_ago(days: int) -> str:
    return (AS_OF - timedelta(days=days)).isoformat()


def _payments(amounts, entity="Globex", recurrence=Recurrence.MONTHLY, **kwargs):
    dates = spaced_dates(date(2024, 1, 10), len(amounts))
    return [
        make_payment(f"{entity}-{i + 1}", d, amount=a, entity=entity, recurrence=recurrence, **kwargs)
        for i, (a, d) in enumerate(zip(amounts, dates))
    ]


# =============================================================================
# UNPAID INVOICE AGING
# =============================================================================

class TestUnpaidInvoiceAging:
    @pytest.mark.parametrize("age, severity", [
        (50, Severity.LOW),
        (70, Severity.MEDIUM),
        (100, Severity.HIGH),
    ])
    def test_severity_by_age(self, age, severity):
        issues = detect_unpaid_invoice_aging([make_invoice("i1", _days_ago(age))], as_of=AS_OF)
        assert len(issues) == 1
        assert issues[0].severity == severity
        assert issues[0].details["oldest_days"] == age
        assert issues[0].impact_min == 1000.0

    def test_threshold_is_inclusive(self):
        assert len(detect_unpaid_invoice_aging([make_invoice("i1", _days_ago(45))], as_of=AS_OF)) == 1
        assert detect_unpaid_invoice_aging([make_invoice("i1", _days_ago(44))], as_of=AS_OF) == []

    def test_custom_aging_days(self):
        invoices = [make_invoice("i1", _days_ago(20))]
        assert len(detect_unpaid_invoice_aging(invoices, aging_days=15, as_of=AS_OF)) == 1

    def test_groups_by_entity(self):
        invoices = [
            make_invoice("i1", _days_ago(50), entity="Acme"),
            make_invoice("i2", _days_ago(100), entity="Acme"),
            make_invoice("i3", _days_ago(10), entity="Acme"),
            make_invoice("i4", _days_ago(80), entity="Initech"),
        ]
        issues = detect_unpaid_invoice_aging(invoices, as_of=AS_OF)
        by_entity = {i.entity_name: i for i in issues}
        assert set(by_entity) == {"Acme", "Initech"}
        assert by_entity["Acme"].evidence_fact_ids == ["i1", "i2"]
        assert by_entity["Acme"].impact_min == 2000.0
        assert by_entity["Acme"].severity == Severity.HIGH

    def test_mixed_currencies_leave_impact_unknown(self):
        invoices = [
            make_invoice("i1", _days_ago(60), 1000.0, currency="USD"),
            make_invoice("i2", _days_ago(60), 500.0, currency="EUR"),
        ]
        issues = detect_unpaid_invoice_aging(invoices, as_of=AS_OF)
        assert len(issues) == 1
        assert issues[0].impact_min is None
        assert any("mixed currencies" in line for line in issues[0].rationale)

    def test_ignores_paid_and_wrong_date_type(self):
        invoices = [
            make_invoice("i1", _days_ago(100), status=FactStatus.PAID),
            make_invoice("i2", _days_ago(100), date_type=DateType.PAID),
            make_invoice("i3", None),
        ]
        assert detect_unpaid_invoice_aging(invoices, as_of=AS_OF) == []


# =============================================================================
# RECURRING PAYMENT GAP
# =============================================================================

class TestRecurringPaymentGap:
    def test_acme_scenario(self):
        issues = detect_recurring_payment_gap(make_acme_gap_payments())
        assert len(issues) == 1
        issue = issues[0]
        assert issue.issue_type == IssueType.RECURRING_PAYMENT_GAP
        assert issue.details["gap_days"] == 92
        assert issue.details["months_missed"] == 2
        assert issue.severity == Severity.MEDIUM
        assert issue.impact_min == pytest.approx(17000.0)
        assert issue.currency == "USD"
        assert len(issue.evidence_fact_ids) == 5

    def test_regular_payments_not_flagged(self):
        assert detect_recurring_payment_gap(_payments([500.0] * 6)) == []

    def test_latest_gap_reported(self):
        dates = ["2024-01-01", "2024-01-31", "2024-04-01", "2024-05-01", "2024-09-01"]
        payments = [make_payment(f"p{i}", d, 500.0) for i, d in enumerate(dates)]
        issues = detect_recurring_payment_gap(payments)
        assert len(issues) == 1
        assert issues[0].details["gap_after_date"] == "2024-05-01"
        assert issues[0].details["gap_days"] == 123
        assert issues[0].details["months_missed"] == 3
        assert issues[0].severity == Severity.HIGH

    def test_too_few_payments(self):
        payments = [make_payment("p1", "2024-01-01"), make_payment("p2", "2024-04-01")]
        assert detect_recurring_payment_gap(payments) == []

    def test_unknown_recurrence_needs_derived_map(self):
        payments = [
            make_payment(
                f.id, f.date_value, 8500.0,
                recurrence=Recurrence.UNKNOWN,
                direction="outflow", clearing_status=ClearingStatus.CLEARED,
            )
            for f in make_acme_gap_payments()
        ]
        assert detect_recurring_payment_gap(payments) == []

        derived = classify_monthly_by_entity(payments)
        issues = detect_recurring_payment_gap(payments, derived_recurrence=derived)
        assert len(issues) == 1
        assert DERIVED_CADENCE_NOTE in issues[0].rationale
        assert issues[0].impact_min is None

    def test_unpaid_payments_ignored(self):
        payments = [
            make_payment(f.id, f.date_value, 8500.0, status=FactStatus.FAILED)
            for f in make_acme_gap_payments()
        ]
        assert detect_recurring_payment_gap(payments) == []


# =============================================================================
# AMOUNT DRIFT
# =============================================================================

class TestAmountDrift:
    @pytest.mark.parametrize("recent, severity", [
        (780.0, Severity.LOW),
        (650.0, Severity.MEDIUM),
        (500.0, Severity.HIGH),
    ])
    def test_severity_by_drift(self, recent, severity):
        issues = detect_amount_drift(_payments([1000.0] * 4 + [recent] * 2))
        assert len(issues) == 1
        assert issues[0].severity == severity

    def test_impact_and_details(self):
        issues = detect_amount_drift(_payments([1000.0] * 4 + [650.0] * 2))
        issue = issues[0]
        assert issue.details["prior_median"] == 1000.0
        assert issue.details["recent_avg"] == 650.0
        assert issue.details["drift_percent"] == pytest.approx(35.0)
        assert issue.impact_min == pytest.approx(4200.0)
        assert len(issue.evidence_fact_ids) == 6

    def test_unstable_prior_not_flagged(self):
        assert detect_amount_drift(_payments([1000.0, 1200.0, 900.0, 1000.0, 650.0, 650.0])) == []

    def test_small_drop_not_flagged(self):
        assert detect_amount_drift(_payments([1000.0] * 4 + [900.0] * 2)) == []

    def test_increase_not_flagged(self):
        assert detect_amount_drift(_payments([1000.0] * 4 + [1500.0] * 2)) == []

    def test_needs_four_payments(self):
        assert detect_amount_drift(_payments([1000.0, 1000.0, 500.0])) == []

    def test_one_time_payments_ignored(self):
        payments = _payments([1000.0] * 4 + [500.0] * 2, recurrence=Recurrence.ONE_TIME)
        assert detect_amount_drift(payments) == []


# =============================================================================
# DUPLICATE CHARGES (BILLING)
# =============================================================================

class TestBillingDuplicates:
    def test_same_day_same_amount(self):
        payments = [
            make_payment("p1", "2024-01-15", 100.0, entity="Acme"),
            make_payment("p2", "2024-01-15", 100.0, entity="Acme"),
        ]
        issues = detect_duplicate_charges(payments)
        assert len(issues) == 1
        assert issues[0].severity == Severity.LOW
        assert issues[0].impact_min == 100.0
        assert issues[0].confidence == pytest.approx(0.8)
        assert issues[0].evidence_fact_ids == ["p1", "p2"]

    def test_different_amount_or_day(self):
        payments = [
            make_payment("p1", "2024-01-15", 100.0),
            make_payment("p2", "2024-01-15", 101.0),
            make_payment("p3", "2024-01-16", 100.0),
        ]
        assert detect_duplicate_charges(payments) == []

    def test_different_entities(self):
        payments = [
            make_payment("p1", "2024-01-15", 100.0, entity="Acme"),
            make_payment("p2", "2024-01-15", 100.0, entity="Initech"),
        ]
        assert detect_duplicate_charges(payments) == []


# =============================================================================
# BANK DETECTORS
# =============================================================================

class TestNewRecurringCharge:
    def _facts(self, netflix_amount=-15.99):
        netflix = make_series("n", "NETFLIX", [netflix_amount] * 3, start=date(2024, 5, 1))
        spotify = make_series("s", "SPOTIFY USA", [-9.99] * 7, start=date(2024, 1, 1))
        return netflix + spotify

    def test_recent_start_flagged(self):
        facts = self._facts()
        issues = detect_new_recurring_charge(facts, classify_monthly_by_entity(facts))
        assert len(issues) == 1
        issue = issues[0]
        assert issue.entity_name == "NETFLIX"
        assert issue.severity == Severity.MEDIUM
        assert issue.details["days_since_first"] == 60
        assert issue.details["tier"] == "strict"
        assert issue.confidence == pytest.approx(0.9)
        assert issue.impact_min == pytest.approx(15.99)

    def test_expensive_subscription_is_high(self):
        facts = self._facts(netflix_amount=-60.0)
        issues = detect_new_recurring_charge(facts, classify_monthly_by_entity(facts))
        assert issues[0].severity == Severity.HIGH

    def test_explicit_end_date(self):
        facts = self._facts()
        issues = detect_new_recurring_charge(
            facts, classify_monthly_by_entity(facts), dataset_end_date="2024-12-31"
        )
        assert issues == []

    def test_transfers_excluded(self):
        facts = make_series("z", "ZELLE TO JOHN SMITH", [-200.0] * 3, start=date(2024, 5, 1))
        assert detect_new_recurring_charge(facts, classify_monthly_by_entity(facts)) == []

    def test_empty(self):
        assert detect_new_recurring_charge([], {}) == []


class TestPriceCreep:
    def test_increase_over_stable_baseline(self):
        facts = make_series("g", "GYM CLUB", [-10.0] * 4 + [-12.0], step_days=10)
        issues = detect_price_creep(facts, classify_monthly_by_entity(facts))
        assert len(issues) == 1
        issue = issues[0]
        assert issue.severity == Severity.MEDIUM
        assert issue.details["percent_increase"] == pytest.approx(20.0)
        assert issue.impact_min == pytest.approx(24.0)
        assert issue.confidence == pytest.approx(0.6 + (5 / 6) * 0.2)

    def test_large_annual_delta_is_high(self):
        facts = make_series("g", "GYM CLUB", [-50.0] * 4 + [-60.0])
        issues = detect_price_creep(facts, classify_monthly_by_entity(facts))
        assert issues[0].severity == Severity.HIGH
        assert issues[0].confidence <= 0.95

    def test_unstable_baseline(self):
        facts = make_series("g", "GYM CLUB", [-10.0, -12.0, -10.0, -10.0, -15.0])
        assert detect_price_creep(facts) == []

    def test_small_increase(self):
        facts = make_series("g", "GYM CLUB", [-10.0] * 4 + [-11.0])
        assert detect_price_creep(facts) == []

    def test_needs_four_charges(self):
        facts = make_series("g", "GYM CLUB", [-10.0] * 2 + [-20.0])
        assert detect_price_creep(facts) == []

    def test_autopay_suffix_does_not_hide_merchant(self):
        facts = make_series("g", "GEICO AUTOPAY", [-100.0] * 3 + [-130.0])
        issues = detect_price_creep(facts, classify_monthly_by_entity(facts))
        assert len(issues) == 1
        assert issues[0].severity == Severity.HIGH
        assert issues[0].details["percent_increase"] == pytest.approx(30.0)


class TestBankDuplicates:
    def _pair(self, raw, amount):
        return canonicalize_facts([
            make_txn("t1", raw, amount, "2024-03-03"),
            make_txn("t2", raw, amount, "2024-03-03"),
        ])

    def test_small_duplicate_is_low(self):
        issues = detect_bank_duplicate_charges(self._pair("STARBUCKS STORE #123", -25.0))
        assert len(issues) == 1
        assert issues[0].severity == Severity.LOW
        assert issues[0].impact_min == 25.0
        assert issues[0].confidence == pytest.approx(0.75)

    def test_large_duplicate_is_medium(self):
        issues = detect_bank_duplicate_charges(self._pair("BEST BUY", -150.0))
        assert issues[0].severity == Severity.MEDIUM

    def test_transfers_still_flagged(self):
        assert len(detect_bank_duplicate_charges(self._pair("ZELLE TO JOHN SMITH", -200.0))) == 1

    def test_pending_not_counted(self):
        facts = [
            make_txn("t1", "BEST BUY", -150.0, "2024-03-03"),
            make_txn("t2", "BEST BUY", -150.0, "2024-03-03", clearing_status=ClearingStatus.PENDING),
        ]
        assert detect_bank_duplicate_charges(canonicalize_facts(facts)) == []


class TestUnusualSpike:
    def test_spike_flagged(self):
        facts = make_series("e", "CITY POWER", [-20.0] * 6 + [-80.0])
        issues = detect_unusual_spike(facts)
        assert len(issues) == 1
        issue = issues[0]
        assert issue.severity == Severity.MEDIUM
        assert issue.details["multiplier"] == pytest.approx(4.0)
        assert issue.impact_min == pytest.approx(60.0)
        assert issue.confidence == pytest.approx(0.59)
        assert len(issue.evidence_fact_ids) == 7

    def test_large_spike_is_high(self):
        facts = make_series("e", "CITY POWER", [-20.0] * 6 + [-300.0])
        assert detect_unusual_spike(facts)[0].severity == Severity.HIGH

    def test_needs_six_history(self):
        facts = make_series("e", "CITY POWER", [-20.0] * 5 + [-80.0])
        assert detect_unusual_spike(facts) == []

    def test_below_multiplier(self):
        facts = make_series("e", "CITY POWER", [-20.0] * 6 + [-40.0])
        assert detect_unusual_spike(facts) == []

    def test_card_payment_prefix_does_not_hide_merchant(self):
        facts = make_series("s", "DEBIT CARD PAYMENT SHELL OIL 12345", [-40.0] * 6 + [-200.0])
        issues = detect_unusual_spike(facts)
        assert len(issues) == 1
        assert issues[0].details["multiplier"] == pytest.approx(5.0)


# =============================================================================
# REGISTRY
# =============================================================================

class TestRegistry:
    def test_billing_detectors(self):
        names = [name for name, _ in get_detectors(ScanMode.BILLING, {})]
        assert names == ["unpaid_invoice_aging", "recurring_payment_gap", "amount_drift", "duplicate_charge"]

    def test_bank_detectors(self):
        names = [name for name, _ in get_detectors("bank", {})]
        assert names == ["new_recurring_charge", "price_creep", "bank_duplicate_charge", "unusual_spike"]

    def test_detectors_take_only_facts(self):
        for _, detector in get_detectors(ScanMode.BILLING, {}, as_of=AS_OF):
            assert detector([]) == []

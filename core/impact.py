"""
impact.py
----------
Strict, conservative monetary impact calculators.

Impact is only computed when every contributing fact has an amount and an
explicit currency, and all currencies agree. Payment gap and drift impact
additionally require explicit monthly recurrence on every payment and a
stable (±10%) amount history. Any violation returns an ImpactResult with
impact_min = impact_max = None and a human-readable reason. There is no
best-guess fallback.
"""

from typing import Optional

from config.config_loader import get_impact_config
from core.evidence import format_money
from core.models import Fact, ImpactResult, Recurrence, distinct_currencies, median


def _unknown(reason: str) -> ImpactResult:
    return ImpactResult(impact_min=None, impact_max=None, currency=None, reason=reason)


def _known(value: float, currency: str) -> ImpactResult:
    return ImpactResult(impact_min=value, impact_max=value, currency=currency, reason=None)


def _check_amounts_and_currency(facts: list[Fact], noun: str) -> Optional[str]:
    """Returns a reason string when amounts/currencies are incomplete or mixed."""
    if any(f.amount_value is None for f in facts):
        return f"Some {noun} missing amount values"
    if any(not f.amount_currency for f in facts):
        return f"Some {noun} missing explicit currency"
    if len(distinct_currencies(facts)) != 1:
        return f"Mixed currencies across {noun}"
    return None


def are_amounts_stable(amounts: list[float], tolerance: Optional[float] = None) -> bool:
    """True when every amount is within tolerance of the median. Needs 2+ amounts."""
    if tolerance is None:
        tolerance = get_impact_config()["stability_tolerance"]
    if len(amounts) < 2:
        return False
    med = median(amounts)
    if not med:
        return False
    return max(abs(a - med) / abs(med) for a in amounts) <= tolerance


def _all_explicit_monthly(facts: list[Fact]) -> bool:
    return all(f.recurrence == Recurrence.MONTHLY for f in facts)


# =============================================================================
# CALCULATORS
# =============================================================================

def calculate_unpaid_invoice_impact(aged_invoices: list[Fact]) -> ImpactResult:
    """Sum of aged invoice amounts."""
    if not aged_invoices:
        return _unknown("No aged invoices")

    reason = _check_amounts_and_currency(aged_invoices, "invoices")
    if reason:
        return _unknown(reason)

    total = sum(f.amount_value for f in aged_invoices)
    return _known(total, aged_invoices[0].amount_currency)


def calculate_payment_gap_impact(payments_before_gap: list[Fact], months_missed: int) -> ImpactResult:
    """Median pre-gap payment times the number of missed months."""
    if months_missed <= 0:
        return _unknown("No months missed")
    if len(payments_before_gap) < 2:
        return _unknown("Insufficient payment history (need at least 2)")
    if not _all_explicit_monthly(payments_before_gap):
        return _unknown("Not all payments have explicit monthly recurrence")

    reason = _check_amounts_and_currency(payments_before_gap, "payments")
    if reason:
        return _unknown(reason)

    amounts = [f.amount_value for f in payments_before_gap]
    if not are_amounts_stable(amounts):
        return _unknown("Payment amounts not stable (>10% variance)")

    return _known(median(amounts) * months_missed, payments_before_gap[0].amount_currency)


def calculate_drift_impact(all_payments: list[Fact], prior_median: float, recent_avg: float) -> ImpactResult:
    """Annualized monthly decrease: (prior median - recent average) x 12."""
    if len(all_payments) < 4:
        return _unknown("Insufficient payment history (need at least 4)")
    if not _all_explicit_monthly(all_payments):
        return _unknown("Not all payments have explicit monthly recurrence")

    reason = _check_amounts_and_currency(all_payments, "payments")
    if reason:
        return _unknown(reason)

    monthly_difference = prior_median - recent_avg
    if monthly_difference <= 0:
        return _unknown("No decrease detected")

    months = get_impact_config()["annualization_months"]
    return _known(monthly_difference * months, all_payments[0].amount_currency)


def calculate_duplicate_impact(duplicate_payments: list[Fact]) -> ImpactResult:
    """One amount per extra copy: amount x (group size - 1)."""
    if len(duplicate_payments) < 2:
        return _unknown("Not enough duplicates")

    reason = _check_amounts_and_currency(duplicate_payments, "payments")
    if reason:
        return _unknown(reason)

    amount = abs(duplicate_payments[0].amount_value)
    return _known(amount * (len(duplicate_payments) - 1), duplicate_payments[0].amount_currency)


def format_impact_rationale(impact: ImpactResult) -> str:
    if impact.impact_min is None:
        if impact.reason:
            return f"Impact: unknown ({impact.reason.lower()})"
        return "Impact: unknown (insufficient evidence)"
    return f"Estimated impact: {format_money(impact.impact_min, impact.currency or 'USD')}"

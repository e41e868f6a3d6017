"""
evidence.py
------------
Plain-language evidence summaries and structured evidence statistics.

Each summary is a one-line string ("3 payments from Jan to Mar, then
92-day gap") paired with an EvidenceStats object that audit and report
layers render later. Stats currency is None whenever more than one
distinct currency appears.
"""

from typing import Iterable, Optional

from core.models import DateRange, EvidenceStats, Fact, distinct_currencies, median, sort_by_date, to_date


CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£"}


def format_money(amount: Optional[float], currency: Optional[str] = "USD", decimals: int = 0) -> str:
    """
    Formats an amount with its currency: "$1,250", "€99", "CAD 1,250".
    Negative amounts keep their sign in front of the symbol.
    """
    if amount is None:
        return "unknown"
    code = (currency or "USD").upper()
    sign = "-" if amount < 0 else ""
    number = f"{abs(amount):,.{decimals}f}"
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{sign}{symbol}{number}"
    return f"{sign}{code} {number}"


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def _month(value: str) -> str:
    return to_date(value).strftime("%b")


def _month_span(stats: EvidenceStats, single_prefix: str) -> str:
    if stats.date_range is None:
        return ""
    start, end = _month(stats.date_range.start), _month(stats.date_range.end)
    if start == end:
        return f" {single_prefix} {start}"
    return f" from {start} to {end}"


# =============================================================================
# STATS
# =============================================================================

def compute_evidence_stats(facts: Iterable[Fact]) -> EvidenceStats:
    facts = list(facts)
    if not facts:
        return EvidenceStats(count=0, date_range=None, median_amount=None, currency=None, source_references=[])

    dated = sort_by_date(facts)
    date_range = DateRange(start=dated[0].date_value, end=dated[-1].date_value) if dated else None

    amounts = [f.amount_value for f in facts if f.amount_value is not None]
    currencies = distinct_currencies(facts)

    return EvidenceStats(
        count=len(facts),
        date_range=date_range,
        median_amount=median(amounts),
        currency=currencies[0] if len(currencies) == 1 else None,
        source_references=[f.source_reference for f in facts],
    )


# =============================================================================
# BILLING SUMMARIES
# =============================================================================

def generate_unpaid_invoice_summary(facts: list[Fact], oldest_days: int) -> tuple[str, EvidenceStats]:
    stats = compute_evidence_stats(facts)
    summary = _plural(stats.count, "unpaid invoice") + _month_span(stats, "from")
    if stats.median_amount is not None:
        summary += f", median {format_money(stats.median_amount, stats.currency)}"
    summary += f", oldest {oldest_days} days"
    return summary, stats


def generate_payment_gap_summary(facts: list[Fact], gap_days: int) -> tuple[str, EvidenceStats]:
    stats = compute_evidence_stats(facts)
    summary = _plural(stats.count, "payment") + _month_span(stats, "in")
    summary += f", then {gap_days}-day gap"
    return summary, stats


def generate_amount_drift_summary(
    facts: list[Fact], prior_median: float, recent_avg: float, drift_percent: float
) -> tuple[str, EvidenceStats]:
    stats = compute_evidence_stats(facts)
    summary = _plural(stats.count, "payment") + _month_span(stats, "in")
    summary += (
        f", dropped {drift_percent:.0f}% "
        f"({format_money(prior_median, stats.currency)} -> {format_money(recent_avg, stats.currency)})"
    )
    return summary, stats


def generate_duplicate_summary(facts: list[Fact], date_value: str) -> tuple[str, EvidenceStats]:
    stats = compute_evidence_stats(facts)
    summary = f"{_plural(stats.count, 'identical charge')} on {to_date(date_value).strftime('%b %Y')}"
    if stats.median_amount is not None:
        summary += f", {format_money(abs(stats.median_amount), stats.currency)} each"
    return summary, stats


# =============================================================================
# BANK SUMMARIES
# =============================================================================

def generate_new_recurring_summary(facts: list[Fact]) -> tuple[str, EvidenceStats]:
    stats = compute_evidence_stats(facts)
    summary = f"{_plural(stats.count, 'charge')} from {stats.date_range.start} to {stats.date_range.end}"
    return summary, stats


def generate_price_creep_summary(
    facts: list[Fact], baseline_median: float, last_amount: float, percent_increase: float
) -> tuple[str, EvidenceStats]:
    stats = compute_evidence_stats(facts)
    stats.median_amount = baseline_median
    currency = facts[-1].amount_currency
    summary = (
        f"Charge increased from {format_money(baseline_median, currency, 2)} "
        f"to {format_money(last_amount, currency, 2)} (+{percent_increase * 100:.0f}%)"
    )
    return summary, stats


def generate_spike_summary(
    facts: list[Fact], recent_amount: float, history_median: float, multiplier: float
) -> tuple[str, EvidenceStats]:
    stats = compute_evidence_stats(facts)
    stats.median_amount = history_median
    currency = facts[-1].amount_currency
    summary = (
        f"{format_money(recent_amount, currency, 2)} vs typical "
        f"{format_money(history_median, currency, 2)} ({multiplier:.1f}x)"
    )
    return summary, stats

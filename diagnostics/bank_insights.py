"""
bank_insights.py
-----------------
Informational summary of recurring merchants for bank-mode scans.

These are not issues. The monthly total is only reported when every
recurring merchant has a known amount and all share one currency, the same
conservatism the impact calculators apply.
"""

from dataclasses import dataclass, field
from typing import Optional

from core.canonicalize import format_entity_for_display
from core.models import (
    ClearingStatus,
    DateRange,
    Direction,
    Fact,
    distinct_currencies,
    entity_key,
    sort_by_date,
)
from core.recurrence import RecurrenceMap


@dataclass
class RecurringMerchant:
    name: str
    monthly_amount: Optional[float]
    currency: Optional[str]
    occurrences: int


@dataclass
class BankInsights:
    recurring_merchant_count: int
    recurring_merchants: list[RecurringMerchant] = field(default_factory=list)
    total_monthly_recurring: Optional[float] = None
    recurring_currency: Optional[str] = None
    can_sum_recurring: bool = False
    total_transactions: int = 0
    total_outflows: int = 0
    date_range: Optional[DateRange] = None


def generate_bank_insights(facts: list[Fact], derived_recurrence: RecurrenceMap) -> BankInsights:
    outflows = [
        f for f in facts
        if f.direction == Direction.OUTFLOW
        and f.clearing_status == ClearingStatus.CLEARED
        and f.amount_value is not None
    ]

    dated = sort_by_date(facts)
    date_range = DateRange(start=dated[0].date_value, end=dated[-1].date_value) if dated else None

    merchants = []
    currencies = set()
    for key, classification in derived_recurrence.items():
        if not classification.is_monthly:
            continue

        entity_outflows = [f for f in outflows if entity_key(f) == key]
        merchant_currencies = distinct_currencies(entity_outflows)
        currency = merchant_currencies[0] if len(merchant_currencies) == 1 else None
        currencies.update(merchant_currencies)

        first = next((f for f in facts if entity_key(f) == key), None)
        merchants.append(RecurringMerchant(
            name=(first.entity_name if first else None) or format_entity_for_display(key),
            monthly_amount=classification.median_amount,
            currency=currency,
            occurrences=classification.evidence_count,
        ))

    merchants.sort(key=lambda m: m.monthly_amount or 0, reverse=True)

    can_sum = (
        bool(merchants)
        and len(currencies) == 1
        and all(m.monthly_amount is not None and m.currency for m in merchants)
    )

    total = None
    recurring_currency = None
    if can_sum:
        total = sum(m.monthly_amount for m in merchants)
        recurring_currency = merchants[0].currency

    return BankInsights(
        recurring_merchant_count=len(merchants),
        recurring_merchants=merchants,
        total_monthly_recurring=total,
        recurring_currency=recurring_currency,
        can_sum_recurring=can_sum,
        total_transactions=len(facts),
        total_outflows=len(outflows),
        date_range=date_range,
    )

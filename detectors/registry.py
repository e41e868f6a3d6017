"""
registry.py
------------
Fixed detector table keyed by scan mode.

Each entry is a (name, callable) pair where the callable takes only the fact
list; per-run context (derived recurrence map, as-of date, dataset end date)
is bound with functools.partial when the table is built.
"""

from datetime import date
from functools import partial
from typing import Optional

from core.models import ScanMode
from core.recurrence import RecurrenceMap
from detectors.bank import (
    detect_bank_duplicate_charges,
    detect_new_recurring_charge,
    detect_price_creep,
    detect_unusual_spike,
)
from detectors.base import Detector
from detectors.billing import (
    detect_amount_drift,
    detect_duplicate_charges,
    detect_recurring_payment_gap,
    detect_unpaid_invoice_aging,
)


def get_detectors(
    scan_mode: ScanMode,
    derived_recurrence: RecurrenceMap,
    as_of: Optional[date] = None,
    dataset_end_date: Optional[str] = None,
) -> list[tuple[str, Detector]]:
    """Returns the detectors to run for a scan mode, in a fixed order."""
    if ScanMode(scan_mode) == ScanMode.BANK:
        return [
            ("new_recurring_charge", partial(
                detect_new_recurring_charge,
                derived_recurrence=derived_recurrence,
                dataset_end_date=dataset_end_date,
            )),
            ("price_creep", partial(detect_price_creep, derived_recurrence=derived_recurrence)),
            ("bank_duplicate_charge", detect_bank_duplicate_charges),
            ("unusual_spike", detect_unusual_spike),
        ]

    return [
        ("unpaid_invoice_aging", partial(detect_unpaid_invoice_aging, as_of=as_of)),
        ("recurring_payment_gap", partial(detect_recurring_payment_gap, derived_recurrence=derived_recurrence)),
        ("amount_drift", partial(detect_amount_drift, derived_recurrence=derived_recurrence)),
        ("duplicate_charge", detect_duplicate_charges),
    ]

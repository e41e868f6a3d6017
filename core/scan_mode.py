"""
scan_mode.py
-------------
Decides whether a fact set is bank/card flavored or billing flavored.

Bank mode iff strictly more than 80% of the facts carry a known direction
(inflow or outflow). Empty input defaults to billing. The mode gates the
detector set, the prune profile and the "not flagged" wording.
"""

from dataclasses import dataclass
from typing import Sequence

from config.config_loader import get_scan_mode_config
from core.models import Direction, Fact, ScanMode


@dataclass(frozen=True)
class ScanModeTerminology:
    transaction_type: str            # "charges" or "payments"
    transaction_type_singular: str
    entity_type: str                 # "merchant" or "vendor"
    report_title: str
    no_issues_message: str


_TERMINOLOGY = {
    ScanMode.BANK: ScanModeTerminology(
        transaction_type="charges",
        transaction_type_singular="charge",
        entity_type="merchant",
        report_title="Bank & Card Transaction Chaos Scan",
        no_issues_message=(
            "No high-confidence issues detected in your bank/card transactions (conservative scan)."
        ),
    ),
    ScanMode.BILLING: ScanModeTerminology(
        transaction_type="payments",
        transaction_type_singular="payment",
        entity_type="vendor",
        report_title="Revenue & Billing Chaos Scan",
        no_issues_message="No high-confidence billing or revenue issues detected (conservative scan).",
    ),
}


def detect_scan_mode(facts: Sequence[Fact]) -> ScanMode:
    if not facts:
        return ScanMode.BILLING

    with_direction = sum(1 for f in facts if f.direction in (Direction.INFLOW, Direction.OUTFLOW))
    ratio = with_direction / len(facts)

    if ratio > get_scan_mode_config()["bank_direction_ratio"]:
        return ScanMode.BANK
    return ScanMode.BILLING


def get_scan_mode_terminology(mode: ScanMode) -> ScanModeTerminology:
    return _TERMINOLOGY[ScanMode(mode)]

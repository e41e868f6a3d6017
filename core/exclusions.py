"""
exclusions.py
--------------
Identifies non-merchant transactions (P2P transfers, credit card payments,
bank fees) so the bank-mode "interesting pattern" detectors skip them.

Applied by: new recurring charge, price creep, unusual spike.
Not applied by either duplicate detector: a duplicated transfer is still
worth flagging.

Rule order, first match wins:
    1. Known merchant indicator  -> never excluded
    2. Strong P2P keyword        -> "P2P transfer service"
    3. Card payment pattern      -> "Credit card payment"
    4. Bank service pattern      -> "Bank fee/service"
    5. Weak transfer word that dominates the text -> "Transfer/payment"

Letting a transfer through is preferred over hiding a real merchant.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from config.config_loader import get_exclusion_config


REASON_P2P = "P2P transfer service"
REASON_CARD_PAYMENT = "Credit card payment"
REASON_BANK_SERVICE = "Bank fee/service"
REASON_WEAK_TRANSFER = "Transfer/payment"

_TRANSFER_CONTEXT = re.compile(r"\b(?:TO|FROM)\s", re.ASCII)
_TRAILING_ACCOUNT_DIGITS = re.compile(r"\d{4,}\s*$", re.ASCII)


@dataclass
class ExclusionResult:
    is_excluded: bool
    reason: Optional[str] = None
    pattern: Optional[str] = None


@lru_cache(maxsize=None)
def _word_pattern(phrase: str) -> re.Pattern:
    # Phrases match on word boundaries; inner spaces match any whitespace run.
    body = r"\s+".join(re.escape(part) for part in phrase.split())
    return re.compile(rf"\b{body}\b", re.ASCII)


def _first_match(patterns: list[str], *texts: str) -> Optional[str]:
    for pattern in patterns:
        compiled = _word_pattern(pattern.upper())
        if any(compiled.search(text) for text in texts if text):
            return pattern
    return None


def check_exclusion(entity_key: Optional[str], raw_text: Optional[str] = None) -> ExclusionResult:
    """
    Classifies an entity as merchant or non-merchant.

    Args:
        entity_key: Canonical entity key.
        raw_text:   Original description. Consulted for P2P names and for
                    transfer context ("TO ", "FROM ", trailing account
                    digits), never for card or bank-service patterns.

    Returns:
        ExclusionResult with the reason and matched pattern when excluded.
    """
    if not entity_key:
        return ExclusionResult(is_excluded=False)

    cfg = get_exclusion_config()
    key = entity_key.upper().strip()
    raw = raw_text.upper().strip() if raw_text else ""

    if _first_match(cfg["merchant_indicators"], key):
        return ExclusionResult(is_excluded=False)

    # The canonicalizer strips P2P names, so those also match the raw text.
    # Card and bank-service patterns match the key only.
    for list_name, reason, texts in (
        ("strong_p2p", REASON_P2P, (key, raw)),
        ("card_payment", REASON_CARD_PAYMENT, (key,)),
        ("bank_service", REASON_BANK_SERVICE, (key,)),
    ):
        matched = _first_match(cfg[list_name], *texts)
        if matched:
            return ExclusionResult(is_excluded=True, reason=reason, pattern=matched)

    matched = _dominant_weak_word(key, raw, cfg)
    if matched:
        return ExclusionResult(is_excluded=True, reason=REASON_WEAK_TRANSFER, pattern=matched)

    return ExclusionResult(is_excluded=False)


def is_excluded(entity_key: Optional[str], raw_text: Optional[str] = None) -> bool:
    """Boolean shorthand for check_exclusion(...).is_excluded."""
    return check_exclusion(entity_key, raw_text).is_excluded


def _dominant_weak_word(key: str, raw: str, cfg: dict) -> Optional[str]:
    """
    A weak word (PAYMENT, TRANSFER, ACH, WIRE) excludes only when it starts
    the key and the key is short, or barely longer than the word, or the raw
    text reads like a transfer.

    Keys built by canonicalize_entity have PAYMENT, TRANSFER, ACH and WIRE
    stripped, so this rule only fires for keys supplied from elsewhere.
    "ACH TRANSFER TO CHASE 1234" canonicalizes to "TO CHASE" and is kept.
    """
    max_total = cfg["weak_max_total_length"]
    max_extra = cfg["weak_max_extra_chars"]

    for word in cfg["weak_transfer"]:
        word = word.upper()
        if not _word_pattern(word).match(key):
            continue
        if len(key) <= max_total:
            return word
        if len(key) - len(word) <= max_extra:
            return word
        if raw and (_TRANSFER_CONTEXT.search(raw) or _TRAILING_ACCOUNT_DIGITS.search(raw)):
            return word
    return None


def get_exclusion_patterns() -> dict[str, list[str]]:
    """All exclusion pattern lists, for transparency and debugging."""
    cfg = get_exclusion_config()
    return {
        name: list(cfg[name])
        for name in ("merchant_indicators", "strong_p2p", "card_payment", "bank_service", "weak_transfer")
    }

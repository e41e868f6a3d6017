"""
canonicalize.py
----------------
Entity canonicalization for free-text merchant/entity descriptions.

Bank statement lines for one merchant arrive in many shapes:

    "POS DEBIT VISA CHECKCARD 0415 WALMART STORE #1234 ANYTOWN CA"
    "WALMART INC"
    "CHECKCARD WALMART 5678"

Every detector groups by the canonical key, so all of these must collapse
to the same string ("WALMART") while genuinely different merchants
("AMAZON" vs "AMAZON PRIME") stay apart.

The rules are deterministic and ordered. Each pass runs the full rule
chain; passes repeat until the output stops changing, which makes the
function idempotent.

All patterns are compiled once at import and only read afterwards.
"""

import re
from dataclasses import replace
from typing import Iterable, Optional

from core.models import Fact


# =============================================================================
# TOKEN TABLES
# =============================================================================

# Business-entity suffixes, stripped when they end the name (also when chained).
ENTITY_SUFFIXES = [
    "INC", "INCORPORATED", "LLC", "LTD", "LIMITED", "CO", "CORP",
    "CORPORATION", "COMPANY", "THE", "NA", "LP", "LLP", "PC", "PLLC",
    "PA", "INTL", "INTERNATIONAL", "USA", "US",
]

# Orphaned words left at the end after number removal.
# STORE is absent: "TARGET STORE" is a real name.
TRAILING_NOISE_WORDS = ["LOC", "BRANCH", "LOCATION"]

# Transaction metadata tokens, removed as whole words.
TRANSACTION_TOKENS = [
    "POS", "DEBIT", "CREDIT", "ACH", "ONLINE", "PURCHASE", "PAYMENT",
    "TRANSFER", "ATM", "CARD", "CHECK", "CHK", "REF", "VISA", "MASTERCARD",
    "MC", "AMEX", "DISCOVER", "CHECKCARD", "RECURRING", "AUTOPAY", "BILLPAY",
    "WIRE", "MOBILE", "WEB", "WITHDRAWAL", "DEPOSIT", "DIRECT", "DEP", "WD",
    "DR", "CR", "DDA", "MEMO", "EFT", "ELECTRONIC", "PREAUTHORIZED",
    "PREAUTH", "AUTH", "AUTHORIZED", "PENDING", "POSTED", "CLEARED",
    "TRANSACTION", "TXN", "EXTERNAL", "INTERNAL",
    "SQ",    # Square
    "PP",    # PayPal
    "TST",   # Toast
    "ORIG", "ORIGINATOR",
]

# P2P services: only stripped when something follows them, since they can
# be the merchant themselves.
PAYMENT_SERVICE_PREFIXES = ["PAYPAL", "VENMO", "ZELLE"]

US_STATE_CODES = frozenset([
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA", "HI", "ID",
    "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS",
    "MO", "MT", "NE", "NV", "NH", "NJ", "NM", "NY", "NC", "ND", "OH", "OK",
    "OR", "PA", "RI", "SC", "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV",
    "WI", "WY", "DC",
])

MIN_CITY_LENGTH = 5
MAX_PASSES = 5


# =============================================================================
# COMPILED PATTERNS
# =============================================================================
# re.ASCII keeps \w and \b byte-oriented: "CAFÉ" loses its accented letter
# instead of keeping it as a word character.

_FLAGS = re.ASCII

_WHITESPACE = re.compile(r"\s+", _FLAGS)

# Applied while the original separators are still present.
_EARLY_DATE_PATTERNS = [
    re.compile(r"\b\d{4}[/-]\d{1,2}[/-]\d{1,2}\b", _FLAGS),       # YYYY-MM-DD
    re.compile(r"\b\d{1,2}[/-]\d{1,2}(?:[/-]\d{2,4})?\b", _FLAGS),  # MM/DD[/YYYY]
]

_POSSESSIVE = re.compile(r"'S\b", _FLAGS)
_NON_WORD = re.compile(r"[^\w\s]", _FLAGS)
_BILL_PAY = re.compile(r"\bBILL\s+PAY\b", _FLAGS)

_TOKEN_PATTERNS = [re.compile(rf"\b{t}\b", _FLAGS) for t in TRANSACTION_TOKENS]

_SERVICE_PREFIX_PATTERNS = [
    re.compile(rf"^{s}\s+(?=\S)", _FLAGS) for s in PAYMENT_SERVICE_PREFIXES
]

_SUFFIX_ALTERNATION = "|".join(ENTITY_SUFFIXES)
_SUFFIX_PATTERNS = [
    (
        re.compile(rf"\b{s}\s*$", _FLAGS),
        re.compile(rf"\b{s}\b(?=\s+(?:{_SUFFIX_ALTERNATION})\b)", _FLAGS),
    )
    for s in ENTITY_SUFFIXES
]

_LOCATION_PATTERNS = [
    re.compile(r"\bSTORE\s*#\d+", _FLAGS),
    re.compile(r"\bSTORE\s+\d+", _FLAGS),
    re.compile(r"\bLOC\s*#?\d+", _FLAGS),
    re.compile(r"\bBRANCH\s*#?\d+", _FLAGS),
    re.compile(r"\bLOCATION\s*#?\d+", _FLAGS),
    re.compile(r"#\d+\b", _FLAGS),
    re.compile(r"\*\d+", _FLAGS),
    re.compile(r"\b[A-Z]{2}\s+\d{4,}", _FLAGS),     # State code + zip/ID
    re.compile(r"\b\d{5,}\b", _FLAGS),               # Long numeric IDs
    re.compile(r"\b\d{3,4}$", _FLAGS),               # Trailing store numbers
]

_DATE_PATTERNS = [
    re.compile(r"\b\d{6,8}\b", _FLAGS),              # 20240115
    re.compile(r"\b0[1-9]\d{2}\b", _FLAGS),          # 0415
    re.compile(r"\b1[0-2]\d{2}\b", _FLAGS),          # 1215
    re.compile(r"\b\d{1,2}\s+\d{1,2}\b(?!\s+\d)", _FLAGS),  # "01 15"
]

_TRAILING_NOISE_PATTERNS = [re.compile(rf"\b{w}\s*$", _FLAGS) for w in TRAILING_NOISE_WORDS]

_LEADING_JUNK = re.compile(r"^[^A-Z0-9]+", _FLAGS)
_TRAILING_JUNK = re.compile(r"[^A-Z0-9]+$", _FLAGS)
_LEADING_ARTICLE = re.compile(r"^(?:THE|A|AN)\s+", _FLAGS)
_ALL_DIGITS = re.compile(r"^\d+$", _FLAGS)


# =============================================================================
# PUBLIC INTERFACE
# =============================================================================

def canonicalize_entity(raw: Optional[str]) -> Optional[str]:
    """
    Canonicalize an entity description into a stable grouping key.

    Returns an uppercase, whitespace-normalized string, or None when nothing
    meaningful remains (empty, shorter than 2 characters, or purely numeric).
    """
    if raw is None or not raw.strip():
        return None

    current = raw
    for _ in range(MAX_PASSES):
        result = _canonicalize_once(current)
        if result is None or result == current:
            return result
        current = result
    return current


def format_entity_for_display(canonical: Optional[str]) -> Optional[str]:
    """Title-cases a canonical key for display ("HOME DEPOT" -> "Home Depot")."""
    if not canonical:
        return None
    return " ".join(word[:1].upper() + word[1:].lower() for word in canonical.split(" "))


def canonicalize_facts(facts: Iterable[Fact]) -> list[Fact]:
    """
    Returns copies of the facts with entity_canonical filled in.

    Facts that already carry a canonical key are returned unchanged. The key
    is derived from entity_raw when present, otherwise from entity_name.
    """
    result = []
    for fact in facts:
        if fact.entity_canonical:
            result.append(fact)
            continue
        canonical = canonicalize_entity(fact.entity_raw or fact.entity_name)
        result.append(replace(fact, entity_canonical=canonical) if canonical else fact)
    return result


# =============================================================================
# INTERNAL: RULE CHAIN
# =============================================================================

def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _canonicalize_once(raw: str) -> Optional[str]:
    # Step 1: uppercase, trim, collapse whitespace
    result = _collapse(raw.upper())

    # Step 2: dates with their separators still intact
    for pattern in _EARLY_DATE_PATTERNS:
        result = pattern.sub(" ", result)
    result = _collapse(result)

    # Step 3: possessive 'S merges into the word, other punctuation -> space
    result = _POSSESSIVE.sub("S", result)
    result = _collapse(_NON_WORD.sub(" ", result))

    # Step 4: transaction metadata tokens (compound phrase first)
    result = _collapse(_BILL_PAY.sub(" ", result))
    for pattern in _TOKEN_PATTERNS:
        result = pattern.sub(" ", result)
    result = _collapse(result)

    # Step 5: P2P prefixes, only when followed by something
    for pattern in _SERVICE_PREFIX_PATTERNS:
        result = pattern.sub("", result)
    result = _collapse(result)

    # Step 6: business suffixes anchored at the end, including chains
    for end_pattern, chained_pattern in _SUFFIX_PATTERNS:
        result = end_pattern.sub("", result)
        result = chained_pattern.sub("", result)
    result = _collapse(result)

    # Step 7: store/location/ID numbers
    for pattern in _LOCATION_PATTERNS:
        result = pattern.sub(" ", result)
    result = _collapse(result)

    # Step 8: residual date fragments
    for pattern in _DATE_PATTERNS:
        result = pattern.sub(" ", result)
    result = _collapse(result)

    # Step 9: trailing noise words, then trailing "CITY ST"
    for pattern in _TRAILING_NOISE_PATTERNS:
        result = pattern.sub("", result)
    result = _strip_city_state(_collapse(result))

    # Step 10: edge junk and leading articles
    result = _TRAILING_JUNK.sub("", _LEADING_JUNK.sub("", result))
    result = _collapse(_LEADING_ARTICLE.sub("", result))

    if len(result) < 2 or _ALL_DIGITS.match(result):
        return None
    return result


def _strip_city_state(text: str) -> str:
    """Drops a trailing "CITY ST" pair when the city token looks like a city."""
    words = text.split(" ")
    if len(words) > 2:
        last, second_last = words[-1], words[-2]
        if last in US_STATE_CODES and len(second_last) >= MIN_CITY_LENGTH:
            return " ".join(words[:-2])
    return text

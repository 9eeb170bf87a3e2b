"""Pure similarity scorers used by the match classifier and transfer linking."""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from difflib import SequenceMatcher

# Scores are 0-1 ratios, not monetary values, so float is acceptable here.
# Money comparisons stay in Decimal.

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

DEFAULT_DATE_WINDOW_DAYS = 3
DEFAULT_TRANSFER_TOLERANCE_PERCENT = Decimal("5")

# Proximity score at the edge of the amount tolerance band
_AMOUNT_EDGE_SCORE = 0.8


def _comparable_text(value: str) -> str:
    cleaned = _NON_ALNUM.sub(" ", value.lower()).strip()
    return re.sub(r"\s+", " ", cleaned)


def string_similarity(a: str | None, b: str | None) -> float:
    """Score description similarity in [0, 1].

    0.6 * SequenceMatcher ratio + 0.4 * token Jaccard. Inputs are ordered before
    comparison so that string_similarity(a, b) == string_similarity(b, a).
    """
    if not a or not b:
        return 0.0
    left, right = sorted((_comparable_text(a), _comparable_text(b)))
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0

    ratio = SequenceMatcher(None, left, right).ratio()
    tokens_left = set(left.split())
    tokens_right = set(right.split())
    union = tokens_left | tokens_right
    token_score = len(tokens_left & tokens_right) / len(union) if union else 0.0
    return round(0.6 * ratio + 0.4 * token_score, 4)


def date_delta_days(d1: date, d2: date) -> int:
    return abs((d1 - d2).days)


def date_proximity(d1: date, d2: date, window_days: int = DEFAULT_DATE_WINDOW_DAYS) -> float:
    """1.0 on the same day, decaying linearly to 0.0 at the window boundary."""
    delta = date_delta_days(d1, d2)
    if delta == 0:
        return 1.0
    if window_days <= 0 or delta >= window_days:
        return 0.0
    return round(1 - delta / window_days, 4)


def relative_amount_difference(a1: Decimal, a2: Decimal) -> Decimal:
    """Absolute difference relative to the larger magnitude (0 when both are zero)."""
    base = max(abs(a1), abs(a2))
    if base == 0:
        return Decimal("0")
    return abs(a1 - a2) / base


def amount_match(a1: Decimal, a2: Decimal, tolerance_percent: Decimal | int = 0) -> bool:
    """True when amounts agree within tolerance_percent. Zero tolerance means exact equality."""
    tolerance = Decimal(str(tolerance_percent))
    if tolerance <= 0:
        return a1 == a2
    return relative_amount_difference(a1, a2) * 100 <= tolerance


def amount_proximity(a1: Decimal, a2: Decimal, tolerance_percent: Decimal | int) -> float:
    """1.0 on equality, 0.8 at the tolerance boundary, 0.0 outside it."""
    if a1 == a2:
        return 1.0
    tolerance = Decimal(str(tolerance_percent))
    if tolerance <= 0:
        return 0.0
    relative_percent = relative_amount_difference(a1, a2) * 100
    if relative_percent > tolerance:
        return 0.0
    decay = float(relative_percent / tolerance) * (1 - _AMOUNT_EDGE_SCORE)
    return round(1.0 - decay, 4)


def transfer_amount_match(
    a1: Decimal,
    a2: Decimal,
    tolerance_percent: Decimal | int = DEFAULT_TRANSFER_TOLERANCE_PERCENT,
) -> bool:
    """Transfer legs have opposite signs and magnitudes within tolerance."""
    if a1 == 0 or a2 == 0 or (a1 > 0) == (a2 > 0):
        return False
    return amount_match(abs(a1), abs(a2), tolerance_percent)

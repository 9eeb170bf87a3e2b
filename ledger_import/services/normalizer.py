"""Field normalization for import candidates.

Every comparison made by the matching engine runs on normalized values so that
casing, whitespace, trailing store codes and wall-clock time never influence a
score. All functions here are pure.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENTS = Decimal("0.01")
# Numeric(18, 2) holds 16 integer digits
MAX_AMOUNT = Decimal("1e16")

_WHITESPACE = re.compile(r"\s+")
# Trailing "#1234" store/terminal code, or a bare numeric token longer than 3 digits
_TRAILING_STORE_CODE = re.compile(r"\s*#\s*\d+$")
_TRAILING_NUMERIC = re.compile(r"\s+\d{4,}$")
_CURRENCY_PREFIX = re.compile(r"^[^\d\-+.(]+")
_DAY_FIRST = re.compile(r"^(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})$")


class ValidationError(ValueError):
    """A candidate field could not be normalized."""

    def __init__(self, field_name: str, message: str) -> None:
        super().__init__(f"{field_name}: {message}")
        self.field_name = field_name
        self.message = message


@dataclass(frozen=True)
class ClassificationWarning:
    """Non-fatal note attached to a candidate during normalization or classification."""

    code: str
    message: str


@dataclass(frozen=True)
class CandidateTransaction:
    """A transaction proposed for import, as supplied by ingestion.

    amount and txn_date are kept raw; they are parsed by normalize() so that a
    single malformed row can be reported without rejecting the batch.
    """

    amount: Any
    txn_date: Any
    description: str = ""
    currency: str = "NZD"
    reference: str | None = None
    external_id: str | None = None
    bank_category: str | None = None
    source_row: int | None = None


@dataclass(frozen=True)
class NormalizedRecord:
    """Canonical form of a candidate used for scoring and persistence."""

    amount: Decimal
    txn_date: date
    description: str
    raw_description: str
    currency: str
    reference: str | None = None
    external_id: str | None = None
    bank_category: str | None = None
    warnings: tuple[ClassificationWarning, ...] = field(default_factory=tuple)


def normalize_description(value: str | None) -> str:
    """Trim, collapse whitespace, uppercase and strip trailing store codes.

    Idempotent: normalize_description(normalize_description(x)) == normalize_description(x).
    A description made only of a code is kept rather than stripped to nothing.
    """
    if not value:
        return ""
    text = _WHITESPACE.sub(" ", value).strip().upper()
    while True:
        stripped = _TRAILING_STORE_CODE.sub("", text)
        stripped = _TRAILING_NUMERIC.sub("", stripped).strip()
        if not stripped or stripped == text:
            return text
        text = stripped


def normalize_amount(value: Any) -> Decimal:
    """Parse an amount into a signed Decimal with two places. Sign is never coerced."""
    if value is None or isinstance(value, bool):
        raise ValidationError("amount", "missing amount")
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, int):
        parsed = Decimal(value)
    elif isinstance(value, float):
        parsed = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().replace(",", "").replace(" ", "")
        negative = text.startswith("(") and text.endswith(")")
        if negative:
            text = text[1:-1]
        if text.startswith("-"):
            negative = not negative
            text = text[1:]
        text = _CURRENCY_PREFIX.sub("", text)
        try:
            parsed = Decimal(text)
        except InvalidOperation as exc:
            raise ValidationError("amount", f"unparseable amount {value!r}") from exc
        if negative:
            parsed = -parsed
    else:
        raise ValidationError("amount", f"unsupported amount type {type(value).__name__}")

    if not parsed.is_finite():
        raise ValidationError("amount", f"non-finite amount {value!r}")
    if abs(parsed) >= MAX_AMOUNT:
        raise ValidationError("amount", f"amount out of range {value!r}")
    try:
        return parsed.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError("amount", f"amount out of range {value!r}") from exc


def normalize_date(value: Any) -> tuple[date, ClassificationWarning | None]:
    """Truncate a date-like value to a timezone-naive calendar date.

    Returns the date and an optional warning when a day-first string was ambiguous.
    """
    if isinstance(value, datetime):
        return value.date(), None
    if isinstance(value, date):
        return value, None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("txn_date", "missing transaction date")

    text = value.strip()
    try:
        return datetime.fromisoformat(text).date(), None
    except ValueError:
        pass

    match = _DAY_FIRST.match(text)
    if not match:
        raise ValidationError("txn_date", f"unrecognized date {value!r}")
    first, second, year = (int(part) for part in match.groups())
    try:
        parsed = date(year, second, first)
    except ValueError as exc:
        raise ValidationError("txn_date", f"invalid date {value!r}") from exc

    warning = None
    if first <= 12 and second <= 12 and first != second:
        warning = ClassificationWarning(
            code="ambiguous_date",
            message=f"Ambiguous date {text!r} read as day-first ({parsed.isoformat()})",
        )
    return parsed, warning


def normalize(candidate: CandidateTransaction) -> NormalizedRecord:
    """Normalize one candidate. Raises ValidationError on a malformed amount or date."""
    amount = normalize_amount(candidate.amount)
    txn_date, warning = normalize_date(candidate.txn_date)
    raw_description = (candidate.description or "").strip()
    return NormalizedRecord(
        amount=amount,
        txn_date=txn_date,
        description=normalize_description(raw_description),
        raw_description=raw_description,
        currency=(candidate.currency or "NZD").strip().upper(),
        reference=(candidate.reference or None),
        external_id=(candidate.external_id or None),
        bank_category=(candidate.bank_category or None),
        warnings=(warning,) if warning else (),
    )


def candidate_fingerprint(account_id: int, record: NormalizedRecord) -> str:
    """Stable content hash of a normalized candidate within one account.

    Hash = SHA256(account_id|amount|date|description)
    """
    components = [
        str(account_id),
        str(record.amount),
        record.txn_date.isoformat(),
        record.description,
    ]
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()

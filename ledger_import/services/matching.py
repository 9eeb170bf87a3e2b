"""Match classifier: one candidate against a pool of existing ledger transactions."""

from __future__ import annotations

import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path

import yaml

from ledger_import.config import settings
from ledger_import.logger import get_logger
from ledger_import.models import LedgerTransaction
from ledger_import.services.exclusions import EMPTY_EXCLUSIONS, ExclusionIndex, candidate_key, ledger_key
from ledger_import.services.normalizer import (
    CandidateTransaction,
    ClassificationWarning,
    NormalizedRecord,
    ValidationError,
    candidate_fingerprint,
    normalize,
    normalize_description,
)
from ledger_import.services.similarity import (
    amount_match,
    amount_proximity,
    date_delta_days,
    date_proximity,
    string_similarity,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class MatchingConfig:
    """Runtime configuration for match scoring."""

    exact_threshold: float = 0.95
    fuzzy_threshold: float = 0.55
    weight_amount: float = 0.40
    weight_date: float = 0.20
    weight_description: float = 0.40
    date_window_days: int = 3
    amount_tolerance_percent: Decimal = Decimal("2")
    max_matches: int = 3
    auto_resolve_threshold: float = 0.85


DEFAULT_CONFIG = MatchingConfig()

_config_cache: MatchingConfig | None = None


def _config_path() -> Path:
    if settings.matching_config_path:
        return Path(settings.matching_config_path)
    return Path(__file__).resolve().parents[2] / "config" / "matching.yaml"


def load_matching_config(force_reload: bool = False) -> MatchingConfig:
    """Load matching configuration from YAML if available.

    Caches the result to avoid repeated disk I/O.
    """
    global _config_cache
    if _config_cache is not None and not force_reload:
        return _config_cache

    config = DEFAULT_CONFIG
    config_path = _config_path()

    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text()) or {}
            matching = raw.get("matching", {})
            thresholds = matching.get("thresholds", {})
            weights = matching.get("weights", {})
            tolerances = matching.get("tolerances", {})

            config = MatchingConfig(
                exact_threshold=float(thresholds.get("exact", config.exact_threshold)),
                fuzzy_threshold=float(thresholds.get("fuzzy", config.fuzzy_threshold)),
                auto_resolve_threshold=float(thresholds.get("auto_resolve", config.auto_resolve_threshold)),
                weight_amount=float(weights.get("amount", config.weight_amount)),
                weight_date=float(weights.get("date", config.weight_date)),
                weight_description=float(weights.get("description", config.weight_description)),
                date_window_days=int(tolerances.get("date_window_days", config.date_window_days)),
                amount_tolerance_percent=Decimal(
                    str(tolerances.get("amount_percent", config.amount_tolerance_percent))
                ),
                max_matches=int(matching.get("max_matches", config.max_matches)),
            )
        except (OSError, yaml.YAMLError, AttributeError, TypeError, ValueError, InvalidOperation) as e:
            logger.warning(
                "Failed to load matching config - using defaults",
                config_path=str(config_path),
                error=str(e),
                error_type=type(e).__name__,
            )

    exact_env = os.getenv("MATCHING_EXACT_THRESHOLD")
    fuzzy_env = os.getenv("MATCHING_FUZZY_THRESHOLD")
    if exact_env:
        config = replace(config, exact_threshold=float(exact_env))
    if fuzzy_env:
        config = replace(config, fuzzy_threshold=float(fuzzy_env))

    _config_cache = config
    return config


class MatchClassification(str, Enum):
    EXACT_DUPLICATE = "exact_duplicate"
    FUZZY_MATCH = "fuzzy_match"
    UNMATCHED = "unmatched"


@dataclass(frozen=True)
class LedgerRecord:
    """Immutable snapshot of a ledger transaction, safe to share across worker threads."""

    id: int
    amount: Decimal
    txn_date: date
    description: str
    raw_description: str = ""
    currency: str = "NZD"
    external_id: str | None = None
    is_deleted: bool = False
    account_id: int | None = None

    @classmethod
    def from_orm(cls, txn: LedgerTransaction) -> LedgerRecord:
        return cls(
            id=txn.id,
            amount=Decimal(str(txn.amount)),
            txn_date=txn.txn_date,
            description=normalize_description(txn.description),
            raw_description=txn.description or "",
            currency=(txn.currency or "NZD").upper(),
            external_id=txn.external_id,
            is_deleted=bool(txn.is_deleted),
            account_id=txn.account_id,
        )


@dataclass(frozen=True)
class ComponentScores:
    """Per-factor scores behind a confidence value."""

    amount_match: bool
    amount_score: float
    date_delta_days: int
    date_score: float
    description_similarity: float


@dataclass(frozen=True)
class MatchedTransaction:
    ledger_id: int
    confidence: float
    components: ComponentScores
    txn_date: date
    amount: Decimal
    description: str


@dataclass(frozen=True)
class MatchResult:
    """Classification of one candidate."""

    candidate_id: int
    candidate: CandidateTransaction
    classification: MatchClassification
    confidence: float
    matches: tuple[MatchedTransaction, ...] = ()
    components: ComponentScores | None = None
    excluded_ledger_ids: tuple[int, ...] = ()
    exclusion_ids: tuple[int, ...] = ()
    warnings: tuple[ClassificationWarning, ...] = ()
    validation_error: str | None = None
    record: NormalizedRecord | None = None
    candidate_key: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.validation_error is None

    @property
    def best_match_id(self) -> int | None:
        return self.matches[0].ledger_id if self.matches else None

    @property
    def matched_ledger_ids(self) -> tuple[int, ...]:
        return tuple(match.ledger_id for match in self.matches)


@dataclass
class _Scored:
    record: LedgerRecord
    confidence: float
    components: ComponentScores
    exclusion_ids: tuple[int, ...] = field(default_factory=tuple)

    def sort_key(self) -> tuple[float, date, int]:
        return (-self.confidence, self.record.txn_date, self.record.id)

    def to_match(self) -> MatchedTransaction:
        return MatchedTransaction(
            ledger_id=self.record.id,
            confidence=self.confidence,
            components=self.components,
            txn_date=self.record.txn_date,
            amount=self.record.amount,
            description=self.record.raw_description or self.record.description,
        )


def _score(record: NormalizedRecord, existing: LedgerRecord, config: MatchingConfig) -> tuple[float, ComponentScores]:
    amount_score = amount_proximity(record.amount, existing.amount, config.amount_tolerance_percent)
    date_score = date_proximity(record.txn_date, existing.txn_date, config.date_window_days)
    description_score = string_similarity(record.description, existing.description)
    confidence = (
        config.weight_amount * amount_score
        + config.weight_date * date_score
        + config.weight_description * description_score
    )
    components = ComponentScores(
        amount_match=record.amount == existing.amount,
        amount_score=amount_score,
        date_delta_days=date_delta_days(record.txn_date, existing.txn_date),
        date_score=date_score,
        description_similarity=description_score,
    )
    return round(min(max(confidence, 0.0), 1.0), 4), components


def _is_exact(item: _Scored, record: NormalizedRecord, config: MatchingConfig) -> bool:
    if record.external_id and item.record.external_id == record.external_id:
        return True
    return item.components.amount_match and item.components.description_similarity >= config.exact_threshold


def _invalid_result(candidate_id: int, candidate: CandidateTransaction, exc: ValidationError) -> MatchResult:
    return MatchResult(
        candidate_id=candidate_id,
        candidate=candidate,
        classification=MatchClassification.UNMATCHED,
        confidence=0.0,
        warnings=(ClassificationWarning(code="validation_error", message=str(exc)),),
        validation_error=str(exc),
    )


def classify(
    candidate: CandidateTransaction,
    existing_pool: Sequence[LedgerRecord],
    exclusions: ExclusionIndex | None = None,
    config: MatchingConfig | None = None,
    *,
    account_id: int = 0,
    candidate_id: int = 0,
) -> MatchResult:
    """Classify one candidate as an exact duplicate, a fuzzy match or unmatched.

    Deterministic for identical inputs. Never raises on a malformed candidate:
    the result is Unmatched with the validation error recorded.
    """
    config = config or load_matching_config()
    exclusions = exclusions or EMPTY_EXCLUSIONS

    try:
        record = normalize(candidate)
    except ValidationError as exc:
        return _invalid_result(candidate_id, candidate, exc)

    key = candidate_key(candidate_fingerprint(account_id, record))
    warnings = list(record.warnings)

    window = [
        existing
        for existing in existing_pool
        if not existing.is_deleted
        and existing.currency == record.currency
        and date_delta_days(record.txn_date, existing.txn_date) <= config.date_window_days
    ]
    tolerant = [
        existing
        for existing in window
        if amount_match(record.amount, existing.amount, config.amount_tolerance_percent)
    ]

    scored: list[_Scored] = []
    for existing in tolerant:
        confidence, components = _score(record, existing, config)
        exclusion_ids = exclusions.covering((key, ledger_key(existing.id))) if len(exclusions) else ()
        scored.append(_Scored(existing, confidence, components, exclusion_ids))

    excluded = [item for item in scored if item.exclusion_ids]
    allowed = [item for item in scored if not item.exclusion_ids]
    excluded_ledger_ids = tuple(sorted(item.record.id for item in excluded))
    exclusion_ids = tuple(sorted({eid for item in excluded for eid in item.exclusion_ids}))
    if excluded:
        warnings.append(
            ClassificationWarning(
                code="excluded_match",
                message=f"{len(excluded)} previously dismissed match(es) suppressed",
            )
        )

    # Exact tier: identical amount with near-identical description, or the same external id.
    # Best description similarity wins; the oldest record breaks ties.
    exact_hits = [item for item in allowed if _is_exact(item, record, config)]
    if exact_hits:
        exact_hits.sort(
            key=lambda item: (-item.components.description_similarity, item.record.txn_date, item.record.id)
        )
        matches = tuple(
            replace(item.to_match(), confidence=1.0) for item in exact_hits[: config.max_matches]
        )
        return MatchResult(
            candidate_id=candidate_id,
            candidate=candidate,
            classification=MatchClassification.EXACT_DUPLICATE,
            confidence=1.0,
            matches=matches,
            components=exact_hits[0].components,
            excluded_ledger_ids=excluded_ledger_ids,
            exclusion_ids=exclusion_ids,
            warnings=tuple(warnings),
            record=record,
            candidate_key=key,
        )

    allowed.sort(key=_Scored.sort_key)
    fuzzy = [item for item in allowed if item.confidence >= config.fuzzy_threshold]
    if fuzzy:
        best = fuzzy[0]
        return MatchResult(
            candidate_id=candidate_id,
            candidate=candidate,
            classification=MatchClassification.FUZZY_MATCH,
            confidence=best.confidence,
            matches=tuple(item.to_match() for item in fuzzy[: config.max_matches]),
            components=best.components,
            excluded_ledger_ids=excluded_ledger_ids,
            exclusion_ids=exclusion_ids,
            warnings=tuple(warnings),
            record=record,
            candidate_key=key,
        )

    # Unmatched keeps the raw best score, including suppressed pairings
    raw_best = min(scored, key=_Scored.sort_key) if scored else None
    raw_confidence = max(
        (1.0 if _is_exact(item, record, config) else item.confidence for item in scored),
        default=0.0,
    )

    return MatchResult(
        candidate_id=candidate_id,
        candidate=candidate,
        classification=MatchClassification.UNMATCHED,
        confidence=raw_confidence,
        components=raw_best.components if raw_best else None,
        excluded_ledger_ids=excluded_ledger_ids,
        exclusion_ids=exclusion_ids,
        warnings=tuple(warnings),
        record=record,
        candidate_key=key,
    )


def snapshot_pool(rows: Iterable[LedgerTransaction]) -> tuple[LedgerRecord, ...]:
    """Freeze ORM rows into LedgerRecord values, dropping soft-deleted rows."""
    return tuple(LedgerRecord.from_orm(row) for row in rows if not row.is_deleted)

"""Duplicate detection for newly extracted documents.

:func:`similarity` is a pure scorer over a candidate's field values and
a list of recent records, so it can be tested without storage.
:class:`DuplicateDetector` fetches the candidate pool from the
repository and applies the configured threshold.
"""

import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any

from src.extraction.counterparty import name_similarity
from src.models import OCRData, utcnow
from src.utils.config import DuplicateConfig
from src.utils.logger import get_logger

if TYPE_CHECKING:
    from src.storage.repository import OCRDataRepository

logger = get_logger(__name__)

NUMBER_FIELDS = ("invoice_no", "receipt_no", "reference")
NAME_FIELDS = ("party_name", "customer_name")

# Matching counter-party, amount and date score at least this much,
# whatever the document numbers say.
FIELD_MATCH_SCORE = 0.9
NAME_MATCH_THRESHOLD = 0.85

SIGNAL_WEIGHTS: dict[str, float] = {
    "number": 0.4,
    "name": 0.25,
    "amount": 0.2,
    "date": 0.15,
}


@dataclass
class DuplicateMatch:
    """Best duplicate candidate for a document."""

    score: float = 0.0
    match_id: str | None = None
    signals: dict[str, float] = field(default_factory=dict)
    is_duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "isDuplicate": self.is_duplicate,
            "matchedId": self.match_id,
            "score": round(self.score, 4),
            "signals": {k: round(v, 4) for k, v in self.signals.items()},
        }


def document_values(record: OCRData) -> dict[str, Any]:
    """Field values of a stored record, preferring reviewed data."""
    if record.processed_data is not None:
        return dict(record.processed_data)
    return {
        f["field"]: f.get("value")
        for f in record.extracted_data.get("fields", [])
        if f.get("value") is not None
    }


def _first(values: dict[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        if values.get(name) not in (None, ""):
            return values[name]
    return None


def _normalize_number(value: Any) -> str:
    return re.sub(r"[^A-Z0-9]", "", str(value).upper())


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", ""))
    except ValueError:
        return None


def _as_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        return None


def score_pair(
    candidate: dict[str, Any],
    other: dict[str, Any],
    amount_tolerance: float = 10.0,
) -> tuple[float, dict[str, float]]:
    """Score two documents' field values against each other.

    Identical normalized document numbers short-circuit to ``1.0``.
    Otherwise the score is the weighted mean of the signals both sides
    carry, raised to :data:`FIELD_MATCH_SCORE` when the amounts agree
    within tolerance, the dates lie within a day and the names (when
    both sides have one) match.

    Returns:
        ``(score, signals)`` where ``signals`` holds each per-signal score.
    """
    signals: dict[str, float] = {}

    left_no, right_no = _first(candidate, NUMBER_FIELDS), _first(other, NUMBER_FIELDS)
    if left_no is not None and right_no is not None:
        a, b = _normalize_number(left_no), _normalize_number(right_no)
        if a and a == b:
            return 1.0, {"number": 1.0}
        signals["number"] = name_similarity(a, b)

    left_name, right_name = _first(candidate, NAME_FIELDS), _first(other, NAME_FIELDS)
    if left_name is not None and right_name is not None:
        signals["name"] = name_similarity(str(left_name), str(right_name))

    left_amount = _as_float(candidate.get("amount"))
    right_amount = _as_float(other.get("amount"))
    if left_amount is not None and right_amount is not None:
        diff = abs(left_amount - right_amount)
        if amount_tolerance > 0:
            signals["amount"] = max(0.0, 1.0 - diff / amount_tolerance)
        else:
            signals["amount"] = float(diff == 0)

    left_date, right_date = _as_date(candidate.get("date")), _as_date(other.get("date"))
    if left_date is not None and right_date is not None:
        gap = abs((left_date - right_date).days)
        signals["date"] = 1.0 if gap == 0 else 0.5 if gap == 1 else 0.0

    if not signals:
        return 0.0, signals
    total_weight = sum(SIGNAL_WEIGHTS[name] for name in signals)
    score = sum(SIGNAL_WEIGHTS[name] * value for name, value in signals.items()) / total_weight
    if _fields_agree(signals, left_amount, right_amount, amount_tolerance):
        score = max(score, FIELD_MATCH_SCORE)
    return score, signals


def _fields_agree(
    signals: dict[str, float],
    left_amount: float | None,
    right_amount: float | None,
    amount_tolerance: float,
) -> bool:
    if "amount" not in signals or "date" not in signals:
        return False
    if abs(left_amount - right_amount) > amount_tolerance:
        return False
    if signals["date"] < 0.5:
        return False
    return signals.get("name", 1.0) >= NAME_MATCH_THRESHOLD


def similarity(
    candidate: dict[str, Any],
    recent: list[OCRData],
    amount_tolerance: float = 10.0,
) -> DuplicateMatch:
    """Find the recent record most similar to a candidate.

    Args:
        candidate: Field values of the new document.
        recent: Candidate pool, newest first; ties keep the newest.
        amount_tolerance: Amount gap at which the amount signal reaches 0.

    Returns:
        The best match; ``match_id`` is ``None`` when nothing scored.
    """
    best = DuplicateMatch()
    for record in recent:
        score, signals = score_pair(candidate, document_values(record), amount_tolerance)
        if score > best.score:
            best = DuplicateMatch(score=score, match_id=record.id, signals=signals)
    return best


class DuplicateDetector:
    """Compares a document with recent records of the same owner and type.

    Args:
        repository: Source of the candidate pool.
        config: Threshold, look-back window and candidate limit.
    """

    def __init__(self, repository: "OCRDataRepository", config: DuplicateConfig | None = None) -> None:
        self.repository = repository
        self.config = config or DuplicateConfig()

    def check(self, record: OCRData, values: dict[str, Any]) -> DuplicateMatch:
        since = utcnow() - timedelta(days=self.config.lookback_days)
        recent = self.repository.recent_for_duplicates(
            user_id=record.user_id,
            document_type=record.document_type,
            since=since,
            limit=self.config.max_candidates,
            exclude_id=record.id,
        )
        match = similarity(values, recent, self.config.amount_tolerance)
        match.is_duplicate = match.match_id is not None and match.score >= self.config.threshold

        if match.is_duplicate:
            logger.warning(
                "Document %s looks like a duplicate of %s (score %.2f)",
                record.id,
                match.match_id,
                match.score,
            )
        else:
            logger.debug(
                "No duplicate for %s among %d candidates (best %.2f)",
                record.id,
                len(recent),
                match.score,
            )
        return match

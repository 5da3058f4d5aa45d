"""Fuzzy matching of extracted party and customer names.

Extracted names are compared with the owner's known counter-parties
using :class:`difflib.SequenceMatcher`. An exact (case-insensitive)
match is trusted; a close match is substituted but flagged for review.
"""

import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import TYPE_CHECKING

from src.utils.logger import get_logger

if TYPE_CHECKING:
    from .field_extractor import FieldResult

logger = get_logger(__name__)

EXACT = "exact"
FUZZY = "fuzzy"
NONE = "none"


@dataclass
class CounterpartyMatch:
    """Best match for an extracted name among the known names."""

    name: str | None
    confidence: float
    match_type: str
    suggestions: list[str] = field(default_factory=list)


def _normalize(name: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^\w\s&]", " ", name.lower())).strip()


def name_similarity(a: str, b: str) -> float:
    """Similarity ratio of two names after case and punctuation folding."""
    left, right = _normalize(a), _normalize(b)
    if not left or not right:
        return 0.0
    return SequenceMatcher(None, left, right).ratio()


class CounterpartyResolver:
    """Resolves extracted names against the owner's directory.

    Args:
        threshold: Minimum similarity ratio for a fuzzy match.
        max_suggestions: Number of alternatives kept for the reviewer.
    """

    def __init__(self, threshold: float = 0.7, max_suggestions: int = 3) -> None:
        self.threshold = threshold
        self.max_suggestions = max_suggestions

    def match(self, name: str, known_names: list[str]) -> CounterpartyMatch:
        target = _normalize(name)
        for known in known_names:
            if _normalize(known) == target:
                return CounterpartyMatch(known, 1.0, EXACT)

        scored = sorted(
            ((name_similarity(name, known), known) for known in known_names),
            key=lambda pair: pair[0],
            reverse=True,
        )
        candidates = [(s, k) for s, k in scored if s >= self.threshold]
        if not candidates:
            return CounterpartyMatch(None, 0.0, NONE)

        best_score, best_name = candidates[0]
        suggestions = [k for _, k in candidates[: self.max_suggestions]]
        return CounterpartyMatch(best_name, best_score, FUZZY, suggestions)

    def apply(self, result: "FieldResult", known_names: list[str], kind: str) -> None:
        """Update an extracted name field in place with the match outcome.

        Args:
            result: The ``party_name`` or ``customer_name`` field.
            known_names: Canonical names for the document owner.
            kind: ``party`` or ``customer``; used in the error message.
        """
        outcome = self.match(str(result.value), known_names)

        if outcome.match_type == EXACT:
            result.value = outcome.name
            result.confidence = 1.0
        elif outcome.match_type == FUZZY:
            logger.info(
                "Fuzzy-matched %s %r to %r (%.2f)",
                kind,
                result.value,
                outcome.name,
                outcome.confidence,
            )
            result.value = outcome.name
            result.confidence = outcome.confidence
            result.needs_review = True
            result.suggestions = outcome.suggestions
        else:
            logger.warning("No %s matching %r in directory", kind, result.value)
            result.validation_errors.append(f"{kind} not found in directory")

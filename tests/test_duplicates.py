"""Tests for duplicate scoring and detection."""

from unittest.mock import MagicMock

import pytest

from src.duplicates.detector import (
    FIELD_MATCH_SCORE,
    DuplicateDetector,
    document_values,
    score_pair,
    similarity,
)
from src.models import DocumentType, OCRData, OCRStatus
from src.utils.config import DuplicateConfig

BASE = {
    "invoice_no": "INV-001",
    "party_name": "Sharma Traders",
    "amount": 12500.0,
    "date": "2024-05-20",
}


def _record(ocr_id: str, values: dict | None = None, fields: list | None = None) -> OCRData:
    return OCRData(
        id=ocr_id,
        user_id="user-1",
        document_type=DocumentType.INVOICE,
        image_url=f"uploads/{ocr_id}.png",
        original_name=f"{ocr_id}.png",
        file_size=1,
        status=OCRStatus.COMPLETED,
        extracted_data={"fields": fields or []},
        processed_data=values,
    )


class TestScorePair:
    """Tests for score_pair."""

    def test_same_number_short_circuits(self) -> None:
        score, signals = score_pair({"invoice_no": "INV-001"}, {"invoice_no": "inv 001", "amount": 1})
        assert score == 1.0
        assert signals == {"number": 1.0}

    def test_no_shared_signals(self) -> None:
        assert score_pair({"amount": 10}, {"invoice_no": "X"}) == (0.0, {})

    def test_amount_tolerance(self) -> None:
        score, signals = score_pair({"amount": 100}, {"amount": "105"}, amount_tolerance=10)
        assert signals == {"amount": 0.5}
        assert score == 0.5
        assert score_pair({"amount": 100}, {"amount": 200})[1]["amount"] == 0.0

    def test_zero_tolerance_requires_exact_amount(self) -> None:
        assert score_pair({"amount": 100}, {"amount": 100}, 0)[1] == {"amount": 1.0}
        assert score_pair({"amount": 100}, {"amount": 100.5}, 0)[1] == {"amount": 0.0}

    def test_date_gap(self) -> None:
        assert score_pair({"date": "2024-05-20"}, {"date": "2024-05-21"})[1] == {"date": 0.5}
        assert score_pair({"date": "2024-05-20"}, {"date": "2024-05-25"})[1] == {"date": 0.0}
        assert score_pair({"date": "2024-05-20"}, {"date": "20/05/2024"})[1] == {}

    def test_weighted_mean_of_present_signals(self) -> None:
        other = dict(BASE, invoice_no="INV-002")
        score, signals = score_pair(BASE, other)

        assert signals["name"] == 1.0
        assert signals["amount"] == 1.0
        assert signals["date"] == 1.0
        assert signals["number"] == pytest.approx(5 / 6)
        assert score == pytest.approx(0.4 * 5 / 6 + 0.25 + 0.2 + 0.15)

    def test_matching_party_amount_and_date_despite_other_number(self) -> None:
        score, signals = score_pair(BASE, dict(BASE, invoice_no="BILL-77"))
        assert signals["number"] < 0.5
        assert score == FIELD_MATCH_SCORE

    def test_field_match_needs_amount_within_tolerance(self) -> None:
        other = dict(BASE, invoice_no="BILL-77", amount=12600.0)
        assert score_pair(BASE, other)[0] < FIELD_MATCH_SCORE

    def test_field_match_allows_one_day_gap(self) -> None:
        other = dict(BASE, invoice_no="BILL-77", amount=12505.0, date="2024-05-21")
        assert score_pair(BASE, other)[0] == FIELD_MATCH_SCORE

    def test_field_match_needs_same_party(self) -> None:
        other = dict(BASE, invoice_no="BILL-77", party_name="Kumar Steel")
        assert score_pair(BASE, other)[0] < FIELD_MATCH_SCORE

    def test_receipt_and_customer_fields(self) -> None:
        score, signals = score_pair(
            {"receipt_no": "R-1", "customer_name": "Priya Mehta"},
            {"receipt_no": "R-2", "customer_name": "Priya Mehta"},
        )
        assert set(signals) == {"number", "name"}
        assert 0 < score < 1


class TestSimilarity:
    """Tests for choosing the best candidate."""

    def test_best_match(self) -> None:
        recent = [
            _record("far", dict(BASE, invoice_no="X-9", party_name="Kumar Steel", amount=10.0)),
            _record("close", dict(BASE, invoice_no="INV-002")),
        ]
        match = similarity(BASE, recent)
        assert match.match_id == "close"
        assert match.score > 0.9

    def test_tie_keeps_newest(self) -> None:
        recent = [_record("newer", dict(BASE)), _record("older", dict(BASE))]
        assert similarity(BASE, recent).match_id == "newer"

    def test_empty_pool(self) -> None:
        match = similarity(BASE, [])
        assert match.match_id is None
        assert match.score == 0.0

    def test_document_values_fall_back_to_fields(self) -> None:
        record = _record(
            "raw",
            fields=[
                {"field": "invoice_no", "value": "INV-001"},
                {"field": "party_gst", "value": None},
            ],
        )
        assert document_values(record) == {"invoice_no": "INV-001"}
        assert document_values(_record("done", {"amount": 5})) == {"amount": 5}

    def test_to_dict(self) -> None:
        match = similarity(BASE, [_record("dup", dict(BASE))])
        assert match.to_dict() == {
            "isDuplicate": False,
            "matchedId": "dup",
            "score": 1.0,
            "signals": {"number": 1.0},
        }


class TestDuplicateDetector:
    """Tests for DuplicateDetector with a mocked repository."""

    def setup_method(self) -> None:
        self.repository = MagicMock()
        self.config = DuplicateConfig(threshold=0.85, lookback_days=30, max_candidates=5)
        self.detector = DuplicateDetector(self.repository, self.config)
        self.record = _record("new")

    def test_flags_duplicate_above_threshold(self) -> None:
        self.repository.recent_for_duplicates.return_value = [_record("old", dict(BASE, invoice_no="INV-002"))]

        match = self.detector.check(self.record, BASE)

        assert match.is_duplicate
        assert match.match_id == "old"
        kwargs = self.repository.recent_for_duplicates.call_args.kwargs
        assert kwargs["user_id"] == "user-1"
        assert kwargs["document_type"] == DocumentType.INVOICE
        assert kwargs["limit"] == 5
        assert kwargs["exclude_id"] == "new"

    def test_below_threshold(self) -> None:
        different = dict(BASE, invoice_no="Z-77", party_name="Kumar Steel", amount=99.0)
        self.repository.recent_for_duplicates.return_value = [_record("old", different)]

        match = self.detector.check(self.record, BASE)
        assert not match.is_duplicate
        assert match.match_id == "old"

    def test_nothing_recent(self) -> None:
        self.repository.recent_for_duplicates.return_value = []
        assert not self.detector.check(self.record, BASE).is_duplicate

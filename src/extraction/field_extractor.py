"""Per-document-type field extraction with confidence scoring.

Matches ordered regex tables against OCR text, weights each pattern's
certainty by the engine confidence of the line it matched on, and
validates the normalized values with the rules engine. The output is the
``fields`` section stored on an OCR record, plus the derived low,
invalid and high confidence field lists.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from src.ocr.engine import OCRResult
from src.utils.config import ExtractionConfig
from src.utils.logger import get_logger
from src.validation.rules_engine import RulesEngine, parse_amount, parse_date

from .counterparty import CounterpartyResolver

logger = get_logger(__name__)


@dataclass
class FieldResult:
    """One extracted field with its confidence and validation outcome."""

    name: str
    value: Any
    confidence: float
    needs_review: bool = False
    validation_errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    start_pos: int = -1

    def to_dict(self) -> dict[str, Any]:
        data = {
            "field": self.name,
            "value": self.value,
            "confidence": round(self.confidence, 4),
            "needsReview": self.needs_review,
            "validationErrors": list(self.validation_errors),
        }
        if self.warnings:
            data["warnings"] = list(self.warnings)
        if self.suggestions:
            data["suggestions"] = list(self.suggestions)
        return data


@dataclass
class ExtractionResult:
    """All fields of a document and the lists derived from them."""

    document_type: str
    fields: list[FieldResult]
    low_confidence_fields: list[str]
    invalid_fields: list[str]
    high_confidence_fields: list[str]
    overall_confidence: float

    @property
    def needs_review(self) -> bool:
        return any(f.needs_review for f in self.fields)

    def values(self) -> dict[str, Any]:
        """Field name to value for every field that has a value."""
        return {f.name: f.value for f in self.fields if f.value is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "fields": [f.to_dict() for f in self.fields],
            "lowConfidenceFields": list(self.low_confidence_fields),
            "invalidFields": list(self.invalid_fields),
            "highConfidenceFields": list(self.high_confidence_fields),
            "overallConfidence": round(self.overall_confidence, 4),
        }


# Pattern definitions: (regex, certainty, flags). First match wins, so
# each table is ordered from most to least specific.
_NUMBER_LABEL = r"(?:[ \t]*(?:no\.?|number|#))?[ \t:#.\-]*"
_DOC_NUMBER = r"([A-Z0-9\-/]*\d[A-Z0-9\-/]*)"
# O, o, l, I, S and B are common OCR misreads of 0, 1, 5 and 8
_AMOUNT_VALUE = (
    r"(?:rs\.?|inr|₹)?[ \t]*([0-9OolISB,]*\d[0-9OolISB,]*(?:\.[0-9OolISB]{1,2})?)"
)
_MONTHS = r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*"

_INVOICE_NO_PATTERNS: list[tuple[str, float, int]] = [
    (r"(?:invoice|bill|inv)" + _NUMBER_LABEL + _DOC_NUMBER, 0.95, re.IGNORECASE),
]

_RECEIPT_NO_PATTERNS: list[tuple[str, float, int]] = [
    (r"(?:receipt|rcpt)" + _NUMBER_LABEL + _DOC_NUMBER, 0.95, re.IGNORECASE),
]

_REFERENCE_PATTERNS: list[tuple[str, float, int]] = [
    (r"\b(?:utr|ref|reference)" + _NUMBER_LABEL + r"([A-Z0-9]*\d[A-Z0-9]*)", 0.9, re.IGNORECASE),
    (r"transaction(?:[ \t]*id)?" + _NUMBER_LABEL + r"([A-Z0-9]*\d[A-Z0-9]*)", 0.85, re.IGNORECASE),
]


def _date_patterns(labels: str) -> list[tuple[str, float, int]]:
    return [
        (
            r"(?:" + labels + r")[ \t:]*(\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4})",
            0.9,
            re.IGNORECASE,
        ),
        (
            r"(?:" + labels + r")[ \t:]*(\d{1,2}[ \t]+" + _MONTHS + r",?[ \t]+\d{4})",
            0.88,
            re.IGNORECASE,
        ),
        (r"\b(\d{4}-\d{2}-\d{2})\b", 0.8, 0),
        (r"\b(\d{1,2}[-/]\d{1,2}[-/]\d{2,4})\b", 0.75, 0),
    ]


def _amount_patterns(labels: str) -> list[tuple[str, float, int]]:
    return [
        (r"grand[ \t]*total[ \t:]*" + _AMOUNT_VALUE, 0.95, re.IGNORECASE),
        (r"(?:" + labels + r")[ \t:]*" + _AMOUNT_VALUE, 0.92, re.IGNORECASE),
        (r"(?:rs\.?|inr|₹)[ \t]*(\d[\d,]*(?:\.\d{1,2})?)", 0.7, re.IGNORECASE),
    ]


_GST_PATTERNS: list[tuple[str, float, int]] = [
    (
        r"(?:gstin|gst)" + _NUMBER_LABEL
        + r"([0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z])\b",
        0.98,
        re.IGNORECASE,
    ),
    (r"(?:gstin|gst)" + _NUMBER_LABEL + r"([0-9A-Z]{15})\b", 0.8, re.IGNORECASE),
]

_METHOD_PATTERNS: list[tuple[str, float, int]] = [
    (
        r"\b(?:mode|method|via|paid[ \t]+by)(?:[ \t]+of[ \t]+payment)?[ \t:]*([A-Za-z][A-Za-z \t]*)",
        0.85,
        re.IGNORECASE,
    ),
]

# Lines that carry a label rather than a counter-party name.
_LABEL_LINE = re.compile(
    r"^\W*(?:tax[ \t]+|sales?[ \t]+|payment[ \t]+|cash[ \t]+)?"
    r"(?:invoice|receipt|bill|voucher|memo|payment|date|gstin|gst|ref|reference|utr"
    r"|amount|total|mode|method|transaction|paid)\b",
    re.IGNORECASE,
)

PARTY_NAME_CERTAINTY = 0.85

_METHOD_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("upi", "gpay", "phonepe", "paytm"), "UPI"),
    (("bank", "neft", "rtgs", "imps", "transfer"), "BANK_TRANSFER"),
    (("cash",), "CASH"),
    (("cheque", "check", "chq"), "CHEQUE"),
    (("card", "credit", "debit"), "CARD"),
]

FIELD_PATTERNS: dict[str, dict[str, list[tuple[str, float, int]] | None]] = {
    "invoice": {
        "invoice_no": _INVOICE_NO_PATTERNS,
        "date": _date_patterns("date|dated"),
        "amount": _amount_patterns("total|amount"),
        "party_gst": _GST_PATTERNS,
        "party_name": None,
    },
    "invoice_payment": {
        "reference": _REFERENCE_PATTERNS,
        "date": _date_patterns("date|paid on"),
        "amount": _amount_patterns("amount|paid"),
        "method": _METHOD_PATTERNS,
        "party_name": None,
    },
    "sale_receipt": {
        "receipt_no": _RECEIPT_NO_PATTERNS,
        "date": _date_patterns("date"),
        "amount": _amount_patterns("amount|received|total"),
        "method": _METHOD_PATTERNS,
        "customer_name": None,
    },
}

COUNTERPARTY_FIELDS = {"party_name": "party", "customer_name": "customer"}


def normalize_date(raw: str) -> str:
    """Normalize a matched date to ISO ``YYYY-MM-DD``.

    Numeric dates are read day-first; two-digit years below 50 are taken
    as 20xx, the rest as 19xx. Unparseable input is returned unchanged so
    validation can report it.
    """
    match = re.fullmatch(r"(\d{1,2})[-/.](\d{1,2})[-/.](\d{2,4})", raw.strip())
    if match:
        day, month, year = (int(g) for g in match.groups())
        if len(match.group(3)) == 2:
            year += 2000 if year < 50 else 1900
        try:
            return date(year, month, day).isoformat()
        except ValueError:
            return raw
    parsed = parse_date(raw)
    return parsed.isoformat() if parsed else raw


def normalize_amount(raw: str) -> float | str:
    """Return the amount as a float, or the raw text if it is not numeric."""
    amount = parse_amount(raw)
    return float(amount) if amount is not None else raw.strip()


def normalize_method(raw: str) -> str:
    text = raw.lower()
    for keywords, method in _METHOD_KEYWORDS:
        if any(k in text for k in keywords):
            return method
    return "OTHER"


class FieldExtractor:
    """Extracts, scores and validates the fields of one document type.

    Args:
        config: Review and high-confidence thresholds.
        rules_engine: Validator for the normalized field values.
        resolver: Counter-party matcher; built from ``config`` if omitted.
    """

    def __init__(
        self,
        config: ExtractionConfig | None = None,
        rules_engine: RulesEngine | None = None,
        resolver: CounterpartyResolver | None = None,
    ) -> None:
        self.config = config or ExtractionConfig()
        self.rules_engine = rules_engine or RulesEngine(
            max_document_age_years=self.config.max_document_age_years
        )
        self.resolver = resolver or CounterpartyResolver(
            threshold=self.config.fuzzy_match_threshold
        )

    def extract(
        self,
        ocr: OCRResult,
        document_type: str,
        known_names: list[str] | None = None,
        today: date | None = None,
    ) -> ExtractionResult:
        """Extract all fields of ``document_type`` from an OCR result.

        Args:
            ocr: Recognized text with line confidences.
            document_type: ``invoice``, ``invoice_payment`` or ``sale_receipt``.
            known_names: Canonical party or customer names for the owner.
                Counter-party resolution is skipped when ``None``.
            today: Reference date for date validation.

        Returns:
            Extraction result with per-field confidence and review flags.
        """
        if document_type not in FIELD_PATTERNS:
            raise ValueError(f"Unsupported document type: {document_type}")

        results: list[FieldResult] = []
        for field_name, patterns in FIELD_PATTERNS[document_type].items():
            if patterns is None:
                found = self._match_counterparty(ocr, field_name)
            else:
                found = self._match_patterns(ocr, field_name, patterns)

            if found is None:
                if self.rules_engine.is_required(document_type, field_name):
                    results.append(FieldResult(name=field_name, value=None, confidence=0.0))
                continue
            results.append(found)

        if known_names is not None:
            for result in results:
                kind = COUNTERPARTY_FIELDS.get(result.name)
                if kind and result.value is not None:
                    self.resolver.apply(result, known_names, kind)

        report = self.rules_engine.validate(
            {r.name: r.value for r in results}, document_type, today=today
        )
        threshold = self.config.review_threshold
        for result in results:
            result.validation_errors.extend(report.errors_for(result.name))
            result.warnings.extend(report.warnings_for(result.name))
            result.needs_review = (
                result.needs_review
                or result.confidence < threshold
                or bool(result.validation_errors)
                or bool(result.warnings)
            )

        extraction = self._summarize(document_type, results)
        logger.info(
            "Extracted %d %s fields (overall confidence %.2f, %d need review)",
            len(results),
            document_type,
            extraction.overall_confidence,
            sum(1 for r in results if r.needs_review),
        )
        return extraction

    def _summarize(self, document_type: str, results: list[FieldResult]) -> ExtractionResult:
        threshold = self.config.review_threshold
        high = self.config.high_confidence_threshold
        valued = [r for r in results if r.value is not None]
        overall = sum(r.confidence for r in valued) / len(valued) if valued else 0.0
        return ExtractionResult(
            document_type=document_type,
            fields=results,
            low_confidence_fields=[r.name for r in results if r.confidence < threshold],
            invalid_fields=[r.name for r in results if r.validation_errors],
            high_confidence_fields=[r.name for r in results if r.confidence >= high],
            overall_confidence=overall,
        )

    def _match_patterns(
        self,
        ocr: OCRResult,
        field_name: str,
        patterns: list[tuple[str, float, int]],
    ) -> FieldResult | None:
        for pattern, certainty, flags in patterns:
            match = re.search(pattern, ocr.text, flags)
            if not match:
                continue
            raw = match.group(1).strip()
            confidence = certainty * ocr.line_confidence(match.start(1))
            logger.debug("Matched %s=%r (certainty %.2f)", field_name, raw, certainty)
            return FieldResult(
                name=field_name,
                value=self._normalize(field_name, raw),
                confidence=min(max(confidence, 0.0), 1.0),
                start_pos=match.start(1),
            )
        return None

    def _match_counterparty(self, ocr: OCRResult, field_name: str) -> FieldResult | None:
        offset = 0
        for line in ocr.text.split("\n"):
            stripped = line.strip()
            if stripped and re.search(r"[A-Za-z]", stripped) and not _LABEL_LINE.match(stripped):
                confidence = PARTY_NAME_CERTAINTY * ocr.line_confidence(offset)
                return FieldResult(
                    name=field_name,
                    value=stripped,
                    confidence=min(max(confidence, 0.0), 1.0),
                    start_pos=offset,
                )
            offset += len(line) + 1
        return None

    @staticmethod
    def _normalize(field_name: str, raw: str) -> Any:
        if field_name == "date":
            return normalize_date(raw)
        if field_name == "amount":
            return normalize_amount(raw)
        if field_name == "party_gst":
            return raw.upper()
        if field_name == "method":
            return normalize_method(raw)
        return raw

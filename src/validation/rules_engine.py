"""Configurable validation rules engine for extracted document fields.

Validates dates, amounts, tax identifiers, document numbers, contact
details, and required fields per document type. Rules come from a YAML
file when one is present, otherwise from built-in defaults.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from src.utils.logger import get_logger

logger = get_logger(__name__)


DATE_FORMATS: list[str] = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d/%m/%y",
    "%d-%m-%y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
]

GSTIN_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[6-9]\d{9}$")

ERROR = "error"
WARNING = "warning"


@dataclass
class ValidationResult:
    """Result of a single field validation check."""

    field_name: str
    is_valid: bool
    message: str
    rule_name: str
    severity: str = ERROR


@dataclass
class ValidationReport:
    """Aggregated validation report for a document."""

    all_valid: bool
    results: list[ValidationResult]
    warnings: list[str] = field(default_factory=list)

    def errors_for(self, field_name: str) -> list[str]:
        """Messages of failed error-level checks for one field."""
        return [
            r.message
            for r in self.results
            if r.field_name == field_name and not r.is_valid and r.severity == ERROR
        ]

    def warnings_for(self, field_name: str) -> list[str]:
        """Messages of failed warning-level checks for one field."""
        return [
            r.message
            for r in self.results
            if r.field_name == field_name and not r.is_valid and r.severity == WARNING
        ]


def parse_amount(value: Any) -> Decimal | None:
    """Parse a monetary value, tolerating currency symbols and separators.

    Returns ``None`` when the value is not a clean number; OCR misreads
    such as ``12,34O.00`` are deliberately not repaired.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    cleaned = re.sub(r"(?i)^(rs\.?|inr|usd|eur|gbp|[$₹€£])\s*", "", str(value).strip())
    cleaned = cleaned.replace(",", "").strip()
    if not re.fullmatch(r"-?\d+(\.\d+)?", cleaned):
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def parse_date(value: Any) -> date | None:
    """Parse a date in any supported format, day-first for numeric forms."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


class RulesEngine:
    """Configurable validation rules engine.

    Applies field-level rules per document type, loaded from a YAML
    configuration file or the built-in defaults.

    Args:
        rules_path: Path to the validation rules YAML file.
        max_document_age_years: Age after which a document date is flagged.
    """

    def __init__(
        self,
        rules_path: Path = Path("configs/validation_rules.yaml"),
        max_document_age_years: int = 3,
    ) -> None:
        self.rules = self._load_rules(Path(rules_path))
        self.max_document_age_years = max_document_age_years
        self._validators: dict[str, Any] = {
            "date_format": self._validate_date,
            "positive_amount": self._validate_positive_amount,
            "amount_range": self._validate_amount_range,
            "required": self._validate_required,
            "gst": self._validate_gst,
            "max_length": self._validate_max_length,
            "choice": self._validate_choice,
            "regex": self._validate_regex,
            "email": self._validate_email,
            "phone": self._validate_phone,
        }

    def _load_rules(self, path: Path) -> dict:
        """Load validation rules from YAML file.

        Args:
            path: Path to the rules file.

        Returns:
            Dictionary of document-type-specific rules.
        """
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f)
                if data:
                    logger.info("Loaded validation rules from %s", path)
                    return data
        logger.debug("Using default validation rules")
        return self._default_rules()

    def _default_rules(self) -> dict:
        """Provide the built-in rules when no config is available."""
        amount = [
            {"type": "required"},
            {"type": "positive_amount"},
            {"type": "amount_range", "min": 0, "max": 100_000_000},
        ]
        doc_date = [{"type": "required"}, {"type": "date_format"}]
        methods = ["UPI", "BANK_TRANSFER", "CASH", "CHEQUE", "CARD", "OTHER"]
        return {
            "invoice": {
                "invoice_no": [{"type": "required"}, {"type": "max_length", "max": 50}],
                "date": doc_date,
                "amount": amount,
                "party_gst": [{"type": "gst"}],
                "party_name": [{"type": "required"}],
            },
            "invoice_payment": {
                "reference": [{"type": "max_length", "max": 50}],
                "date": doc_date,
                "amount": amount,
                "method": [{"type": "choice", "choices": methods}],
                "party_name": [{"type": "required"}],
            },
            "sale_receipt": {
                "receipt_no": [{"type": "max_length", "max": 50}],
                "date": doc_date,
                "amount": amount,
                "method": [{"type": "choice", "choices": methods}],
                "customer_name": [{"type": "required"}],
            },
        }

    def fields_for(self, document_type: str) -> dict[str, list[dict]]:
        """Rules keyed by field name for a document type."""
        return self.rules.get(document_type, {})

    def is_required(self, document_type: str, field_name: str) -> bool:
        return any(
            rule.get("type") == "required"
            for rule in self.fields_for(document_type).get(field_name, [])
        )

    def validate(
        self,
        fields: dict[str, Any],
        document_type: str = "invoice",
        today: date | None = None,
    ) -> ValidationReport:
        """Validate extracted fields against document-type rules.

        Args:
            fields: Extracted field name-value pairs.
            document_type: Type of document for rule selection.
            today: Reference date for age checks; defaults to today.

        Returns:
            Validation report with one result per rule evaluated.
        """
        results: list[ValidationResult] = []
        warnings: list[str] = []
        context = {"today": today or date.today()}

        for field_name, rules in self.fields_for(document_type).items():
            value = fields.get(field_name)

            for rule in rules:
                rule_type = rule.get("type")
                validator = self._validators.get(rule_type)

                if not validator:
                    warnings.append(f"Unknown rule type: {rule_type}")
                    continue

                results.extend(validator(field_name, value, {**rule, **context}))

        all_valid = all(r.is_valid for r in results if r.severity == ERROR)
        logger.info(
            "Validation for %s: %s (%d checks)",
            document_type,
            "PASSED" if all_valid else "FAILED",
            len(results),
        )
        return ValidationReport(all_valid=all_valid, results=results, warnings=warnings)

    def _validate_date(
        self, field_name: str, value: Any, rule: dict
    ) -> list[ValidationResult]:
        """Check the date parses, is not in the future, and is not stale."""
        if value is None:
            return [ValidationResult(field_name, True, "No value to validate", "date_format")]

        parsed = parse_date(value)
        if parsed is None:
            return [ValidationResult(field_name, False, "date not parseable", "date_format")]

        today: date = rule["today"]
        if parsed > today:
            return [
                ValidationResult(
                    field_name, False, "date cannot be in the future", "date_format"
                )
            ]

        max_age = rule.get("max_age_years", self.max_document_age_years)
        try:
            cutoff = today.replace(year=today.year - max_age)
        except ValueError:
            cutoff = today.replace(year=today.year - max_age, day=28)
        if parsed < cutoff:
            return [
                ValidationResult(
                    field_name,
                    False,
                    f"date is more than {max_age} years old",
                    "date_format",
                    WARNING,
                )
            ]
        return [ValidationResult(field_name, True, "Valid date", "date_format")]

    def _validate_positive_amount(
        self, field_name: str, value: Any, rule: dict
    ) -> list[ValidationResult]:
        """Check if a value is a positive monetary amount."""
        if value is None:
            return [ValidationResult(field_name, True, "No value to validate", "positive_amount")]

        amount = parse_amount(value)
        if amount is None:
            return [
                ValidationResult(
                    field_name, False, "amount is not a valid number", "positive_amount"
                )
            ]
        if amount <= 0:
            return [
                ValidationResult(
                    field_name, False, "amount must be positive", "positive_amount"
                )
            ]
        return [ValidationResult(field_name, True, f"Valid amount: {amount}", "positive_amount")]

    def _validate_amount_range(
        self, field_name: str, value: Any, rule: dict
    ) -> list[ValidationResult]:
        """Check if an amount falls within a specified range."""
        amount = parse_amount(value)
        if amount is None:
            # positive_amount reports unparseable values
            return []

        min_val = Decimal(str(rule.get("min", 0)))
        max_val = Decimal(str(rule.get("max", 100_000_000)))
        if amount > max_val:
            return [
                ValidationResult(
                    field_name, False, "amount seems unusually high", "amount_range"
                )
            ]
        if amount < min_val:
            return [
                ValidationResult(
                    field_name, False, f"amount below minimum {min_val}", "amount_range"
                )
            ]
        return [ValidationResult(field_name, True, "Amount in valid range", "amount_range")]

    def _validate_required(
        self, field_name: str, value: Any, rule: dict
    ) -> list[ValidationResult]:
        """Check if a required field is present and non-empty."""
        if value is not None and str(value).strip():
            return [ValidationResult(field_name, True, "Required field present", "required")]
        return [ValidationResult(field_name, False, "required field missing", "required")]

    def _validate_gst(
        self, field_name: str, value: Any, rule: dict
    ) -> list[ValidationResult]:
        """Check the Indian GSTIN format."""
        if not value:
            return []
        if GSTIN_PATTERN.match(str(value).strip().upper()):
            return [ValidationResult(field_name, True, "Valid GST format", "gst")]
        return [ValidationResult(field_name, False, "invalid GST format", "gst")]

    def _validate_max_length(
        self, field_name: str, value: Any, rule: dict
    ) -> list[ValidationResult]:
        if value is None:
            return []
        if len(str(value)) > int(rule.get("max", 50)):
            return [ValidationResult(field_name, False, "number seems too long", "max_length")]
        return [ValidationResult(field_name, True, "Length ok", "max_length")]

    def _validate_choice(
        self, field_name: str, value: Any, rule: dict
    ) -> list[ValidationResult]:
        if value is None:
            return []
        choices = rule.get("choices", [])
        if value in choices:
            return [ValidationResult(field_name, True, "Allowed value", "choice")]
        return [ValidationResult(field_name, False, f"unsupported value: {value}", "choice")]

    def _validate_regex(
        self, field_name: str, value: Any, rule: dict
    ) -> list[ValidationResult]:
        """Validate a field value against a custom regex pattern."""
        if value is None:
            return []
        pattern = rule.get("pattern", "")
        if re.match(pattern, str(value)):
            return [ValidationResult(field_name, True, "Matches pattern", "regex")]
        return [
            ValidationResult(
                field_name, False, rule.get("message", f"does not match pattern: {pattern}"), "regex"
            )
        ]

    def _validate_email(
        self, field_name: str, value: Any, rule: dict
    ) -> list[ValidationResult]:
        if not value:
            return []
        if EMAIL_PATTERN.match(str(value)):
            return [ValidationResult(field_name, True, "Valid email format", "email")]
        return [ValidationResult(field_name, False, "invalid email format", "email")]

    def _validate_phone(
        self, field_name: str, value: Any, rule: dict
    ) -> list[ValidationResult]:
        if not value:
            return []
        digits = re.sub(r"\D", "", str(value))
        if PHONE_PATTERN.match(digits[-10:]) and len(digits) in (10, 12):
            return [ValidationResult(field_name, True, "Valid phone format", "phone")]
        return [ValidationResult(field_name, False, "invalid phone number format", "phone")]

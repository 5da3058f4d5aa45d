"""Core data model for OCR-ingested documents.

``OCRData`` is the single mutable record per uploaded document. It is a
plain dataclass so repositories can round-trip it through JSON columns
and in-memory dictionaries alike.
"""

import copy
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class DocumentType(str, Enum):
    """Kinds of business document accepted for ingestion."""

    INVOICE = "invoice"
    INVOICE_PAYMENT = "invoice_payment"
    SALE_RECEIPT = "sale_receipt"


class OCRStatus(str, Enum):
    """Lifecycle states of an OCR record."""

    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    FAILED = "FAILED"


# Record-type -> attribute holding the linked record id.
LINK_ATTRIBUTES: dict[DocumentType, str] = {
    DocumentType.INVOICE: "invoice_id",
    DocumentType.INVOICE_PAYMENT: "invoice_payment_id",
    DocumentType.SALE_RECEIPT: "sale_receipt_id",
}


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class OCRData:
    """Per-document record tracking upload, extraction, review and linkage."""

    id: str
    user_id: str
    document_type: DocumentType
    image_url: str
    original_name: str
    file_size: int
    status: OCRStatus = OCRStatus.PROCESSING
    extracted_data: dict[str, Any] = field(default_factory=dict)
    processed_data: dict[str, Any] | None = None
    confidence: float = 0.0
    error_message: str | None = None
    invoice_id: str | None = None
    invoice_payment_id: str | None = None
    sale_receipt_id: str | None = None
    attempt: int = 1
    materialization_token: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def linked_record(self) -> tuple[DocumentType, str] | None:
        """Return ``(record_type, record_id)`` of the linked record, if any."""
        for record_type, attr in LINK_ATTRIBUTES.items():
            value = getattr(self, attr)
            if value:
                return record_type, value
        return None

    @property
    def is_linked(self) -> bool:
        return self.linked_record is not None

    def copy(self) -> "OCRData":
        """Deep copy, so callers never share mutable bags with storage."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible primitives."""
        data = asdict(self)
        data["document_type"] = self.document_type.value
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OCRData":
        """Build an instance from :meth:`to_dict` output."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["document_type"] = DocumentType(values["document_type"])
        values["status"] = OCRStatus(values.get("status", OCRStatus.PROCESSING))
        for key in ("created_at", "updated_at"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)

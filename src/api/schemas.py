"""Pydantic request/response schemas for the FastAPI endpoints."""

from typing import Any

from pydantic import BaseModel, Field

from src.models import DocumentType


class ReviewRequest(BaseModel):
    """Reviewer corrections for a document in manual review."""

    corrected_data: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None
    reviewer: str | None = None
    accept_duplicate: bool | None = None


class ApproveRequest(BaseModel):
    """Approval, optionally creating the financial record."""

    create_record: bool = False
    document_type: DocumentType | None = None
    approver: str | None = None


class RejectRequest(BaseModel):
    """Rejection with the reason shown to the uploader."""

    reason: str = Field(min_length=1)
    rejector: str | None = None


class UploadResponse(BaseModel):
    """Response schema for an accepted upload."""

    id: str
    status: str
    document_type: str
    original_name: str
    file_size: int


class ApprovalResponse(BaseModel):
    """Response schema for an approval."""

    ocr_data: dict[str, Any]
    created_record_id: str | None = None
    created_record_type: str | None = None
    voucher_id: str | None = None


class ErrorResponse(BaseModel):
    """Body returned for rejected requests."""

    error: str
    detail: str


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    engine: str
    tesseract_available: bool
    storage_backend: str

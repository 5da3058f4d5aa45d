"""FastAPI application for the document review pipeline.

Thin HTTP layer over :class:`ReviewService`: upload, inspection,
reviewer actions and analytics under ``/documents``, plus a health
check. The caller's identity arrives in the ``X-User-Id`` header.
"""

import shutil
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.errors import (
    DeletionConflictError,
    DocumentNotFoundError,
    DuplicateConflictError,
    InvalidTransitionError,
    MaterializationConflictError,
    MaterializationError,
    OCRWorkflowError,
    UploadValidationError,
)
from src.models import DocumentType, OCRStatus
from src.utils.config import load_config
from src.utils.logger import get_logger
from src.workflow.service import ReviewService, build_service

from .schemas import (
    ApprovalResponse,
    ApproveRequest,
    ErrorResponse,
    HealthResponse,
    RejectRequest,
    ReviewRequest,
    UploadResponse,
)

logger = get_logger(__name__)

VERSION = "1.0.0"

# Most specific first; the first matching class wins.
ERROR_STATUS: list[tuple[type[OCRWorkflowError], int]] = [
    (DocumentNotFoundError, 404),
    (InvalidTransitionError, 400),
    (UploadValidationError, 400),
    (DuplicateConflictError, 409),
    (MaterializationConflictError, 409),
    (DeletionConflictError, 409),
    (MaterializationError, 422),
]

app = FastAPI(
    title="Document OCR Review API",
    description="Upload, review and approve OCR-extracted invoices, payments and receipts",
    version=VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_service() -> ReviewService:
    """Build the shared service from the default configuration."""
    return build_service(load_config())


ServiceDep = Annotated[ReviewService, Depends(get_service)]
UserId = Annotated[str, Header(alias="X-User-Id")]


def status_for(exc: OCRWorkflowError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


@app.exception_handler(OCRWorkflowError)
async def workflow_error_handler(request: Request, exc: OCRWorkflowError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info("%s %s rejected (%d): %s", request.method, request.url.path, status_code, exc)
    body = ErrorResponse(error=exc.__class__.__name__, detail=str(exc))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Return system health status."""
    config = load_config()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        engine=config.ocr.engine,
        tesseract_available=shutil.which("tesseract") is not None,
        storage_backend=config.storage.backend,
    )


@app.post("/documents", response_model=UploadResponse, status_code=201)
async def upload_document(
    service: ServiceDep,
    user_id: UserId,
    file: Annotated[UploadFile, File(...)],
    document_type: Annotated[str, Form()],
) -> UploadResponse:
    """Accept a document upload and queue it for processing.

    Args:
        file: Uploaded document (PNG, JPEG, WEBP, TIFF or PDF).
        document_type: One of ``invoice``, ``invoice_payment``, ``sale_receipt``.

    Returns:
        The new record, in PROCESSING.
    """
    content = await file.read()
    record = service.upload(
        content,
        document_type,
        user_id,
        file.filename or "document",
        content_type=file.content_type,
    )
    return UploadResponse(
        id=record.id,
        status=record.status.value,
        document_type=record.document_type.value,
        original_name=record.original_name,
        file_size=record.file_size,
    )


@app.get("/documents")
async def list_documents(
    service: ServiceDep,
    user_id: UserId,
    status: Annotated[OCRStatus | None, Query()] = None,
    document_type: Annotated[DocumentType | None, Query()] = None,
    start_date: Annotated[datetime | None, Query()] = None,
    end_date: Annotated[datetime | None, Query()] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> dict[str, Any]:
    """List the caller's documents, newest first."""
    return service.list_documents(
        user_id,
        status=status,
        document_type=document_type,
        start=start_date,
        end=end_date,
        page=page,
        limit=limit,
    )


@app.get("/documents/analytics")
async def document_analytics(
    service: ServiceDep,
    user_id: UserId,
    start_date: Annotated[datetime | None, Query()] = None,
    end_date: Annotated[datetime | None, Query()] = None,
) -> dict[str, Any]:
    """Processing statistics; defaults to the current month."""
    return service.analytics(user_id, start=start_date, end=end_date)


@app.get("/documents/{ocr_id}")
async def get_document(service: ServiceDep, user_id: UserId, ocr_id: str) -> dict[str, Any]:
    """Return a document with its quality, duplicate and field diagnostics."""
    return service.status_view(ocr_id, user_id)


@app.post("/documents/{ocr_id}/review")
async def review_document(
    service: ServiceDep, user_id: UserId, ocr_id: str, body: ReviewRequest
) -> dict[str, Any]:
    """Apply reviewer corrections; the document stays in manual review."""
    record = service.review(
        ocr_id,
        body.corrected_data,
        notes=body.notes,
        reviewer=body.reviewer or user_id,
        accept_duplicate=body.accept_duplicate,
        user_id=user_id,
    )
    return record.to_dict()


@app.post("/documents/{ocr_id}/approve", response_model=ApprovalResponse)
async def approve_document(
    service: ServiceDep, user_id: UserId, ocr_id: str, body: ApproveRequest
) -> ApprovalResponse:
    """Approve a document, optionally creating its financial record."""
    result = service.approve(
        ocr_id,
        create_record=body.create_record,
        document_type=body.document_type,
        approver=body.approver or user_id,
        user_id=user_id,
    )
    created = result.created_record
    return ApprovalResponse(
        ocr_data=result.record.to_dict(),
        created_record_id=created.record_id if created else None,
        created_record_type=created.record_type.value if created else None,
        voucher_id=created.voucher_id if created else None,
    )


@app.post("/documents/{ocr_id}/reject")
async def reject_document(
    service: ServiceDep, user_id: UserId, ocr_id: str, body: RejectRequest
) -> dict[str, Any]:
    """Reject a document that has no financial record yet."""
    record = service.reject(ocr_id, body.reason, rejector=body.rejector or user_id, user_id=user_id)
    return record.to_dict()


@app.post("/documents/{ocr_id}/retry", status_code=202)
async def retry_document(service: ServiceDep, user_id: UserId, ocr_id: str) -> dict[str, Any]:
    """Send a failed document through processing again."""
    return service.retry(ocr_id, user_id=user_id).to_dict()


@app.delete("/documents/{ocr_id}", status_code=204)
async def delete_document(service: ServiceDep, user_id: UserId, ocr_id: str) -> None:
    """Delete an unlinked document and its stored file."""
    service.delete(ocr_id, user_id=user_id)

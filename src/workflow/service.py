"""Review workflow over OCR records.

:class:`ReviewService` is the single entry point used by the API and the
CLI. It owns upload validation, reviewer actions and analytics; the
automatic part of the lifecycle runs in :class:`DocumentPipeline` on the
background worker.

Reviewer actions on one document are serialized by a per-document lock
in this process, and every write is a conditional repository update, so
actions racing from other processes fail instead of overwriting.
"""

import math
import threading
import uuid
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from src.duplicates.detector import DuplicateDetector
from src.errors import (
    DeletionConflictError,
    DocumentNotFoundError,
    DuplicateConflictError,
    InvalidTransitionError,
    MaterializationConflictError,
    MaterializationError,
    UploadValidationError,
)
from src.events.notifier import EventKind, EventNotifier, EventSink, LoggingSink
from src.extraction.field_extractor import FieldExtractor
from src.models import DocumentType, OCRData, OCRStatus, as_utc, utcnow
from src.ocr.engine import OcrEngine, build_engine
from src.ocr.image_loader import ImageLoader
from src.quality.checker import QualityChecker
from src.records.ledger import InMemoryLedger, LedgerGateway
from src.records.materializer import MaterializedRecord, RecordMaterializer
from src.storage.files import FileStore, LocalFileStore
from src.storage.repository import InMemoryOCRDataRepository, OCRDataRepository
from src.storage.sqlite_repository import SQLiteOCRDataRepository
from src.utils.config import AppConfig
from src.utils.logger import get_logger
from src.validation.rules_engine import RulesEngine

from .pipeline import DocumentPipeline
from .state_machine import Action, allowed_from, next_status
from .worker import ProcessingWorker

logger = get_logger(__name__)


@dataclass
class ApprovalResult:
    """Outcome of an approval."""

    record: OCRData
    created_record: MaterializedRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        created = self.created_record
        return {
            "ocrData": self.record.to_dict(),
            "createdRecordId": created.record_id if created else None,
            "createdRecordType": created.record_type.value if created else None,
            "voucherId": created.voucher_id if created else None,
        }


def _summarize_fields(fields: list[dict], threshold: float, high: float) -> dict[str, Any]:
    valued = [f for f in fields if f.get("value") is not None]
    overall = sum(f["confidence"] for f in valued) / len(valued) if valued else 0.0
    return {
        "lowConfidenceFields": [f["field"] for f in fields if f["confidence"] < threshold],
        "invalidFields": [f["field"] for f in fields if f.get("validationErrors")],
        "highConfidenceFields": [f["field"] for f in fields if f["confidence"] >= high],
        "overallConfidence": round(overall, 4),
    }


def suggestions(record: OCRData) -> list[dict[str, Any]]:
    """Fields a reviewer should look at, with the reason they were flagged."""
    return [
        {
            "field": f["field"],
            "value": f.get("value"),
            "confidence": f.get("confidence"),
            "validationErrors": f.get("validationErrors", []),
            "alternatives": f.get("suggestions", []),
        }
        for f in record.extracted_data.get("fields", [])
        if f.get("needsReview")
    ]


class ReviewService:
    """Upload, inspection and reviewer actions for OCR documents.

    Args:
        repository: OCR record storage.
        file_store: Uploaded file storage.
        worker: Background pool running the processing pipeline.
        materializer: Creates financial records on approval.
        notifier: Lifecycle event publisher.
        config: Application configuration.
    """

    def __init__(
        self,
        repository: OCRDataRepository,
        file_store: FileStore,
        worker: ProcessingWorker,
        materializer: RecordMaterializer,
        notifier: EventNotifier,
        config: AppConfig | None = None,
    ) -> None:
        self.repository = repository
        self.file_store = file_store
        self.worker = worker
        self.materializer = materializer
        self.notifier = notifier
        self.config = config or AppConfig()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _document_lock(self, ocr_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(ocr_id, threading.Lock())
        with lock:
            yield

    def upload(
        self,
        file_bytes: bytes,
        document_type: str,
        user_id: str,
        original_name: str,
        content_type: str | None = None,
    ) -> OCRData:
        """Store an upload, create its record and queue processing.

        Returns:
            The new record, still PROCESSING.

        Raises:
            UploadValidationError: Empty file, oversized file, unsupported
                content type or unknown document type.
        """
        storage = self.config.storage
        if not file_bytes:
            raise UploadValidationError("No file uploaded")
        if len(file_bytes) > storage.max_file_size:
            limit_mb = storage.max_file_size / (1024 * 1024)
            raise UploadValidationError(f"File exceeds maximum size of {limit_mb:g} MB")
        if content_type and content_type not in storage.allowed_content_types:
            raise UploadValidationError(f"Unsupported file type: {content_type}")
        try:
            doc_type = DocumentType(document_type)
        except ValueError as exc:
            raise UploadValidationError(f"Invalid document type: {document_type}") from exc

        url = self.file_store.save(user_id, original_name, file_bytes)
        record = OCRData(
            id=str(uuid.uuid4()),
            user_id=user_id,
            document_type=doc_type,
            image_url=url,
            original_name=original_name,
            file_size=len(file_bytes),
        )
        self.repository.add(record)
        logger.info("Accepted %s upload %s (%d bytes)", doc_type.value, record.id, record.file_size)

        self.notifier.publish(
            EventKind.JOB_STARTED,
            record.id,
            user_id,
            documentType=doc_type.value,
            attempt=record.attempt,
        )
        self.worker.submit(record.id, record.attempt)
        return record

    def get(self, ocr_id: str, user_id: str | None = None) -> OCRData:
        """Return the record, scoped to ``user_id`` when given.

        Raises:
            DocumentNotFoundError: No such record for this owner.
        """
        record = self.repository.get(ocr_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            raise DocumentNotFoundError(f"OCR data not found: {ocr_id}")
        return record

    def status_view(self, ocr_id: str, user_id: str | None = None) -> dict[str, Any]:
        """Record plus the diagnostics a reviewer needs, in any status."""
        record = self.get(ocr_id, user_id)
        extracted = record.extracted_data
        return {
            **record.to_dict(),
            "qualityCheck": extracted.get("qualityCheck"),
            "duplicateCheck": extracted.get("duplicateCheck"),
            "fieldConfidence": extracted.get("fields", []),
            "lowConfidenceFields": extracted.get("lowConfidenceFields", []),
            "invalidFields": extracted.get("invalidFields", []),
            "suggestions": suggestions(record),
        }

    def list_documents(
        self,
        user_id: str,
        status: OCRStatus | str | None = None,
        document_type: DocumentType | str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        """Paginated listing with a per-document summary."""
        page = max(page, 1)
        limit = max(limit, 1)
        records, total = self.repository.query(
            user_id,
            status=OCRStatus(status) if status else None,
            document_type=DocumentType(document_type) if document_type else None,
            start=as_utc(start),
            end=as_utc(end),
            offset=(page - 1) * limit,
            limit=limit,
        )
        documents = []
        for record in records:
            extracted = record.extracted_data
            documents.append(
                {
                    **record.to_dict(),
                    "summary": {
                        "hasQualityIssues": bool(extracted.get("qualityCheck", {}).get("issues")),
                        "isDuplicate": bool(extracted.get("duplicateCheck", {}).get("isDuplicate")),
                        "hasValidationErrors": bool(extracted.get("invalidFields")),
                        "needsReview": record.status == OCRStatus.MANUAL_REVIEW
                        or bool(extracted.get("lowConfidenceFields")),
                    },
                }
            )
        return {
            "documents": documents,
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": math.ceil(total / limit),
            },
        }

    def review(
        self,
        ocr_id: str,
        corrected_data: dict[str, Any],
        notes: str | None = None,
        reviewer: str | None = None,
        accept_duplicate: bool | None = None,
        user_id: str | None = None,
    ) -> OCRData:
        """Merge reviewer corrections; the record stays in MANUAL_REVIEW.

        Raises:
            InvalidTransitionError: The record is not in MANUAL_REVIEW.
        """
        with self._document_lock(ocr_id):
            record = self.get(ocr_id, user_id)
            next_status(Action.REVIEW, record.status)

            processed = dict(record.processed_data or {})
            processed.update(corrected_data)

            extracted = dict(record.extracted_data)
            fields = [dict(f) for f in extracted.get("fields", [])]
            by_name = {f["field"]: f for f in fields}
            for name, value in corrected_data.items():
                entry = by_name.get(name)
                if entry is None:
                    entry = {"field": name}
                    fields.append(entry)
                entry.update(value=value, confidence=1.0, needsReview=False, validationErrors=[])
                entry.pop("warnings", None)
                entry.pop("suggestions", None)

            extraction = self.config.extraction
            summary = _summarize_fields(
                fields, extraction.review_threshold, extraction.high_confidence_threshold
            )
            extracted.update(summary)
            accepted = accept_duplicate
            if accepted is None:
                accepted = extracted.get("acceptedDuplicate", False)
            extracted.update(
                fields=fields,
                reviewedAt=utcnow().isoformat(),
                reviewedBy=reviewer or record.user_id,
                reviewNotes=notes,
                acceptedDuplicate=accepted,
            )

            applied = self.repository.update_if(
                ocr_id,
                allowed_from(Action.REVIEW),
                {
                    "extracted_data": extracted,
                    "processed_data": processed,
                    "confidence": summary["overallConfidence"],
                },
            )
            if not applied:
                raise InvalidTransitionError("OCR data changed during review; reload and retry")

        logger.info("Document %s reviewed (%d corrections)", ocr_id, len(corrected_data))
        self.notifier.publish(
            EventKind.DATA_REVIEWED,
            ocr_id,
            record.user_id,
            reviewedBy=reviewer or record.user_id,
            correctedFields=sorted(corrected_data),
            acceptedDuplicate=accepted,
        )
        return self.get(ocr_id)

    def approve(
        self,
        ocr_id: str,
        create_record: bool = False,
        document_type: DocumentType | str | None = None,
        approver: str | None = None,
        user_id: str | None = None,
    ) -> ApprovalResult:
        """Approve a document and optionally create its financial record.

        A record is created at most once: the repository claim fails for
        a document that is already linked or being materialized.

        Raises:
            InvalidTransitionError: Not in COMPLETED or MANUAL_REVIEW.
            DuplicateConflictError: Flagged duplicate not accepted in review.
            MaterializationConflictError: A record is already linked or in flight.
            MaterializationError: The record could not be created.
        """
        with self._document_lock(ocr_id):
            record = self.get(ocr_id, user_id)
            target = next_status(Action.APPROVE, record.status)

            if record.is_linked or record.materialization_token:
                raise MaterializationConflictError(
                    f"A financial record is already linked to OCR data {ocr_id}"
                )
            extracted = record.extracted_data
            if extracted.get("duplicateCheck", {}).get("isDuplicate") and not extracted.get(
                "acceptedDuplicate"
            ):
                raise DuplicateConflictError(
                    "Duplicate document detected. Please review and explicitly accept duplicate."
                )

            created = None
            if create_record:
                created = self._materialize(record, document_type)

            approved_by = approver or record.user_id
            applied = self.repository.update_if(
                ocr_id,
                allowed_from(Action.APPROVE),
                {
                    "status": target,
                    "extracted_data": {
                        **extracted,
                        "approvedAt": utcnow().isoformat(),
                        "approvedBy": approved_by,
                    },
                },
            )
            if not applied:
                raise InvalidTransitionError(f"OCR data {ocr_id} changed during approval")

        logger.info(
            "Document %s approved%s",
            ocr_id,
            f" as {created.record_type.value} {created.record_id}" if created else "",
        )
        self.notifier.publish(
            EventKind.DATA_APPROVED,
            ocr_id,
            record.user_id,
            approvedBy=approved_by,
            recordCreated=created is not None,
            createdRecordId=created.record_id if created else None,
            createdRecordType=created.record_type.value if created else None,
            voucherId=created.voucher_id if created else None,
        )
        return ApprovalResult(record=self.get(ocr_id), created_record=created)

    def _materialize(
        self, record: OCRData, document_type: DocumentType | str | None
    ) -> MaterializedRecord:
        if not record.processed_data:
            raise MaterializationError("No processed data available to create a record")
        record_type = DocumentType(document_type) if document_type else record.document_type

        token = uuid.uuid4().hex
        if not self.repository.claim_materialization(record.id, token):
            raise MaterializationConflictError(
                f"A financial record is already linked to OCR data {record.id}"
            )
        try:
            created = self.materializer.materialize(
                record.processed_data, record_type, record.user_id, record.id
            )
        except Exception:
            self.repository.release_materialization(record.id, token)
            raise

        if not self.repository.link_record(record.id, token, created.record_type, created.record_id):
            logger.error(
                "Created %s %s but could not link it to %s",
                created.record_type.value,
                created.record_id,
                record.id,
            )
            raise MaterializationConflictError(f"Lost materialization claim on {record.id}")
        return created

    def reject(
        self,
        ocr_id: str,
        reason: str,
        rejector: str | None = None,
        user_id: str | None = None,
    ) -> OCRData:
        """Move a reviewed or auto-approved document to FAILED.

        Raises:
            InvalidTransitionError: Wrong status, or a record is linked.
        """
        with self._document_lock(ocr_id):
            record = self.get(ocr_id, user_id)
            target = next_status(Action.REJECT, record.status)
            if record.is_linked or record.materialization_token:
                raise InvalidTransitionError(
                    "Cannot reject OCR data linked to a financial record"
                )
            applied = self.repository.update_if(
                ocr_id,
                allowed_from(Action.REJECT),
                {"status": target, "error_message": reason},
                require_unlinked=True,
            )
            if not applied:
                raise InvalidTransitionError(f"OCR data {ocr_id} changed during rejection")

        logger.info("Document %s rejected: %s", ocr_id, reason)
        self.notifier.publish(
            EventKind.DATA_REJECTED,
            ocr_id,
            record.user_id,
            rejectedBy=rejector or record.user_id,
            reason=reason,
        )
        return self.get(ocr_id)

    def retry(self, ocr_id: str, user_id: str | None = None) -> OCRData:
        """Send a FAILED document through the pipeline again.

        Raises:
            InvalidTransitionError: The record is not FAILED.
        """
        with self._document_lock(ocr_id):
            record = self.get(ocr_id, user_id)
            target = next_status(Action.RETRY, record.status)
            attempt = record.attempt + 1
            applied = self.repository.update_if(
                ocr_id,
                allowed_from(Action.RETRY),
                {"status": target, "error_message": None, "attempt": attempt},
                expected_attempt=record.attempt,
            )
            if not applied:
                raise InvalidTransitionError(f"OCR data {ocr_id} changed before retry")
            queued = self.get(ocr_id)

        logger.info("Retrying %s (attempt %d)", ocr_id, attempt)
        self.notifier.publish(
            EventKind.JOB_STARTED,
            ocr_id,
            record.user_id,
            documentType=record.document_type.value,
            attempt=attempt,
        )
        self.worker.submit(ocr_id, attempt)
        return queued

    def delete(self, ocr_id: str, user_id: str | None = None) -> None:
        """Remove an unlinked record and its stored file.

        Raises:
            DeletionConflictError: A financial record is linked or being created.
        """
        with self._document_lock(ocr_id):
            record = self.get(ocr_id, user_id)
            if record.is_linked:
                raise DeletionConflictError(
                    "Cannot delete OCR data linked to a financial record"
                )
            if not self.repository.delete_if_unlinked(ocr_id):
                raise DeletionConflictError(
                    f"OCR data {ocr_id} is being materialized and cannot be deleted"
                )
        self.file_store.delete(record.image_url)
        logger.info("Deleted OCR data %s", ocr_id)

    def analytics(
        self,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        """Processing statistics for one owner over a period.

        Defaults to the current calendar month up to now.
        """
        now = utcnow()
        start = as_utc(start) or now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        end = as_utc(end) or now
        records, total = self.repository.query(user_id, start=start, end=end)

        completed = [r for r in records if r.status == OCRStatus.COMPLETED]
        avg_confidence = (
            sum(r.confidence for r in completed) / len(completed) if completed else 0.0
        )
        avg_seconds = (
            sum((r.updated_at - r.created_at).total_seconds() for r in completed) / len(completed)
            if completed
            else 0.0
        )
        return {
            "period": {"startDate": start.isoformat(), "endDate": end.isoformat()},
            "summary": {
                "totalDocuments": total,
                "averageConfidence": round(avg_confidence, 4),
                "averageProcessingTime": round(avg_seconds),
                "qualityIssuesDetected": sum(
                    1
                    for r in records
                    if r.extracted_data.get("qualityCheck", {}).get("isGoodQuality") is False
                ),
                "duplicatesDetected": sum(
                    1 for r in records if r.extracted_data.get("duplicateCheck", {}).get("isDuplicate")
                ),
                "validationFailures": sum(
                    1 for r in records if r.extracted_data.get("invalidFields")
                ),
                "statusBreakdown": dict(Counter(r.status.value for r in records)),
            },
        }

    def close(self) -> None:
        self.worker.shutdown(wait=True)


def build_service(
    config: AppConfig,
    ledger: LedgerGateway | None = None,
    sink: EventSink | None = None,
    engine: OcrEngine | None = None,
    repository: OCRDataRepository | None = None,
    file_store: FileStore | None = None,
) -> ReviewService:
    """Wire a :class:`ReviewService` from configuration.

    Any collaborator passed in replaces the one built from ``config``.
    """
    if repository is None:
        if config.storage.backend == "sqlite":
            repository = SQLiteOCRDataRepository(config.storage.db_path)
        elif config.storage.backend == "memory":
            repository = InMemoryOCRDataRepository()
        else:
            raise ValueError(f"Unknown storage backend: {config.storage.backend}")
    file_store = file_store or LocalFileStore(config.storage.upload_dir)
    ledger = ledger or InMemoryLedger()
    notifier = EventNotifier(sink if sink is not None else LoggingSink())

    rules_engine = RulesEngine(
        rules_path=config.validation.rules_path,
        max_document_age_years=config.extraction.max_document_age_years,
    )
    pipeline = DocumentPipeline(
        repository=repository,
        file_store=file_store,
        engine=engine or build_engine(config.ocr),
        loader=ImageLoader(dpi=config.ocr.pdf_dpi),
        quality_checker=QualityChecker(config.quality),
        extractor=FieldExtractor(config.extraction, rules_engine=rules_engine),
        duplicate_detector=DuplicateDetector(repository, config.duplicates),
        ledger=ledger,
        notifier=notifier,
    )
    worker = ProcessingWorker(pipeline.run, max_workers=config.workers.max_workers)
    logger.info(
        "Review service ready (storage=%s, engine=%s, workers=%d)",
        config.storage.backend,
        config.ocr.engine,
        config.workers.max_workers,
    )
    return ReviewService(
        repository=repository,
        file_store=file_store,
        worker=worker,
        materializer=RecordMaterializer(ledger),
        notifier=notifier,
        config=config,
    )

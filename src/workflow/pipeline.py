"""Sequential processing of one uploaded document.

Loads the stored file, runs OCR on every page, checks image quality,
extracts and validates fields, looks for duplicates, and routes the
record to COMPLETED, MANUAL_REVIEW or FAILED. Each run is bound to the
attempt it was started for; its final write is conditional on that
attempt, so a stale run never overwrites a retried document.
"""

from dataclasses import dataclass
from typing import Any

from src.duplicates.detector import DuplicateDetector
from src.events.notifier import EventKind, EventNotifier
from src.extraction.field_extractor import FieldExtractor
from src.models import DocumentType, OCRData, OCRStatus
from src.ocr.engine import OCRLine, OCRResult, OcrEngine
from src.ocr.image_loader import ImageLoader
from src.quality.checker import QualityChecker
from src.records.ledger import LedgerGateway
from src.storage.files import FileStore
from src.storage.repository import OCRDataRepository
from src.utils.logger import get_logger

from .state_machine import Action, next_status, route

logger = get_logger(__name__)


@dataclass
class PageResult:
    """OCR output for a single document page."""

    page_number: int
    ocr_result: OCRResult


def merge_pages(pages: list[PageResult]) -> OCRResult:
    """Combine per-page OCR results into one document-level result."""
    if len(pages) == 1:
        return pages[0].ocr_result

    lines: list[OCRLine] = []
    for page in pages:
        lines.extend(page.ocr_result.lines)
    weights = [max(len(p.ocr_result.lines), 1) for p in pages]
    confidence = sum(
        p.ocr_result.confidence * w for p, w in zip(pages, weights)
    ) / sum(weights)
    return OCRResult(
        text="\n\n".join(p.ocr_result.text for p in pages),
        lines=lines,
        confidence=confidence,
        engine=pages[0].ocr_result.engine,
        language=pages[0].ocr_result.language,
    )


class DocumentPipeline:
    """End-to-end processing of a stored upload.

    Args:
        repository: OCR record storage.
        file_store: Source of the uploaded bytes.
        engine: OCR backend chosen at start-up.
        loader: Decoder for PDFs and images.
        quality_checker: Image usability scorer.
        extractor: Field extractor and validator.
        duplicate_detector: Duplicate scorer over recent records.
        ledger: Source of known party and customer names.
        notifier: Lifecycle event publisher.
    """

    def __init__(
        self,
        repository: OCRDataRepository,
        file_store: FileStore,
        engine: OcrEngine,
        loader: ImageLoader,
        quality_checker: QualityChecker,
        extractor: FieldExtractor,
        duplicate_detector: DuplicateDetector,
        ledger: LedgerGateway | None,
        notifier: EventNotifier,
    ) -> None:
        self.repository = repository
        self.file_store = file_store
        self.engine = engine
        self.loader = loader
        self.quality_checker = quality_checker
        self.extractor = extractor
        self.duplicate_detector = duplicate_detector
        self.ledger = ledger
        self.notifier = notifier

    def run(self, ocr_id: str, attempt: int) -> OCRStatus | None:
        """Process one document for the given attempt.

        Returns:
            The status the run left the record in, or ``None`` when the
            run was stale (record deleted, retried, or not processing).

        Raises:
            Exception: Any processing failure, after the record has been
                marked FAILED, so the worker future observes it.
        """
        record = self.repository.get(ocr_id)
        if record is None:
            logger.warning("OCR record %s disappeared before processing", ocr_id)
            return None
        if record.status != OCRStatus.PROCESSING or record.attempt != attempt:
            logger.warning(
                "Skipping stale run of %s (attempt %d, record at attempt %d, %s)",
                ocr_id,
                attempt,
                record.attempt,
                record.status.value,
            )
            return None

        logger.info("Processing %s (%s, attempt %d)", ocr_id, record.document_type.value, attempt)
        try:
            return self._process(record, attempt)
        except Exception as exc:
            self._fail(record, attempt, exc)
            raise

    def _process(self, record: OCRData, attempt: int) -> OCRStatus | None:
        data = self.file_store.read(record.image_url)
        images = self.loader.load(data, record.original_name)

        pages = [
            PageResult(page_number=i + 1, ocr_result=self.engine.recognize(image))
            for i, image in enumerate(images)
        ]
        ocr = merge_pages(pages)
        quality = self.quality_checker.check(images[0], pages[0].ocr_result.text)

        extraction = self.extractor.extract(
            ocr, record.document_type.value, known_names=self._known_names(record)
        )
        values = extraction.values()
        duplicate = self.duplicate_detector.check(record, values)

        action, reasons = route(
            fields_need_review=extraction.needs_review,
            is_duplicate=duplicate.is_duplicate,
            has_quality_issues=bool(quality.issues),
        )
        status = next_status(action, OCRStatus.PROCESSING)

        extracted_data: dict[str, Any] = {
            "rawText": ocr.text,
            "engine": ocr.engine,
            "engineConfidence": round(ocr.confidence, 4),
            "pageCount": len(pages),
            "qualityCheck": quality.to_dict(),
            "duplicateCheck": duplicate.to_dict(),
            **extraction.to_dict(),
            "routingReasons": reasons,
        }
        applied = self.repository.update_if(
            record.id,
            [OCRStatus.PROCESSING],
            {
                "status": status,
                "extracted_data": extracted_data,
                "processed_data": values,
                "confidence": extraction.overall_confidence,
                "error_message": None,
            },
            expected_attempt=attempt,
        )
        if not applied:
            logger.warning("Discarding result of stale run for %s (attempt %d)", record.id, attempt)
            return None

        if reasons:
            logger.warning("Document %s needs manual review: %s", record.id, ", ".join(reasons))
        logger.info(
            "Document %s -> %s (confidence %.2f)",
            record.id,
            status.value,
            extraction.overall_confidence,
        )
        self.notifier.publish(
            EventKind.JOB_COMPLETED,
            record.id,
            record.user_id,
            status=status.value,
            confidence=round(extraction.overall_confidence, 4),
        )
        if status == OCRStatus.MANUAL_REVIEW:
            self.notifier.publish(
                EventKind.MANUAL_REVIEW_REQUIRED,
                record.id,
                record.user_id,
                reasons=reasons,
                lowConfidenceFields=extraction.low_confidence_fields,
                invalidFields=extraction.invalid_fields,
            )
        return status

    def _known_names(self, record: OCRData) -> list[str] | None:
        if self.ledger is None:
            return None
        if record.document_type == DocumentType.SALE_RECEIPT:
            names = self.ledger.customer_names(record.user_id)
        else:
            names = self.ledger.party_names(record.user_id)
        return names or None

    def _fail(self, record: OCRData, attempt: int, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        logger.error("Processing of %s failed: %s", record.id, message)
        applied = self.repository.update_if(
            record.id,
            [OCRStatus.PROCESSING],
            {"status": next_status(Action.FAIL, OCRStatus.PROCESSING), "error_message": message},
            expected_attempt=attempt,
        )
        if applied:
            self.notifier.publish(
                EventKind.JOB_FAILED,
                record.id,
                record.user_id,
                reason=message,
            )

"""End-to-end tests for the review service over the real pipeline."""

import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import PARTY, USER, ScriptedEngine, invoice_text
from src.errors import (
    DeletionConflictError,
    DocumentNotFoundError,
    DuplicateConflictError,
    InvalidTransitionError,
    MaterializationConflictError,
    MaterializationError,
    OCREngineError,
    UploadValidationError,
)
from src.events.notifier import EventSink
from src.models import DocumentType, OCRStatus, utcnow
from src.records.ledger import InMemoryLedger
from src.workflow.service import build_service


def _field(record, name: str) -> dict:
    return next(f for f in record.extracted_data["fields"] if f["field"] == name)


class TestAutomaticRouting:
    """Pipeline outcomes after upload."""

    def test_clean_invoice_completes(self, service, process, sink) -> None:
        record = service.get(process())

        assert record.status == OCRStatus.COMPLETED
        assert record.extracted_data["duplicateCheck"]["isDuplicate"] is False
        assert record.extracted_data["lowConfidenceFields"] == []
        assert record.extracted_data["invalidFields"] == []
        assert all(f["confidence"] >= 0.75 for f in record.extracted_data["fields"])
        assert record.processed_data["invoice_no"] == "INV-2024-001"
        assert record.processed_data["amount"] == 12500.0
        assert record.processed_data["party_name"] == PARTY
        assert record.error_message is None
        assert sink.kinds() == ["job_started", "job_completed"]

    def test_upload_returns_processing_record(self, service, clean_page_png) -> None:
        record = service.upload(clean_page_png, "invoice", USER, "a.png", "image/png")
        assert record.status == OCRStatus.PROCESSING
        assert record.attempt == 1
        service.worker.wait_all()

    def test_misread_amount_routes_to_review(self, service, process, engine, sink) -> None:
        engine.text = invoice_text(amount="12,34O.00")
        record = service.get(process())

        assert record.status == OCRStatus.MANUAL_REVIEW
        assert "amount" in record.extracted_data["invalidFields"]
        amount = _field(record, "amount")
        assert amount["value"] == "12,34O.00"
        assert "amount is not a valid number" in amount["validationErrors"]
        assert record.extracted_data["routingReasons"] == ["fields_need_review"]
        assert sink.kinds()[-1] == "manual_review_required"

    def test_missing_required_field_routes_to_review(self, service, process, engine) -> None:
        engine.text = "\n".join(line for line in invoice_text().split("\n") if "Invoice" not in line)
        record = service.get(process())

        number = _field(record, "invoice_no")
        assert record.status == OCRStatus.MANUAL_REVIEW
        assert number["value"] is None
        assert number["confidence"] == 0.0
        assert "required field missing" in number["validationErrors"]

    def test_low_engine_confidence_routes_to_review(self, service, process, engine) -> None:
        engine.confidence = 0.5
        record = service.get(process())

        assert record.status == OCRStatus.MANUAL_REVIEW
        assert "amount" in record.extracted_data["lowConfidenceFields"]

    def test_second_similar_document_is_duplicate(self, service, process, engine) -> None:
        first = process()
        engine.text = invoice_text(number="INV-2024-002")
        second = service.get(process())

        check = second.extracted_data["duplicateCheck"]
        assert second.status == OCRStatus.MANUAL_REVIEW
        assert check["isDuplicate"] is True
        assert check["matchedId"] == first
        assert check["score"] >= 0.85
        assert "duplicate" in second.extracted_data["routingReasons"]

    def test_same_party_amount_and_date_is_duplicate(self, service, process, engine) -> None:
        first = process()
        engine.text = invoice_text(number="BILL-77")
        second = service.get(process())

        check = second.extracted_data["duplicateCheck"]
        assert second.status == OCRStatus.MANUAL_REVIEW
        assert check["isDuplicate"] is True
        assert check["matchedId"] == first
        assert check["score"] == 0.9

    def test_other_owner_is_not_a_duplicate(self, service, process) -> None:
        process()
        other = service.get(process(user_id="user-2"))
        assert other.extracted_data["duplicateCheck"]["isDuplicate"] is False

    def test_poor_image_routes_to_review(self, service, process, poor_page_png) -> None:
        record = service.get(process(poor_page_png))

        quality = record.extracted_data["qualityCheck"]
        assert record.status == OCRStatus.MANUAL_REVIEW
        assert quality["isGoodQuality"] is False
        assert "Resolution too low" in quality["issues"]
        assert record.extracted_data["routingReasons"] == ["quality"]

    def test_undecodable_file_fails(self, service, sink) -> None:
        record = service.upload(b"not an image", "invoice", USER, "x.png", "application/octet-stream")
        service.worker.wait_all()

        failed = service.get(record.id)
        assert failed.status == OCRStatus.FAILED
        assert "Could not decode" in failed.error_message
        assert sink.kinds()[-1] == "job_failed"
        assert sink.messages[-1]["body"]["payload"]["reason"] == failed.error_message

    def test_engine_error_fails(self, service, process, engine) -> None:
        engine.error = OCREngineError("engine unavailable")
        record = service.get(process())

        assert record.status == OCRStatus.FAILED
        assert record.error_message == "engine unavailable"

    def test_sink_failure_does_not_fail_processing(
        self, app_config, ledger, engine, clean_page_png
    ) -> None:
        broken = MagicMock(spec=EventSink)
        broken.send.side_effect = ConnectionError("broker down")
        svc = build_service(app_config, ledger=ledger, sink=broken, engine=engine)
        try:
            record = svc.upload(clean_page_png, "invoice", USER, "a.png", "image/png")
            svc.worker.wait_all()
            assert svc.get(record.id).status == OCRStatus.COMPLETED
            assert broken.send.call_count == 2
        finally:
            svc.close()


class TestUploadValidation:
    """Uploads rejected before anything is stored."""

    def test_empty_file(self, service) -> None:
        with pytest.raises(UploadValidationError, match="No file uploaded"):
            service.upload(b"", "invoice", USER, "a.png")

    def test_oversized_file(self, service, app_config) -> None:
        app_config.storage.max_file_size = 10
        with pytest.raises(UploadValidationError, match="maximum size"):
            service.upload(b"x" * 11, "invoice", USER, "a.png")

    def test_unsupported_content_type(self, service) -> None:
        with pytest.raises(UploadValidationError, match="Unsupported file type"):
            service.upload(b"data", "invoice", USER, "a.txt", content_type="text/plain")

    def test_unknown_document_type(self, service) -> None:
        with pytest.raises(UploadValidationError, match="Invalid document type"):
            service.upload(b"data", "credit_note", USER, "a.png")

    def test_nothing_stored_on_rejection(self, service, app_config) -> None:
        with pytest.raises(UploadValidationError):
            service.upload(b"data", "credit_note", USER, "a.png")
        assert not Path(app_config.storage.upload_dir).exists()
        assert service.repository.query(USER)[1] == 0


class TestReview:
    """Reviewer corrections."""

    def test_review_merges_corrections(self, service, process, engine, sink) -> None:
        engine.text = invoice_text(amount="12,34O.00")
        ocr_id = process()

        record = service.review(ocr_id, {"amount": 12340.0}, notes="fixed O", reviewer="rev-1")

        amount = _field(record, "amount")
        assert record.status == OCRStatus.MANUAL_REVIEW
        assert record.processed_data["amount"] == 12340.0
        assert record.processed_data["invoice_no"] == "INV-2024-001"
        assert amount["confidence"] == 1.0
        assert amount["needsReview"] is False
        assert amount["validationErrors"] == []
        assert "amount" not in record.extracted_data["invalidFields"]
        assert record.extracted_data["reviewedBy"] == "rev-1"
        assert record.extracted_data["reviewNotes"] == "fixed O"
        assert record.extracted_data["reviewedAt"]
        assert sink.kinds()[-1] == "data_reviewed"

    def test_review_adds_new_field(self, service, process, engine) -> None:
        engine.text = invoice_text(amount="12,34O.00")
        ocr_id = process()

        record = service.review(ocr_id, {"notes_field": "extra"})
        assert _field(record, "notes_field")["value"] == "extra"
        assert record.processed_data["notes_field"] == "extra"

    def test_review_only_from_manual_review(self, service, process) -> None:
        ocr_id = process()
        with pytest.raises(InvalidTransitionError, match="not ready for review"):
            service.review(ocr_id, {"amount": 1.0})

    def test_status_view_lists_suggestions(self, service, process, engine) -> None:
        engine.text = invoice_text(amount="12,34O.00")
        view = service.status_view(process())

        suggested = {s["field"]: s for s in view["suggestions"]}
        assert "amount" in suggested
        assert suggested["amount"]["validationErrors"]
        assert view["qualityCheck"]["isGoodQuality"] is True
        assert view["invalidFields"] == ["amount"]

    def test_status_view_on_failed_record(self, service, process, engine) -> None:
        engine.error = OCREngineError("engine unavailable")
        view = service.status_view(process())
        assert view["status"] == "FAILED"
        assert view["error_message"] == "engine unavailable"
        assert view["suggestions"] == []


class TestApproval:
    """Approval guards and record creation."""

    def test_approve_completed_without_record(self, service, process, ledger, sink) -> None:
        result = service.approve(process(), approver="boss")

        assert result.record.status == OCRStatus.COMPLETED
        assert result.created_record is None
        assert result.record.extracted_data["approvedBy"] == "boss"
        assert ledger.count() == 0
        assert sink.kinds()[-1] == "data_approved"

    def test_approve_creates_exactly_one_record(self, service, process, ledger, sink) -> None:
        ocr_id = process()
        result = service.approve(ocr_id, create_record=True)

        created = result.created_record
        assert created.record_type == DocumentType.INVOICE
        assert created.voucher_id.startswith("INVOICE-SHARMATRADERS-")
        assert result.record.invoice_id == created.record_id
        assert result.record.materialization_token is None
        assert ledger.count(DocumentType.INVOICE) == 1
        stored = ledger.records[DocumentType.INVOICE][created.record_id]
        assert stored["status"] == "PENDING"
        assert stored["remaining_amount"] == 12500.0
        assert stored["ocr_id"] == ocr_id
        assert sink.messages[-1]["body"]["payload"]["createdRecordId"] == created.record_id

        with pytest.raises(MaterializationConflictError):
            service.approve(ocr_id, create_record=True)
        assert ledger.count() == 1

    def test_concurrent_approvals_create_one_record(self, service, process, ledger) -> None:
        ocr_id = process()
        errors: list[Exception] = []

        def approve() -> None:
            try:
                service.approve(ocr_id, create_record=True)
            except MaterializationConflictError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=approve) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.count() == 1
        assert len(errors) == 4

    def test_duplicate_blocks_approval(self, service, process, engine, ledger) -> None:
        process()
        engine.text = invoice_text(number="INV-2024-002")
        duplicate = process()

        with pytest.raises(DuplicateConflictError, match="explicitly accept duplicate"):
            service.approve(duplicate, create_record=True)
        assert ledger.count() == 0
        assert service.get(duplicate).status == OCRStatus.MANUAL_REVIEW

    def test_accepted_duplicate_can_be_approved(self, service, process, engine, ledger) -> None:
        process()
        engine.text = invoice_text(number="INV-2024-002")
        duplicate = process()

        service.review(duplicate, {}, accept_duplicate=True)
        result = service.approve(duplicate, create_record=True)

        assert result.record.status == OCRStatus.COMPLETED
        assert ledger.count() == 1

    def test_later_review_keeps_duplicate_acceptance(self, service, process, engine, ledger) -> None:
        process()
        engine.text = invoice_text(number="INV-2024-002")
        duplicate = process()

        service.review(duplicate, {}, accept_duplicate=True)
        record = service.review(duplicate, {"amount": 12500.0}, notes="second pass")
        assert record.extracted_data["acceptedDuplicate"] is True

        service.approve(duplicate, create_record=True)
        assert ledger.count() == 1

    def test_review_can_withdraw_duplicate_acceptance(self, service, process, engine) -> None:
        process()
        engine.text = invoice_text(number="INV-2024-002")
        duplicate = process()

        service.review(duplicate, {}, accept_duplicate=True)
        service.review(duplicate, {}, accept_duplicate=False)

        with pytest.raises(DuplicateConflictError):
            service.approve(duplicate, create_record=True)

    def test_failed_materialization_leaves_record_untouched(
        self, app_config, sink, engine, clean_page_png
    ) -> None:
        svc = build_service(app_config, ledger=InMemoryLedger(), sink=sink, engine=engine)
        try:
            record = svc.upload(clean_page_png, "invoice", USER, "a.png", "image/png")
            svc.worker.wait_all()
            with pytest.raises(MaterializationError, match="Party not found"):
                svc.approve(record.id, create_record=True)

            after = svc.get(record.id)
            assert after.status == OCRStatus.COMPLETED
            assert after.materialization_token is None
            assert not after.is_linked
            assert "approvedAt" not in after.extracted_data
        finally:
            svc.close()

    def test_approve_failed_record_rejected(self, service, process, engine) -> None:
        engine.error = OCREngineError("engine unavailable")
        with pytest.raises(InvalidTransitionError):
            service.approve(process())


class TestRejectRetryDelete:
    """Reject, retry and delete."""

    def test_reject_keeps_data(self, service, process, engine, sink) -> None:
        engine.text = invoice_text(amount="12,34O.00")
        ocr_id = process()

        record = service.reject(ocr_id, "unreadable scan", rejector="rev-1")
        assert record.status == OCRStatus.FAILED
        assert record.error_message == "unreadable scan"
        assert record.extracted_data["fields"]
        assert sink.kinds()[-1] == "data_rejected"

    def test_reject_auto_approved_record(self, service, process) -> None:
        record = service.reject(process(), "wrong vendor")
        assert record.status == OCRStatus.FAILED

    def test_reject_linked_record_refused(self, service, process) -> None:
        ocr_id = process()
        service.approve(ocr_id, create_record=True)
        with pytest.raises(InvalidTransitionError, match="linked"):
            service.reject(ocr_id, "too late")
        assert service.get(ocr_id).status == OCRStatus.COMPLETED

    def test_retry_after_engine_failure(self, service, process, engine, sink) -> None:
        engine.error = OCREngineError("engine unavailable")
        ocr_id = process()
        engine.error = None

        queued = service.retry(ocr_id)
        assert queued.status == OCRStatus.PROCESSING
        assert queued.error_message is None
        assert queued.attempt == 2

        service.worker.wait_all()
        record = service.get(ocr_id)
        assert record.status == OCRStatus.COMPLETED
        assert sink.kinds().count("job_started") == 2

    def test_retry_after_decode_failure_fails_again(self, service) -> None:
        record = service.upload(b"garbage", "invoice", USER, "x.png")
        service.worker.wait_all()

        assert service.retry(record.id).status == OCRStatus.PROCESSING
        service.worker.wait_all()
        again = service.get(record.id)
        assert again.status == OCRStatus.FAILED
        assert again.attempt == 2
        assert again.error_message

    @pytest.mark.parametrize("amount", ["12,500.00", "12,34O.00"])
    def test_retry_only_from_failed(self, service, process, engine, amount) -> None:
        engine.text = invoice_text(amount=amount)
        ocr_id = process()
        with pytest.raises(InvalidTransitionError, match="Can only retry failed"):
            service.retry(ocr_id)

    def test_delete_unlinked_removes_row_and_file(self, service, process) -> None:
        ocr_id = process()
        url = service.get(ocr_id).image_url
        assert Path(url).exists()

        service.delete(ocr_id)

        assert not Path(url).exists()
        with pytest.raises(DocumentNotFoundError):
            service.get(ocr_id)

    def test_delete_linked_refused(self, service, process) -> None:
        ocr_id = process()
        service.approve(ocr_id, create_record=True)
        url = service.get(ocr_id).image_url

        with pytest.raises(DeletionConflictError):
            service.delete(ocr_id)
        assert service.get(ocr_id).is_linked
        assert Path(url).exists()

    def test_unknown_document(self, service) -> None:
        with pytest.raises(DocumentNotFoundError, match="OCR data not found"):
            service.retry("missing")

    def test_other_owner_cannot_see_document(self, service, process) -> None:
        ocr_id = process()
        with pytest.raises(DocumentNotFoundError):
            service.get(ocr_id, user_id="user-2")


class TestListingAndAnalytics:
    """Listing, pagination and statistics."""

    def test_list_documents_paginates(self, service, process, engine) -> None:
        for i in range(3):
            engine.text = invoice_text(number=f"A-{i}", amount=f"{100 + i * 500}.00", party=f"Vendor {i}")
            process()

        listing = service.list_documents(USER, page=1, limit=2)
        assert listing["pagination"] == {"total": 3, "page": 1, "limit": 2, "pages": 2}
        assert len(listing["documents"]) == 2
        assert "summary" in listing["documents"][0]

        second = service.list_documents(USER, page=2, limit=2)
        assert len(second["documents"]) == 1

    def test_list_documents_filters_by_status(self, service, process, engine) -> None:
        process()
        engine.error = OCREngineError("down")
        process()

        failed = service.list_documents(USER, status="FAILED")
        assert failed["pagination"]["total"] == 1
        assert failed["documents"][0]["status"] == "FAILED"

    def test_analytics(self, service, process, engine, poor_page_png) -> None:
        process()
        engine.text = invoice_text(number="INV-2024-002")
        process()
        engine.text = invoice_text(number="B-1", amount="9,99O.00", party="Other Co")
        process(poor_page_png)

        summary = service.analytics(USER)["summary"]
        assert summary["totalDocuments"] == 3
        assert summary["statusBreakdown"] == {"COMPLETED": 1, "MANUAL_REVIEW": 2}
        assert summary["duplicatesDetected"] == 1
        assert summary["qualityIssuesDetected"] == 1
        assert summary["validationFailures"] == 1
        assert 0 < summary["averageConfidence"] <= 1

    def test_analytics_period_excludes_older_documents(self, service, process) -> None:
        process()
        start = utcnow() + timedelta(minutes=1)
        summary = service.analytics(USER, start=start)["summary"]
        assert summary["totalDocuments"] == 0
        assert summary["averageConfidence"] == 0.0

    def test_naive_dates_are_read_as_utc(self, service, process) -> None:
        process()
        naive_start = utcnow().replace(tzinfo=None) - timedelta(hours=1)

        assert service.list_documents(USER, start=naive_start)["pagination"]["total"] == 1
        assert service.list_documents(USER, end=naive_start)["pagination"]["total"] == 0
        assert service.analytics(USER, start=naive_start)["summary"]["totalDocuments"] == 1


class TestSqliteBackend:
    """The same flow persisted in SQLite."""

    def test_full_flow(self, app_config, ledger, sink, clean_page_png, tmp_path) -> None:
        app_config.storage.backend = "sqlite"
        app_config.storage.db_path = str(tmp_path / "ocr.db")
        svc = build_service(app_config, ledger=ledger, sink=sink, engine=ScriptedEngine(invoice_text()))
        try:
            record = svc.upload(clean_page_png, "invoice", USER, "a.png", "image/png")
            svc.worker.wait_all()
            assert svc.get(record.id).status == OCRStatus.COMPLETED

            result = svc.approve(record.id, create_record=True)
            assert result.record.invoice_id == result.created_record.record_id
            with pytest.raises(MaterializationConflictError):
                svc.approve(record.id, create_record=True)
            with pytest.raises(DeletionConflictError):
                svc.delete(record.id)
        finally:
            svc.close()

    def test_unknown_backend(self, app_config) -> None:
        app_config.storage.backend = "postgres"
        with pytest.raises(ValueError, match="Unknown storage backend"):
            build_service(app_config, engine=ScriptedEngine())

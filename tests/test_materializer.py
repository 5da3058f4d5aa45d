"""Tests for the ledger boundary and record materialization."""

import re
from datetime import date

import pytest

from src.errors import MaterializationError
from src.models import DocumentType
from src.records.ledger import InMemoryLedger, generate_voucher_id, sanitize_name
from src.records.materializer import RecordMaterializer


class TestVoucherIds:
    """Tests for voucher id generation."""

    def test_sanitize_name(self) -> None:
        assert sanitize_name(" Rajlaxmi Sarees & Co. ") == "RAJLAXMISAREESCO"

    def test_fixed_date_and_sequence(self) -> None:
        voucher = generate_voucher_id("INVOICE", "Rajlaxmi Sarees", date(2025, 6, 22), 2020)
        assert voucher == "INVOICE-RAJLAXMISAREES-22/6/25-2020"

    def test_random_sequence(self) -> None:
        voucher = generate_voucher_id("SALE_RECEIPT", "Priya", date(2024, 1, 5))
        assert re.fullmatch(r"SALE_RECEIPT-PRIYA-5/1/24-\d{4}", voucher)
        assert 1000 <= int(voucher.rsplit("-", 1)[1]) <= 9999


class TestInMemoryLedger:
    """Tests for the InMemoryLedger lookups."""

    def setup_method(self) -> None:
        self.ledger = InMemoryLedger()
        self.sharma = self.ledger.add_party("user-1", "Sharma Traders", "27AAPFU0939F1ZV")
        self.ledger.add_party("user-2", "Sharma Traders")
        self.ledger.add_customer("user-1", "Priya Mehta")

    def test_find_party_by_gst_first(self) -> None:
        found = self.ledger.find_party("user-1", "Unrelated", "27aapfu0939f1zv")
        assert found is self.sharma

    def test_find_party_by_name_substring(self) -> None:
        assert self.ledger.find_party("user-1", "sharma") is self.sharma
        assert self.ledger.find_party("user-1", None) is None
        assert self.ledger.find_party("user-3", "Sharma") is None

    def test_names_are_per_owner(self) -> None:
        assert self.ledger.party_names("user-1") == ["Sharma Traders"]
        assert self.ledger.customer_names("user-1") == ["Priya Mehta"]
        assert self.ledger.customer_names("user-2") == []

    def test_create_and_count(self) -> None:
        record_id = self.ledger.create_record(DocumentType.INVOICE, {"amount": 1.0})
        assert self.ledger.records[DocumentType.INVOICE][record_id]["amount"] == 1.0
        assert self.ledger.count(DocumentType.INVOICE) == 1
        assert self.ledger.count() == 1


class TestRecordMaterializer:
    """Tests for the RecordMaterializer class."""

    def setup_method(self) -> None:
        self.ledger = InMemoryLedger()
        self.party = self.ledger.add_party("user-1", "Sharma Traders", "27AAPFU0939F1ZV")
        self.customer = self.ledger.add_customer("user-1", "Priya Mehta")
        self.materializer = RecordMaterializer(self.ledger)

    def test_invoice(self) -> None:
        values = {
            "invoice_no": "INV-1",
            "date": "2024-05-20",
            "amount": "12,500.00",
            "party_name": "Sharma Traders",
        }
        created = self.materializer.materialize(values, DocumentType.INVOICE, "user-1", "ocr-1", 1234)
        record = self.ledger.records[DocumentType.INVOICE][created.record_id]

        assert record["amount"] == 12500.0
        assert record["remaining_amount"] == 12500.0
        assert record["party_id"] == self.party["id"]
        assert record["status"] == "PENDING"
        assert record["items"] == []
        assert record["ocr_id"] == "ocr-1"
        today = date.today()
        assert created.voucher_id == (
            f"INVOICE-SHARMATRADERS-{today.day}/{today.month}/{today.strftime('%y')}-1234"
        )

    def test_invoice_matches_party_by_gst(self) -> None:
        values = {"date": "2024-05-20", "amount": 10, "party_name": "S.T.", "party_gst": "27AAPFU0939F1ZV"}
        created = self.materializer.materialize(values, DocumentType.INVOICE, "user-1", "ocr-1")
        assert self.ledger.records[DocumentType.INVOICE][created.record_id]["party_id"] == self.party["id"]

    def test_invoice_payment(self) -> None:
        values = {"date": "2024-05-25", "amount": 4000.0, "party_name": "Sharma", "reference": "UTR1"}
        created = self.materializer.materialize(values, "invoice_payment", "user-1", "ocr-2", 1000)
        record = self.ledger.records[DocumentType.INVOICE_PAYMENT][created.record_id]

        assert created.record_type == DocumentType.INVOICE_PAYMENT
        assert created.voucher_id == "INVOICE_PAYMENT-SHARMATRADERS-25/5/24-1000"
        assert record["method"] == "OTHER"
        assert record["status"] == "COMPLETED"
        assert record["reference"] == "UTR1"

    def test_sale_receipt(self) -> None:
        values = {"date": "2024-05-28", "amount": 900, "customer_name": "Priya Mehta", "method": "UPI"}
        created = self.materializer.materialize(values, DocumentType.SALE_RECEIPT, "user-1", "ocr-3", 4321)
        record = self.ledger.records[DocumentType.SALE_RECEIPT][created.record_id]

        assert record["customer_id"] == self.customer["id"]
        assert record["method"] == "UPI"
        assert created.to_dict() == {
            "recordType": "sale_receipt",
            "recordId": created.record_id,
            "voucherId": "SALE_RECEIPT-PRIYAMEHTA-28/5/24-4321",
        }

    def test_unknown_party(self) -> None:
        values = {"date": "2024-05-20", "amount": 10, "party_name": "Kumar Steel"}
        with pytest.raises(MaterializationError, match="Party not found"):
            self.materializer.materialize(values, DocumentType.INVOICE, "user-1", "ocr-1")
        assert self.ledger.count() == 0

    def test_unknown_customer(self) -> None:
        values = {"date": "2024-05-20", "amount": 10, "customer_name": "Someone"}
        with pytest.raises(MaterializationError, match="Customer not found"):
            self.materializer.materialize(values, DocumentType.SALE_RECEIPT, "user-1", "ocr-1")

    @pytest.mark.parametrize(
        "values, message",
        [
            ({"date": "2024-05-20", "amount": "12,34O.00"}, "positive amount"),
            ({"date": "2024-05-20", "amount": 0}, "positive amount"),
            ({"date": "someday", "amount": 10}, "valid date"),
        ],
    )
    def test_bad_values(self, values: dict, message: str) -> None:
        values["party_name"] = "Sharma Traders"
        with pytest.raises(MaterializationError, match=message):
            self.materializer.materialize(values, DocumentType.INVOICE, "user-1", "ocr-1")

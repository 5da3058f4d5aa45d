"""Turns approved OCR data into a financial record in the ledger.

The materializer resolves the counter-party, fills the record's
defaults and assigns a voucher id. It does not touch the OCR row:
linking, and making sure it happens at most once, belongs to the
review service.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any

from src.errors import MaterializationError
from src.models import DocumentType
from src.utils.logger import get_logger
from src.validation.rules_engine import parse_amount, parse_date

from .ledger import VOUCHER_PREFIXES, LedgerGateway, generate_voucher_id

logger = get_logger(__name__)


@dataclass
class MaterializedRecord:
    """Reference to a record created in the ledger."""

    record_type: DocumentType
    record_id: str
    voucher_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "recordType": self.record_type.value,
            "recordId": self.record_id,
            "voucherId": self.voucher_id,
        }


class RecordMaterializer:
    """Creates invoices, invoice payments and sale receipts.

    Args:
        ledger: Target ledger for lookups and record creation.
    """

    def __init__(self, ledger: LedgerGateway) -> None:
        self.ledger = ledger

    def materialize(
        self,
        processed_data: dict[str, Any],
        document_type: DocumentType,
        user_id: str,
        ocr_id: str,
        sequence: int | None = None,
    ) -> MaterializedRecord:
        """Create the financial record for one approved document.

        Args:
            processed_data: Reviewed field values.
            document_type: Kind of record to create.
            user_id: Owner of the document and the record.
            ocr_id: Source OCR record, stored on the created record.
            sequence: Fixed voucher suffix; random when omitted.

        Returns:
            The created record's type, id and voucher id.

        Raises:
            MaterializationError: The counter-party is unknown or a
                required value is missing or malformed.
        """
        document_type = DocumentType(document_type)
        amount = parse_amount(processed_data.get("amount"))
        if amount is None or amount <= 0:
            raise MaterializationError("A positive amount is required to create a record")
        doc_date = parse_date(processed_data.get("date"))
        if doc_date is None:
            raise MaterializationError("A valid date is required to create a record")

        if document_type == DocumentType.INVOICE:
            data, name, when = self._invoice(processed_data, user_id, float(amount), doc_date)
        elif document_type == DocumentType.INVOICE_PAYMENT:
            data, name, when = self._invoice_payment(processed_data, user_id, float(amount), doc_date)
        else:
            data, name, when = self._sale_receipt(processed_data, user_id, float(amount), doc_date)

        voucher_id = generate_voucher_id(VOUCHER_PREFIXES[document_type], name, when, sequence)
        data.update(voucher_id=voucher_id, user_id=user_id, ocr_id=ocr_id)
        record_id = self.ledger.create_record(document_type, data)

        logger.info(
            "Materialized %s %s (%s) from OCR record %s",
            document_type.value,
            record_id,
            voucher_id,
            ocr_id,
        )
        return MaterializedRecord(document_type, record_id, voucher_id)

    def _invoice(
        self, values: dict[str, Any], user_id: str, amount: float, doc_date: date
    ) -> tuple[dict, str, date | None]:
        party = self.ledger.find_party(user_id, values.get("party_name"), values.get("party_gst"))
        if party is None:
            raise MaterializationError("Party not found. Please create party first.")
        data = {
            "invoice_no": values.get("invoice_no"),
            "date": doc_date.isoformat(),
            "amount": amount,
            "remaining_amount": amount,
            "party_id": party["id"],
            "items": values.get("items") or [],
            "status": "PENDING",
        }
        # invoice vouchers carry the creation date, not the document date
        return data, party["name"], None

    def _invoice_payment(
        self, values: dict[str, Any], user_id: str, amount: float, doc_date: date
    ) -> tuple[dict, str, date | None]:
        party = self.ledger.find_party(user_id, values.get("party_name"))
        if party is None:
            raise MaterializationError("Party not found. Please create party first.")
        data = {
            "amount": amount,
            "date": doc_date.isoformat(),
            "method": values.get("method") or "OTHER",
            "reference": values.get("reference"),
            "party_id": party["id"],
            "status": "COMPLETED",
        }
        return data, party["name"], doc_date

    def _sale_receipt(
        self, values: dict[str, Any], user_id: str, amount: float, doc_date: date
    ) -> tuple[dict, str, date | None]:
        customer = self.ledger.find_customer(user_id, values.get("customer_name"))
        if customer is None:
            raise MaterializationError("Customer not found. Please create customer first.")
        data = {
            "receipt_no": values.get("receipt_no"),
            "date": doc_date.isoformat(),
            "amount": amount,
            "method": values.get("method") or "CASH",
            "customer_id": customer["id"],
        }
        return data, customer["name"], doc_date

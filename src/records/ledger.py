"""Boundary to the accounting ledger that owns parties and financial records.

:class:`LedgerGateway` is what the materializer and the counter-party
resolver talk to. :class:`InMemoryLedger` is a complete local
implementation used by the CLI, the API's default wiring and the tests.
"""

import random
import re
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import date
from typing import Any

from src.models import DocumentType
from src.utils.logger import get_logger

logger = get_logger(__name__)

VOUCHER_PREFIXES: dict[DocumentType, str] = {
    DocumentType.INVOICE: "INVOICE",
    DocumentType.INVOICE_PAYMENT: "INVOICE_PAYMENT",
    DocumentType.SALE_RECEIPT: "SALE_RECEIPT",
}


def sanitize_name(name: str) -> str:
    """Uppercase a party name and drop everything but letters and digits."""
    return re.sub(r"[^A-Z0-9]", "", name.strip().upper())


def generate_voucher_id(
    prefix: str,
    entity_name: str,
    when: date | None = None,
    sequence: int | None = None,
) -> str:
    """Build a voucher id such as ``INVOICE-RAJLAXMISAREES-22/6/25-2020``.

    Args:
        prefix: Record-type prefix, see :data:`VOUCHER_PREFIXES`.
        entity_name: Party or customer name.
        when: Voucher date; today when omitted. Day and month carry no
            leading zero and the year is two digits.
        sequence: Four-digit suffix; random in 1000-9999 when omitted.
    """
    when = when or date.today()
    seq = sequence if sequence is not None else random.randint(1000, 9999)
    return f"{prefix}-{sanitize_name(entity_name)}-{when.day}/{when.month}/{when.strftime('%y')}-{seq}"


class LedgerGateway(ABC):
    """Accounting ledger operations needed by the OCR workflow."""

    @abstractmethod
    def find_party(self, user_id: str, name: str | None, gst: str | None = None) -> dict | None:
        """Return the owner's party matching ``gst`` or containing ``name``."""

    @abstractmethod
    def find_customer(self, user_id: str, name: str | None) -> dict | None:
        """Return the owner's customer whose name contains ``name``."""

    @abstractmethod
    def party_names(self, user_id: str) -> list[str]:
        """Canonical party names, for counter-party resolution."""

    @abstractmethod
    def customer_names(self, user_id: str) -> list[str]:
        """Canonical customer names, for counter-party resolution."""

    @abstractmethod
    def create_record(self, record_type: DocumentType, data: dict[str, Any]) -> str:
        """Persist a financial record and return its id."""


class InMemoryLedger(LedgerGateway):
    """Thread-safe dictionary ledger."""

    def __init__(self) -> None:
        self.parties: list[dict] = []
        self.customers: list[dict] = []
        self.records: dict[DocumentType, dict[str, dict]] = {t: {} for t in DocumentType}
        self._lock = threading.Lock()

    def add_party(self, user_id: str, name: str, gst: str | None = None) -> dict:
        party = {"id": str(uuid.uuid4()), "user_id": user_id, "name": name, "gst_no": gst}
        with self._lock:
            self.parties.append(party)
        return party

    def add_customer(self, user_id: str, name: str) -> dict:
        customer = {"id": str(uuid.uuid4()), "user_id": user_id, "name": name}
        with self._lock:
            self.customers.append(customer)
        return customer

    def find_party(self, user_id: str, name: str | None, gst: str | None = None) -> dict | None:
        with self._lock:
            owned = [p for p in self.parties if p["user_id"] == user_id]
        if gst:
            for party in owned:
                if party["gst_no"] and party["gst_no"].upper() == gst.upper():
                    return party
        return self._find_by_name(owned, name)

    def find_customer(self, user_id: str, name: str | None) -> dict | None:
        with self._lock:
            owned = [c for c in self.customers if c["user_id"] == user_id]
        return self._find_by_name(owned, name)

    @staticmethod
    def _find_by_name(entries: list[dict], name: str | None) -> dict | None:
        if not name:
            return None
        needle = name.strip().lower()
        for entry in entries:
            if needle in entry["name"].lower():
                return entry
        return None

    def party_names(self, user_id: str) -> list[str]:
        with self._lock:
            return [p["name"] for p in self.parties if p["user_id"] == user_id]

    def customer_names(self, user_id: str) -> list[str]:
        with self._lock:
            return [c["name"] for c in self.customers if c["user_id"] == user_id]

    def create_record(self, record_type: DocumentType, data: dict[str, Any]) -> str:
        record_id = str(uuid.uuid4())
        with self._lock:
            self.records[DocumentType(record_type)][record_id] = {"id": record_id, **data}
        logger.info("Created %s record %s", DocumentType(record_type).value, record_id)
        return record_id

    def count(self, record_type: DocumentType | None = None) -> int:
        with self._lock:
            if record_type is not None:
                return len(self.records[DocumentType(record_type)])
            return sum(len(r) for r in self.records.values())

"""Repository interface for OCR records, plus an in-memory implementation.

Every state change goes through a conditional write that names the
statuses (and, where relevant, the attempt or link state) it expects.
A write whose precondition no longer holds returns ``False`` instead of
overwriting, which is how concurrent actions on one document are kept
from clobbering each other across processes.
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from src.models import LINK_ATTRIBUTES, DocumentType, OCRData, OCRStatus, utcnow
from src.utils.logger import get_logger

logger = get_logger(__name__)

# Statuses from which a financial record may be created.
MATERIALIZABLE = (OCRStatus.COMPLETED, OCRStatus.MANUAL_REVIEW)
DUPLICATE_POOL = (OCRStatus.COMPLETED, OCRStatus.MANUAL_REVIEW)


class OCRDataRepository(ABC):
    """
    Abstract persistence for :class:`OCRData`.

    Implementations:
    - In-memory storage (tests, CLI demos)
    - SQLite (single-host deployments)
    """

    @abstractmethod
    def add(self, record: OCRData) -> None:
        """Insert a new record."""

    @abstractmethod
    def get(self, ocr_id: str) -> OCRData | None:
        """Return a copy of the record, or ``None`` if it does not exist."""

    @abstractmethod
    def update_if(
        self,
        ocr_id: str,
        expected_statuses: Iterable[OCRStatus],
        changes: dict[str, Any],
        expected_attempt: int | None = None,
        require_unlinked: bool = False,
    ) -> bool:
        """
        Apply ``changes`` only if the stored record still matches.

        Args:
            ocr_id: Record to update.
            expected_statuses: The record's status must be one of these.
            changes: Attribute name to new value.
            expected_attempt: If given, the stored attempt must equal it.
            require_unlinked: If set, the record must have no linked
                record and no materialization in flight.

        Returns:
            True if the update was applied.
        """

    @abstractmethod
    def claim_materialization(self, ocr_id: str, token: str) -> bool:
        """
        Reserve the record for record creation.

        Succeeds only when the record is unlinked, unclaimed and in a
        materializable status.
        """

    @abstractmethod
    def link_record(
        self, ocr_id: str, token: str, record_type: DocumentType, record_id: str
    ) -> bool:
        """Store the created record's id and clear the claim held by ``token``."""

    @abstractmethod
    def release_materialization(self, ocr_id: str, token: str) -> bool:
        """Drop the claim held by ``token`` without linking anything."""

    @abstractmethod
    def delete_if_unlinked(self, ocr_id: str) -> bool:
        """Delete the record unless it is linked or claimed."""

    @abstractmethod
    def recent_for_duplicates(
        self,
        user_id: str,
        document_type: DocumentType,
        since: datetime,
        limit: int,
        exclude_id: str | None = None,
    ) -> list[OCRData]:
        """Recent COMPLETED or MANUAL_REVIEW records of one owner and type, newest first."""

    @abstractmethod
    def query(
        self,
        user_id: str,
        status: OCRStatus | None = None,
        document_type: DocumentType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[OCRData], int]:
        """
        Filtered listing, newest first.

        Returns:
            ``(page, total)`` where ``total`` counts all matching records.
        """


def _matches(
    record: OCRData,
    expected_statuses: Iterable[OCRStatus],
    expected_attempt: int | None,
    require_unlinked: bool,
) -> bool:
    if record.status not in tuple(expected_statuses):
        return False
    if expected_attempt is not None and record.attempt != expected_attempt:
        return False
    if require_unlinked and (record.is_linked or record.materialization_token):
        return False
    return True


class InMemoryOCRDataRepository(OCRDataRepository):
    """Dictionary-backed repository guarded by a single lock."""

    def __init__(self) -> None:
        self._records: dict[str, OCRData] = {}
        self._lock = threading.Lock()

    def add(self, record: OCRData) -> None:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"OCR record {record.id} already exists")
            self._records[record.id] = record.copy()

    def get(self, ocr_id: str) -> OCRData | None:
        with self._lock:
            record = self._records.get(ocr_id)
            return record.copy() if record else None

    def update_if(
        self,
        ocr_id: str,
        expected_statuses: Iterable[OCRStatus],
        changes: dict[str, Any],
        expected_attempt: int | None = None,
        require_unlinked: bool = False,
    ) -> bool:
        with self._lock:
            record = self._records.get(ocr_id)
            if record is None or not _matches(
                record, expected_statuses, expected_attempt, require_unlinked
            ):
                return False
            for key, value in changes.items():
                if not hasattr(record, key):
                    raise AttributeError(f"OCRData has no field {key!r}")
                setattr(record, key, value)
            record.updated_at = utcnow()
            return True

    def claim_materialization(self, ocr_id: str, token: str) -> bool:
        with self._lock:
            record = self._records.get(ocr_id)
            if record is None or not _matches(record, MATERIALIZABLE, None, True):
                return False
            record.materialization_token = token
            record.updated_at = utcnow()
            return True

    def link_record(
        self, ocr_id: str, token: str, record_type: DocumentType, record_id: str
    ) -> bool:
        with self._lock:
            record = self._records.get(ocr_id)
            if record is None or record.materialization_token != token or record.is_linked:
                return False
            setattr(record, LINK_ATTRIBUTES[record_type], record_id)
            record.materialization_token = None
            record.updated_at = utcnow()
            return True

    def release_materialization(self, ocr_id: str, token: str) -> bool:
        with self._lock:
            record = self._records.get(ocr_id)
            if record is None or record.materialization_token != token:
                return False
            record.materialization_token = None
            record.updated_at = utcnow()
            return True

    def delete_if_unlinked(self, ocr_id: str) -> bool:
        with self._lock:
            record = self._records.get(ocr_id)
            if record is None or record.is_linked or record.materialization_token:
                return False
            del self._records[ocr_id]
            return True

    def recent_for_duplicates(
        self,
        user_id: str,
        document_type: DocumentType,
        since: datetime,
        limit: int,
        exclude_id: str | None = None,
    ) -> list[OCRData]:
        with self._lock:
            pool = [
                r
                for r in self._records.values()
                if r.user_id == user_id
                and r.document_type == document_type
                and r.status in DUPLICATE_POOL
                and r.created_at >= since
                and r.id != exclude_id
            ]
            pool.sort(key=lambda r: r.created_at, reverse=True)
            return [r.copy() for r in pool[:limit]]

    def query(
        self,
        user_id: str,
        status: OCRStatus | None = None,
        document_type: DocumentType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[OCRData], int]:
        with self._lock:
            matched = [
                r
                for r in self._records.values()
                if r.user_id == user_id
                and (status is None or r.status == status)
                and (document_type is None or r.document_type == document_type)
                and (start is None or r.created_at >= start)
                and (end is None or r.created_at <= end)
            ]
            matched.sort(key=lambda r: r.created_at, reverse=True)
            stop = None if limit is None else offset + limit
            return [r.copy() for r in matched[offset:stop]], len(matched)

"""
SQLite-backed OCR record storage.

Conditional writes are single ``UPDATE ... WHERE`` statements whose
``rowcount`` tells whether the precondition held, so two processes
sharing the database file cannot both claim or overwrite a record.
"""

import json
import sqlite3
from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from typing import Any

from src.models import LINK_ATTRIBUTES, DocumentType, OCRData, OCRStatus, utcnow
from src.utils.logger import get_logger

from .repository import DUPLICATE_POOL, MATERIALIZABLE, OCRDataRepository

logger = get_logger(__name__)

COLUMNS = (
    "id",
    "user_id",
    "document_type",
    "image_url",
    "original_name",
    "file_size",
    "status",
    "extracted_data",
    "processed_data",
    "confidence",
    "error_message",
    "invoice_id",
    "invoice_payment_id",
    "sale_receipt_id",
    "attempt",
    "materialization_token",
    "created_at",
    "updated_at",
)
JSON_COLUMNS = {"extracted_data", "processed_data"}
UNLINKED_CLAUSE = (
    "invoice_id IS NULL AND invoice_payment_id IS NULL "
    "AND sale_receipt_id IS NULL AND materialization_token IS NULL"
)


def _to_db(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in JSON_COLUMNS:
        return json.dumps(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat(timespec="microseconds")
    return value


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteOCRDataRepository(OCRDataRepository):
    """
    SQLite-backed repository with persistent storage.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "ocr_data.db"):
        self.db_path = db_path
        self._init_database()

    def _init_database(self):
        """Create the ocr_data table if it doesn't exist"""
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS ocr_data (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    document_type TEXT NOT NULL,
                    image_url TEXT NOT NULL,
                    original_name TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PROCESSING',
                    extracted_data TEXT NOT NULL DEFAULT '{}',
                    processed_data TEXT,
                    confidence REAL NOT NULL DEFAULT 0,
                    error_message TEXT,
                    invoice_id TEXT UNIQUE,
                    invoice_payment_id TEXT UNIQUE,
                    sale_receipt_id TEXT UNIQUE,
                    attempt INTEGER NOT NULL DEFAULT 1,
                    materialization_token TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (status IN ('PROCESSING', 'COMPLETED', 'MANUAL_REVIEW', 'FAILED'))
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_ocr_user_created
                ON ocr_data(user_id, created_at)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_ocr_status
                ON ocr_data(status)
            """)
            conn.commit()
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory"""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: tuple) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.execute(sql, params)
            rows_affected = cursor.rowcount
            conn.commit()
            return rows_affected
        finally:
            conn.close()

    def _fetch(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        conn = self._get_connection()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> OCRData:
        data = {key: row[key] for key in row.keys()}
        data["extracted_data"] = json.loads(data["extracted_data"] or "{}")
        if data["processed_data"] is not None:
            data["processed_data"] = json.loads(data["processed_data"])
        return OCRData.from_dict(data)

    def add(self, record: OCRData) -> None:
        params = tuple(_to_db(c, getattr(record, c)) for c in COLUMNS)
        try:
            self._execute(
                f"INSERT INTO ocr_data ({', '.join(COLUMNS)}) VALUES ({_placeholders(COLUMNS)})",
                params,
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"OCR record {record.id} already exists") from exc

    def get(self, ocr_id: str) -> OCRData | None:
        rows = self._fetch("SELECT * FROM ocr_data WHERE id = ?", (ocr_id,))
        return self._row_to_record(rows[0]) if rows else None

    def update_if(
        self,
        ocr_id: str,
        expected_statuses: Iterable[OCRStatus],
        changes: dict[str, Any],
        expected_attempt: int | None = None,
        require_unlinked: bool = False,
    ) -> bool:
        unknown = set(changes) - set(COLUMNS)
        if unknown:
            raise AttributeError(f"OCRData has no field(s) {sorted(unknown)}")

        statuses = [OCRStatus(s).value for s in expected_statuses]
        assignments = [f"{column} = ?" for column in changes] + ["updated_at = ?"]
        params: list[Any] = [_to_db(c, v) for c, v in changes.items()]
        params.append(_to_db("updated_at", utcnow()))

        where = ["id = ?", f"status IN ({_placeholders(statuses)})"]
        params.append(ocr_id)
        params.extend(statuses)
        if expected_attempt is not None:
            where.append("attempt = ?")
            params.append(expected_attempt)
        if require_unlinked:
            where.append(UNLINKED_CLAUSE)

        rows = self._execute(
            f"UPDATE ocr_data SET {', '.join(assignments)} WHERE {' AND '.join(where)}",
            tuple(params),
        )
        return rows == 1

    def claim_materialization(self, ocr_id: str, token: str) -> bool:
        statuses = [s.value for s in MATERIALIZABLE]
        rows = self._execute(
            f"""
            UPDATE ocr_data
            SET materialization_token = ?, updated_at = ?
            WHERE id = ? AND status IN ({_placeholders(statuses)}) AND {UNLINKED_CLAUSE}
            """,
            (token, _to_db("updated_at", utcnow()), ocr_id, *statuses),
        )
        return rows == 1

    def link_record(
        self, ocr_id: str, token: str, record_type: DocumentType, record_id: str
    ) -> bool:
        column = LINK_ATTRIBUTES[DocumentType(record_type)]
        rows = self._execute(
            f"""
            UPDATE ocr_data
            SET {column} = ?, materialization_token = NULL, updated_at = ?
            WHERE id = ? AND materialization_token = ?
            """,
            (record_id, _to_db("updated_at", utcnow()), ocr_id, token),
        )
        return rows == 1

    def release_materialization(self, ocr_id: str, token: str) -> bool:
        rows = self._execute(
            """
            UPDATE ocr_data
            SET materialization_token = NULL, updated_at = ?
            WHERE id = ? AND materialization_token = ?
            """,
            (_to_db("updated_at", utcnow()), ocr_id, token),
        )
        return rows == 1

    def delete_if_unlinked(self, ocr_id: str) -> bool:
        rows = self._execute(
            f"DELETE FROM ocr_data WHERE id = ? AND {UNLINKED_CLAUSE}", (ocr_id,)
        )
        return rows == 1

    def recent_for_duplicates(
        self,
        user_id: str,
        document_type: DocumentType,
        since: datetime,
        limit: int,
        exclude_id: str | None = None,
    ) -> list[OCRData]:
        statuses = [s.value for s in DUPLICATE_POOL]
        rows = self._fetch(
            f"""
            SELECT * FROM ocr_data
            WHERE user_id = ? AND document_type = ? AND created_at >= ?
              AND status IN ({_placeholders(statuses)}) AND id != ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (
                user_id,
                DocumentType(document_type).value,
                _to_db("created_at", since),
                *statuses,
                exclude_id or "",
                limit,
            ),
        )
        return [self._row_to_record(row) for row in rows]

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
        where = ["user_id = ?"]
        params: list[Any] = [user_id]
        if status is not None:
            where.append("status = ?")
            params.append(OCRStatus(status).value)
        if document_type is not None:
            where.append("document_type = ?")
            params.append(DocumentType(document_type).value)
        if start is not None:
            where.append("created_at >= ?")
            params.append(_to_db("created_at", start))
        if end is not None:
            where.append("created_at <= ?")
            params.append(_to_db("created_at", end))
        clause = " AND ".join(where)

        total = self._fetch(f"SELECT COUNT(*) AS n FROM ocr_data WHERE {clause}", tuple(params))[0]["n"]
        page_sql = f"SELECT * FROM ocr_data WHERE {clause} ORDER BY created_at DESC LIMIT ? OFFSET ?"
        rows = self._fetch(page_sql, (*params, -1 if limit is None else limit, offset))
        return [self._row_to_record(row) for row in rows], total

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import List, Optional

from .errors import HistoryStoreError
from .models import HistoryRecordCreate, StoredRecord, serialize_sources

logger = logging.getLogger("lumina.history.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    data TEXT NOT NULL,
    prompt TEXT NOT NULL,
    text TEXT,
    sources TEXT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
)
"""

COLUMNS = "id, type, data, prompt, text, sources, timestamp"


class HistoryStore:
    """Durable keyed table of generation records backed by SQLite."""

    def __init__(self, path: Path) -> None:
        """Purpose: Remember the database location; the file is created lazily.
        Inputs/Outputs: Input is the database file path; no return value.
        Side Effects / State: None until the first operation.
        Dependencies: sqlite3 from the standard library.
        Failure Modes: None at construction.
        Testing Notes: Point at a tmp_path file and verify it appears after create_record.
        """
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        # One short-lived connection per call keeps the store safe across threads.
        self._path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(str(self._path))
        connection.row_factory = sqlite3.Row
        connection.execute(SCHEMA)
        return connection

    def list_records(self) -> List[StoredRecord]:
        """Purpose: Return every record, newest first.
        Inputs/Outputs: No inputs; returns a list of StoredRecord.
        Side Effects / State: Reads the database.
        Dependencies: _connect.
        Failure Modes: sqlite3.Error is raised as HistoryStoreError.
        Testing Notes: Records created A, B, C come back as C, B, A.
        """
        # Insertion order, not the second-resolution timestamp, decides recency.
        try:
            with closing(self._connect()) as connection:
                rows = connection.execute(f"SELECT {COLUMNS} FROM history ORDER BY id DESC").fetchall()
        except sqlite3.Error as exc:
            logger.error("history list failed: %s", exc)
            raise HistoryStoreError(f"Failed to fetch history: {exc}") from exc
        return [_record_from_row(row) for row in rows]

    def get_record(self, record_id: int) -> Optional[StoredRecord]:
        try:
            with closing(self._connect()) as connection:
                row = connection.execute(
                    f"SELECT {COLUMNS} FROM history WHERE id = ?", (record_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            logger.error("history get failed id=%s: %s", record_id, exc)
            raise HistoryStoreError(f"Failed to fetch history item: {exc}") from exc
        return _record_from_row(row) if row else None

    def create_record(self, payload: HistoryRecordCreate) -> StoredRecord:
        """Purpose: Insert a record and return it with its assigned id.
        Inputs/Outputs: Input is HistoryRecordCreate; output is the stored record.
        Side Effects / State: Writes one row.
        Dependencies: serialize_sources for the citation column.
        Failure Modes: sqlite3.Error is raised as HistoryStoreError.
        Testing Notes: Returned id increases monotonically; sources round-trip as JSON.
        """
        sources = serialize_sources(payload.sources)
        try:
            with closing(self._connect()) as connection:
                with connection:
                    cursor = connection.execute(
                        "INSERT INTO history (type, data, prompt, text, sources) VALUES (?, ?, ?, ?, ?)",
                        (payload.type, payload.data, payload.prompt, payload.text, sources),
                    )
                    record_id = cursor.lastrowid
                row = connection.execute(
                    f"SELECT {COLUMNS} FROM history WHERE id = ?", (record_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            logger.error("history create failed type=%s: %s", payload.type, exc)
            raise HistoryStoreError(f"Failed to save history: {exc}") from exc
        logger.info("history record created id=%s type=%s", record_id, payload.type)
        return _record_from_row(row)

    def delete_record(self, record_id: int) -> bool:
        """Delete a record by id; deleting an unknown id still succeeds."""
        try:
            with closing(self._connect()) as connection:
                with connection:
                    cursor = connection.execute("DELETE FROM history WHERE id = ?", (record_id,))
        except sqlite3.Error as exc:
            logger.error("history delete failed id=%s: %s", record_id, exc)
            raise HistoryStoreError(f"Failed to delete item: {exc}") from exc
        logger.info("history record delete id=%s removed=%s", record_id, cursor.rowcount)
        return True


def _record_from_row(row: sqlite3.Row) -> StoredRecord:
    return StoredRecord(
        id=row["id"],
        type=row["type"],
        data=row["data"],
        prompt=row["prompt"],
        text=row["text"],
        sources=row["sources"],
        timestamp=str(row["timestamp"]) if row["timestamp"] is not None else None,
    )

"""Local SQLite store for audit records imported from management API endpoints.

Records are upserted by id, so re-importing an overlapping window never
duplicates rows. Each ingestion run is a single transaction: a failure on
any row leaves the table exactly as it was before the run.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from gcsadmin.api.models import AuditRecord
from gcsadmin.config import ensure_dir
from gcsadmin.errors import IngestionFailed, LocalStoreError
from gcsadmin.timefmt import from_storage, to_storage

_LOG = logging.getLogger(__name__)

_DDL = """\
CREATE TABLE IF NOT EXISTS audit_logs (
    id          TEXT PRIMARY KEY,
    timestamp   DATETIME NOT NULL,
    event_type  TEXT,
    identity_id TEXT,
    username    TEXT,
    resource    TEXT,
    resource_id TEXT,
    action      TEXT,
    result      TEXT,
    message     TEXT,
    client_ip   TEXT,
    metadata    TEXT
);

CREATE INDEX IF NOT EXISTS idx_timestamp ON audit_logs(timestamp);
CREATE INDEX IF NOT EXISTS idx_event_type ON audit_logs(event_type);
CREATE INDEX IF NOT EXISTS idx_identity ON audit_logs(identity_id);
CREATE INDEX IF NOT EXISTS idx_result ON audit_logs(result);
"""

_COLUMNS = (
    "id",
    "timestamp",
    "event_type",
    "identity_id",
    "username",
    "resource",
    "resource_id",
    "action",
    "result",
    "message",
    "client_ip",
    "metadata",
)

_UPSERT = (
    f"INSERT OR REPLACE INTO audit_logs ({', '.join(_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)})"
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM audit_logs"


@dataclass(frozen=True, slots=True)
class AuditFilter:
    """Optional predicates over stored audit records; all set fields must match."""

    start_time: datetime | None = None
    end_time: datetime | None = None
    event_type: str | None = None
    identity_id: str | None = None
    action: str | None = None
    result: str | None = None

    def where_clause(self) -> tuple[str, tuple[object, ...]]:
        """Return a ``WHERE`` fragment (possibly empty) and its bound parameters."""
        clauses: list[str] = []
        params: list[object] = []
        if self.start_time is not None:
            clauses.append("timestamp >= ?")
            params.append(to_storage(self.start_time))
        if self.end_time is not None:
            clauses.append("timestamp <= ?")
            params.append(to_storage(self.end_time))
        for column in ("event_type", "identity_id", "action", "result"):
            value = getattr(self, column)
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if not clauses:
            return "", ()
        return " WHERE " + " AND ".join(clauses), tuple(params)

    def matches(self, record: AuditRecord) -> bool:
        if self.start_time is not None and (
            record.timestamp is None or record.timestamp < self.start_time
        ):
            return False
        if self.end_time is not None and (
            record.timestamp is None or record.timestamp > self.end_time
        ):
            return False
        for column in ("event_type", "identity_id", "action", "result"):
            value = getattr(self, column)
            if value and getattr(record, column) != value:
                return False
        return True


def _row_values(record: AuditRecord) -> tuple[object, ...]:
    return (
        record.id,
        to_storage(record.timestamp) if record.timestamp is not None else None,
        record.event_type,
        record.identity_id,
        record.username,
        record.resource,
        record.resource_id,
        record.action,
        record.result,
        record.message,
        record.client_ip,
        json.dumps(record.metadata, sort_keys=True),
    )


def _record_from_row(row: sqlite3.Row) -> AuditRecord:
    raw_metadata = row["metadata"] or "{}"
    try:
        metadata = json.loads(raw_metadata)
    except json.JSONDecodeError as exc:
        raise LocalStoreError(f"stored metadata for audit record {row['id']} is corrupt") from exc
    return AuditRecord(
        id=row["id"],
        timestamp=from_storage(row["timestamp"]),
        event_type=row["event_type"],
        identity_id=row["identity_id"],
        username=row["username"],
        resource=row["resource"],
        resource_id=row["resource_id"],
        action=row["action"],
        result=row["result"],
        message=row["message"],
        client_ip=row["client_ip"],
        metadata=metadata,
    )


class AuditStore:
    """SQLite-backed audit record store."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        ensure_dir(db_path.parent)
        try:
            # Autocommit mode; ingest() manages its own transaction explicitly.
            self._conn = sqlite3.connect(str(db_path), isolation_level=None)
        except sqlite3.Error as exc:
            raise LocalStoreError(f"unable to open audit database {db_path}: {exc}") from exc
        try:
            self._conn.row_factory = sqlite3.Row
            self._init_schema()
        except sqlite3.Error as exc:
            self._conn.close()
            raise LocalStoreError(f"unable to open audit database {db_path}: {exc}") from exc

    @property
    def path(self) -> Path:
        return self._db_path

    def __enter__(self) -> AuditStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _init_schema(self) -> None:
        self._conn.executescript(_DDL)

    def ingest(self, records: Iterable[AuditRecord]) -> int:
        """Upsert ``records`` in one transaction and return how many were written."""
        written = 0
        try:
            self._conn.execute("BEGIN")
        except sqlite3.Error as exc:
            raise LocalStoreError(f"unable to start audit transaction: {exc}") from exc

        try:
            for index, record in enumerate(records):
                try:
                    self._conn.execute(_UPSERT, _row_values(record))
                except (sqlite3.Error, TypeError, ValueError) as exc:
                    raise IngestionFailed(
                        f"audit record {index} (id {record.id!r}) could not be stored: {exc}"
                    ) from exc
                written += 1
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                raise IngestionFailed(f"unable to commit audit records: {exc}") from exc
        except BaseException:
            self._rollback()
            raise

        _LOG.debug("ingested %d audit records into %s", written, self._db_path)
        return written

    def _rollback(self) -> None:
        if not self._conn.in_transaction:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            _LOG.warning("audit rollback failed: %s", exc)

    def query(
        self, audit_filter: AuditFilter | None = None, limit: int | None = None
    ) -> list[AuditRecord]:
        """Return matching records, newest first, optionally bounded by ``limit``."""
        where, params = (audit_filter or AuditFilter()).where_clause()
        sql = f"{_SELECT}{where} ORDER BY timestamp DESC"
        if limit is not None and limit > 0:
            sql += " LIMIT ?"
            params = (*params, limit)
        try:
            rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise LocalStoreError(f"audit query failed: {exc}") from exc
        return [_record_from_row(row) for row in rows]

    def count(self) -> int:
        """Total number of stored audit records."""
        try:
            row = self._conn.execute("SELECT COUNT(*) FROM audit_logs").fetchone()
        except sqlite3.Error as exc:
            raise LocalStoreError(f"audit count failed: {exc}") from exc
        return row[0] if row else 0

    def close(self) -> None:
        self._conn.close()

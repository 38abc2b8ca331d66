"""JSON and CSV export of stored audit records."""

from __future__ import annotations

import csv
import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO

from gcsadmin.api.models import AuditRecord
from gcsadmin.errors import InvalidArgument, LocalStoreError
from gcsadmin.timefmt import format_rfc3339

_LOG = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")

CSV_HEADER = [
    "id",
    "timestamp",
    "event_type",
    "actor_id",
    "username",
    "resource",
    "resource_id",
    "action",
    "result",
    "message",
    "client_ip",
]


def _csv_row(record: AuditRecord) -> list[str]:
    return [
        record.id,
        format_rfc3339(record.timestamp) if record.timestamp is not None else "",
        record.event_type,
        record.identity_id,
        record.username,
        record.resource,
        record.resource_id,
        record.action,
        record.result,
        record.message,
        record.client_ip,
    ]


def write_csv(records: Sequence[AuditRecord], stream: TextIO) -> None:
    """Write ``records`` as CSV; metadata is not part of the delimited format."""
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record in records:
        writer.writerow(_csv_row(record))


def write_json(records: Sequence[AuditRecord], stream: TextIO) -> None:
    payload = [record.export_dict() for record in records]
    stream.write(json.dumps(payload, indent=2, ensure_ascii=False))
    stream.write("\n")


def validate_export_format(fmt: str) -> str:
    normalized = fmt.strip().lower()
    if normalized not in EXPORT_FORMATS:
        raise InvalidArgument(f"unsupported export format: {fmt} (use json or csv)")
    return normalized


def dump_audit_logs(records: Sequence[AuditRecord], path: Path, fmt: str = "json") -> int:
    """Write ``records`` to ``path`` in ``fmt`` and return how many were exported."""
    export_format = validate_export_format(fmt)
    try:
        with path.open("w", encoding="utf-8", newline="") as handle:
            if export_format == "csv":
                write_csv(records, handle)
            else:
                write_json(records, handle)
    except OSError as exc:
        raise LocalStoreError(f"unable to write export file {path}: {exc}") from exc
    _LOG.debug("exported %d audit records to %s as %s", len(records), path, export_format)
    return len(records)

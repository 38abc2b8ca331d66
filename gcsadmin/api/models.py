"""Wire models for the management API resources consumed by gcsadmin."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gcsadmin.timefmt import ensure_aware, format_rfc3339


class AuditRecord(BaseModel):
    """One audit event as returned by the ``audit-logs`` resource."""

    model_config = ConfigDict(extra="ignore")

    id: str
    # Optional on the wire; the local store enforces presence.
    timestamp: datetime | None = None
    event_type: str = ""
    identity_id: str = ""
    username: str = ""
    resource: str = ""
    resource_id: str = ""
    action: str = ""
    result: str = ""
    message: str = ""
    client_ip: str = ""
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @field_validator(
        "event_type",
        "identity_id",
        "username",
        "resource",
        "resource_id",
        "action",
        "result",
        "message",
        "client_ip",
        mode="before",
    )
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("metadata", mode="before")
    @classmethod
    def _stringify_metadata(cls, value: object) -> object:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(key): _metadata_text(item) for key, item in value.items()}
        return value

    def export_dict(self) -> dict[str, object]:
        payload = self.model_dump(mode="json")
        payload["timestamp"] = format_rfc3339(self.timestamp) if self.timestamp else None
        return payload


def _metadata_text(item: object) -> str:
    # Non-string values keep their JSON text.
    if item is None:
        return ""
    if isinstance(item, str):
        return item
    return json.dumps(item, sort_keys=True)


class AuditLogPage(BaseModel):
    """A single page of audit records."""

    model_config = ConfigDict(extra="ignore")

    data: list[AuditRecord] = Field(default_factory=list)
    has_next_page: bool = False
    marker: str | None = None


@dataclass(frozen=True, slots=True)
class AuditQueryParams:
    """Remote filters forwarded to the ``audit-logs`` resource."""

    start_time: datetime | None = None
    end_time: datetime | None = None
    event_type: str | None = None
    identity_id: str | None = None
    resource_id: str | None = None
    action: str | None = None
    result: str | None = None
    limit: int | None = None

    def to_query(self, *, marker: str | None = None) -> dict[str, str]:
        query: dict[str, str] = {}
        if self.start_time is not None:
            query["start_time"] = format_rfc3339(self.start_time)
        if self.end_time is not None:
            query["end_time"] = format_rfc3339(self.end_time)
        for key in ("event_type", "identity_id", "resource_id", "action", "result"):
            value = getattr(self, key)
            if value:
                query[key] = value
        if self.limit is not None and self.limit > 0:
            query["limit"] = str(self.limit)
        if marker:
            query["marker"] = marker
        return query

"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Union

SOURCE_URL = "url"
SOURCE_UPLOAD = "upload"

DATATYPES = ("text", "number", "bool", "date", "json")


@dataclass(slots=True)
class Supplier:
    id: str
    workspace_id: str
    name: str
    source_type: str
    endpoint_url: str | None = None
    source_path: str | None = None
    auth_username: str | None = None
    auth_password: str | None = None
    schedule_cron: str | None = None
    schedule_enabled: bool = False
    uid_source_key: str | None = None
    is_draft: bool = False
    status: str = "active"
    last_sync_status: str | None = None
    last_sync_completed_at: datetime | None = None

    @property
    def source_file(self) -> str | None:
        if self.source_type == SOURCE_UPLOAD:
            return self.source_path or "uploaded_file"
        return self.endpoint_url


@dataclass(slots=True)
class CustomField:
    id: str
    workspace_id: str
    key: str
    name: str
    datatype: str = "text"
    is_required: bool = False
    is_unique: bool = False
    sort_order: int = 0
    use_for_category_mapping: bool = False


@dataclass(slots=True)
class FieldMapping:
    source_key: str
    field_key: str


@dataclass(slots=True)
class MappingOverride:
    """A wizard-supplied mapping that replaces stored mappings for one run."""

    custom_field_id: str
    source_field: str


@dataclass(frozen=True, slots=True)
class ByKey:
    key: str


@dataclass(frozen=True, slots=True)
class ById:
    field_id: str


FieldRef = Union[ByKey, ById]


@dataclass(slots=True)
class ParsedRecord:
    uid: str
    fields: dict[str, Any]


@dataclass(slots=True)
class FetchResult:
    content: str
    content_type: str
    source: str | None = None


@dataclass(slots=True)
class ResolvedMapping:
    sources: dict[str, str]
    fields: Mapping[str, CustomField] = field(default_factory=dict)
    id_to_key: Mapping[str, str] = field(default_factory=dict)

    def datatype_for(self, field_key: str) -> str:
        custom_field = self.fields.get(field_key)
        return custom_field.datatype if custom_field else "text"


@dataclass(slots=True)
class AllocationResult:
    uids: list[str]
    degraded: bool = False


@dataclass(slots=True)
class UpsertOutcome:
    upserted: int
    new: int
    updated: int


@dataclass(slots=True)
class IngestionStats:
    total_products: int
    new_products: int
    updated_products: int
    errors: int
    duration_ms: int
    status: str
    ingestion_id: str | None
    uid_allocation_degraded: bool = False


@dataclass(slots=True)
class IngestionResult:
    success: bool
    results: IngestionStats | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.results is not None:
            stats = self.results
            payload["results"] = {
                "total_products": stats.total_products,
                "new_products": stats.new_products,
                "updated_products": stats.updated_products,
                "errors": stats.errors,
                "duration_ms": stats.duration_ms,
                "status": stats.status,
                "ingestion_id": stats.ingestion_id,
                "uid_allocation_degraded": stats.uid_allocation_degraded,
            }
        if self.error is not None:
            payload["error"] = self.error
        return payload

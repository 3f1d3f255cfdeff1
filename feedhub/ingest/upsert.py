"""Merge-on-write persistence of mapped product rows."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import text

from feedhub.ingest.coercion import coerce, is_absent
from feedhub.ingest.errors import UpsertError
from feedhub.ingest.models import ParsedRecord, ResolvedMapping, UpsertOutcome
from feedhub.utils.dates import as_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExistingSnapshot:
    fields_by_uid: dict[str, dict[str, Any]] = field(default_factory=dict)
    uid_by_source: dict[str, str] = field(default_factory=dict)


def lookup(fields: Mapping[str, Any], key: str) -> Any:
    """Case-insensitive field lookup; the first matching name wins."""
    if key in fields:
        return fields[key]
    wanted = key.lower()
    for name, value in fields.items():
        if name.lower() == wanted:
            return value
    return None


def build_mapped_fields(fields: Mapping[str, Any], mapping: ResolvedMapping) -> dict[str, Any]:
    mapped: dict[str, Any] = {}
    for source, field_key in mapping.sources.items():
        value = lookup(fields, source)
        if is_absent(value):
            continue
        mapped[field_key] = coerce(value, mapping.datatype_for(field_key))
    return mapped


def normalize_existing(fields: Mapping[str, Any], id_to_key: Mapping[str, str]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in fields.items():
        normalized.setdefault(id_to_key.get(key, key), value)
    return normalized


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, (str, bytes)):
        value = json.loads(value)
    return dict(value) if isinstance(value, dict) else {}


class MergeUpsertEngine:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def load_existing(self, workspace_id: str, supplier_id: str) -> ExistingSnapshot:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    text(
                        """
                        SELECT uid, fields, source_uid
                        FROM products_mapped
                        WHERE workspace_id = :workspace_id AND supplier_id = :supplier_id
                        """
                    ),
                    {"workspace_id": workspace_id, "supplier_id": supplier_id},
                ).all()
        except SQLAlchemyError as exc:
            raise UpsertError(f"Failed to load existing rows: {exc}") from exc
        snapshot = ExistingSnapshot()
        for uid, fields, source_uid in rows:
            try:
                snapshot.fields_by_uid[str(uid)] = _load_json(fields)
            except ValueError:
                logger.warning("Ignoring unreadable stored fields for uid %s", uid)
                snapshot.fields_by_uid[str(uid)] = {}
            if source_uid:
                snapshot.uid_by_source[str(source_uid)] = str(uid)
        return snapshot

    def merge_and_upsert(
        self,
        workspace_id: str,
        supplier_id: str,
        ingestion_id: str,
        records: Sequence[ParsedRecord],
        mapping: ResolvedMapping,
        uids: Sequence[str],
        existing_by_uid: Mapping[str, Mapping[str, Any]],
        *,
        source_file: str | None,
        source_uids: Sequence[str | None] | None = None,
    ) -> UpsertOutcome:
        imported_at = utc_now()
        rows: dict[str, dict[str, Any]] = {}
        for index, record in enumerate(records):
            uid = uids[index] if index < len(uids) else None
            if not uid:
                continue
            mapped = build_mapped_fields(record.fields, mapping)
            if uid in rows:
                base = rows[uid]["fields"]
            else:
                base = normalize_existing(existing_by_uid.get(uid, {}), mapping.id_to_key)
            rows[uid] = {
                "workspace_id": workspace_id,
                "supplier_id": supplier_id,
                "ingestion_id": ingestion_id,
                "uid": uid,
                "fields": {**base, **mapped},
                "source_file": source_file,
                "source_uid": source_uids[index] if source_uids else None,
                "imported_at": imported_at,
            }
        if not rows:
            return UpsertOutcome(upserted=0, new=0, updated=0)

        updated = sum(1 for uid in rows if uid in existing_by_uid)
        params = [{**row, "fields": json.dumps(row["fields"], default=str)} for row in rows.values()]
        try:
            with self.engine.begin() as conn:
                conn.execute(text(_upsert_sql(conn.dialect.name)), params)
        except SQLAlchemyError as exc:
            raise UpsertError(f"Failed to upsert {len(params)} mapped rows: {exc}") from exc
        logger.info("Upserted %s mapped rows for supplier %s (%s updated)", len(params), supplier_id, updated)
        return UpsertOutcome(upserted=len(params), new=len(params) - updated, updated=updated)

    def list_rows(
        self,
        workspace_id: str,
        supplier_id: str,
        *,
        offset: int = 0,
        limit: int = 50,
        id_to_key: Mapping[str, str] | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """Return one page of stored rows, newest import first, and the supplier's row count."""
        params = {"workspace_id": workspace_id, "supplier_id": supplier_id, "offset": offset, "limit": limit}
        try:
            with self.engine.connect() as conn:
                total = conn.execute(
                    text(
                        "SELECT COUNT(*) FROM products_mapped "
                        "WHERE workspace_id = :workspace_id AND supplier_id = :supplier_id"
                    ),
                    params,
                ).scalar_one()
                rows = conn.execute(
                    text(
                        """
                        SELECT uid, fields, source_file, source_uid, ingestion_id, imported_at
                        FROM products_mapped
                        WHERE workspace_id = :workspace_id AND supplier_id = :supplier_id
                        ORDER BY imported_at DESC, CAST(uid AS BIGINT)
                        LIMIT :limit OFFSET :offset
                        """
                    ),
                    params,
                ).mappings().all()
        except SQLAlchemyError as exc:
            raise UpsertError(f"Failed to load mapped rows: {exc}") from exc
        page = []
        for row in rows:
            try:
                fields = _load_json(row["fields"])
            except ValueError:
                logger.warning("Ignoring unreadable stored fields for uid %s", row["uid"])
                fields = {}
            page.append(
                {
                    "uid": str(row["uid"]),
                    "fields": normalize_existing(fields, id_to_key or {}),
                    "source_file": row["source_file"],
                    "source_uid": row["source_uid"],
                    "ingestion_id": row["ingestion_id"],
                    "imported_at": as_utc(row["imported_at"]),
                }
            )
        return page, int(total)


def _upsert_sql(dialect: str) -> str:
    fields_param = ":fields" if dialect == "sqlite" else "CAST(:fields AS JSONB)"
    return f"""
        INSERT INTO products_mapped
            (workspace_id, supplier_id, ingestion_id, uid, fields, source_file, source_uid, imported_at)
        VALUES
            (:workspace_id, :supplier_id, :ingestion_id, :uid, {fields_param}, :source_file, :source_uid, :imported_at)
        ON CONFLICT (workspace_id, supplier_id, uid) DO UPDATE SET
          ingestion_id = EXCLUDED.ingestion_id,
          fields = EXCLUDED.fields,
          source_file = EXCLUDED.source_file,
          source_uid = EXCLUDED.source_uid,
          imported_at = EXCLUDED.imported_at
    """

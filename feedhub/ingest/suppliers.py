"""Supplier persistence with a short-lived read-through cache."""

from __future__ import annotations

import logging
import os
import pathlib
import time
from typing import Any, Mapping

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql import text

from feedhub.ingest.errors import SupplierConfigError, SupplierNotFoundError
from feedhub.ingest.formats import content_type_for_path
from feedhub.ingest.models import SOURCE_UPLOAD, Supplier
from feedhub.utils.blob import BlobStore, BlobStoreError
from feedhub.utils.dates import as_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = float(os.environ.get("SUPPLIER_CACHE_TTL", "30"))

SUPPLIER_COLUMNS = """
    id, workspace_id, name, source_type, endpoint_url, source_path, auth_username, auth_password,
    schedule_cron, schedule_enabled, uid_source_key, is_draft, status, last_sync_status,
    last_sync_completed_at
"""


class SupplierCache:
    def __init__(self, ttl: float = DEFAULT_CACHE_TTL) -> None:
        self.ttl = ttl
        self._data: dict[str, tuple[float, Supplier]] = {}

    def get(self, supplier_id: str) -> Supplier | None:
        entry = self._data.get(supplier_id)
        if entry is None:
            return None
        expires, supplier = entry
        if expires < time.monotonic():
            self._data.pop(supplier_id, None)
            return None
        return supplier

    def set(self, supplier: Supplier) -> None:
        if self.ttl <= 0:
            return
        self._data[supplier.id] = (time.monotonic() + self.ttl, supplier)

    def invalidate(self, supplier_id: str) -> None:
        self._data.pop(supplier_id, None)


def _row_to_supplier(row: Mapping[str, Any]) -> Supplier:
    return Supplier(
        id=str(row["id"]),
        workspace_id=str(row["workspace_id"]),
        name=row["name"],
        source_type=row["source_type"],
        endpoint_url=row["endpoint_url"],
        source_path=row["source_path"],
        auth_username=row["auth_username"],
        auth_password=row["auth_password"],
        schedule_cron=row["schedule_cron"],
        schedule_enabled=bool(row["schedule_enabled"]),
        uid_source_key=row["uid_source_key"],
        is_draft=bool(row["is_draft"]),
        status=row["status"] or "active",
        last_sync_status=row["last_sync_status"],
        last_sync_completed_at=as_utc(row["last_sync_completed_at"]),
    )


class SupplierRepository:
    def __init__(self, engine: Engine, *, blob_store: BlobStore | None = None, cache: SupplierCache | None = None) -> None:
        self.engine = engine
        self.blob_store = blob_store
        self.cache = cache or SupplierCache()

    def get(self, supplier_id: str) -> Supplier | None:
        cached = self.cache.get(supplier_id)
        if cached is not None:
            return cached
        with self.engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {SUPPLIER_COLUMNS} FROM suppliers WHERE id = :id"),
                {"id": supplier_id},
            ).mappings().first()
        if row is None:
            return None
        supplier = _row_to_supplier(row)
        self.cache.set(supplier)
        return supplier

    def require(self, supplier_id: str) -> Supplier:
        supplier = self.get(supplier_id)
        if supplier is None:
            raise SupplierNotFoundError(f"Supplier {supplier_id} not found")
        return supplier

    def list_scheduled(self) -> list[Supplier]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {SUPPLIER_COLUMNS} FROM suppliers
                    WHERE schedule_enabled = :enabled AND is_draft = :draft AND schedule_cron IS NOT NULL
                    ORDER BY id
                    """
                ),
                {"enabled": True, "draft": False},
            ).mappings().all()
        return [_row_to_supplier(row) for row in rows]

    def mark_synced(self, supplier_id: str, completed_at=None, *, conn: Connection | None = None) -> None:
        params = {"id": supplier_id, "completed_at": completed_at or utc_now(), "updated_at": utc_now()}
        stmt = text(
            """
            UPDATE suppliers SET
              status = 'active',
              last_sync_status = 'completed',
              last_sync_completed_at = :completed_at,
              updated_at = :updated_at
            WHERE id = :id
            """
        )
        if conn is not None:
            # caller invalidates once its transaction commits
            conn.execute(stmt, params)
            return
        with self.engine.begin() as own:
            own.execute(stmt, params)
        self.cache.invalidate(supplier_id)

    def set_uid_source_key(self, supplier_id: str, key: str) -> Supplier:
        key = (key or "").strip()
        if not key:
            raise SupplierConfigError("UID source key is required")
        self.cache.invalidate(supplier_id)
        supplier = self.require(supplier_id)
        if supplier.uid_source_key:
            if supplier.uid_source_key != key:
                raise SupplierConfigError(
                    f"UID source key already set to {supplier.uid_source_key!r} and cannot be changed"
                )
            return supplier
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE suppliers SET uid_source_key = :key, updated_at = :updated_at
                    WHERE id = :id AND uid_source_key IS NULL
                    """
                ),
                {"id": supplier_id, "key": key, "updated_at": utc_now()},
            )
        self.cache.invalidate(supplier_id)
        logger.info("Set UID source key %r for supplier %s", key, supplier_id)
        return self.require(supplier_id)

    def store_upload(self, supplier: Supplier, filename: str, data: bytes, *, content_type: str | None = None) -> str:
        if self.blob_store is None:
            raise SupplierConfigError("No blob store configured")
        name = pathlib.PurePosixPath(filename.replace("\\", "/")).name
        if not name or name in {".", ".."}:
            raise SupplierConfigError(f"Invalid upload filename {filename!r}")
        path = f"{supplier.workspace_id}/{supplier.id}/{name}"
        self.blob_store.upload(
            path,
            data,
            content_type=content_type or content_type_for_path(name),
            upsert=True,
        )
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE suppliers SET source_type = :source_type, source_path = :path, updated_at = :updated_at
                    WHERE id = :id
                    """
                ),
                {"id": supplier.id, "source_type": SOURCE_UPLOAD, "path": path, "updated_at": utc_now()},
            )
        self.cache.invalidate(supplier.id)
        logger.info("Stored upload for supplier %s at %s (%s bytes)", supplier.id, path, len(data))
        return path

    def delete(self, supplier: Supplier) -> None:
        if supplier.source_type == SOURCE_UPLOAD and supplier.source_path and self.blob_store is not None:
            try:
                self.blob_store.remove([supplier.source_path])
            except BlobStoreError as exc:
                logger.warning("Could not remove blob %s for supplier %s: %s", supplier.source_path, supplier.id, exc)
        with self.engine.begin() as conn:
            for table in ("products_mapped", "feed_ingestions", "field_mappings"):
                conn.execute(text(f"DELETE FROM {table} WHERE supplier_id = :id"), {"id": supplier.id})
            conn.execute(text("DELETE FROM suppliers WHERE id = :id"), {"id": supplier.id})
        self.cache.invalidate(supplier.id)
        logger.info("Deleted supplier %s", supplier.id)

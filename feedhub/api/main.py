"""FastAPI application for supplier feeds, field mappings and imports."""

from __future__ import annotations

import functools
import logging
from datetime import datetime
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine

from feedhub.db.session import create_engine_from_env
from feedhub.ingest.errors import (
    FetchError,
    MappingResolutionError,
    ParseError,
    SupplierConfigError,
    SupplierNotFoundError,
    UpsertError,
)
from feedhub.ingest.mapping import FieldMappingResolver, field_ref, ref_key
from feedhub.ingest.models import FieldMapping, MappingOverride, Supplier
from feedhub.ingest.orchestrator import IngestionOrchestrator
from feedhub.ingest.runs import IngestionRunRepository
from feedhub.ingest.suppliers import SupplierCache, SupplierRepository
from feedhub.ingest.upsert import MergeUpsertEngine
from feedhub.utils.blob import BlobStore, BlobStoreError, blob_store_from_env
from feedhub.utils.dates import utc_now

logger = logging.getLogger(__name__)

MAX_SAMPLE_KEYS = 200
SAMPLE_RECORDS = 50
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500

load_dotenv()
app = FastAPI(title="Supplier Feed Hub API")

supplier_cache = SupplierCache()


class MappingOverrideIn(BaseModel):
    custom_field_id: str
    source_field: str


class ImportRequest(BaseModel):
    mappings: list[MappingOverrideIn] | None = None


class DiscoverRequest(BaseModel):
    content: str
    content_type: str | None = None


class DiscoverResponse(BaseModel):
    type: str
    keys: list[str]


class FieldMappingIn(BaseModel):
    source_key: str
    field_key: str


class SampleKeysResponse(DiscoverResponse):
    suggestions: list[FieldMappingIn]


class FieldMappingSet(BaseModel):
    mappings: list[FieldMappingIn]


class UidSourceRequest(BaseModel):
    uid_source_key: str = Field(min_length=1)


class IngestionInfo(BaseModel):
    id: str
    status: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    items_total: int = 0
    items_success: int = 0
    items_errors: int = 0
    duration_ms: int | None = None
    error_message: str | None = None
    uid_allocation_degraded: bool = False


class RawRecord(BaseModel):
    uid: str
    fields: dict[str, Any]


class RawDataResponse(BaseModel):
    supplier_id: str
    type: str | None = None
    records: list[RawRecord]
    total: int
    page: int
    limit: int
    total_pages: int
    fetch_error: str | None = None
    fetched_at: datetime
    latest_ingestion: IngestionInfo | None = None


class MappedRow(BaseModel):
    uid: str
    fields: dict[str, Any]
    source_file: str | None = None
    source_uid: str | None = None
    ingestion_id: str | None = None
    imported_at: datetime | None = None


class MappedDataResponse(BaseModel):
    supplier_id: str
    rows: list[MappedRow]
    total: int
    page: int
    limit: int
    total_pages: int
    field_mappings: list[FieldMappingIn]
    latest_ingestion: IngestionInfo | None = None


@functools.lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_engine_from_env()


@functools.lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    return blob_store_from_env()


def get_suppliers(
    engine: Engine = Depends(get_engine), blob_store: BlobStore = Depends(get_blob_store)
) -> SupplierRepository:
    return SupplierRepository(engine, blob_store=blob_store, cache=supplier_cache)


def _require_supplier(suppliers: SupplierRepository, supplier_id: str) -> Supplier:
    supplier = suppliers.get(supplier_id)
    if supplier is None:
        raise HTTPException(status_code=404, detail="Supplier not found")
    return supplier


@app.post("/suppliers/{supplier_id}/import")
async def import_supplier(
    supplier_id: str,
    payload: ImportRequest | None = None,
    engine: Engine = Depends(get_engine),
    blob_store: BlobStore = Depends(get_blob_store),
    suppliers: SupplierRepository = Depends(get_suppliers),
) -> JSONResponse:
    _require_supplier(suppliers, supplier_id)
    overrides = None
    if payload and payload.mappings:
        overrides = [MappingOverride(m.custom_field_id, m.source_field) for m in payload.mappings]
    orchestrator = IngestionOrchestrator(engine, blob_store=blob_store, suppliers=suppliers)
    try:
        result = await orchestrator.run_ingestion(supplier_id, overrides)
    finally:
        await orchestrator.close()
    return JSONResponse(result.as_dict(), status_code=200 if result.success else 500)


@app.get("/suppliers/{supplier_id}/sample-keys", response_model=SampleKeysResponse)
async def sample_keys(
    supplier_id: str,
    engine: Engine = Depends(get_engine),
    blob_store: BlobStore = Depends(get_blob_store),
    suppliers: SupplierRepository = Depends(get_suppliers),
) -> SampleKeysResponse:
    supplier = _require_supplier(suppliers, supplier_id)
    orchestrator = IngestionOrchestrator(engine, blob_store=blob_store, suppliers=suppliers)
    try:
        fmt, keys = await orchestrator.discover_field_names(supplier_id, sample=SAMPLE_RECORDS)
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ParseError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        await orchestrator.close()
    keys = keys[:MAX_SAMPLE_KEYS]
    resolver = FieldMappingResolver(engine)
    try:
        custom_fields = resolver.load_custom_fields(supplier.workspace_id)
    except MappingResolutionError as exc:
        logger.warning("Returning sample keys for supplier %s without suggestions: %s", supplier_id, exc)
        custom_fields = []
    suggestions = resolver.suggest_mappings(custom_fields, keys)
    return SampleKeysResponse(
        type=fmt,
        keys=keys,
        suggestions=[FieldMappingIn(source_key=s.source_key, field_key=s.field_key) for s in suggestions],
    )


@app.post("/fields/discover", response_model=DiscoverResponse)
async def discover_fields(payload: DiscoverRequest, engine: Engine = Depends(get_engine)) -> DiscoverResponse:
    orchestrator = IngestionOrchestrator(engine)
    try:
        fmt, keys = await orchestrator.discover_field_names(
            content=payload.content, content_type=payload.content_type, sample=SAMPLE_RECORDS
        )
    except ParseError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        await orchestrator.close()
    return DiscoverResponse(type=fmt, keys=keys[:MAX_SAMPLE_KEYS])


def _total_pages(total: int, limit: int) -> int:
    return (total + limit - 1) // limit


@app.get("/suppliers/{supplier_id}/raw-data", response_model=RawDataResponse)
async def raw_data(
    supplier_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    engine: Engine = Depends(get_engine),
    blob_store: BlobStore = Depends(get_blob_store),
    suppliers: SupplierRepository = Depends(get_suppliers),
) -> RawDataResponse:
    _require_supplier(suppliers, supplier_id)
    orchestrator = IngestionOrchestrator(engine, blob_store=blob_store, suppliers=suppliers)
    fmt, records, fetch_error = None, [], None
    try:
        fmt, records = await orchestrator.preview_records(supplier_id)
    except (FetchError, ParseError) as exc:
        # reported in the body, not as an HTTP error
        logger.warning("Preview for supplier %s failed: %s", supplier_id, exc)
        fetch_error = str(exc)
    finally:
        await orchestrator.close()
    latest = IngestionRunRepository(engine).latest(supplier_id)
    offset = (page - 1) * limit
    return RawDataResponse(
        supplier_id=supplier_id,
        type=fmt,
        records=[RawRecord(uid=record.uid, fields=record.fields) for record in records[offset : offset + limit]],
        total=len(records),
        page=page,
        limit=limit,
        total_pages=_total_pages(len(records), limit),
        fetch_error=fetch_error,
        fetched_at=utc_now(),
        latest_ingestion=IngestionInfo(**latest) if latest else None,
    )


@app.get("/suppliers/{supplier_id}/mapped-data", response_model=MappedDataResponse)
async def mapped_data(
    supplier_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    engine: Engine = Depends(get_engine),
    suppliers: SupplierRepository = Depends(get_suppliers),
) -> MappedDataResponse:
    supplier = _require_supplier(suppliers, supplier_id)
    resolver = FieldMappingResolver(engine)
    try:
        custom_fields = resolver.load_custom_fields(supplier.workspace_id)
        stored = resolver.load_field_mappings(supplier_id)
    except MappingResolutionError as exc:
        logger.warning("Listing mapped rows for supplier %s without mappings: %s", supplier_id, exc)
        custom_fields, stored = [], []
    id_to_key = {f.id: f.key for f in custom_fields}
    try:
        rows, total = MergeUpsertEngine(engine).list_rows(
            supplier.workspace_id, supplier_id, offset=(page - 1) * limit, limit=limit, id_to_key=id_to_key
        )
    except UpsertError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    latest = IngestionRunRepository(engine).latest(supplier_id)
    return MappedDataResponse(
        supplier_id=supplier_id,
        rows=[MappedRow(**row) for row in rows],
        total=total,
        page=page,
        limit=limit,
        total_pages=_total_pages(total, limit),
        field_mappings=[
            FieldMappingIn(source_key=m.source_key, field_key=ref_key(field_ref(m.field_key, id_to_key), id_to_key))
            for m in stored
        ],
        latest_ingestion=IngestionInfo(**latest) if latest else None,
    )


@app.get("/suppliers/{supplier_id}/field-mappings", response_model=FieldMappingSet)
async def get_field_mappings(
    supplier_id: str,
    engine: Engine = Depends(get_engine),
    suppliers: SupplierRepository = Depends(get_suppliers),
) -> FieldMappingSet:
    _require_supplier(suppliers, supplier_id)
    stored = FieldMappingResolver(engine).load_field_mappings(supplier_id)
    return FieldMappingSet(mappings=[FieldMappingIn(source_key=m.source_key, field_key=m.field_key) for m in stored])


@app.put("/suppliers/{supplier_id}/field-mappings")
async def put_field_mappings(
    supplier_id: str,
    payload: FieldMappingSet,
    engine: Engine = Depends(get_engine),
    suppliers: SupplierRepository = Depends(get_suppliers),
) -> JSONResponse:
    supplier = _require_supplier(suppliers, supplier_id)
    pairs = [FieldMapping(source_key=m.source_key, field_key=m.field_key) for m in payload.mappings]
    try:
        saved = FieldMappingResolver(engine).save_field_mappings(supplier.workspace_id, supplier.id, pairs)
    except SupplierConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse({"status": "ok", "saved": saved})


@app.put("/suppliers/{supplier_id}/uid-source")
async def set_uid_source(
    supplier_id: str,
    payload: UidSourceRequest,
    suppliers: SupplierRepository = Depends(get_suppliers),
) -> JSONResponse:
    try:
        supplier = suppliers.set_uid_source_key(supplier_id, payload.uid_source_key)
    except SupplierNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Supplier not found") from exc
    except SupplierConfigError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return JSONResponse({"status": "ok", "uid_source_key": supplier.uid_source_key})


@app.post("/suppliers/{supplier_id}/upload")
async def upload_feed(
    supplier_id: str,
    request: Request,
    filename: str = Query(..., min_length=1),
    suppliers: SupplierRepository = Depends(get_suppliers),
) -> JSONResponse:
    supplier = _require_supplier(suppliers, supplier_id)
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")
    try:
        path = suppliers.store_upload(supplier, filename, data, content_type=request.headers.get("content-type"))
    except SupplierConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except BlobStoreError as exc:
        logger.warning("Upload for supplier %s failed: %s", supplier_id, exc)
        raise HTTPException(status_code=502, detail="Blob storage unavailable") from exc
    return JSONResponse({"status": "ok", "source_path": path})


@app.delete("/suppliers/{supplier_id}")
async def delete_supplier(
    supplier_id: str,
    suppliers: SupplierRepository = Depends(get_suppliers),
) -> JSONResponse:
    supplier = _require_supplier(suppliers, supplier_id)
    suppliers.delete(supplier)
    return JSONResponse({"status": "deleted"})

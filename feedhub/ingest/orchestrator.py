"""Ingestion run orchestration."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Callable, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from feedhub.ingest.errors import FetchError, SupplierNotFoundError
from feedhub.ingest.fetcher import FeedFetcher
from feedhub.ingest.formats import detect_format
from feedhub.ingest.mapping import FieldMappingResolver
from feedhub.ingest.models import IngestionResult, IngestionStats, MappingOverride, ParsedRecord, Supplier, UpsertOutcome
from feedhub.ingest.parsers import discover_field_names, parse_records
from feedhub.ingest.runs import COMPLETED, FAILED, IngestionRunRepository
from feedhub.ingest.suppliers import SupplierRepository
from feedhub.ingest.uids import UidAllocator, assign_stable_uids
from feedhub.ingest.upsert import MergeUpsertEngine
from feedhub.utils.blob import BlobStore
from feedhub.utils.dates import elapsed_ms, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE = 50


class IngestionOrchestrator:
    def __init__(
        self,
        engine: Engine,
        *,
        blob_store: BlobStore | None = None,
        fetcher: FeedFetcher | None = None,
        suppliers: SupplierRepository | None = None,
        runs: IngestionRunRepository | None = None,
        resolver: FieldMappingResolver | None = None,
        allocator: UidAllocator | None = None,
        upserter: MergeUpsertEngine | None = None,
    ) -> None:
        self.engine = engine
        self.fetcher = fetcher or FeedFetcher(blob_store)
        self.suppliers = suppliers or SupplierRepository(engine, blob_store=blob_store)
        self.runs = runs or IngestionRunRepository(engine)
        self.resolver = resolver or FieldMappingResolver(engine)
        self.allocator = allocator or UidAllocator(engine)
        self.upserter = upserter or MergeUpsertEngine(engine)

    async def close(self) -> None:
        await self.fetcher.close()

    async def _call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        return await asyncio.get_running_loop().run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def run_ingestion(
        self, supplier_id: str, mappings: Sequence[MappingOverride] | None = None
    ) -> IngestionResult:
        try:
            supplier = await self._call(self.suppliers.get, supplier_id)
        except SQLAlchemyError as exc:
            logger.exception("Could not load supplier %s", supplier_id)
            return IngestionResult(success=False, error=f"Failed to load supplier: {exc}")
        if supplier is None:
            logger.warning("Ingestion requested for unknown supplier %s", supplier_id)
            return IngestionResult(success=False, error=f"Supplier {supplier_id} not found")

        started = utc_now()
        try:
            run_id = await self._call(self.runs.create_running, supplier.workspace_id, supplier.id)
        except SQLAlchemyError as exc:
            logger.exception("Could not create ingestion record for supplier %s", supplier.id)
            return IngestionResult(success=False, error=f"Failed to create ingestion record: {exc}")
        logger.info("Started ingestion %s for supplier %s", run_id, supplier.id)
        try:
            records, outcome, degraded = await self._execute(supplier, run_id, mappings)
            duration = elapsed_ms(started)
            await self._call(self._complete, supplier, run_id, len(records), outcome, degraded, duration)
        except Exception as exc:
            duration = elapsed_ms(started)
            logger.exception("Ingestion %s for supplier %s failed", run_id, supplier.id)
            await self._record_failure(run_id, str(exc), duration)
            return IngestionResult(
                success=False,
                results=IngestionStats(
                    total_products=0,
                    new_products=0,
                    updated_products=0,
                    errors=0,
                    duration_ms=duration,
                    status=FAILED,
                    ingestion_id=run_id,
                ),
                error=str(exc),
            )

        logger.info(
            "Completed ingestion %s for supplier %s: %s records, %s new, %s updated in %sms",
            run_id,
            supplier.id,
            len(records),
            outcome.new,
            outcome.updated,
            duration,
        )
        return IngestionResult(
            success=True,
            results=IngestionStats(
                total_products=len(records),
                new_products=outcome.new,
                updated_products=outcome.updated,
                errors=0,
                duration_ms=duration,
                status=COMPLETED,
                ingestion_id=run_id,
                uid_allocation_degraded=degraded,
            ),
        )

    async def _execute(
        self, supplier: Supplier, run_id: str, mappings: Sequence[MappingOverride] | None
    ) -> tuple[list[ParsedRecord], UpsertOutcome, bool]:
        fetched = await self.fetcher.fetch(supplier)
        fmt = detect_format(fetched.content_type, fetched.content)
        records = parse_records(fetched.content, fmt)
        logger.info("Parsed %s %s records for supplier %s", len(records), fmt, supplier.id)

        record_keys = {name for record in records for name in record.fields}
        mapping = await self._call(
            self.resolver.resolve,
            supplier.workspace_id,
            supplier.id,
            overrides=mappings,
            record_keys=record_keys,
        )
        snapshot = await self._call(self.upserter.load_existing, supplier.workspace_id, supplier.id)
        if not supplier.uid_source_key:
            logger.warning("Supplier %s has no UID source key; allocating fresh UIDs for every record", supplier.id)
        assignment = await self._call(
            assign_stable_uids,
            records,
            uid_source_key=supplier.uid_source_key,
            known=snapshot.uid_by_source,
            allocate=functools.partial(self.allocator.allocate, supplier.workspace_id),
            taken=snapshot.fields_by_uid.keys(),
        )
        outcome = await self._call(
            self.upserter.merge_and_upsert,
            supplier.workspace_id,
            supplier.id,
            run_id,
            records,
            mapping,
            assignment.uids,
            snapshot.fields_by_uid,
            source_file=supplier.source_file,
            source_uids=assignment.source_uids,
        )
        return records, outcome, assignment.degraded

    def _complete(
        self,
        supplier: Supplier,
        run_id: str,
        total: int,
        outcome: UpsertOutcome,
        degraded: bool,
        duration: int,
    ) -> None:
        completed_at = utc_now()
        with self.engine.begin() as conn:
            self.runs.complete(
                run_id,
                items_total=total,
                items_success=outcome.upserted,
                duration_ms=duration,
                degraded=degraded,
                completed_at=completed_at,
                conn=conn,
            )
            self.suppliers.mark_synced(supplier.id, completed_at, conn=conn)
        self.suppliers.cache.invalidate(supplier.id)

    async def _record_failure(self, run_id: str, message: str, duration: int) -> None:
        try:
            await self._call(self.runs.fail, run_id, message, duration_ms=duration)
        except SQLAlchemyError:
            logger.exception("Could not mark ingestion %s as failed", run_id)

    async def discover_field_names(
        self,
        supplier_id: str | None = None,
        content: str | None = None,
        content_type: str | None = None,
        sample: int | None = DEFAULT_SAMPLE,
    ) -> tuple[str, list[str]]:
        """Return the detected format and the sorted field names of a feed.

        Either ``content`` is inspected directly or the supplier's current
        source is fetched.
        """
        if content is None:
            if supplier_id is None:
                raise FetchError("Either supplier_id or content is required")
            supplier = await self._call(self.suppliers.get, supplier_id)
            if supplier is None:
                raise SupplierNotFoundError(f"Supplier {supplier_id} not found")
            fetched = await self.fetcher.fetch(supplier)
            content, content_type = fetched.content, fetched.content_type
        fmt = detect_format(content_type, content)
        return fmt, discover_field_names(content, fmt, sample=sample)

    async def preview_records(self, supplier_id: str) -> tuple[str, list[ParsedRecord]]:
        """Fetch and parse the supplier's current source without persisting anything."""
        supplier = await self._call(self.suppliers.get, supplier_id)
        if supplier is None:
            raise SupplierNotFoundError(f"Supplier {supplier_id} not found")
        fetched = await self.fetcher.fetch(supplier)
        fmt = detect_format(fetched.content_type, fetched.content)
        records = parse_records(fetched.content, fmt)
        logger.info("Previewed %s %s records for supplier %s", len(records), fmt, supplier_id)
        return fmt, records

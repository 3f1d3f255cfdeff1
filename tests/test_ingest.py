import base64
import json

import httpx
import pytest
import respx
from sqlalchemy import text

from conftest import SUPPLIER_ID, WORKSPACE_ID, add_mappings, add_supplier
from feedhub.ingest.errors import FetchError
from feedhub.ingest.fetcher import FeedFetcher
from feedhub.ingest.models import SOURCE_UPLOAD, MappingOverride, Supplier
from feedhub.ingest.orchestrator import IngestionOrchestrator
from feedhub.ingest.suppliers import SupplierCache, SupplierRepository
from feedhub.ingest.runs import IngestionRunRepository
from feedhub.ingest.uids import UidAllocator

FEED_URL = "https://feeds.acme.test/products.csv"
CSV_FEED = "sku,name,price,stock\nA-1,Widget,\"12,50\",yes\nB-2,Gadget,7,no\n"


def _orchestrator(engine, supplier_repo, blob_store, session, **kwargs):
    fetcher = FeedFetcher(blob_store, session=session, retries=1)
    return IngestionOrchestrator(engine, blob_store=blob_store, fetcher=fetcher, suppliers=supplier_repo, **kwargs)


def _products(engine):
    with engine.connect() as conn:
        rows = conn.execute(
            text("SELECT uid, fields, source_file, source_uid FROM products_mapped ORDER BY CAST(uid AS INTEGER)")
        ).all()
    return [(uid, json.loads(fields), source_file, source_uid) for uid, fields, source_file, source_uid in rows]


def _runs(engine):
    with engine.connect() as conn:
        return [dict(row) for row in conn.execute(text("SELECT * FROM feed_ingestions ORDER BY started_at")).mappings()]


@pytest.mark.asyncio
async def test_fetch_url_with_basic_auth(blob_store):
    supplier = Supplier(
        id="s", workspace_id="w", name="n", source_type="url", endpoint_url=FEED_URL,
        auth_username="acme", auth_password="s3cret",
    )
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(FEED_URL).mock(
            return_value=httpx.Response(200, text=CSV_FEED, headers={"Content-Type": "text/csv"})
        )
        async with httpx.AsyncClient() as session:
            result = await FeedFetcher(blob_store, session=session, retries=1).fetch(supplier)
    assert result.content == CSV_FEED
    assert result.content_type == "text/csv"
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"acme:s3cret").decode()
    assert "SupplierFeedHub/1.0" in request.headers["User-Agent"]


@pytest.mark.asyncio
async def test_fetch_http_error_carries_status(blob_store):
    supplier = Supplier(id="s", workspace_id="w", name="n", source_type="url", endpoint_url=FEED_URL)
    async with respx.mock() as router:
        router.get(FEED_URL).mock(return_value=httpx.Response(404))
        async with httpx.AsyncClient() as session:
            with pytest.raises(FetchError) as excinfo:
                await FeedFetcher(blob_store, session=session, retries=1).fetch(supplier)
    assert excinfo.value.status_code == 404
    assert excinfo.value.status_text == "Not Found"


@pytest.mark.asyncio
async def test_fetch_transport_error_is_wrapped(blob_store):
    supplier = Supplier(id="s", workspace_id="w", name="n", source_type="url", endpoint_url=FEED_URL)
    async with respx.mock() as router:
        router.get(FEED_URL).mock(side_effect=httpx.ConnectError("dns failure"))
        async with httpx.AsyncClient() as session:
            with pytest.raises(FetchError):
                await FeedFetcher(blob_store, session=session, retries=1).fetch(supplier)


@pytest.mark.asyncio
async def test_fetch_upload_decodes_and_sniffs_type(blob_store):
    blob_store.upload("w/s/feed.json", b'\xef\xbb\xbf[{"id": 1, "name": "caf\xe9"}]')
    supplier = Supplier(id="s", workspace_id="w", name="n", source_type=SOURCE_UPLOAD, source_path="w/s/feed.json")
    async with httpx.AsyncClient() as session:
        result = await FeedFetcher(blob_store, session=session).fetch(supplier)
    assert result.content_type == "application/json"
    assert result.content.startswith("[")
    assert "\ufffd" in result.content

    missing = Supplier(id="s", workspace_id="w", name="n", source_type=SOURCE_UPLOAD, source_path="w/s/none.csv")
    async with httpx.AsyncClient() as session:
        with pytest.raises(FetchError):
            await FeedFetcher(blob_store, session=session).fetch(missing)


@pytest.mark.asyncio
async def test_url_ingestion_end_to_end(seeded_engine, supplier_repo, blob_store):
    add_mappings(seeded_engine, [("name", "title"), ("stock", "in_stock")])
    async with respx.mock(assert_all_called=True) as router:
        router.get(FEED_URL).mock(return_value=httpx.Response(200, text=CSV_FEED, headers={"Content-Type": "text/csv"}))
        async with httpx.AsyncClient() as session:
            orchestrator = _orchestrator(seeded_engine, supplier_repo, blob_store, session)
            result = await orchestrator.run_ingestion(SUPPLIER_ID)

    assert result.success, result.error
    stats = result.results
    assert (stats.total_products, stats.new_products, stats.updated_products, stats.errors) == (2, 2, 0, 0)
    assert stats.status == "completed"
    assert not stats.uid_allocation_degraded

    products = _products(seeded_engine)
    assert [p[0] for p in products] == ["1", "2"]
    assert products[0][1] == {"sku": "A-1", "title": "Widget", "price": 12.5, "in_stock": True}
    assert products[1][1] == {"sku": "B-2", "title": "Gadget", "price": 7, "in_stock": False}
    assert products[0][2] == FEED_URL

    (run,) = _runs(seeded_engine)
    assert run["id"] == stats.ingestion_id
    assert run["status"] == "completed"
    assert (run["items_total"], run["items_success"], run["items_errors"]) == (2, 2, 0)
    assert run["completed_at"] is not None

    supplier = supplier_repo.get(SUPPLIER_ID)
    assert supplier.status == "active"
    assert supplier.last_sync_status == "completed"
    assert supplier.last_sync_completed_at is not None


@pytest.mark.asyncio
async def test_reimport_with_uid_source_key_is_idempotent(seeded_engine, supplier_repo, blob_store):
    supplier_repo.set_uid_source_key(SUPPLIER_ID, "sku")
    async with respx.mock() as router:
        route = router.get(FEED_URL)
        route.mock(return_value=httpx.Response(200, text=CSV_FEED, headers={"Content-Type": "text/csv"}))
        async with httpx.AsyncClient() as session:
            orchestrator = _orchestrator(seeded_engine, supplier_repo, blob_store, session)
            first = await orchestrator.run_ingestion(SUPPLIER_ID)
            before = _products(seeded_engine)
            second = await orchestrator.run_ingestion(SUPPLIER_ID)

    assert first.success and second.success
    assert _products(seeded_engine) == before
    assert [p[3] for p in before] == ["A-1", "B-2"]
    assert (second.results.new_products, second.results.updated_products) == (0, 2)
    assert [run["status"] for run in _runs(seeded_engine)] == ["completed", "completed"]


@pytest.mark.asyncio
async def test_resync_preserves_fields_missing_from_feed(seeded_engine, supplier_repo, blob_store):
    supplier_repo.set_uid_source_key(SUPPLIER_ID, "sku")
    add_mappings(seeded_engine, [("name", "title")])
    feeds = [CSV_FEED, "sku,name,price\nA-1,null,15\n"]
    async with respx.mock() as router:
        router.get(FEED_URL).mock(
            side_effect=[httpx.Response(200, text=body, headers={"Content-Type": "text/csv"}) for body in feeds]
        )
        async with httpx.AsyncClient() as session:
            orchestrator = _orchestrator(seeded_engine, supplier_repo, blob_store, session)
            await orchestrator.run_ingestion(SUPPLIER_ID)
            result = await orchestrator.run_ingestion(SUPPLIER_ID)

    assert result.success
    products = {p[3]: p[1] for p in _products(seeded_engine)}
    assert products["A-1"] == {"sku": "A-1", "title": "Widget", "price": 15}
    assert products["B-2"]["price"] == 7


@pytest.mark.asyncio
async def test_upload_ingestion_with_overrides(seeded_engine, supplier_repo, blob_store):
    supplier = supplier_repo.get(SUPPLIER_ID)
    feed = b"<items><item><code>X1</code><label>Lamp</label></item><item><code>X2</code></item></items>"
    path = supplier_repo.store_upload(supplier, "catalog.xml", feed)
    assert path == f"{WORKSPACE_ID}/{SUPPLIER_ID}/catalog.xml"

    async with httpx.AsyncClient() as session:
        orchestrator = _orchestrator(seeded_engine, supplier_repo, blob_store, session)
        result = await orchestrator.run_ingestion(
            SUPPLIER_ID, [MappingOverride("cf-sku", "code"), MappingOverride("cf-title", "LABEL")]
        )

    assert result.success, result.error
    products = _products(seeded_engine)
    assert [p[1] for p in products] == [{"sku": "X1", "title": "Lamp"}, {"sku": "X2"}]
    assert {p[2] for p in products} == {path}


@pytest.mark.asyncio
async def test_failed_fetch_marks_run_failed_and_leaves_supplier(seeded_engine, supplier_repo, blob_store):
    async with respx.mock() as router:
        router.get(FEED_URL).mock(return_value=httpx.Response(503))
        async with httpx.AsyncClient() as session:
            orchestrator = _orchestrator(seeded_engine, supplier_repo, blob_store, session)
            result = await orchestrator.run_ingestion(SUPPLIER_ID)

    assert not result.success
    assert "503" in result.error
    (run,) = _runs(seeded_engine)
    assert run["status"] == "failed"
    assert "503" in run["error_message"]
    assert run["completed_at"] is not None
    supplier = supplier_repo.get(SUPPLIER_ID)
    assert supplier.status == "draft"
    assert supplier.last_sync_status is None
    assert _products(seeded_engine) == []


@pytest.mark.asyncio
async def test_invalid_json_fails_run(seeded_engine, supplier_repo, blob_store):
    supplier_id = add_supplier(seeded_engine, source_type="upload", source_path="ws-1/x/feed.json")
    blob_store.upload("ws-1/x/feed.json", b"{not json")
    async with httpx.AsyncClient() as session:
        orchestrator = _orchestrator(seeded_engine, supplier_repo, blob_store, session)
        result = await orchestrator.run_ingestion(supplier_id)
    assert not result.success
    assert "Invalid JSON" in result.error
    assert IngestionRunRepository(seeded_engine).latest_status(supplier_id) == "failed"


@pytest.mark.asyncio
async def test_unknown_supplier_creates_no_run(seeded_engine, supplier_repo, blob_store):
    async with httpx.AsyncClient() as session:
        orchestrator = _orchestrator(seeded_engine, supplier_repo, blob_store, session)
        result = await orchestrator.run_ingestion("missing")
    assert not result.success
    assert result.results is None
    assert _runs(seeded_engine) == []


@pytest.mark.asyncio
async def test_degraded_allocation_is_reported(seeded_engine, supplier_repo, blob_store):
    with seeded_engine.begin() as conn:
        conn.execute(text("DROP TABLE workspace_uid_counters"))
    async with respx.mock() as router:
        router.get(FEED_URL).mock(return_value=httpx.Response(200, text=CSV_FEED))
        async with httpx.AsyncClient() as session:
            orchestrator = _orchestrator(
                seeded_engine, supplier_repo, blob_store, session, allocator=UidAllocator(seeded_engine)
            )
            result = await orchestrator.run_ingestion(SUPPLIER_ID)
    assert result.success
    assert result.results.uid_allocation_degraded
    assert [p[0] for p in _products(seeded_engine)] == ["1", "2"]
    (run,) = _runs(seeded_engine)
    assert run["uid_allocation_degraded"]


@pytest.mark.asyncio
async def test_discover_field_names(seeded_engine, supplier_repo, blob_store):
    async with respx.mock() as router:
        router.get(FEED_URL).mock(return_value=httpx.Response(200, text=CSV_FEED, headers={"Content-Type": "text/csv"}))
        async with httpx.AsyncClient() as session:
            orchestrator = _orchestrator(seeded_engine, supplier_repo, blob_store, session)
            fmt, keys = await orchestrator.discover_field_names(SUPPLIER_ID)
            raw_fmt, raw_keys = await orchestrator.discover_field_names(content='[{"b": 1, "a": 2}]')
    assert (fmt, keys) == ("csv", ["name", "price", "sku", "stock"])
    assert (raw_fmt, raw_keys) == ("json", ["a", "b"])


@pytest.mark.asyncio
async def test_run_record_failure_is_reported_not_raised(seeded_engine, supplier_repo, blob_store):
    with seeded_engine.begin() as conn:
        conn.execute(text("DROP TABLE feed_ingestions"))
    async with httpx.AsyncClient() as session:
        orchestrator = _orchestrator(seeded_engine, supplier_repo, blob_store, session)
        result = await orchestrator.run_ingestion(SUPPLIER_ID)
    assert not result.success
    assert result.results is None
    assert "ingestion record" in result.error
    assert result.as_dict()["success"] is False
    assert _products(seeded_engine) == []


@pytest.mark.asyncio
async def test_supplier_lookup_failure_is_reported_not_raised(seeded_engine, supplier_repo, blob_store):
    with seeded_engine.begin() as conn:
        conn.execute(text("DROP TABLE suppliers"))
    async with httpx.AsyncClient() as session:
        orchestrator = _orchestrator(seeded_engine, supplier_repo, blob_store, session)
        result = await orchestrator.run_ingestion(SUPPLIER_ID)
    assert not result.success
    assert result.results is None
    assert "supplier" in result.error


@pytest.mark.asyncio
async def test_completed_run_refreshes_cached_supplier(seeded_engine, blob_store):
    repo = SupplierRepository(seeded_engine, blob_store=blob_store, cache=SupplierCache(ttl=60))
    assert repo.get(SUPPLIER_ID).last_sync_status is None
    async with respx.mock() as router:
        router.get(FEED_URL).mock(return_value=httpx.Response(200, text=CSV_FEED))
        async with httpx.AsyncClient() as session:
            result = await _orchestrator(seeded_engine, repo, blob_store, session).run_ingestion(SUPPLIER_ID)
    assert result.success
    assert repo.get(SUPPLIER_ID).last_sync_status == "completed"


@pytest.mark.asyncio
async def test_degraded_allocation_keeps_rows_imported_before_uid_key(seeded_engine, supplier_repo, blob_store):
    with seeded_engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO products_mapped (workspace_id, supplier_id, uid, fields) "
                "VALUES (:ws, :sup, '1', :fields)"
            ),
            {"ws": WORKSPACE_ID, "sup": SUPPLIER_ID, "fields": json.dumps({"title": "Legacy"})},
        )
        conn.execute(text("DROP TABLE workspace_uid_counters"))
    supplier_repo.set_uid_source_key(SUPPLIER_ID, "sku")
    async with respx.mock() as router:
        router.get(FEED_URL).mock(return_value=httpx.Response(200, text=CSV_FEED))
        async with httpx.AsyncClient() as session:
            orchestrator = _orchestrator(
                seeded_engine, supplier_repo, blob_store, session, allocator=UidAllocator(seeded_engine)
            )
            result = await orchestrator.run_ingestion(SUPPLIER_ID)
    assert result.success
    assert result.results.uid_allocation_degraded
    products = {p[0]: p for p in _products(seeded_engine)}
    assert products["1"][1] == {"title": "Legacy"}
    assert products["2"][3] == "A-1"
    assert products["3"][3] == "B-2"

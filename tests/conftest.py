import uuid

import pytest
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    JSON,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.pool import StaticPool

from feedhub.ingest.suppliers import SupplierCache, SupplierRepository
from feedhub.utils.blob import LocalBlobStore

WORKSPACE_ID = "ws-1"
SUPPLIER_ID = "sup-1"

metadata = MetaData()

suppliers = Table(
    "suppliers",
    metadata,
    Column("id", Text, primary_key=True),
    Column("workspace_id", Text, nullable=False),
    Column("name", Text, nullable=False),
    Column("source_type", Text, nullable=False, default="url"),
    Column("endpoint_url", Text),
    Column("source_path", Text),
    Column("auth_username", Text),
    Column("auth_password", Text),
    Column("schedule_cron", Text),
    Column("schedule_enabled", Boolean, default=False),
    Column("uid_source_key", Text),
    Column("is_draft", Boolean, default=False),
    Column("status", Text, default="active"),
    Column("last_sync_status", Text),
    Column("last_sync_completed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

custom_fields = Table(
    "custom_fields",
    metadata,
    Column("id", Text, primary_key=True),
    Column("workspace_id", Text, nullable=False),
    Column("key", Text, nullable=False),
    Column("name", Text, nullable=False),
    Column("datatype", Text, nullable=False, default="text"),
    Column("is_required", Boolean, default=False),
    Column("is_unique", Boolean, default=False),
    Column("sort_order", Integer, default=0),
    Column("use_for_category_mapping", Boolean, default=False),
    UniqueConstraint("workspace_id", "key"),
)

field_mappings = Table(
    "field_mappings",
    metadata,
    Column("id", Text, primary_key=True),
    Column("workspace_id", Text, nullable=False),
    Column("supplier_id", Text, nullable=False),
    Column("source_key", Text, nullable=False),
    Column("field_key", Text, nullable=False),
    Column("created_at", DateTime(timezone=True)),
    UniqueConstraint("supplier_id", "source_key"),
)

feed_ingestions = Table(
    "feed_ingestions",
    metadata,
    Column("id", Text, primary_key=True),
    Column("workspace_id", Text, nullable=False),
    Column("supplier_id", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
    Column("items_total", Integer, default=0),
    Column("items_success", Integer, default=0),
    Column("items_errors", Integer, default=0),
    Column("duration_ms", Integer),
    Column("error_message", Text),
    Column("uid_allocation_degraded", Boolean, default=False),
)

products_mapped = Table(
    "products_mapped",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Text, nullable=False),
    Column("supplier_id", Text, nullable=False),
    Column("ingestion_id", Text),
    Column("uid", Text, nullable=False),
    Column("fields", JSON, nullable=False),
    Column("source_file", Text),
    Column("source_uid", Text),
    Column("imported_at", DateTime(timezone=True)),
    UniqueConstraint("workspace_id", "supplier_id", "uid"),
)

workspace_uid_counters = Table(
    "workspace_uid_counters",
    metadata,
    Column("workspace_id", Text, primary_key=True),
    Column("last_uid", BigInteger, nullable=False, default=0),
)

CUSTOM_FIELDS = [
    {"key": "sku", "name": "SKU", "datatype": "text"},
    {"key": "title", "name": "Title", "datatype": "text"},
    {"key": "price", "name": "Price", "datatype": "number"},
    {"key": "in_stock", "name": "In stock", "datatype": "bool"},
    {"key": "updated", "name": "Updated", "datatype": "date"},
]


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture()
def seeded_engine(engine):
    with engine.begin() as conn:
        conn.execute(
            custom_fields.insert(),
            [
                {"id": f"cf-{item['key']}", "workspace_id": WORKSPACE_ID, "sort_order": order, **item}
                for order, item in enumerate(CUSTOM_FIELDS)
            ],
        )
        conn.execute(
            suppliers.insert(),
            {
                "id": SUPPLIER_ID,
                "workspace_id": WORKSPACE_ID,
                "name": "Acme Wholesale",
                "source_type": "url",
                "endpoint_url": "https://feeds.acme.test/products.csv",
                "auth_username": "acme",
                "auth_password": "s3cret",
                "status": "draft",
            },
        )
    return engine


@pytest.fixture()
def supplier_repo(seeded_engine, blob_store):
    return SupplierRepository(seeded_engine, blob_store=blob_store, cache=SupplierCache(ttl=0))


def add_supplier(engine, **values):
    row = {
        "id": str(uuid.uuid4()),
        "workspace_id": WORKSPACE_ID,
        "name": "Extra Supplier",
        "source_type": "url",
        **values,
    }
    with engine.begin() as conn:
        conn.execute(suppliers.insert(), row)
    return row["id"]


def add_mappings(engine, pairs, supplier_id=SUPPLIER_ID):
    with engine.begin() as conn:
        conn.execute(
            field_mappings.insert(),
            [
                {
                    "id": str(uuid.uuid4()),
                    "workspace_id": WORKSPACE_ID,
                    "supplier_id": supplier_id,
                    "source_key": source,
                    "field_key": target,
                }
                for source, target in pairs
            ],
        )

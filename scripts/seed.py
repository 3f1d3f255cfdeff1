"""Seed a workspace with preset custom fields and a demo supplier."""

from __future__ import annotations

import argparse
import uuid

from dotenv import load_dotenv
from sqlalchemy import text

from feedhub.db.session import create_engine_from_env
from feedhub.ingest import load_field_presets
from feedhub.ingest.models import SOURCE_URL

DEMO_SUPPLIER = {
    "name": "Demo Supplier",
    "source_type": SOURCE_URL,
    "endpoint_url": "https://example.com/feed.xml",
}


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("workspace_id")
    parser.add_argument("--with-supplier", action="store_true")
    args = parser.parse_args()

    load_dotenv()
    engine = create_engine_from_env()
    presets = load_field_presets()
    with engine.begin() as conn:
        for order, preset in enumerate(presets):
            conn.execute(
                text(
                    """
                    INSERT INTO custom_fields (id, workspace_id, key, name, datatype, sort_order)
                    VALUES (:id, :workspace_id, :key, :name, :datatype, :sort_order)
                    ON CONFLICT (workspace_id, key) DO UPDATE SET
                      name = EXCLUDED.name,
                      datatype = EXCLUDED.datatype,
                      sort_order = EXCLUDED.sort_order
                    """
                ),
                {
                    "id": str(uuid.uuid4()),
                    "workspace_id": args.workspace_id,
                    "key": preset.key,
                    "name": preset.name,
                    "datatype": preset.datatype,
                    "sort_order": order,
                },
            )
        if args.with_supplier:
            conn.execute(
                text(
                    """
                    INSERT INTO suppliers (id, workspace_id, name, source_type, endpoint_url)
                    VALUES (:id, :workspace_id, :name, :source_type, :endpoint_url)
                    """
                ),
                {"id": str(uuid.uuid4()), "workspace_id": args.workspace_id, **DEMO_SUPPLIER},
            )
    print(f"Seeded {len(presets)} custom fields for workspace {args.workspace_id}")


if __name__ == "__main__":
    main()

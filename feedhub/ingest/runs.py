"""Ingestion run records."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql import text

from feedhub.utils.dates import as_utc, utc_now

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"


class IngestionRunRepository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_running(self, workspace_id: str, supplier_id: str) -> str:
        run_id = str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO feed_ingestions
                        (id, workspace_id, supplier_id, status, started_at,
                         items_total, items_success, items_errors, uid_allocation_degraded)
                    VALUES (:id, :workspace_id, :supplier_id, :status, :started_at, 0, 0, 0, :degraded)
                    """
                ),
                {
                    "id": run_id,
                    "workspace_id": workspace_id,
                    "supplier_id": supplier_id,
                    "status": RUNNING,
                    "started_at": utc_now(),
                    "degraded": False,
                },
            )
        return run_id

    def complete(
        self,
        run_id: str,
        *,
        items_total: int,
        items_success: int,
        duration_ms: int,
        degraded: bool = False,
        completed_at=None,
        conn: Connection | None = None,
    ) -> None:
        self._update(
            """
            UPDATE feed_ingestions SET
              status = :status,
              completed_at = :completed_at,
              items_total = :items_total,
              items_success = :items_success,
              items_errors = 0,
              duration_ms = :duration_ms,
              uid_allocation_degraded = :degraded
            WHERE id = :id
            """,
            {
                "id": run_id,
                "status": COMPLETED,
                "completed_at": completed_at or utc_now(),
                "items_total": items_total,
                "items_success": items_success,
                "duration_ms": duration_ms,
                "degraded": degraded,
            },
            conn,
        )

    def fail(self, run_id: str, error_message: str, *, duration_ms: int) -> None:
        self._update(
            """
            UPDATE feed_ingestions SET
              status = :status,
              completed_at = :completed_at,
              error_message = :error_message,
              duration_ms = :duration_ms
            WHERE id = :id
            """,
            {
                "id": run_id,
                "status": FAILED,
                "completed_at": utc_now(),
                "error_message": error_message,
                "duration_ms": duration_ms,
            },
            None,
        )

    def latest_status(self, supplier_id: str) -> str | None:
        run = self.latest(supplier_id)
        return run["status"] if run else None

    def latest(self, supplier_id: str) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT id, status, started_at, completed_at, items_total, items_success,
                           items_errors, duration_ms, error_message, uid_allocation_degraded
                    FROM feed_ingestions
                    WHERE supplier_id = :supplier_id
                    ORDER BY started_at DESC
                    LIMIT 1
                    """
                ),
                {"supplier_id": supplier_id},
            ).mappings().first()
        if row is None:
            return None
        run = dict(row)
        run["started_at"] = as_utc(run["started_at"])
        run["completed_at"] = as_utc(run["completed_at"])
        run["uid_allocation_degraded"] = bool(run["uid_allocation_degraded"])
        return run

    def latest_started_at(self, supplier_id: str) -> datetime | None:
        with self.engine.connect() as conn:
            started = conn.execute(
                text("SELECT MAX(started_at) FROM feed_ingestions WHERE supplier_id = :supplier_id"),
                {"supplier_id": supplier_id},
            ).scalar_one_or_none()
        return as_utc(started)

    def _update(self, sql: str, params: dict[str, Any], conn: Connection | None) -> None:
        if conn is not None:
            conn.execute(text(sql), params)
            return
        with self.engine.begin() as own:
            own.execute(text(sql), params)

"""Scheduled supplier feed synchronisation."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

import pendulum
from celery.schedules import ParseException, crontab
from dotenv import load_dotenv

from feedhub.db.session import create_engine_from_env
from feedhub.ingest.orchestrator import IngestionOrchestrator
from feedhub.ingest.runs import RUNNING, IngestionRunRepository
from feedhub.ingest.suppliers import SupplierRepository
from feedhub.utils.blob import blob_store_from_env
from feedhub.utils.dates import timezone_name, utc_now

logger = logging.getLogger(__name__)


def parse_cron(expression: str) -> crontab:
    parts = expression.split()
    if len(parts) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(parts)}: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = parts
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except ParseException as exc:
        raise ValueError(f"Invalid cron expression {expression!r}: {exc}") from exc


def _local(moment: datetime, tz: str) -> datetime:
    return pendulum.instance(moment).in_timezone(tz).naive()


def cron_fired_between(schedule: crontab, start: datetime, end: datetime) -> bool:
    """True when ``schedule`` has a firing minute in ``(start, end]`` (naive local times)."""
    moment = start.replace(second=0, microsecond=0) + timedelta(minutes=1)
    while moment <= end:
        if (
            moment.month not in schedule.month_of_year
            or moment.day not in schedule.day_of_month
            or moment.isoweekday() % 7 not in schedule.day_of_week
        ):
            moment = (moment + timedelta(days=1)).replace(hour=0, minute=0)
            continue
        if moment.hour not in schedule.hour:
            moment = (moment + timedelta(hours=1)).replace(minute=0)
            continue
        if moment.minute in schedule.minute:
            return True
        moment += timedelta(minutes=1)
    return False


def is_due(
    expression: str,
    last_completed: datetime | None,
    now: datetime,
    tz: str | None = None,
    last_started: datetime | None = None,
) -> bool:
    """True when the schedule fired since the last successful sync or attempted run, whichever is later."""
    schedule = parse_cron(expression)
    marks = [moment for moment in (last_completed, last_started) if moment is not None]
    if not marks:
        return True
    tz = tz or timezone_name()
    return cron_fired_between(schedule, _local(max(marks), tz), _local(now, tz))


async def run_scheduled_syncs(now: datetime | None = None) -> dict[str, bool]:
    load_dotenv()
    now = now or utc_now()
    engine = create_engine_from_env()
    blob_store = blob_store_from_env()
    suppliers = SupplierRepository(engine, blob_store=blob_store)
    runs = IngestionRunRepository(engine)
    orchestrator = IngestionOrchestrator(engine, blob_store=blob_store, suppliers=suppliers, runs=runs)
    outcomes: dict[str, bool] = {}
    try:
        for supplier in suppliers.list_scheduled():
            try:
                due = is_due(
                    supplier.schedule_cron,
                    supplier.last_sync_completed_at,
                    now,
                    last_started=runs.latest_started_at(supplier.id),
                )
            except ValueError as exc:
                logger.warning("Skipping supplier %s: %s", supplier.id, exc)
                continue
            if not due:
                continue
            if runs.latest_status(supplier.id) == RUNNING:
                logger.info("Skipping supplier %s: previous run still in progress", supplier.id)
                continue
            result = await orchestrator.run_ingestion(supplier.id)
            outcomes[supplier.id] = result.success
            if not result.success:
                logger.warning("Scheduled sync for supplier %s failed: %s", supplier.id, result.error)
    finally:
        await orchestrator.close()
    logger.info("Scheduled sync finished: %s suppliers run", len(outcomes))
    return outcomes


async def run_supplier_ingestion(supplier_id: str) -> dict:
    load_dotenv()
    engine = create_engine_from_env()
    orchestrator = IngestionOrchestrator(engine, blob_store=blob_store_from_env())
    try:
        result = await orchestrator.run_ingestion(supplier_id)
    finally:
        await orchestrator.close()
    return result.as_dict()


if __name__ == "__main__":
    asyncio.run(run_scheduled_syncs())

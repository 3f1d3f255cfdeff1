"""Celery configuration for scheduled feed syncs."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from feedhub.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("feedhub", broker=broker_url, backend=backend_url, include=["feedhub.jobs.sync"])
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "supplier-sync": {
        "task": "feedhub.jobs.sync.run_scheduled_syncs",
        "schedule": crontab(minute=f"*/{int(os.environ.get('SYNC_CHECK_MINUTES', '5'))}"),
    },
}


@celery_app.task(name="feedhub.jobs.sync.run_scheduled_syncs")
def run_scheduled_syncs_task():  # pragma: no cover - executed by worker
    import asyncio

    from feedhub.jobs.sync import run_scheduled_syncs

    return asyncio.run(run_scheduled_syncs())


@celery_app.task(name="feedhub.jobs.sync.run_supplier_ingestion")
def run_supplier_ingestion_task(supplier_id: str):  # pragma: no cover - executed by worker
    import asyncio

    from feedhub.jobs.sync import run_supplier_ingestion

    return asyncio.run(run_supplier_ingestion(supplier_id))

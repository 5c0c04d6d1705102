"""Maintenance / scheduled tasks."""

from __future__ import annotations

import asyncio

from celery.utils.log import get_task_logger
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from toolexport.api.deps import build_export_services
from toolexport.core.celery_app import celery_app
from toolexport.core.config import settings
from toolexport.core.database import build_session_factory


logger = get_task_logger(__name__)


def _run_async(coro):
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = None

    if loop is not None and loop.is_running():
        new_loop = asyncio.new_event_loop()
        try:
            return new_loop.run_until_complete(coro)
        finally:
            new_loop.close()

    return asyncio.run(coro)


def _broker_enabled() -> bool:
    broker = celery_app.conf.broker_url
    return bool(broker) and not str(broker).startswith("memory://")


async def _cleanup_expired_packages_async() -> dict:
    # Fresh engine per run: pooled connections cannot cross event loops.
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    try:
        services = build_export_services(build_session_factory(engine), settings)
        result = await services.cleanup.run()
    finally:
        await engine.dispose()

    logger.info(
        "Expired export packages cleaned: %s removed, %s bytes freed, %s jobs purged",
        result.deleted_count,
        result.freed_space_bytes,
        result.purged_jobs,
    )
    return {"ok": True, **result.to_dict()}


@celery_app.task(bind=True)
def cleanup_expired_packages_task(self):
    """Delete expired export packages and purge terminal jobs past retention."""

    if not _broker_enabled():
        return {
            "ok": True,
            "skipped": True,
            "reason": "broker_disabled",
        }

    try:
        return _run_async(_cleanup_expired_packages_async())
    except Exception:
        logger.exception("Cleanup expired export packages task failed")
        raise

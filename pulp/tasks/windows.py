"""Betting window tasks.

Drives windows through their lifecycle on a timer:
1. Opening scheduled windows when their start time passes
2. Locking open windows once their countdown runs out
3. Refunding and closing locked windows no round settled in time
"""

import asyncio
from typing import Any

import structlog
from celery import shared_task

from pulp.models.base import get_task_session
from pulp.services.windows import WindowScheduler

logger = structlog.get_logger(__name__)


async def open_due_windows(db) -> dict[str, Any]:
    try:
        stats = await WindowScheduler(db).open_due_windows()
        await db.commit()
    except Exception as e:
        logger.error("open_due_windows_failed", error=str(e))
        await db.rollback()
        raise
    return stats


async def lock_expired_windows(db) -> dict[str, Any]:
    try:
        locked = await WindowScheduler(db).lock_expired_windows()
        await db.commit()
    except Exception as e:
        logger.error("lock_expired_windows_failed", error=str(e))
        await db.rollback()
        raise
    if locked:
        logger.info("expired_windows_locked", windows_locked=locked)
    return {"windows_locked": locked}


@shared_task(name="pulp.tasks.windows.open_due_windows_task", queue="pulp")
def open_due_windows_task() -> dict[str, Any]:
    """
    Celery task to open scheduled windows.

    Runs every minute.
    """
    async def _run():
        async with get_task_session() as db:
            return await open_due_windows(db)

    return asyncio.run(_run())


@shared_task(name="pulp.tasks.windows.lock_expired_windows_task", queue="pulp")
def lock_expired_windows_task() -> dict[str, Any]:
    """
    Celery task to lock windows whose countdown ran out.

    Runs every 30 seconds.
    """
    async def _run():
        async with get_task_session() as db:
            return await lock_expired_windows(db)

    return asyncio.run(_run())


@shared_task(name="pulp.tasks.windows.expire_stale_windows_task", queue="pulp")
def expire_stale_windows_task() -> dict[str, Any]:
    """
    Celery task to refund locked windows past their expiry.

    Runs hourly. Each window commits on its own.
    """
    async def _run():
        async with get_task_session() as db:
            return await WindowScheduler(db).expire_stale_windows()

    return asyncio.run(_run())

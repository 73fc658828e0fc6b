"""Round settlement task.

Picks up rounds whose scores were finalized and settles every blessing,
challenge, advantage and reward bound to them.
"""

import asyncio
from typing import Any

import structlog
from celery import shared_task

from pulp.models.base import get_task_session
from pulp.services.settlement import SettlementProcessor

logger = structlog.get_logger(__name__)


@shared_task(name="pulp.tasks.settlement.settle_finalized_rounds_task", queue="pulp")
def settle_finalized_rounds_task() -> dict[str, Any]:
    """
    Celery task to settle finalized rounds.

    Runs every 5 minutes. Replays are safe: settled wagers are skipped.
    """
    async def _run():
        async with get_task_session() as db:
            return await SettlementProcessor(db).settle_finalized_rounds()

    return asyncio.run(_run())

"""Admin API endpoints.

Provides window control, manual settlement and task triggers.
These endpoints should be protected in production (not implemented here).
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.api.dependencies import get_db
from pulp.api.routes.windows import WindowResponse, window_response
from pulp.services.advantages import AdvantageStore
from pulp.services.settlement import SettlementProcessor
from pulp.services.windows import WindowScheduler

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = structlog.get_logger(__name__)


class TaskTriggerResponse(BaseModel):
    """Response from task trigger."""
    task_name: str
    task_id: str
    status: str
    message: str


class LockBettingResponse(BaseModel):
    window: WindowResponse
    bets_locked: int
    predictions_locked: int
    challenges_locked: int


class ScheduleWindowRequest(BaseModel):
    opens_at: datetime
    closes_at: datetime
    opened_by: int | None = None


# Map of friendly names to actual Celery task names
TASK_MAP = {
    "open-due-windows": "pulp.tasks.windows.open_due_windows_task",
    "lock-expired-windows": "pulp.tasks.windows.lock_expired_windows_task",
    "expire-stale-windows": "pulp.tasks.windows.expire_stale_windows_task",
    "settle-finalized-rounds": "pulp.tasks.settlement.settle_finalized_rounds_task",
}


@router.post("/windows/schedule", response_model=WindowResponse, status_code=201)
async def schedule_window(
    body: ScheduleWindowRequest,
    db: AsyncSession = Depends(get_db),
):
    """Schedule a window; the beat task opens it when opens_at passes."""
    window = await WindowScheduler(db).schedule_window(
        body.opens_at, body.closes_at, opened_by=body.opened_by
    )
    await db.commit()
    return window_response(window)


@router.post("/windows/{window_id}/lock", response_model=LockBettingResponse)
async def lock_betting(window_id: int, db: AsyncSession = Depends(get_db)):
    """Stop taking wagers on a window. Escrowed PULPs stay escrowed."""
    result = await WindowScheduler(db).lock_window(window_id)
    await db.commit()
    return LockBettingResponse(
        window=window_response(result.window),
        bets_locked=result.bets_locked,
        predictions_locked=result.predictions_locked,
        challenges_locked=result.challenges_locked,
    )


@router.post("/rounds/{round_id}/settle", response_model=dict[str, Any])
async def settle_round(round_id: int, db: AsyncSession = Depends(get_db)):
    """
    Settle a finalized round now instead of waiting for the beat task.

    Safe to repeat: already settled wagers are skipped.
    """
    stats = await SettlementProcessor(db).settle_round(round_id)
    logger.info("round_settled_manually", round_id=round_id)
    return stats


@router.post("/advantages/sync-catalog", response_model=dict[str, int])
async def sync_catalog(db: AsyncSession = Depends(get_db)):
    """Upsert the configured advantage catalog."""
    stats = await AdvantageStore(db).sync_catalog()
    await db.commit()
    return stats


@router.post("/trigger-task/{task_name}", response_model=TaskTriggerResponse)
async def trigger_task(task_name: str) -> TaskTriggerResponse:
    """
    Manually trigger a background task.

    Available tasks:
    - open-due-windows: Open scheduled windows whose start time passed
    - lock-expired-windows: Lock open windows whose countdown ran out
    - expire-stale-windows: Refund locked windows no round settled in time
    - settle-finalized-rounds: Settle every finalized, unsettled round
    """
    if task_name not in TASK_MAP:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown task: {task_name}. Available: {list(TASK_MAP.keys())}"
        )

    celery_task_name = TASK_MAP[task_name]

    try:
        from pulp.tasks import celery_app

        result = celery_app.send_task(celery_task_name)

        logger.info(
            "task_triggered_manually",
            task_name=task_name,
            celery_task=celery_task_name,
            task_id=result.id,
        )

        return TaskTriggerResponse(
            task_name=task_name,
            task_id=result.id,
            status="submitted",
            message=f"Task {task_name} submitted successfully. Check Celery logs for progress."
        )

    except Exception as e:
        logger.error(
            "task_trigger_failed",
            task_name=task_name,
            error=str(e),
        )
        raise HTTPException(
            status_code=500,
            detail=f"Failed to trigger task: {str(e)}"
        )


@router.get("/tasks", response_model=dict[str, str])
async def list_tasks() -> dict[str, str]:
    """List all available tasks that can be triggered manually."""
    return TASK_MAP

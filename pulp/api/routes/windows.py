"""Betting window endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.api.dependencies import get_current_player, get_db
from pulp.models.domain import BettingWindow, Player
from pulp.services.windows import WindowScheduler, is_accepting, seconds_remaining

router = APIRouter(prefix="/api/pulp", tags=["pulp"])


class WindowResponse(BaseModel):
    id: int
    status: str
    accepting: bool
    opens_at: datetime
    closes_at: datetime
    locked_at: datetime | None
    expires_at: datetime | None
    seconds_remaining: int
    opened_by: int | None


class ActiveWindowResponse(BaseModel):
    window: WindowResponse | None


def window_response(window: BettingWindow) -> WindowResponse:
    return WindowResponse(
        id=window.id,
        status=window.status,
        accepting=is_accepting(window),
        opens_at=window.opens_at,
        closes_at=window.closes_at,
        locked_at=window.locked_at,
        expires_at=window.expires_at,
        seconds_remaining=seconds_remaining(window),
        opened_by=window.opened_by,
    )


@router.get("/window", response_model=ActiveWindowResponse)
async def get_active_window(db: AsyncSession = Depends(get_db)):
    """The current open or locked window with its countdown."""
    active = await WindowScheduler(db).get_active_window()
    if active is None:
        return ActiveWindowResponse(window=None)
    return ActiveWindowResponse(window=window_response(active.window))


@router.post("/window/open", response_model=WindowResponse, status_code=201)
async def open_window(
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """Open a five-minute PULPy window. Only one window can be open at a time."""
    window = await WindowScheduler(db).open_window(opened_by=player.id)
    await db.commit()
    return window_response(window)

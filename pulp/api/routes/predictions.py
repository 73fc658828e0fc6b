"""Prediction (blessing) endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.api.dependencies import get_current_player, get_db
from pulp.models.domain import Player, Prediction
from pulp.services.predictions import PredictionMarket
from pulp.services.rewards import try_weekly_bonus

router = APIRouter(prefix="/api/pulp/predictions", tags=["pulp"])


class PlacePredictionRequest(BaseModel):
    window_id: int
    picks: list[str] = Field(..., description="First, second and third place, in order")
    wager: int
    event_id: int | None = None
    round_id: int | None = None


class PredictionResponse(BaseModel):
    id: int
    window_id: int | None
    event_id: int | None
    round_id: int | None
    picks: list[str]
    wager: int
    status: str
    payout: int
    placed_at: datetime
    resolved_at: datetime | None


class PlacePredictionResponse(BaseModel):
    prediction: PredictionResponse
    balance: int
    weekly_bonus: int


def prediction_response(prediction: Prediction) -> PredictionResponse:
    return PredictionResponse(
        id=prediction.id,
        window_id=prediction.window_id,
        event_id=prediction.event_id,
        round_id=prediction.round_id,
        picks=prediction.picks,
        wager=prediction.wager,
        status=prediction.status,
        payout=prediction.payout,
        placed_at=prediction.placed_at,
        resolved_at=prediction.resolved_at,
    )


@router.post("", response_model=PlacePredictionResponse, status_code=201)
async def place_prediction(
    body: PlacePredictionRequest,
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """Bless three players for the next round and escrow the wager."""
    prediction = await PredictionMarket(db).place_prediction(
        player_id=player.id,
        picks=body.picks,
        wager=body.wager,
        window_id=body.window_id,
        event_id=body.event_id,
        round_id=body.round_id,
    )
    bonus = await try_weekly_bonus(db, player.id)
    await db.commit()
    return PlacePredictionResponse(
        prediction=prediction_response(prediction),
        balance=player.pulp_balance,
        weekly_bonus=bonus,
    )


@router.get("", response_model=list[PredictionResponse])
async def list_predictions(
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=100),
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """The calling player's predictions, newest first."""
    predictions = await PredictionMarket(db).list_for_player(player.id, status, limit)
    return [prediction_response(p) for p in predictions]

"""Head-to-head challenge endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.api.dependencies import get_current_player, get_db
from pulp.models.domain import Challenge, Player
from pulp.services.challenges import ChallengeEngine
from pulp.services.rewards import try_weekly_bonus

router = APIRouter(prefix="/api/pulp/challenges", tags=["pulp"])


class IssueChallengeRequest(BaseModel):
    challenged_id: int
    wager: int
    window_id: int | None = None
    round_id: int | None = None


class RespondChallengeRequest(BaseModel):
    accept: bool


class ChallengeResponse(BaseModel):
    id: int
    challenger_id: int
    challenged_id: int
    window_id: int | None
    round_id: int | None
    wager: int
    status: str
    winner_id: int | None
    refunded_amount: int
    cowardice_tax: int
    issued_at: datetime
    responded_at: datetime | None
    resolved_at: datetime | None


class ChallengeActionResponse(BaseModel):
    challenge: ChallengeResponse
    balance: int
    weekly_bonus: int = 0


def challenge_response(challenge: Challenge) -> ChallengeResponse:
    return ChallengeResponse(
        id=challenge.id,
        challenger_id=challenge.challenger_id,
        challenged_id=challenge.challenged_id,
        window_id=challenge.window_id,
        round_id=challenge.round_id,
        wager=challenge.wager,
        status=challenge.status,
        winner_id=challenge.winner_id,
        refunded_amount=challenge.refunded_amount,
        cowardice_tax=challenge.cowardice_tax,
        issued_at=challenge.issued_at,
        responded_at=challenge.responded_at,
        resolved_at=challenge.resolved_at,
    )


@router.post("", response_model=ChallengeActionResponse, status_code=201)
async def issue_challenge(
    body: IssueChallengeRequest,
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """Challenge a higher-ranked player; the wager is escrowed immediately."""
    challenge = await ChallengeEngine(db).issue(
        challenger_id=player.id,
        challenged_id=body.challenged_id,
        wager=body.wager,
        round_id=body.round_id,
        window_id=body.window_id,
    )
    bonus = await try_weekly_bonus(db, player.id)
    await db.commit()
    return ChallengeActionResponse(
        challenge=challenge_response(challenge),
        balance=player.pulp_balance,
        weekly_bonus=bonus,
    )


@router.post("/{challenge_id}/respond", response_model=ChallengeActionResponse)
async def respond_to_challenge(
    challenge_id: int,
    body: RespondChallengeRequest,
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """Accept (escrow a matching wager) or decline (challenger keeps half)."""
    challenge = await ChallengeEngine(db).respond(challenge_id, player.id, body.accept)
    await db.commit()
    return ChallengeActionResponse(
        challenge=challenge_response(challenge),
        balance=player.pulp_balance,
    )


@router.get("", response_model=list[ChallengeResponse])
async def list_challenges(
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=100),
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """Challenges the calling player issued or received."""
    challenges = await ChallengeEngine(db).list_for_player(player.id, status, limit)
    return [challenge_response(c) for c in challenges]

"""PULP balance and transaction history endpoints."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.api.dependencies import get_current_player, get_db
from pulp.models.domain import Player
from pulp.services.ledger import MAX_HISTORY_LIMIT, Ledger

router = APIRouter(prefix="/api/pulp", tags=["pulp"])


class BalanceResponse(BaseModel):
    player_id: int
    name: str
    balance: int


class TransactionItem(BaseModel):
    id: int
    amount: int
    transaction_type: str
    description: str
    balance_after: int
    metadata: dict[str, Any] | None
    created_at: datetime


class TransactionHistory(BaseModel):
    transactions: list[TransactionItem]
    limit: int
    offset: int


class PlayerStatsResponse(BaseModel):
    player_id: int
    current_balance: int
    total_earned: int
    total_spent: int
    net_gain: int
    transaction_count: int
    by_type: dict[str, int]


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """Current PULP balance of the calling player."""
    balance = await Ledger(db).get_balance(player.id)
    return BalanceResponse(player_id=player.id, name=player.name, balance=balance)


@router.get("/transactions", response_model=TransactionHistory)
async def get_transactions(
    limit: int = Query(50, ge=1, le=MAX_HISTORY_LIMIT),
    offset: int = Query(0, ge=0),
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """Transaction history, newest first."""
    transactions = await Ledger(db).get_transactions(player.id, limit=limit, offset=offset)
    return TransactionHistory(
        transactions=[
            TransactionItem(
                id=t.id,
                amount=t.amount,
                transaction_type=t.transaction_type,
                description=t.description,
                balance_after=t.balance_after,
                metadata=t.extra,
                created_at=t.created_at,
            )
            for t in transactions
        ],
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=PlayerStatsResponse)
async def get_stats(
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """Lifetime earned/spent totals for the calling player."""
    stats = await Ledger(db).get_player_stats(player.id)
    return PlayerStatsResponse(**stats.__dict__)

"""Advantage store endpoints."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.api.dependencies import get_current_player, get_db
from pulp.models.domain import AdvantageCatalogEntry, Player
from pulp.services.advantages import ADVANTAGE_STATES, AdvantageStore, OwnedAdvantage
from pulp.services.rewards import try_weekly_bonus

router = APIRouter(prefix="/api/pulp/advantages", tags=["pulp"])


class CatalogItem(BaseModel):
    advantage_key: str
    name: str
    description: str
    icon: str
    pulp_cost: int
    expiration_hours: int


class OwnedAdvantageItem(BaseModel):
    id: int
    advantage_key: str
    name: str
    icon: str
    state: str
    purchased_at: datetime
    expires_at: datetime
    used_at: datetime | None
    round_id: int | None


class PurchaseRequest(BaseModel):
    advantage_key: str
    window_id: int


class PurchaseResponse(BaseModel):
    advantage: OwnedAdvantageItem
    balance: int
    weekly_bonus: int


class UseRequest(BaseModel):
    advantage_key: str
    round_id: int | None = None
    metadata: dict[str, Any] | None = None


def catalog_item(entry: AdvantageCatalogEntry) -> CatalogItem:
    return CatalogItem(
        advantage_key=entry.advantage_key,
        name=entry.name,
        description=entry.description,
        icon=entry.icon,
        pulp_cost=entry.pulp_cost,
        expiration_hours=entry.expiration_hours,
    )


def owned_item(owned: OwnedAdvantage) -> OwnedAdvantageItem:
    return OwnedAdvantageItem(
        id=owned.advantage.id,
        advantage_key=owned.advantage.advantage_key,
        name=owned.entry.name,
        icon=owned.entry.icon,
        state=owned.state,
        purchased_at=owned.advantage.purchased_at,
        expires_at=owned.advantage.expires_at,
        used_at=owned.advantage.used_at,
        round_id=owned.advantage.round_id,
    )


@router.get("/catalog", response_model=list[CatalogItem])
async def get_catalog(db: AsyncSession = Depends(get_db)):
    """Everything the store sells."""
    return [catalog_item(e) for e in await AdvantageStore(db).get_catalog()]


@router.get("", response_model=list[OwnedAdvantageItem])
async def list_advantages(
    status: str = Query("active", pattern="^(" + "|".join(ADVANTAGE_STATES) + ")$"),
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """The calling player's advantages: active, expired, used or all."""
    owned = await AdvantageStore(db).get_player_advantages(player.id, status)
    return [owned_item(o) for o in owned]


@router.post("/purchase", response_model=PurchaseResponse, status_code=201)
async def purchase_advantage(
    body: PurchaseRequest,
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """Buy an advantage while a window is open."""
    store = AdvantageStore(db)
    advantage = await store.purchase(player.id, body.advantage_key, body.window_id)
    entry = await store.get_catalog_entry(body.advantage_key)
    bonus = await try_weekly_bonus(db, player.id)
    await db.commit()
    return PurchaseResponse(
        advantage=owned_item(OwnedAdvantage(advantage=advantage, entry=entry, state="active")),
        balance=player.pulp_balance,
        weekly_bonus=bonus,
    )


@router.post("/use", response_model=OwnedAdvantageItem)
async def use_advantage(
    body: UseRequest,
    player: Player = Depends(get_current_player),
    db: AsyncSession = Depends(get_db),
):
    """Spend an active advantage, optionally recording it against a round."""
    store = AdvantageStore(db)
    advantage = await store.use_advantage(
        player.id, body.advantage_key, round_id=body.round_id, metadata=body.metadata
    )
    entry = await store.get_catalog_entry(body.advantage_key)
    await db.commit()
    return owned_item(OwnedAdvantage(advantage=advantage, entry=entry, state="used"))

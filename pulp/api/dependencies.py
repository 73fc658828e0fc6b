"""FastAPI dependencies for the PULP economy API."""

from collections.abc import AsyncGenerator

import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.config import get_settings
from pulp.models.base import async_session_factory
from pulp.models.domain import Player


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis client dependency."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url)
    try:
        yield client
    finally:
        await client.close()


async def get_current_player(
    x_player_id: int | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> Player:
    """
    Resolve the acting player.

    Authentication happens upstream; the gateway forwards the player id in
    the X-Player-Id header.
    """
    if x_player_id is None:
        raise HTTPException(status_code=401, detail="Missing X-Player-Id header")
    player = await db.get(Player, x_player_id)
    if player is None:
        raise HTTPException(status_code=401, detail="Unknown player")
    return player

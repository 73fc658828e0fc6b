"""Pytest configuration and fixtures for PULP economy tests."""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pulp.models.base import Base
from pulp.models.domain import (
    BettingWindow,
    Event,
    EventPlayer,
    Player,
    PlayerRound,
    Round,
)
from pulp.services.advantages import AdvantageStore
from pulp.services.windows import WindowScheduler


@pytest.fixture
async def engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class LeagueFactory:
    """Builds league data (players, seasons, rounds, windows) for tests."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def player(self, name: str, balance: int = 100) -> Player:
        player = Player(name=name, pulp_balance=balance)
        self.db.add(player)
        await self.db.flush()
        return player

    async def players(self, *names: str, balance: int = 100) -> list[Player]:
        return [await self.player(name, balance) for name in names]

    async def season(self, name: str = "2026 Season", *players: Player) -> Event:
        event = Event(
            name=name,
            event_type="season",
            is_active=True,
            start_date=date(2026, 3, 1),
        )
        self.db.add(event)
        await self.db.flush()
        for player in players:
            self.db.add(EventPlayer(event_id=event.id, player_id=player.id))
        await self.db.flush()
        return event

    async def round(
        self,
        event: Event,
        results: list[tuple[Player, int | None, int | None, int | None]],
        status: str = "finalized",
        played_on: date = date(2026, 10, 17),
        advantages_used: list[dict] | None = None,
        finalized_at: datetime | None = None,
    ) -> Round:
        """
        Create a round. results are (player, rank, strokes, season points).
        """
        round_ = Round(
            event_id=event.id,
            played_on=played_on,
            status=status,
            finalized_at=(finalized_at or datetime.now(timezone.utc))
            if status == "finalized"
            else None,
            advantages_used=advantages_used,
        )
        self.db.add(round_)
        await self.db.flush()
        for player, rank, strokes, points in results:
            self.db.add(
                PlayerRound(
                    round_id=round_.id,
                    player_id=player.id,
                    rank=rank,
                    total_strokes=strokes,
                    final_total=points,
                )
            )
        await self.db.flush()
        return round_

    async def open_window(self, now: datetime | None = None) -> BettingWindow:
        return await WindowScheduler(self.db).open_window(now=now)

    async def locked_window(self, now: datetime | None = None) -> BettingWindow:
        window = await self.open_window(now)
        result = await WindowScheduler(self.db).lock_window(window.id, now)
        return result.window

    async def catalog(self) -> None:
        await AdvantageStore(self.db).sync_catalog()

    async def balance(self, player: Player) -> int:
        await self.db.refresh(player)
        return player.pulp_balance


@pytest.fixture
def league(db):
    """League data factory bound to the test session."""
    return LeagueFactory(db)


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def later(now):
    """Far enough ahead that any five-minute window has run out."""
    return now + timedelta(minutes=10)

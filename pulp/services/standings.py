"""Read-only access to rounds, scores and season standings.

Rounds and scores are owned by the league CRUD subsystem. Every read here
is bounded by ``store_timeout_seconds`` so that a slow store surfaces as a
StoreTimeout instead of a hung request or settlement run.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TypeVar

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.config import get_economy_config, get_settings
from pulp.models.domain import Event, EventPlayer, Player, PlayerRound, Round
from pulp.services.errors import NotFound, StoreTimeout

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def normalize_name(name: str) -> str:
    """Case and whitespace insensitive key for player names."""
    return " ".join(name.split()).lower()


@dataclass
class RoundResult:
    """One player's line in a round."""
    player_id: int
    player_name: str
    rank: int | None
    total_strokes: int | None


@dataclass
class SeasonStanding:
    """A player's position in the season standings."""
    player_id: int
    player_name: str
    points: int
    rank: int


class _BoundedStore:
    def __init__(self, db: AsyncSession, timeout: float | None = None):
        self.db = db
        self.timeout = timeout if timeout is not None else get_settings().store_timeout_seconds

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("store_timeout", operation=operation, timeout=self.timeout)
            raise StoreTimeout(
                f"Round store did not answer within {self.timeout:g}s ({operation})"
            )


class RoundStore(_BoundedStore):
    """Final standings and stroke totals of rounds."""

    async def get_round(self, round_id: int) -> Round:
        round_ = await self._bounded("get_round", self.db.get(Round, round_id))
        if round_ is None:
            raise NotFound(f"Round {round_id} not found")
        return round_

    async def get_results(self, round_id: int) -> list[RoundResult]:
        """All ranked results of a round, best first."""
        async def _query():
            result = await self.db.execute(
                select(
                    PlayerRound.player_id,
                    Player.name,
                    PlayerRound.rank,
                    PlayerRound.total_strokes,
                )
                .join(Player, Player.id == PlayerRound.player_id)
                .where(PlayerRound.round_id == round_id)
                .order_by(
                    PlayerRound.rank.is_(None),
                    PlayerRound.rank,
                    PlayerRound.total_strokes,
                    PlayerRound.player_id,
                )
            )
            return [RoundResult(*row) for row in result]

        return await self._bounded("get_results", _query())

    async def get_final_standings(self, round_id: int) -> list[str]:
        """Names of the top 3 finishers in rank order (fewer if the field was small)."""
        results = await self.get_results(round_id)
        return [r.player_name for r in results if r.rank is not None][:3]

    async def get_scores(self, round_id: int) -> dict[int, int]:
        """Stroke totals by player id, for players with a recorded score."""
        results = await self.get_results(round_id)
        return {
            r.player_id: r.total_strokes
            for r in results
            if r.total_strokes is not None
        }

    async def get_registered_players(self, event_id: int | None = None) -> dict[str, Player]:
        """
        Players that can be picked, keyed by normalized name.

        With an event, only players registered for it; otherwise all
        active players.
        """
        async def _query():
            query = select(Player)
            if event_id is not None:
                query = query.join(EventPlayer, EventPlayer.player_id == Player.id).where(
                    EventPlayer.event_id == event_id
                )
            else:
                query = query.where(Player.is_active.is_(True))
            result = await self.db.execute(query)
            return {normalize_name(p.name): p for p in result.scalars()}

        return await self._bounded("get_registered_players", _query())


class StandingsProvider(_BoundedStore):
    """
    Season standings.

    A player's season points are the sum of their best N round totals
    (N = season_top_rounds), ranked descending. Tied players share a rank.
    """

    async def get_active_season(self) -> Event | None:
        async def _query():
            result = await self.db.execute(
                select(Event)
                .where(Event.event_type == "season", Event.is_active.is_(True))
                .order_by(Event.start_date.desc(), Event.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

        return await self._bounded("get_active_season", _query())

    async def get_season_standings(self, event_id: int | None = None) -> list[SeasonStanding]:
        if event_id is None:
            season = await self.get_active_season()
            if season is None:
                return []
            event_id = season.id

        async def _query():
            result = await self.db.execute(
                select(PlayerRound.player_id, Player.name, PlayerRound.final_total)
                .join(Round, Round.id == PlayerRound.round_id)
                .join(Player, Player.id == PlayerRound.player_id)
                .where(Round.event_id == event_id, PlayerRound.final_total.isnot(None))
            )
            return result.all()

        rows = await self._bounded("get_season_standings", _query())
        top_n = get_economy_config().standings.season_top_rounds

        totals: dict[int, list[int]] = defaultdict(list)
        names: dict[int, str] = {}
        for player_id, name, final_total in rows:
            totals[player_id].append(final_total)
            names[player_id] = name

        points = {
            player_id: sum(sorted(values, reverse=True)[:top_n])
            for player_id, values in totals.items()
        }
        ordered = sorted(points.items(), key=lambda item: (-item[1], item[0]))

        standings = []
        rank = 0
        previous = None
        for position, (player_id, total) in enumerate(ordered, start=1):
            if total != previous:
                rank = position
                previous = total
            standings.append(
                SeasonStanding(
                    player_id=player_id,
                    player_name=names[player_id],
                    points=total,
                    rank=rank,
                )
            )
        return standings

    async def get_season_rank(self, player_id: int, event_id: int | None = None) -> int | None:
        """Rank in the season standings, or None for unranked players."""
        for standing in await self.get_season_standings(event_id):
            if standing.player_id == player_id:
                return standing.rank
        return None

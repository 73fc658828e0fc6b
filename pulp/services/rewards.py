"""Round rewards and the weekly interaction bonus.

After a round is finalized every player who played earns:
- participation PULPs
- a streak bonus when they have played a round in each of N consecutive weeks
- a bonus for each season rival ranked above them who finished below them
  (season events only)
- "DRS" catch-up PULPs for finishing 4th or worse, growing with the position

Every credit carries a round-scoped reference, so a replayed settlement
never pays twice.
"""

from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.config import get_economy_config, get_settings
from pulp.models.base import atomic, utc_now
from pulp.models.domain import Event, LedgerTransaction
from pulp.services.errors import AlreadySettled, PulpError
from pulp.services.ledger import Ledger, TransactionType
from pulp.services.standings import RoundResult, RoundStore, StandingsProvider

logger = structlog.get_logger(__name__)


def iso_week(moment: datetime, timezone_name: str) -> str:
    """ISO week label in league time, e.g. '2026-W42'."""
    year, week, _ = moment.astimezone(ZoneInfo(timezone_name)).isocalendar()
    return f"{year}-W{week:02d}"


def count_rivals_beaten(
    player: RoundResult,
    results: list[RoundResult],
    season_ranks: dict[int, int],
) -> int:
    """Opponents ranked above the player for the season who finished below them today."""
    my_season_rank = season_ranks.get(player.player_id)
    if player.rank is None or my_season_rank is None:
        return 0
    beaten = 0
    for other in results:
        if other.player_id == player.player_id or other.rank is None:
            continue
        their_season_rank = season_ranks.get(other.player_id)
        if their_season_rank is None:
            continue
        if their_season_rank < my_season_rank and other.rank > player.rank:
            beaten += 1
    return beaten


def drs_bonus(rank: int | None, start_rank: int, per_position: int) -> int:
    if rank is None or rank < start_rank:
        return 0
    return (rank - start_rank + 1) * per_position


class RewardEngine:
    """Credits automatic PULP rewards."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = Ledger(db)
        self.rules = get_economy_config().rewards
        self.timezone_name = get_settings().league_timezone

    async def award_round_rewards(self, round_id: int) -> dict[str, Any]:
        """
        Credit all per-round rewards.

        Each player is rewarded in their own transaction: a failure is logged
        and counted, and the other players are still paid.
        """
        stats = {"players_rewarded": 0, "players_skipped": 0, "pulps_awarded": 0, "errors": 0}
        store = RoundStore(self.db)
        round_ = await store.get_round(round_id)
        played_on = round_.played_on
        event = await self.db.get(Event, round_.event_id)
        is_season = event is not None and event.event_type == "season"

        results = await store.get_results(round_id)
        season_ranks: dict[int, int] = {}
        if is_season:
            standings = await StandingsProvider(self.db).get_season_standings(event.id)
            season_ranks = {s.player_id: s.rank for s in standings}

        for result in results:
            if await self._already_rewarded(round_id, result.player_id):
                stats["players_skipped"] += 1
                continue
            try:
                async with atomic(self.db):
                    awarded = await self._reward_player(
                        round_id, played_on, result, results, season_ranks, is_season
                    )
            except AlreadySettled:
                stats["players_skipped"] += 1
                continue
            except Exception as e:
                logger.error(
                    "round_reward_error",
                    round_id=round_id,
                    player_id=result.player_id,
                    error=str(e),
                )
                stats["errors"] += 1
                continue
            stats["players_rewarded"] += 1
            stats["pulps_awarded"] += awarded

        logger.info("round_rewards_awarded", round_id=round_id, **stats)
        return stats

    async def _already_rewarded(self, round_id: int, player_id: int) -> bool:
        existing = await self.db.scalar(
            select(LedgerTransaction.id).where(
                LedgerTransaction.player_id == player_id,
                LedgerTransaction.reference == f"round:{round_id}:participation",
            )
        )
        return existing is not None

    async def _reward_player(
        self,
        round_id: int,
        played_on: date,
        result: RoundResult,
        results: list[RoundResult],
        season_ranks: dict[int, int],
        is_season: bool,
    ) -> int:
        reference = f"round:{round_id}"
        awarded = 0

        # Participation goes first: its reference guards the whole block
        await self.ledger.credit(
            result.player_id,
            self.rules.participation,
            TransactionType.ROUND_REWARD,
            description="Played a round",
            metadata={"round_id": round_id, "reward": "participation"},
            reference=f"{reference}:participation",
        )
        awarded += self.rules.participation

        player = await self.ledger.lock_player(result.player_id)
        last = player.last_round_date
        if last is None or (played_on - last).days > self.rules.streak_gap_days:
            player.participation_streak = 1
        elif played_on > last:
            player.participation_streak += 1

        if player.participation_streak >= self.rules.streak_weeks:
            await self.ledger.credit(
                result.player_id,
                self.rules.streak_bonus,
                TransactionType.ROUND_REWARD,
                description=f"{self.rules.streak_weeks}-week streak",
                metadata={"round_id": round_id, "reward": "streak"},
                reference=f"{reference}:streak",
            )
            awarded += self.rules.streak_bonus
            player.participation_streak = 0

        if last is None or played_on > last:
            player.last_round_date = played_on
        if is_season:
            player.total_rounds_this_season += 1
            beaten = count_rivals_beaten(result, results, season_ranks)
            if beaten:
                amount = beaten * self.rules.beat_higher_ranked
                await self.ledger.credit(
                    result.player_id,
                    amount,
                    TransactionType.ROUND_REWARD,
                    description=f"Beat {beaten} higher-ranked player(s)",
                    metadata={"round_id": round_id, "reward": "beat_higher_ranked"},
                    reference=f"{reference}:beat_higher_ranked",
                )
                awarded += amount

        drs = drs_bonus(result.rank, self.rules.drs_start_rank, self.rules.drs_per_position)
        if drs:
            await self.ledger.credit(
                result.player_id,
                drs,
                TransactionType.ROUND_REWARD,
                description=f"DRS bonus for finishing #{result.rank}",
                metadata={"round_id": round_id, "reward": "drs"},
                reference=f"{reference}:drs",
            )
            awarded += drs

        await self.db.flush()
        return awarded

    async def award_weekly_bonus(self, player_id: int, now: datetime | None = None) -> int:
        """
        Credit the first PULP action of the week. Returns the amount credited.

        Raises:
            AlreadySettled: the bonus was already credited this week
        """
        week = iso_week(now or utc_now(), self.timezone_name)
        player = await self.ledger.lock_player(player_id)
        if player.last_interaction_week == week:
            return 0

        await self.ledger.credit(
            player_id,
            self.rules.weekly_interaction,
            TransactionType.WEEKLY_BONUS,
            description="First PULP action this week",
            metadata={"week": week},
            reference=f"weekly:{week}",
        )
        player.last_interaction_week = week
        await self.db.flush()
        return self.rules.weekly_interaction


async def try_weekly_bonus(db: AsyncSession, player_id: int, now: datetime | None = None) -> int:
    """Weekly bonus that never blocks the action that triggered it."""
    try:
        return await RewardEngine(db).award_weekly_bonus(player_id, now)
    except PulpError as e:
        logger.warning("weekly_bonus_skipped", player_id=player_id, error=e.message)
        return 0

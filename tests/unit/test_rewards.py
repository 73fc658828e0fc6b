"""Tests for automatic round rewards and the weekly bonus."""

from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select

from pulp.models.domain import LedgerTransaction, Player
from pulp.services.ledger import TransactionType
from pulp.services.rewards import (
    RewardEngine,
    count_rivals_beaten,
    drs_bonus,
    iso_week,
    try_weekly_bonus,
)
from pulp.services.standings import RoundResult


class TestHelpers:
    def test_drs_starts_at_fourth(self):
        assert drs_bonus(1, 4, 2) == 0
        assert drs_bonus(3, 4, 2) == 0
        assert drs_bonus(4, 4, 2) == 2
        assert drs_bonus(6, 4, 2) == 6
        assert drs_bonus(None, 4, 2) == 0

    def test_iso_week_uses_league_time(self):
        # Monday 02:00 UTC is still Sunday evening in New York
        moment = datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc)

        assert iso_week(moment, "America/New_York") == "2026-W42"
        assert iso_week(moment, "UTC") == "2026-W43"

    def test_rivals_beaten(self):
        me = RoundResult(player_id=3, player_name="Cat", rank=1, total_strokes=48)
        results = [
            me,
            RoundResult(player_id=1, player_name="Ann", rank=2, total_strokes=50),
            RoundResult(player_id=2, player_name="Ben", rank=3, total_strokes=52),
            RoundResult(player_id=4, player_name="Dan", rank=4, total_strokes=55),
        ]
        season_ranks = {1: 1, 2: 2, 3: 3, 4: 4}

        assert count_rivals_beaten(me, results, season_ranks) == 2
        assert count_rivals_beaten(results[3], results, season_ranks) == 0


class TestRoundRewards:
    async def test_participation_and_drs(self, db, league):
        ann, ben, cat, dan, eve = await league.players("Ann", "Ben", "Cat", "Dan", "Eve", balance=0)
        season = await league.season("2026 Season", ann, ben, cat, dan, eve)
        round_ = await league.round(
            season,
            [
                (ann, 1, 50, 50),
                (ben, 2, 52, 40),
                (cat, 3, 54, 30),
                (dan, 4, 56, 20),
                (eve, 5, 58, 10),
            ],
        )

        stats = await RewardEngine(db).award_round_rewards(round_.id)

        assert stats["players_rewarded"] == 5
        assert [await league.balance(p) for p in (ann, ben, cat, dan, eve)] == [10, 10, 10, 12, 14]
        player = await db.get(Player, ann.id)
        assert player.participation_streak == 1
        assert player.total_rounds_this_season == 1
        assert player.last_round_date == date(2026, 10, 17)

    async def test_replay_pays_nothing(self, db, league):
        ann, ben = await league.players("Ann", "Ben", balance=0)
        season = await league.season("2026 Season", ann, ben)
        round_ = await league.round(season, [(ann, 1, 50, 50), (ben, 2, 52, 40)])
        engine = RewardEngine(db)
        await engine.award_round_rewards(round_.id)

        stats = await engine.award_round_rewards(round_.id)

        assert stats["players_skipped"] == 2
        assert await league.balance(ann) == 10
        player = await db.get(Player, ann.id)
        assert player.total_rounds_this_season == 1

    async def test_one_player_failure_keeps_the_others(self, db, league, monkeypatch):
        ann, ben, cat = await league.players("Ann", "Ben", "Cat", balance=0)
        ben_id = ben.id
        season = await league.season("2026 Season", ann, ben, cat)
        round_ = await league.round(season, [(ann, 1, 50, 50), (ben, 2, 52, 40), (cat, 3, 54, 30)])
        round_id = round_.id
        original = RewardEngine._reward_player

        async def failing_reward(self, round_id, played_on, result, *args):
            awarded = await original(self, round_id, played_on, result, *args)
            if result.player_id == ben_id:
                raise RuntimeError("scorecard lookup failed")
            return awarded

        monkeypatch.setattr(RewardEngine, "_reward_player", failing_reward)

        stats = await RewardEngine(db).award_round_rewards(round_id)

        assert stats["players_rewarded"] == 2
        assert stats["errors"] == 1
        assert [await league.balance(p) for p in (ann, ben, cat)] == [10, 0, 10]

        # Ben is paid on the next pass; the others are not paid twice
        monkeypatch.setattr(RewardEngine, "_reward_player", original)
        stats = await RewardEngine(db).award_round_rewards(round_id)

        assert stats["players_rewarded"] == 1
        assert stats["players_skipped"] == 2
        assert [await league.balance(p) for p in (ann, ben, cat)] == [10, 10, 10]

    async def test_beating_higher_ranked_rival(self, db, league):
        ann, ben = await league.players("Ann", "Ben", balance=0)
        season = await league.season("2026 Season", ann, ben)
        await league.round(season, [(ann, 1, 50, 50), (ben, 2, 52, 10)], played_on=date(2026, 10, 10))
        round_ = await league.round(season, [(ben, 1, 48, 20), (ann, 2, 51, 15)])

        await RewardEngine(db).award_round_rewards(round_.id)

        # Ann is still #1 for the season (65 to 30), so Ben beat a higher-ranked rival
        assert await league.balance(ben) == 15
        assert await league.balance(ann) == 10

    async def test_four_week_streak(self, db, league):
        ann = await league.player("Ann", balance=0)
        season = await league.season("2026 Season", ann)
        engine = RewardEngine(db)
        start = date(2026, 9, 26)
        for week in range(4):
            round_ = await league.round(
                season, [(ann, 1, 50, 10)], played_on=start + timedelta(weeks=week)
            )
            await engine.award_round_rewards(round_.id)

        assert await league.balance(ann) == 4 * 10 + 20
        player = await db.get(Player, ann.id)
        assert player.participation_streak == 0
        streak = await db.scalar(
            select(LedgerTransaction).where(LedgerTransaction.reference.like("%:streak"))
        )
        assert streak.amount == 20

    async def test_gap_resets_streak(self, db, league):
        ann = await league.player("Ann", balance=0)
        season = await league.season("2026 Season", ann)
        engine = RewardEngine(db)
        for played_on in (date(2026, 9, 1), date(2026, 9, 8), date(2026, 9, 29)):
            round_ = await league.round(season, [(ann, 1, 50, 10)], played_on=played_on)
            await engine.award_round_rewards(round_.id)

        player = await db.get(Player, ann.id)
        assert player.participation_streak == 1


class TestWeeklyBonus:
    async def test_once_per_week(self, db, league):
        ann = await league.player("Ann", balance=0)
        engine = RewardEngine(db)
        monday = datetime(2026, 10, 12, 16, 0, tzinfo=timezone.utc)

        assert await engine.award_weekly_bonus(ann.id, monday) == 5
        assert await engine.award_weekly_bonus(ann.id, monday + timedelta(days=3)) == 0
        assert await engine.award_weekly_bonus(ann.id, monday + timedelta(days=7)) == 5
        assert await league.balance(ann) == 10

        history = await db.execute(
            select(LedgerTransaction.reference).where(
                LedgerTransaction.transaction_type == TransactionType.WEEKLY_BONUS
            )
        )
        assert sorted(history.scalars()) == ["weekly:2026-W42", "weekly:2026-W43"]

    async def test_failure_never_blocks(self, db):
        assert await try_weekly_bonus(db, 404) == 0

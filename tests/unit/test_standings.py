"""Tests for round results and season standings."""

import asyncio
from datetime import date, timedelta

import pytest

from pulp.services.errors import NotFound, StoreTimeout
from pulp.services.standings import RoundStore, StandingsProvider, normalize_name


def test_normalize_name():
    assert normalize_name("  Mary  Jo ") == "mary jo"


class TestRoundStore:
    async def test_final_standings_in_rank_order(self, db, league):
        a, b, c, d = await league.players("Ann", "Ben", "Cat", "Dan")
        season = await league.season("2026 Season", a, b, c, d)
        round_ = await league.round(
            season, [(d, 4, 60, 10), (b, 2, 52, 30), (a, 1, 50, 40), (c, 3, 55, 20)]
        )

        assert await RoundStore(db).get_final_standings(round_.id) == ["Ann", "Ben", "Cat"]

    async def test_unranked_players_are_not_finishers(self, db, league):
        a, b, c = await league.players("Ann", "Ben", "Cat")
        season = await league.season("2026 Season", a, b, c)
        round_ = await league.round(season, [(a, 1, 50, 40), (b, 2, 52, 30), (c, None, None, None)])

        assert await RoundStore(db).get_final_standings(round_.id) == ["Ann", "Ben"]

    async def test_scores_skip_missing_strokes(self, db, league):
        a, b = await league.players("Ann", "Ben")
        season = await league.season("2026 Season", a, b)
        round_ = await league.round(season, [(a, 1, 50, 40), (b, None, None, None)])

        assert await RoundStore(db).get_scores(round_.id) == {a.id: 50}

    async def test_unknown_round(self, db):
        with pytest.raises(NotFound):
            await RoundStore(db).get_round(404)

    async def test_slow_store_times_out(self, db):
        store = RoundStore(db, timeout=0.01)

        with pytest.raises(StoreTimeout) as exc:
            await store._bounded("get_round", asyncio.sleep(1))

        assert exc.value.status_code == 503


class TestSeasonStandings:
    async def test_best_rounds_only(self, db, league):
        """Only the best 10 round totals count."""
        ann, ben = await league.players("Ann", "Ben")
        season = await league.season("2026 Season", ann, ben)
        for week in range(12):
            points = 1 if week < 2 else 10
            await league.round(
                season,
                [(ann, 1, 50, points), (ben, 2, 52, 9)],
                played_on=date(2026, 3, 1) + timedelta(weeks=week),
            )

        standings = await StandingsProvider(db).get_season_standings()

        assert [(s.player_name, s.points, s.rank) for s in standings] == [
            ("Ann", 100, 1),
            ("Ben", 90, 2),
        ]

    async def test_tied_points_share_rank(self, db, league):
        ann, ben, cat = await league.players("Ann", "Ben", "Cat")
        season = await league.season("2026 Season", ann, ben, cat)
        await league.round(season, [(ann, 1, 50, 30), (ben, 1, 50, 30), (cat, 3, 55, 20)])

        standings = await StandingsProvider(db).get_season_standings()

        assert [s.rank for s in standings] == [1, 1, 3]

    async def test_no_active_season(self, db):
        assert await StandingsProvider(db).get_season_standings() == []

    async def test_season_rank(self, db, league):
        ann, ben, cat = await league.players("Ann", "Ben", "Cat")
        season = await league.season("2026 Season", ann, ben, cat)
        await league.round(season, [(ann, 1, 50, 30), (ben, 2, 52, 20)])
        provider = StandingsProvider(db)

        assert await provider.get_season_rank(ben.id) == 2
        assert await provider.get_season_rank(cat.id) is None

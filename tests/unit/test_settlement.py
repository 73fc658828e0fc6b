"""Tests for round settlement."""

from datetime import timedelta

import pytest

from pulp.models.domain import BettingWindow, Challenge, Prediction, Round
from pulp.services.challenges import ChallengeEngine, ChallengeStatus
from pulp.services.errors import InvalidState
from pulp.services.predictions import PredictionMarket, PredictionStatus
from pulp.services.settlement import SettlementProcessor
from pulp.services.windows import CloseReason, WindowScheduler, WindowStatus


@pytest.fixture
async def wagers(db, league, now):
    """
    One window with three blessings and an accepted challenge.

    Season standings before the round: Ann #1, Ben #2, Cat #3. The bettors
    (Pat, Quinn, Rae) are not in the field, so rewards never touch their
    balances.
    """
    ann, ben, cat, dan = await league.players("Ann", "Ben", "Cat", "Dan", balance=100)
    pat, quinn, rae = await league.players("Pat", "Quinn", "Rae", balance=100)
    season = await league.season("2026 Season", ann, ben, cat, dan)
    history = await league.round(
        season,
        [(ann, 1, 50, 50), (ben, 2, 52, 40), (cat, 3, 54, 30), (dan, 4, 56, 20)],
        played_on=now.date() - timedelta(days=7),
        finalized_at=now - timedelta(days=7),
    )
    # Already settled; only the round played in each test is pending
    history.pulp_settled_at = now
    await db.flush()

    window = await league.open_window(now)
    market = PredictionMarket(db)
    perfect = await market.place_prediction(
        pat.id, ["Ann", "Ben", "Cat"], 20, window.id, event_id=season.id, now=now
    )
    partial = await market.place_prediction(
        quinn.id, ["Cat", "Ann", "Ben"], 20, window.id, event_id=season.id, now=now
    )
    lost = await market.place_prediction(
        rae.id, ["Dan", "Ben", "Cat"], 20, window.id, event_id=season.id, now=now
    )
    engine = ChallengeEngine(db)
    challenge = await engine.issue(cat.id, ann.id, 30, window_id=window.id, now=now)
    await engine.respond(challenge.id, ann.id, accept=True, now=now)
    await WindowScheduler(db).lock_window(window.id, now + timedelta(minutes=5))

    return {
        "players": (ann, ben, cat, dan),
        "bettors": (pat, quinn, rae),
        "season": season,
        "window": window,
        "predictions": (perfect, partial, lost),
        "challenge": challenge,
    }


async def _play_round(league, wagers, results, **kwargs):
    ann, ben, cat, dan = wagers["players"]
    by_name = {"Ann": ann, "Ben": ben, "Cat": cat, "Dan": dan}
    return await league.round(
        wagers["season"],
        [(by_name[name], rank, strokes, points) for name, rank, strokes, points in results],
        **kwargs,
    )


class TestSettleRound:
    async def test_full_settlement(self, db, league, wagers, now):
        round_ = await _play_round(
            league,
            wagers,
            [("Ann", 1, 50, 50), ("Ben", 2, 52, 40), ("Cat", 3, 54, 30), ("Dan", 4, 56, 20)],
        )

        stats = await SettlementProcessor(db).settle_round(round_.id, now)

        assert stats["window_id"] == wagers["window"].id
        assert stats["predictions_settled"] == 3
        assert stats["challenges_settled"] == 1
        assert stats["errors"] == 0

        pat, quinn, rae = wagers["bettors"]
        assert await league.balance(pat) == 120
        assert await league.balance(quinn) == 100
        assert await league.balance(rae) == 80

        # Ann beat Cat (50 to 54): both staked 30, Ann takes 60, plus 10 participation
        ann, ben, cat, dan = wagers["players"]
        assert await league.balance(ann) == 100 - 30 + 60 + 10
        assert await league.balance(cat) == 100 - 30 + 10
        # DRS for 4th place
        assert await league.balance(dan) == 100 + 10 + 2

        window = await db.get(BettingWindow, wagers["window"].id)
        assert window.status == WindowStatus.CLOSED
        assert window.close_reason == CloseReason.SETTLED
        assert window.round_id == round_.id
        stored_round = await db.get(Round, round_.id)
        assert stored_round.pulp_settled_at is not None

        statuses = [
            (await db.get(Prediction, p.id)).status for p in wagers["predictions"]
        ]
        assert statuses == [
            PredictionStatus.WON_PERFECT,
            PredictionStatus.WON_PARTIAL,
            PredictionStatus.LOST,
        ]

    async def test_replay_changes_nothing(self, db, league, wagers, now):
        round_ = await _play_round(
            league,
            wagers,
            [("Ann", 1, 50, 50), ("Ben", 2, 52, 40), ("Cat", 3, 54, 30), ("Dan", 4, 56, 20)],
        )
        processor = SettlementProcessor(db)
        await processor.settle_round(round_.id, now)
        people = wagers["players"] + wagers["bettors"]
        before = [await league.balance(p) for p in people]

        stats = await processor.settle_round(round_.id, now)

        assert [await league.balance(p) for p in people] == before
        assert stats["predictions_settled"] == 0
        assert stats["challenges_settled"] == 0
        assert stats["errors"] == 0

    async def test_round_must_be_finalized(self, db, league, wagers, now):
        round_ = await _play_round(
            league, wagers, [("Ann", 1, 50, 50)], status="in_progress"
        )

        with pytest.raises(InvalidState):
            await SettlementProcessor(db).settle_round(round_.id, now)

    async def test_short_field_defers_predictions(self, db, league, wagers, now):
        round_ = await _play_round(
            league, wagers, [("Ann", 1, 50, 50), ("Cat", 2, 54, 30)]
        )

        stats = await SettlementProcessor(db).settle_round(round_.id, now)

        assert stats["window_id"] is None
        assert stats["predictions_settled"] == 0
        # The challenge only needs both scores
        assert stats["challenges_settled"] == 1
        window = await db.get(BettingWindow, wagers["window"].id)
        assert window.status == WindowStatus.LOCKED
        assert window.round_id is None
        pat = wagers["bettors"][0]
        assert await league.balance(pat) == 80

    async def test_one_failure_does_not_block_the_batch(self, db, league, wagers, now, monkeypatch):
        round_ = await _play_round(
            league,
            wagers,
            [("Ann", 1, 50, 50), ("Ben", 2, 52, 40), ("Cat", 3, 54, 30), ("Dan", 4, 56, 20)],
        )
        broken_id = wagers["predictions"][1].id
        original = PredictionMarket.settle_prediction

        async def flaky_settle(self, prediction_id, *args, **kwargs):
            if prediction_id == broken_id:
                raise RuntimeError("scorecard lookup failed")
            return await original(self, prediction_id, *args, **kwargs)

        monkeypatch.setattr(PredictionMarket, "settle_prediction", flaky_settle)

        stats = await SettlementProcessor(db).settle_round(round_.id, now)

        assert stats["predictions_settled"] == 2
        assert stats["errors"] == 1
        broken = await db.get(Prediction, broken_id)
        await db.refresh(broken)
        assert broken.status == PredictionStatus.PENDING
        pat = wagers["bettors"][0]
        assert await league.balance(pat) == 120

    async def test_pending_challenge_lapses(self, db, league, now):
        ann, ben, cat = await league.players("Ann", "Ben", "Cat")
        season = await league.season("2026 Season", ann, ben, cat)
        await league.round(
            season, [(ann, 1, 50, 50), (ben, 2, 52, 40), (cat, 3, 54, 30)],
            played_on=now.date() - timedelta(days=7),
        )
        window = await league.open_window(now)
        challenge = await ChallengeEngine(db).issue(ben.id, ann.id, 40, window_id=window.id, now=now)
        await WindowScheduler(db).lock_window(window.id, now)
        round_ = await league.round(season, [(ann, 1, 50, 50), (ben, 2, 52, 40), (cat, 3, 54, 30)])

        stats = await SettlementProcessor(db).settle_round(round_.id, now)

        assert stats["challenges_lapsed"] == 1
        stored = await db.get(Challenge, challenge.id)
        assert stored.status == ChallengeStatus.REFUNDED
        # Stake back plus participation
        assert await league.balance(ben) == 100 + 10


class TestSettlementOrdering:
    FIELD = [("Ann", 1, 50, 50), ("Ben", 2, 52, 40), ("Cat", 3, 54, 30), ("Dan", 4, 56, 20)]

    async def test_round_finalized_before_window_opened_is_not_bound(
        self, db, league, wagers, now
    ):
        window_id = wagers["window"].id
        challenge_id = wagers["challenge"].id
        round_ = await _play_round(
            league, wagers, self.FIELD, finalized_at=now - timedelta(hours=1)
        )

        stats = await SettlementProcessor(db).settle_round(round_.id, now + timedelta(minutes=10))

        assert stats["window_id"] is None
        assert stats["predictions_settled"] == 0
        assert stats["challenges_settled"] == 0
        window = await db.get(BettingWindow, window_id)
        assert window.status == WindowStatus.LOCKED
        assert window.round_id is None
        challenge = await db.get(Challenge, challenge_id)
        assert challenge.status == ChallengeStatus.ACCEPTED
        pat = wagers["bettors"][0]
        assert await league.balance(pat) == 80

    async def test_settled_round_never_claims_a_window(self, db, league, wagers, now):
        window_id = wagers["window"].id
        round_ = await _play_round(league, wagers, self.FIELD)
        round_.pulp_settled_at = now
        await db.flush()
        processor = SettlementProcessor(db)

        stats = await processor.settle_round(round_.id, now)

        assert stats["window_id"] is None
        assert stats["predictions_settled"] == 0
        assert stats["challenges_settled"] == 0
        window = await db.get(BettingWindow, window_id)
        assert window.status == WindowStatus.LOCKED
        assert window.round_id is None
        pat = wagers["bettors"][0]
        assert await league.balance(pat) == 80

        # The next unsettled round still picks the window up
        follow = await _play_round(league, wagers, self.FIELD, played_on=now.date())
        stats = await processor.settle_round(follow.id, now)

        assert stats["window_id"] == window_id
        assert stats["predictions_settled"] == 3
        assert await league.balance(pat) == 120

    async def test_unbound_challenge_waits_for_a_round_after_acceptance(self, db, league, now):
        ann, ben = await league.players("Ann", "Ben")
        ann_id, ben_id = ann.id, ben.id
        season = await league.season("2026 Season", ann, ben)
        history = await league.round(
            season,
            [(ann, 1, 50, 50), (ben, 2, 52, 40)],
            played_on=now.date() - timedelta(days=7),
            finalized_at=now - timedelta(days=7),
        )
        history.pulp_settled_at = now
        await db.flush()
        engine = ChallengeEngine(db)
        challenge = await engine.issue(ben_id, ann_id, 30, now=now)
        challenge_id = challenge.id
        await engine.respond(challenge_id, ann_id, accept=True, now=now + timedelta(hours=1))
        processor = SettlementProcessor(db)

        early = await league.round(
            season,
            [(ann, 1, 50, 50), (ben, 2, 52, 40)],
            finalized_at=now + timedelta(minutes=30),
        )
        stats = await processor.settle_round(early.id, now + timedelta(hours=2))

        assert stats["challenges_settled"] == 0
        stored = await db.get(Challenge, challenge_id)
        assert stored.status == ChallengeStatus.ACCEPTED

        late = await league.round(
            season,
            [(ann, 1, 48, 50), (ben, 2, 52, 40)],
            finalized_at=now + timedelta(minutes=90),
        )
        stats = await processor.settle_round(late.id, now + timedelta(hours=2))

        assert stats["challenges_settled"] == 1
        stored = await db.get(Challenge, challenge_id)
        assert stored.status == ChallengeStatus.SETTLED
        assert stored.winner_id == ann_id


class TestSettleFinalizedRounds:
    async def test_settles_unsettled_rounds_only(self, db, league, wagers, now):
        round_ = await _play_round(
            league,
            wagers,
            [("Ann", 1, 50, 50), ("Ben", 2, 52, 40), ("Cat", 3, 54, 30), ("Dan", 4, 56, 20)],
        )
        processor = SettlementProcessor(db)

        first = await processor.settle_finalized_rounds(now)
        second = await processor.settle_finalized_rounds(now)

        assert first["rounds_found"] == 1
        assert first["rounds_settled"] == 1
        assert second["rounds_found"] == 0
        stored = await db.get(Round, round_.id)
        assert stored.pulp_settled_at is not None

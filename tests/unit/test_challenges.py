"""Tests for head-to-head challenges."""

import pytest

from pulp.models.domain import Challenge, Player
from pulp.services.challenges import ChallengeEngine, ChallengeStatus, split_rejected_wager
from pulp.services.errors import (
    AlreadySettled,
    DuplicateChallenge,
    InsufficientFunds,
    InvalidOpponent,
    InvalidState,
    InvalidWager,
    NotAuthorized,
    WindowClosed,
)
from pulp.services.ledger import Ledger, TransactionType
from pulp.services.windows import WindowScheduler


@pytest.fixture
async def ranked(league):
    """
    Season standings: Alice #1 (50), Bob #2 (40), Carol #3 (30).
    Dave is registered but has no points yet.
    """
    alice, bob, carol, dave = await league.players("Alice", "Bob", "Carol", "Dave", balance=100)
    season = await league.season("2026 Season", alice, bob, carol, dave)
    await league.round(
        season,
        [(alice, 1, 50, 50), (bob, 2, 52, 40), (carol, 3, 55, 30)],
    )
    window = await league.open_window()
    return alice, bob, carol, dave, window


class TestSplitRejectedWager:
    def test_even_wager(self):
        assert split_rejected_wager(30, 0.5) == (15, 15)

    def test_odd_wager_rounds_refund_down(self):
        assert split_rejected_wager(25, 0.5) == (12, 13)


class TestIssue:
    async def test_challenge_higher_ranked_escrows_wager(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked

        challenge = await ChallengeEngine(db).issue(carol.id, alice.id, 30, window_id=window.id)

        assert challenge.status == ChallengeStatus.PENDING
        assert await league.balance(carol) == 70
        assert await league.balance(alice) == 100

    async def test_cannot_challenge_lower_ranked(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked

        with pytest.raises(InvalidOpponent, match="ranked above you"):
            await ChallengeEngine(db).issue(alice.id, carol.id, 30, window_id=window.id)

        assert await league.balance(alice) == 100

    async def test_cannot_challenge_self(self, db, league, ranked):
        alice = ranked[0]

        with pytest.raises(InvalidOpponent):
            await ChallengeEngine(db).issue(alice.id, alice.id, 30)

    async def test_unranked_player_cannot_challenge(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked

        with pytest.raises(InvalidOpponent, match="season ranking"):
            await ChallengeEngine(db).issue(dave.id, alice.id, 30, window_id=window.id)

    async def test_tied_players_cannot_challenge_each_other(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        erin = await league.player("Erin")
        season = await league.season("Tied Season", carol, erin)
        await league.round(season, [(carol, 1, 50, 30), (erin, 1, 50, 30)])
        # The newer season is the active one
        season.start_date = season.start_date.replace(month=4)
        await db.flush()

        with pytest.raises(InvalidOpponent):
            await ChallengeEngine(db).issue(erin.id, carol.id, 30)

    async def test_minimum_wager(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked

        with pytest.raises(InvalidWager, match="Minimum challenge wager is 20 PULPs"):
            await ChallengeEngine(db).issue(carol.id, alice.id, 10, window_id=window.id)

    async def test_insufficient_funds(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked

        with pytest.raises(InsufficientFunds):
            await ChallengeEngine(db).issue(carol.id, alice.id, 150, window_id=window.id)

    async def test_window_must_be_open(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        await WindowScheduler(db).lock_window(window.id)

        with pytest.raises(WindowClosed):
            await ChallengeEngine(db).issue(carol.id, alice.id, 30, window_id=window.id)

        assert await league.balance(carol) == 100

    async def test_one_open_challenge_per_pair(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        await engine.issue(carol.id, alice.id, 30)

        with pytest.raises(DuplicateChallenge):
            await engine.issue(carol.id, alice.id, 20)

        assert await league.balance(carol) == 70

    async def test_one_challenge_per_window(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        await engine.issue(carol.id, alice.id, 30, window_id=window.id)

        with pytest.raises(DuplicateChallenge, match="already issued a challenge in this window"):
            await engine.issue(carol.id, bob.id, 30, window_id=window.id)

        assert await league.balance(carol) == 70
        assert await league.balance(bob) == 100

    async def test_players_locked_before_duplicate_checks(self, db, league, ranked, monkeypatch):
        alice, bob, carol, dave, window = ranked
        carol_id, bob_id = carol.id, bob.id
        engine = ChallengeEngine(db)
        await engine.issue(carol_id, alice.id, 30, window_id=window.id)
        locked = []
        original = Ledger.lock_players

        async def recording_lock(self, *player_ids):
            locked.append(set(player_ids))
            return await original(self, *player_ids)

        monkeypatch.setattr(Ledger, "lock_players", recording_lock)

        with pytest.raises(DuplicateChallenge):
            await engine.issue(carol_id, bob_id, 30, window_id=window.id)

        assert locked == [{carol_id, bob_id}]


class TestRespond:
    async def test_reject_refunds_half(self, db, league, ranked):
        """Carol challenges Alice for 30; Alice declines; Carol is down 15."""
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        challenge = await engine.issue(carol.id, alice.id, 30, window_id=window.id)

        challenge = await engine.respond(challenge.id, alice.id, accept=False)

        assert challenge.status == ChallengeStatus.REJECTED
        assert challenge.refunded_amount == 15
        assert challenge.cowardice_tax == 15
        assert await league.balance(carol) == 85
        assert await league.balance(alice) == 100
        declined = await db.get(Player, alice.id)
        assert declined.challenges_declined == 1

    async def test_reject_odd_wager(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        challenge = await engine.issue(carol.id, alice.id, 25, window_id=window.id)

        await engine.respond(challenge.id, alice.id, accept=False)

        assert await league.balance(carol) == 87

    async def test_accept_escrows_challenged_stake(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        challenge = await engine.issue(carol.id, alice.id, 30, window_id=window.id)

        challenge = await engine.respond(challenge.id, alice.id, accept=True)

        assert challenge.status == ChallengeStatus.ACCEPTED
        assert await league.balance(alice) == 70
        assert await league.balance(carol) == 70

    async def test_only_challenged_player_can_respond(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        challenge = await engine.issue(carol.id, alice.id, 30, window_id=window.id)

        with pytest.raises(NotAuthorized):
            await engine.respond(challenge.id, bob.id, accept=True)

    async def test_cannot_respond_twice(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        challenge = await engine.issue(carol.id, alice.id, 30, window_id=window.id)
        await engine.respond(challenge.id, alice.id, accept=False)

        with pytest.raises(InvalidState, match="Challenge is rejected"):
            await engine.respond(challenge.id, alice.id, accept=True)

        assert await league.balance(alice) == 100

    async def test_accept_needs_funds(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        challenge = await engine.issue(carol.id, alice.id, 30, window_id=window.id)
        await Ledger(db).debit(alice.id, 90, TransactionType.ADMIN_ADJUSTMENT)

        with pytest.raises(InsufficientFunds):
            await engine.respond(challenge.id, alice.id, accept=True)

        stored = await db.get(Challenge, challenge.id)
        assert stored.status == ChallengeStatus.PENDING


class TestSettle:
    async def _accepted(self, db, ranked, wager=30):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        challenge = await engine.issue(carol.id, alice.id, wager, window_id=window.id)
        await engine.respond(challenge.id, alice.id, accept=True)
        return challenge

    async def test_lower_strokes_take_both_stakes(self, db, league, ranked):
        alice, bob, carol = ranked[:3]
        challenge = await self._accepted(db, ranked)

        outcome = await ChallengeEngine(db).settle(challenge.id, 9, {carol.id: 48, alice.id: 51})

        assert outcome.winner_id == carol.id
        assert outcome.payout == 60
        assert await league.balance(carol) == 130
        assert await league.balance(alice) == 70

    async def test_tie_refunds_both(self, db, league, ranked):
        alice, bob, carol = ranked[:3]
        challenge = await self._accepted(db, ranked)

        outcome = await ChallengeEngine(db).settle(challenge.id, 9, {carol.id: 50, alice.id: 50})

        assert outcome.winner_id is None
        assert await league.balance(carol) == 100
        assert await league.balance(alice) == 100

    async def test_settle_twice_pays_once(self, db, league, ranked):
        alice, bob, carol = ranked[:3]
        challenge = await self._accepted(db, ranked)
        engine = ChallengeEngine(db)
        await engine.settle(challenge.id, 9, {carol.id: 55, alice.id: 50})

        with pytest.raises(AlreadySettled):
            await engine.settle(challenge.id, 9, {carol.id: 55, alice.id: 50})

        assert await league.balance(alice) == 130

    async def test_pending_challenge_cannot_settle(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        challenge = await engine.issue(carol.id, alice.id, 30, window_id=window.id)

        with pytest.raises(InvalidState):
            await engine.settle(challenge.id, 9, {carol.id: 50, alice.id: 51})

    async def test_missing_score(self, db, league, ranked):
        alice, bob, carol = ranked[:3]
        challenge = await self._accepted(db, ranked)

        with pytest.raises(InvalidState, match="scores for both"):
            await ChallengeEngine(db).settle(challenge.id, 9, {carol.id: 50})


class TestRefund:
    async def test_refund_accepted_returns_both_stakes(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        challenge = await engine.issue(carol.id, alice.id, 30, window_id=window.id)
        await engine.respond(challenge.id, alice.id, accept=True)

        refunded = await engine.refund_window(window.id)

        assert refunded == 1
        assert await league.balance(alice) == 100
        assert await league.balance(carol) == 100
        stored = await db.get(Challenge, challenge.id)
        assert stored.status == ChallengeStatus.REFUNDED
        assert stored.refunded_amount == 60

    async def test_refund_pending_returns_challenger_stake(self, db, league, ranked):
        alice, bob, carol, dave, window = ranked
        engine = ChallengeEngine(db)
        challenge = await engine.issue(bob.id, alice.id, 40, window_id=window.id)

        await engine.refund(challenge.id)

        assert await league.balance(bob) == 100
        with pytest.raises(AlreadySettled):
            await engine.refund(challenge.id)

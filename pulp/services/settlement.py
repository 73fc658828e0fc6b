"""Settlement Processor.

Runs when a round's scores are finalized and resolves every wager bound to
that round:

1. Bind the round to the earliest locked window nobody has claimed yet
   that opened before the round was finalized (one window, one round).
   Predictions in that window that were placed for "the next round" are
   settled against this round's top 3, together with predictions that
   named this round explicitly.
2. Settle accepted challenges bound to this round, plus unbound accepted
   challenges where both players recorded a score and the challenge was
   accepted before the round was finalized. Challenges still
   pending in the settled window lapse and the challenger is refunded.
3. Mark advantages recorded on the round's scorecards as used.
4. Credit the automatic round rewards.
5. Close the window and stamp the round as settled.

Every prediction and challenge is settled in its own transaction. A failure
is logged with the entity id and counted, and the batch carries on.
Replays skip anything already settled. A round stamped as settled never
claims a new window or picks up unbound challenges.
"""

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.models.base import as_utc, atomic, utc_now
from pulp.models.domain import BettingWindow, Challenge, Prediction, Round
from pulp.services.advantages import AdvantageStore
from pulp.services.challenges import ChallengeEngine, ChallengeStatus
from pulp.services.errors import AlreadySettled, InvalidState
from pulp.services.ledger import TransactionType
from pulp.services.predictions import PredictionMarket, PredictionStatus
from pulp.services.rewards import RewardEngine
from pulp.services.standings import RoundStore
from pulp.services.windows import CloseReason, WindowScheduler, WindowStatus

logger = structlog.get_logger(__name__)


class SettlementProcessor:
    """Resolves predictions, challenges, advantages and rewards for a round."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = RoundStore(db)
        self.scheduler = WindowScheduler(db)

    async def _bind_window(
        self, round_id: int, finalized_at: datetime, now: datetime, claim: bool = True
    ) -> int | None:
        """
        Return the window settled by this round, claiming one if needed.

        Only windows that opened before the round was finalized can be
        claimed; wagers placed after the result was known never settle
        against it.
        """
        bound = await self.db.scalar(
            select(BettingWindow.id).where(BettingWindow.round_id == round_id)
        )
        if bound is not None or not claim:
            return bound

        await self.scheduler.lock_expired_windows(now)
        result = await self.db.execute(
            select(BettingWindow)
            .where(
                BettingWindow.status == WindowStatus.LOCKED,
                BettingWindow.round_id.is_(None),
                BettingWindow.opens_at < finalized_at,
            )
            .order_by(BettingWindow.locked_at, BettingWindow.id)
            .limit(1)
            .with_for_update()
        )
        window = result.scalar_one_or_none()
        if window is None:
            return None

        window.round_id = round_id
        await self.db.flush()
        logger.info("window_bound_to_round", window_id=window.id, round_id=round_id)
        return window.id

    async def settle_round(self, round_id: int, now: datetime | None = None) -> dict[str, Any]:
        """
        Settle everything that depends on a finalized round.

        Raises:
            NotFound: unknown round
            InvalidState: the round's scores are not finalized
            StoreTimeout: the round store did not answer in time
        """
        now = now or utc_now()
        stats = {
            "round_id": round_id,
            "window_id": None,
            "predictions_settled": 0,
            "predictions_deferred": 0,
            "challenges_settled": 0,
            "challenges_lapsed": 0,
            "advantages_marked": 0,
            "rewards_awarded": 0,
            "already_settled": 0,
            "errors": 0,
        }

        round_ = await self.store.get_round(round_id)
        if round_.status != "finalized":
            raise InvalidState(f"Round {round_id} scores are not finalized")
        finalized_at = as_utc(round_.finalized_at) or now
        # A settled round only retries its own leftovers
        replay = round_.pulp_settled_at is not None
        if replay:
            logger.info("round_already_settled", round_id=round_id)

        top3 = await self.store.get_final_standings(round_id)
        scores = await self.store.get_scores(round_id)

        window_id = None
        if len(top3) == 3:
            async with atomic(self.db):
                window_id = await self._bind_window(
                    round_id, finalized_at, now, claim=not replay
                )
        else:
            logger.warning(
                "prediction_settlement_deferred",
                round_id=round_id,
                finishers=len(top3),
            )
        stats["window_id"] = window_id

        await self._settle_predictions(round_id, window_id, top3, now, stats)
        await self._settle_challenges(
            round_id, window_id, scores, finalized_at, now, stats, include_unbound=not replay
        )

        try:
            async with atomic(self.db):
                round_ = await self.store.get_round(round_id)
                stats["advantages_marked"] = await AdvantageStore(self.db).record_round_usage(
                    round_, now
                )
        except Exception as e:
            logger.error("advantage_usage_error", round_id=round_id, error=str(e))
            stats["errors"] += 1

        try:
            rewards = await RewardEngine(self.db).award_round_rewards(round_id)
            stats["rewards_awarded"] = rewards["pulps_awarded"]
            stats["errors"] += rewards["errors"]
        except Exception as e:
            logger.error("round_rewards_error", round_id=round_id, error=str(e))
            await self.db.rollback()
            stats["errors"] += 1

        async with atomic(self.db):
            if window_id is not None:
                window = await self.scheduler.get_window(window_id)
                if window.status == WindowStatus.LOCKED:
                    await self.scheduler.close_window(
                        window_id, CloseReason.SETTLED, round_id=round_id, now=now
                    )
            round_ = await self.store.get_round(round_id)
            if round_.pulp_settled_at is None:
                round_.pulp_settled_at = now

        logger.info("round_settlement_complete", **stats)
        return stats

    async def _settle_predictions(
        self,
        round_id: int,
        window_id: int | None,
        top3: list[str],
        now: datetime,
        stats: dict[str, Any],
    ) -> None:
        bound_here = Prediction.round_id == round_id
        if window_id is not None:
            bound_here = or_(
                bound_here,
                (Prediction.window_id == window_id) & Prediction.round_id.is_(None),
            )
        result = await self.db.execute(
            select(Prediction.id)
            .where(bound_here, Prediction.status == PredictionStatus.PENDING)
            .order_by(Prediction.placed_at, Prediction.id)
        )
        prediction_ids = list(result.scalars())

        if len(top3) < 3:
            stats["predictions_deferred"] = len(prediction_ids)
            return

        market = PredictionMarket(self.db)
        for prediction_id in prediction_ids:
            try:
                async with atomic(self.db):
                    await market.settle_prediction(prediction_id, round_id, top3, now)
                stats["predictions_settled"] += 1
            except AlreadySettled:
                stats["already_settled"] += 1
            except Exception as e:
                logger.error(
                    "prediction_settlement_error",
                    prediction_id=prediction_id,
                    round_id=round_id,
                    error=str(e),
                )
                stats["errors"] += 1

    async def _settle_challenges(
        self,
        round_id: int,
        window_id: int | None,
        scores: dict[int, int],
        finalized_at: datetime,
        now: datetime,
        stats: dict[str, Any],
        include_unbound: bool = True,
    ) -> None:
        result = await self.db.execute(
            select(
                Challenge.id,
                Challenge.challenger_id,
                Challenge.challenged_id,
                Challenge.round_id,
                Challenge.responded_at,
            )
            .where(
                Challenge.status == ChallengeStatus.ACCEPTED,
                or_(Challenge.round_id == round_id, Challenge.round_id.is_(None)),
            )
            .order_by(Challenge.issued_at, Challenge.id)
        )
        # Unbound challenges only settle against a round finalized after acceptance
        due = [
            row.id
            for row in result
            if row.round_id == round_id
            or (
                include_unbound
                and row.challenger_id in scores
                and row.challenged_id in scores
                and row.responded_at is not None
                and as_utc(row.responded_at) < finalized_at
            )
        ]

        engine = ChallengeEngine(self.db)
        for challenge_id in due:
            try:
                async with atomic(self.db):
                    await engine.settle(challenge_id, round_id, scores, now)
                stats["challenges_settled"] += 1
            except AlreadySettled:
                stats["already_settled"] += 1
            except Exception as e:
                logger.error(
                    "challenge_settlement_error",
                    challenge_id=challenge_id,
                    round_id=round_id,
                    error=str(e),
                )
                stats["errors"] += 1

        lapsed_scope = Challenge.round_id == round_id
        if window_id is not None:
            lapsed_scope = or_(lapsed_scope, Challenge.window_id == window_id)
        result = await self.db.execute(
            select(Challenge.id).where(
                lapsed_scope, Challenge.status == ChallengeStatus.PENDING
            )
        )
        for challenge_id in list(result.scalars()):
            try:
                async with atomic(self.db):
                    await engine.refund(
                        challenge_id,
                        TransactionType.CHALLENGE_REFUND,
                        reason="Challenge lapsed: not answered before the round",
                        now=now,
                    )
                stats["challenges_lapsed"] += 1
            except AlreadySettled:
                stats["already_settled"] += 1
            except Exception as e:
                logger.error(
                    "challenge_lapse_error",
                    challenge_id=challenge_id,
                    round_id=round_id,
                    error=str(e),
                )
                stats["errors"] += 1

    async def settle_finalized_rounds(self, now: datetime | None = None) -> dict[str, Any]:
        """Settle every finalized round that has not been settled yet, oldest first."""
        stats = {"rounds_found": 0, "rounds_settled": 0, "errors": 0}
        result = await self.db.execute(
            select(Round.id)
            .where(Round.status == "finalized", Round.pulp_settled_at.is_(None))
            .order_by(Round.finalized_at, Round.id)
        )
        round_ids = list(result.scalars())
        stats["rounds_found"] = len(round_ids)

        for round_id in round_ids:
            try:
                await self.settle_round(round_id, now)
                stats["rounds_settled"] += 1
            except Exception as e:
                logger.error("round_settlement_error", round_id=round_id, error=str(e))
                await self.db.rollback()
                stats["errors"] += 1

        logger.info("settle_finalized_rounds_complete", **stats)
        return stats

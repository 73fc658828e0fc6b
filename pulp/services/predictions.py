"""Prediction Market.

Players bless three players to finish first, second and third in the next
round. The wager is escrowed (debited) when the prediction is placed and
the outcome is decided when the round settles:

- exact order                -> won_perfect, payout 2x wager
- same three, any order      -> won_partial, payout 1x wager (stake back)
- anything else              -> lost, nothing back
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.config import get_economy_config
from pulp.config.economy import WagerRules
from pulp.models.base import utc_now
from pulp.models.domain import Prediction
from pulp.services.errors import (
    AlreadySettled,
    DuplicatePrediction,
    InvalidPicks,
    InvalidWager,
    NotFound,
)
from pulp.services.ledger import Ledger, TransactionType
from pulp.services.standings import RoundStore, normalize_name
from pulp.services.windows import require_open_window

logger = structlog.get_logger(__name__)


class PredictionStatus:
    PENDING = "pending"
    WON_PERFECT = "won_perfect"
    WON_PARTIAL = "won_partial"
    LOST = "lost"
    REFUNDED = "refunded"


@dataclass
class PredictionOutcome:
    status: str
    payout: int


def score_prediction(
    picks: Sequence[str],
    actual_top3: Sequence[str],
    wager: int,
    rules: WagerRules | None = None,
) -> PredictionOutcome:
    """
    Score three picks against the actual top 3.

    Names are compared case and whitespace insensitively.
    """
    rules = rules or get_economy_config().wagers
    picked = [normalize_name(p) for p in picks]
    actual = [normalize_name(a) for a in actual_top3]

    if picked == actual:
        return PredictionOutcome(PredictionStatus.WON_PERFECT, wager * rules.perfect_multiplier)
    if len(actual) == 3 and set(picked) == set(actual):
        return PredictionOutcome(PredictionStatus.WON_PARTIAL, wager * rules.partial_multiplier)
    return PredictionOutcome(PredictionStatus.LOST, 0)


class PredictionMarket:
    """Places, settles and refunds top-3 predictions."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = Ledger(db)
        self.rules = get_economy_config().wagers

    async def _validate_picks(self, picks: Sequence[str], event_id: int | None) -> list[str]:
        """Return the canonical names of three distinct registered players."""
        cleaned = [(p or "").strip() for p in picks]
        if len(cleaned) != 3 or not all(cleaned):
            raise InvalidPicks("All three picks are required")
        if len({normalize_name(p) for p in cleaned}) != 3:
            raise InvalidPicks("All three picks must be different players")

        registered = await RoundStore(self.db).get_registered_players(event_id)
        canonical = []
        for pick in cleaned:
            player = registered.get(normalize_name(pick))
            if player is None:
                if event_id is not None:
                    raise InvalidPicks(f'"{pick}" is not registered for this event')
                raise InvalidPicks(f'"{pick}" is not a known player')
            canonical.append(player.name)
        return canonical

    async def place_prediction(
        self,
        player_id: int,
        picks: Sequence[str],
        wager: int,
        window_id: int,
        event_id: int | None = None,
        round_id: int | None = None,
        now: datetime | None = None,
    ) -> Prediction:
        """
        Place a blessing and escrow its wager.

        Every check runs before the debit, so a rejected prediction never
        moves PULPs.

        Raises:
            WindowClosed, InvalidWager, InvalidPicks, DuplicatePrediction,
            InsufficientFunds
        """
        await require_open_window(self.db, window_id, now)

        if wager < self.rules.min_wager:
            raise InvalidWager(f"Minimum blessing wager is {self.rules.min_wager} PULPs")

        names = await self._validate_picks(picks, event_id)

        existing = await self.db.scalar(
            select(Prediction.id).where(
                Prediction.player_id == player_id,
                Prediction.window_id == window_id,
            )
        )
        if existing is not None:
            raise DuplicatePrediction("You already have a blessing in this window")

        if round_id is not None:
            existing = await self.db.scalar(
                select(Prediction.id).where(
                    Prediction.player_id == player_id,
                    Prediction.round_id == round_id,
                    Prediction.status == PredictionStatus.PENDING,
                )
            )
            if existing is not None:
                raise DuplicatePrediction("You already have a pending blessing for this round")

        await self.ledger.debit(
            player_id,
            wager,
            TransactionType.PREDICTION_WAGER,
            description=f"Blessing: {names[0]}, {names[1]}, {names[2]}",
            metadata={"window_id": window_id, "picks": names},
        )

        prediction = Prediction(
            player_id=player_id,
            window_id=window_id,
            event_id=event_id,
            round_id=round_id,
            pick_first=names[0],
            pick_second=names[1],
            pick_third=names[2],
            wager=wager,
            status=PredictionStatus.PENDING,
            placed_at=now or utc_now(),
        )
        self.db.add(prediction)
        await self.db.flush()

        logger.info(
            "prediction_placed",
            prediction_id=prediction.id,
            player_id=player_id,
            window_id=window_id,
            wager=wager,
        )
        return prediction

    async def _lock(self, prediction_id: int) -> Prediction:
        result = await self.db.execute(
            select(Prediction)
            .where(Prediction.id == prediction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        prediction = result.scalar_one_or_none()
        if prediction is None:
            raise NotFound(f"Prediction {prediction_id} not found")
        return prediction

    async def settle_prediction(
        self,
        prediction_id: int,
        round_id: int,
        actual_top3: Sequence[str],
        now: datetime | None = None,
    ) -> PredictionOutcome:
        """
        Resolve a pending prediction against the round's top 3.

        Raises:
            AlreadySettled: the prediction is no longer pending
        """
        prediction = await self._lock(prediction_id)
        if prediction.status != PredictionStatus.PENDING:
            raise AlreadySettled(f"Prediction {prediction_id} is already {prediction.status}")

        outcome = score_prediction(prediction.picks, actual_top3, prediction.wager, self.rules)
        if outcome.payout > 0:
            await self.ledger.credit(
                prediction.player_id,
                outcome.payout,
                TransactionType.PREDICTION_PAYOUT,
                description=f"Blessing {outcome.status.replace('_', ' ')}",
                metadata={"prediction_id": prediction.id, "round_id": round_id},
                reference=f"prediction:{prediction.id}:payout",
            )

        prediction.status = outcome.status
        prediction.payout = outcome.payout
        prediction.round_id = round_id
        prediction.actual_top3 = list(actual_top3)
        prediction.resolved_at = now or utc_now()
        await self.db.flush()

        logger.info(
            "prediction_settled",
            prediction_id=prediction.id,
            round_id=round_id,
            status=outcome.status,
            payout=outcome.payout,
        )
        return outcome

    async def refund_prediction(self, prediction_id: int, now: datetime | None = None) -> Prediction:
        """Return the escrowed wager of a pending prediction."""
        prediction = await self._lock(prediction_id)
        if prediction.status != PredictionStatus.PENDING:
            raise AlreadySettled(f"Prediction {prediction_id} is already {prediction.status}")

        await self.ledger.credit(
            prediction.player_id,
            prediction.wager,
            TransactionType.WINDOW_EXPIRED_REFUND,
            description="Blessing refunded: window expired",
            metadata={"prediction_id": prediction.id, "window_id": prediction.window_id},
            reference=f"prediction:{prediction.id}:refund",
        )
        prediction.status = PredictionStatus.REFUNDED
        prediction.resolved_at = now or utc_now()
        await self.db.flush()

        logger.info("prediction_refunded", prediction_id=prediction.id, wager=prediction.wager)
        return prediction

    async def refund_window(self, window_id: int) -> int:
        """Refund every pending prediction in a window. Returns the count."""
        result = await self.db.execute(
            select(Prediction.id).where(
                Prediction.window_id == window_id,
                Prediction.status == PredictionStatus.PENDING,
            )
        )
        prediction_ids = list(result.scalars())
        for prediction_id in prediction_ids:
            await self.refund_prediction(prediction_id)
        return len(prediction_ids)

    async def list_for_player(
        self, player_id: int, status: str | None = None, limit: int = 50
    ) -> list[Prediction]:
        query = select(Prediction).where(Prediction.player_id == player_id)
        if status:
            query = query.where(Prediction.status == status)
        result = await self.db.execute(
            query.order_by(Prediction.placed_at.desc()).limit(min(limit, 100))
        )
        return list(result.scalars())

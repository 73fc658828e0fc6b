"""Challenge Engine.

Head-to-head wagers. A player may only challenge someone ranked above them
in the active season standings. The challenger's wager is escrowed when the
challenge is issued; the challenged player escrows an equal amount when
accepting. Declining costs the challenger half the stake (the "cowardice
tax" is forfeited to nobody) and counts against the decliner.

Lowest stroke total in the bound round takes both stakes; a tie refunds
both players.
"""

import math
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.config import get_economy_config
from pulp.models.base import utc_now
from pulp.models.domain import Challenge
from pulp.services.errors import (
    AlreadySettled,
    DuplicateChallenge,
    InvalidOpponent,
    InvalidState,
    InvalidWager,
    NotAuthorized,
    NotFound,
)
from pulp.services.ledger import Ledger, TransactionType
from pulp.services.standings import StandingsProvider
from pulp.services.windows import require_open_window

logger = structlog.get_logger(__name__)


class ChallengeStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    SETTLED = "settled"
    REFUNDED = "refunded"


OPEN_STATUSES = (ChallengeStatus.PENDING, ChallengeStatus.ACCEPTED)


@dataclass
class ChallengeOutcome:
    """Result of settling a challenge. winner_id is None on a tie."""
    challenge_id: int
    winner_id: int | None
    payout: int


def split_rejected_wager(wager: int, refund_rate: float) -> tuple[int, int]:
    """Return (refund, forfeited) for a declined challenge. Refund rounds down."""
    refund = math.floor(wager * refund_rate)
    return refund, wager - refund


class ChallengeEngine:
    """Issues, answers, settles and refunds challenges."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = Ledger(db)
        self.rules = get_economy_config().wagers

    async def _lock(self, challenge_id: int) -> Challenge:
        result = await self.db.execute(
            select(Challenge)
            .where(Challenge.id == challenge_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        challenge = result.scalar_one_or_none()
        if challenge is None:
            raise NotFound(f"Challenge {challenge_id} not found")
        return challenge

    async def issue(
        self,
        challenger_id: int,
        challenged_id: int,
        wager: int,
        round_id: int | None = None,
        window_id: int | None = None,
        now: datetime | None = None,
    ) -> Challenge:
        """
        Challenge a higher-ranked player and escrow the wager.

        Raises:
            InvalidOpponent, WindowClosed, InvalidWager, DuplicateChallenge,
            InsufficientFunds, NotFound
        """
        if challenger_id == challenged_id:
            raise InvalidOpponent("You cannot challenge yourself")

        if window_id is not None:
            await require_open_window(self.db, window_id, now)

        if wager < self.rules.min_wager:
            raise InvalidWager(f"Minimum challenge wager is {self.rules.min_wager} PULPs")

        # Held until commit so concurrent issues by either player queue here
        players = await self.ledger.lock_players(challenger_id, challenged_id)
        challenged = players[challenged_id]

        standings = await StandingsProvider(self.db).get_season_standings()
        ranks = {s.player_id: s.rank for s in standings}
        challenger_rank = ranks.get(challenger_id)
        challenged_rank = ranks.get(challenged_id)
        if challenger_rank is None:
            raise InvalidOpponent(
                "You need a season ranking before you can issue challenges"
            )
        if challenged_rank is None or challenged_rank >= challenger_rank:
            raise InvalidOpponent(
                f"You can only challenge players ranked above you (you are #{challenger_rank})"
            )

        pair = or_(
            and_(Challenge.challenger_id == challenger_id, Challenge.challenged_id == challenged_id),
            and_(Challenge.challenger_id == challenged_id, Challenge.challenged_id == challenger_id),
        )
        existing = await self.db.scalar(
            select(Challenge.id).where(pair, Challenge.status.in_(OPEN_STATUSES))
        )
        if existing is not None:
            raise DuplicateChallenge(
                f"There is already an open challenge with {challenged.name}"
            )

        if window_id is not None:
            existing = await self.db.scalar(
                select(Challenge.id).where(
                    Challenge.challenger_id == challenger_id,
                    Challenge.window_id == window_id,
                )
            )
            if existing is not None:
                raise DuplicateChallenge("You already issued a challenge in this window")

        await self.ledger.debit(
            challenger_id,
            wager,
            TransactionType.CHALLENGE_WAGER,
            description=f"Challenge issued to {challenged.name}",
            metadata={"challenged_id": challenged_id, "window_id": window_id},
        )

        challenge = Challenge(
            challenger_id=challenger_id,
            challenged_id=challenged_id,
            window_id=window_id,
            round_id=round_id,
            wager=wager,
            status=ChallengeStatus.PENDING,
            issued_at=now or utc_now(),
        )
        self.db.add(challenge)
        await self.db.flush()

        logger.info(
            "challenge_issued",
            challenge_id=challenge.id,
            challenger_id=challenger_id,
            challenged_id=challenged_id,
            wager=wager,
        )
        return challenge

    async def respond(
        self,
        challenge_id: int,
        responder_id: int,
        accept: bool,
        now: datetime | None = None,
    ) -> Challenge:
        """
        Accept or decline a pending challenge.

        Declining refunds half the challenger's stake (rounded down) and
        forfeits the rest. Accepting escrows the challenged player's stake.

        Raises:
            NotFound, NotAuthorized, InvalidState, WindowClosed, InsufficientFunds
        """
        now = now or utc_now()
        challenge = await self._lock(challenge_id)

        if responder_id != challenge.challenged_id:
            raise NotAuthorized("Only the challenged player can respond")
        if challenge.status != ChallengeStatus.PENDING:
            raise InvalidState(f"Challenge is {challenge.status}, cannot respond")
        if challenge.window_id is not None:
            await require_open_window(self.db, challenge.window_id, now)

        if accept:
            await self.ledger.debit(
                challenge.challenged_id,
                challenge.wager,
                TransactionType.CHALLENGE_WAGER,
                description="Challenge accepted",
                metadata={"challenge_id": challenge.id},
            )
            challenge.status = ChallengeStatus.ACCEPTED
        else:
            refund, forfeited = split_rejected_wager(
                challenge.wager, self.rules.rejection_refund_rate
            )
            players = await self.ledger.lock_players(
                challenge.challenger_id, challenge.challenged_id
            )
            if refund > 0:
                await self.ledger.credit(
                    challenge.challenger_id,
                    refund,
                    TransactionType.CHALLENGE_REJECTED_REFUND,
                    description="Challenge declined: half the wager returned",
                    metadata={"challenge_id": challenge.id, "forfeited": forfeited},
                    reference=f"challenge:{challenge.id}:rejected_refund",
                )
            players[challenge.challenged_id].challenges_declined += 1
            challenge.status = ChallengeStatus.REJECTED
            challenge.refunded_amount = refund
            challenge.cowardice_tax = forfeited
            challenge.resolved_at = now

        challenge.responded_at = now
        await self.db.flush()

        logger.info(
            "challenge_responded",
            challenge_id=challenge.id,
            accepted=accept,
            status=challenge.status,
        )
        return challenge

    async def settle(
        self,
        challenge_id: int,
        round_id: int,
        scores: dict[int, int],
        now: datetime | None = None,
    ) -> ChallengeOutcome:
        """
        Pay out an accepted challenge from the round's stroke totals.

        Raises:
            AlreadySettled: the challenge is already resolved
            InvalidState: not accepted yet, or a player has no score
        """
        challenge = await self._lock(challenge_id)
        if challenge.status in (
            ChallengeStatus.SETTLED,
            ChallengeStatus.REFUNDED,
            ChallengeStatus.REJECTED,
        ):
            raise AlreadySettled(f"Challenge {challenge_id} is already {challenge.status}")
        if challenge.status != ChallengeStatus.ACCEPTED:
            raise InvalidState(f"Challenge {challenge_id} has not been accepted")

        challenger_strokes = scores.get(challenge.challenger_id)
        challenged_strokes = scores.get(challenge.challenged_id)
        if challenger_strokes is None or challenged_strokes is None:
            raise InvalidState(f"Challenge {challenge_id} needs scores for both players")

        await self.ledger.lock_players(challenge.challenger_id, challenge.challenged_id)

        if challenger_strokes == challenged_strokes:
            winner_id = None
            payout = 0
            for player_id in sorted((challenge.challenger_id, challenge.challenged_id)):
                await self.ledger.credit(
                    player_id,
                    challenge.wager,
                    TransactionType.CHALLENGE_REFUND,
                    description="Challenge tied: wager returned",
                    metadata={"challenge_id": challenge.id, "round_id": round_id},
                    reference=f"challenge:{challenge.id}:tie",
                )
        else:
            winner_id = (
                challenge.challenger_id
                if challenger_strokes < challenged_strokes
                else challenge.challenged_id
            )
            payout = challenge.wager * self.rules.challenge_multiplier
            await self.ledger.credit(
                winner_id,
                payout,
                TransactionType.CHALLENGE_PAYOUT,
                description="Challenge won",
                metadata={"challenge_id": challenge.id, "round_id": round_id},
                reference=f"challenge:{challenge.id}:payout",
            )

        challenge.status = ChallengeStatus.SETTLED
        challenge.round_id = round_id
        challenge.winner_id = winner_id
        challenge.challenger_strokes = challenger_strokes
        challenge.challenged_strokes = challenged_strokes
        challenge.resolved_at = now or utc_now()
        await self.db.flush()

        logger.info(
            "challenge_settled",
            challenge_id=challenge.id,
            round_id=round_id,
            winner_id=winner_id,
            payout=payout,
        )
        return ChallengeOutcome(challenge_id=challenge.id, winner_id=winner_id, payout=payout)

    async def refund(
        self,
        challenge_id: int,
        transaction_type: str = TransactionType.CHALLENGE_REFUND,
        reason: str = "Challenge cancelled",
        now: datetime | None = None,
    ) -> Challenge:
        """Return every escrowed stake of a pending or accepted challenge."""
        challenge = await self._lock(challenge_id)
        if challenge.status not in OPEN_STATUSES:
            raise AlreadySettled(f"Challenge {challenge_id} is already {challenge.status}")

        stakers = [challenge.challenger_id]
        if challenge.status == ChallengeStatus.ACCEPTED:
            stakers.append(challenge.challenged_id)

        await self.ledger.lock_players(*stakers)
        for player_id in sorted(stakers):
            await self.ledger.credit(
                player_id,
                challenge.wager,
                transaction_type,
                description=reason,
                metadata={"challenge_id": challenge.id},
                reference=f"challenge:{challenge.id}:refund",
            )

        challenge.status = ChallengeStatus.REFUNDED
        challenge.refunded_amount = challenge.wager * len(stakers)
        challenge.resolved_at = now or utc_now()
        await self.db.flush()

        logger.info("challenge_refunded", challenge_id=challenge.id, reason=reason)
        return challenge

    async def refund_window(self, window_id: int) -> int:
        """Refund every open challenge issued in an expired window."""
        result = await self.db.execute(
            select(Challenge.id).where(
                Challenge.window_id == window_id,
                Challenge.status.in_(OPEN_STATUSES),
            )
        )
        challenge_ids = list(result.scalars())
        for challenge_id in challenge_ids:
            await self.refund(
                challenge_id,
                TransactionType.WINDOW_EXPIRED_REFUND,
                reason="Challenge refunded: window expired",
            )
        return len(challenge_ids)

    async def list_for_player(
        self, player_id: int, status: str | None = None, limit: int = 50
    ) -> list[Challenge]:
        query = select(Challenge).where(
            or_(Challenge.challenger_id == player_id, Challenge.challenged_id == player_id)
        )
        if status:
            query = query.where(Challenge.status == status)
        result = await self.db.execute(
            query.order_by(Challenge.issued_at.desc()).limit(min(limit, 100))
        )
        return list(result.scalars())

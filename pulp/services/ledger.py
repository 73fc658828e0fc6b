"""PULP Ledger.

The only place player balances change. Every credit and debit locks the
player row before reading the balance, so concurrent requests for the same
player serialize instead of losing updates, and every change leaves a
LedgerTransaction behind.

The Ledger never commits; the caller owns the transaction.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.models.domain import LedgerTransaction, Player
from pulp.services.errors import AlreadySettled, InsufficientFunds, NotFound

logger = structlog.get_logger(__name__)

MAX_HISTORY_LIMIT = 100


class TransactionType:
    """Ledger transaction types."""
    PREDICTION_WAGER = "prediction_wager"
    PREDICTION_PAYOUT = "prediction_payout"
    CHALLENGE_WAGER = "challenge_wager"
    CHALLENGE_PAYOUT = "challenge_payout"
    CHALLENGE_REFUND = "challenge_refund"
    CHALLENGE_REJECTED_REFUND = "challenge_rejected_refund"
    ADVANTAGE_PURCHASE = "advantage_purchase"
    WINDOW_EXPIRED_REFUND = "window_expired_refund"
    ROUND_REWARD = "round_reward"
    WEEKLY_BONUS = "weekly_interaction_bonus"
    ADMIN_ADJUSTMENT = "admin_adjustment"


@dataclass
class PlayerStats:
    """Aggregate ledger activity for one player."""
    player_id: int
    current_balance: int
    total_earned: int
    total_spent: int
    net_gain: int
    transaction_count: int
    by_type: dict[str, int]


class Ledger:
    """Credits and debits player balances under a row lock."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def lock_player(self, player_id: int) -> Player:
        """Load a player with SELECT ... FOR UPDATE."""
        result = await self.db.execute(
            select(Player)
            .where(Player.id == player_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        player = result.scalar_one_or_none()
        if player is None:
            raise NotFound(f"Player {player_id} not found")
        return player

    async def lock_players(self, *player_ids: int) -> dict[int, Player]:
        """Lock several players, always in ascending id order."""
        ids = sorted(set(player_ids))
        result = await self.db.execute(
            select(Player)
            .where(Player.id.in_(ids))
            .order_by(Player.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        players = {p.id: p for p in result.scalars()}
        missing = [pid for pid in ids if pid not in players]
        if missing:
            raise NotFound(f"Player {missing[0]} not found")
        return players

    async def _check_reference(self, player_id: int, reference: str | None) -> None:
        if reference is None:
            return
        existing = await self.db.scalar(
            select(LedgerTransaction.id).where(
                LedgerTransaction.player_id == player_id,
                LedgerTransaction.reference == reference,
            )
        )
        if existing is not None:
            raise AlreadySettled(f"Transaction {reference} already recorded")

    async def _apply(
        self,
        player_id: int,
        delta: int,
        transaction_type: str,
        description: str,
        metadata: dict[str, Any] | None,
        reference: str | None,
    ) -> LedgerTransaction:
        player = await self.lock_player(player_id)
        await self._check_reference(player_id, reference)

        if delta < 0 and player.pulp_balance < -delta:
            raise InsufficientFunds(player.name, player.pulp_balance, -delta)

        player.pulp_balance += delta
        transaction = LedgerTransaction(
            player_id=player_id,
            amount=delta,
            transaction_type=transaction_type,
            description=description,
            reference=reference,
            balance_after=player.pulp_balance,
            extra=metadata or {},
        )
        self.db.add(transaction)
        await self.db.flush()

        logger.info(
            "ledger_transaction",
            player_id=player_id,
            amount=delta,
            transaction_type=transaction_type,
            balance=player.pulp_balance,
            reference=reference,
        )
        return transaction

    async def credit(
        self,
        player_id: int,
        amount: int,
        transaction_type: str,
        description: str = "",
        metadata: dict[str, Any] | None = None,
        reference: str | None = None,
    ) -> LedgerTransaction:
        """
        Add PULPs to a player's balance.

        Raises:
            ValueError: amount is not a positive integer
            AlreadySettled: reference was already recorded for this player
        """
        _require_positive(amount)
        return await self._apply(
            player_id, amount, transaction_type, description, metadata, reference
        )

    async def debit(
        self,
        player_id: int,
        amount: int,
        transaction_type: str,
        description: str = "",
        metadata: dict[str, Any] | None = None,
        reference: str | None = None,
    ) -> LedgerTransaction:
        """
        Remove PULPs from a player's balance.

        Raises:
            ValueError: amount is not a positive integer
            InsufficientFunds: amount exceeds the current balance
            AlreadySettled: reference was already recorded for this player
        """
        _require_positive(amount)
        return await self._apply(
            player_id, -amount, transaction_type, description, metadata, reference
        )

    async def get_balance(self, player_id: int) -> int:
        balance = await self.db.scalar(
            select(Player.pulp_balance).where(Player.id == player_id)
        )
        if balance is None:
            raise NotFound(f"Player {player_id} not found")
        return balance

    async def get_transactions(
        self, player_id: int, limit: int = 50, offset: int = 0
    ) -> list[LedgerTransaction]:
        """Most recent transactions first. limit is capped at 100."""
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        result = await self.db.execute(
            select(LedgerTransaction)
            .where(LedgerTransaction.player_id == player_id)
            .order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id.desc())
            .limit(limit)
            .offset(max(0, offset))
        )
        return list(result.scalars())

    async def get_player_stats(self, player_id: int) -> PlayerStats:
        balance = await self.get_balance(player_id)
        result = await self.db.execute(
            select(
                LedgerTransaction.transaction_type,
                func.sum(LedgerTransaction.amount),
                func.count(LedgerTransaction.id),
            )
            .where(LedgerTransaction.player_id == player_id)
            .group_by(LedgerTransaction.transaction_type)
        )

        by_type: dict[str, int] = defaultdict(int)
        count = 0
        for transaction_type, total, n in result:
            total = int(total or 0)
            by_type[transaction_type] += total
            count += n
        # Earned/spent need per-row signs, not per-type sums
        sign_totals = await self.db.execute(
            select(
                func.sum(LedgerTransaction.amount).filter(LedgerTransaction.amount > 0),
                func.sum(LedgerTransaction.amount).filter(LedgerTransaction.amount < 0),
            ).where(LedgerTransaction.player_id == player_id)
        )
        positive, negative = sign_totals.one()
        earned = int(positive or 0)
        spent = -int(negative or 0)

        return PlayerStats(
            player_id=player_id,
            current_balance=balance,
            total_earned=earned,
            total_spent=spent,
            net_gain=earned - spent,
            transaction_count=count,
            by_type=dict(by_type),
        )


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Amount must be a positive integer, got {amount!r}")

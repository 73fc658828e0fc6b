"""Domain models for the PULP economy.

Players, events, rounds and scores are owned by the league CRUD subsystem
and are only read here (apart from the PULP counters on Player). Everything
else in this module belongs to the economy: the ledger, betting windows,
predictions (blessings), challenges and advantages.

Balances are integers and can never go negative; the check constraint on
players.pulp_balance backs up the Ledger's own funds check.
"""

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from pulp.models.base import Base, TimestampMixin, utc_now

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# League entities (read-only for the economy)
# =============================================================================

class Player(Base, TimestampMixin):
    """
    League player and PULP account holder.

    pulp_balance is only ever changed through the Ledger.
    """

    __tablename__ = "players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, doc="Auth user id, when the player has an account"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # PULP account
    pulp_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    challenges_declined: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Round reward counters
    participation_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_round_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    total_rounds_this_season: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    last_interaction_week: Mapped[str | None] = mapped_column(
        String(10), nullable=True, doc="ISO week of the last weekly bonus, e.g. 2026-W42"
    )

    __table_args__ = (
        CheckConstraint("pulp_balance >= 0", name="ck_players_balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Player {self.name} ({self.pulp_balance} PULPs)>"


class Event(Base, TimestampMixin):
    """Season or tournament that rounds belong to."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    event_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="season", doc="'season' or 'tournament'"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    def __repr__(self) -> str:
        return f"<Event {self.name} ({self.event_type})>"


class EventPlayer(Base):
    """Registration of a player for an event."""

    __tablename__ = "event_players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id"), nullable=False
    )
    player_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("players.id"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("event_id", "player_id", name="uq_event_player"),
    )


class Round(Base, TimestampMixin):
    """
    A played round.

    Score finalization (status 'finalized') is the settlement trigger.
    advantages_used is recorded from scorecards as a list of
    {"player_id": int, "advantage_key": str} entries.
    """

    __tablename__ = "rounds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id"), nullable=False
    )
    played_on: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="scheduled",
        doc="'scheduled', 'in_progress' or 'finalized'",
    )
    finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    pulp_settled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    advantages_used: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSONType, nullable=True
    )

    __table_args__ = (
        Index("idx_rounds_unsettled", "status", "pulp_settled_at"),
    )

    def __repr__(self) -> str:
        return f"<Round {self.id} on {self.played_on} ({self.status})>"


class PlayerRound(Base):
    """A player's result in a round."""

    __tablename__ = "player_rounds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    round_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("rounds.id"), nullable=False
    )
    player_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("players.id"), nullable=False
    )
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_strokes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    final_total: Mapped[int | None] = mapped_column(
        Integer, nullable=True, doc="Season points earned in this round"
    )

    __table_args__ = (
        UniqueConstraint("round_id", "player_id", name="uq_player_round"),
    )


# =============================================================================
# Ledger
# =============================================================================

class LedgerTransaction(Base):
    """
    One balance change. Credits are positive, debits negative.

    reference makes a credit/debit idempotent: a second transaction with the
    same reference for the same player is refused.
    """

    __tablename__ = "pulp_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    player_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("players.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[str] = mapped_column(String(300), nullable=False, default="")
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    extra: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("player_id", "reference", name="uq_pulp_transactions_reference"),
        Index("idx_pulp_transactions_player", "player_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<LedgerTransaction {self.transaction_type} {self.amount:+d} player={self.player_id}>"


# =============================================================================
# Betting windows
# =============================================================================

class BettingWindow(Base, TimestampMixin):
    """
    Time-boxed period in which predictions, challenges and purchases are accepted.

    Lifecycle: closed (scheduled) -> open -> locked -> closed.
    round_id is the round that settled the window, once known.
    """

    __tablename__ = "betting_windows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="closed")
    opened_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("players.id"), nullable=True
    )
    opens_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closes_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, doc="Locked windows refund after this"
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    close_reason: Mapped[str | None] = mapped_column(
        String(20), nullable=True, doc="'settled', 'expired' or 'cancelled'"
    )
    round_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("rounds.id"), nullable=True
    )

    __table_args__ = (
        Index("idx_betting_windows_status", "status", "opens_at"),
    )

    def __repr__(self) -> str:
        return f"<BettingWindow {self.id} ({self.status})>"


# =============================================================================
# Predictions (blessings)
# =============================================================================

class Prediction(Base):
    """
    Top-3 prediction ("blessing") placed during a betting window.

    round_id stays null until the window is bound to the next round played.
    Status: pending -> won_perfect | won_partial | lost, or refunded.
    """

    __tablename__ = "predictions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    player_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("players.id"), nullable=False
    )
    window_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("betting_windows.id"), nullable=True
    )
    event_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("events.id"), nullable=True
    )
    round_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("rounds.id"), nullable=True
    )
    pick_first: Mapped[str] = mapped_column(String(100), nullable=False)
    pick_second: Mapped[str] = mapped_column(String(100), nullable=False)
    pick_third: Mapped[str] = mapped_column(String(100), nullable=False)
    wager: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    payout: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_top3: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    placed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("player_id", "window_id", name="uq_prediction_player_window"),
        CheckConstraint("wager > 0", name="ck_predictions_wager_positive"),
        Index("idx_predictions_pending", "window_id", "status"),
    )

    @property
    def picks(self) -> list[str]:
        return [self.pick_first, self.pick_second, self.pick_third]

    def __repr__(self) -> str:
        return f"<Prediction {self.id} player={self.player_id} {self.status}>"


# =============================================================================
# Challenges
# =============================================================================

class Challenge(Base):
    """
    Head-to-head wager; the lower stroke total in the bound round wins.

    Status: pending -> accepted -> settled, pending -> rejected,
    or pending/accepted -> refunded when the window expires.
    """

    __tablename__ = "challenges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    challenger_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("players.id"), nullable=False
    )
    challenged_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("players.id"), nullable=False
    )
    window_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("betting_windows.id"), nullable=True
    )
    round_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("rounds.id"), nullable=True
    )
    wager: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    winner_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("players.id"), nullable=True
    )
    challenger_strokes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    challenged_strokes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refunded_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cowardice_tax: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Forfeited half of a rejected wager"
    )
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    responded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("challenger_id <> challenged_id", name="ck_challenges_distinct"),
        CheckConstraint("wager > 0", name="ck_challenges_wager_positive"),
        UniqueConstraint("challenger_id", "window_id", name="uq_challenge_challenger_window"),
        Index("idx_challenges_status", "status", "round_id"),
    )

    def __repr__(self) -> str:
        return f"<Challenge {self.id} {self.challenger_id}->{self.challenged_id} {self.status}>"


# =============================================================================
# Advantages
# =============================================================================

class AdvantageCatalogEntry(Base):
    """Purchasable advantage. Static reference data."""

    __tablename__ = "advantage_catalog"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    advantage_key: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    icon: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    pulp_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    expiration_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<AdvantageCatalogEntry {self.advantage_key} ({self.pulp_cost})>"


class ActiveAdvantage(Base):
    """
    Advantage owned by a player.

    Expired when expires_at <= now, used when used_at is set. A player holds
    at most one unexpired, unused instance per advantage key.
    """

    __tablename__ = "player_advantages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    player_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("players.id"), nullable=False
    )
    advantage_key: Mapped[str] = mapped_column(
        String(50), ForeignKey("advantage_catalog.advantage_key"), nullable=False
    )
    window_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("betting_windows.id"), nullable=True
    )
    purchased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    round_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("rounds.id"), nullable=True
    )
    usage: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_player_advantages_owner", "player_id", "advantage_key"),
    )

    def __repr__(self) -> str:
        return f"<ActiveAdvantage {self.advantage_key} player={self.player_id}>"

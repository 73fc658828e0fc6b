"""Initial schema for the PULP economy.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Creates the league tables the economy reads (players, events,
event_players, rounds, player_rounds) and the economy's own tables:
- pulp_transactions: the ledger
- betting_windows: closed -> open -> locked -> closed windows
- predictions: top-3 blessings
- challenges: head-to-head wagers
- advantage_catalog / player_advantages: the advantage store

Balances can never go negative (ck_players_balance_non_negative).
The advantage catalog is seeded with the default store items.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # ==========================================================================
    # League entities
    # ==========================================================================
    op.create_table(
        "players",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default="true"),
        sa.Column("pulp_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("challenges_declined", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("participation_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_round_date", sa.Date(), nullable=True),
        sa.Column("total_rounds_this_season", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_interaction_week", sa.String(length=10), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("pulp_balance >= 0", name="ck_players_balance_non_negative"),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("event_type", sa.String(length=20), nullable=False, server_default="season"),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default="true"),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "event_players",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("player_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", "player_id", name="uq_event_player"),
    )

    op.create_table(
        "rounds",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("played_on", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="scheduled"),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pulp_settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("advantages_used", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_rounds_unsettled", "rounds", ["status", "pulp_settled_at"])

    op.create_table(
        "player_rounds",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("round_id", sa.Integer(), nullable=False),
        sa.Column("player_id", sa.Integer(), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=True),
        sa.Column("total_strokes", sa.Integer(), nullable=True),
        sa.Column("final_total", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["round_id"], ["rounds.id"]),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("round_id", "player_id", name="uq_player_round"),
    )

    # ==========================================================================
    # Ledger
    # ==========================================================================
    op.create_table(
        "pulp_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("player_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(length=40), nullable=False),
        sa.Column("description", sa.String(length=300), nullable=False, server_default=""),
        sa.Column("reference", sa.String(length=100), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("player_id", "reference", name="uq_pulp_transactions_reference"),
    )
    op.create_index(
        "idx_pulp_transactions_player", "pulp_transactions", ["player_id", "created_at"]
    )

    # ==========================================================================
    # Betting windows
    # ==========================================================================
    op.create_table(
        "betting_windows",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=10), nullable=False, server_default="closed"),
        sa.Column("opened_by", sa.Integer(), nullable=True),
        sa.Column("opens_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closes_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("close_reason", sa.String(length=20), nullable=True),
        sa.Column("round_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["opened_by"], ["players.id"]),
        sa.ForeignKeyConstraint(["round_id"], ["rounds.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_betting_windows_status", "betting_windows", ["status", "opens_at"])

    # ==========================================================================
    # Predictions (blessings)
    # ==========================================================================
    op.create_table(
        "predictions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("player_id", sa.Integer(), nullable=False),
        sa.Column("window_id", sa.Integer(), nullable=True),
        sa.Column("event_id", sa.Integer(), nullable=True),
        sa.Column("round_id", sa.Integer(), nullable=True),
        sa.Column("pick_first", sa.String(length=100), nullable=False),
        sa.Column("pick_second", sa.String(length=100), nullable=False),
        sa.Column("pick_third", sa.String(length=100), nullable=False),
        sa.Column("wager", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("payout", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actual_top3", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("placed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"]),
        sa.ForeignKeyConstraint(["window_id"], ["betting_windows.id"]),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"]),
        sa.ForeignKeyConstraint(["round_id"], ["rounds.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("player_id", "window_id", name="uq_prediction_player_window"),
        sa.CheckConstraint("wager > 0", name="ck_predictions_wager_positive"),
    )
    op.create_index("idx_predictions_pending", "predictions", ["window_id", "status"])

    # ==========================================================================
    # Challenges
    # ==========================================================================
    op.create_table(
        "challenges",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("challenger_id", sa.Integer(), nullable=False),
        sa.Column("challenged_id", sa.Integer(), nullable=False),
        sa.Column("window_id", sa.Integer(), nullable=True),
        sa.Column("round_id", sa.Integer(), nullable=True),
        sa.Column("wager", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("winner_id", sa.Integer(), nullable=True),
        sa.Column("challenger_strokes", sa.Integer(), nullable=True),
        sa.Column("challenged_strokes", sa.Integer(), nullable=True),
        sa.Column("refunded_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cowardice_tax", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["challenger_id"], ["players.id"]),
        sa.ForeignKeyConstraint(["challenged_id"], ["players.id"]),
        sa.ForeignKeyConstraint(["winner_id"], ["players.id"]),
        sa.ForeignKeyConstraint(["window_id"], ["betting_windows.id"]),
        sa.ForeignKeyConstraint(["round_id"], ["rounds.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("challenger_id <> challenged_id", name="ck_challenges_distinct"),
        sa.CheckConstraint("wager > 0", name="ck_challenges_wager_positive"),
        sa.UniqueConstraint("challenger_id", "window_id", name="uq_challenge_challenger_window"),
    )
    op.create_index("idx_challenges_status", "challenges", ["status", "round_id"])

    # ==========================================================================
    # Advantages
    # ==========================================================================
    catalog = op.create_table(
        "advantage_catalog",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("advantage_key", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("icon", sa.String(length=16), nullable=False, server_default=""),
        sa.Column("pulp_cost", sa.Integer(), nullable=False),
        sa.Column("expiration_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default="true"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("advantage_key"),
    )

    op.create_table(
        "player_advantages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("player_id", sa.Integer(), nullable=False),
        sa.Column("advantage_key", sa.String(length=50), nullable=False),
        sa.Column("window_id", sa.Integer(), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("round_id", sa.Integer(), nullable=True),
        sa.Column("usage", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"]),
        sa.ForeignKeyConstraint(["advantage_key"], ["advantage_catalog.advantage_key"]),
        sa.ForeignKeyConstraint(["window_id"], ["betting_windows.id"]),
        sa.ForeignKeyConstraint(["round_id"], ["rounds.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_player_advantages_owner", "player_advantages", ["player_id", "advantage_key"]
    )

    # Seed the store
    op.bulk_insert(
        catalog,
        [
            {
                "advantage_key": "mulligan",
                "name": "Mulligan",
                "description": "Re-throw one shot during your round",
                "icon": "🔄",
                "pulp_cost": 150,
                "expiration_hours": 24,
                "is_active": True,
            },
            {
                "advantage_key": "bag_trump",
                "name": "Bag Trump",
                "description": "Choose the disc your opponent throws on one hole",
                "icon": "🎒",
                "pulp_cost": 80,
                "expiration_hours": 24,
                "is_active": True,
            },
            {
                "advantage_key": "shotgun_buddy",
                "name": "Shotgun Buddy",
                "description": "Your card mate must shotgun a drink with you",
                "icon": "🍺",
                "pulp_cost": 80,
                "expiration_hours": 24,
                "is_active": True,
            },
        ],
    )


def downgrade() -> None:
    op.drop_index("idx_player_advantages_owner", table_name="player_advantages")
    op.drop_table("player_advantages")
    op.drop_table("advantage_catalog")
    op.drop_index("idx_challenges_status", table_name="challenges")
    op.drop_table("challenges")
    op.drop_index("idx_predictions_pending", table_name="predictions")
    op.drop_table("predictions")
    op.drop_index("idx_betting_windows_status", table_name="betting_windows")
    op.drop_table("betting_windows")
    op.drop_index("idx_pulp_transactions_player", table_name="pulp_transactions")
    op.drop_table("pulp_transactions")
    op.drop_table("player_rounds")
    op.drop_index("idx_rounds_unsettled", table_name="rounds")
    op.drop_table("rounds")
    op.drop_table("event_players")
    op.drop_table("events")
    op.drop_table("players")

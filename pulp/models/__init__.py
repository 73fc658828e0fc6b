"""Database models for the PULP economy."""

from pulp.models.base import Base, async_session_factory, engine
from pulp.models.domain import (
    ActiveAdvantage,
    AdvantageCatalogEntry,
    BettingWindow,
    Challenge,
    Event,
    EventPlayer,
    LedgerTransaction,
    Player,
    PlayerRound,
    Prediction,
    Round,
)

__all__ = [
    # Base
    "Base",
    "engine",
    "async_session_factory",
    # League entities
    "Player",
    "Event",
    "EventPlayer",
    "Round",
    "PlayerRound",
    # Economy
    "LedgerTransaction",
    "BettingWindow",
    "Prediction",
    "Challenge",
    "AdvantageCatalogEntry",
    "ActiveAdvantage",
]

"""Advantage Store.

Catalog-driven purchase of time-limited perks. A player can hold at most
one unexpired, unused advantage of each kind. Expiry is evaluated on read
(``expires_at <= now`` means expired), so lapsed advantages need no
background job and are never refunded.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulp.config import get_economy_config, get_settings
from pulp.config.economy import AdvantageCatalogItem, AdvantageExpiryMode, AdvantageRules
from pulp.models.base import as_utc, utc_now
from pulp.models.domain import ActiveAdvantage, AdvantageCatalogEntry, Round
from pulp.services.errors import AlreadyOwned, NotFound
from pulp.services.ledger import Ledger, TransactionType
from pulp.services.windows import require_open_window

logger = structlog.get_logger(__name__)

ADVANTAGE_STATES = ("active", "expired", "used", "all")


def compute_expiry(
    purchased_at: datetime,
    expiration_hours: int,
    rules: AdvantageRules,
    timezone_name: str,
) -> datetime:
    """
    Expiry of an advantage bought at purchased_at.

    duration mode: purchase time plus the catalog hours.
    end_of_day mode: 11:59 PM league time on the purchase day.
    """
    purchased_at = as_utc(purchased_at)
    if rules.expiry_mode == AdvantageExpiryMode.DURATION:
        return purchased_at + timedelta(hours=expiration_hours)

    local = purchased_at.astimezone(ZoneInfo(timezone_name))
    cutoff = local.replace(
        hour=rules.end_of_day_hour,
        minute=rules.end_of_day_minute,
        second=0,
        microsecond=0,
    )
    if cutoff <= local:
        cutoff += timedelta(days=1)
    return as_utc(cutoff)


def advantage_state(advantage: ActiveAdvantage, now: datetime) -> str:
    if advantage.used_at is not None:
        return "used"
    if as_utc(advantage.expires_at) <= now:
        return "expired"
    return "active"


@dataclass
class OwnedAdvantage:
    """An owned advantage together with its catalog entry and current state."""
    advantage: ActiveAdvantage
    entry: AdvantageCatalogEntry
    state: str


class AdvantageStore:
    """Sells advantages and tracks their use."""

    def __init__(self, db: AsyncSession, timezone_name: str | None = None):
        self.db = db
        self.ledger = Ledger(db)
        self.rules = get_economy_config().advantages
        self.timezone_name = timezone_name or get_settings().league_timezone

    async def get_catalog(self) -> list[AdvantageCatalogEntry]:
        result = await self.db.execute(
            select(AdvantageCatalogEntry)
            .where(AdvantageCatalogEntry.is_active.is_(True))
            .order_by(AdvantageCatalogEntry.pulp_cost.desc(), AdvantageCatalogEntry.name)
        )
        return list(result.scalars())

    async def get_catalog_entry(self, advantage_key: str) -> AdvantageCatalogEntry:
        entry = await self.db.scalar(
            select(AdvantageCatalogEntry).where(
                AdvantageCatalogEntry.advantage_key == advantage_key,
                AdvantageCatalogEntry.is_active.is_(True),
            )
        )
        if entry is None:
            raise NotFound(f'Advantage "{advantage_key}" not found in catalog')
        return entry

    async def sync_catalog(
        self, items: list[AdvantageCatalogItem] | None = None
    ) -> dict[str, int]:
        """Upsert the configured catalog into the database."""
        items = items if items is not None else get_economy_config().catalog
        stats = {"created": 0, "updated": 0}

        for item in items:
            entry = await self.db.scalar(
                select(AdvantageCatalogEntry).where(
                    AdvantageCatalogEntry.advantage_key == item.advantage_key
                )
            )
            if entry is None:
                entry = AdvantageCatalogEntry(advantage_key=item.advantage_key)
                self.db.add(entry)
                stats["created"] += 1
            else:
                stats["updated"] += 1
            entry.name = item.name
            entry.description = item.description
            entry.icon = item.icon
            entry.pulp_cost = item.pulp_cost
            entry.expiration_hours = item.expiration_hours
            entry.is_active = True

        await self.db.flush()
        logger.info("advantage_catalog_synced", **stats)
        return stats

    async def _find_active(
        self, player_id: int, advantage_key: str, now: datetime
    ) -> ActiveAdvantage | None:
        result = await self.db.execute(
            select(ActiveAdvantage)
            .where(
                ActiveAdvantage.player_id == player_id,
                ActiveAdvantage.advantage_key == advantage_key,
                ActiveAdvantage.used_at.is_(None),
                ActiveAdvantage.expires_at > now,
            )
            .order_by(ActiveAdvantage.purchased_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def has_active_advantage(
        self, player_id: int, advantage_key: str, now: datetime | None = None
    ) -> bool:
        return await self._find_active(player_id, advantage_key, now or utc_now()) is not None

    async def purchase(
        self,
        player_id: int,
        advantage_key: str,
        window_id: int,
        now: datetime | None = None,
    ) -> ActiveAdvantage:
        """
        Buy an advantage during an open window.

        The player row is locked before the ownership check so two
        concurrent purchases of the same advantage cannot both succeed.

        Raises:
            WindowClosed, NotFound, AlreadyOwned, InsufficientFunds
        """
        now = now or utc_now()
        await require_open_window(self.db, window_id, now)
        entry = await self.get_catalog_entry(advantage_key)

        await self.ledger.lock_player(player_id)
        owned = await self._find_active(player_id, advantage_key, now)
        if owned is not None:
            expires = as_utc(owned.expires_at).astimezone(ZoneInfo(self.timezone_name))
            raise AlreadyOwned(
                f"You already have an active {entry.name} (expires {expires:%b %d, %I:%M %p})"
            )

        await self.ledger.debit(
            player_id,
            entry.pulp_cost,
            TransactionType.ADVANTAGE_PURCHASE,
            description=f"Purchased {entry.name}",
            metadata={"advantage_key": advantage_key, "window_id": window_id},
        )

        advantage = ActiveAdvantage(
            player_id=player_id,
            advantage_key=advantage_key,
            window_id=window_id,
            purchased_at=now,
            expires_at=compute_expiry(
                now, entry.expiration_hours, self.rules, self.timezone_name
            ),
        )
        self.db.add(advantage)
        await self.db.flush()

        logger.info(
            "advantage_purchased",
            advantage_id=advantage.id,
            player_id=player_id,
            advantage_key=advantage_key,
            cost=entry.pulp_cost,
        )
        return advantage

    async def get_player_advantages(
        self,
        player_id: int,
        status: str = "active",
        now: datetime | None = None,
    ) -> list[OwnedAdvantage]:
        """A player's advantages filtered by state (active, expired, used or all)."""
        if status not in ADVANTAGE_STATES:
            raise ValueError(f"Unknown advantage status {status!r}")
        now = now or utc_now()

        result = await self.db.execute(
            select(ActiveAdvantage, AdvantageCatalogEntry)
            .join(
                AdvantageCatalogEntry,
                AdvantageCatalogEntry.advantage_key == ActiveAdvantage.advantage_key,
            )
            .where(ActiveAdvantage.player_id == player_id)
            .order_by(ActiveAdvantage.purchased_at.desc())
        )
        owned = [
            OwnedAdvantage(advantage=advantage, entry=entry, state=advantage_state(advantage, now))
            for advantage, entry in result.all()
        ]
        if status == "all":
            return owned
        return [o for o in owned if o.state == status]

    async def use_advantage(
        self,
        player_id: int,
        advantage_key: str,
        round_id: int | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ActiveAdvantage:
        """
        Spend an active advantage, optionally against a round.

        Raises:
            NotFound: the player has no active advantage of that kind
        """
        now = now or utc_now()
        await self.ledger.lock_player(player_id)
        advantage = await self._find_active(player_id, advantage_key, now)
        if advantage is None:
            raise NotFound(f'No active "{advantage_key}" to use')

        advantage.used_at = now
        advantage.round_id = round_id
        advantage.usage = metadata or {}

        if round_id is not None:
            round_ = await self.db.get(Round, round_id)
            if round_ is None:
                raise NotFound(f"Round {round_id} not found")
            used = list(round_.advantages_used or [])
            used.append({"player_id": player_id, "advantage_key": advantage_key})
            round_.advantages_used = used

        await self.db.flush()
        logger.info(
            "advantage_used",
            advantage_id=advantage.id,
            player_id=player_id,
            advantage_key=advantage_key,
            round_id=round_id,
        )
        return advantage

    async def record_round_usage(self, round_: Round, now: datetime | None = None) -> int:
        """
        Mark advantages listed on a finalized round's scorecards as used.

        Entries already recorded against this round are skipped, so replays
        are harmless. Returns the number of advantages marked.
        """
        now = now or utc_now()
        marked = 0
        for item in round_.advantages_used or []:
            player_id = item.get("player_id")
            advantage_key = item.get("advantage_key")
            if player_id is None or not advantage_key:
                continue

            already = await self.db.scalar(
                select(ActiveAdvantage.id).where(
                    ActiveAdvantage.player_id == player_id,
                    ActiveAdvantage.advantage_key == advantage_key,
                    ActiveAdvantage.round_id == round_.id,
                )
            )
            if already is not None:
                continue

            # The scorecard may arrive after the end-of-day cutoff
            result = await self.db.execute(
                select(ActiveAdvantage)
                .where(
                    ActiveAdvantage.player_id == player_id,
                    ActiveAdvantage.advantage_key == advantage_key,
                    ActiveAdvantage.used_at.is_(None),
                    ActiveAdvantage.purchased_at <= now,
                )
                .order_by(ActiveAdvantage.purchased_at.desc())
                .limit(1)
            )
            advantage = result.scalar_one_or_none()
            if advantage is None:
                logger.warning(
                    "advantage_usage_unmatched",
                    round_id=round_.id,
                    player_id=player_id,
                    advantage_key=advantage_key,
                )
                continue

            advantage.used_at = now
            advantage.round_id = round_.id
            marked += 1

        await self.db.flush()
        return marked

"""PULP Economy Configuration.

Defines the wager rules, window timings, advantage expiry policy and
round reward amounts. Values default to the league rules and can be
overridden from the ``economy`` section of defaults.yaml.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from functools import lru_cache
from typing import Any

from pulp.config.settings import get_settings


class AdvantageExpiryMode(str, Enum):
    """How the expiry of a purchased advantage is computed."""
    DURATION = "duration"        # purchased_at + catalog expiration_hours
    END_OF_DAY = "end_of_day"    # 11:59 PM league time on the purchase day


@dataclass
class WagerRules:
    """Stake limits and payout multipliers."""
    min_wager: int = 20
    perfect_multiplier: int = 2      # exact top-3 order
    partial_multiplier: int = 1      # right names, wrong order (stake back)
    challenge_multiplier: int = 2    # winner takes both stakes
    rejection_refund_rate: float = 0.5


@dataclass
class WindowRules:
    """Betting window timings."""
    duration_minutes: int = 5
    expiry_days: int = 15


@dataclass
class AdvantageRules:
    """Advantage store policy."""
    expiry_mode: AdvantageExpiryMode = AdvantageExpiryMode.END_OF_DAY
    end_of_day_hour: int = 23
    end_of_day_minute: int = 59


@dataclass
class StandingsRules:
    """Season standings used for challenge eligibility."""
    season_top_rounds: int = 10


@dataclass
class RewardRules:
    """PULPs awarded automatically after each finalized round."""
    participation: int = 10
    streak_weeks: int = 4
    streak_bonus: int = 20
    streak_gap_days: int = 7
    beat_higher_ranked: int = 5
    drs_start_rank: int = 4
    drs_per_position: int = 2
    weekly_interaction: int = 5


@dataclass
class AdvantageCatalogItem:
    """Catalog entry as declared in configuration."""
    advantage_key: str
    name: str
    pulp_cost: int
    description: str = ""
    icon: str = ""
    expiration_hours: int = 24


@dataclass
class EconomyConfig:
    """Complete PULP economy configuration."""

    wagers: WagerRules = field(default_factory=WagerRules)
    windows: WindowRules = field(default_factory=WindowRules)
    advantages: AdvantageRules = field(default_factory=AdvantageRules)
    standings: StandingsRules = field(default_factory=StandingsRules)
    rewards: RewardRules = field(default_factory=RewardRules)

    catalog: list[AdvantageCatalogItem] = field(default_factory=lambda: [
        AdvantageCatalogItem(
            advantage_key="mulligan",
            name="Mulligan",
            description="Re-throw one shot during your round",
            icon="🔄",
            pulp_cost=150,
        ),
        AdvantageCatalogItem(
            advantage_key="bag_trump",
            name="Bag Trump",
            description="Choose the disc your opponent throws on one hole",
            icon="🎒",
            pulp_cost=80,
        ),
        AdvantageCatalogItem(
            advantage_key="shotgun_buddy",
            name="Shotgun Buddy",
            description="Your card mate must shotgun a drink with you",
            icon="🍺",
            pulp_cost=80,
        ),
    ])

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EconomyConfig":
        """Build a config from a (possibly partial) mapping."""
        config = cls()
        sections = {
            "wagers": WagerRules,
            "windows": WindowRules,
            "advantages": AdvantageRules,
            "standings": StandingsRules,
            "rewards": RewardRules,
        }
        for name, section_cls in sections.items():
            values = data.get(name) or {}
            known = {f.name for f in fields(section_cls)}
            unknown = set(values) - known
            if unknown:
                raise ValueError(f"Unknown {name} settings: {sorted(unknown)}")
            setattr(config, name, section_cls(**values))

        if isinstance(config.advantages.expiry_mode, str):
            config.advantages.expiry_mode = AdvantageExpiryMode(
                config.advantages.expiry_mode
            )

        if data.get("catalog"):
            config.catalog = [AdvantageCatalogItem(**item) for item in data["catalog"]]

        return config

    def get_catalog_item(self, advantage_key: str) -> AdvantageCatalogItem | None:
        """Look up a configured catalog entry by key."""
        for item in self.catalog:
            if item.advantage_key == advantage_key:
                return item
        return None


@lru_cache
def get_economy_config() -> EconomyConfig:
    """Get the PULP economy configuration (defaults.yaml overrides applied)."""
    defaults = get_settings().load_defaults_config()
    return EconomyConfig.from_dict(defaults.get("economy") or {})

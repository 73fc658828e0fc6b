"""Configuration for the PULP economy service."""

from pulp.config.economy import EconomyConfig, get_economy_config
from pulp.config.settings import Settings, get_settings

__all__ = ["EconomyConfig", "Settings", "get_economy_config", "get_settings"]

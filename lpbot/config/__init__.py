"""
Configuration package.

Process-wide Settings (environment) and per-instance StrategyConfig.
"""

from lpbot.config.config import Settings
from lpbot.config.strategy_config import (
    MAX_BIN_COUNT,
    RecreationSettings,
    StopLossSettings,
    StrategyConfig,
)

__all__ = [
    "Settings",
    "MAX_BIN_COUNT",
    "RecreationSettings",
    "StopLossSettings",
    "StrategyConfig",
]

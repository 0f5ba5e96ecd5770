"""lpbot: automated liquidity-position management for bin-based AMM pools."""

__version__ = "0.1.0"

"""
Shared value types for the liquidity-position engine.

Bins are integers on the AMM's price ladder; amounts are floats in token
units (X = base token, Y = quote token). Positions are referenced by their
on-chain address, never by object identity, so records can be persisted and
reloaded without back-pointers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


class StrategyKind(str, Enum):
    """Closed set of strategy variants. Behavior is selected by matching on this tag."""
    SIMPLE = "simple"  # one position on one side of the active bin
    CHAIN = "chain"    # two adjacent positions ending at the active bin


class RangeSide(str, Enum):
    """Which side of the active bin a simple position covers."""
    BELOW = "below"
    ABOVE = "above"


class OutOfRangeDirection(str, Enum):
    ABOVE = "above"  # active bin moved above the position's upper bin
    BELOW = "below"  # active bin moved below the position's lower bin


@dataclass(frozen=True)
class BinRange:
    """Inclusive bin range [lower, upper]."""
    lower: int
    upper: int

    @property
    def bin_count(self) -> int:
        return self.upper - self.lower + 1

    def contains(self, bin_id: int) -> bool:
        return self.lower <= bin_id <= self.upper

    def overlaps(self, other: "BinRange") -> bool:
        return self.lower <= other.upper and other.lower <= self.upper

    def direction_of(self, bin_id: int) -> Optional[OutOfRangeDirection]:
        """Return where bin_id sits relative to this range, or None when inside."""
        if bin_id > self.upper:
            return OutOfRangeDirection.ABOVE
        if bin_id < self.lower:
            return OutOfRangeDirection.BELOW
        return None

    def to_list(self) -> List[int]:
        return [self.lower, self.upper]

    @classmethod
    def from_list(cls, data: List[int]) -> "BinRange":
        return cls(lower=int(data[0]), upper=int(data[1]))

    def __str__(self) -> str:
        return f"[{self.lower}, {self.upper}]"


@dataclass
class Position:
    """On-chain liquidity position as last seen by the engine."""
    address: str
    pool_address: str
    lower_bin: int
    upper_bin: int
    token_x_amount: float = 0.0
    token_y_amount: float = 0.0
    accrued_fee_x: float = 0.0
    accrued_fee_y: float = 0.0
    opened_at_ms: int = field(default_factory=now_ms)

    @property
    def bin_range(self) -> BinRange:
        return BinRange(self.lower_bin, self.upper_bin)

    def value_in_y(self, price: float) -> float:
        """Liquidity plus unclaimed fees, valued in Y at the given X->Y price."""
        x_total = self.token_x_amount + self.accrued_fee_x
        y_total = self.token_y_amount + self.accrued_fee_y
        return x_total * price + y_total

    def fee_value_in_y(self, price: float) -> float:
        return self.accrued_fee_x * price + self.accrued_fee_y

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "pool_address": self.pool_address,
            "lower_bin": self.lower_bin,
            "upper_bin": self.upper_bin,
            "token_x_amount": self.token_x_amount,
            "token_y_amount": self.token_y_amount,
            "accrued_fee_x": self.accrued_fee_x,
            "accrued_fee_y": self.accrued_fee_y,
            "opened_at_ms": self.opened_at_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            address=str(data["address"]),
            pool_address=str(data.get("pool_address", "")),
            lower_bin=int(data["lower_bin"]),
            upper_bin=int(data["upper_bin"]),
            token_x_amount=float(data.get("token_x_amount", 0.0)),
            token_y_amount=float(data.get("token_y_amount", 0.0)),
            accrued_fee_x=float(data.get("accrued_fee_x", 0.0)),
            accrued_fee_y=float(data.get("accrued_fee_y", 0.0)),
            opened_at_ms=int(data.get("opened_at_ms", 0)),
        )


@dataclass(frozen=True)
class MarketSnapshot:
    """Active bin and pool price (Y per X) at a point in time."""
    active_bin: int
    price: float
    timestamp_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {"active_bin": self.active_bin, "price": self.price, "timestamp_ms": self.timestamp_ms}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketSnapshot":
        return cls(
            active_bin=int(data["active_bin"]),
            price=float(data["price"]),
            timestamp_ms=int(data["timestamp_ms"]),
        )


@dataclass(frozen=True)
class CloseResult:
    """Tokens returned to the wallet by a close."""
    returned_x: float = 0.0
    returned_y: float = 0.0
    # False when the close was only confirmed after the fact (position gone)
    amounts_known: bool = True


@dataclass(frozen=True)
class Quote:
    in_token: str
    out_token: str
    in_amount: float
    out_amount: float
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SwapResult:
    output_amount: float
    tx_ref: str

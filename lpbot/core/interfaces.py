"""
Collaborator contracts consumed by the engine.

Concrete clients (AMM protocol SDK, swap aggregator, chain RPC, signer) live
outside this package. Network timeouts are enforced by the implementations;
the engine only classifies the errors they raise (see core.errors).
"""

from __future__ import annotations

from typing import Any, Awaitable, Dict, Optional, Protocol, Union

from lpbot.core.types import BinRange, CloseResult, Position, Quote, SwapResult


class PositionService(Protocol):
    async def open(self, pool: str, bin_range: BinRange, shape: str, amount: float) -> Position:
        """Create a position over bin_range and fund it with `amount` of Y."""
        ...

    async def add_liquidity(self, address: str, shape: str, amount: float) -> Position:
        """Second funding call on an existing position (chain leg top-up)."""
        ...

    async def close(self, address: str) -> CloseResult:
        ...

    async def refresh(self, address: str) -> Position:
        """Read current amounts. Raises PositionNotFoundError if gone."""
        ...


class PoolDataService(Protocol):
    async def get_active_bin_and_price(self, pool: str, force_refresh: bool = False) -> Dict[str, Any]:
        """Return {"active_bin": int, "price": float}."""
        ...


class SwapService(Protocol):
    async def quote(self, in_token: str, out_token: str, amount: float) -> Quote:
        ...

    async def swap(self, quote: Quote, max_slippage_bps: int) -> SwapResult:
        ...


class EventSink(Protocol):
    """Fire-and-forget notification channel. May be sync or async."""

    def publish(self, event_name: str, payload: Dict[str, Any]) -> Optional[Union[bool, Awaitable[Any]]]:
        ...

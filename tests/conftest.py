"""
Pytest configuration and fixtures.

Adds the repo root to sys.path so tests can import lpbot without an install,
and provides in-memory collaborators (position, pool and swap services) plus
a recording event sink and a controllable clock.
"""

import json
import logging
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from lpbot.config.strategy_config import StrategyConfig  # noqa: E402
from lpbot.core.errors import PositionNotFoundError  # noqa: E402
from lpbot.core.types import BinRange, CloseResult, Position, Quote, SwapResult  # noqa: E402
from lpbot.execution.position_executor import PositionExecutor  # noqa: E402
from lpbot.execution.retry_manager import RetryManager  # noqa: E402
from lpbot.market_data.snapshot_provider import MarketSnapshotProvider  # noqa: E402
from lpbot.orchestrator.instance_state_machine import InstanceRecord, InstanceStateMachine  # noqa: E402

START_MS = 1_700_000_000_000


# ─────────────────────────────────────────────────────────────────────────────
# Failure injection
# ─────────────────────────────────────────────────────────────────────────────


class Landed:
    """Failure script entry: perform the call, then raise `error` anyway."""

    def __init__(self, error: BaseException) -> None:
        self.error = error


class Scripted:
    """
    Per-method failure scripts. Each call pops the next entry:
    None -> proceed, Landed(exc) -> proceed then raise, exception -> raise.
    """

    def __init__(self) -> None:
        self.failures: Dict[str, List[Any]] = {}
        self.calls: List[tuple] = []

    def script(self, method: str, *entries: Any) -> None:
        self.failures.setdefault(method, []).extend(entries)

    def _next(self, method: str) -> Any:
        queue = self.failures.get(method)
        if queue:
            return queue.pop(0)
        return None

    def _before(self, method: str) -> Optional[Landed]:
        entry = self._next(method)
        if entry is None:
            return None
        if isinstance(entry, Landed):
            return entry
        raise entry

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)


# ─────────────────────────────────────────────────────────────────────────────
# Collaborators
# ─────────────────────────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self, start_ms: int = START_MS) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> int:
        self.now += int(seconds * 1000)
        return self.now


class FakePoolDataService(Scripted):
    def __init__(self, active_bin: int = 1000, price: float = 1.0) -> None:
        super().__init__()
        self.active_bin = active_bin
        self.price = price

    async def get_active_bin_and_price(self, pool: str, force_refresh: bool = False) -> Dict[str, Any]:
        self.calls.append(("get_active_bin_and_price", pool, force_refresh))
        self._before("get_active_bin_and_price")
        return {"active_bin": self.active_bin, "price": self.price}


class FakePositionService(Scripted):
    """Positions are funded in Y only; tests move value around with set_amounts()."""

    def __init__(self) -> None:
        super().__init__()
        self.positions: Dict[str, Position] = {}
        self._seq = 0

    async def open(self, pool: str, bin_range: BinRange, shape: str, amount: float) -> Position:
        self.calls.append(("open", pool, bin_range, shape, amount))
        landed = self._before("open")
        self._seq += 1
        position = Position(
            address=f"pos-{self._seq}",
            pool_address=pool,
            lower_bin=bin_range.lower,
            upper_bin=bin_range.upper,
            token_y_amount=amount,
        )
        self.positions[position.address] = position
        if landed:
            raise landed.error
        return replace(position)

    async def add_liquidity(self, address: str, shape: str, amount: float) -> Position:
        self.calls.append(("add_liquidity", address, shape, amount))
        landed = self._before("add_liquidity")
        position = self.positions[address]
        position.token_y_amount += amount
        if landed:
            raise landed.error
        return replace(position)

    async def close(self, address: str) -> CloseResult:
        self.calls.append(("close", address))
        landed = self._before("close")
        position = self.positions.pop(address, None)
        if position is None:
            raise PositionNotFoundError(address)
        if landed:
            raise landed.error
        return CloseResult(
            returned_x=position.token_x_amount + position.accrued_fee_x,
            returned_y=position.token_y_amount + position.accrued_fee_y,
        )

    async def refresh(self, address: str) -> Position:
        self.calls.append(("refresh", address))
        self._before("refresh")
        position = self.positions.get(address)
        if position is None:
            raise PositionNotFoundError(address)
        return replace(position)

    # helpers
    def set_amounts(self, address: str, x: float = 0.0, y: float = 0.0, fee_x: float = 0.0, fee_y: float = 0.0) -> None:
        position = self.positions[address]
        position.token_x_amount = x
        position.token_y_amount = y
        position.accrued_fee_x = fee_x
        position.accrued_fee_y = fee_y

    def remove(self, address: str) -> None:
        self.positions.pop(address, None)

    @property
    def open_addresses(self) -> List[str]:
        return sorted(self.positions)


class FakeSwapService(Scripted):
    def __init__(self, rate: float = 1.0) -> None:
        super().__init__()
        self.rate = rate
        self._seq = 0

    async def quote(self, in_token: str, out_token: str, amount: float) -> Quote:
        self.calls.append(("quote", in_token, out_token, amount))
        self._before("quote")
        return Quote(in_token, out_token, amount, amount * self.rate)

    async def swap(self, quote: Quote, max_slippage_bps: int) -> SwapResult:
        self.calls.append(("swap", quote.in_amount, max_slippage_bps))
        self._before("swap")
        self._seq += 1
        return SwapResult(output_amount=quote.out_amount, tx_ref=f"swap-{self._seq}")


class RecordingSink:
    """Synchronous EventSink that keeps every published event."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    def publish(self, event_name: str, payload: Dict[str, Any]) -> bool:
        self.events.append((event_name, dict(payload)))
        return True

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def of(self, event_name: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.events if name == event_name]


class NoSleep:
    """Replacement for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ─────────────────────────────────────────────────────────────────────────────
# Harness
# ─────────────────────────────────────────────────────────────────────────────


def make_config(**overrides: Any) -> StrategyConfig:
    base = dict(
        pool_address="pool-1",
        position_amount=100.0,
        bin_count=10,
        tick_interval_sec=3600.0,
        out_of_range_timeout_sec=60.0,
    )
    base.update(overrides)
    return StrategyConfig(**base).validate()


@dataclass
class Harness:
    clock: FakeClock
    pool: FakePoolDataService
    positions: FakePositionService
    swaps: FakeSwapService
    sink: RecordingSink
    sleep: NoSleep
    retry: RetryManager
    snapshots: MarketSnapshotProvider
    executor: PositionExecutor
    machine: InstanceStateMachine
    persisted: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def record(self) -> InstanceRecord:
        return self.machine.record

    def states(self) -> List[str]:
        return [t.to_state.value for t in self.record.transitions]


def build_harness(
    config: Optional[StrategyConfig] = None,
    active_bin: int = 1000,
    price: float = 1.0,
    ttl_ms: int = 0,
) -> Harness:
    clock = FakeClock()
    pool = FakePoolDataService(active_bin=active_bin, price=price)
    positions = FakePositionService()
    swaps = FakeSwapService()
    sink = RecordingSink()
    sleep = NoSleep()
    retry = RetryManager(event_sink=sink, sleep=sleep)
    snapshots = MarketSnapshotProvider(pool, ttl_ms=ttl_ms, clock=clock)
    executor = PositionExecutor("inst-1", positions, swaps, retry)
    persisted: List[Dict[str, Any]] = []

    async def persist(record: InstanceRecord) -> None:
        persisted.append(record.to_dict())

    record = InstanceRecord(instance_id="inst-1", config=config or make_config())
    machine = InstanceStateMachine(record, executor, snapshots, retry, event_sink=sink, persist=persist)
    return Harness(clock, pool, positions, swaps, sink, sleep, retry, snapshots, executor, machine, persisted)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def no_sleep():
    return NoSleep()


@pytest.fixture
def harness():
    return build_harness()


@pytest.fixture
def lpbot_warnings(caplog, monkeypatch):
    """Parsed JSON events logged at WARNING or above on the lpbot logger, by event name."""
    monkeypatch.setattr(logging.getLogger("lpbot"), "propagate", True)
    caplog.set_level(logging.WARNING, logger="lpbot")

    def events(name: str) -> List[Dict[str, Any]]:
        found = []
        for record in caplog.records:
            if record.name != "lpbot" or record.levelno < logging.WARNING:
                continue
            try:
                payload = json.loads(record.getMessage())
            except ValueError:
                continue
            if payload.get("event") == name:
                found.append(payload)
        return found

    return events

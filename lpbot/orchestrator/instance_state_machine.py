"""
Instance State Machine - lifecycle and tick loop of one strategy instance.

Provides:
- Explicit states with guarded transitions and an audit trail
- The periodic tick: snapshot, position refresh, trackers, stop-loss,
  forced out-of-range rebuild, recreation heuristics
- Close / swap / reopen sequences executed through the RetryManager
- Persistence after every tick and lifecycle transition
- instance.status-changed, stoploss.triggered and recreation.triggered events

Tick order (first matching outcome wins):
    1. snapshot            cached read, TTL-bounded
    2. refresh positions   missing position -> rebuild (or exit without budget)
    3. trackers            below-threshold timer, out-of-range timer, benchmark yield
    4. stop-loss           CLOSE_AND_REBUILD consumes one unit of the budget;
                           CLOSE (no budget left) exits: STOPPING -> STOPPED
    5. out-of-range        outside the range for longer than the timeout -> rebuild
    6. recreation          market-opportunity / loss-recovery / dynamic-profit
    7. confirm             a closing outcome re-reads the pool with force_refresh;
                           if the bin or price moved, steps 3-6 rerun on the fresh read

Pause, stop and manual stop-loss wait for the tick lock, so they take effect
at a tick boundary and never cut an in-flight retried operation short.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from lpbot.config.strategy_config import StrategyConfig
from lpbot.core.errors import InvalidStateError, PartialExecutionError
from lpbot.core.event_bus import EventType, publish_safely
from lpbot.core.types import BinRange, MarketSnapshot, OutOfRangeDirection, Position, now_ms
from lpbot.execution.position_executor import PositionExecutor
from lpbot.execution.retry_manager import OperationClass, RetryManager
from lpbot.market_data.snapshot_provider import MarketSnapshotProvider
from lpbot.market_data.yield_tracker import BenchmarkYieldTracker
from lpbot.risk.stop_loss import (
    PositionState,
    StopLossAction,
    StopLossDecision,
    StopLossEngine,
    active_bin_position_pct,
    estimate_pnl_pct,
    track_below_threshold,
)
from lpbot.strategy.recreation import RecreationEngine, RecreationInputs, RecreationIntent, RecreationReason

log = logging.getLogger("lpbot")

MAX_SNAPSHOT_HISTORY = 120
MAX_TRANSITIONS = 50

_EVENT_LEVELS = {
    "tick_failed": logging.WARNING,
    "positions_missing": logging.WARNING,
    "stop_loss_triggered": logging.WARNING,
    "out_of_range_rebuild_skipped": logging.WARNING,
    "rebuild_funding_unknown": logging.WARNING,
    "event_publish_failed": logging.WARNING,
    "instance_error": logging.ERROR,
    "tick_crashed": logging.ERROR,
    "stop_loss_full_exit": logging.CRITICAL,
}


class InstanceState(str, Enum):
    """
    Instance lifecycle states.

    State Diagram:

    CREATED ──start──> ACTIVE ◄──────────────── REBUILDING
       │                │  │  ▲                     ▲
       │                │  │  └─resume── PAUSED     │ stop-loss / out-of-range /
       │                │  └──pause──────┘  │       │ recreation
       │                └───────────────────┼───────┘
       │                │ stop, stop-loss   │ stop
       │                ▼ without budget    ▼
       │             STOPPING ◄────────────────── ERROR (mutating call failed)
       │                │
       └──stop──────> STOPPED ──start──> ACTIVE (fresh budget)
    """
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    REBUILDING = "REBUILDING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


class InstanceStatus(str, Enum):
    """Externally visible status."""
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


STATUS_BY_STATE: Dict[InstanceState, InstanceStatus] = {
    InstanceState.CREATED: InstanceStatus.CREATED,
    InstanceState.ACTIVE: InstanceStatus.RUNNING,
    InstanceState.REBUILDING: InstanceStatus.RUNNING,
    InstanceState.STOPPING: InstanceStatus.RUNNING,
    InstanceState.PAUSED: InstanceStatus.PAUSED,
    InstanceState.STOPPED: InstanceStatus.STOPPED,
    InstanceState.ERROR: InstanceStatus.ERROR,
}

# States counted against the registry's concurrency ceiling
RUNNING_STATES = frozenset({InstanceState.ACTIVE, InstanceState.REBUILDING, InstanceState.STOPPING})

VALID_TRANSITIONS: Dict[InstanceState, List[InstanceState]] = {
    InstanceState.CREATED: [
        InstanceState.ACTIVE,      # positions opened
        InstanceState.STOPPED,     # stopped before start
        InstanceState.ERROR,       # open failed
    ],
    InstanceState.ACTIVE: [
        InstanceState.PAUSED,
        InstanceState.REBUILDING,
        InstanceState.STOPPING,
        InstanceState.ERROR,
    ],
    InstanceState.PAUSED: [
        InstanceState.ACTIVE,
        InstanceState.STOPPING,
        InstanceState.ERROR,
    ],
    InstanceState.REBUILDING: [
        InstanceState.ACTIVE,
        InstanceState.ERROR,
    ],
    InstanceState.STOPPING: [
        InstanceState.STOPPED,
        InstanceState.ERROR,
    ],
    InstanceState.STOPPED: [
        InstanceState.ACTIVE,      # restart
        InstanceState.ERROR,
    ],
    InstanceState.ERROR: [
        InstanceState.STOPPING,    # operator stop closes what is left
    ],
}


@dataclass
class StateTransition:
    """Record of a state transition."""
    from_state: InstanceState
    to_state: InstanceState
    timestamp_ms: int
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp_ms": self.timestamp_ms,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateTransition":
        return cls(
            from_state=InstanceState(data["from_state"]),
            to_state=InstanceState(data["to_state"]),
            timestamp_ms=int(data["timestamp_ms"]),
            reason=data.get("reason"),
        )


@dataclass
class OutOfRangeTracker:
    """Wall-clock timer for the active bin sitting outside the position range."""
    direction: Optional[OutOfRangeDirection] = None
    since_ms: Optional[int] = None

    def update(self, bin_range: BinRange, active_bin: int, now: int) -> Optional[int]:
        """Returns how long (ms) the bin has been out of range, None when inside."""
        direction = bin_range.direction_of(active_bin)
        if direction is None:
            self.reset()
            return None
        if self.since_ms is None or direction != self.direction:
            # new excursion, or it crossed to the other side
            self.direction = direction
            self.since_ms = now
            return 0
        return now - self.since_ms

    def reset(self) -> None:
        self.direction = None
        self.since_ms = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value if self.direction else None,
            "since_ms": self.since_ms,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OutOfRangeTracker":
        if not data:
            return cls()
        direction = data.get("direction")
        return cls(
            direction=OutOfRangeDirection(direction) if direction else None,
            since_ms=data.get("since_ms"),
        )


@dataclass
class InstanceRecord:
    """
    Persisted state of one instance.

    Positions are referenced by address only. Decisions keep the current and
    the prior tick; snapshots and transitions are bounded.
    """
    instance_id: str
    config: StrategyConfig
    state: InstanceState = InstanceState.CREATED
    positions: List[Position] = field(default_factory=list)
    stop_loss_remaining: int = 0
    initial_investment_y: float = 0.0
    # active bin the current positions were built around
    anchor_bin: Optional[int] = None
    created_at_ms: int = field(default_factory=now_ms)
    updated_at_ms: int = 0
    last_tick_at_ms: Optional[int] = None
    last_error: Optional[str] = None
    last_snapshot: Optional[MarketSnapshot] = None
    snapshot_history: List[MarketSnapshot] = field(default_factory=list)
    decisions: List[StopLossDecision] = field(default_factory=list)
    last_recreation: Optional[Dict[str, Any]] = None
    below_threshold_since_ms: Optional[int] = None
    out_of_range: OutOfRangeTracker = field(default_factory=OutOfRangeTracker)
    recreation_state: Dict[str, Any] = field(default_factory=dict)
    counters: Dict[str, int] = field(
        default_factory=lambda: {"ticks": 0, "tick_failures": 0, "rebuilds": 0, "stop_losses": 0}
    )
    transitions: List[StateTransition] = field(default_factory=list)

    @property
    def status(self) -> InstanceStatus:
        return STATUS_BY_STATE[self.state]

    @property
    def name(self) -> Optional[str]:
        return self.config.name

    @property
    def position_addresses(self) -> List[str]:
        return [p.address for p in self.positions]

    def position_range(self) -> Optional[BinRange]:
        if not self.positions:
            return None
        return BinRange(min(p.lower_bin for p in self.positions), max(p.upper_bin for p in self.positions))

    def monitored_range(self) -> Optional[BinRange]:
        """Position range widened to include the anchor bin a one-sided range sits next to."""
        rng = self.position_range()
        if rng is None or self.anchor_bin is None:
            return rng
        return BinRange(min(rng.lower, self.anchor_bin), max(rng.upper, self.anchor_bin))

    def add_snapshot(self, snapshot: MarketSnapshot) -> None:
        self.last_snapshot = snapshot
        self.snapshot_history.append(snapshot)
        if len(self.snapshot_history) > MAX_SNAPSHOT_HISTORY:
            del self.snapshot_history[: len(self.snapshot_history) - MAX_SNAPSHOT_HISTORY]

    def push_decision(self, decision: StopLossDecision) -> None:
        self.decisions = (self.decisions + [decision])[-2:]

    @property
    def current_decision(self) -> Optional[StopLossDecision]:
        return self.decisions[-1] if self.decisions else None

    @property
    def prior_decision(self) -> Optional[StopLossDecision]:
        return self.decisions[-2] if len(self.decisions) > 1 else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "config": self.config.to_dict(),
            "state": self.state.value,
            "positions": [p.to_dict() for p in self.positions],
            "stop_loss_remaining": self.stop_loss_remaining,
            "initial_investment_y": self.initial_investment_y,
            "anchor_bin": self.anchor_bin,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
            "last_tick_at_ms": self.last_tick_at_ms,
            "last_error": self.last_error,
            "snapshot_history": [s.to_dict() for s in self.snapshot_history],
            "decisions": [d.to_dict() for d in self.decisions],
            "last_recreation": self.last_recreation,
            "below_threshold_since_ms": self.below_threshold_since_ms,
            "out_of_range": self.out_of_range.to_dict(),
            "recreation_state": self.recreation_state,
            "counters": dict(self.counters),
            "transitions": [t.to_dict() for t in self.transitions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceRecord":
        history = [MarketSnapshot.from_dict(s) for s in data.get("snapshot_history", [])]
        record = cls(
            instance_id=str(data["instance_id"]),
            config=StrategyConfig.from_dict(data["config"]),
            state=InstanceState(data.get("state", InstanceState.CREATED.value)),
            positions=[Position.from_dict(p) for p in data.get("positions", [])],
            stop_loss_remaining=int(data.get("stop_loss_remaining", 0)),
            initial_investment_y=float(data.get("initial_investment_y", 0.0)),
            anchor_bin=data.get("anchor_bin"),
            created_at_ms=int(data.get("created_at_ms", 0)),
            updated_at_ms=int(data.get("updated_at_ms", 0)),
            last_tick_at_ms=data.get("last_tick_at_ms"),
            last_error=data.get("last_error"),
            last_snapshot=history[-1] if history else None,
            snapshot_history=history,
            decisions=[StopLossDecision.from_dict(d) for d in data.get("decisions", [])],
            last_recreation=data.get("last_recreation"),
            below_threshold_since_ms=data.get("below_threshold_since_ms"),
            out_of_range=OutOfRangeTracker.from_dict(data.get("out_of_range")),
            recreation_state=dict(data.get("recreation_state") or {}),
            transitions=[StateTransition.from_dict(t) for t in data.get("transitions", [])],
        )
        record.counters.update({k: int(v) for k, v in (data.get("counters") or {}).items()})
        return record


class TickAction(str, Enum):
    SKIPPED = "skipped"    # not ACTIVE
    FAILED = "failed"      # a read failed; state unchanged
    HOLD = "hold"
    REBUILT = "rebuilt"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class TickResult:
    action: TickAction
    reason: Optional[str] = None
    decision: Optional[StopLossDecision] = None
    intent: Optional[RecreationIntent] = None


class _Outcome(str, Enum):
    HOLD = "hold"
    STOP_LOSS = "stop_loss"
    OUT_OF_RANGE = "out_of_range"
    RECREATE = "recreate"


@dataclass
class _TickPlan:
    """Outcome picked by one evaluation, before anything is closed."""
    outcome: _Outcome
    decision: StopLossDecision
    intent: Optional[RecreationIntent] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def commits(self) -> bool:
        return self.outcome != _Outcome.HOLD


class InstanceStateMachine:
    """
    Drives one instance.

    Usage:
        machine = InstanceStateMachine(record, executor, snapshots, retry, event_sink=sink)
        await machine.start()      # opens positions, starts the tick loop
        await machine.pause()
        await machine.resume()
        await machine.stop()       # closes positions, swaps X -> Y, STOPPED
    """

    def __init__(
        self,
        record: InstanceRecord,
        executor: PositionExecutor,
        snapshots: MarketSnapshotProvider,
        retry: RetryManager,
        event_sink: Optional[Any] = None,
        persist: Optional[Callable[[InstanceRecord], Any]] = None,
        metrics: Optional[Any] = None,
        default_tick_interval_sec: float = 30.0,
        on_state_change: Optional[Callable[["InstanceStateMachine", InstanceState, InstanceState], None]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.record = record
        self.executor = executor
        self.snapshots = snapshots
        self.retry = retry
        self._sink = event_sink
        self._persist_cb = persist
        self._metrics = metrics
        self._default_interval = default_tick_interval_sec
        self._on_state_change = on_state_change
        self._custom_log = log_event
        self._log_event = log_event or self._default_log

        self._tick_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._halt = False
        self._task: Optional[asyncio.Task] = None

        self.yield_tracker = BenchmarkYieldTracker()
        self._configure()

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = _EVENT_LEVELS.get(event, logging.INFO)
        log.log(level, json.dumps({"event": event, "instance_id": self.instance_id, **kwargs}, default=str))

    def _configure(self) -> None:
        """(Re)build the decision engines from the record's config."""
        cfg = self.record.config
        self.stop_loss = StopLossEngine(cfg.stop_loss)
        self.recreation = RecreationEngine(
            self.instance_id,
            cfg.recreation,
            max_price=cfg.max_price_for_recreation,
            min_price=cfg.min_price_for_recreation,
            log_event=self._custom_log,
        )
        self.recreation.restore_state(self.record.recreation_state)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def instance_id(self) -> str:
        return self.record.instance_id

    @property
    def state(self) -> InstanceState:
        return self.record.state

    @property
    def status(self) -> InstanceStatus:
        return self.record.status

    @property
    def config(self) -> StrategyConfig:
        return self.record.config

    @property
    def tick_interval_sec(self) -> float:
        return self.record.config.tick_interval_sec or self._default_interval

    @property
    def loop_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, to_state: InstanceState, reason: Optional[str] = None) -> None:
        rec = self.record
        from_state = rec.state
        if to_state not in VALID_TRANSITIONS[from_state]:
            raise InvalidStateError(self.instance_id, from_state.value, f"move to {to_state.value}")

        now = now_ms()
        rec.transitions.append(StateTransition(from_state, to_state, now, reason))
        if len(rec.transitions) > MAX_TRANSITIONS:
            del rec.transitions[: len(rec.transitions) - MAX_TRANSITIONS]
        rec.state = to_state
        rec.updated_at_ms = now
        if to_state == InstanceState.ERROR:
            rec.last_error = reason

        self._log_event("instance_state", from_state=from_state.value, to_state=to_state.value, reason=reason)
        if self._metrics is not None:
            self._metrics.status_changes.labels(to_state=to_state.value).inc()
        self._publish(EventType.INSTANCE_STATUS_CHANGED, {
            "instance_id": self.instance_id,
            "from_state": from_state.value,
            "to_state": to_state.value,
            "from_status": STATUS_BY_STATE[from_state].value,
            "to_status": STATUS_BY_STATE[to_state].value,
            "reason": reason,
        })
        if self._on_state_change is not None:
            self._on_state_change(self, from_state, to_state)

    def _fail(self, exc: BaseException, action: str) -> None:
        """Keep the record consistent with what landed, then move to ERROR."""
        rec = self.record
        if isinstance(exc, PartialExecutionError):
            closed = {item for item in exc.completed if isinstance(item, str)}
            opened = [item for item in exc.completed if isinstance(item, Position)]
            rec.positions = [p for p in rec.positions if p.address not in closed] + opened
        self._log_event(
            "instance_error",
            action=action,
            error=str(exc),
            error_type=type(exc).__name__,
            positions=rec.position_addresses,
        )
        self._transition(InstanceState.ERROR, f"{action}: {exc}")

    def recover_after_restart(self) -> None:
        """Normalise a record loaded from disk: nothing resumes ticking on its own."""
        if self.state == InstanceState.ACTIVE:
            self._transition(InstanceState.PAUSED, "process restart")
        elif self.state in (InstanceState.REBUILDING, InstanceState.STOPPING):
            self._transition(InstanceState.ERROR, f"interrupted while {self.state.value} (process restart)")

    def _publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        publish_safely(
            self._sink,
            event_type.value,
            payload,
            on_error=lambda name, exc: self._log_event("event_publish_failed", event_name=name, error=str(exc)),
        )

    async def _persist(self) -> None:
        self.record.recreation_state = self.recreation.export_state()
        if self._persist_cb is None:
            return
        result = self._persist_cb(self.record)
        if asyncio.iscoroutine(result):
            await result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Open positions and start ticking. Allowed from CREATED and STOPPED.

        Returns False when opening failed (the instance is then in ERROR).
        """
        self._require({InstanceState.CREATED, InstanceState.STOPPED}, "start")
        async with self._tick_lock:
            self._require({InstanceState.CREATED, InstanceState.STOPPED}, "start")
            rec = self.record
            restarting = rec.state == InstanceState.STOPPED
            rec.stop_loss_remaining = rec.config.stop_loss_count
            rec.last_error = None
            self.recreation.reset()
            try:
                snapshot = await self._read_snapshot(force_refresh=True)
                opened = await self.executor.open_positions(rec.config, snapshot.active_bin, rec.config.position_amount)
            except Exception as exc:
                self._fail(exc, "start")
                await self._persist()
                return False
            self._adopt(opened.positions, opened.amount, snapshot)
            self._transition(InstanceState.ACTIVE, "restarted" if restarting else "started")
            await self._persist()
        self._start_loop()
        return True

    async def pause(self) -> None:
        """Takes effect after an in-flight rebuild has finished."""
        self._require({InstanceState.ACTIVE, InstanceState.REBUILDING}, "pause")
        await self._stop_loop()
        async with self._tick_lock:
            self._require({InstanceState.ACTIVE}, "pause")
            self._transition(InstanceState.PAUSED, "paused")
            await self._persist()

    async def resume(self) -> None:
        """Wall-clock timers restart: nothing was observed while paused."""
        self._require({InstanceState.PAUSED}, "resume")
        async with self._tick_lock:
            self._require({InstanceState.PAUSED}, "resume")
            self.record.below_threshold_since_ms = None
            self.record.out_of_range.reset()
            self._transition(InstanceState.ACTIVE, "resumed")
            await self._persist()
        self._start_loop()

    async def stop(self, reason: str = "stopped by operator") -> bool:
        """
        Close everything and finish in STOPPED. Allowed from CREATED, ACTIVE,
        PAUSED and ERROR. Returns False when closing failed (ERROR).
        """
        allowed = {InstanceState.CREATED, InstanceState.ACTIVE, InstanceState.PAUSED, InstanceState.ERROR}
        self._require(allowed | {InstanceState.REBUILDING, InstanceState.STOPPING}, "stop")
        await self._stop_loop()
        async with self._tick_lock:
            if self.state == InstanceState.STOPPED:
                # the tick that was running exited on its own
                return True
            self._require(allowed, "stop")
            if self.state == InstanceState.CREATED:
                self._transition(InstanceState.STOPPED, reason)
                await self._persist()
                return True
            result = await self._full_exit(reason)
            await self._persist()
        return result.action == TickAction.STOPPED

    async def manual_stop_loss(self) -> bool:
        """Full exit on operator request. Only while RUNNING."""
        if self.status != InstanceStatus.RUNNING:
            raise InvalidStateError(self.instance_id, self.state.value, "run manual stop-loss")
        await self._stop_loop()
        async with self._tick_lock:
            self._require({InstanceState.ACTIVE}, "run manual stop-loss")
            rec = self.record
            rec.counters["stop_losses"] += 1
            if self._metrics is not None:
                self._metrics.stop_loss_triggers.labels(instance=self.instance_id, action="MANUAL").inc()
            self._publish(EventType.STOPLOSS_TRIGGERED, {
                "instance_id": self.instance_id,
                "action": StopLossAction.CLOSE.value,
                "manual": True,
                "reasoning": ["manual stop-loss requested"],
                "stop_loss_remaining": rec.stop_loss_remaining,
            })
            result = await self._full_exit("manual stop-loss")
            await self._persist()
        return result.action == TickAction.STOPPED

    async def shutdown(self) -> None:
        """Halt the tick loop at a tick boundary and persist. Positions stay open."""
        await self._stop_loop()
        async with self._tick_lock:
            await self._persist()

    async def update_config(self, patch: Dict[str, Any]) -> StrategyConfig:
        self._require({InstanceState.STOPPED}, "update config")
        async with self._tick_lock:
            self._require({InstanceState.STOPPED}, "update config")
            self.record.config = self.record.config.merged(patch)
            self.record.updated_at_ms = now_ms()
            self._configure()
            self._log_event("config_updated", keys=sorted(patch))
            await self._persist()
        return self.record.config

    def _require(self, allowed: set, action: str) -> None:
        if self.state not in allowed:
            raise InvalidStateError(self.instance_id, self.state.value, action)

    # ------------------------------------------------------------------
    # Tick loop
    # ------------------------------------------------------------------

    def _start_loop(self) -> None:
        if self.loop_running:
            return
        self._halt = False
        self._wake.clear()
        self._task = asyncio.create_task(self._run_loop(), name=f"instance-{self.instance_id}")

    async def _stop_loop(self) -> None:
        self._halt = True
        self._wake.set()
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            await task
        self._task = None

    async def _run_loop(self) -> None:
        self._log_event("tick_loop_started", interval_sec=self.tick_interval_sec)
        while not self._halt and self.state == InstanceState.ACTIVE:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.tick_interval_sec)
            except asyncio.TimeoutError:
                pass
            if self._halt:
                break
            try:
                await self.tick()
            except Exception as exc:
                log.exception(f"tick_crashed:{self.instance_id}")
                self._log_event("tick_crashed", error=str(exc), error_type=type(exc).__name__)
                async with self._tick_lock:
                    if InstanceState.ERROR in VALID_TRANSITIONS[self.state]:
                        self._fail(exc, "tick")
                        await self._persist()
                break
        self._log_event("tick_loop_exited", state=self.state.value)

    async def tick(self) -> TickResult:
        """One evaluation. Skipped unless ACTIVE."""
        async with self._tick_lock:
            if self.state != InstanceState.ACTIVE:
                return TickResult(TickAction.SKIPPED, reason=f"state {self.state.value}")
            started = time.perf_counter()
            try:
                result = await self._tick_inner()
                await self._persist()
                return result
            finally:
                if self._metrics is not None:
                    self._metrics.tick_latency_ms.labels(instance=self.instance_id).observe(
                        (time.perf_counter() - started) * 1000
                    )

    async def _tick_inner(self) -> TickResult:
        rec = self.record
        cfg = rec.config
        rec.counters["ticks"] += 1
        if self._metrics is not None:
            self._metrics.ticks.labels(instance=self.instance_id).inc()

        # 1-2. reads; failures leave the state untouched
        try:
            snapshot = await self._read_snapshot()
            positions, missing = await self.executor.refresh_positions(cfg, rec.position_addresses)
        except Exception as exc:
            rec.counters["tick_failures"] += 1
            if self._metrics is not None:
                self._metrics.tick_failures.labels(instance=self.instance_id).inc()
            self._log_event("tick_failed", error=str(exc), error_type=type(exc).__name__)
            return TickResult(TickAction.FAILED, reason=str(exc))

        now = snapshot.timestamp_ms
        rec.last_tick_at_ms = now
        rec.add_snapshot(snapshot)
        rec.positions = positions

        if missing or not positions:
            self._log_event("positions_missing", missing=missing, remaining=rec.position_addresses)
            if rec.stop_loss_remaining > 0:
                return await self._rebuild(RecreationReason.POSITION_MISSING)
            return await self._full_exit("position missing, rebuild budget exhausted")

        saved = self._capture_trackers()
        plan = self._evaluate(snapshot, positions)
        if plan.commits:
            # the tick read may be another instance's cache fill; re-read before closing anything
            try:
                fresh = await self._read_snapshot(force_refresh=True)
            except Exception as exc:
                self._restore_trackers(saved)
                rec.counters["tick_failures"] += 1
                if self._metrics is not None:
                    self._metrics.tick_failures.labels(instance=self.instance_id).inc()
                self._log_event("tick_failed", error=str(exc), error_type=type(exc).__name__, planned=plan.outcome.value)
                return TickResult(TickAction.FAILED, reason=str(exc), decision=plan.decision, intent=plan.intent)
            if (fresh.active_bin, fresh.price) != (snapshot.active_bin, snapshot.price):
                self._log_event(
                    "decision_rechecked",
                    planned=plan.outcome.value,
                    cached_bin=snapshot.active_bin,
                    fresh_bin=fresh.active_bin,
                    cached_price=snapshot.price,
                    fresh_price=fresh.price,
                )
                self._restore_trackers(saved)
                rec.last_tick_at_ms = fresh.timestamp_ms
                rec.add_snapshot(fresh)
                plan = self._evaluate(fresh, positions)
        return await self._apply(plan)

    def _capture_trackers(self) -> tuple:
        rec = self.record
        return (
            rec.below_threshold_since_ms,
            rec.out_of_range.to_dict(),
            self.recreation.export_state(),
            copy.deepcopy(self.yield_tracker),
            rec.last_recreation,
        )

    def _restore_trackers(self, saved: tuple) -> None:
        rec = self.record
        below_since, out_of_range, recreation_state, yield_tracker, last_recreation = saved
        rec.below_threshold_since_ms = below_since
        rec.out_of_range = OutOfRangeTracker.from_dict(out_of_range)
        self.recreation.restore_state(recreation_state)
        self.yield_tracker = yield_tracker
        rec.last_recreation = last_recreation

    def _evaluate(self, snapshot: MarketSnapshot, positions: List[Position]) -> "_TickPlan":
        """Advance the trackers on one snapshot and pick the tick's outcome. Commits nothing."""
        rec = self.record
        cfg = rec.config
        now = snapshot.timestamp_ms

        # 3. trackers
        pos_range = rec.position_range()
        monitored = rec.monitored_range()
        pct = active_bin_position_pct(snapshot.active_bin, pos_range.lower, pos_range.upper)
        rec.below_threshold_since_ms = track_below_threshold(
            rec.below_threshold_since_ms, pct, now, cfg.stop_loss.safety_threshold_pct
        )
        position_state = PositionState.from_positions(
            positions,
            initial_investment_y=rec.initial_investment_y,
            stop_loss_remaining=rec.stop_loss_remaining,
            below_threshold_since_ms=rec.below_threshold_since_ms,
        )
        pnl = estimate_pnl_pct(position_state, snapshot.price)
        out_of_range_ms = rec.out_of_range.update(monitored, snapshot.active_bin, now)
        fee_value = sum(p.fee_value_in_y(snapshot.price) for p in positions)
        benchmark = self.yield_tracker.update(now, snapshot.active_bin, monitored, fee_value, rec.initial_investment_y)
        if self._metrics is not None:
            self._metrics.active_bin.labels(instance=self.instance_id).set(snapshot.active_bin)
            self._metrics.position_pct.labels(instance=self.instance_id).set(pct)
            self._metrics.pnl_pct.labels(instance=self.instance_id).set(pnl)

        # 4. stop-loss
        decision = self.stop_loss.evaluate(snapshot, position_state)
        if decision.triggered:
            return _TickPlan(_Outcome.STOP_LOSS, decision)

        # 5. forced rebuild after a long excursion out of range
        timeout_ms = cfg.out_of_range_timeout_sec * 1000
        if out_of_range_ms is not None and out_of_range_ms > timeout_ms:
            details = {
                "direction": rec.out_of_range.direction.value if rec.out_of_range.direction else None,
                "elapsed_sec": out_of_range_ms / 1000,
                "timeout_sec": cfg.out_of_range_timeout_sec,
            }
            if rec.stop_loss_remaining <= 0:
                self._log_event("out_of_range_rebuild_skipped", reason="rebuild budget exhausted", **details)
            else:
                price_issue = self.recreation.check_price_bounds(snapshot.price)
                if price_issue is None:
                    return _TickPlan(_Outcome.OUT_OF_RANGE, decision, details=details)
                rec.out_of_range.reset()
                self._log_event("out_of_range_rebuild_vetoed", reason=price_issue, **details)

        # 6. recreation heuristics
        intent = self.recreation.evaluate(RecreationInputs(
            snapshot=snapshot,
            position_pct=pct,
            pnl_pct=pnl,
            benchmark=benchmark,
            rebuild_allowed=rec.stop_loss_remaining > 0,
        ))
        rec.last_recreation = intent.to_dict()
        if intent.should_recreate:
            return _TickPlan(_Outcome.RECREATE, decision, intent=intent)
        return _TickPlan(_Outcome.HOLD, decision, intent=intent)

    async def _apply(self, plan: "_TickPlan") -> TickResult:
        decision = plan.decision
        self.record.push_decision(decision)
        if plan.outcome == _Outcome.STOP_LOSS:
            return await self._handle_stop_loss(decision)
        if plan.outcome == _Outcome.OUT_OF_RANGE:
            return await self._rebuild(RecreationReason.OUT_OF_RANGE_TIMEOUT, decision=decision, **plan.details)
        intent = plan.intent
        if plan.outcome == _Outcome.RECREATE:
            return await self._rebuild(intent.reason, decision=decision, intent=intent)
        return TickResult(
            TickAction.HOLD,
            reason=intent.vetoed_by.value if intent and intent.vetoed_by else None,
            decision=decision,
            intent=intent,
        )

    async def _read_snapshot(self, force_refresh: bool = False) -> MarketSnapshot:
        pool = self.record.config.pool_address
        return await self.retry.run(
            lambda: self.snapshots.get_snapshot(pool, force_refresh=force_refresh),
            OperationClass.READ_QUERY,
            self.instance_id,
            self.record.config.retry_overrides.get(OperationClass.READ_QUERY.value),
        )

    def _adopt(self, positions: List[Position], amount: float, snapshot: MarketSnapshot) -> None:
        """Make freshly opened positions the record's positions and restart every tracker."""
        rec = self.record
        rec.positions = list(positions)
        rec.initial_investment_y = amount
        rec.anchor_bin = snapshot.active_bin
        rec.add_snapshot(snapshot)
        rec.below_threshold_since_ms = None
        rec.out_of_range.reset()
        self.yield_tracker.clear()

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _handle_stop_loss(self, decision: StopLossDecision) -> TickResult:
        rec = self.record
        rec.counters["stop_losses"] += 1
        if self._metrics is not None:
            self._metrics.stop_loss_triggers.labels(instance=self.instance_id, action=decision.action.value).inc()

        remaining_before = rec.stop_loss_remaining
        if decision.action == StopLossAction.CLOSE_AND_REBUILD:
            rec.stop_loss_remaining -= 1
        payload = {
            "instance_id": self.instance_id,
            **decision.to_dict(),
            "stop_loss_remaining": rec.stop_loss_remaining,
            "stop_loss_remaining_before": remaining_before,
        }
        self._publish(EventType.STOPLOSS_TRIGGERED, payload)

        if decision.action == StopLossAction.CLOSE_AND_REBUILD:
            self._log_event(
                "stop_loss_triggered",
                pnl_pct=decision.pnl_pct,
                position_pct=decision.active_bin_position_pct,
                remaining=rec.stop_loss_remaining,
            )
            return await self._rebuild(RecreationReason.STOP_LOSS, decision=decision)

        self._log_event("stop_loss_full_exit", pnl_pct=decision.pnl_pct, reasoning=list(decision.reasoning))
        return await self._full_exit("stop-loss triggered, no rebuilds remaining", decision=decision)

    async def _rebuild(
        self,
        reason: RecreationReason,
        decision: Optional[StopLossDecision] = None,
        intent: Optional[RecreationIntent] = None,
        **details: Any,
    ) -> TickResult:
        """
        Close everything, swap X -> Y, reopen around the fresh active bin.

        The new positions are funded with the Y the closes returned plus the
        swap output. A close confirmed only by reconciliation contributes
        nothing to that sum (its amounts are unknown and logged with the last
        refreshed figures); when the sum is 0 the configured position_amount
        is used instead.
        """
        rec = self.record
        cfg = rec.config
        self._publish(EventType.RECREATION_TRIGGERED, {
            "instance_id": self.instance_id,
            "reason": reason.value,
            "active_bin": rec.last_snapshot.active_bin if rec.last_snapshot else None,
            "positions": rec.position_addresses,
            "stop_loss_remaining": rec.stop_loss_remaining,
            "reasoning": list(intent.reasoning) if intent else [],
            **details,
        })
        self._transition(InstanceState.REBUILDING, reason.value)
        try:
            returned_y = 0.0
            swapped_y = 0.0
            unknown: List[Position] = []
            if rec.positions:
                closed = await self.executor.close_positions(cfg, rec.position_addresses)
                unknown = [p for p in rec.positions if p.address in closed.unknown_amounts]
                rec.positions = []
                returned_y = closed.returned_y
                swap = await self.executor.swap_to_y(cfg, closed.returned_x)
                swapped_y = swap.out_amount if swap.swapped else 0.0
            snapshot = await self._read_snapshot(force_refresh=True)
            collected = returned_y + swapped_y
            amount = collected if collected > 0 else cfg.position_amount
            if unknown:
                self._log_event(
                    "rebuild_funding_unknown",
                    addresses=[p.address for p in unknown],
                    last_known_x=sum(p.token_x_amount + p.accrued_fee_x for p in unknown),
                    last_known_y=sum(p.token_y_amount + p.accrued_fee_y for p in unknown),
                    counted_y=collected,
                    amount=amount,
                )
            opened = await self.executor.open_positions(cfg, snapshot.active_bin, amount)
        except Exception as exc:
            self._fail(exc, f"rebuild ({reason.value})")
            return TickResult(TickAction.ERROR, reason=str(exc), decision=decision, intent=intent)

        self._adopt(opened.positions, opened.amount, snapshot)
        self.recreation.record_recreation(snapshot.timestamp_ms)
        rec.counters["rebuilds"] += 1
        if self._metrics is not None:
            self._metrics.rebuilds.labels(instance=self.instance_id, reason=reason.value).inc()
        self._log_event(
            "rebuild_done",
            reason=reason.value,
            active_bin=snapshot.active_bin,
            amount=opened.amount,
            positions=rec.position_addresses,
        )
        self._transition(InstanceState.ACTIVE, f"rebuilt ({reason.value})")
        return TickResult(TickAction.REBUILT, reason=reason.value, decision=decision, intent=intent)

    async def _full_exit(self, reason: str, decision: Optional[StopLossDecision] = None) -> TickResult:
        """Close everything, swap X -> Y, finish in STOPPED."""
        rec = self.record
        cfg = rec.config
        self._transition(InstanceState.STOPPING, reason)
        try:
            if rec.positions:
                closed = await self.executor.close_positions(cfg, rec.position_addresses)
                rec.positions = []
                await self.executor.swap_to_y(cfg, closed.returned_x)
        except Exception as exc:
            self._fail(exc, "stop")
            return TickResult(TickAction.ERROR, reason=str(exc), decision=decision)
        rec.below_threshold_since_ms = None
        rec.out_of_range.reset()
        self.yield_tracker.clear()
        self._transition(InstanceState.STOPPED, reason)
        return TickResult(TickAction.STOPPED, reason=reason, decision=decision)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        rec = self.record
        benchmark = self.yield_tracker.latest
        return {
            "instance_id": rec.instance_id,
            "name": rec.name,
            "kind": rec.config.kind.value,
            "status": rec.status.value,
            "state": rec.state.value,
            "snapshot": rec.last_snapshot.to_dict() if rec.last_snapshot else None,
            "decision": rec.current_decision.to_dict() if rec.current_decision else None,
            "prior_decision": rec.prior_decision.to_dict() if rec.prior_decision else None,
            "recreation": rec.last_recreation,
            "loss_recovery": self.recreation.mark.to_dict(),
            "benchmark": benchmark.to_dict() if benchmark else None,
            "out_of_range": rec.out_of_range.to_dict(),
            "stop_loss_remaining": rec.stop_loss_remaining,
            "initial_investment_y": rec.initial_investment_y,
            "positions": [p.to_dict() for p in rec.positions],
            "counters": dict(rec.counters),
            "last_error": rec.last_error,
            "last_tick_at_ms": rec.last_tick_at_ms,
            "created_at_ms": rec.created_at_ms,
        }

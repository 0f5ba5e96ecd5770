"""
InstanceRegistry: owns every strategy instance of the process.

Responsibilities:
- Keyed map of InstanceStateMachine objects, one per instance id
- Concurrency ceiling on instances that are ticking (ACTIVE, REBUILDING,
  STOPPING); starts and resumes past the ceiling are refused, running
  instances are never preempted
- Lifecycle surface: create / start / pause / resume / stop / delete,
  status views, config updates, manual stop-loss
- Persistence of every record through InstanceStore, reload on startup

Collaborators (position, swap and pool services) are shared by all
instances; each instance gets its own PositionExecutor.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from lpbot.config.strategy_config import StrategyConfig
from lpbot.core.errors import (
    ConcurrencyLimitError,
    DuplicateInstanceError,
    InstanceNotFoundError,
    InvalidStateError,
    ValidationError,
)
from lpbot.core.interfaces import PositionService, SwapService
from lpbot.execution.position_executor import PositionExecutor, PositionExecutorConfig
from lpbot.execution.retry_manager import RetryManager
from lpbot.market_data.snapshot_provider import MarketSnapshotProvider
from lpbot.orchestrator.instance_state_machine import (
    RUNNING_STATES,
    InstanceRecord,
    InstanceState,
    InstanceStateMachine,
)
from lpbot.state.instance_store import InstanceStore

log = logging.getLogger("lpbot")

DELETABLE_STATES = frozenset({InstanceState.CREATED, InstanceState.STOPPED, InstanceState.ERROR})


class InstanceRegistry:
    """
    Usage:
        registry = InstanceRegistry(positions, swaps, snapshots, retry, store=store)
        await registry.initialize()            # reload persisted instances
        instance_id = await registry.create(config)
        await registry.start(instance_id)
        registry.get_status(instance_id)
        await registry.shutdown()              # positions stay open
    """

    def __init__(
        self,
        positions: PositionService,
        swaps: SwapService,
        snapshots: MarketSnapshotProvider,
        retry: RetryManager,
        store: Optional[InstanceStore] = None,
        event_sink: Optional[Any] = None,
        metrics: Optional[Any] = None,
        max_running: int = 10,
        default_tick_interval_sec: float = 30.0,
        executor_config: Optional[PositionExecutorConfig] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._positions = positions
        self._swaps = swaps
        self._snapshots = snapshots
        self._retry = retry
        self._store = store
        self._sink = event_sink
        self._metrics = metrics
        self.max_running = max_running
        self._default_interval = default_tick_interval_sec
        self._executor_config = executor_config
        self._log_event = log_event or self._default_log

        self._machines: Dict[str, InstanceStateMachine] = {}
        # ids between the ceiling check and their first transition
        self._starting: set = set()
        self._lock = asyncio.Lock()
        self._initialized = False

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _build(self, record: InstanceRecord) -> InstanceStateMachine:
        executor = PositionExecutor(
            record.instance_id,
            self._positions,
            self._swaps,
            self._retry,
            config=self._executor_config,
        )
        return InstanceStateMachine(
            record,
            executor,
            self._snapshots,
            self._retry,
            event_sink=self._sink,
            persist=self._persist,
            metrics=self._metrics,
            default_tick_interval_sec=self._default_interval,
            on_state_change=self._on_state_change,
        )

    async def _persist(self, record: InstanceRecord) -> None:
        if self._store is not None:
            await self._store.save(record.instance_id, record.to_dict())

    def _on_state_change(self, machine: InstanceStateMachine, from_state: InstanceState, to_state: InstanceState) -> None:
        self._update_running_gauge()

    def _update_running_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.running_instances.set(self.running_count())

    async def initialize(self) -> int:
        """
        Load persisted instances. Nothing resumes ticking on its own: ACTIVE
        records come back PAUSED, interrupted rebuilds and exits come back
        in ERROR. Returns the number of instances loaded.
        """
        if self._initialized:
            return len(self._machines)
        self._initialized = True
        if self._store is None:
            return 0

        loaded = 0
        for data in await self._store.load_all():
            try:
                record = InstanceRecord.from_dict(data)
            except (KeyError, TypeError, ValueError, ValidationError) as exc:
                self._log_event("instance_load_failed", instance_id=data.get("instance_id"), error=str(exc))
                continue
            machine = self._build(record)
            before = record.state
            machine.recover_after_restart()
            self._machines[record.instance_id] = machine
            if record.state != before:
                await self._persist(record)
            loaded += 1
        self._log_event("registry_initialized", instances=loaded)
        self._update_running_gauge()
        return loaded

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _get(self, instance_id: str) -> InstanceStateMachine:
        machine = self._machines.get(instance_id)
        if machine is None:
            raise InstanceNotFoundError(instance_id)
        return machine

    def get(self, instance_id: str) -> InstanceStateMachine:
        return self._get(instance_id)

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._machines

    def __len__(self) -> int:
        return len(self._machines)

    def running_count(self) -> int:
        running = sum(1 for m in self._machines.values() if m.state in RUNNING_STATES)
        return running + len(self._starting)

    def _check_ceiling(self) -> None:
        if self.running_count() >= self.max_running:
            raise ConcurrencyLimitError(self.max_running)

    # ------------------------------------------------------------------
    # Lifecycle surface
    # ------------------------------------------------------------------

    async def create(self, config: StrategyConfig) -> str:
        """Register a new instance in CREATED. Nothing is opened until start()."""
        config.validate()
        async with self._lock:
            if config.name:
                for machine in self._machines.values():
                    if machine.record.name == config.name:
                        raise DuplicateInstanceError(config.name)
            instance_id = uuid.uuid4().hex[:12]
            record = InstanceRecord(instance_id=instance_id, config=config)
            self._machines[instance_id] = self._build(record)
        await self._persist(record)
        self._log_event(
            "instance_created",
            instance_id=instance_id,
            name=config.name,
            kind=config.kind.value,
            pool=config.pool_address,
        )
        return instance_id

    async def start(self, instance_id: str) -> bool:
        machine = self._get(instance_id)
        async with self._lock:
            if machine.state not in (InstanceState.CREATED, InstanceState.STOPPED):
                raise InvalidStateError(instance_id, machine.state.value, "start")
            if instance_id in self._starting:
                raise InvalidStateError(instance_id, machine.state.value, "start (already starting)")
            self._check_ceiling()
            self._starting.add(instance_id)
        try:
            return await machine.start()
        finally:
            self._starting.discard(instance_id)
            self._update_running_gauge()

    async def pause(self, instance_id: str) -> None:
        await self._get(instance_id).pause()

    async def resume(self, instance_id: str) -> None:
        machine = self._get(instance_id)
        async with self._lock:
            if machine.state != InstanceState.PAUSED:
                raise InvalidStateError(instance_id, machine.state.value, "resume")
            if instance_id in self._starting:
                raise InvalidStateError(instance_id, machine.state.value, "resume (already resuming)")
            self._check_ceiling()
            self._starting.add(instance_id)
        # machine.resume waits for the instance's tick lock; the registry lock is not held here
        try:
            await machine.resume()
        finally:
            self._starting.discard(instance_id)
            self._update_running_gauge()

    async def stop(self, instance_id: str) -> bool:
        return await self._get(instance_id).stop()

    async def manual_stop_loss(self, instance_id: str) -> bool:
        return await self._get(instance_id).manual_stop_loss()

    async def delete(self, instance_id: str) -> None:
        """
        Forget an instance. Allowed from CREATED and STOPPED, and from ERROR
        once no position is recorded (stop it first otherwise).
        """
        machine = self._get(instance_id)
        state = machine.state
        if state not in DELETABLE_STATES or (state == InstanceState.ERROR and machine.record.positions):
            raise InvalidStateError(instance_id, state.value, "delete")
        async with self._lock:
            self._machines.pop(instance_id, None)
        self._retry.release_instance(instance_id)
        if self._store is not None:
            await self._store.delete(instance_id)
        self._log_event("instance_deleted", instance_id=instance_id, state=state.value)

    async def update_config(self, instance_id: str, patch: Dict[str, Any]) -> StrategyConfig:
        machine = self._get(instance_id)
        new_name = patch.get("name")
        if new_name and new_name != machine.record.name:
            for other_id, other in self._machines.items():
                if other_id != instance_id and other.record.name == new_name:
                    raise DuplicateInstanceError(new_name)
        return await machine.update_config(patch)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_status(self, instance_id: str) -> Dict[str, Any]:
        return self._get(instance_id).get_status()

    def list_instances(self) -> List[Dict[str, Any]]:
        out = []
        for machine in self._machines.values():
            rec = machine.record
            out.append({
                "instance_id": rec.instance_id,
                "name": rec.name,
                "kind": rec.config.kind.value,
                "pool": rec.config.pool_address,
                "status": rec.status.value,
                "state": rec.state.value,
                "positions": len(rec.positions),
                "stop_loss_remaining": rec.stop_loss_remaining,
                "created_at_ms": rec.created_at_ms,
                "last_tick_at_ms": rec.last_tick_at_ms,
            })
        return sorted(out, key=lambda item: item["created_at_ms"])

    def get_stats(self) -> Dict[str, Any]:
        by_state: Dict[str, int] = {}
        for machine in self._machines.values():
            by_state[machine.state.value] = by_state.get(machine.state.value, 0) + 1
        return {
            "instances": len(self._machines),
            "running": self.running_count(),
            "max_running": self.max_running,
            "by_state": by_state,
        }

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Halt every tick loop at a tick boundary and persist. Positions stay open."""
        machines = list(self._machines.values())
        results = await asyncio.gather(*(m.shutdown() for m in machines), return_exceptions=True)
        for machine, result in zip(machines, results):
            if isinstance(result, Exception):
                self._log_event("instance_shutdown_failed", instance_id=machine.instance_id, error=str(result))
        self._log_event("registry_shutdown", instances=len(machines))

"""
Engine wiring.

The transport layer (HTTP API, CLI) and the chain collaborators live outside
this package; they hand their PositionService / SwapService / PoolDataService
implementations to build_engine() and drive the returned registry.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from lpbot.config.config import Settings
from lpbot.core.event_bus import BusEventSink, EventBus
from lpbot.core.interfaces import PoolDataService, PositionService, SwapService
from lpbot.execution.position_executor import PositionExecutorConfig
from lpbot.execution.retry_manager import RetryManager
from lpbot.infra.logging_cfg import INFO, build_logger, log_event
from lpbot.market_data.snapshot_provider import MarketSnapshotProvider
from lpbot.monitoring.alerting import AlertConfig, AlertManager
from lpbot.monitoring.metrics_rich import RichMetrics, start_metrics_server
from lpbot.orchestrator.registry import InstanceRegistry
from lpbot.state.instance_store import InstanceStore


@dataclass
class EngineServices:
    """Collaborators supplied by the embedding application."""
    positions: PositionService
    swaps: SwapService
    pool_data: PoolDataService
    executor_config: PositionExecutorConfig = field(default_factory=PositionExecutorConfig)
    # optional shared client for webhook delivery
    http_client: Optional[httpx.AsyncClient] = None


@dataclass
class Engine:
    settings: Settings
    registry: InstanceRegistry
    bus: EventBus
    retry: RetryManager
    snapshots: MarketSnapshotProvider
    metrics: RichMetrics
    alerts: AlertManager
    store: InstanceStore
    _bus_task: Optional[asyncio.Task] = None
    metrics_server_started: bool = False

    async def start(self, serve_metrics: bool = True) -> int:
        """Start the bus, the metrics endpoint, and reload persisted instances."""
        self._bus_task = asyncio.create_task(self.bus.start(), name="event-bus")
        if serve_metrics:
            self.metrics_server_started = start_metrics_server(self.metrics, self.settings.metrics_port)
        return await self.registry.initialize()

    async def stop(self) -> None:
        """Halt tick loops (positions stay open), flush events and alerts."""
        await self.registry.shutdown()
        await self.bus.drain()
        self.bus.stop()
        if self._bus_task is not None:
            await asyncio.gather(self._bus_task, return_exceptions=True)
            self._bus_task = None
        await self.alerts.close()


def build_engine(settings: Settings, services: EngineServices, metrics: Optional[RichMetrics] = None) -> Engine:
    log = build_logger("lpbot", level=settings.log_level_value, file_path=settings.log_file)
    metrics = metrics or RichMetrics()

    bus = EventBus(history_size=settings.event_history_size)
    sink = BusEventSink(bus, source="lpbot")

    retry = RetryManager(
        event_sink=sink,
        backoff_factor=settings.retry_backoff_factor,
        max_delay_ms=settings.retry_max_delay_ms,
        metrics=metrics,
    )
    snapshots = MarketSnapshotProvider(
        services.pool_data,
        ttl_ms=settings.snapshot_ttl_ms,
        history_minutes=settings.snapshot_history_min,
    )
    store = InstanceStore(settings.state_dir)

    alerts = AlertManager(
        AlertConfig(
            webhook_url=settings.alert_webhook_url,
            webhook_type=settings.alert_webhook_type,
            enabled=settings.alert_enabled,
        ),
        client=services.http_client,
    )
    alerts.attach(bus)

    registry = InstanceRegistry(
        services.positions,
        services.swaps,
        snapshots,
        retry,
        store=store,
        event_sink=sink,
        metrics=metrics,
        max_running=settings.max_running_instances,
        default_tick_interval_sec=settings.tick_interval_sec,
        executor_config=services.executor_config,
    )
    log_event(log, "engine_built", level=INFO, state_dir=settings.state_dir, max_running=settings.max_running_instances)
    return Engine(
        settings=settings,
        registry=registry,
        bus=bus,
        retry=retry,
        snapshots=snapshots,
        metrics=metrics,
        alerts=alerts,
        store=store,
    )


async def run_engine(settings: Settings, services: EngineServices, ready: Optional[Any] = None) -> None:
    """
    Run until SIGINT/SIGTERM or cancellation, then shut down gracefully.

    `ready`, when given, is called with the Engine once instances are loaded
    so the embedding transport can start serving.
    """
    engine = build_engine(settings, services)
    log = build_logger("lpbot", level=settings.log_level_value, file_path=settings.log_file)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: rely on KeyboardInterrupt / cancellation
            pass

    loaded = await engine.start()
    log_event(log, "startup", level=INFO, instances=loaded)
    if ready is not None:
        ready(engine)
    try:
        await stop_event.wait()
        log.info("Shutdown signal received, cleaning up...")
    except asyncio.CancelledError:
        log.info("Engine task cancelled, cleaning up...")
        raise
    finally:
        await engine.stop()
        log.info("Shutdown complete")

"""
Prometheus metrics for the position engine.

Organized into: ticks, decisions, execution, lifecycle.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class RichMetrics:
    """Engine-wide metrics; per-instance series are labelled by instance id."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Tick Metrics ===
        self.ticks = Counter(
            'lp_ticks_total',
            'Tick evaluations executed',
            labelnames=['instance'],
            registry=reg
        )
        self.tick_failures = Counter(
            'lp_tick_failures_total',
            'Ticks skipped because a read failed',
            labelnames=['instance'],
            registry=reg
        )
        self.tick_latency_ms = Histogram(
            'lp_tick_latency_ms',
            'Tick duration including any close/rebuild (milliseconds)',
            labelnames=['instance'],
            buckets=[10, 50, 100, 500, 1000, 5000, 15000, 60000],
            registry=reg
        )

        # === Market / Position Metrics ===
        self.active_bin = Gauge(
            'lp_active_bin',
            'Last observed active bin',
            labelnames=['instance'],
            registry=reg
        )
        self.position_pct = Gauge(
            'lp_active_bin_position_pct',
            'Active bin position within the range (%)',
            labelnames=['instance'],
            registry=reg
        )
        self.pnl_pct = Gauge(
            'lp_pnl_pct',
            'Estimated PnL vs. initial investment (%)',
            labelnames=['instance'],
            registry=reg
        )

        # === Decision Metrics ===
        self.stop_loss_triggers = Counter(
            'lp_stop_loss_triggers_total',
            'Stop-loss triggers',
            labelnames=['instance', 'action'],
            registry=reg
        )
        self.rebuilds = Counter(
            'lp_rebuilds_total',
            'Close-and-rebuild sequences completed',
            labelnames=['instance', 'reason'],
            registry=reg
        )

        # === Execution Metrics ===
        self.retry_events = Counter(
            'lp_retry_events_total',
            'Retry outcomes per operation class',
            labelnames=['operation_class', 'outcome'],
            registry=reg
        )

        # === Lifecycle ===
        self.running_instances = Gauge(
            'lp_running_instances',
            'Instances counted against the concurrency ceiling',
            registry=reg
        )
        self.status_changes = Counter(
            'lp_status_changes_total',
            'Instance state transitions',
            labelnames=['to_state'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry


def start_metrics_server(metrics: RichMetrics, port: int) -> bool:
    """Expose the registry over HTTP. Port 0 disables the endpoint."""
    if port <= 0:
        return False
    start_http_server(port, registry=metrics.get_registry())
    return True

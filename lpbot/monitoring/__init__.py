"""
Monitoring package: Prometheus metrics and webhook alerts.
"""

from lpbot.monitoring.alerting import Alert, AlertConfig, AlertManager, AlertSeverity, AlertType
from lpbot.monitoring.metrics_rich import RichMetrics, start_metrics_server

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "RichMetrics",
    "start_metrics_server",
]

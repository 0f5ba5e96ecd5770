"""
Webhook alerting for critical engine events.

- Driven by bus events (stop-loss triggers, ERROR transitions, failed retries)
- Rate limiting per alert type and instance to prevent alert storms
- Alert batching for related events
- Async non-blocking delivery over httpx
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple

import httpx

from lpbot.core.event_bus import Event, EventBus, EventType

logger = logging.getLogger("lpbot")


class AlertSeverity(Enum):
    """Alert severity levels."""
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class AlertType(Enum):
    STOP_LOSS = auto()
    INSTANCE_ERROR = auto()
    RETRY_FAILED = auto()
    CUSTOM = auto()


@dataclass
class Alert:
    """An alert to be sent."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    instance_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "instance_id": self.instance_id,
        }


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60  # per (alert type, instance)
    batch_window_ms: int = 5000
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "lpbot"
    timeout_sec: float = 10.0


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def _fields(alert: Alert, config: AlertConfig) -> List[Tuple[str, str]]:
        fields = []
        if alert.instance_id:
            fields.append(("Instance", alert.instance_id))
        fields.append(("Type", alert.alert_type.name))
        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:5]:
                fields.append((key, str(value)))
        return fields

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: "#FF0000",
            AlertSeverity.WARNING: "#FFA500",
            AlertSeverity.INFO: "#0000FF",
        }.get(alert.severity, "#808080")
        return {
            "username": config.bot_name,
            "attachments": [{
                "color": color,
                "title": alert.title,
                "text": alert.message,
                "fields": [
                    {"title": k, "value": v, "short": True} for k, v in WebhookFormatter._fields(alert, config)
                ],
                "footer": f"{config.bot_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }]
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: 0xFF0000,
            AlertSeverity.WARNING: 0xFFA500,
            AlertSeverity.INFO: 0x0000FF,
        }.get(alert.severity, 0x808080)
        return {
            "username": config.bot_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": color,
                "fields": [
                    {"name": k, "value": v, "inline": True} for k, v in WebhookFormatter._fields(alert, config)
                ],
                "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }]
        }


class AlertManager:
    """
    Manages alert delivery with rate limiting and batching.

    Usage:
        alerts = AlertManager(AlertConfig(webhook_url=url))
        alerts.attach(bus)
        ...
        await alerts.close()
    """

    def __init__(self, config: Optional[AlertConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or AlertConfig()
        self._last_alert_times: Dict[Tuple[AlertType, Optional[str]], int] = {}
        self._pending_alerts: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._client = client
        self._owns_client = client is None
        self._stats = {"queued": 0, "rate_limited": 0, "delivered": 0, "failed": 0}

    # ------------------------------------------------------------------
    # Bus integration
    # ------------------------------------------------------------------

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(EventType.STOPLOSS_TRIGGERED, self.on_stop_loss, name="alerts.stop_loss")
        bus.subscribe(EventType.INSTANCE_STATUS_CHANGED, self.on_status_changed, name="alerts.status")
        bus.subscribe(EventType.RETRY_FAILED, self.on_retry_failed, name="alerts.retry_failed")

    async def on_stop_loss(self, event: Event) -> None:
        data = event.data
        rebuild = data.get("action") == "CLOSE_AND_REBUILD"
        await self.send_alert(Alert(
            alert_type=AlertType.STOP_LOSS,
            severity=AlertSeverity.WARNING if rebuild else AlertSeverity.CRITICAL,
            title="Stop-loss triggered" if rebuild else "Stop-loss triggered: full exit",
            message="; ".join(data.get("reasoning", [])) or "stop-loss condition met",
            instance_id=event.instance_id,
            details={
                "action": data.get("action"),
                "pnl_pct": data.get("pnl_pct"),
                "position_pct": data.get("active_bin_position_pct"),
                "stop_loss_remaining": data.get("stop_loss_remaining"),
            },
        ))

    async def on_status_changed(self, event: Event) -> None:
        if event.data.get("to_state") != "ERROR":
            return
        await self.send_alert(Alert(
            alert_type=AlertType.INSTANCE_ERROR,
            severity=AlertSeverity.CRITICAL,
            title="Instance entered ERROR",
            message=str(event.data.get("reason") or "unknown error"),
            instance_id=event.instance_id,
            details={"from_state": event.data.get("from_state")},
        ))

    async def on_retry_failed(self, event: Event) -> None:
        data = event.data
        await self.send_alert(Alert(
            alert_type=AlertType.RETRY_FAILED,
            severity=AlertSeverity.WARNING,
            title=f"{data.get('operation_class', 'operation')} failed",
            message=str(data.get("error", "")),
            instance_id=event.instance_id,
            details={"attempt": data.get("attempt"), "error_type": data.get("error_type")},
        ))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def send_alert(self, alert: Alert) -> bool:
        """
        Queue an alert for delivery.

        Returns:
            True if queued, False if disabled, below severity or rate limited
        """
        if not self.config.enabled or not self.config.webhook_url:
            logger.debug(f"Alert not sent (disabled or no webhook): {alert.title}")
            return False
        if alert.severity.value > self.config.min_severity.value:
            return False

        key = (alert.alert_type, alert.instance_id)
        now_ms = int(time.time() * 1000)
        last_time = self._last_alert_times.get(key)
        if last_time is not None and now_ms - last_time < self.config.rate_limit_seconds * 1000:
            self._stats["rate_limited"] += 1
            logger.debug(f"Alert rate limited: {alert.alert_type.name} {alert.instance_id}")
            return False

        async with self._lock:
            self._pending_alerts.append(alert)
            self._last_alert_times[key] = now_ms
            self._stats["queued"] += 1
            if self._batch_task is None or self._batch_task.done():
                self._batch_task = asyncio.create_task(self._batch_deliver())
        return True

    async def flush(self) -> None:
        """Wait for the pending batch to be delivered."""
        if self._batch_task is not None:
            await self._batch_task

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        async with self._lock:
            alerts = self._pending_alerts.copy()
            self._pending_alerts.clear()
        if not alerts:
            return
        payload = self._format_batch(alerts)
        if await self._http_post(payload):
            self._stats["delivered"] += len(alerts)
        else:
            self._stats["failed"] += len(alerts)

    def _format_batch(self, alerts: List[Alert]) -> Dict[str, Any]:
        if len(alerts) == 1:
            return self._format_alert(alerts[0])
        if self.config.webhook_type == "slack":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["attachments"].extend(self._format_alert(alert)["attachments"])
            return payload
        if self.config.webhook_type == "discord":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["embeds"].extend(self._format_alert(alert)["embeds"])
            return payload
        return {"alerts": [alert.to_dict() for alert in alerts]}

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        if not self.config.webhook_url:
            return False
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_sec)
        for attempt in range(retries + 1):
            try:
                resp = await self._client.post(self.config.webhook_url, json=payload)
                if resp.status_code < 300:
                    logger.debug("Alert delivered successfully")
                    return True
                logger.warning(f"Alert delivery failed: HTTP {resp.status_code}")
            except httpx.TimeoutException:
                logger.warning(f"Alert delivery timeout (attempt {attempt + 1})")
            except httpx.HTTPError as e:
                logger.warning(f"Alert delivery error: {e}")
            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))
        return False

    async def close(self) -> None:
        if self._batch_task is not None and not self._batch_task.done():
            await self._batch_task
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)

"""
Environment-driven process configuration with validation.

Per-instance strategy parameters live in config.strategy_config; this module
only covers what the whole process shares (state dir, tick cadence, limits,
observability endpoints).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    state_dir: str
    tick_interval_sec: float
    max_running_instances: int
    snapshot_ttl_ms: int
    snapshot_history_min: int
    retry_backoff_factor: float
    retry_max_delay_ms: int
    metrics_port: int
    log_level: str
    log_file: str | None
    event_history_size: int
    alert_webhook_url: str | None
    alert_webhook_type: str  # generic, slack, discord
    alert_enabled: bool

    def dump(self) -> dict:
        return self.__dict__.copy()

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            state_dir=os.getenv("LP_STATE_DIR", "state"),
            tick_interval_sec=_float_env("LP_TICK_INTERVAL_SEC", 30.0),
            max_running_instances=_int_env("LP_MAX_RUNNING_INSTANCES", 10),
            snapshot_ttl_ms=_int_env("LP_SNAPSHOT_TTL_MS", 5000),
            snapshot_history_min=_int_env("LP_SNAPSHOT_HISTORY_MIN", 30),
            retry_backoff_factor=_float_env("LP_RETRY_BACKOFF_FACTOR", 2.0),
            retry_max_delay_ms=_int_env("LP_RETRY_MAX_DELAY_MS", 30000),
            metrics_port=_int_env("LP_METRICS_PORT", 9105),
            log_level=os.getenv("LP_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LP_LOG_FILE", "lpbot.log") or None,
            event_history_size=_int_env("LP_EVENT_HISTORY_SIZE", 1000),
            alert_webhook_url=os.getenv("LP_ALERT_WEBHOOK_URL") or None,
            alert_webhook_type=os.getenv("LP_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("LP_ALERT_ENABLED", True),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.log_level)
        return level if isinstance(level, int) else logging.INFO

    def _validate(self) -> None:
        if self.tick_interval_sec <= 0:
            raise ValueError("LP_TICK_INTERVAL_SEC must be > 0")
        if self.max_running_instances <= 0:
            raise ValueError("LP_MAX_RUNNING_INSTANCES must be > 0")
        if self.snapshot_ttl_ms < 0:
            raise ValueError("LP_SNAPSHOT_TTL_MS must be >= 0")
        if self.snapshot_history_min <= 0:
            raise ValueError("LP_SNAPSHOT_HISTORY_MIN must be > 0")
        if self.retry_backoff_factor < 1.0:
            raise ValueError("LP_RETRY_BACKOFF_FACTOR must be >= 1.0")
        if self.retry_max_delay_ms <= 0:
            raise ValueError("LP_RETRY_MAX_DELAY_MS must be > 0")
        if self.alert_webhook_type not in {"generic", "slack", "discord"}:
            raise ValueError("LP_ALERT_WEBHOOK_TYPE must be generic, slack or discord")

        if self.snapshot_ttl_ms > self.tick_interval_sec * 1000:
            logging.getLogger("lpbot").warning(
                f"WARNING: LP_SNAPSHOT_TTL_MS={self.snapshot_ttl_ms} exceeds the tick interval; "
                "every tick will read a cached snapshot."
            )


def _sanity_check(cfg: Settings) -> None:
    """Log the effective settings once at startup so overrides are obvious."""
    logger = logging.getLogger("lpbot")
    payload = {
        "event": "config_loaded",
        "state_dir": cfg.state_dir,
        "tick_interval_sec": cfg.tick_interval_sec,
        "max_running_instances": cfg.max_running_instances,
        "snapshot_ttl_ms": cfg.snapshot_ttl_ms,
        "metrics_port": cfg.metrics_port,
        "alerts": bool(cfg.alert_webhook_url) and cfg.alert_enabled,
    }
    logger.info(json.dumps(payload))

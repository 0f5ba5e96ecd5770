"""
Infrastructure package: logging configuration.
"""

from lpbot.infra.logging_cfg import build_logger, log_event

__all__ = [
    "build_logger",
    "log_event",
]

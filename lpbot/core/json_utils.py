"""
Fast JSON helpers backed by orjson.

Used for instance records and structured log lines.

Usage:
    from lpbot.core.json_utils import dumps, loads

    log.info(dumps({"event": "tick", "active_bin": 8388608}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Encode to str. Non-native values (enums, paths) fall back to str()."""
    return orjson.dumps(obj, default=str).decode("utf-8")


def dumps_pretty(obj: Any) -> bytes:
    """Indented encode for files meant to be read by operators."""
    return orjson.dumps(obj, default=str, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS)


def loads(s: str | bytes) -> Any:
    return orjson.loads(s)

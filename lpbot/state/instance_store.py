"""
Per-instance record persistence.

One JSON file per instance (`instance_<id>.json`), written to a temp file and
swapped into place so a crash mid-write never leaves a torn record. File IO
runs in the default executor; writes for one instance are serialized by an
asyncio.Lock so records never interleave.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List

from lpbot.core import json_utils

log = logging.getLogger("lpbot")

_PREFIX = "instance_"


def _safe_id(instance_id: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in instance_id)


class InstanceFileStore:
    """Synchronous file operations; wrapped by InstanceStore."""

    def __init__(self, state_dir: str) -> None:
        self.root = Path(state_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, instance_id: str) -> Path:
        return self.root / f"{_PREFIX}{_safe_id(instance_id)}.json"

    def save(self, instance_id: str, data: Dict[str, Any]) -> None:
        path = self.path_for(instance_id)
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_bytes(json_utils.dumps_pretty(data))
            tmp.replace(path)
        except Exception as exc:
            log.error(f"state_save_error:{instance_id}:{exc}")

    def load_all(self) -> List[Dict[str, Any]]:
        records = []
        for path in sorted(self.root.glob(f"{_PREFIX}*.json")):
            try:
                records.append(json_utils.loads(path.read_bytes()))
            except Exception as exc:
                log.error(f"state_load_error:{path.name}:{exc}")
        return records

    def delete(self, instance_id: str) -> bool:
        path = self.path_for(instance_id)
        if not path.exists():
            return False
        path.unlink()
        return True


class InstanceStore:
    """Async wrapper with per-instance write serialization."""

    def __init__(self, state_dir: str) -> None:
        self._files = InstanceFileStore(state_dir)
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._files.root

    def _lock_for(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_id] = lock
        return lock

    async def save(self, instance_id: str, data: Dict[str, Any]) -> None:
        async with self._lock_for(instance_id):
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: self._files.save(instance_id, data))

    async def load_all(self) -> List[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._files.load_all)

    async def delete(self, instance_id: str) -> bool:
        async with self._lock_for(instance_id):
            loop = asyncio.get_running_loop()
            removed = await loop.run_in_executor(None, lambda: self._files.delete(instance_id))
        self._locks.pop(instance_id, None)
        return removed

"""
Tests for InstanceRegistry.

Tests cover:
- Create / lookup / duplicate names
- Concurrency ceiling on start and resume (PAUSED does not count), resume not holding the registry
- Delete rules
- Reload from the instance store after a restart
- Views and shutdown
"""

import asyncio

import pytest

from lpbot.core.errors import (
    ConcurrencyLimitError,
    DuplicateInstanceError,
    InstanceNotFoundError,
    InvalidStateError,
    RetryableTransportError,
)
from lpbot.core import json_utils
from lpbot.execution.retry_manager import RetryManager
from lpbot.market_data.snapshot_provider import MarketSnapshotProvider
from lpbot.orchestrator import InstanceRegistry, InstanceState
from lpbot.state.instance_store import InstanceStore

from conftest import (
    FakeClock,
    FakePoolDataService,
    FakePositionService,
    FakeSwapService,
    NoSleep,
    RecordingSink,
    make_config,
)


def build_registry(store=None, max_running=2, positions=None):
    sink = RecordingSink()
    snapshots = MarketSnapshotProvider(FakePoolDataService(), ttl_ms=0, clock=FakeClock())
    return InstanceRegistry(
        positions or FakePositionService(),
        FakeSwapService(),
        snapshots,
        RetryManager(event_sink=sink, sleep=NoSleep()),
        store=store,
        event_sink=sink,
        max_running=max_running,
    )


async def create_many(registry, count):
    return [await registry.create(make_config(name=f"bot-{i}")) for i in range(count)]


# ─────────────────────────────────────────────────────────────────────────────
# Create / lookup
# ─────────────────────────────────────────────────────────────────────────────


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_registers_in_created(self):
        registry = build_registry()
        instance_id = await registry.create(make_config(name="alpha"))
        assert len(instance_id) == 12
        assert instance_id in registry
        status = registry.get_status(instance_id)
        assert status["status"] == "CREATED"
        assert status["name"] == "alpha"

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self):
        registry = build_registry()
        await registry.create(make_config(name="alpha"))
        with pytest.raises(DuplicateInstanceError):
            await registry.create(make_config(name="alpha"))
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_unnamed_instances_do_not_clash(self):
        registry = build_registry()
        await registry.create(make_config())
        await registry.create(make_config())
        assert len(registry) == 2

    def test_unknown_instance(self):
        registry = build_registry()
        with pytest.raises(InstanceNotFoundError):
            registry.get("missing")


# ─────────────────────────────────────────────────────────────────────────────
# Concurrency ceiling
# ─────────────────────────────────────────────────────────────────────────────


class TestCeiling:

    @pytest.mark.asyncio
    async def test_start_refused_at_ceiling(self):
        registry = build_registry(max_running=2)
        a, b, c = await create_many(registry, 3)
        assert await registry.start(a)
        assert await registry.start(b)
        with pytest.raises(ConcurrencyLimitError):
            await registry.start(c)
        assert registry.get(c).state == InstanceState.CREATED
        assert registry.running_count() == 2
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_paused_does_not_count_but_resume_is_checked(self):
        registry = build_registry(max_running=2)
        a, b, c = await create_many(registry, 3)
        await registry.start(a)
        await registry.start(b)
        await registry.pause(a)
        assert registry.running_count() == 1

        assert await registry.start(c)
        with pytest.raises(ConcurrencyLimitError):
            await registry.resume(a)
        assert registry.get(a).state == InstanceState.PAUSED

        await registry.stop(c)
        await registry.resume(a)
        assert registry.get(a).state == InstanceState.ACTIVE
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_resume_waiting_on_a_tick_does_not_block_the_registry(self):
        registry = build_registry(max_running=3)
        a, b = await create_many(registry, 2)
        await registry.start(a)
        await registry.pause(a)

        # a tick of `a` holds its tick lock
        tick_lock = registry.get(a)._tick_lock
        await tick_lock.acquire()
        resuming = asyncio.create_task(registry.resume(a))
        await asyncio.sleep(0)
        assert registry.running_count() == 1

        assert await asyncio.wait_for(registry.start(b), 1.0)
        await asyncio.wait_for(registry.create(make_config(name="bot-late")), 1.0)

        tick_lock.release()
        await resuming
        assert registry.get(a).state == InstanceState.ACTIVE
        assert registry.running_count() == 2
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_stopped_frees_slot(self):
        registry = build_registry(max_running=1)
        a, b = await create_many(registry, 2)
        await registry.start(a)
        await registry.stop(a)
        assert await registry.start(b)
        await registry.shutdown()


# ─────────────────────────────────────────────────────────────────────────────
# Delete / update
# ─────────────────────────────────────────────────────────────────────────────


class TestDelete:

    @pytest.mark.asyncio
    async def test_running_instance_cannot_be_deleted(self):
        registry = build_registry()
        (a,) = await create_many(registry, 1)
        await registry.start(a)
        with pytest.raises(InvalidStateError):
            await registry.delete(a)
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_delete_after_stop(self):
        registry = build_registry()
        (a,) = await create_many(registry, 1)
        await registry.start(a)
        await registry.stop(a)
        await registry.delete(a)
        assert a not in registry
        with pytest.raises(InstanceNotFoundError):
            registry.get_status(a)

    @pytest.mark.asyncio
    async def test_error_with_positions_cannot_be_deleted(self):
        positions = FakePositionService()
        registry = build_registry(positions=positions)
        (a,) = await create_many(registry, 1)
        await registry.start(a)
        positions.script("close", *[RetryableTransportError("rpc error")] * 3)
        assert not await registry.stop(a)
        assert registry.get(a).state == InstanceState.ERROR
        with pytest.raises(InvalidStateError):
            await registry.delete(a)

        assert await registry.stop(a)
        await registry.delete(a)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_rename_to_existing_name_rejected(self):
        registry = build_registry()
        a, b = await create_many(registry, 2)
        await registry.stop(b)
        with pytest.raises(DuplicateInstanceError):
            await registry.update_config(b, {"name": "bot-0"})
        config = await registry.update_config(b, {"name": "bot-9", "bin_count": 20})
        assert config.bin_count == 20


# ─────────────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────────────


class TestReload:

    @pytest.mark.asyncio
    async def test_active_instance_reloads_paused(self, tmp_path):
        store = InstanceStore(str(tmp_path))
        registry = build_registry(store=store)
        a, b = await create_many(registry, 2)
        await registry.start(a)
        await registry.shutdown()

        reloaded = build_registry(store=InstanceStore(str(tmp_path)))
        assert await reloaded.initialize() == 2
        assert reloaded.get(a).state == InstanceState.PAUSED
        assert reloaded.get(a).record.position_addresses == ["pos-1"]
        assert reloaded.get(b).state == InstanceState.CREATED

        on_disk = json_utils.loads((tmp_path / f"instance_{a}.json").read_bytes())
        assert on_disk["state"] == "PAUSED"

        await reloaded.resume(a)
        assert reloaded.get(a).state == InstanceState.ACTIVE
        await reloaded.shutdown()

    @pytest.mark.asyncio
    async def test_unreadable_records_are_skipped(self, tmp_path):
        (tmp_path / "instance_broken.json").write_text("{not json")
        (tmp_path / "instance_bad.json").write_bytes(
            json_utils.dumps_pretty({"instance_id": "bad", "config": {"pool_address": "p", "position_amount": 1, "bogus": 1}})
        )
        registry = build_registry(store=InstanceStore(str(tmp_path)))
        await registry.create(make_config())
        reloaded = build_registry(store=InstanceStore(str(tmp_path)))
        assert await reloaded.initialize() == 1

    @pytest.mark.asyncio
    async def test_delete_removes_file(self, tmp_path):
        store = InstanceStore(str(tmp_path))
        registry = build_registry(store=store)
        (a,) = await create_many(registry, 1)
        assert (tmp_path / f"instance_{a}.json").exists()
        await registry.delete(a)
        assert not (tmp_path / f"instance_{a}.json").exists()


# ─────────────────────────────────────────────────────────────────────────────
# Views
# ─────────────────────────────────────────────────────────────────────────────


class TestViews:

    @pytest.mark.asyncio
    async def test_list_and_stats(self):
        registry = build_registry()
        a, b = await create_many(registry, 2)
        await registry.start(a)

        listed = registry.list_instances()
        assert [item["instance_id"] for item in listed] == [a, b]
        assert listed[0]["status"] == "RUNNING"
        assert listed[0]["positions"] == 1

        stats = registry.get_stats()
        assert stats["instances"] == 2
        assert stats["running"] == 1
        assert stats["by_state"] == {"ACTIVE": 1, "CREATED": 1}
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_leaves_instances_active(self):
        registry = build_registry()
        (a,) = await create_many(registry, 1)
        await registry.start(a)
        await registry.shutdown()
        machine = registry.get(a)
        assert machine.state == InstanceState.ACTIVE
        assert not machine.loop_running

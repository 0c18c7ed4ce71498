"""Tests for the background sample retention sweep."""

import asyncio
from datetime import timedelta

import pytest

from conftest import T0, make_sample
from models import AgentRecord
from retention_manager import RetentionManager, get_retention_manager, init_retention_manager


def store(db, sample):
    db.append_sample(sample, AgentRecord(agent_id=sample.agent_id, last_seen=sample.timestamp))


@pytest.mark.asyncio
async def test_run_cleanup_deletes_samples_past_retention(db):
    for days in (40, 31, 29, 1):
        store(db, make_sample(at=T0 - timedelta(days=days)))
    manager = RetentionManager(db, retention=timedelta(days=30))

    result = await manager.run_cleanup(now=T0)

    assert result.rows_deleted == 2
    assert result.cutoff == T0 - timedelta(days=30)
    assert manager.last_run is result
    assert result.to_dict()["rows_deleted"] == 2
    remaining = db.get_samples("agent-1", T0 - timedelta(days=365))
    assert [s.timestamp for s in remaining] == [T0 - timedelta(days=1), T0 - timedelta(days=29)]


@pytest.mark.asyncio
async def test_loop_sweeps_after_initial_delay(db):
    store(db, make_sample(at=T0 - timedelta(days=400)))
    manager = RetentionManager(db, interval=timedelta(hours=1), initial_delay=0)

    await manager.start()
    assert manager.running
    for _ in range(100):
        if manager.last_run is not None:
            break
        await asyncio.sleep(0.01)
    await manager.stop()

    assert not manager.running
    assert manager.last_run.rows_deleted == 1
    assert db.get_samples("agent-1", T0 - timedelta(days=500)) == []


@pytest.mark.asyncio
async def test_stop_cancels_pending_sweep(db):
    manager = RetentionManager(db, initial_delay=3600)
    await manager.start()
    await manager.start()

    await manager.stop()

    assert manager.last_run is None
    assert not manager.running


def test_init_sets_global(db):
    manager = init_retention_manager(db, retention=timedelta(days=7))
    assert get_retention_manager() is manager
    assert manager.retention == timedelta(days=7)

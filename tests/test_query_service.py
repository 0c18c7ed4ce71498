"""Tests for history and agent-list queries."""

from datetime import timedelta

import pytest

from conftest import T0, make_sample
from models import AgentRecord, AgentStatus
from query_service import QueryService, bucket_target


def store(db, sample):
    db.append_sample(sample, AgentRecord(agent_id=sample.agent_id, display_name=sample.agent_id,
                                         last_seen=sample.timestamp))


@pytest.mark.parametrize("window,target", [
    (timedelta(minutes=1), 60),
    (timedelta(minutes=5), 60),
    (timedelta(minutes=6), 120),
    (timedelta(hours=1), 120),
    (timedelta(hours=6), 240),
    (timedelta(hours=24), 480),
    (timedelta(days=7), 500),
])
def test_bucket_target(window, target):
    assert bucket_target(window) == target


def test_history_ascending_without_downsampling(db):
    for i in range(30):
        store(db, make_sample(at=i * 5, cpu=float(i)))
    now = T0 + timedelta(seconds=150)

    history = QueryService(db).get_history("agent-1", since=T0, now=now)

    assert len(history) == 30
    assert [s.cpu_percent for s in history] == [float(i) for i in range(30)]


def test_history_downsampled_to_window_target(db):
    for i in range(300):
        store(db, make_sample(at=i, cpu=float(i % 17)))
    now = T0 + timedelta(seconds=300)

    history = QueryService(db).get_history("agent-1", since=T0, now=now)

    assert len(history) == 60
    assert history[0].timestamp == T0
    assert history[-1].timestamp == T0 + timedelta(seconds=299)
    assert [s.timestamp for s in history] == sorted(s.timestamp for s in history)


def test_history_default_window(db):
    store(db, make_sample(at=0))
    store(db, make_sample(at=400))
    store(db, make_sample(at=500))
    now = T0 + timedelta(seconds=600)

    history = QueryService(db).get_history("agent-1", now=now)

    assert [s.timestamp for s in history] == [T0 + timedelta(seconds=400), T0 + timedelta(seconds=500)]


def test_history_unknown_agent_is_empty(db):
    assert QueryService(db).get_history("ghost", now=T0) == []


def test_list_agents_by_cadence(db):
    # Three agents with 2s, 10s and 60s cadence, reporting for ten minutes
    end = T0 + timedelta(minutes=10)
    cadences = {"fast": 2, "medium": 10, "slow": 60}
    for agent_id, cadence in cadences.items():
        t = T0
        while t <= end:
            store(db, make_sample(agent_id=agent_id, at=t))
            t += timedelta(seconds=cadence)

    # "fast" keeps reporting; "medium" goes quiet after its last sample
    fast_last = end
    for _ in range(20):
        fast_last += timedelta(seconds=2)
        store(db, make_sample(agent_id="fast", at=fast_last))

    now = end + timedelta(seconds=40)
    agents = {a.agent_id: a for a in QueryService(db).list_agents(now=now)}

    assert agents["fast"].status == AgentStatus.ONLINE
    assert agents["medium"].status == AgentStatus.OFFLINE
    assert agents["slow"].status == AgentStatus.ONLINE


def test_list_agents_single_sample_uses_last_seen(db):
    store(db, make_sample(agent_id="new", at=0))
    service = QueryService(db)

    assert service.list_agents(now=T0 + timedelta(seconds=60))[0].status == AgentStatus.ONLINE
    assert service.list_agents(now=T0 + timedelta(seconds=300))[0].status == AgentStatus.OFFLINE

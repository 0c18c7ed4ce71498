"""Tests for the online/offline estimator."""

from datetime import timedelta

from conftest import T0, make_sample
from liveness import LivenessEstimator
from models import AgentStatus


def desc_samples(count, interval, latest):
    """`count` samples `interval` seconds apart ending at `latest`, newest first."""
    return [make_sample(at=latest - timedelta(seconds=i * interval)) for i in range(count)]


def test_regular_agent_is_online():
    now = T0
    samples = desc_samples(10, 5, now - timedelta(seconds=2))

    assert LivenessEstimator().estimate(samples, now) == AgentStatus.ONLINE


def test_agent_offline_after_three_missed_reports():
    latest = T0
    samples = desc_samples(10, 5, latest)
    estimator = LivenessEstimator()

    assert estimator.estimate(samples, latest + timedelta(seconds=15)) == AgentStatus.ONLINE
    assert estimator.estimate(samples, latest + timedelta(seconds=16)) == AgentStatus.OFFLINE


def test_slow_agent_gets_proportional_grace():
    latest = T0
    samples = desc_samples(10, 60, latest)

    assert LivenessEstimator().estimate(samples, latest + timedelta(seconds=170)) == AgentStatus.ONLINE


def test_single_sample_uses_fallback_interval():
    estimator = LivenessEstimator(fallback_interval=timedelta(minutes=2))
    sample = make_sample(at=T0)

    assert estimator.estimate([sample], T0 + timedelta(seconds=119)) == AgentStatus.ONLINE
    assert estimator.estimate([sample], T0 + timedelta(seconds=121)) == AgentStatus.OFFLINE


def test_no_samples_uses_last_seen():
    estimator = LivenessEstimator()

    assert estimator.estimate([], T0) == AgentStatus.OFFLINE
    assert estimator.estimate([], T0, last_seen=T0 - timedelta(seconds=30)) == AgentStatus.ONLINE
    assert estimator.estimate([], T0, last_seen=T0 - timedelta(hours=2)) == AgentStatus.OFFLINE


def test_duplicate_timestamps_fall_back():
    samples = [make_sample(at=T0), make_sample(at=T0), make_sample(at=T0)]
    estimator = LivenessEstimator(fallback_interval=timedelta(seconds=120))

    # No positive gap: expected interval is the fallback, so 3 x 120s of grace
    assert estimator.estimate(samples, T0 + timedelta(seconds=300)) == AgentStatus.ONLINE
    assert estimator.estimate(samples, T0 + timedelta(seconds=361)) == AgentStatus.OFFLINE


def test_lookback_start():
    estimator = LivenessEstimator(lookback=timedelta(hours=1))
    assert estimator.lookback_start(T0) == T0 - timedelta(hours=1)


def test_out_of_order_history_uses_positive_gaps_only():
    # Newest first; the 95 -> 100 step is negative and is ignored
    samples = [make_sample(at=s) for s in (100, 95, 100, 85, 80)]
    estimator = LivenessEstimator()

    # Mean positive gap is (5 + 15 + 5) / 3 s, so the window is 25 s
    assert estimator.estimate(samples, T0 + timedelta(seconds=124.9)) == AgentStatus.ONLINE
    assert estimator.estimate(samples, T0 + timedelta(seconds=125.1)) == AgentStatus.OFFLINE

"""Tests for LTTB downsampling."""

from collections import namedtuple

import pytest

from conftest import make_sample
from downsampler import lttb_downsample
from models import MetricType


Point = namedtuple("Point", ["t", "v"])


def series(n, value=lambda i: float(i % 7)):
    return [Point(i, value(i)) for i in range(n)]


def downsample(points, threshold):
    return lttb_downsample(points, threshold, value_func=lambda p: p.v, time_func=lambda p: p.t)


@pytest.mark.parametrize("n,threshold", [(10, 3), (100, 10), (1000, 60), (501, 500), (37, 36)])
def test_output_length_and_endpoints(n, threshold):
    points = series(n)
    result = downsample(points, threshold)

    assert len(result) == threshold
    assert result[0] is points[0]
    assert result[-1] is points[-1]


def test_output_is_time_ordered_subset():
    points = series(1000, value=lambda i: (i * 37) % 101)
    result = downsample(points, 120)

    times = [p.t for p in result]
    assert times == sorted(times)
    assert len(set(times)) == len(times)
    assert all(p in points for p in result)


def test_small_inputs_returned_unchanged():
    points = series(5)
    assert downsample(points, 5) == points
    assert downsample(points, 50) == points
    assert downsample(points, 1) == points
    assert downsample(points, 0) == points
    assert downsample([], 10) == []

    result = downsample(points, 5)
    assert result is not points


def test_threshold_two_keeps_endpoints():
    points = series(50)
    assert downsample(points, 2) == [points[0], points[-1]]


def test_spike_is_preserved():
    points = series(100, value=lambda i: 100.0 if i == 50 else 10.0)
    result = downsample(points, 10)

    assert points[50] in result


def test_defaults_use_sample_timestamp_and_cpu():
    samples = [make_sample(at=i * 5, cpu=90.0 if i == 40 else 5.0) for i in range(200)]
    result = lttb_downsample(samples, 20)

    assert len(result) == 20
    assert samples[40] in result
    assert [s.timestamp for s in result] == sorted(s.timestamp for s in result)


def test_metric_accessor_drives_selection():
    samples = [
        make_sample(at=i, cpu=5.0, memory_used=7_900 if i == 30 else 1_000, memory_total=8_000)
        for i in range(100)
    ]
    result = lttb_downsample(samples, 10, value_func=MetricType.MEMORY.accessor)

    assert samples[30] in result


def test_reapplying_to_own_output_is_identity():
    points = series(300, value=lambda i: (i * 13) % 29)
    once = downsample(points, 40)

    assert downsample(once, 40) == once

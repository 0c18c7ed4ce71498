"""Tests for metric and operator dispatch and sample validation."""

import pytest
from pydantic import ValidationError

from conftest import make_sample
from models import (
    METRIC_ACCESSORS,
    METRIC_UNITS,
    OPERATOR_FUNCS,
    MetricType,
    Operator,
)


def test_metric_dispatch_is_exhaustive():
    assert set(METRIC_ACCESSORS) == set(MetricType) == set(METRIC_UNITS)
    assert set(OPERATOR_FUNCS) == set(Operator)


def test_metric_values():
    sample = make_sample(cpu=37.5, memory_used=2_000, memory_total=8_000,
                         disk_used=75_000, disk_total=100_000, load_avg_1=1.25)

    assert MetricType.CPU.value_of(sample) == 37.5
    assert MetricType.MEMORY.value_of(sample) == 25.0
    assert MetricType.DISK.value_of(sample) == 75.0
    assert MetricType.LOAD.value_of(sample) == 1.25
    assert MetricType.DISK.value_of(make_sample(disk_used=0, disk_total=0)) == 0.0
    assert MetricType.LOAD.unit == ""


@pytest.mark.parametrize("operator, expected", [
    (Operator.GT, [False, False, True]),
    (Operator.GTE, [False, True, True]),
    (Operator.LT, [True, False, False]),
    (Operator.LTE, [True, True, False]),
])
def test_operators_compare_exactly(operator, expected):
    assert [operator.compare(v, 90.0) for v in (89.99, 90.0, 90.01)] == expected


@pytest.mark.parametrize("fields", [
    {"memory_used": 9_000, "memory_total": 8_000},
    {"disk_used": 100_001, "disk_total": 100_000},
])
def test_used_cannot_exceed_total(fields):
    with pytest.raises(ValidationError):
        make_sample(**fields)


def test_used_equal_to_total_is_valid():
    sample = make_sample(disk_used=100_000, disk_total=100_000)
    assert MetricType.DISK.value_of(sample) == 100.0

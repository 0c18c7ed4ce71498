"""
Largest-Triangle-Three-Buckets downsampling.

Reduces a time-ordered series to a fixed number of points while keeping its
visual shape: the first and last points are always kept, and each interior
bucket contributes the point forming the largest triangle with the previously
selected point and the centroid of the following bucket.
"""

import math
from typing import Any, Callable, List, Sequence, TypeVar

from models import MetricType
from utils import to_epoch


T = TypeVar("T")


def sample_timestamp(point: Any) -> float:
    return to_epoch(point.timestamp)


def lttb_downsample(
    points: Sequence[T],
    threshold: int,
    value_func: Callable[[T], float] = MetricType.CPU.accessor,
    time_func: Callable[[T], float] = sample_timestamp,
) -> List[T]:
    """
    Downsample `points` (ascending by time) to exactly `threshold` points.

    Args:
        points: Time-ordered series
        threshold: Desired output length
        value_func: Y-axis accessor (defaults to CPU percent)
        time_func: X-axis accessor, must increase monotonically with time

    Returns:
        A new list. When threshold >= len(points) or threshold <= 1 the input
        is returned unchanged (as a copy).
    """
    n = len(points)
    if threshold >= n or threshold <= 1:
        return list(points)
    if threshold == 2:
        return [points[0], points[-1]]

    xs = [time_func(p) for p in points]
    ys = [value_func(p) for p in points]

    sampled = [points[0]]
    bucket_size = (n - 2) / (threshold - 2)
    bucket_count = threshold - 2
    a = 0

    for i in range(bucket_count):
        start = int(math.floor(i * bucket_size)) + 1
        if i == bucket_count - 1:
            end = n - 1
        else:
            end = min(int(math.floor((i + 1) * bucket_size)) + 1, n - 1)

        # Centroid of the next bucket; for the last bucket this is the final point
        next_start = end
        if i == bucket_count - 1:
            next_end = n
        else:
            next_end = min(int(math.floor((i + 2) * bucket_size)) + 1, n)
        count = next_end - next_start
        avg_x = sum(xs[next_start:next_end]) / count
        avg_y = sum(ys[next_start:next_end]) / count

        ax = xs[a]
        ay = ys[a]
        max_area = -1.0
        max_idx = start
        for j in range(start, end):
            area = abs((ax - xs[j]) * (avg_y - ay) - (ax - avg_x) * (ys[j] - ay)) / 2.0
            if area > max_area:
                max_area = area
                max_idx = j

        sampled.append(points[max_idx])
        a = max_idx

    sampled.append(points[-1])
    return sampled

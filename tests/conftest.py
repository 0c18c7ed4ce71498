"""Shared fixtures for the Vigil test suite."""

from datetime import datetime, timedelta, timezone

import pytest

from db import DatabaseManager
from models import Sample


T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_sample(agent_id="agent-1", at=T0, cpu=10.0, **fields):
    """Build a Sample with sensible defaults; `at` may be a datetime or seconds after T0."""
    if not isinstance(at, datetime):
        at = T0 + timedelta(seconds=at)
    fields.setdefault("memory_used", 2_000)
    fields.setdefault("memory_total", 8_000)
    fields.setdefault("disk_used", 50_000)
    fields.setdefault("disk_total", 100_000)
    return Sample(agent_id=agent_id, timestamp=at, cpu_percent=cpu, **fields)


class RecordingNotifier:
    """Notifier double that remembers what it was asked to deliver."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def notify(self, alert, rule):
        if self.fail:
            raise RuntimeError("smtp unreachable")
        self.sent.append((alert, rule))
        return True


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(str(tmp_path / "vigil-test.db"))


@pytest.fixture
def notifier():
    return RecordingNotifier()

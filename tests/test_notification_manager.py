"""Tests for Apprise-based alert delivery."""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import T0
from models import Alert, AlertRule, MetricType, Operator
from notification_manager import NotificationManager, build_mailto_url, parse_notify_urls


RULE = AlertRule(id=3, metric_type=MetricType.CPU, threshold=90, operator=Operator.GT,
                 description="CPU hot")
ALERT = Alert(id=7, rule_id=3, agent_id="web-01", timestamp=T0,
              message="cpu: 95.00% gt 90.00%", value=95)


def test_mailto_url_requires_host_and_recipient():
    assert build_mailto_url("", 587, recipient="ops@example.com") is None
    assert build_mailto_url("smtp.example.com", 587) is None


def test_mailto_url_encodes_credentials():
    url = build_mailto_url("smtp.example.com", 587, "alerts@example.com", "p@ss:word",
                           "alerts@example.com", "ops@example.com")
    parsed = urlparse(url)
    query = parse_qs(parsed.query)

    assert parsed.scheme == "mailto"
    assert parsed.hostname == "smtp.example.com"
    assert parsed.port == 587
    assert query["to"] == ["ops@example.com"]
    assert query["from"] == ["alerts@example.com"]
    assert "p%40ss%3Aword" in url


def test_parse_notify_urls():
    assert parse_notify_urls("") == []
    assert parse_notify_urls(" json://a.example , ,jsons://b.example") == [
        "json://a.example", "jsons://b.example"
    ]


def test_format_alert():
    title, body = NotificationManager.format_alert(ALERT, RULE)

    assert title == "Alert: CPU hot"
    assert "Agent: web-01" in body
    assert "Rule: CPU hot" in body
    assert "Message: cpu: 95.00% gt 90.00%" in body
    assert T0.isoformat() in body


@pytest.mark.asyncio
async def test_unconfigured_manager_skips_delivery():
    manager = NotificationManager(urls=[])

    assert manager.configured is False
    assert await manager.notify(ALERT, RULE) is False


@pytest.mark.asyncio
async def test_notify_sends_through_apprise(monkeypatch):
    manager = NotificationManager(urls=["json://localhost:9999/hook"])
    calls = []

    async def fake_notify(title, body, **kwargs):
        calls.append((title, body))
        return True
    monkeypatch.setattr(manager.aprobj, "async_notify", fake_notify)

    assert manager.configured is True
    assert await manager.notify(ALERT, RULE) is True
    assert calls[0][0] == "Alert: CPU hot"


@pytest.mark.asyncio
async def test_notify_times_out(monkeypatch):
    manager = NotificationManager(urls=["json://localhost:9999/hook"], timeout=0.01)

    async def slow_notify(title, body, **kwargs):
        await asyncio.sleep(1)
        return True
    monkeypatch.setattr(manager.aprobj, "async_notify", slow_notify)

    assert await manager.notify(ALERT, RULE) is False

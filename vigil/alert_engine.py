import logging
import os
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Tuple

from fastapi.concurrency import run_in_threadpool

from models import Alert, AlertRule, Sample
from utils import ensure_utc

logger = logging.getLogger("vigil.alerts")

# Configuration
ALERT_STATE_SHARDS = int(os.getenv("ALERT_STATE_SHARDS", "16"))

StateKey = Tuple[int, str]


class Notifier(Protocol):
    async def notify(self, alert: Alert, rule: AlertRule) -> bool: ...


class AlertStateStore:
    """
    Pending-breach timers keyed by (rule_id, agent_id).

    An entry exists only while a breach is pending. Keys are spread over
    independently locked shards so concurrent ingests for different agents
    do not contend on a single lock.
    """

    def __init__(self, shards: int = ALERT_STATE_SHARDS):
        self._shards: List[Dict[StateKey, datetime]] = [{} for _ in range(max(1, shards))]
        self._locks = [threading.Lock() for _ in self._shards]

    def _shard(self, key: StateKey) -> int:
        return hash(key) % len(self._shards)

    def observe(self, key: StateKey, breached: bool, now: datetime, duration: int) -> bool:
        """
        Record one observation for `key` and report whether the rule fires.

        Not breached clears the timer. A first breach starts it. A breach
        that has persisted for at least `duration` seconds fires and clears
        the timer, so a continuing breach has to build a fresh window.
        """
        idx = self._shard(key)
        with self._locks[idx]:
            shard = self._shards[idx]
            if not breached:
                shard.pop(key, None)
                return False

            since = shard.get(key)
            if since is None:
                shard[key] = now
                return False

            if now - since >= timedelta(seconds=duration):
                del shard[key]
                return True
            return False

    def pending(self, key: StateKey) -> Optional[datetime]:
        idx = self._shard(key)
        with self._locks[idx]:
            return self._shards[idx].get(key)

    def clear_rule(self, rule_id: int) -> int:
        """Drop every pending timer for a rule. Returns how many were removed."""
        removed = 0
        for shard, lock in zip(self._shards, self._locks):
            with lock:
                for key in [k for k in shard if k[0] == rule_id]:
                    del shard[key]
                    removed += 1
        return removed

    def snapshot(self) -> Dict[StateKey, datetime]:
        result = {}
        for shard, lock in zip(self._shards, self._locks):
            with lock:
                result.update(shard)
        return result

    def __len__(self) -> int:
        total = 0
        for shard, lock in zip(self._shards, self._locks):
            with lock:
                total += len(shard)
        return total


def format_alert_message(rule: AlertRule, value: float) -> str:
    unit = rule.metric_type.unit
    return (
        f"{rule.metric_type.value}: {value:.2f}{unit} "
        f"{rule.operator.value} {rule.threshold:.2f}{unit}"
    )


class AlertEngine:
    """
    Evaluates each incoming sample against the configured alert rules.

    A rule fires for an agent only after its condition has held continuously
    for the rule's duration. Fired alerts are persisted, then handed to the
    notifier. Storage and notification problems are logged; evaluation never
    raises to the ingest path.
    """

    def __init__(self, rule_store, alert_store, notifier: Notifier = None,
                 state: AlertStateStore = None):
        self.rule_store = rule_store
        self.alert_store = alert_store
        self.notifier = notifier
        self.state = state if state is not None else AlertStateStore()

    async def evaluate(self, sample: Sample, now: datetime = None) -> List[Alert]:
        """
        Evaluate `sample` against every applicable rule.

        The evaluation clock is the sample's timestamp unless `now` is given.
        Returns the alerts that fired.
        """
        now = ensure_utc(now) if now is not None else sample.timestamp

        try:
            rules = await run_in_threadpool(self.rule_store.get_alert_rules)
        except Exception as e:
            logger.error(f"Error fetching alert rules, skipping sample from {sample.agent_id}: {e}")
            return []

        fired = []
        for rule in rules:
            if not rule.applies_to(sample.agent_id):
                continue

            value = rule.metric_type.value_of(sample)
            breached = rule.operator.compare(value, rule.threshold)
            if not self.state.observe((rule.id, sample.agent_id), breached, now, rule.duration):
                continue

            alert = await self._fire(rule, sample.agent_id, value, now)
            if alert is not None:
                fired.append(alert)

        return fired

    async def _fire(self, rule: AlertRule, agent_id: str, value: float,
                    now: datetime) -> Optional[Alert]:
        alert = Alert(
            rule_id=rule.id,
            agent_id=agent_id,
            timestamp=now,
            message=format_alert_message(rule, value),
            value=value,
        )
        logger.info(f"[ALERT] Rule {rule.id} fired for {agent_id}: {alert.message}")

        try:
            alert = await run_in_threadpool(self.alert_store.save_alert, alert)
        except Exception as e:
            logger.error(f"Failed to save alert for rule {rule.id} on {agent_id}: {e}")
            return None

        if self.notifier is not None:
            try:
                await self.notifier.notify(alert, rule)
            except Exception as e:
                logger.error(f"Failed to send notification for alert {alert.id}: {e}")

        return alert

    def forget_rule(self, rule_id: int) -> None:
        """Discard pending timers for a deleted or edited rule."""
        removed = self.state.clear_rule(rule_id)
        if removed:
            logger.debug(f"Cleared {removed} pending timer(s) for rule {rule_id}")

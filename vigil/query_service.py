import logging
import os
from datetime import datetime, timedelta
from typing import List, Optional

from downsampler import lttb_downsample
from liveness import LivenessEstimator
from models import AgentRecord, Sample
from utils import ensure_utc, utcnow

logger = logging.getLogger("vigil.query")

# Configuration
HISTORY_DEFAULT_WINDOW_SECONDS = int(os.getenv("HISTORY_DEFAULT_WINDOW_SECONDS", "300"))

# (max window, target points); anything longer gets MAX_BUCKETS
BUCKET_TARGETS = (
    (timedelta(minutes=5), 60),
    (timedelta(hours=1), 120),
    (timedelta(hours=6), 240),
    (timedelta(hours=24), 480),
)
MAX_BUCKETS = 500


def bucket_target(duration: timedelta) -> int:
    """Number of points to return for a history window of `duration`."""
    for limit, target in BUCKET_TARGETS:
        if duration <= limit:
            return target
    return MAX_BUCKETS


class QueryService:
    """Read side: downsampled agent history and the agent list with live status."""

    def __init__(self, store, liveness: LivenessEstimator = None,
                 default_window: timedelta = timedelta(seconds=HISTORY_DEFAULT_WINDOW_SECONDS)):
        self.store = store
        self.liveness = liveness or LivenessEstimator()
        self.default_window = default_window

    def get_history(self, agent_id: str, since: Optional[datetime] = None,
                    now: Optional[datetime] = None) -> List[Sample]:
        """
        Samples for `agent_id` since `since`, ascending by time.

        Results are downsampled with LTTB when the window holds more points
        than the window's bucket target. Unknown agents yield an empty list.
        """
        now = ensure_utc(now) if now is not None else utcnow()
        since = ensure_utc(since) if since is not None else now - self.default_window

        samples = self.store.get_samples(agent_id, since)
        samples.reverse()

        target = bucket_target(now - since)
        if len(samples) > target:
            logger.debug(f"Downsampling {len(samples)} samples to {target} for {agent_id}")
            samples = lttb_downsample(samples, target)
        return samples

    def list_agents(self, now: Optional[datetime] = None) -> List[AgentRecord]:
        """All agents with status computed from each agent's own reporting cadence."""
        now = ensure_utc(now) if now is not None else utcnow()

        agents = self.store.get_agents()
        history = self.store.get_samples_for_agents(
            [agent.agent_id for agent in agents],
            self.liveness.lookback_start(now),
        )

        return [
            agent.model_copy(update={
                "status": self.liveness.estimate(
                    history.get(agent.agent_id, []), now, last_seen=agent.last_seen
                )
            })
            for agent in agents
        ]

import os
from datetime import datetime, timedelta
from typing import Optional, Sequence

from models import AgentStatus, Sample
from utils import ensure_utc


# Configuration
LIVENESS_LOOKBACK_SECONDS = int(os.getenv("LIVENESS_LOOKBACK_SECONDS", "3600"))
LIVENESS_FALLBACK_SECONDS = int(os.getenv("LIVENESS_FALLBACK_SECONDS", "120"))
MISSED_REPORTS = 3


class LivenessEstimator:
    """
    Classifies an agent as online or offline from its own reporting cadence.

    An agent is offline once `missed_reports` expected reports have gone
    missing, where the expected interval is the mean positive gap between its
    recent samples. Agents with too little history fall back to a fixed
    staleness check against `fallback_interval`.
    """

    def __init__(self,
                 lookback: timedelta = timedelta(seconds=LIVENESS_LOOKBACK_SECONDS),
                 fallback_interval: timedelta = timedelta(seconds=LIVENESS_FALLBACK_SECONDS),
                 missed_reports: int = MISSED_REPORTS):
        self.lookback = lookback
        self.fallback_interval = fallback_interval
        self.missed_reports = missed_reports

    def lookback_start(self, now: datetime) -> datetime:
        """Start of the window callers should fetch samples from."""
        return ensure_utc(now) - self.lookback

    def average_interval(self, recent_desc: Sequence[Sample]) -> timedelta:
        """Mean positive gap between consecutive samples (newest first)."""
        total = timedelta(0)
        count = 0
        for newer, older in zip(recent_desc, recent_desc[1:]):
            gap = newer.timestamp - older.timestamp
            if gap > timedelta(0):
                total += gap
                count += 1

        if count == 0:
            return self.fallback_interval
        return total / count

    def estimate(self, recent_desc: Sequence[Sample], now: datetime,
                 last_seen: Optional[datetime] = None) -> AgentStatus:
        """
        Args:
            recent_desc: Samples within the lookback window, newest first
            now: Evaluation time
            last_seen: Agent's last_seen, used when the window holds < 2 samples
        """
        now = ensure_utc(now)

        if len(recent_desc) < 2:
            if last_seen is None and recent_desc:
                last_seen = recent_desc[0].timestamp
            if last_seen is None:
                return AgentStatus.OFFLINE
            if now - ensure_utc(last_seen) > self.fallback_interval:
                return AgentStatus.OFFLINE
            return AgentStatus.ONLINE

        latest = recent_desc[0].timestamp
        deadline = latest + self.missed_reports * self.average_interval(recent_desc)
        if now > deadline:
            return AgentStatus.OFFLINE
        return AgentStatus.ONLINE

import logging
from datetime import datetime
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from alert_engine import AlertEngine
from models import AgentRecord, Sample, SampleReport
from utils import ensure_utc, utcnow

logger = logging.getLogger("vigil.ingest")


def build_agent_record(report: SampleReport, sample: Sample, remote_host: str = "") -> AgentRecord:
    return AgentRecord(
        agent_id=sample.agent_id,
        display_name=report.display_name or sample.agent_id,
        host=report.hostname or remote_host,
        last_seen=sample.timestamp,
        platform=report.platform,
        version=report.version,
    )


class IngestService:
    """
    Write path for agent reports.

    The sample and its agent record are persisted together; a storage
    failure propagates as StorageError so the agent can retry. Alert
    evaluation runs afterwards and never fails the ingest.
    """

    def __init__(self, store, alert_engine: Optional[AlertEngine] = None):
        self.store = store
        self.alert_engine = alert_engine

    async def ingest(self, report: SampleReport, remote_host: str = "",
                     received_at: Optional[datetime] = None) -> Sample:
        received_at = ensure_utc(received_at) if received_at is not None else utcnow()
        sample = report.to_sample(received_at)
        agent = build_agent_record(report, sample, remote_host)

        await run_in_threadpool(self.store.append_sample, sample, agent)

        if self.alert_engine is not None:
            try:
                alerts = await self.alert_engine.evaluate(sample)
                if alerts:
                    logger.info(f"{len(alerts)} alert(s) fired for {sample.agent_id}")
            except Exception as e:
                logger.error(f"Alert evaluation failed for {sample.agent_id}: {e}")

        return sample

import logging
import os
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

import notification_manager as notify_config
from alert_engine import AlertEngine, AlertStateStore, Notifier
from db_factory import Database, StorageError, USE_POSTGRES, get_database
from ingest import IngestService
from liveness import LivenessEstimator
from models import (
    Alert,
    AgentRecord,
    AlertRule,
    AlertRuleCreate,
    AlertRuleUpdate,
    Sample,
    SampleReport,
)
from notification_manager import get_notification_manager
from query_service import QueryService
from retention_manager import RetentionManager, init_retention_manager
from utils import parse_since, utcnow

# Configuration
SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("SERVER_PORT", "8443"))
ALERTS_DEFAULT_LIMIT = int(os.getenv("ALERTS_DEFAULT_LIMIT", "100"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logger = logging.getLogger("vigil.api")

# Global services (initialized on startup, or injected by init_services)
db_manager: Optional[Database] = None
alert_engine: Optional[AlertEngine] = None
query_service: Optional[QueryService] = None
ingest_service: Optional[IngestService] = None
retention_manager: Optional[RetentionManager] = None


app = FastAPI(
    title="Vigil",
    description="Agent metrics ingestion, downsampled history and threshold alerting",
    version="1.0.0"
)

# CORS middleware for dashboard communication
# ALLOWED_ORIGINS can be a comma-separated list: "http://localhost:3000,https://example.com"
allowed_origins = os.environ.get("ALLOWED_ORIGINS", "*").split(",")
if allowed_origins == ["*"]:
    # Credentials cannot be combined with a wildcard origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in allowed_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def init_services(db: Optional[Database] = None, notifier: Optional[Notifier] = None,
                  liveness: Optional[LivenessEstimator] = None) -> None:
    """Wire storage, alert engine, query and ingest services together."""
    global db_manager, alert_engine, query_service, ingest_service

    db_manager = db if db is not None else get_database()
    if notifier is None:
        notifier = get_notification_manager()

    alert_engine = AlertEngine(db_manager, db_manager, notifier, AlertStateStore())
    query_service = QueryService(db_manager, liveness)
    ingest_service = IngestService(db_manager, alert_engine)


@app.on_event("startup")
async def startup_event():
    global retention_manager
    print("Starting Vigil server...")
    if db_manager is None:
        init_services()
    print(f"✓ {'PostgreSQL' if USE_POSTGRES else 'SQLite'} storage ready")
    retention_manager = init_retention_manager(db_manager)
    await retention_manager.start()
    print(f"Listening on {SERVER_HOST}:{SERVER_PORT}")


@app.on_event("shutdown")
async def shutdown_event():
    print("Stopping Vigil server...")
    if retention_manager is not None:
        await retention_manager.stop()
    if db_manager is not None and hasattr(db_manager, "close"):
        db_manager.close()
    print("✓ Shutdown complete")


# ==================== Metrics ====================

@app.post("/api/metrics/report")
async def report_metrics(report: SampleReport, request: Request):
    """Accept one sample from an agent."""
    remote_host = request.client.host if request.client else ""
    try:
        sample = await ingest_service.ingest(report, remote_host=remote_host)
    except StorageError as e:
        logger.error(f"Failed to store sample from {report.agent_id}: {e}")
        raise HTTPException(status_code=503, detail=f"Failed to store sample: {str(e)}")

    return {
        "status": "ok",
        "agent_id": sample.agent_id,
        "timestamp": sample.timestamp,
    }


@app.get("/api/metrics/{agent_id}", response_model=List[Sample])
def get_metrics_history(agent_id: str, since: Optional[str] = None):
    """Downsampled history for one agent, oldest first."""
    now = utcnow()
    try:
        start = parse_since(since, now, query_service.default_window)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail="Invalid 'since' format, expected 'YYYY-MM-DD HH:MM:SS' or ISO-8601 (percent-encode '+' offsets)",
        )

    try:
        return query_service.get_history(agent_id, since=start, now=now)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=f"Failed to fetch metrics: {str(e)}")


@app.get("/api/agents", response_model=List[AgentRecord])
def list_agents():
    try:
        return query_service.list_agents()
    except StorageError as e:
        raise HTTPException(status_code=500, detail=f"Failed to fetch agents: {str(e)}")


# ==================== Alert Rules ====================

@app.get("/api/alert-rules", response_model=List[AlertRule])
def list_alert_rules():
    try:
        return db_manager.get_alert_rules()
    except StorageError as e:
        raise HTTPException(status_code=500, detail=f"Failed to fetch alert rules: {str(e)}")


@app.post("/api/alert-rules", response_model=AlertRule)
def create_alert_rule(rule: AlertRuleCreate):
    try:
        return db_manager.create_alert_rule(rule)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=f"Failed to create alert rule: {str(e)}")


@app.get("/api/alert-rules/{rule_id}", response_model=AlertRule)
def get_alert_rule(rule_id: int):
    try:
        rule = db_manager.get_alert_rule(rule_id)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=f"Failed to fetch alert rule: {str(e)}")
    if rule is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return rule


@app.put("/api/alert-rules/{rule_id}", response_model=AlertRule)
def update_alert_rule(rule_id: int, updates: AlertRuleUpdate):
    try:
        rule = db_manager.update_alert_rule(rule_id, updates)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=f"Failed to update alert rule: {str(e)}")
    if rule is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")

    # The condition may have changed; pending timers start over
    alert_engine.forget_rule(rule_id)
    return rule


@app.delete("/api/alert-rules/{rule_id}")
def delete_alert_rule(rule_id: int):
    try:
        deleted = db_manager.delete_alert_rule(rule_id)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=f"Failed to delete alert rule: {str(e)}")
    if not deleted:
        raise HTTPException(status_code=404, detail="Alert rule not found")

    alert_engine.forget_rule(rule_id)
    return {"status": "ok", "deleted": rule_id}


# ==================== Alerts ====================

@app.get("/api/alerts", response_model=List[Alert])
def list_alerts(limit: int = Query(ALERTS_DEFAULT_LIMIT, ge=1, le=1000)):
    try:
        return db_manager.get_alerts(limit=limit)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=f"Failed to fetch alerts: {str(e)}")


@app.post("/api/alerts/{alert_id}/resolve")
def resolve_alert(alert_id: int):
    try:
        resolved = db_manager.resolve_alert(alert_id)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=f"Failed to resolve alert: {str(e)}")
    if not resolved:
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"status": "ok", "resolved": alert_id}


# ==================== Notifications ====================

class NotificationTestRequest(BaseModel):
    url: str = Field(..., min_length=1, description="Apprise URL to send a test message to")


@app.post("/api/notifications/test")
async def test_notification(request: NotificationTestRequest):
    success = await get_notification_manager().test_channel(request.url)
    return {"success": bool(success)}


# ==================== Server ====================

@app.get("/api/config")
def get_config():
    """Non-sensitive server settings."""
    return {
        "server_addr": f"{SERVER_HOST}:{SERVER_PORT}",
        "smtp_host": notify_config.SMTP_HOST,
        "smtp_port": notify_config.SMTP_PORT,
        "email_from": notify_config.EMAIL_FROM,
        "alert_email": notify_config.ALERT_EMAIL,
        "database": getattr(db_manager, "backend", "postgres" if USE_POSTGRES else "sqlite"),
        "metrics_retention_days": retention_manager.retention.days if retention_manager else None,
    }


@app.get("/api/health")
def health():
    return {"status": "ok", "time": utcnow()}


if __name__ == "__main__":
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT)

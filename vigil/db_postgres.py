"""
PostgreSQL Database Manager

Synchronous PostgreSQL storage using psycopg2 connection pooling. Provides the
same interface as the SQLite DatabaseManager; timestamps are stored as
TIMESTAMPTZ.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (see db_connection_pool)
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

import psycopg2

from db import StorageError
from db_connection_pool import ConnectionPool, get_pool, visible_dsn
from models import (
    Alert,
    AgentRecord,
    AlertRule,
    AlertRuleCreate,
    AlertRuleUpdate,
    Sample,
)
from utils import ensure_utc


SAMPLE_COLUMNS = (
    "agent_id, timestamp, cpu_percent, cpu_cores, memory_used, memory_total, "
    "disk_used, disk_total, network_rx, network_tx, load_avg_1, load_avg_5, load_avg_15"
)
RULE_COLUMNS = "id, agent_id, metric_type, threshold, operator, duration, enabled, description"
ALERT_COLUMNS = "id, rule_id, agent_id, timestamp, message, value, resolved"
AGENT_COLUMNS = "agent_id, display_name, host, last_seen, platform, version"

logger = logging.getLogger("vigil.db")


class PostgresDatabaseManager:
    """
    Synchronous PostgreSQL database manager.

    Uses thread-safe connection pooling via psycopg2.pool.ThreadedConnectionPool.
    Every psycopg2 error (including pool exhaustion) surfaces as StorageError.
    """

    backend = "postgres"

    def __init__(self, pool: ConnectionPool = None):
        self._pool = pool
        self._initialized = False

    @property
    def pool(self) -> ConnectionPool:
        """Get the connection pool, initializing if needed"""
        if self._pool is None:
            self._pool = get_pool()
        self._pool.initialize()
        return self._pool

    def initialize(self):
        """Initialize the connection pool and schema"""
        if self._initialized:
            return
        try:
            self._init_schema()
        except psycopg2.Error as e:
            raise StorageError(f"Cannot initialize PostgreSQL schema: {e}") from e
        self._initialized = True
        logger.info("PostgreSQL ready at %s", visible_dsn(self.pool.dsn))

    def close(self):
        """Close the connection pool"""
        if self._pool:
            self._pool.close()
            self._initialized = False

    def _fetchall(self, query: str, params=None) -> list:
        try:
            with self.pool.dict_cursor() as cur:
                cur.execute(query, params)
                return cur.fetchall()
        except psycopg2.Error as e:
            raise StorageError(str(e)) from e

    def _fetchone(self, query: str, params=None) -> Optional[dict]:
        try:
            with self.pool.dict_cursor() as cur:
                cur.execute(query, params)
                return cur.fetchone()
        except psycopg2.Error as e:
            raise StorageError(str(e)) from e

    def _execute(self, query: str, params=None) -> int:
        try:
            with self.pool.cursor() as cur:
                cur.execute(query, params)
                return cur.rowcount
        except psycopg2.Error as e:
            raise StorageError(str(e)) from e

    def _init_schema(self):
        """Initialize database schema"""
        with self.pool.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS agents (
                    agent_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL DEFAULT '',
                    host TEXT NOT NULL DEFAULT '',
                    last_seen TIMESTAMPTZ NOT NULL,
                    platform TEXT NOT NULL DEFAULT '',
                    version TEXT NOT NULL DEFAULT '',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id BIGSERIAL PRIMARY KEY,
                    agent_id TEXT NOT NULL REFERENCES agents(agent_id) ON DELETE CASCADE,
                    timestamp TIMESTAMPTZ NOT NULL,
                    cpu_percent DOUBLE PRECISION NOT NULL,
                    cpu_cores INTEGER NOT NULL DEFAULT 1,
                    memory_used BIGINT NOT NULL,
                    memory_total BIGINT NOT NULL,
                    disk_used BIGINT NOT NULL,
                    disk_total BIGINT NOT NULL,
                    network_rx BIGINT NOT NULL,
                    network_tx BIGINT NOT NULL,
                    load_avg_1 DOUBLE PRECISION NOT NULL,
                    load_avg_5 DOUBLE PRECISION NOT NULL,
                    load_avg_15 DOUBLE PRECISION NOT NULL
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_agent_timestamp
                ON metrics(agent_id, timestamp DESC)
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_timestamp
                ON metrics(timestamp)
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS alert_rules (
                    id SERIAL PRIMARY KEY,
                    agent_id TEXT NOT NULL DEFAULT '',
                    metric_type TEXT NOT NULL,
                    threshold DOUBLE PRECISION NOT NULL,
                    operator TEXT NOT NULL,
                    duration INTEGER NOT NULL DEFAULT 0,
                    enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    description TEXT NOT NULL DEFAULT '',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id BIGSERIAL PRIMARY KEY,
                    rule_id INTEGER NOT NULL,
                    agent_id TEXT NOT NULL,
                    timestamp TIMESTAMPTZ NOT NULL,
                    message TEXT NOT NULL,
                    value DOUBLE PRECISION NOT NULL,
                    resolved BOOLEAN NOT NULL DEFAULT FALSE
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_alerts_timestamp
                ON alerts(timestamp DESC)
            """)

    # ==================== Samples ====================

    def append_sample(self, sample: Sample, agent: AgentRecord) -> None:
        """Upsert the owning agent and append the sample in one transaction."""
        try:
            with self.pool.cursor() as cur:
                cur.execute("""
                    INSERT INTO agents (agent_id, display_name, host, last_seen, platform, version)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (agent_id) DO UPDATE SET
                        display_name = EXCLUDED.display_name,
                        host = EXCLUDED.host,
                        last_seen = GREATEST(agents.last_seen, EXCLUDED.last_seen),
                        platform = COALESCE(NULLIF(EXCLUDED.platform, ''), agents.platform),
                        version = COALESCE(NULLIF(EXCLUDED.version, ''), agents.version),
                        updated_at = NOW()
                """, (
                    agent.agent_id,
                    agent.display_name,
                    agent.host,
                    agent.last_seen,
                    agent.platform,
                    agent.version,
                ))

                cur.execute(f"""
                    INSERT INTO metrics ({SAMPLE_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """, (
                    sample.agent_id,
                    sample.timestamp,
                    sample.cpu_percent,
                    sample.cpu_cores,
                    sample.memory_used,
                    sample.memory_total,
                    sample.disk_used,
                    sample.disk_total,
                    sample.network_rx,
                    sample.network_tx,
                    sample.load_avg_1,
                    sample.load_avg_5,
                    sample.load_avg_15,
                ))
        except psycopg2.Error as e:
            raise StorageError(str(e)) from e

    def get_samples(self, agent_id: str, since: datetime, until: datetime = None,
                    limit: int = None) -> List[Sample]:
        """Samples for one agent with timestamp >= since (and <= until), newest first."""
        query = f"SELECT {SAMPLE_COLUMNS} FROM metrics WHERE agent_id = %s AND timestamp >= %s"
        params = [agent_id, ensure_utc(since)]

        if until is not None:
            query += " AND timestamp <= %s"
            params.append(ensure_utc(until))

        query += " ORDER BY timestamp DESC, id DESC"
        if limit:
            query += " LIMIT %s"
            params.append(limit)

        return [Sample(**row) for row in self._fetchall(query, params)]

    def get_samples_for_agents(self, agent_ids: List[str], since: datetime,
                               until: datetime = None) -> Dict[str, List[Sample]]:
        """Batched range read: {agent_id: samples newest first} for every requested agent."""
        result: Dict[str, List[Sample]] = {agent_id: [] for agent_id in agent_ids}
        if not agent_ids:
            return result

        query = f"""
            SELECT {SAMPLE_COLUMNS} FROM metrics
            WHERE agent_id = ANY(%s) AND timestamp >= %s
        """
        params = [list(result), ensure_utc(since)]
        if until is not None:
            query += " AND timestamp <= %s"
            params.append(ensure_utc(until))
        query += " ORDER BY agent_id, timestamp DESC, id DESC"

        for row in self._fetchall(query, params):
            result[row["agent_id"]].append(Sample(**row))
        return result

    def delete_samples_before(self, cutoff: datetime) -> int:
        """Delete samples with timestamp < cutoff. Returns the number of rows removed."""
        return self._execute(
            "DELETE FROM metrics WHERE timestamp < %s", (ensure_utc(cutoff),)
        )

    # ==================== Agents ====================

    def get_agents(self) -> List[AgentRecord]:
        rows = self._fetchall(f"""
            SELECT {AGENT_COLUMNS} FROM agents
            ORDER BY display_name, agent_id
        """)
        return [AgentRecord(**row) for row in rows]

    def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        row = self._fetchone(
            f"SELECT {AGENT_COLUMNS} FROM agents WHERE agent_id = %s", (agent_id,)
        )
        return AgentRecord(**row) if row else None

    # ==================== Alert Rules ====================

    def get_alert_rules(self) -> List[AlertRule]:
        rows = self._fetchall(f"SELECT {RULE_COLUMNS} FROM alert_rules ORDER BY id")
        return [AlertRule(**row) for row in rows]

    def get_alert_rule(self, rule_id: int) -> Optional[AlertRule]:
        row = self._fetchone(
            f"SELECT {RULE_COLUMNS} FROM alert_rules WHERE id = %s", (rule_id,)
        )
        return AlertRule(**row) if row else None

    def create_alert_rule(self, rule: AlertRuleCreate) -> AlertRule:
        row = self._fetchone("""
            INSERT INTO alert_rules
            (agent_id, metric_type, threshold, operator, duration, enabled, description)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id
        """, (
            rule.agent_id,
            rule.metric_type.value,
            rule.threshold,
            rule.operator.value,
            rule.duration,
            rule.enabled,
            rule.description,
        ))
        return AlertRule(id=row["id"], **rule.model_dump())

    def update_alert_rule(self, rule_id: int, updates: AlertRuleUpdate) -> Optional[AlertRule]:
        changes = updates.model_dump(exclude_unset=True, exclude_none=True)

        set_parts = []
        values = []
        for field, value in changes.items():
            if field in ("metric_type", "operator"):
                value = value.value
            set_parts.append(f"{field} = %s")
            values.append(value)

        set_parts.append("updated_at = NOW()")
        values.append(rule_id)

        row = self._fetchone(f"""
            UPDATE alert_rules
            SET {', '.join(set_parts)}
            WHERE id = %s
            RETURNING {RULE_COLUMNS}
        """, values)
        return AlertRule(**row) if row else None

    def delete_alert_rule(self, rule_id: int) -> bool:
        return self._execute("DELETE FROM alert_rules WHERE id = %s", (rule_id,)) > 0

    # ==================== Alerts ====================

    def save_alert(self, alert: Alert) -> Alert:
        row = self._fetchone("""
            INSERT INTO alerts (rule_id, agent_id, timestamp, message, value, resolved)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id
        """, (
            alert.rule_id,
            alert.agent_id,
            alert.timestamp,
            alert.message,
            alert.value,
            alert.resolved,
        ))
        return alert.model_copy(update={"id": row["id"]})

    def get_alerts(self, limit: int = 100) -> List[Alert]:
        rows = self._fetchall(f"""
            SELECT {ALERT_COLUMNS} FROM alerts
            ORDER BY timestamp DESC, id DESC
            LIMIT %s
        """, (limit,))
        return [Alert(**row) for row in rows]

    def resolve_alert(self, alert_id: int) -> bool:
        return self._execute(
            "UPDATE alerts SET resolved = TRUE WHERE id = %s", (alert_id,)
        ) > 0

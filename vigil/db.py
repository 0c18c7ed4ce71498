import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from models import (
    Alert,
    AgentRecord,
    AlertRule,
    AlertRuleCreate,
    AlertRuleUpdate,
    Sample,
)
from utils import ensure_utc, utcnow


# Configuration
SQLITE_DB_PATH = os.getenv("SQLITE_DB_PATH", "./vigil.db")
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "10"))

# SQLite caps the number of bound parameters per statement
IN_CLAUSE_CHUNK = 500

SAMPLE_COLUMNS = (
    "agent_id, timestamp, cpu_percent, cpu_cores, memory_used, memory_total, "
    "disk_used, disk_total, network_rx, network_tx, load_avg_1, load_avg_5, load_avg_15"
)

logger = logging.getLogger("vigil.db")


class StorageError(Exception):
    """Raised when the backing store cannot complete an operation."""


def _to_db_time(value: datetime) -> str:
    # Fixed width so lexical order in SQLite matches time order
    return ensure_utc(value).isoformat(sep=" ", timespec="microseconds")


def _from_db_time(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


def _row_to_sample(row) -> Sample:
    return Sample(
        agent_id=row["agent_id"],
        timestamp=_from_db_time(row["timestamp"]),
        cpu_percent=row["cpu_percent"],
        cpu_cores=row["cpu_cores"],
        memory_used=row["memory_used"],
        memory_total=row["memory_total"],
        disk_used=row["disk_used"],
        disk_total=row["disk_total"],
        network_rx=row["network_rx"],
        network_tx=row["network_tx"],
        load_avg_1=row["load_avg_1"],
        load_avg_5=row["load_avg_5"],
        load_avg_15=row["load_avg_15"],
    )


def _row_to_agent(row) -> AgentRecord:
    return AgentRecord(
        agent_id=row["agent_id"],
        display_name=row["display_name"],
        host=row["host"],
        last_seen=_from_db_time(row["last_seen"]),
        platform=row["platform"],
        version=row["version"],
    )


def _row_to_rule(row) -> AlertRule:
    return AlertRule(
        id=row["id"],
        agent_id=row["agent_id"],
        metric_type=row["metric_type"],
        threshold=row["threshold"],
        operator=row["operator"],
        duration=row["duration"],
        enabled=bool(row["enabled"]),
        description=row["description"],
    )


def _row_to_alert(row) -> Alert:
    return Alert(
        id=row["id"],
        rule_id=row["rule_id"],
        agent_id=row["agent_id"],
        timestamp=_from_db_time(row["timestamp"]),
        message=row["message"],
        value=row["value"],
        resolved=bool(row["resolved"]),
    )


def _chunks(items: List[str], size: int) -> Iterable[List[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class DatabaseManager:
    """
    SQLite storage for samples, agents, alert rules and alerts.

    Opens one connection per operation; writes that belong together run in a
    single transaction. Every sqlite3 error surfaces as StorageError.
    """

    backend = "sqlite"

    def __init__(self, db_path: str = None, timeout: float = DB_TIMEOUT_SECONDS):
        self.db_path = db_path or SQLITE_DB_PATH
        self.timeout = timeout
        self._init_sqlite_db()

    @contextmanager
    def _connection(self):
        """Yield a connection; commit on success, roll back and wrap errors on failure."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_sqlite_db(self):
        """Initialize SQLite database schema"""
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS agents (
                    agent_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL DEFAULT '',
                    host TEXT NOT NULL DEFAULT '',
                    last_seen TEXT NOT NULL,
                    platform TEXT NOT NULL DEFAULT '',
                    version TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    cpu_percent REAL NOT NULL,
                    cpu_cores INTEGER NOT NULL DEFAULT 1,
                    memory_used INTEGER NOT NULL,
                    memory_total INTEGER NOT NULL,
                    disk_used INTEGER NOT NULL,
                    disk_total INTEGER NOT NULL,
                    network_rx INTEGER NOT NULL,
                    network_tx INTEGER NOT NULL,
                    load_avg_1 REAL NOT NULL,
                    load_avg_5 REAL NOT NULL,
                    load_avg_15 REAL NOT NULL,
                    FOREIGN KEY (agent_id) REFERENCES agents(agent_id) ON DELETE CASCADE
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_agent_timestamp
                ON metrics(agent_id, timestamp)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_timestamp
                ON metrics(timestamp)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS alert_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent_id TEXT NOT NULL DEFAULT '',
                    metric_type TEXT NOT NULL,
                    threshold REAL NOT NULL,
                    operator TEXT NOT NULL,
                    duration INTEGER NOT NULL DEFAULT 0,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    description TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    rule_id INTEGER NOT NULL,
                    agent_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    message TEXT NOT NULL,
                    value REAL NOT NULL,
                    resolved INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_alerts_timestamp
                ON alerts(timestamp)
            """)

        logger.info("SQLite database ready at %s", self.db_path)

    # ==================== Samples ====================

    def append_sample(self, sample: Sample, agent: AgentRecord) -> None:
        """Upsert the owning agent and append the sample in one transaction."""
        now = _to_db_time(utcnow())
        with self._connection() as conn:
            conn.execute("""
                INSERT INTO agents (agent_id, display_name, host, last_seen, platform, version,
                                    created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(agent_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    host = excluded.host,
                    last_seen = MAX(agents.last_seen, excluded.last_seen),
                    platform = CASE WHEN excluded.platform != '' THEN excluded.platform ELSE agents.platform END,
                    version = CASE WHEN excluded.version != '' THEN excluded.version ELSE agents.version END,
                    updated_at = excluded.updated_at
            """, (
                agent.agent_id,
                agent.display_name,
                agent.host,
                _to_db_time(agent.last_seen),
                agent.platform,
                agent.version,
                now,
                now,
            ))

            conn.execute(f"""
                INSERT INTO metrics ({SAMPLE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                sample.agent_id,
                _to_db_time(sample.timestamp),
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

    def get_samples(self, agent_id: str, since: datetime, until: datetime = None,
                    limit: int = None) -> List[Sample]:
        """Samples for one agent with timestamp >= since (and <= until), newest first."""
        query = f"SELECT {SAMPLE_COLUMNS} FROM metrics WHERE agent_id = ? AND timestamp >= ?"
        params = [agent_id, _to_db_time(since)]

        if until is not None:
            query += " AND timestamp <= ?"
            params.append(_to_db_time(until))

        query += " ORDER BY timestamp DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_sample(row) for row in rows]

    def get_samples_for_agents(self, agent_ids: List[str], since: datetime,
                               until: datetime = None) -> Dict[str, List[Sample]]:
        """Batched range read: {agent_id: samples newest first} for every requested agent."""
        result: Dict[str, List[Sample]] = {agent_id: [] for agent_id in agent_ids}
        if not agent_ids:
            return result

        with self._connection() as conn:
            for chunk in _chunks(list(result), IN_CLAUSE_CHUNK):
                placeholders = ", ".join("?" for _ in chunk)
                query = f"""
                    SELECT {SAMPLE_COLUMNS} FROM metrics
                    WHERE agent_id IN ({placeholders}) AND timestamp >= ?
                """
                params = [*chunk, _to_db_time(since)]
                if until is not None:
                    query += " AND timestamp <= ?"
                    params.append(_to_db_time(until))
                query += " ORDER BY agent_id, timestamp DESC, id DESC"

                for row in conn.execute(query, params):
                    result[row["agent_id"]].append(_row_to_sample(row))

        return result

    def delete_samples_before(self, cutoff: datetime) -> int:
        """Delete samples with timestamp < cutoff. Returns the number of rows removed."""
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM metrics WHERE timestamp < ?", (_to_db_time(cutoff),)
            )
            return cursor.rowcount

    # ==================== Agents ====================

    def get_agents(self) -> List[AgentRecord]:
        with self._connection() as conn:
            rows = conn.execute("""
                SELECT agent_id, display_name, host, last_seen, platform, version
                FROM agents
                ORDER BY display_name, agent_id
            """).fetchall()
        return [_row_to_agent(row) for row in rows]

    def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        with self._connection() as conn:
            row = conn.execute("""
                SELECT agent_id, display_name, host, last_seen, platform, version
                FROM agents WHERE agent_id = ?
            """, (agent_id,)).fetchone()
        return _row_to_agent(row) if row else None

    # ==================== Alert Rules ====================

    def get_alert_rules(self) -> List[AlertRule]:
        """All alert rules ordered by id."""
        with self._connection() as conn:
            rows = conn.execute("""
                SELECT id, agent_id, metric_type, threshold, operator, duration, enabled, description
                FROM alert_rules
                ORDER BY id
            """).fetchall()
        return [_row_to_rule(row) for row in rows]

    def get_alert_rule(self, rule_id: int) -> Optional[AlertRule]:
        with self._connection() as conn:
            row = conn.execute("""
                SELECT id, agent_id, metric_type, threshold, operator, duration, enabled, description
                FROM alert_rules WHERE id = ?
            """, (rule_id,)).fetchone()
        return _row_to_rule(row) if row else None

    def create_alert_rule(self, rule: AlertRuleCreate) -> AlertRule:
        now = _to_db_time(utcnow())
        with self._connection() as conn:
            cursor = conn.execute("""
                INSERT INTO alert_rules
                (agent_id, metric_type, threshold, operator, duration, enabled, description,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                rule.agent_id,
                rule.metric_type.value,
                rule.threshold,
                rule.operator.value,
                rule.duration,
                1 if rule.enabled else 0,
                rule.description,
                now,
                now,
            ))
            rule_id = cursor.lastrowid

        return AlertRule(id=rule_id, **rule.model_dump())

    def update_alert_rule(self, rule_id: int, updates: AlertRuleUpdate) -> Optional[AlertRule]:
        """Apply the fields set on `updates`. Returns None when the rule does not exist."""
        changes = updates.model_dump(exclude_unset=True, exclude_none=True)

        set_parts = []
        values = []
        for field, value in changes.items():
            if field in ("metric_type", "operator"):
                value = value.value
            elif field == "enabled":
                value = 1 if value else 0
            set_parts.append(f"{field} = ?")
            values.append(value)

        set_parts.append("updated_at = ?")
        values.append(_to_db_time(utcnow()))
        values.append(rule_id)

        with self._connection() as conn:
            cursor = conn.execute(f"""
                UPDATE alert_rules
                SET {', '.join(set_parts)}
                WHERE id = ?
            """, values)
            if cursor.rowcount == 0:
                return None

        return self.get_alert_rule(rule_id)

    def delete_alert_rule(self, rule_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM alert_rules WHERE id = ?", (rule_id,))
            return cursor.rowcount > 0

    # ==================== Alerts ====================

    def save_alert(self, alert: Alert) -> Alert:
        with self._connection() as conn:
            cursor = conn.execute("""
                INSERT INTO alerts (rule_id, agent_id, timestamp, message, value, resolved)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                alert.rule_id,
                alert.agent_id,
                _to_db_time(alert.timestamp),
                alert.message,
                alert.value,
                1 if alert.resolved else 0,
            ))
            alert_id = cursor.lastrowid

        return alert.model_copy(update={"id": alert_id})

    def get_alerts(self, limit: int = 100) -> List[Alert]:
        """Most recent alerts, newest first."""
        with self._connection() as conn:
            rows = conn.execute("""
                SELECT id, rule_id, agent_id, timestamp, message, value, resolved
                FROM alerts
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (limit,)).fetchall()
        return [_row_to_alert(row) for row in rows]

    def resolve_alert(self, alert_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE alerts SET resolved = 1 WHERE id = ?", (alert_id,)
            )
            return cursor.rowcount > 0

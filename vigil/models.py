import operator as _operator
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from utils import ensure_utc


# ==================== ENUMS ====================

class AgentStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class MetricType(str, Enum):
    """Metric an alert rule watches. Each variant owns its value accessor and unit."""
    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    LOAD = "load"

    def value_of(self, sample: "SampleFields") -> float:
        """Observed value of this metric in a sample."""
        return METRIC_ACCESSORS[self](sample)

    @property
    def accessor(self) -> Callable[["SampleFields"], float]:
        return METRIC_ACCESSORS[self]

    @property
    def unit(self) -> str:
        return METRIC_UNITS[self]


class Operator(str, Enum):
    """Threshold comparison. Exact arithmetic, no epsilon."""
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"

    def compare(self, value: float, threshold: float) -> bool:
        return OPERATOR_FUNCS[self](value, threshold)


def _percent(used: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return used * 100 / total


METRIC_ACCESSORS: Dict[MetricType, Callable[["SampleFields"], float]] = {
    MetricType.CPU: lambda s: s.cpu_percent,
    MetricType.MEMORY: lambda s: _percent(s.memory_used, s.memory_total),
    MetricType.DISK: lambda s: _percent(s.disk_used, s.disk_total),
    MetricType.LOAD: lambda s: s.load_avg_1,
}

METRIC_UNITS: Dict[MetricType, str] = {
    MetricType.CPU: "%",
    MetricType.MEMORY: "%",
    MetricType.DISK: "%",
    MetricType.LOAD: "",
}

OPERATOR_FUNCS: Dict[Operator, Callable[[float, float], bool]] = {
    Operator.GT: _operator.gt,
    Operator.LT: _operator.lt,
    Operator.GTE: _operator.ge,
    Operator.LTE: _operator.le,
}


# ==================== SAMPLES ====================

class SampleFields(BaseModel):
    agent_id: str = Field(..., min_length=1, description="Reporting agent identifier")
    cpu_percent: float = Field(..., ge=0, le=100, description="CPU usage percentage")
    cpu_cores: int = Field(default=1, ge=1, description="Logical CPU count")
    memory_used: int = Field(default=0, ge=0, description="Used memory in bytes")
    memory_total: int = Field(default=0, ge=0, description="Total memory in bytes")
    disk_used: int = Field(default=0, ge=0, description="Used disk space in bytes")
    disk_total: int = Field(default=0, ge=0, description="Total disk space in bytes")
    network_rx: int = Field(default=0, ge=0, description="Bytes received since the previous sample")
    network_tx: int = Field(default=0, ge=0, description="Bytes sent since the previous sample")
    load_avg_1: float = Field(default=0.0, ge=0, description="1-minute load average")
    load_avg_5: float = Field(default=0.0, ge=0, description="5-minute load average")
    load_avg_15: float = Field(default=0.0, ge=0, description="15-minute load average")

    @model_validator(mode="after")
    def check_used_within_total(self):
        if self.memory_used > self.memory_total:
            raise ValueError("memory_used cannot be greater than memory_total")
        if self.disk_used > self.disk_total:
            raise ValueError("disk_used cannot be greater than disk_total")
        return self


class Sample(SampleFields):
    """One stored measurement. Immutable; ordered by (agent_id, timestamp)."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="Sample time (UTC)")

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class SampleReport(SampleFields):
    """Ingest body. The server assigns the timestamp when the agent omits it."""
    model_config = ConfigDict(json_schema_extra={
        "example": {
            "agent_id": "web-01",
            "timestamp": "2025-12-25T10:00:00Z",
            "cpu_percent": 45.2,
            "memory_used": 4294967296,
            "memory_total": 8589934592,
            "disk_used": 107374182400,
            "disk_total": 536870912000,
            "network_rx": 10240,
            "network_tx": 2048,
            "load_avg_1": 0.42,
            "load_avg_5": 0.35,
            "load_avg_15": 0.30,
            "hostname": "web-01.internal",
            "platform": "linux",
        }
    })

    timestamp: Optional[datetime] = Field(default=None, description="Agent-assigned sample time")
    display_name: Optional[str] = Field(default=None, description="Human readable agent name")
    hostname: Optional[str] = Field(default=None, description="Agent hostname")
    platform: str = Field(default="", description="Agent operating system")
    version: str = Field(default="", description="Agent software version")

    def to_sample(self, received_at: datetime) -> Sample:
        data = self.model_dump(include=set(SampleFields.model_fields))
        return Sample(timestamp=self.timestamp or received_at, **data)


# ==================== AGENTS ====================

class AgentRecord(BaseModel):
    agent_id: str = Field(..., description="Unique agent identifier")
    display_name: str = Field(default="", description="Human readable name")
    host: str = Field(default="", description="Hostname or reporting address")
    last_seen: datetime = Field(..., description="Timestamp of the latest accepted sample")
    status: Optional[AgentStatus] = Field(default=None, description="Computed at query time, never stored")
    platform: str = Field(default="", description="Agent operating system")
    version: str = Field(default="", description="Agent software version")

    @field_validator("last_seen")
    @classmethod
    def normalize_last_seen(cls, v: datetime) -> datetime:
        return ensure_utc(v)


# ==================== ALERT RULES ====================

class AlertRuleCreate(BaseModel):
    agent_id: str = Field(default="", description="Target agent, empty for all agents")
    metric_type: MetricType = Field(..., description="cpu, memory, disk or load")
    threshold: float = Field(..., description="Threshold compared against the metric value")
    operator: Operator = Field(..., description="gt, lt, gte or lte")
    duration: int = Field(default=0, ge=0, description="Seconds the breach must persist before firing")
    enabled: bool = Field(default=True)
    description: str = Field(default="")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "agent_id": "",
            "metric_type": "cpu",
            "threshold": 90,
            "operator": "gt",
            "duration": 30,
            "enabled": True,
            "description": "CPU above 90% for 30s",
        }
    })


class AlertRuleUpdate(BaseModel):
    agent_id: Optional[str] = None
    metric_type: Optional[MetricType] = None
    threshold: Optional[float] = None
    operator: Optional[Operator] = None
    duration: Optional[int] = Field(default=None, ge=0)
    enabled: Optional[bool] = None
    description: Optional[str] = None


class AlertRule(AlertRuleCreate):
    id: int = Field(..., description="Rule identifier")

    def applies_to(self, agent_id: str) -> bool:
        return self.enabled and (self.agent_id == "" or self.agent_id == agent_id)


# ==================== ALERTS ====================

class Alert(BaseModel):
    id: Optional[int] = Field(default=None, description="Assigned when persisted")
    rule_id: int
    agent_id: str
    timestamp: datetime
    message: str
    value: float
    resolved: bool = False

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

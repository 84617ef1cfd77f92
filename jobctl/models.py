from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    return value


class Record:
    """Mixin for dataclasses persisted as JSON documents in the keyed store."""

    _datetime_fields: tuple = ()
    _enum_fields: Dict[str, type] = {}

    def to_record(self) -> Dict[str, Any]:
        return {f.name: _to_plain(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_record(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name in cls._datetime_fields:
            if name in values:
                values[name] = parse_datetime(values[name])
        for name, enum_type in cls._enum_fields.items():
            if values.get(name) is not None:
                values[name] = enum_type(values[name])
        return cls(**values)


class JobPriority(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    JobPriority.CRITICAL: 0,
    JobPriority.HIGH: 1,
    JobPriority.NORMAL: 2,
    JobPriority.LOW: 3,
}


class QueuedJobStatus(Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (QueuedJobStatus.COMPLETED, QueuedJobStatus.FAILED, QueuedJobStatus.CANCELLED)


class QueueMode(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DRAINING = "draining"


class RetryBackoff(Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class ExecutionStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING

    @property
    def is_failure(self) -> bool:
        return self in (ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT)


class AlertSeverity(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AlertChannel(Enum):
    SLACK = "slack"
    EMAIL = "email"
    DISCORD = "discord"


@dataclass
class QueuedJob(Record):
    id: str
    job_id: str
    job_name: str
    status: QueuedJobStatus
    priority: JobPriority
    enqueued_at: datetime
    attempt: int = 0
    max_attempts: int = 3
    retry_delay_ms: int = 5000
    retry_backoff: RetryBackoff = RetryBackoff.EXPONENTIAL
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    depends_on: List[str] = field(default_factory=list)
    dependency_status: Dict[str, str] = field(default_factory=dict)
    concurrency_key: Optional[str] = None
    org_id: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    execution_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    _datetime_fields = ('enqueued_at', 'scheduled_for', 'started_at', 'completed_at',
                        'last_attempt_at', 'updated_at')
    _enum_fields = {
        'status': QueuedJobStatus,
        'priority': JobPriority,
        'retry_backoff': RetryBackoff,
    }


@dataclass
class DeadLetterJob(Record):
    id: str
    original_job_id: str
    job_id: str
    job_name: str
    failure_reason: str
    attempts: int
    moved_to_dlq_at: datetime
    first_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    error: Optional[str] = None
    can_retry: bool = True
    retry_count: int = 0
    priority: JobPriority = JobPriority.NORMAL
    max_attempts: int = 3
    concurrency_key: Optional[str] = None
    org_id: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    _datetime_fields = ('moved_to_dlq_at', 'first_attempt_at', 'last_attempt_at')
    _enum_fields = {'priority': JobPriority}


@dataclass
class JobExecution(Record):
    id: str
    job_id: str
    job_name: str
    status: ExecutionStatus
    started_at: datetime
    org_id: Optional[str] = None
    finished_at: Optional[datetime] = None
    duration: Optional[int] = None
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    _datetime_fields = ('started_at', 'finished_at')
    _enum_fields = {'status': ExecutionStatus}


@dataclass
class JobExecutionStats:
    job_id: str
    total_runs: int = 0
    success_count: int = 0
    failure_count: int = 0
    timeout_count: int = 0
    average_duration: float = 0.0
    last_run: Optional[JobExecution] = None
    last_success: Optional[JobExecution] = None
    last_failure: Optional[JobExecution] = None

    @property
    def success_rate(self) -> Optional[float]:
        if self.total_runs == 0:
            return None
        return self.success_count / self.total_runs


@dataclass
class QueueStats:
    mode: QueueMode
    total_jobs: int
    status_counts: Dict[str, int]
    priority_counts: Dict[str, int]
    dead_letter_jobs: int
    running_jobs: int
    max_concurrency: int
    average_wait_time: Optional[float] = None
    average_execution_time: Optional[float] = None
    success_rate: Optional[float] = None
    last_updated: Optional[datetime] = None

    @property
    def utilization(self) -> float:
        if self.max_concurrency <= 0:
            return 0.0
        return self.running_jobs / self.max_concurrency

    def count(self, status: QueuedJobStatus) -> int:
        return self.status_counts.get(status.value, 0)


@dataclass
class AlertEvent(Record):
    id: str
    alert_name: str
    severity: AlertSeverity
    title: str
    message: str
    channels: List[AlertChannel]
    triggered_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    job_id: Optional[str] = None
    queued_job_id: Optional[str] = None

    _datetime_fields = ('triggered_at',)
    _enum_fields = {'severity': AlertSeverity}

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> 'AlertEvent':
        event = super().from_record(data)
        event.channels = [AlertChannel(c) for c in event.channels]
        return event


@dataclass
class AlertThrottle(Record):
    alert_key: str
    last_sent_at: datetime
    count: int
    window_start: datetime

    _datetime_fields = ('last_sent_at', 'window_start')


@dataclass
class Config:
    db_path: str = ".data/jobctl.db"
    max_concurrency: int = 5
    default_max_attempts: int = 3
    retry_delay_ms: int = 5000
    retry_backoff: str = "exponential"
    poll_interval_ms: int = 500
    log_dir: Optional[str] = None
    log_level: str = "INFO"
    alerts_config_path: str = "alerts.yaml"
    health_check_interval_seconds: int = 60
    retention_days: int = 30
    cleanup_interval_seconds: int = 86400
    retry_interval_seconds: int = 3600
    retry_max_retries: int = 3
    retry_lookback_hours: int = 24
    retry_exclude_jobs: List[str] = field(default_factory=lambda: ["maintenance.cleanup", "maintenance.retry"])
    jobs_module: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    discord_webhook_url: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 25
    smtp_from: Optional[str] = None

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .alert_config import AlertConfig, load_alert_config
from .alerts import AlertManager
from .builtin_jobs import builtin_jobs
from .config import DEFAULT_DB_PATH, ConfigManager
from .db import Database
from .dlq import DeadLetterStore
from .events import EventBus
from .executions import ExecutionTracker
from .models import Config, utcnow
from .notifiers import Notifiers
from .queue import QueueManager
from .registry import JobRegistry, load_jobs_module
from .retry import RetryCoordinator
from .runner import TrackedRunner


@dataclass
class Application:
    """Everything one process needs, built once by ``create_app``."""

    db: Database
    config_manager: ConfigManager
    config: Config
    registry: JobRegistry
    events: EventBus
    tracker: ExecutionTracker
    runner: TrackedRunner
    queue: QueueManager
    dead_letters: DeadLetterStore
    alerts: AlertManager
    retry: RetryCoordinator
    clock: Callable[[], datetime] = utcnow

    def close(self):
        self.alerts.stop()


def create_app(db_path: str = DEFAULT_DB_PATH, registry: Optional[JobRegistry] = None,
               config: Optional[Config] = None, alert_config: Optional[AlertConfig] = None,
               notifiers: Optional[Notifiers] = None, clock: Callable[[], datetime] = utcnow,
               sleep: Callable[[float], None] = time.sleep) -> Application:
    database = Database(db_path)
    config_manager = ConfigManager(database)
    if config is None:
        config = config_manager.get_config()
    if registry is None:
        registry = JobRegistry()

    events = EventBus()
    tracker = ExecutionTracker(database, clock)
    runner = TrackedRunner(registry, tracker, events, clock, log_dir=config.log_dir)
    queue = QueueManager(
        database, registry, runner, events, clock,
        max_concurrency=config.max_concurrency,
        default_max_attempts=config.default_max_attempts,
        default_retry_delay_ms=config.retry_delay_ms,
        default_retry_backoff=config.retry_backoff,
    )
    retry = RetryCoordinator(
        tracker, runner, events, clock,
        max_retries=config.retry_max_retries,
        lookback_hours=config.retry_lookback_hours,
        exclude_jobs=config.retry_exclude_jobs,
        sleep=sleep,
    )

    for job in builtin_jobs(tracker, retry, config.retention_days):
        if job.id not in registry:
            registry.register(job)
    if config.jobs_module:
        load_jobs_module(registry, config.jobs_module)

    if alert_config is None:
        alert_config = load_alert_config(config.alerts_config_path)
    alerts = AlertManager(
        alert_config, database, tracker, queue,
        notifiers or Notifiers.from_config(config), clock
    )
    tracker.add_completion_hook(alerts.on_execution_complete)
    events.subscribe('queue.dead-letter', alerts.on_dead_letter)

    return Application(
        db=database,
        config_manager=config_manager,
        config=config,
        registry=registry,
        events=events,
        tracker=tracker,
        runner=runner,
        queue=queue,
        dead_letters=queue.dead_letters,
        alerts=alerts,
        retry=retry,
        clock=clock,
    )

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from .events import EventBus
from .executions import ExecutionTracker
from .logging_utils import get_logger
from .models import ExecutionStatus, utcnow
from .runner import TrackedRunner


DEFAULT_EXCLUDE_JOBS = ('maintenance.cleanup', 'maintenance.retry')

# failures of one job counted against max_retries
RECENT_FAILURE_WINDOW = timedelta(hours=1)


@dataclass
class RetrySummary:
    retried: int = 0
    skipped: int = 0
    total_failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            'retriedCount': self.retried,
            'skippedCount': self.skipped,
            'totalFailed': self.total_failed,
        }


class RetryCoordinator:
    """Periodic sweep that re-runs recently failed executions.

    Every failed execution in the lookback window is run again through the
    tracked runner, whether it came from the queue, the CLI or another
    caller. That includes queued jobs the queue is already retrying with
    backoff. A job is skipped once its failures in the last hour reach
    ``max_retries``.
    """

    def __init__(self, tracker: ExecutionTracker, runner: TrackedRunner, events: EventBus,
                 clock: Callable[[], datetime] = utcnow, max_retries: int = 3,
                 lookback_hours: int = 24, exclude_jobs: Iterable[str] = DEFAULT_EXCLUDE_JOBS,
                 delay_seconds: float = 1.0, sleep: Callable[[float], None] = time.sleep):
        self.tracker = tracker
        self.runner = runner
        self.events = events
        self.clock = clock
        self.max_retries = max_retries
        self.lookback_hours = lookback_hours
        self.exclude_jobs = list(exclude_jobs)
        self.delay_seconds = delay_seconds
        self.sleep = sleep
        self.logger = get_logger('retry')

    def sweep(self) -> RetrySummary:
        now = self.clock()
        cutoff = now - timedelta(hours=self.lookback_hours)
        recent_cutoff = now - RECENT_FAILURE_WINDOW

        failed = self.tracker.list_executions(status=ExecutionStatus.FAILED)
        candidates = [e for e in failed if e.started_at >= cutoff]

        self.logger.info(
            f"Found {len(candidates)} failed execution(s) in last {self.lookback_hours}h "
            f"(max {self.max_retries} retries)"
        )

        summary = RetrySummary(total_failed=len(candidates))
        for execution in candidates:
            if execution.job_id in self.exclude_jobs:
                self.logger.info(f"Skipping excluded job: {execution.job_id}")
                summary.skipped += 1
                continue

            recent_failures = sum(
                1 for e in failed if e.job_id == execution.job_id and e.started_at >= recent_cutoff
            )
            if recent_failures >= self.max_retries:
                self.logger.warning(
                    f"Job {execution.job_id} has failed {recent_failures} times, "
                    f"exceeding max retries ({self.max_retries}), skipping"
                )
                summary.skipped += 1
                continue

            self.logger.info(
                f"Retrying job {execution.job_id} (execution {execution.id}), "
                f"attempt {recent_failures + 1}/{self.max_retries}"
            )
            try:
                self.runner.run(execution.job_id, execution.input, org_id=execution.org_id)
                summary.retried += 1
            except Exception as e:
                self.logger.error(f"Failed to retry job {execution.job_id}: {e}")
                summary.errors.append(f"{execution.job_id}: {e}")

            if self.delay_seconds:
                self.sleep(self.delay_seconds)

        self.logger.info(f"Retry sweep completed: {summary.retried} retried, {summary.skipped} skipped")
        self.events.publish('job.retry.completed', summary.to_dict())
        return summary

    def with_overrides(self, max_retries: Optional[int] = None, lookback_hours: Optional[int] = None,
                       exclude_jobs: Optional[Iterable[str]] = None) -> 'RetryCoordinator':
        return RetryCoordinator(
            self.tracker, self.runner, self.events,
            clock=self.clock,
            max_retries=max_retries or self.max_retries,
            lookback_hours=lookback_hours or self.lookback_hours,
            exclude_jobs=self.exclude_jobs if exclude_jobs is None else exclude_jobs,
            delay_seconds=self.delay_seconds,
            sleep=self.sleep,
        )

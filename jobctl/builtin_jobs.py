from typing import List

from .executions import ExecutionTracker
from .registry import Job, JobContext
from .retry import RetryCoordinator


CLEANUP_JOB_ID = 'maintenance.cleanup'
RETRY_JOB_ID = 'maintenance.retry'


def cleanup_job(tracker: ExecutionTracker, retention_days: int = 30) -> Job:
    """Execution-history retention, run daily by the worker."""

    def run(ctx: JobContext):
        input = ctx.input or {}
        days = input.get('retentionDays') or input.get('retention_days') or retention_days

        ctx.logger.info(f"Cleaning up executions older than {days} days")
        deleted = tracker.cleanup(days)
        ctx.logger.info(f"Cleanup completed: removed {deleted} old execution record(s)")

        ctx.events.publish('execution.cleanup.completed', {
            'retentionDays': days,
            'deletedCount': deleted,
        })
        return {'retentionDays': days, 'deletedCount': deleted}

    return Job(id=CLEANUP_JOB_ID, name="Execution Cleanup", run=run, schedule_hint="daily at midnight")


def retry_job(coordinator: RetryCoordinator) -> Job:
    """One Retry Coordinator sweep, run hourly by the worker."""

    def run(ctx: JobContext):
        input = ctx.input or {}
        sweep = coordinator.with_overrides(
            max_retries=input.get('maxRetries'),
            lookback_hours=input.get('lookbackHours'),
            exclude_jobs=input.get('excludeJobs'),
        )
        ctx.logger.info(
            f"Retry config: max {sweep.max_retries} retries, {sweep.lookback_hours}h lookback"
        )
        return sweep.sweep().to_dict()

    return Job(id=RETRY_JOB_ID, name="Retry Failed Jobs", run=run, schedule_hint="every hour")


def builtin_jobs(tracker: ExecutionTracker, coordinator: RetryCoordinator,
                 retention_days: int = 30) -> List[Job]:
    return [cleanup_job(tracker, retention_days), retry_job(coordinator)]

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .db import Database
from .exceptions import ExecutionNotFoundError, ExecutionStateError
from .logging_utils import get_logger
from .models import ExecutionStatus, JobExecution, JobExecutionStats, utcnow


JOB_EXECUTIONS = 'job-executions'

CompletionHook = Callable[[JobExecution], None]


class ExecutionTracker:
    """Persists one record per job run and aggregates per-job statistics.

    Every terminal transition is followed by the registered completion hooks
    (the alert manager's among them). A failing hook is logged and never
    changes the outcome recorded for the run.
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] = utcnow):
        self.db = database
        self.clock = clock
        self._completion_hooks: List[CompletionHook] = []
        self.logger = get_logger('executions')

    def add_completion_hook(self, hook: CompletionHook):
        self._completion_hooks.append(hook)

    def create_execution(self, job_id: str, job_name: str, org_id: Optional[str] = None,
                         input: Optional[Dict[str, Any]] = None) -> JobExecution:
        execution = JobExecution(
            id=f"exec-{job_id}-{uuid.uuid4().hex[:12]}",
            job_id=job_id,
            job_name=job_name,
            org_id=org_id,
            status=ExecutionStatus.RUNNING,
            started_at=self.clock(),
            input=input,
        )
        self.db.upsert(JOB_EXECUTIONS, execution.id, execution.to_record())
        return execution

    def mark_success(self, execution_id: str, output: Optional[Dict[str, Any]] = None) -> JobExecution:
        return self._finish(execution_id, ExecutionStatus.SUCCESS, None, output)

    def mark_failure(self, execution_id: str, error: str,
                     output: Optional[Dict[str, Any]] = None) -> JobExecution:
        return self._finish(execution_id, ExecutionStatus.FAILED, error, output)

    def mark_timeout(self, execution_id: str, error: str,
                     output: Optional[Dict[str, Any]] = None) -> JobExecution:
        return self._finish(execution_id, ExecutionStatus.TIMEOUT, error, output)

    def _finish(self, execution_id: str, status: ExecutionStatus, error: Optional[str],
                output: Optional[Dict[str, Any]]) -> JobExecution:
        finished_at = self.clock()

        def apply(record):
            if record is None:
                raise ExecutionNotFoundError(f"Job execution {execution_id} not found")
            execution = JobExecution.from_record(record)
            if execution.status.is_terminal:
                raise ExecutionStateError(
                    f"Job execution {execution_id} is already {execution.status.value}"
                )
            execution.status = status
            execution.finished_at = finished_at
            execution.duration = max(0, int((finished_at - execution.started_at).total_seconds() * 1000))
            execution.error = error
            execution.output = output
            return execution.to_record()

        execution = JobExecution.from_record(self.db.update(JOB_EXECUTIONS, execution_id, apply))
        self._run_completion_hooks(execution)
        return execution

    def _run_completion_hooks(self, execution: JobExecution):
        for hook in self._completion_hooks:
            try:
                hook(execution)
            except Exception as e:
                self.logger.error(
                    f"Completion hook failed for execution {execution.id} ({execution.status.value}): {e}",
                    exc_info=True
                )

    def get_execution(self, execution_id: str) -> Optional[JobExecution]:
        record = self.db.get(JOB_EXECUTIONS, execution_id)
        return JobExecution.from_record(record) if record else None

    def list_executions(self, job_id: Optional[str] = None, org_id: Optional[str] = None,
                        status: Optional[ExecutionStatus] = None, since: Optional[datetime] = None,
                        limit: Optional[int] = None) -> List[JobExecution]:
        def matches(record):
            if job_id and record['job_id'] != job_id:
                return False
            if org_id and record.get('org_id') != org_id:
                return False
            if status and record['status'] != status.value:
                return False
            return True

        executions = [JobExecution.from_record(r) for r in self.db.list(JOB_EXECUTIONS, matches)]
        if since:
            executions = [e for e in executions if e.started_at >= since]

        # newest first; among equal start times the later insert wins
        executions = sorted(reversed(executions), key=lambda e: e.started_at, reverse=True)

        if limit:
            return executions[:limit]
        return executions

    def get_stats(self, job_id: str, org_id: Optional[str] = None,
                  since: Optional[datetime] = None) -> JobExecutionStats:
        executions = self.list_executions(job_id=job_id, org_id=org_id, since=since)

        durations = [e.duration for e in executions if e.duration is not None]

        return JobExecutionStats(
            job_id=job_id,
            total_runs=len(executions),
            success_count=sum(1 for e in executions if e.status == ExecutionStatus.SUCCESS),
            failure_count=sum(1 for e in executions if e.status == ExecutionStatus.FAILED),
            timeout_count=sum(1 for e in executions if e.status == ExecutionStatus.TIMEOUT),
            average_duration=sum(durations) / len(durations) if durations else 0.0,
            last_run=executions[0] if executions else None,
            last_success=next((e for e in executions if e.status == ExecutionStatus.SUCCESS), None),
            last_failure=next((e for e in executions if e.status == ExecutionStatus.FAILED), None),
        )

    def cleanup(self, retention_days: int) -> int:
        cutoff = self.clock() - timedelta(days=retention_days)

        removed = 0
        for execution in self.list_executions():
            if execution.started_at < cutoff:
                self.db.remove(JOB_EXECUTIONS, execution.id)
                removed += 1

        self.logger.info(f"Removed {removed} execution record(s) older than {retention_days} days")
        return removed

from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from .events import EventBus
from .exceptions import JobTimeoutError
from .executions import ExecutionTracker
from .logging_utils import get_logger, setup_execution_logging
from .models import ExecutionStatus, JobExecution, utcnow
from .registry import Job, JobContext, JobRegistry


class TrackedRunner:
    """Runs registered jobs with an execution record around every run.

    Handler errors are recorded on the execution and never raised to the
    caller. Infrastructure problems (unknown job, store failures) do raise.
    """

    def __init__(self, registry: JobRegistry, tracker: ExecutionTracker, events: EventBus,
                 clock: Callable[[], datetime] = utcnow, log_dir: Optional[str] = None):
        self.registry = registry
        self.tracker = tracker
        self.events = events
        self.clock = clock
        self.log_dir = log_dir
        self.logger = get_logger('runner')

    def run(self, job_id: str, input: Optional[Dict[str, Any]] = None,
            org_id: Optional[str] = None) -> JobExecution:
        job = self.registry.require(job_id)

        if org_id is None and input:
            org_id = input.get('orgId') or input.get('org_id')

        execution = self.tracker.create_execution(job.id, job.name, org_id=org_id, input=input)
        self.logger.info(f"[{execution.id}] Starting job {job.name} ({job.id})")

        status, output, error = self._invoke(job, execution, input)

        if status == ExecutionStatus.SUCCESS:
            execution = self.tracker.mark_success(execution.id, output)
            self.logger.info(f"[{execution.id}] Job {job.id} completed in {execution.duration}ms")
            self.events.publish('job.completed', {
                'executionId': execution.id,
                'jobId': job.id,
                'jobName': job.name,
                'duration': execution.duration,
            })
        else:
            if status == ExecutionStatus.TIMEOUT:
                execution = self.tracker.mark_timeout(execution.id, error, output)
            else:
                execution = self.tracker.mark_failure(execution.id, error, output)
            self.logger.error(f"[{execution.id}] Job {job.id} {status.value} after {execution.duration}ms: {error}")
            self.events.publish('job.failed', {
                'executionId': execution.id,
                'jobId': job.id,
                'jobName': job.name,
                'duration': execution.duration,
                'error': error,
            })

        return execution

    def _invoke(self, job: Job, execution: JobExecution,
                input: Optional[Dict[str, Any]]) -> Tuple[ExecutionStatus, Optional[Dict[str, Any]], Optional[str]]:
        job_logger = get_logger(f'jobs.{job.id}')
        handler = setup_execution_logging(self.log_dir, execution.id)
        if handler:
            job_logger.addHandler(handler)

        ctx = JobContext(
            job_id=job.id,
            execution_id=execution.id,
            logger=job_logger,
            events=self.events,
            now=self.clock(),
            input=input,
        )

        try:
            result = job.run(ctx)
            if isinstance(result, Exception):
                raise result
            return ExecutionStatus.SUCCESS, result if isinstance(result, dict) else None, None
        except (JobTimeoutError, TimeoutError) as e:
            return ExecutionStatus.TIMEOUT, None, _describe(e) or "Job execution timeout"
        except Exception as e:
            return ExecutionStatus.FAILED, None, _describe(e)
        finally:
            if handler:
                job_logger.removeHandler(handler)
                handler.close()


def _describe(error: Exception) -> str:
    return str(error) or error.__class__.__name__

import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .db import Database
from .dlq import DeadLetterStore
from .events import EventBus
from .exceptions import (
    InvalidStateError, JobValidationError, QueueDrainingError, QueuedJobNotFoundError
)
from .logging_utils import get_logger
from .models import (
    ExecutionStatus, JobExecution, JobPriority, QueuedJob, QueuedJobStatus, QueueMode,
    QueueStats, RetryBackoff, utcnow
)
from .registry import JobRegistry
from .runner import TrackedRunner


QUEUED_JOBS = 'queued-jobs'
QUEUE_STATE = 'queue-state'
QUEUE_STATE_ID = 'default'

SORT_FIELDS = ('enqueued_at', 'updated_at', 'priority')

Outbox = List[Tuple[str, Dict[str, Any]]]


class QueueManager:
    """Owns the queued-job store and dispatches ready jobs.

    Selection, the running transition and completion handling all happen
    under one lock, which is what keeps two jobs with the same concurrency
    key from running together. Handlers themselves run outside the lock,
    either inline or on the executor passed to ``process_queue``.

    The lock only covers this process. Every status change is written through
    ``_transition``, which re-reads the job in the same store transaction and
    checks its current status, so a CLI process and the worker daemon never
    overwrite each other's transitions.
    """

    def __init__(self, database: Database, registry: JobRegistry, runner: TrackedRunner,
                 events: EventBus, clock: Callable[[], datetime] = utcnow,
                 max_concurrency: int = 5, default_max_attempts: int = 3,
                 default_retry_delay_ms: int = 5000,
                 default_retry_backoff: Union[RetryBackoff, str] = RetryBackoff.EXPONENTIAL):
        self.db = database
        self.registry = registry
        self.runner = runner
        self.events = events
        self.clock = clock
        self.max_concurrency = max_concurrency
        self.default_max_attempts = default_max_attempts
        self.default_retry_delay_ms = default_retry_delay_ms
        self.default_retry_backoff = RetryBackoff(default_retry_backoff)
        self.dead_letters = DeadLetterStore(database, registry, self.enqueue, clock)
        self.logger = get_logger('queue')
        self._lock = threading.RLock()
        self._active: Dict[str, QueuedJob] = {}

    # -- enqueue -----------------------------------------------------------

    def enqueue(self, job_id: str, priority: Union[JobPriority, str] = JobPriority.NORMAL,
                input: Optional[Dict[str, Any]] = None, org_id: Optional[str] = None,
                scheduled_for: Optional[datetime] = None, depends_on: Optional[List[str]] = None,
                max_attempts: Optional[int] = None, retry_delay_ms: Optional[int] = None,
                retry_backoff: Optional[Union[RetryBackoff, str]] = None,
                concurrency_key: Optional[str] = None, tags: Optional[List[str]] = None,
                metadata: Optional[Dict[str, Any]] = None) -> QueuedJob:
        if self.get_mode() == QueueMode.DRAINING:
            raise QueueDrainingError("Queue is draining and does not accept new jobs")

        job = self.registry.require(job_id)
        priority = self._parse_priority(priority)
        max_attempts = self.default_max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise JobValidationError("max_attempts must be at least 1")

        with self._lock:
            now = self.clock()
            dependency_status = {}
            for dep_id in depends_on or []:
                dependency = self.get_job(dep_id)
                if not dependency:
                    raise JobValidationError(f"Unknown dependency '{dep_id}'")
                dependency_status[dep_id] = _dependency_state(dependency)

            queued_job = QueuedJob(
                id=f"queue-{job_id}-{uuid.uuid4().hex[:12]}",
                job_id=job.id,
                job_name=job.name,
                status=QueuedJobStatus.READY,
                priority=priority,
                enqueued_at=now,
                max_attempts=max_attempts,
                retry_delay_ms=self.default_retry_delay_ms if retry_delay_ms is None else retry_delay_ms,
                retry_backoff=RetryBackoff(retry_backoff) if retry_backoff else self.default_retry_backoff,
                scheduled_for=scheduled_for,
                depends_on=list(depends_on or []),
                dependency_status=dependency_status,
                concurrency_key=concurrency_key or None,
                org_id=org_id,
                input=input,
                tags=list(tags or []),
                metadata=dict(metadata or {}),
            )

            failed_dep = next((d for d, s in dependency_status.items() if s == 'failed'), None)
            if scheduled_for and scheduled_for > now:
                queued_job.status = QueuedJobStatus.DELAYED
            elif failed_dep:
                queued_job.status = QueuedJobStatus.FAILED
                queued_job.error = f"dependency failed: {failed_dep}"
                queued_job.completed_at = now
            elif any(s != 'completed' for s in dependency_status.values()):
                queued_job.status = QueuedJobStatus.PENDING

            queued_job.updated_at = now
            self.db.upsert(QUEUED_JOBS, queued_job.id, queued_job.to_record())

        self.events.publish('queue.enqueued', {
            'queuedJobId': queued_job.id,
            'jobId': queued_job.job_id,
            'priority': queued_job.priority.value,
            'status': queued_job.status.value,
        })
        if queued_job.status == QueuedJobStatus.FAILED:
            self.events.publish('queue.failed', {
                'queuedJobId': queued_job.id,
                'jobId': queued_job.job_id,
                'error': queued_job.error,
            })

        self.logger.info(
            f"Enqueued job {queued_job.job_name} ({queued_job.id}) "
            f"priority={queued_job.priority.value} status={queued_job.status.value}"
        )
        return queued_job

    def _parse_priority(self, priority: Union[JobPriority, str]) -> JobPriority:
        try:
            return JobPriority(priority)
        except ValueError:
            allowed = ', '.join(p.value for p in JobPriority)
            raise JobValidationError(f"Invalid priority '{priority}' (expected one of {allowed})")

    # -- queue-wide mode ---------------------------------------------------

    def get_mode(self) -> QueueMode:
        state = self.db.get(QUEUE_STATE, QUEUE_STATE_ID)
        return QueueMode(state['mode']) if state else QueueMode.ACTIVE

    def _set_mode(self, mode: QueueMode, event_type: str):
        now = self.clock().isoformat()

        def apply(state):
            state = dict(state or {})
            state['mode'] = mode.value
            state['updated_at'] = now
            state['paused_at'] = now if mode == QueueMode.PAUSED else None
            state['draining_started_at'] = now if mode == QueueMode.DRAINING else None
            return state

        self.db.update(QUEUE_STATE, QUEUE_STATE_ID, apply)
        self.events.publish(event_type, {'mode': mode.value})

    def pause(self):
        self._set_mode(QueueMode.PAUSED, 'queue.paused')
        self.logger.info("Queue paused")

    def resume(self):
        self._set_mode(QueueMode.ACTIVE, 'queue.resumed')
        self.logger.info("Queue resumed")

    def drain(self):
        self._set_mode(QueueMode.DRAINING, 'queue.draining')
        self.logger.info("Queue draining (no new jobs accepted, stops once remaining work finishes)")

    def is_drained(self) -> bool:
        if self.get_mode() != QueueMode.DRAINING or self._active:
            return False
        outstanding = (QueuedJobStatus.RUNNING, QueuedJobStatus.READY,
                       QueuedJobStatus.PENDING, QueuedJobStatus.DELAYED)
        return not any(job.status in outstanding for job in self._all_jobs())

    # -- lookup ------------------------------------------------------------

    def get_job(self, queued_job_id: str) -> Optional[QueuedJob]:
        record = self.db.get(QUEUED_JOBS, queued_job_id)
        return QueuedJob.from_record(record) if record else None

    def require_job(self, queued_job_id: str) -> QueuedJob:
        job = self.get_job(queued_job_id)
        if not job:
            raise QueuedJobNotFoundError(f"Queued job '{queued_job_id}' not found")
        return job

    def list_jobs(self, status: Optional[Union[QueuedJobStatus, str]] = None,
                  priority: Optional[Union[JobPriority, str]] = None,
                  job_id: Optional[str] = None, limit: Optional[int] = None,
                  sort: str = 'enqueued_at') -> List[QueuedJob]:
        if sort not in SORT_FIELDS:
            raise JobValidationError(f"Cannot sort by '{sort}' (expected one of {', '.join(SORT_FIELDS)})")

        status = QueuedJobStatus(status) if status else None
        priority = self._parse_priority(priority) if priority else None

        jobs = [
            job for job in self._all_jobs()
            if (status is None or job.status == status)
            and (priority is None or job.priority == priority)
            and (job_id is None or job.job_id == job_id)
        ]

        if sort == 'priority':
            jobs.sort(key=lambda j: (j.priority.rank, j.enqueued_at))
        else:
            jobs = sorted(reversed(jobs), key=lambda j: getattr(j, sort) or j.enqueued_at, reverse=True)

        return jobs[:limit] if limit else jobs

    def _all_jobs(self) -> List[QueuedJob]:
        return [QueuedJob.from_record(r) for r in self.db.list(QUEUED_JOBS)]

    def _transition(self, queued_job_id: str, apply: Callable[[QueuedJob], Optional[bool]],
                    *expected: QueuedJobStatus) -> Optional[QueuedJob]:
        """Apply a change to the stored job inside one store transaction.

        The job is re-read under the transaction, so a change made by another
        process since the caller's snapshot is never overwritten. ``apply``
        mutates the fresh copy and returns False to leave it untouched; an
        exception it raises rolls the transaction back. Returns the saved job,
        or None when the job is gone, is no longer in one of the ``expected``
        states, or ``apply`` declined.
        """
        def update(record):
            if record is None:
                return None
            job = QueuedJob.from_record(record)
            if expected and job.status not in expected:
                return None
            if apply(job) is False:
                return None
            job.updated_at = self.clock()
            return job.to_record()

        record = self.db.update(QUEUED_JOBS, queued_job_id, update)
        return QueuedJob.from_record(record) if record else None

    # -- cancellation ------------------------------------------------------

    def cancel(self, queued_job_id: str) -> QueuedJob:
        outbox: Outbox = []
        now = self.clock()

        def apply(job):
            if job.status == QueuedJobStatus.RUNNING:
                raise InvalidStateError("Cannot cancel a running job")
            if job.status.is_terminal:
                raise InvalidStateError(f"Cannot cancel a job that is already {job.status.value}")
            job.status = QueuedJobStatus.CANCELLED
            job.completed_at = now

        with self._lock:
            job = self._transition(queued_job_id, apply)
            if not job:
                raise QueuedJobNotFoundError(f"Queued job '{queued_job_id}' not found")
            outbox.append(('queue.cancelled', {'queuedJobId': job.id, 'jobId': job.job_id}))
            self._resolve_dependents(job.id, succeeded=False, outbox=outbox)

        self.logger.info(f"Cancelled job {job.job_name} ({job.id})")
        self._publish(outbox)
        return job

    # -- dispatch ----------------------------------------------------------

    def promote_due_jobs(self) -> int:
        """Move due delayed jobs and dependency-satisfied pending jobs to ready."""
        outbox: Outbox = []
        promoted = 0
        with self._lock:
            now = self.clock()
            jobs = self._all_jobs()
            by_id = {job.id: job for job in jobs}

            for snapshot in jobs:
                if snapshot.status == QueuedJobStatus.DELAYED:
                    if snapshot.scheduled_for and snapshot.scheduled_for > now:
                        continue
                elif snapshot.status != QueuedJobStatus.PENDING:
                    continue

                failed_dep = next(
                    (d for d in snapshot.depends_on if _dependency_state(by_id.get(d)) == 'failed'), None
                )
                if failed_dep:
                    if self._fail_for_dependency(snapshot.id, failed_dep, outbox):
                        self._resolve_dependents(snapshot.id, succeeded=False, outbox=outbox)
                    continue

                job = self._transition(snapshot.id, lambda j: _promote(j, by_id, now),
                                       QueuedJobStatus.DELAYED, QueuedJobStatus.PENDING)
                if job and job.status == QueuedJobStatus.READY:
                    promoted += 1

        self._publish(outbox)
        return promoted

    def claim_next(self) -> Optional[QueuedJob]:
        """Pick the next dispatchable job and mark it running, or return None."""
        with self._lock:
            if self.get_mode() == QueueMode.PAUSED:
                return None

            jobs = self._all_jobs()
            running = [job for job in jobs if job.status == QueuedJobStatus.RUNNING]
            if len(running) >= self.max_concurrency:
                return None

            busy_keys = {job.concurrency_key for job in running if job.concurrency_key}
            candidates = sorted(
                ((job.priority.rank, job.enqueued_at, index, job)
                 for index, job in enumerate(jobs)
                 if job.status == QueuedJobStatus.READY
                 and (job.concurrency_key is None or job.concurrency_key not in busy_keys)),
                key=lambda c: c[:3],
            )

            now = self.clock()

            def start(job):
                job.status = QueuedJobStatus.RUNNING
                job.attempt += 1
                job.started_at = job.started_at or now
                job.last_attempt_at = now

            for _, _, _, candidate in candidates:
                # another process may have cancelled or claimed it since the read
                job = self._transition(candidate.id, start, QueuedJobStatus.READY)
                if job:
                    break
            else:
                return None
            self._active[job.id] = job

        self.events.publish('queue.started', {
            'queuedJobId': job.id,
            'jobId': job.job_id,
            'attempt': job.attempt,
        })
        self.logger.info(f"Dispatching job {job.job_name} ({job.id}) attempt {job.attempt}/{job.max_attempts}")
        return job

    def process_queue(self, submit: Optional[Callable[..., Any]] = None) -> int:
        """Dispatch every job that can start now.

        Without ``submit`` jobs run inline, one after another; with an
        executor's ``submit`` they run on its threads. Returns the number of
        jobs dispatched.
        """
        self.promote_due_jobs()

        dispatched = 0
        while True:
            job = self.claim_next()
            if not job:
                break
            dispatched += 1
            if submit:
                submit(self.execute, job)
            else:
                self.execute(job)
        return dispatched

    def execute(self, job: QueuedJob) -> QueuedJob:
        execution: Optional[JobExecution] = None
        error: Optional[str] = None
        try:
            execution = self.runner.run(job.job_id, job.input, org_id=job.org_id)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            self.logger.error(f"Could not run job {job.job_id} ({job.id}): {error}", exc_info=True)

        outbox: Outbox = []
        with self._lock:
            self._active.pop(job.id, None)
            if execution is not None and execution.status == ExecutionStatus.SUCCESS:
                finished = self._complete_success(job.id, execution, outbox)
            elif execution is not None:
                finished = self._complete_failure(job.id, execution.error or execution.status.value,
                                                  outbox, execution_id=execution.id)
            else:
                finished = self._complete_failure(job.id, error, outbox)

        self._publish(outbox)
        return finished or self.require_job(job.id)

    def _complete_success(self, queued_job_id: str, execution: JobExecution,
                          outbox: Outbox) -> Optional[QueuedJob]:
        now = self.clock()

        def apply(job):
            job.status = QueuedJobStatus.COMPLETED
            job.completed_at = now
            job.execution_id = execution.id
            job.output = execution.output
            job.error = None

        job = self._transition(queued_job_id, apply, QueuedJobStatus.RUNNING)
        if not job:
            self.logger.warning(f"Job {queued_job_id} finished but was no longer running; result not recorded")
            return None

        outbox.append(('queue.completed', {
            'queuedJobId': job.id,
            'jobId': job.job_id,
            'duration': execution.duration,
            'attempt': job.attempt,
        }))
        self.logger.info(f"Completed job {job.job_name} ({job.id}) in {execution.duration}ms")
        self._resolve_dependents(job.id, succeeded=True, outbox=outbox)
        return job

    def _complete_failure(self, queued_job_id: str, error: Optional[str], outbox: Outbox,
                          execution_id: Optional[str] = None) -> Optional[QueuedJob]:
        now = self.clock()
        delays: Dict[str, int] = {}

        def apply(job):
            job.error = error[:1000] if error else None
            if execution_id:
                job.execution_id = execution_id
            if job.attempt < job.max_attempts:
                delays['ms'] = self.calculate_backoff_delay(job.attempt, job.retry_delay_ms, job.retry_backoff)
                job.status = QueuedJobStatus.DELAYED
                job.scheduled_for = now + timedelta(milliseconds=delays['ms'])
            else:
                job.status = QueuedJobStatus.FAILED
                job.completed_at = now

        job = self._transition(queued_job_id, apply, QueuedJobStatus.RUNNING)
        if not job:
            self.logger.warning(f"Job {queued_job_id} failed but was no longer running; failure not recorded")
            return None

        if job.status == QueuedJobStatus.DELAYED:
            outbox.append(('queue.retry', {
                'queuedJobId': job.id,
                'jobId': job.job_id,
                'attempt': job.attempt,
                'nextAttempt': job.attempt + 1,
                'scheduledFor': job.scheduled_for.isoformat(),
                'delay': delays['ms'],
            }))
            self.logger.warning(
                f"Job {job.job_name} ({job.id}) failed attempt {job.attempt}/{job.max_attempts}, "
                f"retrying in {delays['ms']}ms: {job.error}"
            )
            return job

        dead_letter = self.dead_letters.create_from(job, job.error or "unknown error")
        outbox.append(('queue.failed', {
            'queuedJobId': job.id,
            'jobId': job.job_id,
            'error': job.error,
            'attempt': job.attempt,
        }))
        outbox.append(('queue.dead-letter', {
            'queuedJobId': job.id,
            'jobId': job.job_id,
            'deadLetterJobId': dead_letter.id,
            'attempts': job.attempt,
        }))
        self.logger.warning(
            f"Moved job {job.job_name} ({job.id}) to dead letter queue after {job.attempt} attempts"
        )
        self._resolve_dependents(job.id, succeeded=False, outbox=outbox)
        return job

    def calculate_backoff_delay(self, attempt: int, base_ms: int,
                                strategy: Union[RetryBackoff, str] = RetryBackoff.EXPONENTIAL) -> int:
        attempt = max(attempt, 1)
        strategy = RetryBackoff(strategy)
        if strategy == RetryBackoff.EXPONENTIAL:
            return base_ms * 2 ** (attempt - 1)
        if strategy == RetryBackoff.LINEAR:
            return base_ms * attempt
        return base_ms

    def _resolve_dependents(self, finished_id: str, succeeded: bool, outbox: Outbox):
        def mark_completed(dependency_id):
            def apply(job):
                job.dependency_status[dependency_id] = 'completed'
                if job.status == QueuedJobStatus.PENDING and all(
                    s == 'completed' for s in job.dependency_status.values()
                ):
                    job.status = QueuedJobStatus.READY
            return apply

        pending = [(finished_id, succeeded)]
        while pending:
            finished_id, succeeded = pending.pop()
            for job in self._all_jobs():
                if finished_id not in job.depends_on:
                    continue
                if job.status not in (QueuedJobStatus.PENDING, QueuedJobStatus.DELAYED):
                    continue

                if not succeeded:
                    if self._fail_for_dependency(job.id, finished_id, outbox):
                        pending.append((job.id, False))
                    continue

                updated = self._transition(job.id, mark_completed(finished_id),
                                           QueuedJobStatus.PENDING, QueuedJobStatus.DELAYED)
                if updated and updated.status == QueuedJobStatus.READY:
                    self.logger.info(f"Job {updated.job_name} ({updated.id}) ready after dependencies completed")

    def _fail_for_dependency(self, queued_job_id: str, dependency_id: str,
                             outbox: Outbox) -> Optional[QueuedJob]:
        now = self.clock()

        def apply(job):
            job.dependency_status[dependency_id] = 'failed'
            job.status = QueuedJobStatus.FAILED
            job.error = f"dependency failed: {dependency_id}"
            job.completed_at = now

        job = self._transition(queued_job_id, apply, QueuedJobStatus.PENDING, QueuedJobStatus.DELAYED)
        if not job:
            return None

        outbox.append(('queue.failed', {
            'queuedJobId': job.id,
            'jobId': job.job_id,
            'error': job.error,
            'attempt': job.attempt,
        }))
        self.logger.warning(f"Job {job.job_name} ({job.id}) failed because dependency {dependency_id} failed")
        return job

    def recover_interrupted_jobs(self) -> int:
        """Count a lost attempt for jobs left running by a process that died."""
        outbox: Outbox = []
        with self._lock:
            stale = [
                job for job in self._all_jobs()
                if job.status == QueuedJobStatus.RUNNING and job.id not in self._active
            ]
            for job in stale:
                self._complete_failure(job.id, "Job interrupted: owner process stopped while it was running", outbox)

        self._publish(outbox)
        if stale:
            self.logger.warning(f"Recovered {len(stale)} interrupted job(s)")
        return len(stale)

    def _publish(self, outbox: Outbox):
        for event_type, data in outbox:
            self.events.publish(event_type, data)

    # -- statistics --------------------------------------------------------

    def get_stats(self) -> QueueStats:
        jobs = self._all_jobs()

        status_counts = {status.value: 0 for status in QueuedJobStatus}
        priority_counts = {priority.value: 0 for priority in JobPriority}
        for job in jobs:
            status_counts[job.status.value] += 1
            priority_counts[job.priority.value] += 1

        stats = QueueStats(
            mode=self.get_mode(),
            total_jobs=len(jobs),
            status_counts=status_counts,
            priority_counts=priority_counts,
            dead_letter_jobs=self.dead_letters.count(),
            running_jobs=status_counts[QueuedJobStatus.RUNNING.value],
            max_concurrency=self.max_concurrency,
            last_updated=self.clock(),
        )

        completed = [job for job in jobs if job.status == QueuedJobStatus.COMPLETED]
        wait_times = [
            (job.started_at - job.enqueued_at).total_seconds() * 1000
            for job in completed if job.started_at
        ]
        execution_times = [
            (job.completed_at - job.last_attempt_at).total_seconds() * 1000
            for job in completed if job.completed_at and job.last_attempt_at
        ]
        if wait_times:
            stats.average_wait_time = sum(wait_times) / len(wait_times)
        if execution_times:
            stats.average_execution_time = sum(execution_times) / len(execution_times)

        finished = status_counts['completed'] + status_counts['failed']
        if finished:
            stats.success_rate = status_counts['completed'] / finished * 100

        return stats


def _dependency_state(dependency: Optional[QueuedJob]) -> str:
    if dependency is None:
        return 'failed'
    if dependency.status == QueuedJobStatus.COMPLETED:
        return 'completed'
    if dependency.status in (QueuedJobStatus.FAILED, QueuedJobStatus.CANCELLED):
        return 'failed'
    return 'pending'


def _promote(job: QueuedJob, by_id: Dict[str, QueuedJob], now: datetime) -> bool:
    """Move a due job toward ready. Returns False when nothing changed."""
    changed = False
    if job.status == QueuedJobStatus.DELAYED:
        if job.scheduled_for and job.scheduled_for > now:
            return False
        job.status = QueuedJobStatus.PENDING
        changed = True

    # the caller's snapshot may predate a completion already recorded on the job
    dependency_status = {}
    for dep_id in job.depends_on:
        state = job.dependency_status.get(dep_id)
        dependency_status[dep_id] = state if state == 'completed' else _dependency_state(by_id.get(dep_id))
    if dependency_status != job.dependency_status:
        job.dependency_status = dependency_status
        changed = True

    if all(s == 'completed' for s in dependency_status.values()):
        job.status = QueuedJobStatus.READY
        changed = True
    return changed

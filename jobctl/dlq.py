from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .db import Database
from .exceptions import DeadLetterNotFoundError, DeadLetterRetryError
from .logging_utils import get_logger
from .models import DeadLetterJob, QueuedJob, utcnow
from .registry import JobRegistry


DEAD_LETTER_JOBS = 'dead-letter-jobs'


class DeadLetterStore:
    """Append-only record of queued jobs that exhausted their attempts.

    Entries leave the store only through ``retry`` or ``purge``.
    """

    def __init__(self, database: Database, registry: JobRegistry,
                 enqueue: Callable[..., QueuedJob], clock: Callable[[], datetime] = utcnow):
        self.db = database
        self.registry = registry
        self._enqueue = enqueue
        self.clock = clock
        self.logger = get_logger('dlq')

    def create_from(self, queued_job: QueuedJob, error: str) -> DeadLetterJob:
        dead_letter_id = f"dlq-{queued_job.id}"
        existing = self.get(dead_letter_id)
        if existing:
            self.logger.warning(f"Queued job {queued_job.id} is already dead-lettered as {dead_letter_id}")
            return existing

        now = self.clock()
        dead_letter = DeadLetterJob(
            id=dead_letter_id,
            original_job_id=queued_job.id,
            job_id=queued_job.job_id,
            job_name=queued_job.job_name,
            failure_reason=f"Failed after {queued_job.attempt} attempts: {error}",
            attempts=queued_job.attempt,
            moved_to_dlq_at=now,
            first_attempt_at=queued_job.started_at or queued_job.enqueued_at,
            last_attempt_at=queued_job.last_attempt_at or now,
            error=error,
            can_retry=queued_job.job_id in self.registry,
            retry_count=int(queued_job.metadata.get('dlq_retry_count', 0)),
            priority=queued_job.priority,
            max_attempts=queued_job.max_attempts,
            concurrency_key=queued_job.concurrency_key,
            org_id=queued_job.org_id,
            input=queued_job.input,
            tags=list(queued_job.tags),
            metadata=dict(queued_job.metadata),
        )
        self.db.upsert(DEAD_LETTER_JOBS, dead_letter.id, dead_letter.to_record())
        return dead_letter

    def get(self, dead_letter_id: str) -> Optional[DeadLetterJob]:
        record = self.db.get(DEAD_LETTER_JOBS, dead_letter_id)
        return DeadLetterJob.from_record(record) if record else None

    def require(self, dead_letter_id: str) -> DeadLetterJob:
        dead_letter = self.get(dead_letter_id)
        if not dead_letter:
            raise DeadLetterNotFoundError(f"Dead letter job '{dead_letter_id}' not found")
        return dead_letter

    def list(self, job_id: Optional[str] = None, limit: Optional[int] = None) -> List[DeadLetterJob]:
        records = self.db.list(
            DEAD_LETTER_JOBS,
            (lambda r: r['job_id'] == job_id) if job_id else None
        )
        dead_letters = sorted(
            (DeadLetterJob.from_record(r) for r in reversed(records)),
            key=lambda d: d.moved_to_dlq_at,
            reverse=True
        )
        return dead_letters[:limit] if limit else dead_letters

    def latest(self) -> Optional[DeadLetterJob]:
        dead_letters = self.list(limit=1)
        return dead_letters[0] if dead_letters else None

    def count(self) -> int:
        return self.db.count(DEAD_LETTER_JOBS)

    def retry(self, dead_letter_id: str) -> QueuedJob:
        dead_letter = self.require(dead_letter_id)

        if not dead_letter.can_retry:
            raise DeadLetterRetryError(f"Dead letter job '{dead_letter_id}' cannot be retried")

        metadata = dict(dead_letter.metadata)
        metadata.update({
            'retried_from_dlq': True,
            'dead_letter_id': dead_letter.id,
            'original_queued_job_id': dead_letter.original_job_id,
            'dlq_retry_count': dead_letter.retry_count + 1,
        })

        queued_job = self._enqueue(
            job_id=dead_letter.job_id,
            priority=dead_letter.priority,
            input=dead_letter.input,
            org_id=dead_letter.org_id,
            max_attempts=dead_letter.max_attempts,
            concurrency_key=dead_letter.concurrency_key,
            tags=dead_letter.tags,
            metadata=metadata,
        )

        self.db.remove(DEAD_LETTER_JOBS, dead_letter.id)
        self.logger.info(f"Retried dead letter job {dead_letter.id} as {queued_job.id}")
        return queued_job

    def purge(self, older_than_days: Optional[int] = None) -> int:
        cutoff = self.clock() - timedelta(days=older_than_days) if older_than_days else None

        purged = 0
        for dead_letter in self.list():
            if cutoff is None or dead_letter.moved_to_dlq_at < cutoff:
                self.db.remove(DEAD_LETTER_JOBS, dead_letter.id)
                purged += 1

        self.logger.info(f"Purged {purged} dead letter job(s)")
        return purged

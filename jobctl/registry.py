import importlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from .events import EventBus
from .exceptions import ConfigurationError, JobNotFoundError, JobValidationError
from .logging_utils import get_logger


@dataclass
class JobContext:
    """What a job handler gets to work with for one run."""

    job_id: str
    execution_id: str
    logger: logging.Logger
    events: EventBus
    now: datetime
    input: Optional[Dict[str, Any]] = None


JobHandler = Callable[[JobContext], Optional[Dict[str, Any]]]


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    run: JobHandler
    schedule_hint: Optional[str] = None


class JobRegistry:
    """Static mapping from job id to its handler and metadata."""

    def __init__(self, jobs: Iterable[Job] = ()):
        self._jobs: Dict[str, Job] = {}
        self.logger = get_logger('registry')
        self.register_all(jobs)

    def register(self, job: Job):
        if not job.id:
            raise JobValidationError("Job id must not be empty")
        if not callable(job.run):
            raise JobValidationError(f"Job '{job.id}' handler is not callable")
        if job.id in self._jobs:
            raise JobValidationError(f"Job with id '{job.id}' is already registered")
        self._jobs[job.id] = job
        self.logger.debug(f"Registered job {job.id} ({job.name})")

    def register_all(self, jobs: Iterable[Job]):
        for job in jobs:
            self.register(job)

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if not job:
            raise JobNotFoundError(f"Job '{job_id}' not found in registry")
        return job

    def list(self) -> List[Job]:
        return sorted(self._jobs.values(), key=lambda job: job.id)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)


def load_jobs_module(registry: JobRegistry, module_path: str):
    """Import ``module_path`` and let its ``register_jobs(registry)`` add jobs."""
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import jobs module '{module_path}': {e}") from e

    register = getattr(module, 'register_jobs', None)
    if not callable(register):
        raise ConfigurationError(f"Jobs module '{module_path}' has no register_jobs(registry) function")

    before = len(registry)
    register(registry)
    registry.logger.info(f"Loaded {len(registry) - before} job(s) from {module_path}")

import os
import signal
import sys
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional

from .app import Application
from .builtin_jobs import CLEANUP_JOB_ID, RETRY_JOB_ID
from .logging_utils import get_logger
from .models import QueuedJob


PID_FILE_NAME = 'jobctl_worker.pid'


def default_pid_file(db_path: str) -> Path:
    return Path(db_path).parent / PID_FILE_NAME


class PeriodicTask:
    """Runs ``fn`` every ``interval`` seconds on a daemon thread until stopped."""

    def __init__(self, name: str, interval: float, fn: Callable[[], object]):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.logger = get_logger('worker')
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)

    def start(self):
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=5)

    def _loop(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.fn()
            except Exception as e:
                self.logger.error(f"Periodic task {self.name} failed: {e}", exc_info=True)


class Worker:
    """The queue-owning daemon.

    Dispatches ready jobs onto a pool of ``max_concurrency`` threads, runs
    the maintenance jobs and the alert health check on timers, and stops on
    SIGINT/SIGTERM or once a draining queue is empty. In-flight jobs are
    allowed to finish before the pool shuts down.
    """

    def __init__(self, app: Application, poll_interval_ms: Optional[int] = None,
                 pid_file: Optional[Path] = None, install_signal_handlers: bool = True):
        self.app = app
        self.queue = app.queue
        self.poll_interval_ms = poll_interval_ms or app.config.poll_interval_ms
        self.pid_file = pid_file or default_pid_file(app.db.db_path)
        self.install_signal_handlers = install_signal_handlers
        self.logger = get_logger('worker')
        self.stopping = False
        self._wake = threading.Event()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._tasks: List[PeriodicTask] = []

    def _signal_handler(self, signum, frame):
        self.logger.info(f"Worker received signal {signum}, shutting down gracefully")
        self.stop()

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGINT, self._signal_handler)
        if hasattr(signal, 'SIGTERM'):
            signal.signal(signal.SIGTERM, self._signal_handler)
        if sys.platform == "win32" and hasattr(signal, 'SIGBREAK'):
            signal.signal(signal.SIGBREAK, self._signal_handler)

    def stop(self):
        self.stopping = True
        self._wake.set()

    def run(self):
        if self.install_signal_handlers:
            self._install_signal_handlers()

        config = self.app.config
        self._write_pid_file()
        self.logger.info(
            f"Worker {os.getpid()} starting (max concurrency {self.queue.max_concurrency}, "
            f"{len(self.app.registry)} registered jobs)"
        )

        try:
            recovered = self.queue.recover_interrupted_jobs()
            if recovered:
                self.logger.info(f"Recovered {recovered} interrupted job(s) from a previous run")

            self.app.alerts.start(config.health_check_interval_seconds)
            self._start_maintenance(config.retry_interval_seconds, config.cleanup_interval_seconds)

            with ThreadPoolExecutor(max_workers=self.queue.max_concurrency,
                                    thread_name_prefix='jobctl-job') as pool:
                self._pool = pool
                self._loop()
                self.logger.info("Waiting for in-flight jobs to finish")
        finally:
            self._pool = None
            self.cleanup()

    def _loop(self):
        while not self.stopping:
            dispatched = self.queue.process_queue(submit=self._submit)
            if self.queue.is_drained():
                self.logger.info("Queue drained, stopping worker")
                break
            if not dispatched:
                self._wake.wait(self.poll_interval_ms / 1000)
                self._wake.clear()

    def _submit(self, fn: Callable[[QueuedJob], QueuedJob], job: QueuedJob) -> Future:
        future = self._pool.submit(fn, job)
        future.add_done_callback(self._on_job_done)
        return future

    def _on_job_done(self, future: Future):
        error = future.exception()
        if error:
            self.logger.error(f"Job execution crashed outside its handler: {error}")
        self._wake.set()

    def _start_maintenance(self, retry_interval: int, cleanup_interval: int):
        runner = self.app.runner
        if retry_interval:
            self._tasks.append(PeriodicTask('maintenance-retry', retry_interval,
                                            lambda: runner.run(RETRY_JOB_ID)))
        if cleanup_interval:
            self._tasks.append(PeriodicTask('maintenance-cleanup', cleanup_interval,
                                            lambda: runner.run(CLEANUP_JOB_ID)))
        for task in self._tasks:
            task.start()

    def cleanup(self):
        for task in self._tasks:
            task.stop()
        self._tasks = []
        self.app.alerts.stop()
        self._remove_pid_file()
        self.logger.info(f"Worker {os.getpid()} shutdown complete")

    def _write_pid_file(self):
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(f"{os.getpid()}\n")

    def _remove_pid_file(self):
        if self.pid_file.exists():
            self.pid_file.unlink()


def stop_worker(pid_file: Path) -> Optional[int]:
    """Ask a running worker to shut down. Returns its pid, or None if none runs."""
    logger = get_logger('worker')
    if not pid_file.exists():
        logger.info("No worker PID file found")
        return None

    try:
        pid = int(pid_file.read_text().strip())
    except ValueError:
        pid_file.unlink()
        return None

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        logger.warning(f"Worker process {pid} not found, removing stale PID file")
        pid_file.unlink()
        return None

    logger.info(f"Sent termination signal to worker process {pid}")
    return pid

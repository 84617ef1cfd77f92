import pytest
import tempfile
import time
import os
from datetime import datetime, timedelta, timezone
from jobctl.alert_config import AlertConfig
from jobctl.app import create_app
from jobctl.db import Database
from jobctl.registry import Job, JobRegistry


class FakeClock:
    def __init__(self, start=None):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, seconds=0, **kwargs):
        self.current += timedelta(seconds=seconds, **kwargs)
        return self.current


class Handlers:
    """Job handlers whose behaviour tests switch at runtime."""

    def __init__(self):
        self.calls = []
        self.failures = {}

    def fail(self, job_id, times=None, error="boom"):
        self.failures[job_id] = (times, error)

    def handler(self, job_id):
        def run(ctx):
            self.calls.append(job_id)
            times, error = self.failures.get(job_id, (0, None))
            if times is None or times > 0:
                if times is not None:
                    self.failures[job_id] = (times - 1, error)
                raise RuntimeError(error)
            return {'job': job_id}
        return run


@pytest.fixture
def db_path():
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        path = f.name

    yield path

    try:
        import gc
        gc.collect()
        time.sleep(0.1)
        for suffix in ('', '-wal', '-shm'):
            if os.path.exists(path + suffix):
                os.unlink(path + suffix)
    except (OSError, PermissionError):
        pass


@pytest.fixture
def temp_db(db_path):
    return Database(db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def handlers():
    return Handlers()


@pytest.fixture
def registry(handlers):
    return JobRegistry([
        Job(id=job_id, name=job_id.capitalize(), run=handlers.handler(job_id))
        for job_id in ('alpha', 'beta', 'gamma', 'flaky')
    ])


@pytest.fixture
def make_app(db_path, registry, clock):
    def factory(alert_config=None, **kwargs):
        return create_app(
            db_path,
            registry=registry,
            alert_config=alert_config or AlertConfig.disabled(),
            clock=clock,
            sleep=lambda seconds: None,
            **kwargs
        )
    return factory


@pytest.fixture
def app(make_app):
    return make_app()

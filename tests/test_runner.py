import logging
import pytest
from jobctl.events import EventBus
from jobctl.exceptions import JobNotFoundError, JobTimeoutError
from jobctl.executions import ExecutionTracker
from jobctl.models import ExecutionStatus
from jobctl.registry import Job, JobRegistry
from jobctl.runner import TrackedRunner


def succeed(ctx):
    ctx.logger.info("working")
    return {'input': ctx.input, 'executionId': ctx.execution_id}


def explode(ctx):
    raise ValueError("bad row")


def too_slow(ctx):
    raise JobTimeoutError("gave up after 30s")


def returns_error(ctx):
    return RuntimeError("returned, not raised")


def returns_list(ctx):
    return [1, 2, 3]


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def published(events):
    seen = []
    events.subscribe('*', lambda event_type, data: seen.append((event_type, data)))
    return seen


@pytest.fixture
def tracker(temp_db, clock):
    return ExecutionTracker(temp_db, clock)


@pytest.fixture
def runner(tracker, events, clock):
    registry = JobRegistry([
        Job(id='ok', name='OK', run=succeed),
        Job(id='explode', name='Explode', run=explode),
        Job(id='slow', name='Slow', run=too_slow),
        Job(id='returns.error', name='Returns error', run=returns_error),
        Job(id='returns.list', name='Returns list', run=returns_list),
    ])
    return TrackedRunner(registry, tracker, events, clock)


def test_successful_run(runner, tracker, published):
    execution = runner.run('ok', {'orgId': 'acme', 'n': 1})

    assert execution.status == ExecutionStatus.SUCCESS
    assert execution.org_id == 'acme'
    assert execution.output == {'input': {'orgId': 'acme', 'n': 1}, 'executionId': execution.id}
    assert tracker.get_execution(execution.id).status == ExecutionStatus.SUCCESS
    assert published == [('job.completed', {
        'executionId': execution.id, 'jobId': 'ok', 'jobName': 'OK', 'duration': 0,
    })]


def test_explicit_org_id_wins(runner):
    assert runner.run('ok', {'orgId': 'acme'}, org_id='globex').org_id == 'globex'


def test_failed_run_is_recorded_not_raised(runner, published):
    execution = runner.run('explode')

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == 'bad row'
    assert published[0][0] == 'job.failed'
    assert published[0][1]['error'] == 'bad row'


def test_timeout_run(runner):
    execution = runner.run('slow')

    assert execution.status == ExecutionStatus.TIMEOUT
    assert execution.error == 'gave up after 30s'


def test_returned_exception_counts_as_failure(runner):
    execution = runner.run('returns.error')

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == 'returned, not raised'


def test_non_dict_output_is_dropped(runner):
    execution = runner.run('returns.list')

    assert execution.status == ExecutionStatus.SUCCESS
    assert execution.output is None


def test_unknown_job_raises(runner, tracker):
    with pytest.raises(JobNotFoundError):
        runner.run('missing')
    assert tracker.list_executions() == []


def test_execution_log_file(tracker, events, clock, tmp_path, caplog):
    caplog.set_level(logging.INFO, logger="jobctl")
    registry = JobRegistry([Job(id='ok', name='OK', run=succeed)])
    runner = TrackedRunner(registry, tracker, events, clock, log_dir=str(tmp_path))

    execution = runner.run('ok')

    log_file = tmp_path / "jobs" / f"{execution.id}.log"
    assert log_file.exists()
    assert 'working' in log_file.read_text()

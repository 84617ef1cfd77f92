import pytest
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from jobctl.app import create_app
from jobctl.alert_config import AlertConfig
from jobctl.exceptions import (
    InvalidStateError, JobNotFoundError, JobValidationError, QueueDrainingError, QueuedJobNotFoundError
)
from jobctl.models import Config, JobPriority, QueuedJobStatus, QueueMode, RetryBackoff
from jobctl.queue import QUEUED_JOBS
from jobctl.registry import Job, JobRegistry


def record_events(app):
    seen = []
    app.events.subscribe('*', lambda event_type, data: seen.append((event_type, data)))
    return seen


def test_enqueue_ready_job(app):
    job = app.queue.enqueue('alpha', input={'x': 1}, org_id='acme', tags=['nightly'])

    stored = app.queue.get_job(job.id)
    assert stored.status == QueuedJobStatus.READY
    assert stored.priority == JobPriority.NORMAL
    assert stored.job_name == 'Alpha'
    assert stored.attempt == 0
    assert stored.max_attempts == 3
    assert stored.retry_backoff == RetryBackoff.EXPONENTIAL
    assert stored.input == {'x': 1}
    assert stored.org_id == 'acme'
    assert stored.tags == ['nightly']


def test_enqueue_publishes_event(app):
    events = record_events(app)
    job = app.queue.enqueue('alpha', priority='high')

    assert ('queue.enqueued', {
        'queuedJobId': job.id, 'jobId': 'alpha', 'priority': 'high', 'status': 'ready'
    }) in events


def test_enqueue_unknown_job(app):
    with pytest.raises(JobNotFoundError):
        app.queue.enqueue('does.not.exist')


def test_enqueue_invalid_priority(app):
    with pytest.raises(JobValidationError, match="Invalid priority"):
        app.queue.enqueue('alpha', priority='urgent')


def test_enqueue_invalid_max_attempts(app):
    with pytest.raises(JobValidationError):
        app.queue.enqueue('alpha', max_attempts=0)


def test_enqueue_unknown_dependency(app):
    with pytest.raises(JobValidationError, match="Unknown dependency"):
        app.queue.enqueue('alpha', depends_on=['queue-missing'])


def test_scheduled_job_waits_until_due(app, clock, handlers):
    job = app.queue.enqueue('alpha', scheduled_for=clock() + timedelta(minutes=5))
    assert job.status == QueuedJobStatus.DELAYED

    assert app.queue.process_queue() == 0
    assert handlers.calls == []

    clock.advance(minutes=5)
    assert app.queue.process_queue() == 1
    assert app.queue.get_job(job.id).status == QueuedJobStatus.COMPLETED


def test_priority_order(app, handlers):
    app.queue.enqueue('alpha', priority='low')
    app.queue.enqueue('beta', priority='normal')
    app.queue.enqueue('gamma', priority='high')
    app.queue.enqueue('flaky', priority='critical')

    app.queue.process_queue()

    assert handlers.calls == ['flaky', 'gamma', 'beta', 'alpha']


def test_fifo_within_priority(app, handlers):
    for job_id in ('gamma', 'alpha', 'beta'):
        app.queue.enqueue(job_id)

    app.queue.process_queue()

    assert handlers.calls == ['gamma', 'alpha', 'beta']


def test_dependency_scenario_with_single_slot(make_app, clock):
    app = make_app(config=Config(max_concurrency=1))

    a = app.queue.enqueue('alpha', priority='normal')
    clock.advance(1)
    b = app.queue.enqueue('beta', priority='critical', depends_on=[a.id])
    assert b.status == QueuedJobStatus.PENDING
    assert b.dependency_status == {a.id: 'pending'}

    first = app.queue.claim_next()
    assert first.id == a.id
    assert app.queue.get_job(b.id).status == QueuedJobStatus.PENDING
    assert app.queue.claim_next() is None

    app.queue.execute(first)

    b_after = app.queue.get_job(b.id)
    assert b_after.status == QueuedJobStatus.READY
    assert b_after.dependency_status == {a.id: 'completed'}

    second = app.queue.claim_next()
    assert second.id == b.id


def test_dependent_never_dispatched_before_dependency_completes(app, handlers):
    a = app.queue.enqueue('alpha', priority='low')
    app.queue.enqueue('beta', priority='critical', depends_on=[a.id])

    app.queue.process_queue()

    assert handlers.calls == ['alpha', 'beta']


def test_enqueue_after_dependency_completed_is_ready(app):
    a = app.queue.enqueue('alpha')
    app.queue.process_queue()

    b = app.queue.enqueue('beta', depends_on=[a.id])

    assert b.status == QueuedJobStatus.READY


def test_dependency_failure_propagates_transitively(app, handlers):
    handlers.fail('alpha')
    a = app.queue.enqueue('alpha', max_attempts=1)
    b = app.queue.enqueue('beta', depends_on=[a.id])
    c = app.queue.enqueue('gamma', depends_on=[b.id])

    app.queue.process_queue()

    assert app.queue.get_job(a.id).status == QueuedJobStatus.FAILED
    b_after = app.queue.get_job(b.id)
    c_after = app.queue.get_job(c.id)
    assert b_after.status == QueuedJobStatus.FAILED
    assert b_after.error == f"dependency failed: {a.id}"
    assert c_after.status == QueuedJobStatus.FAILED
    assert c_after.error == f"dependency failed: {b.id}"
    assert handlers.calls == ['alpha']
    assert app.dead_letters.count() == 1


def test_enqueue_with_failed_dependency_fails_immediately(app, handlers):
    handlers.fail('alpha')
    a = app.queue.enqueue('alpha', max_attempts=1)
    app.queue.process_queue()

    b = app.queue.enqueue('beta', depends_on=[a.id])

    assert b.status == QueuedJobStatus.FAILED
    assert b.error == f"dependency failed: {a.id}"


def test_concurrency_key_is_exclusive(app):
    a = app.queue.enqueue('alpha', concurrency_key='crm')
    b = app.queue.enqueue('beta', concurrency_key='crm')
    c = app.queue.enqueue('gamma')

    assert app.queue.claim_next().id == a.id
    assert app.queue.claim_next().id == c.id
    assert app.queue.claim_next() is None
    assert app.queue.get_job(b.id).status == QueuedJobStatus.READY

    app.queue.execute(app.queue.get_job(a.id))

    assert app.queue.claim_next().id == b.id


def test_max_concurrency_limits_running_jobs(make_app):
    app = make_app(config=Config(max_concurrency=2))
    for job_id in ('alpha', 'beta', 'gamma'):
        app.queue.enqueue(job_id)

    assert app.queue.claim_next() is not None
    assert app.queue.claim_next() is not None
    assert app.queue.claim_next() is None
    assert app.queue.get_stats().running_jobs == 2


def test_pause_and_resume(app, handlers):
    app.queue.enqueue('alpha')
    app.queue.pause()

    assert app.queue.get_mode() == QueueMode.PAUSED
    assert app.queue.process_queue() == 0
    assert handlers.calls == []

    app.queue.resume()
    assert app.queue.process_queue() == 1


def test_mode_is_shared_between_instances(make_app):
    first = make_app()
    first.queue.pause()

    second = make_app()
    assert second.queue.get_mode() == QueueMode.PAUSED


def test_drain_rejects_new_jobs_and_finishes_remaining(app):
    job = app.queue.enqueue('alpha')
    app.queue.drain()

    with pytest.raises(QueueDrainingError):
        app.queue.enqueue('beta')

    assert not app.queue.is_drained()
    app.queue.process_queue()
    assert app.queue.get_job(job.id).status == QueuedJobStatus.COMPLETED
    assert app.queue.is_drained()


def test_is_drained_requires_draining_mode(app):
    assert not app.queue.is_drained()


def test_failed_attempt_is_delayed_with_backoff(app, clock, handlers):
    events = record_events(app)
    handlers.fail('flaky', times=1)
    job = app.queue.enqueue('flaky', retry_delay_ms=1000)

    app.queue.process_queue()

    delayed = app.queue.get_job(job.id)
    assert delayed.status == QueuedJobStatus.DELAYED
    assert delayed.attempt == 1
    assert delayed.error == "boom"
    assert delayed.scheduled_for == clock() + timedelta(milliseconds=1000)
    assert any(event_type == 'queue.retry' for event_type, _ in events)

    assert app.queue.process_queue() == 0

    clock.advance(1)
    app.queue.process_queue()

    completed = app.queue.get_job(job.id)
    assert completed.status == QueuedJobStatus.COMPLETED
    assert completed.attempt == 2
    assert completed.output == {'job': 'flaky'}
    assert app.dead_letters.count() == 0


def test_flaky_job_dead_lettered_after_max_attempts(app, handlers):
    events = record_events(app)
    handlers.fail('flaky')
    job = app.queue.enqueue('flaky', max_attempts=3, retry_delay_ms=0)

    for _ in range(5):
        app.queue.process_queue()

    failed = app.queue.get_job(job.id)
    assert failed.status == QueuedJobStatus.FAILED
    assert failed.attempt == 3
    assert handlers.calls == ['flaky'] * 3

    dead_letters = app.dead_letters.list()
    assert len(dead_letters) == 1
    assert dead_letters[0].id == f"dlq-{job.id}"
    assert dead_letters[0].attempts == 3
    assert dead_letters[0].can_retry is True
    assert dead_letters[0].failure_reason == "Failed after 3 attempts: boom"

    dead_letter_events = [data for event_type, data in events if event_type == 'queue.dead-letter']
    assert dead_letter_events == [{
        'queuedJobId': job.id,
        'jobId': 'flaky',
        'deadLetterJobId': f"dlq-{job.id}",
        'attempts': 3,
    }]


@pytest.mark.parametrize('strategy,expected', [
    (RetryBackoff.EXPONENTIAL, [1000, 2000, 4000, 8000]),
    (RetryBackoff.LINEAR, [1000, 2000, 3000, 4000]),
    (RetryBackoff.FIXED, [1000, 1000, 1000, 1000]),
])
def test_backoff_calculation(app, strategy, expected):
    assert [app.queue.calculate_backoff_delay(attempt, 1000, strategy) for attempt in (1, 2, 3, 4)] == expected


def test_cancel_pending_job_fails_dependents(app):
    events = record_events(app)
    a = app.queue.enqueue('alpha')
    b = app.queue.enqueue('beta', depends_on=[a.id])
    c = app.queue.enqueue('gamma', depends_on=[b.id])

    cancelled = app.queue.cancel(b.id)

    assert cancelled.status == QueuedJobStatus.CANCELLED
    assert app.queue.get_job(c.id).status == QueuedJobStatus.FAILED
    assert app.queue.get_job(c.id).error == f"dependency failed: {b.id}"
    assert app.queue.get_job(a.id).status == QueuedJobStatus.READY
    assert ('queue.cancelled', {'queuedJobId': b.id, 'jobId': 'beta'}) in events


def test_cancel_running_job_rejected(app):
    job = app.queue.enqueue('alpha')
    app.queue.claim_next()

    with pytest.raises(InvalidStateError, match="running"):
        app.queue.cancel(job.id)


def test_cancel_terminal_job_rejected(app):
    job = app.queue.enqueue('alpha')
    app.queue.process_queue()

    with pytest.raises(InvalidStateError, match="already completed"):
        app.queue.cancel(job.id)


def test_cancel_unknown_job(app):
    with pytest.raises(QueuedJobNotFoundError):
        app.queue.cancel('queue-missing')


def test_cancel_from_another_process_is_not_overwritten_by_claim(make_app, monkeypatch):
    daemon = make_app()
    cli = make_app()
    job = daemon.queue.enqueue('alpha')
    read_jobs = daemon.queue._all_jobs

    def read_then_cancel():
        jobs = read_jobs()
        if cli.queue.get_job(job.id).status == QueuedJobStatus.READY:
            cli.queue.cancel(job.id)
        return jobs

    monkeypatch.setattr(daemon.queue, '_all_jobs', read_then_cancel)

    assert daemon.queue.claim_next() is None
    assert daemon.queue.get_job(job.id).status == QueuedJobStatus.CANCELLED
    assert daemon.queue.get_job(job.id).attempt == 0


def test_claim_skips_job_taken_by_another_process(make_app, monkeypatch):
    daemon = make_app()
    other = make_app()
    first = daemon.queue.enqueue('alpha', priority='high')
    second = daemon.queue.enqueue('beta')
    read_jobs = daemon.queue._all_jobs

    def read_then_claim():
        jobs = read_jobs()
        if other.queue.get_job(first.id).status == QueuedJobStatus.READY:
            other.queue.claim_next()
        return jobs

    monkeypatch.setattr(daemon.queue, '_all_jobs', read_then_claim)

    claimed = daemon.queue.claim_next()

    assert claimed.id == second.id
    assert daemon.queue.get_job(first.id).attempt == 1


def test_cancel_from_another_process_is_not_overwritten_by_promotion(make_app, monkeypatch):
    daemon = make_app()
    cli = make_app()
    a = daemon.queue.enqueue('alpha')
    b = daemon.queue.enqueue('beta', depends_on=[a.id])
    daemon.db.update(QUEUED_JOBS, a.id, lambda record: {**record, 'status': 'completed'})
    read_jobs = daemon.queue._all_jobs

    def read_then_cancel():
        jobs = read_jobs()
        if cli.queue.get_job(b.id).status == QueuedJobStatus.PENDING:
            cli.queue.cancel(b.id)
        return jobs

    monkeypatch.setattr(daemon.queue, '_all_jobs', read_then_cancel)

    assert daemon.queue.promote_due_jobs() == 0
    assert daemon.queue.get_job(b.id).status == QueuedJobStatus.CANCELLED


def test_promotion_leaves_waiting_jobs_untouched(app, clock):
    a = app.queue.enqueue('alpha')
    b = app.queue.enqueue('beta', depends_on=[a.id])
    written_at = app.queue.get_job(b.id).updated_at

    clock.advance(30)

    assert app.queue.promote_due_jobs() == 0
    assert app.queue.get_job(b.id).updated_at == written_at


def test_promotion_fails_each_dependent_once(app):
    events = record_events(app)
    a = app.queue.enqueue('alpha')
    b = app.queue.enqueue('beta', depends_on=[a.id])
    c = app.queue.enqueue('gamma', depends_on=[b.id])
    app.db.update(QUEUED_JOBS, a.id, lambda record: {**record, 'status': 'failed'})
    app.db.update(QUEUED_JOBS, b.id, lambda record: {**record, 'status': 'delayed'})

    app.queue.promote_due_jobs()

    failed = [data['queuedJobId'] for event_type, data in events if event_type == 'queue.failed']
    assert sorted(failed) == sorted([b.id, c.id])
    assert app.queue.get_job(b.id).error == f"dependency failed: {a.id}"
    assert app.queue.get_job(c.id).error == f"dependency failed: {b.id}"


def test_recover_interrupted_jobs(make_app):
    first = make_app()
    job = first.queue.enqueue('alpha')
    first.queue.claim_next()

    second = make_app()
    assert second.queue.recover_interrupted_jobs() == 1

    recovered = second.queue.get_job(job.id)
    assert recovered.status == QueuedJobStatus.DELAYED
    assert recovered.attempt == 1
    assert "interrupted" in recovered.error


def test_get_stats(app, handlers):
    handlers.fail('flaky')
    app.queue.enqueue('alpha', priority='high')
    app.queue.enqueue('flaky', max_attempts=1)
    app.queue.process_queue()
    app.queue.enqueue('beta', priority='low')

    stats = app.queue.get_stats()

    assert stats.mode == QueueMode.ACTIVE
    assert stats.total_jobs == 3
    assert stats.count(QueuedJobStatus.COMPLETED) == 1
    assert stats.count(QueuedJobStatus.FAILED) == 1
    assert stats.count(QueuedJobStatus.READY) == 1
    assert stats.priority_counts['high'] == 1
    assert stats.priority_counts['low'] == 1
    assert stats.dead_letter_jobs == 1
    assert stats.running_jobs == 0
    assert stats.utilization == 0
    assert stats.success_rate == 50.0
    assert stats.average_wait_time == 0


def test_list_jobs_filtering_and_sorting(app):
    low = app.queue.enqueue('alpha', priority='low')
    critical = app.queue.enqueue('beta', priority='critical')
    app.queue.enqueue('gamma', priority='normal')
    app.queue.cancel(low.id)

    assert len(app.queue.list_jobs()) == 3
    assert [j.id for j in app.queue.list_jobs(status='cancelled')] == [low.id]
    assert [j.id for j in app.queue.list_jobs(job_id='beta')] == [critical.id]
    assert [j.priority for j in app.queue.list_jobs(sort='priority')] == [
        JobPriority.CRITICAL, JobPriority.NORMAL, JobPriority.LOW
    ]
    assert len(app.queue.list_jobs(limit=2)) == 2

    with pytest.raises(JobValidationError):
        app.queue.list_jobs(sort='name')


def test_threaded_dispatch_respects_concurrency_key(db_path, clock):
    running = {}
    overlaps = []
    lock = threading.Lock()

    def handler(key):
        def run(ctx):
            with lock:
                running[key] = running.get(key, 0) + 1
                if running[key] > 1:
                    overlaps.append(key)
            time.sleep(0.02)
            with lock:
                running[key] -= 1
        return run

    registry = JobRegistry([
        Job(id='sync.crm', name='CRM sync', run=handler('crm')),
        Job(id='sync.erp', name='ERP sync', run=handler('erp')),
    ])
    app = create_app(db_path, registry=registry, config=Config(max_concurrency=4),
                     alert_config=AlertConfig.disabled(), clock=clock)

    jobs = []
    for _ in range(4):
        jobs.append(app.queue.enqueue('sync.crm', concurrency_key='crm'))
        jobs.append(app.queue.enqueue('sync.erp', concurrency_key='erp'))

    with ThreadPoolExecutor(max_workers=4) as pool:
        deadline = time.time() + 10
        while time.time() < deadline:
            app.queue.process_queue(submit=pool.submit)
            if all(app.queue.get_job(j.id).status == QueuedJobStatus.COMPLETED for j in jobs):
                break
            time.sleep(0.01)

    assert overlaps == []
    assert all(app.queue.get_job(j.id).status == QueuedJobStatus.COMPLETED for j in jobs)

import click
import json
import sys
from datetime import timedelta
from .app import Application, create_app
from .config import DEFAULT_DB_PATH, ConfigManager
from .db import Database
from .logging_utils import setup_logging
from .models import AlertChannel, ExecutionStatus, JobPriority, QueuedJobStatus, parse_datetime
from .queue import SORT_FIELDS
from .version import __version__
from .worker import Worker, default_pid_file, stop_worker


def _app(ctx: click.Context) -> Application:
    factory = ctx.obj.get('app_factory') or create_app
    return factory(ctx.obj['db_path'])


def _config_manager(ctx: click.Context) -> ConfigManager:
    return ConfigManager(Database(ctx.obj['db_path']))


def _parse_input(value):
    if not value:
        return None
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint='--input')
    if not isinstance(data, dict):
        raise click.BadParameter("Input must be a JSON object", param_hint='--input')
    return data


def _fmt_time(value):
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _fail(e: Exception):
    click.echo(f"Error: {e}", err=True)
    sys.exit(1)


@click.group()
@click.option('--db', 'db_path', default=DEFAULT_DB_PATH, show_default=True, help='Path to the SQLite store')
@click.version_option(version=__version__)
@click.help_option('--help', '-h')
@click.pass_context
def cli(ctx, db_path):
    """jobctl - job queue with retries, a dead letter queue and alerting.

    Jobs are registered handlers (built-ins plus the module named by the
    jobs_module config key). They are enqueued with a priority, optional
    dependencies and concurrency keys, dispatched by the worker daemon,
    retried with backoff and dead-lettered once their attempts run out.

    Examples:
        jobctl enqueue maintenance.cleanup --priority high
        jobctl worker start
        jobctl status
        jobctl dlq list
    """
    ctx.ensure_object(dict)
    ctx.obj.setdefault('db_path', db_path)


@cli.command()
@click.argument('job_id')
@click.option('--priority', type=click.Choice([p.value for p in JobPriority]), default='normal',
              show_default=True, help='Dispatch priority')
@click.option('--org', 'org_id', help='Organization the job runs for')
@click.option('--input', 'input_json', help='Job input as a JSON object')
@click.option('--scheduled-for', help='Do not run before this ISO datetime')
@click.option('--depends-on', multiple=True, help='Queued job ID that must complete first (repeatable)')
@click.option('--concurrency-key', help='Jobs sharing this key never run at the same time')
@click.option('--max-attempts', type=int, help='Attempts before the job is dead-lettered')
@click.option('--tag', 'tags', multiple=True, help='Free-form tag (repeatable)')
@click.pass_context
def enqueue(ctx, job_id, priority, org_id, input_json, scheduled_for, depends_on, concurrency_key,
            max_attempts, tags):
    """Enqueue a registered job.

    Examples:
        jobctl enqueue reports.daily --priority critical
        jobctl enqueue reports.send --depends-on queue-reports.daily-1a2b3c4d5e6f
        jobctl enqueue sync.crm --org acme --input '{"full": true}' --concurrency-key crm
    """
    try:
        app = _app(ctx)
        queued_job = app.queue.enqueue(
            job_id,
            priority=priority,
            input=_parse_input(input_json),
            org_id=org_id,
            scheduled_for=parse_datetime(scheduled_for),
            depends_on=list(depends_on),
            max_attempts=max_attempts,
            concurrency_key=concurrency_key,
            tags=list(tags),
        )
        click.echo(f"Job enqueued successfully with ID: {queued_job.id} (status: {queued_job.status.value})")
    except Exception as e:
        _fail(e)


@cli.command('list')
@click.option('--status', type=click.Choice([s.value for s in QueuedJobStatus]), help='Filter by status')
@click.option('--priority', type=click.Choice([p.value for p in JobPriority]), help='Filter by priority')
@click.option('--job', 'job_id', help='Filter by job ID')
@click.option('--limit', default=20, help='Maximum number of jobs to show')
@click.option('--sort', type=click.Choice(SORT_FIELDS), default='enqueued_at', help='Sort order')
@click.pass_context
def list_jobs(ctx, status, priority, job_id, limit, sort):
    """List queued jobs with optional filtering and sorting.

    Examples:
        jobctl list
        jobctl list --status delayed --limit 50
        jobctl list --sort priority
    """
    try:
        app = _app(ctx)
        jobs = app.queue.list_jobs(status=status, priority=priority, job_id=job_id, limit=limit, sort=sort)

        if not jobs:
            click.echo("No jobs found")
            return

        click.echo(f"{'ID':<45} {'Status':<10} {'Priority':<9} {'Attempt':<8} {'Enqueued':<20}")
        click.echo("-" * 95)

        for job in jobs:
            attempt = f"{job.attempt}/{job.max_attempts}"
            click.echo(
                f"{job.id:<45} {job.status.value:<10} {job.priority.value:<9} {attempt:<8} "
                f"{_fmt_time(job.enqueued_at):<20}"
            )
            if job.error and job.status in (QueuedJobStatus.FAILED, QueuedJobStatus.DELAYED):
                error_preview = job.error[:70] + "..." if len(job.error) > 70 else job.error
                click.echo(f"    error: {error_preview}")
    except Exception as e:
        _fail(e)


@cli.command()
@click.pass_context
def status(ctx):
    """Show queue mode, job counts and recent dead letters.

    Examples:
        jobctl status
    """
    try:
        app = _app(ctx)
        stats = app.queue.get_stats()

        click.echo("=== jobctl Status ===")
        click.echo()
        click.echo(f"Mode:        {stats.mode.value}")
        click.echo(f"Concurrency: {stats.running_jobs}/{stats.max_concurrency} ({stats.utilization * 100:.0f}%)")
        click.echo()
        click.echo("Job Counts:")
        for status_value, count in stats.status_counts.items():
            click.echo(f"  {status_value.capitalize() + ':':<12}{count}")
        click.echo(f"  {'DLQ:':<12}{stats.dead_letter_jobs}")
        click.echo()
        click.echo("By Priority:")
        for priority, count in stats.priority_counts.items():
            click.echo(f"  {priority.capitalize() + ':':<12}{count}")

        if stats.average_wait_time is not None:
            click.echo()
            click.echo(f"Average wait:      {stats.average_wait_time / 1000:.2f}s")
            click.echo(f"Average execution: {stats.average_execution_time / 1000:.2f}s")
        if stats.success_rate is not None:
            click.echo(f"Success rate:      {stats.success_rate:.1f}%")

        recent = app.dead_letters.list(limit=3)
        if recent:
            click.echo()
            click.echo("Recent Dead Letters:")
            for dead_letter in recent:
                reason = dead_letter.error or dead_letter.failure_reason
                preview = reason[:50] + "..." if len(reason) > 50 else reason
                click.echo(f"  {dead_letter.id}: {preview}")
    except Exception as e:
        _fail(e)


@cli.command()
@click.argument('queued_job_id')
@click.pass_context
def cancel(ctx, queued_job_id):
    """Cancel a queued job that has not started running.

    Jobs depending on it fail with "dependency failed".
    """
    try:
        app = _app(ctx)
        job = app.queue.cancel(queued_job_id)
        click.echo(f"Job {job.id} cancelled")
    except Exception as e:
        _fail(e)


@cli.command()
@click.pass_context
def pause(ctx):
    """Stop dispatching jobs until resumed."""
    try:
        _app(ctx).queue.pause()
        click.echo("Queue paused")
    except Exception as e:
        _fail(e)


@cli.command()
@click.pass_context
def resume(ctx):
    """Resume dispatching after pause or drain."""
    try:
        _app(ctx).queue.resume()
        click.echo("Queue resumed")
    except Exception as e:
        _fail(e)


@cli.command()
@click.pass_context
def drain(ctx):
    """Reject new jobs and let the worker stop once remaining work is done."""
    try:
        _app(ctx).queue.drain()
        click.echo("Queue draining")
    except Exception as e:
        _fail(e)


@cli.group()
def dlq():
    """Manage Dead Letter Queue (jobs that ran out of attempts)."""
    pass


@dlq.command('list')
@click.option('--job', 'job_id', help='Filter by job ID')
@click.option('--limit', default=10, help='Maximum number of jobs to show')
@click.pass_context
def dlq_list(ctx, job_id, limit):
    """List jobs in the Dead Letter Queue.

    Examples:
        jobctl dlq list
        jobctl dlq list --job reports.daily --limit 20
    """
    try:
        app = _app(ctx)
        dead_letters = app.dead_letters.list(job_id=job_id, limit=limit)

        if not dead_letters:
            click.echo("No jobs in Dead Letter Queue")
            return

        click.echo(f"{'DLQ ID':<50} {'Job':<25} {'Attempts':<8} {'Retry':<6} {'Moved At':<20}")
        click.echo("-" * 112)

        for dead_letter in dead_letters:
            can_retry = "yes" if dead_letter.can_retry else "no"
            click.echo(
                f"{dead_letter.id:<50} {dead_letter.job_id:<25} {dead_letter.attempts:<8} "
                f"{can_retry:<6} {_fmt_time(dead_letter.moved_to_dlq_at):<20}"
            )
    except Exception as e:
        _fail(e)


@dlq.command('retry')
@click.argument('dead_letter_id')
@click.pass_context
def dlq_retry(ctx, dead_letter_id):
    """Re-enqueue a dead-lettered job with a fresh attempt budget.

    Examples:
        jobctl dlq retry dlq-queue-reports.daily-1a2b3c4d5e6f
    """
    try:
        app = _app(ctx)
        queued_job = app.dead_letters.retry(dead_letter_id)
        click.echo(f"Job retried successfully with ID: {queued_job.id}")
    except Exception as e:
        _fail(e)


@dlq.command('purge')
@click.option('--older-than', type=int, help='Purge jobs older than N days')
@click.option('--force', is_flag=True, help='Confirm purge operation')
@click.pass_context
def dlq_purge(ctx, older_than, force):
    """Purge jobs from the Dead Letter Queue.

    WARNING: This permanently deletes jobs from the DLQ.
    Use --force to confirm the operation.

    Examples:
        jobctl dlq purge --older-than 30 --force
        jobctl dlq purge --force  # Purges all DLQ jobs
    """
    try:
        if not force:
            click.echo("Error: Purge operation requires --force flag for confirmation", err=True)
            sys.exit(1)

        app = _app(ctx)
        purged = app.dead_letters.purge(older_than)
        click.echo(f"Purged {purged} DLQ job(s)")
    except Exception as e:
        _fail(e)


@cli.group()
def alerts():
    """Inspect and test alerting."""
    pass


@alerts.command('status')
@click.pass_context
def alerts_status(ctx):
    """Show alert configuration, rules and notifier availability."""
    try:
        app = _app(ctx)
        info = app.alerts.status()

        click.echo(f"Enabled:  {'yes' if info['enabled'] else 'no'}")
        click.echo(f"Config:   {info['source'] or '-'}")
        if info['error']:
            click.echo(f"Problem:  {info['error']}")
        click.echo(f"Channels: {', '.join(info['channels']) or '-'}")
        notifiers = ', '.join(f"{name}={'on' if on else 'off'}" for name, on in info['notifiers'].items())
        click.echo(f"Notifiers: {notifiers}")
        if info['throttle']:
            click.echo(
                f"Throttle: {info['throttle']['min_interval']}s between identical alerts, "
                f"max {info['throttle']['max_alerts_per_job_per_hour']}/hour"
            )
        click.echo(f"Alerts sent: {info['events']}")

        if info['rules']:
            click.echo()
            click.echo(f"{'Rule':<30} {'Category':<14} {'Severity':<9} {'Enabled':<8}")
            click.echo("-" * 64)
            for rule in info['rules']:
                enabled = "yes" if rule['enabled'] else "no"
                click.echo(f"{rule['name']:<30} {rule['category']:<14} {rule['severity']:<9} {enabled:<8}")
                if rule['disabled_reason']:
                    click.echo(f"    disabled: {rule['disabled_reason']}")
    except Exception as e:
        _fail(e)


@alerts.command('history')
@click.option('--limit', default=20, help='Maximum number of alerts to show')
@click.option('--rule', 'alert_name', help='Only alerts raised by this rule')
@click.pass_context
def alerts_history(ctx, limit, alert_name):
    """List alerts that were sent, newest first."""
    try:
        app = _app(ctx)
        events = app.alerts.list_events(limit=limit, alert_name=alert_name)

        if not events:
            click.echo("No alerts found")
            return

        for event in events:
            channels = ', '.join(c.value for c in event.channels)
            click.echo(
                f"{_fmt_time(event.triggered_at)}  [{event.severity.value.upper()}] "
                f"{event.alert_name}: {event.title} ({channels})"
            )
    except Exception as e:
        _fail(e)


@alerts.command('test')
@click.option('--channel', 'channels', multiple=True, type=click.Choice([c.value for c in AlertChannel]),
              help='Channel to test (repeatable, default: configured channels)')
@click.pass_context
def alerts_test(ctx, channels):
    """Send a test alert through the notification channels."""
    try:
        app = _app(ctx)
        if not app.alerts.enabled:
            click.echo("Error: Alerting is disabled in configuration", err=True)
            sys.exit(1)

        event = app.alerts.send_test_alert([AlertChannel(c) for c in channels] or None)
        if event is None:
            click.echo("Test alert throttled, try again later")
            return
        click.echo(f"Test alert {event.id} sent to {', '.join(c.value for c in event.channels) or 'no channels'}")
    except Exception as e:
        _fail(e)


@cli.command()
@click.pass_context
def jobs(ctx):
    """List registered jobs."""
    try:
        app = _app(ctx)
        for job in app.registry.list():
            hint = f"  ({job.schedule_hint})" if job.schedule_hint else ""
            click.echo(f"{job.id:<30} {job.name}{hint}")
    except Exception as e:
        _fail(e)


@cli.command()
@click.argument('job_id')
@click.option('--org', 'org_id', help='Organization the job runs for')
@click.option('--input', 'input_json', help='Job input as a JSON object')
@click.pass_context
def run(ctx, job_id, org_id, input_json):
    """Run a job right now, outside the queue, with execution tracking.

    This is the entry point for external schedulers.

    Examples:
        jobctl run maintenance.cleanup --input '{"retentionDays": 7}'
    """
    try:
        app = _app(ctx)
        execution = app.runner.run(job_id, _parse_input(input_json), org_id=org_id)
    except Exception as e:
        _fail(e)

    click.echo(f"Execution {execution.id} {execution.status.value} in {execution.duration}ms")
    if execution.output:
        click.echo(json.dumps(execution.output, indent=2, default=str))
    if execution.status != ExecutionStatus.SUCCESS:
        click.echo(f"Error: {execution.error}", err=True)
        sys.exit(1)


@cli.group()
def executions():
    """Inspect job execution history."""
    pass


@executions.command('list')
@click.option('--job', 'job_id', help='Filter by job ID')
@click.option('--org', 'org_id', help='Filter by organization')
@click.option('--status', type=click.Choice([s.value for s in ExecutionStatus]), help='Filter by status')
@click.option('--limit', default=20, help='Maximum number of executions to show')
@click.pass_context
def executions_list(ctx, job_id, org_id, status, limit):
    """List executions, newest first."""
    try:
        app = _app(ctx)
        records = app.tracker.list_executions(
            job_id=job_id, org_id=org_id,
            status=ExecutionStatus(status) if status else None,
            limit=limit
        )

        if not records:
            click.echo("No executions found")
            return

        click.echo(f"{'ID':<50} {'Status':<8} {'Duration':<10} {'Started':<20}")
        click.echo("-" * 90)
        for execution in records:
            duration = f"{execution.duration}ms" if execution.duration is not None else "-"
            click.echo(
                f"{execution.id:<50} {execution.status.value:<8} {duration:<10} "
                f"{_fmt_time(execution.started_at):<20}"
            )
    except Exception as e:
        _fail(e)


@executions.command('stats')
@click.argument('job_id')
@click.option('--org', 'org_id', help='Only executions for this organization')
@click.option('--since-hours', type=int, help='Only executions started in the last N hours')
@click.pass_context
def executions_stats(ctx, job_id, org_id, since_hours):
    """Show run counts, success rate and average duration for a job."""
    try:
        app = _app(ctx)
        since = app.clock() - timedelta(hours=since_hours) if since_hours else None
        stats = app.tracker.get_stats(job_id, org_id=org_id, since=since)

        click.echo(f"Job:          {stats.job_id}")
        click.echo(f"Total runs:   {stats.total_runs}")
        click.echo(f"Successes:    {stats.success_count}")
        click.echo(f"Failures:     {stats.failure_count}")
        click.echo(f"Timeouts:     {stats.timeout_count}")
        if stats.success_rate is not None:
            click.echo(f"Success rate: {stats.success_rate * 100:.1f}%")
        click.echo(f"Avg duration: {stats.average_duration:.0f}ms")
        if stats.last_run:
            click.echo(f"Last run:     {_fmt_time(stats.last_run.started_at)} ({stats.last_run.status.value})")
    except Exception as e:
        _fail(e)


@executions.command('cleanup')
@click.option('--retention-days', type=int, help='Keep executions newer than N days')
@click.pass_context
def executions_cleanup(ctx, retention_days):
    """Delete execution records older than the retention period."""
    try:
        app = _app(ctx)
        days = retention_days or app.config.retention_days
        removed = app.tracker.cleanup(days)
        click.echo(f"Removed {removed} execution record(s) older than {days} days")
    except Exception as e:
        _fail(e)


@cli.command('retry-sweep')
@click.pass_context
def retry_sweep(ctx):
    """Re-run recently failed executions once (the hourly maintenance sweep)."""
    try:
        app = _app(ctx)
        summary = app.retry.sweep()
        click.echo(
            f"Retried {summary.retried}, skipped {summary.skipped} "
            f"of {summary.total_failed} failed execution(s)"
        )
    except Exception as e:
        _fail(e)


@cli.group()
def worker():
    """Run the worker daemon that owns the queue."""
    pass


@worker.command('start')
@click.option('--poll-interval-ms', type=int, help='Polling interval in milliseconds')
@click.pass_context
def worker_start(ctx, poll_interval_ms):
    """Start the worker in the foreground (Ctrl+C or SIGTERM to stop).

    Examples:
        jobctl worker start
        jobctl worker start --poll-interval-ms 1000
    """
    try:
        app = _app(ctx)
        setup_logging(app.config.log_dir, app.config.log_level)
        click.echo("Starting worker (Press Ctrl+C to stop)")
        Worker(app, poll_interval_ms).run()
    except Exception as e:
        _fail(e)


@worker.command('stop')
@click.pass_context
def worker_stop(ctx):
    """Ask the running worker to shut down gracefully."""
    try:
        pid = stop_worker(default_pid_file(ctx.obj['db_path']))
        if pid is None:
            click.echo("No running worker found")
        else:
            click.echo(f"Sent stop signal to worker {pid}")
    except Exception as e:
        _fail(e)


@cli.group()
def config():
    """Read and change stored configuration."""
    pass


@config.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def config_set(ctx, key, value):
    try:
        _config_manager(ctx).set(key, value)
        click.echo(f"Set {key} = {value}")
    except Exception as e:
        _fail(e)


@config.command('get')
@click.argument('key')
@click.pass_context
def config_get(ctx, key):
    try:
        value = _config_manager(ctx).get(key)
    except Exception as e:
        _fail(e)

    if value is None:
        click.echo(f"Configuration key '{key}' not found", err=True)
        sys.exit(1)
    click.echo(value)


@config.command('list')
@click.pass_context
def config_list(ctx):
    try:
        config_dict = _config_manager(ctx).list_all()
        for key, value in sorted(config_dict.items()):
            click.echo(f"{key} = {value}")
    except Exception as e:
        _fail(e)


if __name__ == '__main__':
    cli()

import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .alert_config import (
    AlertConfig, JobFailureRule, PerformanceRule, QueueHealthRule, load_alert_config
)
from .db import Database
from .executions import ExecutionTracker
from .logging_utils import get_logger
from .models import (
    AlertChannel, AlertEvent, AlertSeverity, AlertThrottle, JobExecution, QueuedJobStatus, utcnow
)
from .notifiers import Notifiers
from .queue import QueueManager


ALERT_THROTTLES = 'alert-throttles'
ALERT_EVENTS = 'alert-events'

THROTTLE_WINDOW = timedelta(hours=1)
FAILURE_COUNT_WINDOW = timedelta(hours=1)

SEVERITY_EMOJI = {
    AlertSeverity.CRITICAL: "🚨",
    AlertSeverity.HIGH: "⚠️",
    AlertSeverity.MEDIUM: "⚡",
    AlertSeverity.LOW: "ℹ️",
}

DISCORD_COLORS = {
    AlertSeverity.CRITICAL: 16711680,
    AlertSeverity.HIGH: 16744448,
    AlertSeverity.MEDIUM: 16776960,
    AlertSeverity.LOW: 3447003,
}


class AlertManager:
    """Evaluates alert rules against executions and queue state.

    With a disabled or unloadable config every entry point is a no-op.
    Nothing raised while evaluating rules or delivering alerts escapes to the
    caller; it is logged instead.
    """

    def __init__(self, config: AlertConfig, database: Database, tracker: ExecutionTracker,
                 queue: QueueManager, notifiers: Optional[Notifiers] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.config = config
        self.db = database
        self.tracker = tracker
        self.queue = queue
        self.dead_letters = queue.dead_letters
        self.notifiers = notifiers or Notifiers()
        self.clock = clock
        self.logger = get_logger('alerts')
        self._lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._monitor_thread: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # -- lifecycle ---------------------------------------------------------

    def start(self, interval: float = 60):
        if not self.enabled:
            self.logger.info("Alerting is disabled in configuration")
            return

        if self._monitor_thread and self._monitor_thread.is_alive():
            self.logger.warning("Alert manager already started")
            return

        self.logger.info(
            f"Starting alert manager (channels={[c.value for c in self.config.settings.channels]}, "
            f"health check every {interval}s)"
        )
        self._stop_event = threading.Event()
        self._monitor_thread = threading.Thread(
            target=self._monitor, args=(interval, self._stop_event),
            name='alert-health-check', daemon=True
        )
        self.check_queue_health()
        self._monitor_thread.start()

    def stop(self):
        if self._stop_event:
            self._stop_event.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
            self._monitor_thread = None
        self.logger.info("Stopped alert manager")

    @property
    def running(self) -> bool:
        return bool(self._monitor_thread and self._monitor_thread.is_alive())

    def _monitor(self, interval: float, stop_event: threading.Event):
        while not stop_event.wait(interval):
            self.check_queue_health()

    def reload(self, path: Optional[str] = None) -> AlertConfig:
        self.config = load_alert_config(path or self.config.source)
        return self.config

    # -- triggers ----------------------------------------------------------

    def on_execution_complete(self, execution: JobExecution):
        if not self.enabled or not execution.status.is_terminal:
            return

        try:
            if execution.status.is_failure:
                self._check_job_failure_alerts(execution)
            self._check_performance_alerts(execution)
        except Exception as e:
            self.logger.error(f"Error evaluating alerts for execution {execution.id}: {e}", exc_info=True)

    def on_dead_letter(self, event_type: str, payload: Dict[str, Any]):
        if not self.enabled:
            return

        try:
            self._check_dead_letter_alerts(payload.get('deadLetterJobId'))
        except Exception as e:
            self.logger.error(f"Error processing dead letter alert ({event_type}): {e}", exc_info=True)

    def check_queue_health(self) -> List[AlertEvent]:
        if not self.enabled:
            return []

        try:
            return self._check_queue_health()
        except Exception as e:
            self.logger.error(f"Error checking queue health: {e}", exc_info=True)
            return []

    # -- rule evaluation ---------------------------------------------------

    def _check_job_failure_alerts(self, execution: JobExecution):
        for rule in self._active(self.config.job_failures):
            if not rule.matches_job(execution.job_id):
                continue
            conditions = rule.conditions
            error = execution.error or "Unknown error"

            if conditions.consecutive_failures and self._has_consecutive_failures(
                execution, conditions.consecutive_failures
            ):
                self.send_alert(
                    alert_name=rule.name,
                    severity=rule.severity,
                    title=f"Job Failed {conditions.consecutive_failures} Times Consecutively",
                    message=(
                        f"Job `{execution.job_name}` ({execution.job_id}) has failed "
                        f"{conditions.consecutive_failures} times in a row.\n\nLast error: {error}"
                    ),
                    channels=rule.channels,
                    job_id=execution.job_id,
                    metadata={
                        'executionId': execution.id,
                        'consecutiveFailures': conditions.consecutive_failures,
                        'error': execution.error,
                    },
                )

            if conditions.failure_count == 1:
                self.send_alert(
                    alert_name=rule.name,
                    severity=rule.severity,
                    title="Critical Job Failed",
                    message=f"Critical job `{execution.job_name}` ({execution.job_id}) has failed.\n\nError: {error}",
                    channels=rule.channels,
                    job_id=execution.job_id,
                    metadata={'executionId': execution.id, 'error': execution.error},
                )
            elif conditions.failure_count:
                since = self.clock() - FAILURE_COUNT_WINDOW
                failures = [
                    e for e in self.tracker.list_executions(
                        job_id=execution.job_id, org_id=execution.org_id, since=since
                    )
                    if e.status.is_failure
                ]
                if len(failures) >= conditions.failure_count:
                    self.send_alert(
                        alert_name=rule.name,
                        severity=rule.severity,
                        title=f"Job Failed {len(failures)} Times",
                        message=(
                            f"Job `{execution.job_name}` ({execution.job_id}) has failed "
                            f"{len(failures)} times in the last hour.\n\nLast error: {error}"
                        ),
                        channels=rule.channels,
                        job_id=execution.job_id,
                        metadata={'executionId': execution.id, 'failureCount': len(failures)},
                    )

            reason = conditions.failure_reason
            if reason and reason.lower() in (execution.error or '').lower():
                self.send_alert(
                    alert_name=rule.name,
                    severity=rule.severity,
                    title=f"Job {reason.upper()}",
                    message=(
                        f"Job `{execution.job_name}` ({execution.job_id}) failed due to {reason}."
                        f"\n\nError: {execution.error}"
                    ),
                    channels=rule.channels,
                    job_id=execution.job_id,
                    metadata={'executionId': execution.id, 'failureReason': reason, 'error': execution.error},
                )

    def _has_consecutive_failures(self, execution: JobExecution, threshold: int) -> bool:
        finished = [
            e for e in self.tracker.list_executions(job_id=execution.job_id, org_id=execution.org_id)
            if e.status.is_terminal
        ]
        recent = finished[:threshold]
        return len(recent) == threshold and all(e.status.is_failure for e in recent)

    def _check_performance_alerts(self, execution: JobExecution):
        for rule in self._active(self.config.performance):
            if not rule.matches_job(execution.job_id):
                continue
            conditions = rule.conditions

            since = None
            if conditions.time_window:
                since = self.clock() - timedelta(seconds=conditions.time_window)
            stats = self.tracker.get_stats(execution.job_id, org_id=execution.org_id, since=since)
            if stats.total_runs < conditions.min_runs:
                continue

            if conditions.success_rate is not None and stats.success_rate < conditions.success_rate:
                self.send_alert(
                    alert_name=rule.name,
                    severity=rule.severity,
                    title="Low Success Rate Alert",
                    message=(
                        f"Job `{execution.job_name}` ({execution.job_id}) has a success rate of "
                        f"{stats.success_rate * 100:.1f}%, below the {conditions.success_rate * 100:.0f}% "
                        f"threshold.\n\nTotal runs: {stats.total_runs}\nSuccesses: {stats.success_count}"
                        f"\nFailures: {stats.failure_count}"
                    ),
                    channels=rule.channels,
                    job_id=execution.job_id,
                    metadata={
                        'successRate': stats.success_rate,
                        'threshold': conditions.success_rate,
                        'totalRuns': stats.total_runs,
                    },
                )

            if (conditions.duration_increase is not None and execution.duration
                    and stats.average_duration > 0):
                ratio = execution.duration / stats.average_duration
                if ratio >= conditions.duration_increase:
                    self.send_alert(
                        alert_name=rule.name,
                        severity=rule.severity,
                        title="Job Duration Spike",
                        message=(
                            f"Job `{execution.job_name}` ({execution.job_id}) took "
                            f"{execution.duration / 1000:.1f}s, which is {ratio:.1f}x the average duration."
                            f"\n\nCurrent: {execution.duration / 1000:.1f}s"
                            f"\nAverage: {stats.average_duration / 1000:.1f}s"
                        ),
                        channels=rule.channels,
                        job_id=execution.job_id,
                        metadata={
                            'duration': execution.duration,
                            'averageDuration': stats.average_duration,
                            'durationRatio': ratio,
                        },
                    )

            if conditions.concurrency_utilization is not None:
                queue_stats = self.queue.get_stats()
                if queue_stats.utilization >= conditions.concurrency_utilization:
                    self.send_alert(
                        alert_name=rule.name,
                        severity=rule.severity,
                        title="High Concurrency Utilization",
                        message=(
                            f"{queue_stats.running_jobs} of {queue_stats.max_concurrency} execution slots "
                            f"are in use ({queue_stats.utilization * 100:.0f}%)."
                        ),
                        channels=rule.channels,
                        metadata={
                            'runningJobs': queue_stats.running_jobs,
                            'maxConcurrency': queue_stats.max_concurrency,
                        },
                    )

    def _check_queue_health(self) -> List[AlertEvent]:
        sent = []
        rules = list(self._active(self.config.queue_health))
        if not rules:
            return sent

        stats = self.queue.get_stats()
        for rule in rules:
            conditions = rule.conditions

            if conditions.dlq_size is not None and stats.dead_letter_jobs >= conditions.dlq_size:
                sent.append(self.send_alert(
                    alert_name=rule.name,
                    severity=rule.severity,
                    title="Dead Letter Queue Alert",
                    message=(
                        f"{stats.dead_letter_jobs} job(s) are in the dead letter queue.\n\n"
                        f"These jobs have permanently failed and require manual investigation."
                    ),
                    channels=rule.channels,
                    metadata={
                        'dlqSize': stats.dead_letter_jobs,
                        'jobs': [
                            {'id': d.id, 'jobName': d.job_name, 'failureReason': d.failure_reason}
                            for d in self.dead_letters.list(limit=20)
                        ],
                    },
                ))

            pending = stats.count(QueuedJobStatus.PENDING) + stats.count(QueuedJobStatus.READY)
            if conditions.pending_jobs is not None and pending >= conditions.pending_jobs:
                sent.append(self.send_alert(
                    alert_name=rule.name,
                    severity=rule.severity,
                    title="Queue Backlog Alert",
                    message=(
                        f"{pending} jobs are pending in the queue.\n\n"
                        f"The queue may be overloaded or processing slowly."
                    ),
                    channels=rule.channels,
                    metadata={'pendingJobs': pending},
                ))

            delayed = stats.count(QueuedJobStatus.DELAYED)
            if conditions.delayed_jobs is not None and delayed >= conditions.delayed_jobs:
                sent.append(self.send_alert(
                    alert_name=rule.name,
                    severity=rule.severity,
                    title="Delayed Jobs Alert",
                    message=(
                        f"{delayed} jobs are delayed/retrying.\n\n"
                        f"Multiple jobs may be experiencing failures."
                    ),
                    channels=rule.channels,
                    metadata={'delayedJobs': delayed},
                ))

            if conditions.mode is not None and stats.mode == conditions.mode:
                sent.append(self.send_alert(
                    alert_name=rule.name,
                    severity=rule.severity,
                    title=f"Queue {conditions.mode.value.upper()}",
                    message=(
                        f"The job queue is currently in {conditions.mode.value} mode.\n\n"
                        f"No new jobs will be processed until the queue is resumed."
                    ),
                    channels=rule.channels,
                    metadata={'mode': stats.mode.value},
                ))

        return [event for event in sent if event]

    def _check_dead_letter_alerts(self, dead_letter_id: Optional[str] = None):
        rules = [r for r in self._active(self.config.queue_health) if r.fires_on_dead_letter]
        if not rules:
            return

        dead_letter = self.dead_letters.get(dead_letter_id) if dead_letter_id else None
        dead_letter = dead_letter or self.dead_letters.latest()
        if not dead_letter:
            return

        for rule in rules:
            self.send_alert(
                alert_name=rule.name,
                severity=rule.severity,
                title="Job Moved to Dead Letter Queue",
                message=(
                    f"Job `{dead_letter.job_name}` ({dead_letter.job_id}) has been moved to the dead "
                    f"letter queue after {dead_letter.attempts} failed attempts.\n\n"
                    f"Reason: {dead_letter.failure_reason}\nError: {dead_letter.error or 'Unknown'}"
                ),
                channels=rule.channels,
                job_id=dead_letter.job_id,
                queued_job_id=dead_letter.original_job_id,
                metadata={
                    'dlqJobId': dead_letter.id,
                    'originalJobId': dead_letter.original_job_id,
                    'attempts': dead_letter.attempts,
                    'failureReason': dead_letter.failure_reason,
                },
            )

    def _active(self, rules):
        return (rule for rule in rules if rule.enabled)

    # -- dispatch ----------------------------------------------------------

    def send_alert(self, alert_name: str, severity: AlertSeverity, title: str, message: str,
                   channels: List[AlertChannel], job_id: Optional[str] = None,
                   queued_job_id: Optional[str] = None,
                   metadata: Optional[Dict[str, Any]] = None) -> Optional[AlertEvent]:
        """Deliver an alert unless it is throttled.

        Returns the persisted AlertEvent, or None when the throttle suppressed
        it. Throttled alerts leave no record.
        """
        alert_key = f"{alert_name}:{job_id}" if job_id else alert_name

        with self._lock:
            if not self._reserve_throttle(alert_key):
                self.logger.debug(f"Alert throttled: {alert_key}")
                return None

        now = self.clock()
        event = AlertEvent(
            id=f"alert-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:7]}",
            alert_name=alert_name,
            severity=severity,
            title=title,
            message=message,
            channels=list(channels),
            triggered_at=now,
            metadata=metadata or {},
            job_id=job_id,
            queued_job_id=queued_job_id,
        )
        self.db.upsert(ALERT_EVENTS, event.id, event.to_record())

        # delivered outside the lock
        for channel in event.channels:
            try:
                self._send_to_channel(channel, event)
            except Exception as e:
                self.logger.error(f"Failed to send alert {alert_name} to {channel.value}: {e}")

        self.logger.info(
            f"Alert sent: {alert_name} [{severity.value}] via {[c.value for c in event.channels]}"
        )
        return event

    def _send_to_channel(self, channel: AlertChannel, alert: AlertEvent):
        settings = self.config.settings
        emoji = SEVERITY_EMOJI[alert.severity]
        severity = alert.severity.value.upper()

        if channel == AlertChannel.SLACK:
            if not self.notifiers.slack.is_enabled():
                self.logger.warning("Slack notifications disabled, skipping alert")
                return
            self.notifiers.slack.send(
                settings.slack.channel,
                f"{emoji} *{alert.title}* [{severity}]\n\n{alert.message}",
                username=settings.slack.username,
                icon_emoji=settings.slack.icon_emoji,
            )

        elif channel == AlertChannel.EMAIL:
            if not self.notifiers.email.is_enabled():
                self.logger.warning("Email notifications disabled, skipping alert")
                return
            self.notifiers.email.send(
                settings.email.to,
                f"[{severity}] {alert.title}",
                f"{alert.message}\n\nTriggered at: {alert.triggered_at.isoformat()}",
                from_address=settings.email.from_address,
            )

        elif channel == AlertChannel.DISCORD:
            if not self.notifiers.discord.is_enabled():
                self.logger.warning("Discord notifications disabled, skipping alert")
                return
            self.notifiers.discord.send(
                alert.message,
                username=settings.discord.username,
                avatar_url=settings.discord.avatar_url,
                color=DISCORD_COLORS[alert.severity],
                title=f"{emoji} {alert.title} [{severity}]",
            )

    def _reserve_throttle(self, alert_key: str) -> bool:
        """Check the throttle for ``alert_key`` and count this send against it.

        Both happen in one store transaction. Returns False when the alert is
        throttled, in which case nothing is written.
        """
        throttle_settings = self.config.settings.throttle
        if not throttle_settings:
            return True

        now = self.clock()

        def apply(record):
            if record is None:
                return AlertThrottle(alert_key, now, 1, now).to_record()
            throttle = AlertThrottle.from_record(record)

            if (now - throttle.last_sent_at).total_seconds() < throttle_settings.min_interval:
                return None
            if now - throttle.window_start >= THROTTLE_WINDOW:
                return AlertThrottle(alert_key, now, 1, now).to_record()
            if throttle.count >= throttle_settings.max_alerts_per_job_per_hour:
                return None

            throttle.last_sent_at = now
            throttle.count += 1
            return throttle.to_record()

        return self.db.update(ALERT_THROTTLES, alert_key, apply) is not None

    # -- inspection --------------------------------------------------------

    def send_test_alert(self, channels: Optional[List[AlertChannel]] = None) -> Optional[AlertEvent]:
        if not self.enabled:
            self.logger.info("Alerting is disabled, test alert not sent")
            return None

        return self.send_alert(
            alert_name='test-alert',
            severity=AlertSeverity.LOW,
            title="Test Alert",
            message="This is a test alert from jobctl. If you can read this, alert delivery works.",
            channels=list(channels or self.config.settings.channels),
            metadata={'test': True},
        )

    def list_events(self, limit: Optional[int] = 50, alert_name: Optional[str] = None) -> List[AlertEvent]:
        records = self.db.list(
            ALERT_EVENTS,
            (lambda r: r['alert_name'] == alert_name) if alert_name else None
        )
        events = sorted(
            (AlertEvent.from_record(r) for r in reversed(records)),
            key=lambda e: e.triggered_at,
            reverse=True
        )
        return events[:limit] if limit else events

    def get_throttles(self) -> List[AlertThrottle]:
        return [AlertThrottle.from_record(r) for r in self.db.list(ALERT_THROTTLES)]

    def status(self) -> Dict[str, Any]:
        settings = self.config.settings
        return {
            'enabled': self.enabled,
            'running': self.running,
            'source': self.config.source,
            'error': self.config.error,
            'channels': [c.value for c in settings.channels],
            'notifiers': {
                'slack': self.notifiers.slack.is_enabled(),
                'email': self.notifiers.email.is_enabled(),
                'discord': self.notifiers.discord.is_enabled(),
            },
            'throttle': {
                'min_interval': settings.throttle.min_interval,
                'max_alerts_per_job_per_hour': settings.throttle.max_alerts_per_job_per_hour,
            } if settings.throttle else None,
            'rules': [
                {
                    'name': rule.name,
                    'category': _category(rule),
                    'enabled': rule.enabled,
                    'severity': rule.severity.value,
                    'channels': [c.value for c in rule.channels],
                    'disabled_reason': rule.disabled_reason,
                }
                for rule in self.config.rules()
            ],
            'events': self.db.count(ALERT_EVENTS),
        }


def _category(rule) -> str:
    if isinstance(rule, JobFailureRule):
        return 'job-failure'
    if isinstance(rule, QueueHealthRule):
        return 'queue-health'
    if isinstance(rule, PerformanceRule):
        return 'performance'
    return 'unknown'

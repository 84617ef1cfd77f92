import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern

import yaml

from .exceptions import ConfigurationError
from .logging_utils import get_logger
from .models import AlertChannel, AlertSeverity, QueueMode


logger = get_logger('alerts.config')

DEAD_LETTER_RULE_NAME = 'dlq-jobs'


@dataclass
class SlackSettings:
    channel: str = '#worker-alerts'
    username: str = 'Worker Bot'
    icon_emoji: str = ':gear:'


@dataclass
class EmailSettings:
    to: str = 'team@example.com'
    from_address: Optional[str] = None


@dataclass
class DiscordSettings:
    username: str = 'Worker Bot'
    avatar_url: Optional[str] = None


@dataclass
class ThrottleSettings:
    min_interval: int = 300
    max_alerts_per_job_per_hour: int = 10


@dataclass
class AlertSettings:
    enabled: bool = False
    channels: List[AlertChannel] = field(default_factory=list)
    slack: SlackSettings = field(default_factory=SlackSettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    discord: DiscordSettings = field(default_factory=DiscordSettings)
    throttle: Optional[ThrottleSettings] = None


@dataclass
class JobFailureConditions:
    consecutive_failures: Optional[int] = None
    failure_count: Optional[int] = None
    failure_reason: Optional[str] = None
    job_pattern: Optional[Pattern] = None


@dataclass
class QueueHealthConditions:
    dlq_size: Optional[int] = None
    pending_jobs: Optional[int] = None
    delayed_jobs: Optional[int] = None
    mode: Optional[QueueMode] = None
    on_dead_letter: bool = False


@dataclass
class PerformanceConditions:
    job_pattern: Optional[Pattern] = None
    success_rate: Optional[float] = None
    duration_increase: Optional[float] = None
    concurrency_utilization: Optional[float] = None
    min_runs: int = 1
    time_window: Optional[int] = None


@dataclass
class AlertRule:
    name: str
    severity: AlertSeverity
    channels: List[AlertChannel]
    conditions: Any
    enabled: bool = True
    description: str = ''
    disabled_reason: Optional[str] = None

    def matches_job(self, job_id: str) -> bool:
        pattern = getattr(self.conditions, 'job_pattern', None)
        return pattern is None or pattern.search(job_id) is not None


@dataclass
class JobFailureRule(AlertRule):
    conditions: JobFailureConditions = field(default_factory=JobFailureConditions)


@dataclass
class QueueHealthRule(AlertRule):
    conditions: QueueHealthConditions = field(default_factory=QueueHealthConditions)

    @property
    def fires_on_dead_letter(self) -> bool:
        return self.conditions.on_dead_letter or self.name == DEAD_LETTER_RULE_NAME


@dataclass
class PerformanceRule(AlertRule):
    conditions: PerformanceConditions = field(default_factory=PerformanceConditions)


@dataclass
class AlertConfig:
    settings: AlertSettings = field(default_factory=AlertSettings)
    job_failures: List[JobFailureRule] = field(default_factory=list)
    queue_health: List[QueueHealthRule] = field(default_factory=list)
    performance: List[PerformanceRule] = field(default_factory=list)
    source: Optional[str] = None
    error: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def rules(self) -> List[AlertRule]:
        return [*self.job_failures, *self.queue_health, *self.performance]

    @classmethod
    def disabled(cls, source: Optional[str] = None, error: Optional[str] = None) -> 'AlertConfig':
        return cls(source=source, error=error)


def load_alert_config(path: Optional[str]) -> AlertConfig:
    """Read an alerts YAML file. Any problem yields a disabled config."""
    if not path:
        logger.info("No alert configuration path set, alerting disabled")
        return AlertConfig.disabled()

    config_path = Path(path)
    if not config_path.exists():
        logger.warning(f"Alert configuration {path} not found, alerting disabled")
        return AlertConfig.disabled(source=path, error="file not found")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        config = parse_alert_config(data)
    except (yaml.YAMLError, ConfigurationError, OSError) as e:
        logger.error(f"Failed to load alert configuration {path}: {e}")
        return AlertConfig.disabled(source=path, error=str(e))

    config.source = path
    logger.info(
        f"Loaded alert configuration from {path} "
        f"(enabled={config.enabled}, channels={[c.value for c in config.settings.channels]}, "
        f"rules={len(config.rules())})"
    )
    return config


def parse_alert_config(data: Any) -> AlertConfig:
    """Build an AlertConfig from already-parsed YAML data.

    A malformed ``settings`` section raises ConfigurationError. A malformed
    rule only disables that rule.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Alert config must be a mapping")
    if not isinstance(data.get('settings'), dict):
        raise ConfigurationError("Alert config missing 'settings' section")

    config = AlertConfig(settings=_parse_settings(data['settings']))

    for section, attr, rule_type, conditions_type in _RULE_SECTIONS:
        raw_rules = data.get(section) or []
        if not isinstance(raw_rules, list):
            raise ConfigurationError(f"'{section}' must be a list of rules")
        rules = getattr(config, attr)
        for index, raw in enumerate(raw_rules):
            rules.append(_parse_rule(section, index, raw, rule_type, conditions_type, config.settings))

    return config


def _parse_settings(raw: Dict[str, Any]) -> AlertSettings:
    settings = AlertSettings(
        enabled=bool(raw.get('enabled', False)),
        channels=_channels(raw.get('channels') or []),
    )

    slack = raw.get('slack') or {}
    settings.slack = SlackSettings(
        channel=slack.get('channel', SlackSettings.channel),
        username=slack.get('username', SlackSettings.username),
        icon_emoji=slack.get('iconEmoji', SlackSettings.icon_emoji),
    )

    email = raw.get('email') or {}
    settings.email = EmailSettings(
        to=email.get('to', EmailSettings.to),
        from_address=email.get('from'),
    )

    discord = raw.get('discord') or {}
    settings.discord = DiscordSettings(
        username=discord.get('username', DiscordSettings.username),
        avatar_url=discord.get('avatarUrl'),
    )

    throttle = raw.get('throttle')
    if throttle:
        settings.throttle = ThrottleSettings(
            min_interval=_non_negative_int(throttle.get('minInterval', ThrottleSettings.min_interval)),
            max_alerts_per_job_per_hour=_positive_int(
                throttle.get('maxAlertsPerJobPerHour', ThrottleSettings.max_alerts_per_job_per_hour)
            ),
        )

    return settings


def _parse_rule(section, index, raw, rule_type, conditions_type, settings: AlertSettings) -> AlertRule:
    if not isinstance(raw, dict) or not raw.get('name'):
        name = f"{section}[{index}]"
        logger.warning(f"Alert rule {name} has no name, disabling it")
        return rule_type(name=name, severity=AlertSeverity.MEDIUM, channels=[],
                         enabled=False, disabled_reason="rule has no name")

    name = str(raw['name'])
    rule = rule_type(
        name=name,
        severity=AlertSeverity.MEDIUM,
        channels=list(settings.channels),
        enabled=bool(raw.get('enabled', True)),
        description=raw.get('description', ''),
    )

    try:
        rule.severity = AlertSeverity(raw.get('severity', 'medium'))
        if 'channels' in raw:
            rule.channels = _channels(raw['channels'] or [])
        rule.conditions = _parse_conditions(conditions_type, raw.get('conditions') or {})
    except (ConfigurationError, ValueError) as e:
        logger.warning(f"Disabling alert rule '{name}': {e}")
        rule.enabled = False
        rule.disabled_reason = str(e)

    return rule


def _parse_conditions(conditions_type, raw: Dict[str, Any]):
    if not isinstance(raw, dict):
        raise ConfigurationError("conditions must be a mapping")

    keys = _CONDITION_KEYS[conditions_type]
    unknown = sorted(set(raw) - set(keys))
    if unknown:
        raise ConfigurationError(f"unknown condition(s): {', '.join(unknown)}")

    values = {}
    for key, value in raw.items():
        field_name, converter = keys[key]
        values[field_name] = converter(value)

    known = {f.name for f in fields(conditions_type)}
    return conditions_type(**{k: v for k, v in values.items() if k in known})


def _channels(raw) -> List[AlertChannel]:
    if isinstance(raw, str):
        raw = [raw]
    try:
        return [AlertChannel(c) for c in raw]
    except ValueError:
        allowed = ', '.join(c.value for c in AlertChannel)
        raise ConfigurationError(f"invalid channel in {raw} (expected {allowed})")


def _pattern(value) -> Pattern:
    try:
        return re.compile(str(value))
    except re.error as e:
        raise ConfigurationError(f"invalid jobPattern '{value}': {e}")


def _string(value) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"expected a non-empty string, got {value!r}")
    return value


def _boolean(value) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"expected true or false, got {value!r}")
    return value


def _positive_int(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"expected a positive integer, got {value!r}")
    return value


def _non_negative_int(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"expected a non-negative integer, got {value!r}")
    return value


def _positive_number(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"expected a positive number, got {value!r}")
    return float(value)


def _fraction(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 1:
        raise ConfigurationError(f"expected a number between 0 and 1, got {value!r}")
    return float(value)


def _queue_mode(value) -> QueueMode:
    if value not in (QueueMode.PAUSED.value, QueueMode.DRAINING.value):
        raise ConfigurationError(f"mode must be 'paused' or 'draining', got {value!r}")
    return QueueMode(value)


# YAML key -> (field name, converter) per rule category
_CONDITION_KEYS = {
    JobFailureConditions: {
        'consecutiveFailures': ('consecutive_failures', _positive_int),
        'failureCount': ('failure_count', _positive_int),
        'failureReason': ('failure_reason', _string),
        'jobPattern': ('job_pattern', _pattern),
    },
    QueueHealthConditions: {
        'dlqSize': ('dlq_size', _non_negative_int),
        'pendingJobs': ('pending_jobs', _non_negative_int),
        'delayedJobs': ('delayed_jobs', _non_negative_int),
        'mode': ('mode', _queue_mode),
        'onDeadLetter': ('on_dead_letter', _boolean),
    },
    PerformanceConditions: {
        'jobPattern': ('job_pattern', _pattern),
        'successRate': ('success_rate', _fraction),
        'durationIncrease': ('duration_increase', _positive_number),
        'concurrencyUtilization': ('concurrency_utilization', _fraction),
        'minRuns': ('min_runs', _positive_int),
        'timeWindow': ('time_window', _positive_int),
    },
}

_RULE_SECTIONS = (
    ('jobFailures', 'job_failures', JobFailureRule, JobFailureConditions),
    ('queueHealth', 'queue_health', QueueHealthRule, QueueHealthConditions),
    ('performance', 'performance', PerformanceRule, PerformanceConditions),
)

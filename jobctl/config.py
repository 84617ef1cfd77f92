from typing import Dict, List, Optional
from .models import Config, RetryBackoff
from .db import Database
from .exceptions import ConfigurationError


DEFAULT_DB_PATH = '.data/jobctl.db'

_INT_KEYS = (
    'max_concurrency', 'default_max_attempts', 'retry_delay_ms', 'poll_interval_ms',
    'health_check_interval_seconds', 'retention_days', 'cleanup_interval_seconds',
    'retry_interval_seconds', 'retry_max_retries', 'retry_lookback_hours', 'smtp_port',
)


class ConfigManager:
    def __init__(self, database: Database):
        self.db = database
        self._defaults = {
            'db_path': database.db_path,
            'max_concurrency': '5',
            'default_max_attempts': '3',
            'retry_delay_ms': '5000',
            'retry_backoff': 'exponential',
            'poll_interval_ms': '500',
            'log_level': 'INFO',
            'alerts_config_path': 'alerts.yaml',
            'health_check_interval_seconds': '60',
            'retention_days': '30',
            'cleanup_interval_seconds': '86400',
            'retry_interval_seconds': '3600',
            'retry_max_retries': '3',
            'retry_lookback_hours': '24',
            'retry_exclude_jobs': 'maintenance.cleanup,maintenance.retry',
            'smtp_port': '25',
        }

    def get(self, key: str) -> Optional[str]:
        with self.db.connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT value FROM config WHERE key = ?", (key,))
            row = cursor.fetchone()
            if row:
                return row[0]
            return self._defaults.get(key)

    def set(self, key: str, value: str):
        self._validate(key, value)
        with self.db.transaction() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO config (key, value)
                VALUES (?, ?)
            """, (key, value))

    def _validate(self, key: str, value: str):
        if key in _INT_KEYS:
            try:
                number = int(value)
            except ValueError:
                raise ConfigurationError(f"'{key}' must be an integer, got '{value}'")
            if number < 0 or (key == 'max_concurrency' and number == 0):
                raise ConfigurationError(f"'{key}' must be positive, got '{value}'")
        if key == 'retry_backoff':
            allowed = [b.value for b in RetryBackoff]
            if value not in allowed:
                raise ConfigurationError(f"'retry_backoff' must be one of {', '.join(allowed)}")

    def list_all(self) -> Dict[str, str]:
        result = self._defaults.copy()

        with self.db.connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT key, value FROM config")
            for row in cursor.fetchall():
                result[row[0]] = row[1]

        return result

    def get_config(self) -> Config:
        config_dict = self.list_all()

        return Config(
            db_path=config_dict.get('db_path', DEFAULT_DB_PATH),
            max_concurrency=int(config_dict.get('max_concurrency', '5')),
            default_max_attempts=int(config_dict.get('default_max_attempts', '3')),
            retry_delay_ms=int(config_dict.get('retry_delay_ms', '5000')),
            retry_backoff=config_dict.get('retry_backoff', 'exponential'),
            poll_interval_ms=int(config_dict.get('poll_interval_ms', '500')),
            log_dir=config_dict.get('log_dir') or None,
            log_level=config_dict.get('log_level', 'INFO'),
            alerts_config_path=config_dict.get('alerts_config_path', 'alerts.yaml'),
            health_check_interval_seconds=int(config_dict.get('health_check_interval_seconds', '60')),
            retention_days=int(config_dict.get('retention_days', '30')),
            cleanup_interval_seconds=int(config_dict.get('cleanup_interval_seconds', '86400')),
            retry_interval_seconds=int(config_dict.get('retry_interval_seconds', '3600')),
            retry_max_retries=int(config_dict.get('retry_max_retries', '3')),
            retry_lookback_hours=int(config_dict.get('retry_lookback_hours', '24')),
            retry_exclude_jobs=_split_list(config_dict.get('retry_exclude_jobs', '')),
            jobs_module=config_dict.get('jobs_module') or None,
            slack_webhook_url=config_dict.get('slack_webhook_url') or None,
            discord_webhook_url=config_dict.get('discord_webhook_url') or None,
            smtp_host=config_dict.get('smtp_host') or None,
            smtp_port=int(config_dict.get('smtp_port', '25')),
            smtp_from=config_dict.get('smtp_from') or None,
        )


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]

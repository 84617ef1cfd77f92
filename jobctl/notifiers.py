import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Optional

import requests

from .exceptions import NotificationError
from .logging_utils import get_logger
from .models import Config


logger = get_logger('notifiers')

REQUEST_TIMEOUT = 10


class SlackNotifier:
    """Posts messages to a Slack incoming webhook."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = REQUEST_TIMEOUT):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def is_enabled(self) -> bool:
        return bool(self.webhook_url)

    def send(self, channel: str, text: str, username: Optional[str] = None,
             icon_emoji: Optional[str] = None):
        payload = {'channel': channel, 'text': text}
        if username:
            payload['username'] = username
        if icon_emoji:
            payload['icon_emoji'] = icon_emoji

        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        if response.status_code >= 300:
            raise NotificationError(
                f"Slack webhook returned {response.status_code}: {response.text or 'no body'}"
            )
        logger.debug(f"Sent Slack message to {channel}: {text[:40]}...")


class DiscordNotifier:
    """Posts embeds to a Discord webhook. Discord answers 204 on success."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = REQUEST_TIMEOUT):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def is_enabled(self) -> bool:
        return bool(self.webhook_url)

    def send(self, text: str, username: Optional[str] = None, avatar_url: Optional[str] = None,
             color: Optional[int] = None, title: Optional[str] = None):
        embed = {'description': text}
        if title:
            embed['title'] = title
        if color is not None:
            embed['color'] = color

        payload = {'embeds': [embed]}
        if username:
            payload['username'] = username
        if avatar_url:
            payload['avatar_url'] = avatar_url

        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        if response.status_code >= 300:
            raise NotificationError(
                f"Discord webhook returned {response.status_code}: {response.text or 'no body'}"
            )
        logger.debug(f"Sent Discord message: {(title or text)[:40]}...")


class EmailNotifier:
    def __init__(self, host: Optional[str] = None, port: int = 25,
                 from_address: Optional[str] = None, timeout: float = REQUEST_TIMEOUT):
        self.host = host
        self.port = port
        self.from_address = from_address
        self.timeout = timeout

    def is_enabled(self) -> bool:
        return bool(self.host and self.from_address)

    def send(self, to: str, subject: str, body: str, from_address: Optional[str] = None):
        message = EmailMessage()
        message['From'] = from_address or self.from_address
        message['To'] = to
        message['Subject'] = subject
        message.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.send_message(message)
        logger.debug(f"Sent email to {to}: {subject}")


@dataclass
class Notifiers:
    slack: SlackNotifier = field(default_factory=SlackNotifier)
    email: EmailNotifier = field(default_factory=EmailNotifier)
    discord: DiscordNotifier = field(default_factory=DiscordNotifier)

    @classmethod
    def from_config(cls, config: Config) -> 'Notifiers':
        return cls(
            slack=SlackNotifier(config.slack_webhook_url),
            email=EmailNotifier(config.smtp_host, config.smtp_port, config.smtp_from),
            discord=DiscordNotifier(config.discord_webhook_url),
        )

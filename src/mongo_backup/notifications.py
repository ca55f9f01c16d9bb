from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr
from typing import Callable, Optional

import aiosmtplib

from .config import MailConfig

LOG = logging.getLogger(__name__)

SUBJECT_FAILED = "MongoDB Backup Failed"
SUBJECT_SUCCESS = "MongoDB Backup Successful"
SUBJECT_FILE_SUCCESS = "MongoDB File Backup Successful"

SENDER_NAME = "Backup Alert"


class EmailNotifier:
    """Sends one plain-text alert per run outcome to the operator."""

    def __init__(self, config: MailConfig, clock: Optional[Callable[[], datetime]] = None) -> None:
        if not config.enabled:
            raise ValueError("Mail host and alert recipient must be configured")
        self._config = config
        self._clock = clock or datetime.now

    def build_message(self, subject: str, body: str) -> EmailMessage:
        sender = self._config.user or f"backup@{self._config.host}"
        message = EmailMessage()
        message["From"] = formataddr((SENDER_NAME, sender))
        message["To"] = self._config.recipient
        message["Subject"] = subject
        message.set_content(f"{body}\n\nTime: {self._clock().strftime('%Y-%m-%d %H:%M:%S')}")
        return message

    def notify(self, subject: str, body: str) -> bool:
        message = self.build_message(subject, body)
        try:
            asyncio.run(self._send(message))
        except (aiosmtplib.SMTPException, OSError) as exc:
            LOG.error("Email send failed: %s", exc)
            return False
        LOG.info("Email sent: %s", subject)
        return True

    async def _send(self, message: EmailMessage) -> None:
        credentials = {}
        if self._config.user and self._config.password:
            credentials = {"username": self._config.user, "password": self._config.password}
        await aiosmtplib.send(
            message,
            hostname=self._config.host,
            port=self._config.port,
            start_tls=self._config.start_tls,
            timeout=30,
            **credentials,
        )


def build_notifier(config: MailConfig) -> Optional[EmailNotifier]:
    if not config.enabled:
        return None
    return EmailNotifier(config)

"""
Transactional email clients.

``ResendMailer`` talks to the Resend HTTP API; ``LoggingMailer`` is the
development fallback when no API key is configured; ``InMemoryMailer`` records
messages for tests.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Protocol

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds


class MailerError(Exception):
    """Raised when the email provider rejects or fails a send."""


class Mailer(Protocol):
    def send(self, to: str, subject: str, body: str) -> dict:
        ...


@dataclass
class ResendMailer:
    api_key: str
    from_email: str
    api_url: str = "https://api.resend.com/emails"

    def send(self, to: str, subject: str, body: str) -> dict:
        try:
            response = requests.post(
                self.api_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "from": self.from_email,
                    "to": [to],
                    "subject": subject,
                    "text": body,
                },
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise MailerError(f"Resend request failed: {exc}") from exc

        if not response.ok:
            raise MailerError(f"Resend API error: {response.status_code} {response.text}")
        logger.info("Email sent to %s via Resend", to)
        return response.json()


@dataclass
class LoggingMailer:
    """Writes messages to the log instead of sending them."""

    from_email: str

    def send(self, to: str, subject: str, body: str) -> dict:
        logger.warning(
            "Email provider not configured; logging message instead.\nFrom: %s\nTo: %s\nSubject: %s\n\n%s",
            self.from_email,
            to,
            subject,
            body,
        )
        return {
            "id": f"logged-{uuid.uuid4().hex}",
            "timestamp": time.time(),
            "method": "log",
        }


@dataclass
class InMemoryMailer:
    """Test double; addresses in ``fail_for`` raise ``MailerError``."""

    outbox: list[dict] = field(default_factory=list)
    fail_for: set[str] = field(default_factory=set)

    def send(self, to: str, subject: str, body: str) -> dict:
        if to in self.fail_for:
            raise MailerError(f"Simulated failure for {to}")
        message = {
            "id": uuid.uuid4().hex,
            "to": to,
            "subject": subject,
            "body": body,
        }
        self.outbox.append(message)
        return {"id": message["id"]}

"""
Notification Channels — email delivery capability.

A channel delivers one rendered message to one or many recipients and
reports success as a bool. ``send`` never raises: transport errors are
logged and turned into ``False`` so callers can treat delivery as
best-effort.
"""

import asyncio
from abc import ABC, abstractmethod

import sendgrid
import structlog
from sendgrid.helpers.mail import Mail

logger = structlog.get_logger()


def normalize_recipients(to: str | list[str] | tuple[str, ...]) -> list[str]:
    if isinstance(to, str):
        to = [part for part in to.replace(";", ",").split(",")]
    seen: dict[str, None] = {}
    for address in to:
        address = address.strip()
        if address:
            seen.setdefault(address, None)
    return list(seen)


class NotificationChannel(ABC):
    """Deliver a rendered HTML message. Must not raise."""

    @abstractmethod
    async def send(self, to: str | list[str], subject: str, html_body: str) -> bool:
        ...


class SendGridChannel(NotificationChannel):
    """Email via SendGrid, one personalization per recipient list."""

    def __init__(self, api_key: str, from_email: str, timeout_seconds: float = 15.0):
        self.api_key = api_key
        self.from_email = from_email
        self.timeout_seconds = timeout_seconds

    def _send_sync(self, recipients: list[str], subject: str, html_body: str) -> bool:
        sg = sendgrid.SendGridAPIClient(api_key=self.api_key)
        email = Mail(
            from_email=self.from_email,
            to_emails=recipients,
            subject=subject,
            html_content=html_body,
        )
        response = sg.send(email)
        return response.status_code in (200, 201, 202)

    async def send(self, to, subject, html_body):
        recipients = normalize_recipients(to)
        if not recipients:
            return False
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._send_sync, recipients, subject, html_body),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("email.send_failed", recipients=len(recipients), subject=subject, error=str(exc))
            return False


class LogChannel(NotificationChannel):
    """Logs messages instead of sending them (local dev, no API key)."""

    async def send(self, to, subject, html_body):
        recipients = normalize_recipients(to)
        if not recipients:
            return False
        logger.info("email.logged", recipients=recipients, subject=subject, body_length=len(html_body))
        return True

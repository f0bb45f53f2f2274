"""Mail transport collaborators for dunning notifications.

:class:`SMTPMailer` delivers through stdlib ``smtplib`` with STARTTLS,
running the blocking session in a worker thread.  :class:`MockMailer`
delivers nothing and reports ``mocked=True`` so audit entries distinguish
dev/test sends from real ones.
"""

from __future__ import annotations

import asyncio
import email.mime.multipart
import email.mime.text
import email.utils
import logging
import smtplib
from dataclasses import dataclass, field
from typing import Protocol

from billing_engine.config import Settings
from billing_engine.errors import MailDeliveryError

logger = logging.getLogger(__name__)

_PLAIN_FALLBACK = "This notification is formatted as HTML. Please open it in an HTML-capable mail client."


@dataclass(frozen=True)
class MailResult:
    """Outcome of one send: exactly one of ``delivered`` / ``mocked`` is true."""

    delivered: bool
    mocked: bool
    message_id: str | None = None


class Mailer(Protocol):
    async def send(self, to: str, subject: str, html: str) -> MailResult: ...


@dataclass
class MockMailer:
    """Records sends in memory instead of delivering them."""

    sent: list[tuple[str, str, str]] = field(default_factory=list)

    async def send(self, to: str, subject: str, html: str) -> MailResult:
        self.sent.append((to, subject, html))
        logger.info("Mock mail to=%s subject=%r", to, subject)
        return MailResult(delivered=False, mocked=True)


class SMTPMailer:
    """Deliver HTML mail over SMTP.

    Parameters
    ----------
    host, port:
        SMTP server address.
    username, password:
        Login credentials; login is skipped when *username* is empty.
    sender:
        ``From`` header, e.g. ``Billing <no-reply@example.com>``.
    starttls:
        Upgrade the connection with STARTTLS before login.
    timeout:
        Socket timeout in seconds.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        username: str,
        password: str,
        sender: str,
        starttls: bool = True,
        timeout: float = 15.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._sender = sender
        self._starttls = starttls
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> SMTPMailer:
        return cls(
            settings.smtp_host,
            settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password.get_secret_value(),
            sender=settings.mail_from,
            starttls=settings.smtp_starttls,
            timeout=settings.smtp_timeout,
        )

    def _build(self, to: str, subject: str, html: str) -> email.mime.multipart.MIMEMultipart:
        msg = email.mime.multipart.MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self._sender
        msg["To"] = to
        msg["Date"] = email.utils.formatdate(localtime=False)
        msg["Message-ID"] = email.utils.make_msgid(domain=self._host or None)
        msg.attach(email.mime.text.MIMEText(_PLAIN_FALLBACK, "plain", "utf-8"))
        msg.attach(email.mime.text.MIMEText(html, "html", "utf-8"))
        return msg

    def _send_sync(self, to: str, subject: str, html: str) -> str:
        msg = self._build(to, subject, html)
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
            if self._starttls:
                server.starttls()
            if self._username:
                server.login(self._username, self._password)
            server.sendmail(email.utils.parseaddr(self._sender)[1], [to], msg.as_string())
        return msg["Message-ID"]

    async def send(self, to: str, subject: str, html: str) -> MailResult:
        """Deliver one message.

        Raises
        ------
        MailDeliveryError
            If the SMTP exchange fails.
        """
        try:
            message_id = await asyncio.to_thread(self._send_sync, to, subject, html)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"SMTP delivery to {to} failed: {exc}") from exc
        logger.info("Mail delivered to=%s id=%s", to, message_id)
        return MailResult(delivered=True, mocked=False, message_id=message_id)


def build_mailer(settings: Settings) -> Mailer:
    """Return the mailer selected by ``BILLING_MAIL_MOCK``."""
    if settings.mail_mock:
        return MockMailer()
    return SMTPMailer.from_settings(settings)

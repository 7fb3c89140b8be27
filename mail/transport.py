"""
mail/transport.py -- SMTP delivery for transactional email.

The transport is a black box to the rest of the system:
send(to, subject, html) -> bool. It never raises for delivery problems; the
queue decides whether to retry based on the boolean.

When SMTP is not configured (local development, tests) the message is logged
instead of sent and counts as delivered.

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("masterauth.mail.transport")


class MailTransport(Protocol):
    def send(self, to: str, subject: str, html: str) -> bool: ...


def redact_email(email: str) -> str:
    """Redact an address for logging: 'alice@x.com' -> 'al***@x.com'."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SmtpTransport:
    """Send HTML email through an SMTP relay (STARTTLS or implicit TLS on 465)."""

    def __init__(
        self,
        host: str = "",
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        sender: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.sender = sender or user
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpTransport":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender=settings.sender_email,
            timeout=settings.smtp_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.sender)

    def send(self, to: str, subject: str, html: str) -> bool:
        """Deliver one message. Returns True on success, False on any SMTP/network failure."""
        if not self.is_configured:
            logger.info("SMTP not configured; would send %r to %s", subject, redact_email(to))
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.attach(MIMEText(html, "html", "utf-8"))

        try:
            if self.port == 465:
                context = ssl.create_default_context()
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    self._deliver(server, to, msg)
            else:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    if self.use_tls:
                        server.starttls(context=ssl.create_default_context())
                    self._deliver(server, to, msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP delivery to %s failed: %s", redact_email(to), exc)
            return False
        logger.info("Sent %r to %s", subject, redact_email(to))
        return True

    def _deliver(self, server: smtplib.SMTP, to: str, msg: MIMEMultipart) -> None:
        if self.user and self.password:
            server.login(self.user, self.password)
        server.sendmail(self.sender, [to], msg.as_string())

"""
auth/mailer.py -- Mail delivery collaborator for activation and reset links.

The auth core only needs two messages, so the contract is two methods rather
than a general "send any email" API. Bodies are plain text with one link --
no template engine.

Implementations:
  SmtpMailer -- stdlib smtplib with optional STARTTLS and login.
  LogMailer  -- dev mode when SMTP_HOST is empty: logs a redacted line and
                keeps the link at DEBUG level so a developer can click it.

Every delivery failure is raised as MailError. The service calls the mailer
only after the core write has committed, so a MailError never undoes it.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import TYPE_CHECKING, Protocol

from auth.errors import MailError
from auth.store import mask_email

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("smerauth.auth.mailer")


class Mailer(Protocol):
    def send_activation(self, to_email: str, name: str, link: str) -> None: ...

    def send_password_reset(self, to_email: str, link: str) -> None: ...


def _activation_body(name: str, link: str) -> str:
    greeting = f"Hello, {name}!" if name else "Hello!"
    return f"{greeting}\n\nConfirm your email address by opening this link:\n{link}\n"


def _reset_body(link: str) -> str:
    return (
        "A password reset was requested for your account.\n\n"
        f"Set a new password here:\n{link}\n\n"
        "If you did not request this, ignore this email.\n"
    )


class SmtpMailer:
    """Sends mail through an SMTP relay.

    A new connection per message: signup and reset are rare, and a pooled
    SMTP session would need keep-alive handling for little gain.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        from_addr: str = "no-reply@localhost",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_addr = from_addr
        self.timeout = timeout

    def send_activation(self, to_email: str, name: str, link: str) -> None:
        self._send(to_email, "Email confirmation", _activation_body(name, link))

    def send_password_reset(self, to_email: str, link: str) -> None:
        self._send(to_email, "Password reset", _reset_body(link))

    def _send(self, to_email: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_addr
        msg["To"] = to_email
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Mail to %s failed (%s): %s", mask_email(to_email), subject, exc.__class__.__name__)
            raise MailError() from exc
        logger.info("Mail sent to %s (%s)", mask_email(to_email), subject)


class LogMailer:
    """Dev-mode mailer: nothing leaves the process."""

    def send_activation(self, to_email: str, name: str, link: str) -> None:
        logger.info("[dev mail] activation for %s", mask_email(to_email))
        logger.debug("[dev mail] activation link: %s", link)

    def send_password_reset(self, to_email: str, link: str) -> None:
        logger.info("[dev mail] password reset for %s", mask_email(to_email))
        logger.debug("[dev mail] reset link: %s", link)


def build_mailer(settings: Settings) -> Mailer:
    """Return an SmtpMailer when SMTP_HOST is set, otherwise a LogMailer."""
    if not settings.smtp_host:
        logger.warning("SMTP_HOST not set -- activation and reset mail will only be logged")
        return LogMailer()
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        from_addr=settings.mail_from,
        timeout=settings.smtp_timeout_seconds,
    )

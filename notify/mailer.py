"""
notify/mailer.py -- Outbound account notifications.

The auth core depends only on the Notifier protocol: send(kind, recipient,
variables). Two implementations:

  SmtpNotifier -- renders a Jinja2 template from notify/templates/ and sends
      it over SMTP with STARTTLS. Used when SMTP_HOST is configured.
  LogNotifier  -- logs the notification instead of sending it. Used in
      development and whenever SMTP is not configured.

Delivery is fire-and-report: a failure raises AuthError(INTERNAL) to the
caller but never rolls back the mutation that triggered it (the service calls
send() only after its write has committed).

Layer rule: may import from auth.errors and core/. auth.service imports only
NotificationKind and the Notifier protocol; the concrete notifier is injected.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from enum import Enum
from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from auth.errors import AuthError, ErrorKind
from core.config import Settings

_TEMPLATE_DIR = Path(__file__).parent / "templates"


class NotificationKind(str, Enum):
    REGISTRATION = "registration"
    RESET_REQUEST = "reset-request"
    RESET_CONFIRMATION = "reset-confirmation"


_SUBJECTS: dict[NotificationKind, str] = {
    NotificationKind.REGISTRATION: "Welcome",
    NotificationKind.RESET_REQUEST: "Password Reset",
    NotificationKind.RESET_CONFIRMATION: "Password Reset Confirmation",
}


class Notifier(Protocol):
    def send(self, kind: NotificationKind, recipient: str, variables: dict) -> None: ...


_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)


def render(kind: NotificationKind, variables: dict) -> str:
    """Render the HTML body for a notification kind."""
    return _env.get_template(f"{kind.value}.html").render(**variables)


class SmtpNotifier:
    """Send notifications as HTML email over SMTP."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "no-reply@stepguard.local",
        app_name: str = "StepGuard",
        timeout: int = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.app_name = app_name
        self.timeout = timeout
        self.logger = logger or logging.getLogger("stepguard.notify")

    def build_message(self, kind: NotificationKind, recipient: str, variables: dict) -> EmailMessage:
        html = render(kind, {"app_name": self.app_name, "email": recipient, **variables})
        msg = EmailMessage()
        msg["Subject"] = f"{self.app_name}: {_SUBJECTS[kind]}"
        msg["From"] = self.sender
        msg["To"] = recipient
        msg.set_content(f"{_SUBJECTS[kind]} -- view this message in an HTML-capable mail client.")
        msg.add_alternative(html, subtype="html")
        return msg

    def send(self, kind: NotificationKind, recipient: str, variables: dict) -> None:
        try:
            msg = self.build_message(kind, recipient, variables)
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls(context=ssl.create_default_context())
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (OSError, smtplib.SMTPException, TemplateError) as exc:
            self.logger.exception("Failed to send %s notification", kind.value)
            raise AuthError(ErrorKind.INTERNAL, "An unexpected error occurred.", exc) from exc
        self.logger.info("Sent %s notification", kind.value)


class LogNotifier:
    """Log notifications instead of delivering them. Variables are never logged."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("stepguard.notify")

    def send(self, kind: NotificationKind, recipient: str, variables: dict) -> None:
        self.logger.info("Notification %s for %s (delivery disabled)", kind.value, recipient)


def build_notifier(settings: Settings, logger: logging.Logger | None = None) -> Notifier:
    """Pick SMTP delivery when SMTP_HOST is configured, logging otherwise."""
    if settings.smtp_host:
        return SmtpNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            sender=settings.mail_from,
            app_name=settings.totp_issuer,
            logger=logger,
        )
    return LogNotifier(logger=logger)

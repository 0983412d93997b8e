"""
mailer/mailer.py -- Templated transactional e-mail over SMTP.

Each template under mailer/templates/ defines three jinja2 blocks:
  subject     -- one line, whitespace trimmed
  plain_body  -- text/plain part
  html_body   -- text/html part (autoescaped)

Token templates also take `ttl` (a timedelta), rendered with the `duration`
filter so the mail always quotes the configured lifetime.

Mailer.send() is synchronous and raises on failure. Route handlers never
call it directly; they submit a closure to core.worker.TaskDispatcher, and
the closure logs any exception from send().

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import smtplib
from datetime import timedelta
from email.message import EmailMessage
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from core.config import Settings

logger = logging.getLogger("tokenward.mailer")

_TEMPLATE_DIR = Path(__file__).parent / "templates"


def format_duration(ttl: timedelta) -> str:
    """Render a TTL in the largest whole unit: "3 days", "36 hours", "45 minutes"."""
    seconds = int(ttl.total_seconds())
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size and seconds % size == 0:
            count = seconds // size
            return f"{count} {unit}" + ("" if count == 1 else "s")
    return f"{seconds} second" + ("" if seconds == 1 else "s")


_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
    undefined=StrictUndefined,
)
_env.filters["duration"] = format_duration


def render(template_name: str, data: dict[str, Any]) -> tuple[str, str, str]:
    """Render a template's subject, plain_body, and html_body blocks."""
    template = _env.get_template(template_name)
    context = template.new_context(data)
    parts = []
    for block in ("subject", "plain_body", "html_body"):
        parts.append("".join(template.blocks[block](context)).strip())
    return parts[0], parts[1], parts[2]


class Mailer:
    """SMTP sender bound to one server and one From address.

    Usage:
        mailer = Mailer.from_settings(get_settings())
        mailer.send("ada@example.com", "user_welcome.html", {"activation_token": "...", "user_id": 1})
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        sender: str,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> Mailer:
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            sender=settings.smtp_sender,
        )

    def build_message(self, recipient: str, template_name: str, data: dict[str, Any]) -> EmailMessage:
        subject, plain_body, html_body = render(template_name, data)
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = recipient
        msg.set_content(plain_body)
        msg.add_alternative(html_body, subtype="html")
        return msg

    def send(self, recipient: str, template_name: str, data: dict[str, Any]) -> None:
        """Render template_name with data and deliver it to recipient.

        STARTTLS and login are used only when a username is configured.
        Raises smtplib.SMTPException / OSError on delivery failure.
        """
        msg = self.build_message(recipient, template_name, data)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.username:
                server.starttls()
                server.login(self.username, self.password)
            server.send_message(msg)
        logger.info("Sent %s to user mailbox", template_name)

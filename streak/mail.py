"""Transactional email.

Sending is best effort: a failed delivery is logged and reported as False,
it never raises into the operation that asked for it.
"""

import asyncio
import json
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional

from .log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Message:
    to: str
    subject: str
    body: str
    html: bool = False


class Mailer:
    """Sends messages through an SMTP relay."""

    def __init__(
        self,
        sender: str,
        host: Optional[str] = None,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
    ):
        self.sender = sender
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls

    async def send(self, message: Message) -> bool:
        if not self._host:
            logger.info("mail_not_configured", to=message.to, subject=message.subject)
            return False
        try:
            await asyncio.to_thread(self._deliver, self._build(message))
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("mail_send_failed", to=message.to, subject=message.subject, error=str(exc))
            return False
        logger.info("mail_sent", to=message.to, subject=message.subject)
        return True

    def _build(self, message: Message) -> EmailMessage:
        email = EmailMessage()
        email["From"] = self.sender
        email["To"] = message.to
        email["Subject"] = message.subject
        if message.html:
            email.set_content(message.body, subtype="html")
        else:
            email.set_content(message.body)
        return email

    def _deliver(self, email: EmailMessage):
        with smtplib.SMTP(host=self._host, port=self._port, timeout=30) as conn:
            if self._use_tls:
                conn.starttls()
            if self._username:
                conn.login(self._username, self._password or "")
            conn.send_message(email)


def new_user_message(admin_email: str, email: str, source: Optional[str]) -> Message:
    return Message(
        to=admin_email,
        subject=f"{email} has joined Writing Streak!",
        body=f"{email} has signed up (source: {source or 'unknown'}).",
    )


def reset_password_message(email: str, public_url: str, token: str) -> Message:
    link = f"{public_url}/reset-password?token={token}"
    return Message(
        to=email,
        subject="Reset your Writing Streak password",
        body=(
            f'Click <a href="{link}">this link</a> to reset your password. '
            "<br/> (link is valid for 1 hour)"
        ),
        html=True,
    )


def upgraded_message(admin_email: str, email: str) -> Message:
    text = f"{email} has upgraded their Writing Streak account!"
    return Message(to=admin_email, subject=text, body=text)


def cancelled_message(admin_email: str, email: str) -> Message:
    text = f"{email} has cancelled their Writing Streak subscription!"
    return Message(to=admin_email, subject=text, body=text)


def payment_failed_message(admin_email: str, payload: dict) -> Message:
    return Message(
        to=admin_email,
        subject="Someone's payment has failed",
        body=json.dumps(payload, indent=4, sort_keys=True),
    )

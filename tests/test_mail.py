import smtplib

import pytest

from streak.mail import Mailer, Message, payment_failed_message, reset_password_message


class RecordingSMTP:
    sent = []

    def __init__(self, host, port, timeout):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, username, password):
        pass

    def send_message(self, message):
        RecordingSMTP.sent.append(message)


@pytest.mark.asyncio
async def test_send_delivers_through_smtp(monkeypatch):
    RecordingSMTP.sent = []
    monkeypatch.setattr(smtplib, "SMTP", RecordingSMTP)
    mailer = Mailer(sender="hello@example.com", host="smtp.example.com", username="u", password="p")

    assert await mailer.send(Message(to="a@x.com", subject="Hi", body="Hello"))
    message = RecordingSMTP.sent[0]
    assert message["From"] == "hello@example.com"
    assert message["To"] == "a@x.com"
    assert message["Subject"] == "Hi"


@pytest.mark.asyncio
async def test_send_failure_is_reported_not_raised(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("no relay")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    mailer = Mailer(sender="hello@example.com", host="smtp.example.com")
    assert await mailer.send(Message(to="a@x.com", subject="Hi", body="Hello")) is False


@pytest.mark.asyncio
async def test_unconfigured_mailer_drops_messages():
    mailer = Mailer(sender="hello@example.com")
    assert await mailer.send(Message(to="a@x.com", subject="Hi", body="Hello")) is False


def test_reset_message_links_to_token():
    message = reset_password_message("a@x.com", "https://streak.test", "abc123")
    assert message.html
    assert 'href="https://streak.test/reset-password?token=abc123"' in message.body
    assert "valid for 1 hour" in message.body


def test_payment_failed_message_includes_event():
    message = payment_failed_message("admin@example.com", {"id": "evt_1", "type": "invoice.payment_failed"})
    assert message.to == "admin@example.com"
    assert '"id": "evt_1"' in message.body

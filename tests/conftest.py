"""Shared fixtures for mailresponder tests."""

from email.message import EmailMessage

import pytest

from mailresponder.config import AccountConfig, Config
from mailresponder.email_parser import EmailParser
from mailresponder.storage import Storage


def make_raw_email(
    subject="[AI_REQUEST] Opening hours",
    sender="Alice Example <alice@example.com>",
    to="support@example.com",
    body="Hello,\n\nWhen are you open on Saturday?\n\nAlice",
    message_id="<msg-1@example.com>",
    **headers,
) -> bytes:
    """Build raw RFC 5322 bytes for tests."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = subject
    msg["Date"] = "Mon, 1 Jan 2024 12:00:00 +0000"
    if message_id:
        msg["Message-ID"] = message_id
    for name, value in headers.items():
        msg[name.replace("_", "-")] = value
    msg.set_content(body)
    return msg.as_bytes()


def make_inbound(source_id="1", **kwargs):
    """Parse a test message into an InboundMessage."""
    return EmailParser().parse_bytes(source_id, make_raw_email(**kwargs))


@pytest.fixture
def account():
    return AccountConfig(
        name="support",
        email_address="support@example.com",
        display_name="Example Support",
        imap={"host": "imap.example.com", "password": "secret"},
        smtp={"host": "smtp.example.com", "password": "secret"},
    )


@pytest.fixture
def config(account, tmp_path):
    return Config(
        accounts=[account],
        database_path=str(tmp_path / "test.db"),
        logging={"audit_file": str(tmp_path / "audit.jsonl")},
    )


@pytest.fixture
def storage(tmp_path):
    return Storage(tmp_path / "state.db")

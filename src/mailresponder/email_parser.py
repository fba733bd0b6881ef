"""Email parsing and normalization."""

from __future__ import annotations

import email
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses, parseaddr, parsedate_to_datetime

logger = logging.getLogger(__name__)


def subject_matches(subject: str | None, prefix: str | None) -> bool:
    """Check a subject against a required prefix (empty prefix matches all)."""
    if not prefix:
        return True
    return (subject or "").strip().startswith(prefix)


@dataclass
class EmailAddress:
    """Parsed email address with display name."""

    name: str
    address: str
    domain: str

    @classmethod
    def parse(cls, value: str | None) -> EmailAddress | None:
        """Parse an email address string."""
        if not value:
            return None
        name, addr = parseaddr(value)
        if not addr or "@" not in addr:
            return None
        domain = addr.split("@")[-1].lower()
        return cls(name=name, address=addr.lower(), domain=domain)

    def __str__(self) -> str:
        if self.name:
            return f"{self.name} <{self.address}>"
        return self.address


@dataclass
class InboundMessage:
    """A message normalized from any mail backend."""

    # Identifiers
    source_id: str
    message_id: str = ""
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    thread_id: str | None = None

    # Addresses
    from_addr: EmailAddress | None = None
    to_addrs: list[EmailAddress] = field(default_factory=list)
    reply_to: EmailAddress | None = None

    # Metadata
    subject: str = ""
    date: datetime | None = None
    date_str: str = ""

    # Automation markers
    auto_submitted: str | None = None
    precedence: str | None = None
    list_id: str | None = None

    # Content
    body_text: str = ""

    @property
    def sender_address(self) -> str:
        """Address a reply should go to."""
        if self.reply_to:
            return self.reply_to.address
        return self.from_addr.address if self.from_addr else ""

    @property
    def is_automated(self) -> bool:
        """Check if the message was generated by a machine (RFC 3834)."""
        if self.auto_submitted and self.auto_submitted.lower() != "no":
            return True
        if self.precedence in ("bulk", "junk", "list"):
            return True
        return bool(self.list_id)

    @property
    def dedupe_key(self) -> str:
        """Key used to recognise a message across cycles."""
        return self.message_id or f"source:{self.source_id}"

    def preview(self, length: int = 100) -> str:
        if len(self.body_text) > length:
            return self.body_text[:length] + "..."
        return self.body_text


class EmailParser:
    """Parser for turning raw RFC 5322 messages into InboundMessage."""

    def __init__(self, max_body_chars: int = 20000):
        """Initialize the parser."""
        self.max_body_chars = max_body_chars

    def parse_bytes(self, source_id: str, raw_email: bytes) -> InboundMessage:
        """Parse raw message bytes."""
        message = email.message_from_bytes(raw_email, policy=policy.compat32)
        return self.parse(source_id, message)

    def parse(self, source_id: str, message: Message) -> InboundMessage:
        """Parse an email message into a normalized message."""
        result = InboundMessage(
            source_id=str(source_id),
            message_id=self._decode_header(message.get("Message-ID", "")).strip().strip("<>"),
        )

        # Parse addresses
        result.from_addr = EmailAddress.parse(self._decode_header(message.get("From", "")))
        result.to_addrs = self._parse_address_list(message.get_all("To", []))
        result.reply_to = EmailAddress.parse(self._decode_header(message.get("Reply-To", "")))

        # Parse subject, collapsing folded lines
        subject = self._decode_header(message.get("Subject", ""))
        result.subject = re.sub(r"\s*[\r\n]+\s*", " ", subject).strip()

        # Parse date
        date_str = message.get("Date", "")
        result.date_str = str(date_str)
        try:
            result.date = parsedate_to_datetime(date_str) if date_str else None
        except (ValueError, TypeError):
            result.date = None

        # Parse references
        in_reply_to = self._decode_header(message.get("In-Reply-To", "")).strip().strip("<>")
        result.in_reply_to = in_reply_to or None
        refs = self._decode_header(message.get("References", ""))
        if refs:
            result.references = [r.strip("<>") for r in refs.split() if r.strip()]

        # Automation headers
        result.auto_submitted = self._decode_header(message.get("Auto-Submitted", "")) or None
        result.precedence = self._decode_header(message.get("Precedence", "")).lower() or None
        result.list_id = self._decode_header(message.get("List-Id", "")) or None

        text = self._extract_text_content(message)
        if len(text) > self.max_body_chars:
            text = text[: self.max_body_chars]
        result.body_text = text.strip()

        return result

    def _decode_header(self, value: str | None) -> str:
        """Safely decode an email header."""
        if not value:
            return ""
        try:
            decoded = decode_header(str(value))
            return str(make_header(decoded))
        except Exception:
            # Fallback for malformed headers
            if isinstance(value, bytes):
                return value.decode("utf-8", errors="replace")
            return str(value)

    def _parse_address_list(self, values: list[str]) -> list[EmailAddress]:
        """Parse one or more address headers."""
        results = []
        decoded = [self._decode_header(v) for v in values]
        for name, addr in getaddresses(decoded):
            parsed = EmailAddress.parse(f"{name} <{addr}>" if name else addr)
            if parsed:
                results.append(parsed)
        return results

    def _extract_text_content(self, message: Message) -> str:
        """Extract text content, preferring text/plain over HTML."""
        if message.is_multipart():
            html_fallback = ""
            for part in message.walk():
                if part.is_multipart():
                    continue
                content_disposition = str(part.get("Content-Disposition", ""))

                # Skip attachments
                if "attachment" in content_disposition:
                    continue

                content_type = part.get_content_type()
                if content_type == "text/plain":
                    return self._decode_payload(part)
                if content_type == "text/html" and not html_fallback:
                    html_fallback = self._html_to_text(self._decode_payload(part))
            return html_fallback

        content_type = message.get_content_type()
        if content_type == "text/plain":
            return self._decode_payload(message)
        if content_type == "text/html":
            return self._html_to_text(self._decode_payload(message))
        return ""

    def _decode_payload(self, part: Message) -> str:
        """Safely decode message payload."""
        try:
            payload = part.get_payload(decode=True)
            if payload is None:
                return ""
            if isinstance(payload, bytes):
                charset = part.get_content_charset() or "utf-8"
                try:
                    return payload.decode(charset, errors="replace")
                except (LookupError, UnicodeDecodeError):
                    return payload.decode("utf-8", errors="replace")
            return str(payload)
        except Exception as e:
            logger.warning(f"Failed to decode payload: {e}")
            return ""

    def _html_to_text(self, html_content: str) -> str:
        """Simple HTML to text conversion."""
        # Remove script and style elements
        text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", html_content, flags=re.DOTALL | re.IGNORECASE)
        # Keep line structure for block elements
        text = re.sub(r"<\s*(br|/p|/div|/li)\s*/?>", "\n", text, flags=re.IGNORECASE)
        text = re.sub(r"<[^>]+>", "", text)
        text = html.unescape(text)
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r"\n\s*\n+", "\n\n", text)
        return text.strip()

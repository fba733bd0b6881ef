"""Gmail REST API client.

Talks to the Gmail v1 REST endpoints with a bearer token, so it shares the
token lifecycle of IMAP/SMTP XOAUTH2 accounts.
"""

from __future__ import annotations

import base64
import logging
from email.message import EmailMessage
from typing import TYPE_CHECKING, Any, Collection

import httpx

from mailresponder.api_client import MailAPIClient
from mailresponder.email_parser import EmailParser, InboundMessage, subject_matches

if TYPE_CHECKING:
    from mailresponder.oauth2 import TokenProvider

logger = logging.getLogger(__name__)

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"


class GmailClient(MailAPIClient):
    """Reads and sends mail for the authorized Gmail user."""

    base_url = GMAIL_BASE_URL

    def __init__(
        self,
        token_provider: TokenProvider,
        query: str = "is:unread in:inbox",
        parser: EmailParser | None = None,
        timeout: int = 30,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(token_provider, timeout=timeout, http_client=http_client)
        self.query = query
        self.parser = parser or EmailParser()

    def get_profile(self) -> dict[str, Any]:
        """Return the Gmail profile (emailAddress, messagesTotal, ...)."""
        return self._request("GET", "/profile").json()

    def list_unread(self, limit: int = 50, subject_prefix: str | None = None) -> list[dict[str, str]]:
        """List unread messages as {id, threadId} dicts, newest first."""
        query = self.query
        if subject_prefix:
            # Gmail matches subject words, so the exact prefix is checked after download
            query += ' subject:"{}"'.format(subject_prefix.replace('"', ""))
        response = self._request("GET", "/messages", params={"q": query, "maxResults": limit})
        return response.json().get("messages", [])

    def get_raw(self, message_id: str) -> tuple[bytes, str | None]:
        """Download a message in raw format, returning (mime bytes, thread id)."""
        data = self._request("GET", f"/messages/{message_id}", params={"format": "raw"}).json()
        raw = data.get("raw", "")
        # base64url without guaranteed padding
        padded = raw + "=" * (-len(raw) % 4)
        return base64.urlsafe_b64decode(padded), data.get("threadId")

    def get_unread_messages(
        self,
        limit: int = 50,
        subject_filter: str | None = None,
        exclude: Collection[str] = (),
    ) -> list[InboundMessage]:
        """Fetch and normalize unread messages, oldest first."""
        items = [item for item in self.list_unread(limit + len(exclude), subject_filter) if item["id"] not in exclude]
        messages = []
        for item in reversed(items[:limit]):
            try:
                raw, thread_id = self.get_raw(item["id"])
            except Exception as e:
                logger.error(f"Error fetching Gmail message {item['id']}: {e}")
                continue
            parsed = self.parser.parse_bytes(item["id"], raw)
            if not subject_matches(parsed.subject, subject_filter):
                continue
            parsed.thread_id = thread_id or item.get("threadId")
            messages.append(parsed)
        return messages

    def unread_count(self) -> dict[str, int]:
        """Return total and unread counts for the inbox label."""
        data = self._request("GET", "/labels/INBOX").json()
        return {"total": data.get("messagesTotal", 0), "unseen": data.get("messagesUnread", 0)}

    def mark_as_read(self, message_id: str) -> bool:
        """Remove the UNREAD label from a message."""
        self._request("POST", f"/messages/{message_id}/modify", json={"removeLabelIds": ["UNREAD"]})
        logger.debug(f"Marked Gmail message {message_id} as read")
        return True

    def send_mime(self, message: EmailMessage, thread_id: str | None = None) -> dict[str, Any]:
        """Send a MIME message, keeping it in the original thread when known."""
        body: dict[str, Any] = {"raw": base64.urlsafe_b64encode(message.as_bytes()).decode()}
        if thread_id:
            body["threadId"] = thread_id
        result = self._request("POST", "/messages/send", json=body).json()
        logger.info(f"Email sent to {message['To']} via Gmail API")
        return result

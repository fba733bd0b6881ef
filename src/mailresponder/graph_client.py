"""Microsoft Graph mail client."""

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

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"


class GraphClient(MailAPIClient):
    """Reads and sends mail for the signed-in user through Microsoft Graph."""

    base_url = GRAPH_BASE_URL

    def __init__(
        self,
        token_provider: TokenProvider,
        folder: str = "inbox",
        parser: EmailParser | None = None,
        timeout: int = 30,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(token_provider, timeout=timeout, http_client=http_client)
        self.folder = folder
        self.parser = parser or EmailParser()

    def get_profile(self) -> dict[str, Any]:
        """Return the /me profile of the mailbox owner."""
        return self._request("GET", "/me").json()

    def list_unread_ids(self, limit: int = 50, subject_prefix: str | None = None) -> list[str]:
        """List ids of unread messages in the watched folder."""
        query = "isRead eq false"
        if subject_prefix:
            # OData string literals escape a quote by doubling it
            escaped = subject_prefix.replace("'", "''")
            query += f" and startswith(subject, '{escaped}')"
        response = self._request(
            "GET",
            f"/me/mailFolders/{self.folder}/messages",
            params={"$filter": query, "$top": str(limit), "$select": "id,receivedDateTime"},
        )
        items = response.json().get("value", [])
        # Oldest first so conversations are built in order
        items.sort(key=lambda m: m.get("receivedDateTime", ""))
        return [item["id"] for item in items]

    def get_mime(self, message_id: str) -> bytes:
        """Download the raw MIME content of a message."""
        return self._request("GET", f"/me/messages/{message_id}/$value").content

    def get_unread_messages(
        self,
        limit: int = 50,
        subject_filter: str | None = None,
        exclude: Collection[str] = (),
    ) -> list[InboundMessage]:
        """Fetch and normalize unread messages whose subject starts with the filter."""
        messages = []
        for graph_id in self.list_unread_ids(limit + len(exclude), subject_filter):
            if graph_id in exclude:
                continue
            if len(messages) >= limit:
                break
            try:
                raw = self.get_mime(graph_id)
            except Exception as e:
                logger.error(f"Error fetching Graph message {graph_id}: {e}")
                continue
            message = self.parser.parse_bytes(graph_id, raw)
            if subject_matches(message.subject, subject_filter):
                messages.append(message)
        return messages

    def folder_counts(self) -> dict[str, int]:
        """Return total and unread counts for the watched folder."""
        data = self._request("GET", f"/me/mailFolders/{self.folder}").json()
        return {"total": data.get("totalItemCount", 0), "unseen": data.get("unreadItemCount", 0)}

    def mark_as_read(self, message_id: str) -> bool:
        """Flag a message as read."""
        self._request("PATCH", f"/me/messages/{message_id}", json={"isRead": True})
        logger.debug(f"Marked Graph message {message_id} as read")
        return True

    def send_mime(self, message: EmailMessage) -> None:
        """Send a MIME message through /me/sendMail."""
        payload = base64.b64encode(message.as_bytes())
        self._request(
            "POST",
            "/me/sendMail",
            content=payload,
            headers={"Content-Type": "text/plain"},
        )
        logger.info(f"Email sent to {message['To']} via Microsoft Graph")

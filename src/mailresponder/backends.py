"""Mail backends: one inbound + outbound transport per account."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Collection

from mailresponder.email_parser import EmailParser, InboundMessage
from mailresponder.gmail_client import GmailClient
from mailresponder.graph_client import GraphClient
from mailresponder.imap_client import IMAPClient
from mailresponder.oauth2 import OAuth2Error, TokenProvider
from mailresponder.smtp_sender import SMTPSender, build_mime_message

if TYPE_CHECKING:
    from email.message import EmailMessage

    from mailresponder.config import AccountConfig
    from mailresponder.reply_builder import OutboundReply

logger = logging.getLogger(__name__)


class MailBackend(ABC):
    """Common interface of all mail backends."""

    name = "backend"

    def __init__(self, account: AccountConfig):
        self.account = account
        # Set by create_backend when it had to create the provider itself
        self.owned_token_provider: TokenProvider | None = None

    def __enter__(self) -> MailBackend:
        self.connect()
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Disconnect and close a token provider owned by this backend."""
        try:
            self.disconnect()
        finally:
            if self.owned_token_provider is not None:
                self.owned_token_provider.close()
                self.owned_token_provider = None

    def connect(self) -> None:
        """Open the inbound connection (no-op for stateless HTTP backends)."""

    def disconnect(self) -> None:
        """Release connections."""

    @abstractmethod
    def fetch_unseen(
        self,
        limit: int | None = None,
        subject_filter: str | None = None,
        exclude: Collection[str] = (),
    ) -> list[InboundMessage]:
        """Return unseen messages, oldest first, without marking them seen.

        Only messages whose subject starts with `subject_filter` and whose
        source id is not in `exclude` count towards `limit`.
        """

    @abstractmethod
    def mark_seen(self, message: InboundMessage) -> bool:
        """Mark a message as seen/read on the server."""

    @abstractmethod
    def send(self, reply: OutboundReply) -> None:
        """Deliver a reply from this account."""

    @abstractmethod
    def test_connection(self) -> dict[str, Any]:
        """Check connectivity and return a diagnostics result."""

    def _mime(self, reply: OutboundReply) -> EmailMessage:
        return build_mime_message(
            from_addr=self.account.email_address,
            to=reply.to,
            subject=reply.subject,
            body=reply.body,
            in_reply_to=reply.in_reply_to,
            references=reply.references,
            from_name=self.account.display_name,
        )


def _failure(result: dict[str, Any], error: Exception) -> dict[str, Any]:
    """Fill a diagnostics result from an exception."""
    result["success"] = False
    if isinstance(error, (ValueError, OAuth2Error)):
        result["error"] = "Authentication Failed"
        result["message"] = "Check your username/password and 2FA settings"
        result["details"] = str(error)
    else:
        result["error"] = type(error).__name__
        result["message"] = str(error)
    return result


class ImapSmtpBackend(MailBackend):
    """IMAP for reading, SMTP for sending."""

    name = "imap"

    def __init__(self, account: AccountConfig, token_provider: TokenProvider | None = None):
        super().__init__(account)
        self.token_provider = token_provider
        self.imap = IMAPClient(account.imap, token_provider=token_provider, parser=EmailParser())
        self.smtp = SMTPSender(account.smtp, token_provider=token_provider)

    def connect(self) -> None:
        self.imap.connect()
        self.imap.select_folder(self.account.imap.inbox_folder)

    def disconnect(self) -> None:
        self.imap.disconnect()

    def fetch_unseen(
        self,
        limit: int | None = None,
        subject_filter: str | None = None,
        exclude: Collection[str] = (),
    ) -> list[InboundMessage]:
        return self.imap.get_unseen_messages(limit=limit, subject_filter=subject_filter, exclude=exclude)

    def mark_seen(self, message: InboundMessage) -> bool:
        return self.imap.mark_as_seen(message.source_id)

    def send(self, reply: OutboundReply) -> None:
        self.smtp.send(self._mime(reply))

    def test_connection(self) -> dict[str, Any]:
        imap_result: dict[str, Any] = {
            "protocol": "IMAP",
            "host": self.account.imap.host,
            "port": self.account.imap.port,
            "ssl": self.account.imap.use_ssl,
        }
        inbox = IMAPClient(self.account.imap, token_provider=self.token_provider)
        try:
            with inbox:
                counts = inbox.folder_status(self.account.imap.inbox_folder)
            imap_result.update(
                success=True,
                message="Connection successful",
                totalMessages=counts["total"],
                unreadMessages=counts["unseen"],
            )
        except Exception as e:
            logger.error(f"IMAP test failed for {self.account.email_address}: {e}")
            _failure(imap_result, e)

        smtp_result: dict[str, Any] = {
            "protocol": "SMTP",
            "host": self.account.smtp.host,
            "port": self.account.smtp.port,
            "ssl": self.smtp.uses_implicit_tls,
        }
        try:
            self.smtp.test_connection()
            smtp_result.update(success=True, message="Connection successful")
        except Exception as e:
            logger.error(f"SMTP test failed for {self.account.email_address}: {e}")
            _failure(smtp_result, e)

        return {"imap": imap_result, "smtp": smtp_result}


class GraphBackend(MailBackend):
    """Microsoft Graph for both directions."""

    name = "graph"

    def __init__(self, account: AccountConfig, client: GraphClient):
        super().__init__(account)
        self.client = client

    def disconnect(self) -> None:
        self.client.close()

    def fetch_unseen(
        self,
        limit: int | None = None,
        subject_filter: str | None = None,
        exclude: Collection[str] = (),
    ) -> list[InboundMessage]:
        return self.client.get_unread_messages(limit or 50, subject_filter=subject_filter, exclude=exclude)

    def mark_seen(self, message: InboundMessage) -> bool:
        return self.client.mark_as_read(message.source_id)

    def send(self, reply: OutboundReply) -> None:
        self.client.send_mime(self._mime(reply))

    def test_connection(self) -> dict[str, Any]:
        result: dict[str, Any] = {"protocol": "Microsoft Graph", "host": self.client.base_url}
        try:
            profile = self.client.get_profile()
            counts = self.client.folder_counts()
            result.update(
                success=True,
                message="Connection successful",
                user=profile.get("mail") or profile.get("userPrincipalName"),
                totalMessages=counts["total"],
                unreadMessages=counts["unseen"],
            )
        except Exception as e:
            logger.error(f"Graph test failed for {self.account.email_address}: {e}")
            _failure(result, e)
        return {"api": result}


class GmailBackend(MailBackend):
    """Gmail REST API for both directions."""

    name = "gmail"

    def __init__(self, account: AccountConfig, client: GmailClient):
        super().__init__(account)
        self.client = client

    def disconnect(self) -> None:
        self.client.close()

    def fetch_unseen(
        self,
        limit: int | None = None,
        subject_filter: str | None = None,
        exclude: Collection[str] = (),
    ) -> list[InboundMessage]:
        return self.client.get_unread_messages(limit or 50, subject_filter=subject_filter, exclude=exclude)

    def mark_seen(self, message: InboundMessage) -> bool:
        return self.client.mark_as_read(message.source_id)

    def send(self, reply: OutboundReply) -> None:
        self.client.send_mime(self._mime(reply), thread_id=reply.thread_id)

    def test_connection(self) -> dict[str, Any]:
        result: dict[str, Any] = {"protocol": "Gmail API", "host": self.client.base_url}
        try:
            profile = self.client.get_profile()
            counts = self.client.unread_count()
            result.update(
                success=True,
                message="Connection successful",
                user=profile.get("emailAddress"),
                totalMessages=counts["total"],
                unreadMessages=counts["unseen"],
            )
        except Exception as e:
            logger.error(f"Gmail test failed for {self.account.email_address}: {e}")
            _failure(result, e)
        return {"api": result}


def create_backend(account: AccountConfig, token_provider: TokenProvider | None = None) -> MailBackend:
    """Create the backend matching an account's configuration.

    When an OAuth2 account comes without a token provider, the backend gets
    its own and closes it on close().
    """
    owned = None
    if account.is_oauth2 and token_provider is None:
        assert account.oauth2 is not None
        token_provider = owned = TokenProvider(account.oauth2)

    backend: MailBackend
    if account.backend == "imap":
        backend = ImapSmtpBackend(account, token_provider=token_provider if account.is_oauth2 else None)
    elif account.backend == "graph":
        assert token_provider is not None
        backend = GraphBackend(account, GraphClient(token_provider, timeout=account.imap.timeout))
    elif account.backend == "gmail":
        assert token_provider is not None
        backend = GmailBackend(account, GmailClient(token_provider, timeout=account.imap.timeout))
    else:
        raise ValueError(f"Unknown backend: {account.backend}")

    backend.owned_token_provider = owned
    return backend

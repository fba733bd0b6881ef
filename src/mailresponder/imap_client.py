"""IMAP client for mailbox operations."""

from __future__ import annotations

import imaplib
import json
import logging
import re
import ssl
from typing import TYPE_CHECKING, Collection

from mailresponder.email_parser import EmailParser, InboundMessage, subject_matches
from mailresponder.oauth2 import OAuth2Error, xoauth2_string

if TYPE_CHECKING:
    from mailresponder.config import ImapConfig
    from mailresponder.oauth2 import TokenProvider

logger = logging.getLogger(__name__)


class IMAPClient:
    """IMAP client used as the inbound side of an IMAP account."""

    def __init__(
        self,
        config: ImapConfig,
        token_provider: TokenProvider | None = None,
        parser: EmailParser | None = None,
    ):
        """Initialize the IMAP client.

        Args:
            config: IMAP server configuration
            token_provider: Supplies bearer tokens for XOAUTH2 login
            parser: Parser used to normalize fetched messages
        """
        self.config = config
        self.token_provider = token_provider
        self.parser = parser or EmailParser()
        self._connection: imaplib.IMAP4 | None = None
        self._selected_folder: str | None = None

    def __enter__(self) -> IMAPClient:
        self.connect()
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.disconnect()

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.config.verify_ssl:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def connect(self) -> None:
        """Connect and authenticate to the IMAP server.

        Raises:
            ConnectionError: If unable to connect to the IMAP server
            ValueError: If authentication fails
        """
        logger.info(json.dumps({"event": "connecting", "host": self.config.host, "port": self.config.port}))

        try:
            if self.config.use_ssl:
                self._connection = imaplib.IMAP4_SSL(
                    self.config.host,
                    self.config.port,
                    ssl_context=self._ssl_context(),
                    timeout=self.config.timeout,
                )
            else:
                self._connection = imaplib.IMAP4(
                    self.config.host,
                    self.config.port,
                    timeout=self.config.timeout,
                )
                self._connection.starttls(ssl_context=self._ssl_context())
            logger.debug("IMAP connection established")

        except (OSError, TimeoutError, imaplib.IMAP4.error) as e:
            self._connection = None
            error_msg = f"Cannot connect to {self.config.host}:{self.config.port} - Check host, port, and network connection"
            logger.error(error_msg)
            raise ConnectionError(error_msg) from e

        try:
            if self.token_provider is not None:
                token = self.token_provider.get_access_token()
                auth_string = xoauth2_string(self.config.username, token)
                self._connection.authenticate("XOAUTH2", lambda _: auth_string.encode())
            else:
                self._connection.login(self.config.username, self.config.get_password())
            logger.info(json.dumps({"event": "logged_in", "username": self.config.username}))

        except OAuth2Error as e:
            self._abort()
            error_msg = f"Cannot obtain OAuth2 token for {self.config.username}: {e}"
            logger.error(error_msg)
            raise ValueError(error_msg) from e
        except imaplib.IMAP4.error as e:
            self._abort()
            if self.token_provider is not None:
                # Server rejected the token; force a refresh next time
                self.token_provider.invalidate()
            error_str = str(e)
            if "AUTHENTICATIONFAILED" in error_str or "authentication" in error_str.lower():
                error_msg = f"Authentication failed for {self.config.username} - Check credentials in config"
            else:
                error_msg = f"IMAP error during login: {e}"
            logger.error(error_msg)
            raise ValueError(error_msg) from e

    def _abort(self) -> None:
        try:
            if self._connection:
                self._connection.shutdown()
        except Exception as e:
            logger.debug(f"Error closing IMAP socket: {e}")
        self._connection = None

    def disconnect(self) -> None:
        """Disconnect from the IMAP server."""
        if self._connection:
            try:
                if self._selected_folder:
                    self._connection.close()
                self._connection.logout()
            except Exception as e:
                logger.warning(f"Error during logout: {e}")
            finally:
                self._connection = None
                self._selected_folder = None

    def select_folder(self, folder: str | None = None, readonly: bool = False) -> int:
        """Select a folder and return its message count."""
        if not self._connection:
            raise RuntimeError("Not connected")

        folder = folder or self.config.inbox_folder
        logger.debug(f"Selecting folder: {folder}")
        status, data = self._connection.select(folder, readonly=readonly)

        if status != "OK":
            raise RuntimeError(f"Failed to select folder {folder}: {data}")

        self._selected_folder = folder
        try:
            return int(data[0])
        except (TypeError, ValueError, IndexError):
            return 0

    def folder_status(self, folder: str | None = None) -> dict[str, int]:
        """Return total and unseen counts for a folder."""
        if not self._connection:
            raise RuntimeError("Not connected")

        folder = folder or self.config.inbox_folder
        status, data = self._connection.status(folder, "(MESSAGES UNSEEN)")
        if status != "OK" or not data or not data[0]:
            raise RuntimeError(f"STATUS failed for {folder}: {data}")

        line = data[0].decode() if isinstance(data[0], bytes) else str(data[0])
        counts = {}
        for key in ("MESSAGES", "UNSEEN"):
            match = re.search(rf"{key} (\d+)", line)
            counts[key.lower()] = int(match.group(1)) if match else 0
        return {"total": counts["messages"], "unseen": counts["unseen"]}

    def get_unseen_uids(self, subject: str | None = None) -> list[int]:
        """Search the selected folder for unseen messages.

        With a subject the server narrows the search to unseen messages whose
        subject contains it; the match is a substring, not a prefix.
        """
        if not self._connection:
            raise RuntimeError("Not connected")

        if not self._selected_folder:
            raise RuntimeError("No folder selected")

        if not subject:
            status, data = self._connection.uid("SEARCH", None, "UNSEEN")
        elif subject.isascii():
            quoted = subject.replace("\\", "\\\\").replace('"', '\\"')
            status, data = self._connection.uid("SEARCH", None, "UNSEEN", "SUBJECT", f'"{quoted}"')
        else:
            # Non-ASCII search terms go out as a UTF-8 literal
            self._connection.literal = subject.encode("utf-8")
            status, data = self._connection.uid("SEARCH", "CHARSET", "UTF-8", "UNSEEN", "SUBJECT")

        if status != "OK":
            logger.error(json.dumps({"event": "search_failed", "data": str(data)}))
            return []

        if not data or not data[0]:
            return []
        return [int(uid) for uid in data[0].split()]

    def get_unseen_messages(
        self,
        limit: int | None = None,
        subject_filter: str | None = None,
        exclude: Collection[str] = (),
    ) -> list[InboundMessage]:
        """Fetch unseen messages in the selected folder, oldest first.

        Messages whose subject does not start with `subject_filter` and UIDs
        listed in `exclude` are left out before `limit` is applied, so they
        never crowd out newer matching mail.
        """
        uids = sorted(uid for uid in self.get_unseen_uids(subject_filter) if str(uid) not in exclude)
        if not uids:
            return []

        logger.info(json.dumps({"event": "found_unseen", "count": len(uids)}))

        messages = []
        for uid in uids:
            if limit is not None and len(messages) >= limit:
                break
            message = self._fetch_message(uid)
            if message is None:
                continue
            if not subject_matches(message.subject, subject_filter):
                logger.debug(f"UID {uid} does not start with the subject filter, ignoring")
                continue
            messages.append(message)
        return messages

    def _fetch_message(self, uid: int) -> InboundMessage | None:
        """Fetch a single message by UID without marking it as seen."""
        try:
            # BODY.PEEK[] leaves the \Seen flag untouched
            status, data = self._connection.uid("FETCH", str(uid), "(BODY.PEEK[])")

            if status != "OK" or not data or not isinstance(data[0], tuple):
                logger.warning(f"Failed to fetch message UID {uid}")
                return None

            raw_email = data[0][1]
            return self.parser.parse_bytes(str(uid), raw_email)

        except Exception as e:
            logger.error(f"Error fetching message UID {uid}: {e}")
            return None

    def mark_as_seen(self, uid: int | str) -> bool:
        """Mark a message as seen.

        Returns:
            True if successful, False otherwise
        """
        if not self._connection:
            raise RuntimeError("Not connected")

        try:
            status, data = self._connection.uid("STORE", str(uid), "+FLAGS", "(\\Seen)")

            if status == "OK":
                logger.debug(f"Marked UID {uid} as seen")
                return True
            logger.warning(f"Failed to mark UID {uid} as seen: {data}")
            return False

        except imaplib.IMAP4.error as e:
            logger.error(f"Error marking UID {uid} as seen: {e}")
            return False

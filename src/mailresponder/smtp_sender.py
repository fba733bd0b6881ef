"""SMTP client for sending replies."""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import TYPE_CHECKING

from mailresponder.oauth2 import OAuth2Error, xoauth2_b64

if TYPE_CHECKING:
    from mailresponder.config import SmtpConfig
    from mailresponder.oauth2 import TokenProvider

logger = logging.getLogger(__name__)


def build_mime_message(
    from_addr: str,
    to: str,
    subject: str,
    body: str,
    in_reply_to: str | None = None,
    references: list[str] | None = None,
    from_name: str | None = None,
) -> EmailMessage:
    """Build a plain-text MIME message, threaded when reply headers are given."""
    msg = EmailMessage()
    msg["From"] = f"{from_name} <{from_addr}>" if from_name else from_addr
    msg["To"] = to
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=True)
    domain = from_addr.split("@")[-1] if "@" in from_addr else None
    msg["Message-ID"] = make_msgid(domain=domain)
    if in_reply_to:
        msg["In-Reply-To"] = f"<{in_reply_to}>"
    if references:
        msg["References"] = " ".join(f"<{r}>" for r in references)
    # Mark as auto-generated so other responders don't answer it
    msg["Auto-Submitted"] = "auto-replied"
    msg.set_content(body)
    return msg


class SMTPSender:
    """SMTP sender for the outbound side of an IMAP account."""

    def __init__(self, config: SmtpConfig, token_provider: TokenProvider | None = None):
        self.config = config
        self.token_provider = token_provider

    @property
    def uses_implicit_tls(self) -> bool:
        """Port 587 always means STARTTLS; 465 or use_ssl means implicit TLS."""
        if self.config.port == 587:
            return False
        return self.config.port == 465 or self.config.use_ssl

    def _open(self) -> smtplib.SMTP:
        """Open and authenticate an SMTP session.

        Raises:
            ConnectionError: If the server cannot be reached
            ValueError: If authentication fails
        """
        context = ssl.create_default_context()
        try:
            if self.uses_implicit_tls:
                smtp: smtplib.SMTP = smtplib.SMTP_SSL(
                    self.config.host, self.config.port, timeout=self.config.timeout, context=context
                )
            else:
                smtp = smtplib.SMTP(self.config.host, self.config.port, timeout=self.config.timeout)
                smtp.ehlo()
                smtp.starttls(context=context)
                smtp.ehlo()
        except (OSError, smtplib.SMTPException) as e:
            error_msg = f"Cannot connect to SMTP {self.config.host}:{self.config.port}: {e}"
            logger.error(error_msg)
            raise ConnectionError(error_msg) from e

        try:
            if self.token_provider is not None:
                token = self.token_provider.get_access_token()
                code, response = smtp.docmd("AUTH", "XOAUTH2 " + xoauth2_b64(self.config.username, token))
                if code != 235:
                    self.token_provider.invalidate()
                    raise smtplib.SMTPAuthenticationError(code, response)
            else:
                smtp.login(self.config.username, self.config.get_password())
        except (smtplib.SMTPAuthenticationError, OAuth2Error) as e:
            smtp.close()
            error_msg = f"SMTP authentication failed for {self.config.username} - Check credentials in config"
            logger.error(error_msg)
            raise ValueError(error_msg) from e

        return smtp

    def send(self, message: EmailMessage) -> None:
        """Send a prepared message.

        Raises:
            ConnectionError: On connection or delivery failures
            ValueError: If authentication fails
        """
        logger.debug(f"Sending email to {message['To']} via {self.config.host}:{self.config.port}")
        smtp = self._open()
        try:
            smtp.send_message(message)
        except smtplib.SMTPException as e:
            logger.error(f"Failed to send email to {message['To']}: {e}")
            raise ConnectionError(f"Failed to send email: {e}") from e
        finally:
            try:
                smtp.quit()
            except smtplib.SMTPException as e:
                logger.debug(f"Error during SMTP quit: {e}")
        logger.info(f"Email sent to {message['To']}")

    def test_connection(self) -> None:
        """Connect and authenticate without sending anything."""
        smtp = self._open()
        smtp.quit()

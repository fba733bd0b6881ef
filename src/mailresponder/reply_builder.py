"""Composition of outbound replies."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from jinja2 import BaseLoader, Environment, TemplateError

if TYPE_CHECKING:
    from mailresponder.config import AccountConfig, ResponderConfig
    from mailresponder.email_parser import InboundMessage

logger = logging.getLogger(__name__)

_REPLY_PREFIX = re.compile(r"^\s*re\s*:", re.IGNORECASE)


@dataclass
class OutboundReply:
    """A reply ready to be handed to a mail backend."""

    to: str
    subject: str
    body: str
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    source_id: str | None = None
    thread_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "to": self.to,
            "subject": self.subject,
            "body_length": len(self.body),
            "in_reply_to": self.in_reply_to,
        }


def reply_subject(subject: str | None) -> str:
    """Prefix a subject with 'Re: ' unless it already is a reply."""
    subject = (subject or "").strip()
    if _REPLY_PREFIX.match(subject):
        return subject
    return f"Re: {subject}"


class ReplyBuilder:
    """Renders reply bodies from the configured Jinja2 template."""

    def __init__(self, config: ResponderConfig):
        self.config = config
        self._env = Environment(loader=BaseLoader(), keep_trailing_newline=False, autoescape=False)
        self._template = self._env.from_string(config.reply_template)

    def render_body(self, reply_text: str, original: InboundMessage, account: AccountConfig) -> str:
        """Render the body; falls back to the bare reply if the template breaks."""
        sender = str(original.from_addr) if original.from_addr else original.sender_address
        try:
            body = self._template.render(
                reply=reply_text.strip(),
                sender=sender,
                original=original,
                signature=self.config.signature,
                account=account,
            )
        except TemplateError as e:
            logger.warning(f"Reply template failed, sending plain reply: {e}")
            body = reply_text.strip()
        return body.strip() + "\n"

    def build(self, reply_text: str, original: InboundMessage, account: AccountConfig) -> OutboundReply:
        """Build the outbound reply for an inbound message."""
        references = list(original.references)
        if original.message_id and original.message_id not in references:
            references.append(original.message_id)

        return OutboundReply(
            to=original.sender_address,
            subject=reply_subject(original.subject),
            body=self.render_body(reply_text, original, account),
            in_reply_to=original.message_id or None,
            references=references,
            source_id=original.source_id,
            thread_id=original.thread_id,
        )

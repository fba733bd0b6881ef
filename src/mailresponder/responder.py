"""Per-message reply pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from mailresponder.email_parser import subject_matches
from mailresponder.llm_client import ChatTurn
from mailresponder.storage import MessageStatus

if TYPE_CHECKING:
    from mailresponder.backends import MailBackend
    from mailresponder.config import AccountConfig, Config
    from mailresponder.email_parser import InboundMessage
    from mailresponder.llm_client import LLMClient
    from mailresponder.reply_builder import OutboundReply, ReplyBuilder
    from mailresponder.storage import Storage
    from mailresponder.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


class ProcessStatus(str, Enum):
    """Outcome of processing one inbound message."""

    REPLIED = "replied"
    DRY_RUN = "dry_run"
    SKIPPED = "skipped"
    FILTERED = "filtered"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass
class ProcessResult:
    """Result of processing a message."""

    status: ProcessStatus
    reason: str = ""
    reply: OutboundReply | None = None
    conversation_id: int | None = None
    error: str | None = None
    # False leaves the message unseen so a later cycle picks it up again
    mark_seen: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "reply": self.reply.to_dict() if self.reply else None,
            "conversation_id": self.conversation_id,
            "error": self.error,
        }


class Responder:
    """Turns inbound messages into LLM-drafted replies."""

    def __init__(
        self,
        config: Config,
        storage: Storage,
        llm_client: LLMClient,
        reply_builder: ReplyBuilder,
        audit: StructuredLogger,
    ):
        self.config = config
        self.storage = storage
        self.llm_client = llm_client
        self.reply_builder = reply_builder
        self.audit = audit

    def matches_filter(self, subject: str) -> bool:
        """Check the subject against the configured prefix."""
        return subject_matches(subject, self.config.responder.subject_filter)

    def process(self, account: AccountConfig, backend: MailBackend, msg: InboundMessage) -> ProcessResult:
        """Process one inbound message for an account.

        Each message is answered at most once: a pending claim is stored
        before the reply is generated and is only released again when
        generation fails, so a send that fails (or a crash after sending)
        never leads to a second reply.
        """
        ref = msg.message_id or msg.source_id

        if not self.matches_filter(msg.subject):
            logger.debug(f"{account.name}: {ref} does not match subject filter, ignoring")
            return ProcessResult(ProcessStatus.FILTERED, reason="subject filter", mark_seen=False)

        sender = msg.sender_address
        skip_reason = self._skip_reason(account, msg, sender)
        key = msg.dedupe_key

        if not self.storage.claim_message(account.name, key, msg.source_id):
            logger.info(f"{account.name}: {ref} already processed, skipping")
            result = ProcessResult(ProcessStatus.DUPLICATE, reason="already processed")
            return self._record(account, msg, result)

        if skip_reason:
            logger.info(f"{account.name}: skipping {ref}: {skip_reason}")
            self.storage.complete_message(account.name, key, MessageStatus.SKIPPED, skip_reason)
            return self._record(account, msg, ProcessResult(ProcessStatus.SKIPPED, reason=skip_reason))

        conversation = self.storage.get_or_create_conversation(account.name, sender)
        user_message = self.storage.add_message(
            conversation.id,
            role="user",
            content=msg.body_text,
            subject=msg.subject,
            email_message_id=msg.message_id or None,
            message_key=key,
        )
        history = [
            ChatTurn(role=m.role, content=m.content)
            for m in self.storage.get_history(conversation.id, self.config.responder.history_limit + 1)
            if m.id != user_message.id
        ][-self.config.responder.history_limit :]

        logger.info(
            f"{account.name}: generating reply to {sender} "
            f"(conversation {conversation.id}, {len(history)} earlier messages)"
        )
        logger.debug(f"{account.name}: {ref}: {msg.preview(80)!r}")
        response = self.llm_client.generate_reply(
            history,
            msg.body_text,
            self.config.responder.system_prompt,
            subject=msg.subject,
            sender=sender,
        )

        if not response.success or response.result is None:
            logger.error(f"{account.name}: reply generation failed for {ref}: {response.error}")
            self.storage.release_message(account.name, key)
            result = ProcessResult(
                ProcessStatus.FAILED,
                reason="generation failed",
                conversation_id=conversation.id,
                error=response.error,
                mark_seen=False,
            )
            return self._record(account, msg, result)

        reply_text = response.result.reply
        reply = self.reply_builder.build(reply_text, msg, account)

        if self.config.dry_run:
            logger.warning(f"{account.name}: [DRY-RUN] would send '{reply.subject}' to {reply.to}")
            self.storage.release_message(account.name, key)
            result = ProcessResult(
                ProcessStatus.DRY_RUN,
                reason="dry run",
                reply=reply,
                conversation_id=conversation.id,
                mark_seen=False,
            )
            return self._record(account, msg, result, language=response.result.language)

        try:
            backend.send(reply)
        except Exception as e:
            logger.error(f"{account.name}: sending reply to {reply.to} failed: {e}", exc_info=True)
            self.storage.complete_message(account.name, key, MessageStatus.FAILED, str(e))
            result = ProcessResult(
                ProcessStatus.FAILED,
                reason="send failed",
                reply=reply,
                conversation_id=conversation.id,
                error=str(e),
            )
            return self._record(account, msg, result)

        self.storage.add_message(conversation.id, role="assistant", content=reply_text, subject=reply.subject)
        self.storage.complete_message(account.name, key, MessageStatus.REPLIED)
        logger.info(f"{account.name}: replied to {reply.to} ({reply.subject})")

        result = ProcessResult(
            ProcessStatus.REPLIED,
            reason="reply sent",
            reply=reply,
            conversation_id=conversation.id,
        )
        return self._record(account, msg, result, language=response.result.language)

    def _skip_reason(self, account: AccountConfig, msg: InboundMessage, sender: str) -> str | None:
        if not sender:
            return "no sender address"
        if sender == account.email_address.lower():
            return "sent by this account"
        if self.config.responder.skip_automated and msg.is_automated:
            return "automated message"
        return None

    def _record(
        self,
        account: AccountConfig,
        msg: InboundMessage,
        result: ProcessResult,
        language: str | None = None,
    ) -> ProcessResult:
        """Write the outcome to the audit log and the audit trail."""
        details = {"source_id": msg.source_id}
        if result.reply:
            details["reply"] = result.reply.to_dict()

        self.storage.log_action(
            account=account.name,
            action=result.status.value,
            success=result.status != ProcessStatus.FAILED,
            message_id=msg.message_id or None,
            sender=msg.sender_address or None,
            subject=msg.subject,
            reason=result.reason,
            error=result.error,
            details=details,
        )
        self.audit.log_reply_processed(
            account=account.name,
            message_id=msg.message_id or None,
            sender=msg.sender_address or None,
            subject=msg.subject,
            status=result.status.value,
            reason=result.error or result.reason,
            conversation_id=result.conversation_id,
            language=language,
            dry_run=self.config.dry_run,
        )
        return result

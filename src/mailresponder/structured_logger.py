"""JSONL audit trail for mailresponder."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StructuredLogger:
    """Structured logger for audit trail."""

    MAX_VALUE_LENGTH = 500

    def __init__(self, log_file: str | Path | None = None):
        """Initialize structured logger.

        Args:
            log_file: Path to JSONL file for the audit trail; None disables it
        """
        self.log_file = Path(log_file) if log_file else None

    def log_event(self, event_type: str, data: dict[str, Any]) -> None:
        """Append a structured event to the audit file."""
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **data,
        }

        if self.log_file:
            try:
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(event, default=str) + "\n")
            except OSError as e:
                logger.error(f"Failed to write to audit log: {e}")

    def log_reply_processed(
        self,
        account: str,
        message_id: str | None,
        sender: str | None,
        subject: str | None,
        status: str,
        reason: str | None = None,
        conversation_id: int | None = None,
        language: str | None = None,
        dry_run: bool = False,
    ) -> None:
        """Log the outcome of processing one inbound message.

        Args:
            account: Account name
            message_id: Message-ID of the inbound message
            sender: Sender address
            subject: Subject of the inbound message
            status: replied, skipped, duplicate or failed
            reason: Why the message got this status
            conversation_id: Conversation the message belongs to
            language: Reply language reported by the model
            dry_run: Whether sending was suppressed
        """
        self.log_event(
            "reply_processed",
            {
                "account": account,
                "message_id": self._sanitize_for_json(message_id),
                "sender": self._sanitize_for_json(sender),
                "subject": self._sanitize_for_json(subject),
                "status": status,
                "reason": self._sanitize_for_json(reason),
                "conversation_id": conversation_id,
                "language": language,
                "dry_run": dry_run,
            },
        )

    def log_error(self, error_type: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Log error event."""
        self.log_event(
            "error",
            {
                "error_type": error_type,
                "message": self._sanitize_for_json(message),
                "details": details or {},
            },
        )

    def log_startup(self, config: dict[str, Any]) -> None:
        """Log application startup with a sanitized configuration summary."""
        self.log_event("startup", config)

    def log_shutdown(self, reason: str = "normal") -> None:
        self.log_event("shutdown", {"reason": reason})

    def _sanitize_for_json(self, value: str | None) -> str | None:
        """Strip control characters and cap the length of a logged value."""
        if value is None:
            return None
        sanitized = "".join(c for c in value if c.isprintable() or c in (" ", "\t"))
        if len(sanitized) > self.MAX_VALUE_LENGTH:
            sanitized = sanitized[: self.MAX_VALUE_LENGTH - 3] + "..."
        return sanitized

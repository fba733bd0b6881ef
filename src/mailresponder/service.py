"""Polling service: runs check cycles over all active accounts."""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mailresponder.backends import MailBackend, create_backend
from mailresponder.config import AccountConfig, Config
from mailresponder.email_parser import InboundMessage
from mailresponder.llm_client import LLMClient
from mailresponder.oauth2 import TokenProvider
from mailresponder.reply_builder import ReplyBuilder
from mailresponder.responder import ProcessStatus, Responder
from mailresponder.storage import Storage
from mailresponder.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


@dataclass
class AccountReport:
    """Counts for one account in one cycle."""

    account: str
    fetched: int = 0
    replied: int = 0
    skipped: int = 0
    duplicates: int = 0
    failed: int = 0
    error: str | None = None

    def add(self, status: ProcessStatus) -> None:
        if status in (ProcessStatus.REPLIED, ProcessStatus.DRY_RUN):
            self.replied += 1
        elif status in (ProcessStatus.SKIPPED, ProcessStatus.FILTERED):
            self.skipped += 1
        elif status == ProcessStatus.DUPLICATE:
            self.duplicates += 1
        elif status == ProcessStatus.FAILED:
            self.failed += 1


@dataclass
class CycleReport:
    """Result of one check cycle."""

    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    accounts: list[AccountReport] = field(default_factory=list)

    @property
    def total_replied(self) -> int:
        return sum(a.replied for a in self.accounts)

    @property
    def total_failed(self) -> int:
        return sum(a.failed for a in self.accounts) + sum(1 for a in self.accounts if a.error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "accounts": [vars(a) for a in self.accounts],
        }


class ResponderService:
    """Main application class."""

    def __init__(
        self,
        config: Config,
        storage: Storage | None = None,
        llm_client: LLMClient | None = None,
        audit: StructuredLogger | None = None,
    ):
        self.config = config
        self.storage = storage or Storage(config.database_path)
        self.llm_client = llm_client or LLMClient(config.ollama)
        self.audit = audit or StructuredLogger(config.logging.audit_file)
        self.responder = Responder(
            config,
            self.storage,
            self.llm_client,
            ReplyBuilder(config.responder),
            self.audit,
        )
        # Kept across cycles so refreshed and rotated tokens survive
        self._token_providers: dict[str, TokenProvider] = {}
        # Source ids already previewed in dry-run mode, per account
        self._previewed: dict[str, set[str]] = {}
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def token_provider(self, account: AccountConfig) -> TokenProvider | None:
        """Return the cached token provider of an OAuth2 account."""
        if not account.is_oauth2 or account.oauth2 is None:
            return None
        if account.name not in self._token_providers:
            self._token_providers[account.name] = TokenProvider(account.oauth2)
        return self._token_providers[account.name]

    def forget_account(self, name: str) -> None:
        """Drop cached state of an account whose configuration changed."""
        provider = self._token_providers.pop(name, None)
        if provider is not None:
            provider.close()
        self._previewed.pop(name, None)

    def backend_for(self, account: AccountConfig) -> MailBackend:
        return create_backend(account, token_provider=self.token_provider(account))

    def check_all_accounts(self) -> CycleReport:
        """Run one check cycle over every active account."""
        report = CycleReport()
        accounts = self.config.active_accounts
        logger.debug(f"Checking {len(accounts)} active account(s)")

        for account in accounts:
            if not self.running:
                break
            report.accounts.append(self.check_account(account))

        report.finished_at = datetime.now()
        return report

    def check_account(self, account: AccountConfig) -> AccountReport:
        """Fetch and answer new messages for one account.

        Errors are contained here so one broken account never stops the
        others from being served.
        """
        account_report = AccountReport(account=account.name)
        try:
            with self.backend_for(account) as backend:
                messages = backend.fetch_unseen(
                    limit=self.config.responder.max_messages_per_cycle,
                    subject_filter=self.config.responder.subject_filter,
                    exclude=self._previewed.get(account.name, set()),
                )
                account_report.fetched = len(messages)
                if messages:
                    logger.info(f"{account.name}: {len(messages)} unseen message(s)")

                for msg in messages:
                    if not self.running:
                        break
                    self._process_one(account, backend, msg, account_report)

        except Exception as e:
            logger.error(f"{account.name}: check failed: {e}", exc_info=True)
            account_report.error = str(e)
            self.audit.log_error(type(e).__name__, str(e), {"account": account.name})

        return account_report

    def _process_one(
        self, account: AccountConfig, backend: MailBackend, msg: InboundMessage, report: AccountReport
    ) -> None:
        try:
            result = self.responder.process(account, backend, msg)
        except Exception as e:
            logger.error(f"{account.name}: error processing {msg.source_id}: {e}", exc_info=True)
            self.audit.log_error(type(e).__name__, str(e), {"account": account.name, "source_id": msg.source_id})
            report.failed += 1
            return

        report.add(result.status)
        if result.status == ProcessStatus.DRY_RUN:
            self._previewed.setdefault(account.name, set()).add(msg.source_id)

        if result.mark_seen and self.config.responder.mark_seen and not self.config.dry_run:
            try:
                backend.mark_seen(msg)
            except Exception as e:
                logger.warning(f"{account.name}: could not mark {msg.source_id} as seen: {e}")

    def stop(self) -> None:
        """Ask the run loop to stop after the current message."""
        self._stop.set()

    def signal_handler(self, signum: int, frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def run(self, install_signal_handlers: bool = True) -> None:
        """Run check cycles with a fixed delay until stopped."""
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self.signal_handler)
            signal.signal(signal.SIGTERM, self.signal_handler)

        mode = "DRY-RUN" if self.config.dry_run else "ACTIVE"
        interval = self.config.responder.poll_interval
        logger.info(f"Starting mailresponder (mode: {mode})")
        logger.info(f"Accounts: {', '.join(a.name for a in self.config.active_accounts) or 'none'}")
        logger.info(f"Ollama: {self.config.ollama.base_url} ({self.config.ollama.model})")

        self.audit.log_startup(self.startup_summary(mode))

        if self.config.dry_run:
            logger.warning("DRY-RUN MODE: replies will NOT be sent")

        reason = "normal"
        try:
            while self.running:
                report = self.check_all_accounts()
                if report.total_replied or report.total_failed:
                    logger.info(f"Cycle done: {report.total_replied} replied, {report.total_failed} failed")
                self._stop.wait(interval)
        except KeyboardInterrupt:
            logger.info("Shutdown requested by user")
            reason = "interrupted"
        except Exception as e:
            logger.error(f"Fatal error: {e}", exc_info=True)
            reason = f"error: {e}"
            raise
        finally:
            self.close()
            self.audit.log_shutdown(reason)
            logger.info("mailresponder stopped")

    def startup_summary(self, mode: str) -> dict[str, Any]:
        """Configuration summary without secrets."""
        return {
            "mode": mode,
            "accounts": [
                {"name": a.name, "email": a.email_address, "backend": a.backend, "auth": a.auth_type}
                for a in self.config.active_accounts
            ],
            "ollama_url": self.config.ollama.base_url,
            "ollama_model": self.config.ollama.model,
            "poll_interval": self.config.responder.poll_interval,
            "subject_filter": self.config.responder.subject_filter,
        }

    def close(self) -> None:
        self.llm_client.close()
        for provider in self._token_providers.values():
            provider.close()

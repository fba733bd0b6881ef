"""Connection diagnostics and status summaries."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from mailresponder.backends import MailBackend, create_backend

if TYPE_CHECKING:
    from mailresponder.config import AccountConfig, Config
    from mailresponder.llm_client import LLMClient
    from mailresponder.oauth2 import TokenProvider
    from mailresponder.storage import Storage

logger = logging.getLogger(__name__)


def account_summary(account: AccountConfig) -> dict[str, Any]:
    """Public view of an account, without any credentials."""
    summary: dict[str, Any] = {
        "name": account.name,
        "emailAddress": account.email_address,
        "displayName": account.display_name,
        "backend": account.backend,
        "authType": account.auth_type,
        "active": account.active,
    }
    if account.backend == "imap":
        summary["imap"] = {
            "host": account.imap.host,
            "port": account.imap.port,
            "ssl": account.imap.use_ssl,
            "folder": account.imap.inbox_folder,
        }
        summary["smtp"] = {"host": account.smtp.host, "port": account.smtp.port, "ssl": account.smtp.use_ssl}
    if account.oauth2 is not None:
        summary["oauth2Provider"] = account.oauth2.provider
    return summary


def test_account(
    account: AccountConfig,
    token_provider: TokenProvider | None = None,
    backend: MailBackend | None = None,
) -> dict[str, Any]:
    """Test inbound and outbound connectivity of an account.

    Returns the per-protocol results plus an overallStatus of SUCCESS when
    every check passed and FAILED otherwise.
    """
    logger.info(f"Testing connection for {account.name} ({account.email_address})")

    result: dict[str, Any] = {
        "account": account.name,
        "email": account.email_address,
        "backend": account.backend,
        "timestamp": datetime.now().isoformat(),
    }

    try:
        backend = backend or create_backend(account, token_provider=token_provider)
        checks = backend.test_connection()
    except Exception as e:
        logger.error(f"Connection test for {account.name} could not run: {e}")
        result["error"] = str(e)
        result["overallStatus"] = "FAILED"
        return result
    finally:
        if backend is not None:
            backend.close()

    result.update(checks)
    ok = all(check.get("success") for check in checks.values())
    result["overallStatus"] = "SUCCESS" if ok else "FAILED"
    return result


def system_status(
    config: Config,
    storage: Storage,
    llm_client: LLMClient | None = None,
) -> dict[str, Any]:
    """Summarize accounts, stored state and the LLM endpoint."""
    stats = storage.get_statistics()
    accounts = []
    for account in config.accounts:
        summary = account_summary(account)
        summary["conversations"] = len(storage.list_conversations(account.name))
        accounts.append(summary)

    status: dict[str, Any] = {
        "timestamp": datetime.now().isoformat(),
        "dryRun": config.dry_run,
        "totalAccounts": len(config.accounts),
        "activeAccounts": len(config.active_accounts),
        "accounts": accounts,
        "statistics": stats,
        "ollama": {"baseUrl": config.ollama.base_url, "model": config.ollama.model},
    }

    if llm_client is not None:
        models = llm_client.list_models()
        status["ollama"]["available"] = bool(models) or llm_client.check_health()
        status["ollama"]["modelPulled"] = llm_client.has_model(models)

    return status

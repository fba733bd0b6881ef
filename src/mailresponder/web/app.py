"""FastAPI application exposing the mailresponder JSON API."""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from fastapi import Body, FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from mailresponder import __version__, diagnostics
from mailresponder.config import (
    Config,
    load_config,
    mask_secrets,
    read_config_data,
    restore_secrets,
    save_config,
)
from mailresponder.llm_client import LLMClient
from mailresponder.oauth2 import TokenProvider
from mailresponder.storage import Storage

if TYPE_CHECKING:
    from mailresponder.config import AccountConfig
    from mailresponder.service import ResponderService

logger = logging.getLogger(__name__)


def create_app(
    config: Config | str | Path | None = None,
    storage: Storage | None = None,
    service: ResponderService | None = None,
    config_path: str | Path | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Loaded configuration or path to the YAML file; falls back to
            the MAILRESPONDER_CONFIG environment variable
        storage: State store to read from (defaults to the configured database)
        service: Running polling service whose token cache should be shared
        config_path: YAML file account changes are written to, when
            `config` is already loaded
    """
    if config is None:
        env_path = os.environ.get("MAILRESPONDER_CONFIG")
        if not env_path:
            raise ValueError("No configuration given and MAILRESPONDER_CONFIG is not set")
        config = env_path
    if not isinstance(config, Config):
        config_path = config_path or config
        config = load_config(config)

    app = FastAPI(
        title="mailresponder",
        description="LLM-drafted replies to incoming email",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.config_path = Path(config_path) if config_path else None
    app.state.config_lock = threading.Lock()
    app.state.storage = storage or (service.storage if service else Storage(config.database_path))
    app.state.service = service
    app.state.token_providers = {}

    register_routes(app)
    return app


def _token_provider(app: FastAPI, account: AccountConfig) -> TokenProvider | None:
    service = app.state.service
    if service is not None:
        return service.token_provider(account)
    if not account.is_oauth2 or account.oauth2 is None:
        return None
    providers: dict[str, TokenProvider] = app.state.token_providers
    if account.name not in providers:
        providers[account.name] = TokenProvider(account.oauth2)
    return providers[account.name]


def _find_account(accounts: list[dict[str, Any]], name: str) -> int:
    for index, account in enumerate(accounts):
        if isinstance(account, dict) and account.get("name") == name:
            return index
    raise HTTPException(status_code=404, detail=f"Account not found: {name}")


def _edit_accounts(app: FastAPI, edit: Callable[[list[dict[str, Any]]], None]) -> Config:
    """Apply `edit` to the accounts in the YAML file and reload them.

    The running configuration (shared with the polling service) gets the
    new account list; cached tokens of changed accounts are dropped.
    """
    path: Path | None = app.state.config_path
    if path is None:
        raise HTTPException(status_code=409, detail="Configuration was not loaded from a file")

    with app.state.config_lock:
        try:
            data = read_config_data(path)
        except FileNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        accounts = data.get("accounts")
        if not isinstance(accounts, list):
            accounts = data["accounts"] = []

        edit(accounts)

        try:
            new_config = save_config(path, data)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        config: Config = app.state.config
        old_accounts = {a.name: a for a in config.accounts}
        config.accounts = new_config.accounts

    for name, old in old_accounts.items():
        if config.get_account(name) != old:
            provider = app.state.token_providers.pop(name, None)
            if provider is not None:
                provider.close()
            if app.state.service is not None:
                app.state.service.forget_account(name)
    return config


def register_routes(app: FastAPI) -> None:
    """Register all API routes."""

    def get_account_or_404(name: str) -> AccountConfig:
        account = app.state.config.get_account(name)
        if account is None:
            raise HTTPException(status_code=404, detail=f"Account not found: {name}")
        return account

    @app.get("/api/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "version": __version__}

    @app.get("/api/status")
    def get_status():
        """Accounts, processing statistics and LLM availability."""
        config: Config = app.state.config
        with LLMClient(config.ollama) as llm:
            status = diagnostics.system_status(config, app.state.storage, llm)
        status["serviceRunning"] = app.state.service is not None and app.state.service.running
        return status

    @app.get("/api/config")
    def get_config():
        """Current configuration file with secrets masked."""
        path: Path | None = app.state.config_path
        if path is None or not path.exists():
            raise HTTPException(status_code=404, detail="Configuration file not found")
        return {"config": mask_secrets(read_config_data(path)), "path": str(path)}

    @app.get("/api/accounts")
    async def list_accounts():
        return [diagnostics.account_summary(a) for a in app.state.config.accounts]

    @app.get("/api/accounts/{name}")
    async def get_account(name: str):
        return diagnostics.account_summary(get_account_or_404(name))

    @app.post("/api/accounts", status_code=201)
    def create_account(account: dict[str, Any] = Body(...)):
        """Add an account to the configuration file."""
        name = account.get("name")

        def add(accounts: list[dict[str, Any]]) -> None:
            if any(isinstance(a, dict) and a.get("name") == name for a in accounts):
                raise HTTPException(status_code=400, detail=f"Account already exists: {name}")
            accounts.append(account)

        config = _edit_accounts(app, add)
        logger.info(f"Account {name} created")
        return diagnostics.account_summary(config.get_account(name))

    @app.put("/api/accounts/{name}")
    def update_account(name: str, account: dict[str, Any] = Body(...)):
        """Replace an account; masked secrets keep their stored value."""
        account.setdefault("name", name)

        def replace(accounts: list[dict[str, Any]]) -> None:
            index = _find_account(accounts, name)
            accounts[index] = restore_secrets(account, accounts[index])

        config = _edit_accounts(app, replace)
        logger.info(f"Account {name} updated")
        return diagnostics.account_summary(config.get_account(account["name"]))

    @app.delete("/api/accounts/{name}", status_code=204)
    def delete_account(name: str):
        def remove(accounts: list[dict[str, Any]]) -> None:
            del accounts[_find_account(accounts, name)]

        _edit_accounts(app, remove)
        logger.info(f"Account {name} deleted")
        return Response(status_code=204)

    @app.patch("/api/accounts/{name}/toggle")
    def toggle_account(name: str, active: bool = Query(...)):
        """Enable or disable polling of an account."""

        def set_active(accounts: list[dict[str, Any]]) -> None:
            accounts[_find_account(accounts, name)]["active"] = active

        config = _edit_accounts(app, set_active)
        logger.info(f"Account {name} {'activated' if active else 'deactivated'}")
        return diagnostics.account_summary(config.get_account(name))

    @app.get("/api/conversations/account/{name}")
    async def list_conversations(name: str):
        account = get_account_or_404(name)
        return [c.to_dict() for c in app.state.storage.list_conversations(account.name)]

    @app.get("/api/conversations/{conversation_id}")
    async def get_conversation(conversation_id: int):
        conversation = app.state.storage.get_conversation(conversation_id)
        if conversation is None:
            raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
        return conversation.to_dict()

    @app.get("/api/conversations/{conversation_id}/messages")
    async def get_messages(conversation_id: int):
        storage: Storage = app.state.storage
        if storage.get_conversation(conversation_id) is None:
            raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
        return [m.to_dict() for m in storage.get_messages(conversation_id)]

    @app.get("/api/diagnostics/test-connection/{name}")
    def test_connection(name: str):
        """Run a live connectivity test for one account."""
        account = get_account_or_404(name)
        return diagnostics.test_account(account, token_provider=_token_provider(app, account))

    @app.get("/api/audit")
    async def get_audit(
        limit: int = Query(default=100, ge=1, le=1000),
        since: datetime | None = None,
        account: str | None = None,
    ):
        """Recent audit log entries, newest first."""
        storage: Storage = app.state.storage
        entries = storage.get_audit_log(since=since, limit=limit, account=account)
        return {"entries": entries, "statistics": storage.get_statistics(since=since)}

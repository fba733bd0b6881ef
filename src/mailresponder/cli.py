"""Command-line interface for mailresponder."""

from __future__ import annotations

import logging
import sys
import threading
from datetime import datetime
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from mailresponder import __version__, diagnostics
from mailresponder.config import Config, load_config
from mailresponder.llm_client import LLMClient
from mailresponder.service import CycleReport, ResponderService
from mailresponder.storage import Storage

console = Console(width=200, soft_wrap=False)
logger = logging.getLogger("mailresponder")

config_option = click.option(
    "--config",
    "-c",
    required=True,
    type=click.Path(exists=True),
    help="Path to configuration YAML file",
)


def setup_logging(level: str, log_file: str | None = None) -> None:
    """Configure logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
    ]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _load(config: str, verbose: bool = False, dry_run: bool = False) -> Config:
    """Load configuration and set up logging, exiting on invalid config."""
    try:
        cfg = load_config(config)
    except (FileNotFoundError, ValidationError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if dry_run:
        cfg.dry_run = True

    setup_logging("DEBUG" if verbose else cfg.logging.level, cfg.logging.log_file)
    return cfg


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """mailresponder - answer incoming email with a local LLM."""


@cli.command()
@config_option
@click.option("--dry-run", is_flag=True, help="Generate replies without sending them")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def run(config: str, dry_run: bool, verbose: bool) -> None:
    """Poll all active accounts until interrupted."""
    cfg = _load(config, verbose, dry_run)

    console.print(f"[bold blue]mailresponder v{__version__}[/bold blue]")
    console.print(f"Configuration: {config}")
    console.print(f"Accounts: {', '.join(a.name for a in cfg.active_accounts) or 'none'}")
    console.print(f"Poll interval: {cfg.responder.poll_interval}s")

    try:
        ResponderService(cfg).run()
    except Exception as e:
        logger.exception("Fatal error")
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@config_option
@click.option("--dry-run", is_flag=True, help="Generate replies without sending them")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def once(config: str, dry_run: bool, verbose: bool) -> None:
    """Run a single check cycle and print a summary."""
    cfg = _load(config, verbose, dry_run)

    service = ResponderService(cfg)
    try:
        report = service.check_all_accounts()
    finally:
        service.close()

    _print_cycle_table(report)
    if report.total_failed:
        sys.exit(1)


def _print_cycle_table(report: CycleReport) -> None:
    """Print a summary table of one cycle to the console."""
    table = Table(title="Cycle Summary")
    table.add_column("Account", style="cyan")
    table.add_column("Fetched", justify="right")
    table.add_column("Replied", justify="right", style="green")
    table.add_column("Skipped", justify="right")
    table.add_column("Duplicates", justify="right")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Error")

    for a in report.accounts:
        table.add_row(
            a.account,
            str(a.fetched),
            str(a.replied),
            str(a.skipped),
            str(a.duplicates),
            str(a.failed),
            a.error or "-",
        )

    console.print(table)


@cli.command()
@config_option
@click.option("--account", "-a", "account_name", default=None, help="Only test this account")
def check(config: str, account_name: str | None) -> None:
    """Check configuration and connectivity."""
    cfg = _load(config)
    console.print("[green][OK] Configuration valid[/green]")

    accounts = cfg.accounts
    if account_name:
        account = cfg.get_account(account_name)
        if account is None:
            console.print(f"[red]Unknown account: {account_name}[/red]")
            sys.exit(1)
        accounts = [account]

    failed = False
    for account in accounts:
        state = "" if account.active else " [dim](inactive)[/dim]"
        console.print(f"\nChecking {account.name} <{account.email_address}> via {account.backend}{state}...")
        result = diagnostics.test_account(account)
        if not any(key in result for key in ("imap", "smtp", "api")):
            console.print(f"  [red][X] {result.get('error')}[/red]")
        for key in ("imap", "smtp", "api"):
            check_result = result.get(key)
            if not check_result:
                continue
            label = check_result.get("protocol", key)
            if check_result.get("success"):
                counts = ""
                if "unreadMessages" in check_result:
                    counts = f" ({check_result['unreadMessages']} unread of {check_result['totalMessages']})"
                console.print(f"  [green][OK][/green] {label} {check_result.get('host', '')}{counts}")
            else:
                console.print(f"  [red][X][/red] {label}: {check_result.get('error')} - {check_result.get('message')}")
        if result["overallStatus"] != "SUCCESS":
            failed = True

    console.print(f"\nChecking Ollama at {cfg.ollama.base_url}...")
    with LLMClient(cfg.ollama) as llm:
        if llm.check_health():
            console.print("[green][OK] Ollama available[/green]")
            models = llm.list_models()
            console.print(f"  Available models: {', '.join(models[:5])}")
            if not llm.has_model(models):
                console.print(f"  [yellow]?[/yellow] Model {cfg.ollama.model} is not pulled")
        else:
            console.print("[red][X] Ollama not available[/red]")
            failed = True

    if failed:
        sys.exit(1)


@cli.command()
@config_option
@click.option("--account", "-a", "account_name", default=None, help="Only list this account")
def conversations(config: str, account_name: str | None) -> None:
    """List stored conversations."""
    cfg = _load(config)
    storage = Storage(cfg.database_path)

    items = storage.list_conversations(account_name)
    if not items:
        console.print("No conversations found")
        return

    table = Table(title=f"Conversations ({len(items)})")
    table.add_column("ID", justify="right")
    table.add_column("Account", style="cyan")
    table.add_column("Participant")
    table.add_column("Messages", justify="right")
    table.add_column("Last message", style="dim")

    for c in items:
        table.add_row(str(c.id), c.account, c.participant, str(c.message_count), c.last_message_at[:16])

    console.print(table)


@cli.command()
@config_option
@click.argument("conversation_id", type=int)
def history(config: str, conversation_id: int) -> None:
    """Show the messages of one conversation."""
    cfg = _load(config)
    storage = Storage(cfg.database_path)

    conversation = storage.get_conversation(conversation_id)
    if conversation is None:
        console.print(f"[red]Conversation {conversation_id} not found[/red]")
        sys.exit(1)

    console.print(f"[bold]{conversation.account}[/bold] with {conversation.participant}")
    for m in storage.get_messages(conversation_id):
        style = "green" if m.role == "assistant" else "cyan"
        console.print(f"\n[{style}]{m.role}[/{style}] [dim]{m.created_at[:16]}[/dim] {m.subject or ''}", markup=True)
        console.print(m.content, markup=False)


@cli.command()
@config_option
@click.option("--since", type=click.DateTime(), help="Show entries since date")
@click.option("--limit", "-l", type=int, default=20, help="Number of entries")
@click.option("--export", type=click.Path(), help="Export to JSONL file")
def audit(config: str, since: datetime | None, limit: int, export: str | None) -> None:
    """View or export audit log."""
    cfg = _load(config)
    storage = Storage(cfg.database_path)

    if export:
        count = storage.export_audit_jsonl(export)
        console.print(f"Exported {count} entries to {export}")
        return

    entries = storage.get_audit_log(since=since, limit=limit)

    if not entries:
        console.print("No audit entries found")
        return

    table = Table(title=f"Audit Log (last {len(entries)} entries)")
    table.add_column("Time", style="dim")
    table.add_column("Account")
    table.add_column("Action")
    table.add_column("Sender")
    table.add_column("Subject")
    table.add_column("Reason")
    table.add_column("OK", justify="center")

    for entry in entries:
        timestamp = entry["timestamp"][:16] if entry["timestamp"] else ""
        success = "[green][OK][/green]" if entry["success"] else "[red][X][/red]"
        table.add_row(
            timestamp,
            entry["account"],
            entry["action"],
            entry["sender"] or "-",
            (entry["subject"] or "-")[:40],
            entry["error"] or entry["reason"] or "-",
            success,
        )

    console.print(table)

    stats = storage.get_statistics(since=since)
    console.print(
        f"\nTotal: {stats['total_actions']} | Replied: {stats['replied']} | "
        f"Failed: {stats['failed']} | Conversations: {stats['conversations']}"
    )


@cli.command()
@config_option
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=int, default=None, help="Port (overrides config)")
@click.option("--with-service", is_flag=True, help="Also run the polling service in the background")
def serve(config: str, host: str | None, port: int | None, with_service: bool) -> None:
    """Serve the JSON API."""
    import uvicorn

    from mailresponder.web.app import create_app

    cfg = _load(config)
    service = None
    if with_service:
        service = ResponderService(cfg)
        threading.Thread(
            target=service.run,
            kwargs={"install_signal_handlers": False},
            name="mailresponder-service",
            daemon=True,
        ).start()

    app = create_app(cfg, service=service, config_path=config)
    host = host or cfg.web.host
    port = port or cfg.web.port
    console.print(f"[bold blue]mailresponder API[/bold blue] on http://{host}:{port}")

    try:
        uvicorn.run(app, host=host, port=port, log_config=None)
    finally:
        if service is not None:
            service.stop()


SAMPLE_CONFIG = """# mailresponder configuration

accounts:
  # Plain IMAP/SMTP with a password
  - name: support
    email_address: support@example.com
    display_name: Example Support
    backend: imap
    auth_type: basic
    imap:
      host: mail.example.com
      port: 993
      # Use password_env to read from environment variable (recommended)
      password_env: SUPPORT_MAIL_PASSWORD
    smtp:
      host: mail.example.com
      # 587 = STARTTLS, 465 = implicit TLS
      port: 587
      password_env: SUPPORT_MAIL_PASSWORD

  # Microsoft 365 over IMAP/SMTP with OAuth2 (XOAUTH2)
  - name: office
    email_address: me@contoso.com
    backend: imap
    auth_type: oauth2
    active: false
    oauth2:
      provider: microsoft
      client_id: 00000000-0000-0000-0000-000000000000
      client_secret_env: MS_CLIENT_SECRET
      refresh_token_env: MS_REFRESH_TOKEN

  # Microsoft Graph API
  # - name: graph
  #   email_address: me@contoso.com
  #   backend: graph
  #   oauth2:
  #     provider: microsoft
  #     client_id: 00000000-0000-0000-0000-000000000000
  #     refresh_token_env: MS_REFRESH_TOKEN

  # Gmail API
  # - name: gmail
  #   email_address: me@gmail.com
  #   backend: gmail
  #   oauth2:
  #     provider: google
  #     client_id: 1234.apps.googleusercontent.com
  #     client_secret_env: GOOGLE_CLIENT_SECRET
  #     refresh_token_env: GOOGLE_REFRESH_TOKEN

ollama:
  base_url: http://localhost:11434
  model: gemma3:27b
  temperature: 0.3
  max_tokens: 800
  timeout: 120

responder:
  # Only subjects starting with this prefix are answered (empty = all)
  subject_filter: "[AI_REQUEST]"
  poll_interval: 60
  history_limit: 20
  max_messages_per_cycle: 50
  skip_automated: true
  mark_seen: true
  signature: |
    Example Support (automated reply)

logging:
  level: INFO
  # log_file: /var/log/mailresponder.log
  audit_file: audit.jsonl

web:
  host: 127.0.0.1
  port: 8080

database_path: mailresponder.db
dry_run: true
"""


@cli.command()
@click.argument("output", type=click.Path())
def init_config(output: str) -> None:
    """Generate a sample configuration file."""
    Path(output).write_text(SAMPLE_CONFIG, encoding="utf-8")
    console.print(f"[green]Sample configuration written to {output}[/green]")
    console.print("\nNext steps:")
    console.print("1. Edit the accounts with your mail settings")
    console.print("2. Set the password / token environment variables")
    console.print("3. Run: mailresponder check --config " + output)
    console.print("4. Run: mailresponder once --config " + output)
    console.print("5. Set dry_run: false and run: mailresponder run --config " + output)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()

"""Configuration management for mailresponder."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant responding to emails. "
    "Respond to the latest message in a helpful and professional manner."
)

DEFAULT_REPLY_TEMPLATE = """{{ reply }}
{% if signature %}
--
{{ signature }}
{% endif %}
On {{ original.date_str or "an earlier date" }}, {{ sender }} wrote:
{% for line in original.body_text.splitlines()[:20] %}> {{ line }}
{% endfor %}"""


# Well-known endpoints per OAuth2 provider
PROVIDER_DEFAULTS: dict[str, dict[str, object]] = {
    "microsoft": {
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "scopes": [
            "https://outlook.office365.com/IMAP.AccessAsUser.All",
            "https://outlook.office365.com/SMTP.Send",
            "offline_access",
        ],
        "imap_host": "outlook.office365.com",
        "imap_port": 993,
        "smtp_host": "smtp-mail.outlook.com",
        "smtp_port": 587,
    },
    "google": {
        "token_url": "https://oauth2.googleapis.com/token",
        "scopes": ["https://mail.google.com/"],
        "imap_host": "imap.gmail.com",
        "imap_port": 993,
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 587,
    },
}


# Scopes for the REST backends, used when an account lists none
BACKEND_SCOPES: dict[str, list[str]] = {
    "graph": [
        "https://graph.microsoft.com/Mail.ReadWrite",
        "https://graph.microsoft.com/Mail.Send",
        "offline_access",
    ],
    "gmail": ["https://www.googleapis.com/auth/gmail.modify"],
}


def _read_env(name: str | None) -> str:
    """Read a secret from an environment variable, empty if unset."""
    if not name:
        return ""
    return os.environ.get(name, "")


class ImapConfig(BaseModel):
    """IMAP server configuration."""

    host: str = ""
    port: int = 993
    username: str = ""
    password: str = Field(default="", repr=False)
    password_env: str | None = None
    use_ssl: bool = True
    verify_ssl: bool = True
    timeout: int = 30
    inbox_folder: str = "INBOX"

    def get_password(self) -> str:
        """Return the password, preferring the environment variable."""
        return _read_env(self.password_env) or self.password


class SmtpConfig(BaseModel):
    """SMTP server configuration."""

    host: str = ""
    port: int = 587
    username: str = ""
    password: str = Field(default="", repr=False)
    password_env: str | None = None
    use_ssl: bool = False
    timeout: int = 30

    def get_password(self) -> str:
        """Return the password, preferring the environment variable."""
        return _read_env(self.password_env) or self.password


class OAuth2Config(BaseModel):
    """OAuth2 credentials for token refresh.

    Only the refresh-token grant is used. Tokens are obtained out of band
    (for example with the provider's own tooling) and supplied here.
    """

    provider: Literal["microsoft", "google", "custom"] = "microsoft"
    client_id: str
    client_secret: str = Field(default="", repr=False)
    client_secret_env: str | None = None
    refresh_token: str = Field(default="", repr=False)
    refresh_token_env: str | None = None
    access_token: str = Field(default="", repr=False)
    access_token_env: str | None = None
    token_url: str | None = None
    scopes: list[str] = Field(default_factory=list)

    def get_client_secret(self) -> str:
        return _read_env(self.client_secret_env) or self.client_secret

    def get_refresh_token(self) -> str:
        return _read_env(self.refresh_token_env) or self.refresh_token

    def get_access_token(self) -> str:
        return _read_env(self.access_token_env) or self.access_token


class AccountConfig(BaseModel):
    """A mailbox the responder watches and replies from."""

    name: str
    email_address: str
    display_name: str | None = None
    backend: Literal["imap", "graph", "gmail"] = "imap"
    auth_type: Literal["basic", "oauth2"] = "basic"
    active: bool = True
    imap: ImapConfig = Field(default_factory=ImapConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    oauth2: OAuth2Config | None = None

    @model_validator(mode="after")
    def _check_auth(self) -> AccountConfig:
        if self.backend in ("graph", "gmail") and self.auth_type != "oauth2":
            self.auth_type = "oauth2"
        if self.auth_type == "oauth2" and self.oauth2 is None:
            raise ValueError(f"Account '{self.name}' uses OAuth2 but has no oauth2 section")
        if self.oauth2 is not None and not self.oauth2.scopes and self.backend in BACKEND_SCOPES:
            self.oauth2.scopes = list(BACKEND_SCOPES[self.backend])
        if self.backend == "imap" and self.oauth2 is not None:
            defaults = PROVIDER_DEFAULTS.get(self.oauth2.provider)
            if defaults and not self.imap.host:
                self.imap.host = str(defaults["imap_host"])
                self.imap.port = int(defaults["imap_port"])
            if defaults and not self.smtp.host:
                self.smtp.host = str(defaults["smtp_host"])
                self.smtp.port = int(defaults["smtp_port"])
        if self.backend == "imap":
            if not self.imap.host:
                raise ValueError(f"Account '{self.name}' needs imap.host")
            if not self.smtp.host:
                raise ValueError(f"Account '{self.name}' needs smtp.host")
            # Usernames default to the mailbox address
            if not self.imap.username:
                self.imap.username = self.email_address
            if not self.smtp.username:
                self.smtp.username = self.email_address
        return self

    @property
    def is_oauth2(self) -> bool:
        return self.auth_type == "oauth2"


class OllamaConfig(BaseModel):
    """Ollama configuration."""

    base_url: str = "http://localhost:11434"
    model: str = "gemma3:27b"
    timeout: int = 120
    temperature: float = 0.3
    max_tokens: int = 800
    num_ctx: int = 8192


class ResponderConfig(BaseModel):
    """Behaviour of the reply pipeline."""

    subject_filter: str = Field(
        default="[AI_REQUEST]",
        description="Only subjects starting with this prefix are answered (empty = all)",
    )
    poll_interval: int = Field(default=60, description="Seconds between check cycles")
    history_limit: int = Field(default=20, description="Conversation messages sent to the LLM")
    max_messages_per_cycle: int = 50
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    reply_template: str = DEFAULT_REPLY_TEMPLATE
    signature: str | None = None
    skip_automated: bool = True
    mark_seen: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    log_file: str | None = None
    audit_file: str | None = "audit.jsonl"


class WebConfig(BaseModel):
    """JSON API server configuration."""

    host: str = "127.0.0.1"
    port: int = 8080


class Config(BaseModel):
    """Main configuration."""

    accounts: list[AccountConfig]
    ollama: OllamaConfig = Field(default_factory=lambda: OllamaConfig())
    responder: ResponderConfig = Field(default_factory=lambda: ResponderConfig())
    logging: LoggingConfig = Field(default_factory=lambda: LoggingConfig())
    web: WebConfig = Field(default_factory=lambda: WebConfig())
    database_path: str = "mailresponder.db"
    dry_run: bool = False

    @model_validator(mode="after")
    def _check_accounts(self) -> Config:
        if not self.accounts:
            raise ValueError("At least one account must be configured")
        names = [a.name for a in self.accounts]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate account names: {', '.join(sorted(duplicates))}")
        return self

    @property
    def active_accounts(self) -> list[AccountConfig]:
        return [a for a in self.accounts if a.active]

    def get_account(self, name: str) -> AccountConfig | None:
        for account in self.accounts:
            if account.name == name:
                return account
        return None


# Keys whose values are masked when configuration is shown through the API
SECRET_KEYS = ("password", "client_secret", "refresh_token", "access_token")
MASK = "********"


def mask_secrets(data: Any) -> Any:
    """Return a copy of raw configuration data with secret values masked."""
    if isinstance(data, dict):
        return {k: MASK if k in SECRET_KEYS and v else mask_secrets(v) for k, v in data.items()}
    if isinstance(data, list):
        return [mask_secrets(v) for v in data]
    return data


def restore_secrets(new: Any, old: Any) -> Any:
    """Put the stored secret back wherever `new` still carries the mask."""
    if not isinstance(new, dict):
        return new
    old = old if isinstance(old, dict) else {}
    restored = {}
    for key, value in new.items():
        if key in SECRET_KEYS and value == MASK:
            restored[key] = old.get(key, "")
        else:
            restored[key] = restore_secrets(value, old.get(key))
    return restored


def read_config_data(config_path: str | Path) -> dict[str, Any]:
    """Read the raw YAML mapping of a configuration file."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config(config_path: str | Path) -> Config:
    """Load configuration from YAML file."""
    return Config(**read_config_data(config_path))


def save_config(config_path: str | Path, data: dict[str, Any]) -> Config:
    """Validate raw configuration data and write it to the YAML file.

    Nothing is written when validation fails. The previous file is kept
    next to it with a ``.bak`` suffix.

    Raises:
        ValidationError: If the data is not a valid configuration
    """
    config = Config(**data)

    config_path = Path(config_path)
    if config_path.exists():
        backup_path = config_path.with_suffix(config_path.suffix + ".bak")
        backup_path.write_text(config_path.read_text(encoding="utf-8"), encoding="utf-8")

    config_path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
    logger.info(f"Configuration written to {config_path}")
    return config

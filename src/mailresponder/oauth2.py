"""OAuth2 access-token lifecycle for mail accounts."""

from __future__ import annotations

import base64
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import httpx

from mailresponder.config import PROVIDER_DEFAULTS

if TYPE_CHECKING:
    from mailresponder.config import OAuth2Config

logger = logging.getLogger(__name__)

# Tokens expiring within this window are refreshed before use
EXPIRY_SKEW = timedelta(minutes=5)


class OAuth2Error(Exception):
    """Raised when an access token cannot be obtained."""


@dataclass
class AccessToken:
    """A bearer token and its expiry."""

    value: str
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    def is_expiring(self, now: datetime | None = None) -> bool:
        """Check if the token is expired or expires within the skew window."""
        if self.expires_at is None:
            return False
        now = now or datetime.now()
        return now + EXPIRY_SKEW >= self.expires_at

    def __repr__(self) -> str:
        return f"AccessToken(value='***', expires_at={self.expires_at!r}, token_type={self.token_type!r})"


def xoauth2_string(username: str, access_token: str) -> str:
    """Build the SASL XOAUTH2 initial client response."""
    return f"user={username}\x01auth=Bearer {access_token}\x01\x01"


def xoauth2_b64(username: str, access_token: str) -> str:
    """XOAUTH2 response, base64 encoded (as SMTP AUTH expects)."""
    return base64.b64encode(xoauth2_string(username, access_token).encode()).decode()


class TokenProvider:
    """Hands out valid access tokens, refreshing them when needed."""

    def __init__(self, config: OAuth2Config, http_client: httpx.Client | None = None):
        """Initialize the provider.

        Args:
            config: OAuth2 credentials of one account
            http_client: Optional client (tests inject a mock transport)
        """
        self.config = config
        self._client = http_client
        self._refresh_token = config.get_refresh_token()
        self._token: AccessToken | None = None
        # Guards token state shared by the polling thread and API requests
        self._lock = threading.RLock()

        initial = config.get_access_token()
        if initial:
            # Expiry of a configured token is unknown; refresh on first 401
            self._token = AccessToken(value=initial)

    @property
    def token_url(self) -> str:
        if self.config.token_url:
            return self.config.token_url
        defaults = PROVIDER_DEFAULTS.get(self.config.provider)
        if not defaults:
            raise OAuth2Error(f"No token_url configured for provider '{self.config.provider}'")
        return str(defaults["token_url"])

    @property
    def scopes(self) -> list[str]:
        if self.config.scopes:
            return self.config.scopes
        defaults = PROVIDER_DEFAULTS.get(self.config.provider, {})
        return list(defaults.get("scopes", []))  # type: ignore[arg-type]

    @property
    def refresh_token(self) -> str:
        return self._refresh_token

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=30)
        return self._client

    def get_access_token(self) -> str:
        """Return a valid access token, refreshing it if it is about to expire.

        Raises:
            OAuth2Error: If no token is available and refreshing fails
        """
        with self._lock:
            if self._token is None or self._token.is_expiring():
                self.refresh()
            assert self._token is not None
            return self._token.value

    def invalidate(self) -> None:
        """Forget the current token (e.g. after the server rejected it)."""
        with self._lock:
            self._token = None

    def refresh(self) -> AccessToken:
        """Exchange the refresh token for a new access token."""
        with self._lock:
            return self._refresh()

    def _refresh(self) -> AccessToken:
        if not self._refresh_token:
            raise OAuth2Error("No refresh token configured, cannot obtain an access token")

        data = {
            "client_id": self.config.client_id,
            "refresh_token": self._refresh_token,
            "grant_type": "refresh_token",
        }
        secret = self.config.get_client_secret()
        if secret:
            data["client_secret"] = secret
        if self.scopes:
            data["scope"] = " ".join(self.scopes)

        logger.info(f"Refreshing {self.config.provider} access token")

        try:
            response = self._get_client().post(self.token_url, data=data)
        except httpx.RequestError as e:
            raise OAuth2Error(f"Token request failed: {e}") from e

        if response.status_code != 200:
            raise OAuth2Error(f"Token endpoint returned {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
            value = payload["access_token"]
        except (ValueError, KeyError) as e:
            raise OAuth2Error(f"Invalid token response: {e}") from e

        expires_in = payload.get("expires_in")
        expires_at = datetime.now() + timedelta(seconds=int(expires_in)) if expires_in else None

        # Some providers rotate the refresh token
        if payload.get("refresh_token"):
            self._refresh_token = payload["refresh_token"]

        self._token = AccessToken(
            value=value,
            expires_at=expires_at,
            token_type=payload.get("token_type", "Bearer"),
            scope=payload.get("scope"),
        )
        logger.info(f"Obtained access token, expires in {expires_in} seconds")
        return self._token

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

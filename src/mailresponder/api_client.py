"""Shared HTTP plumbing for REST mail APIs (Microsoft Graph, Gmail)."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from mailresponder.oauth2 import TokenProvider

logger = logging.getLogger(__name__)


class MailAPIError(Exception):
    """A mail API answered with an error status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"API error: {status_code} - {message}")
        self.status_code = status_code


class MailAPIClient:
    """Bearer-authenticated JSON client with one retry on 401 and 429."""

    base_url = ""
    max_retry_after = 60

    def __init__(
        self,
        token_provider: TokenProvider,
        timeout: int = 30,
        http_client: httpx.Client | None = None,
    ):
        self.token_provider = token_provider
        self.timeout = timeout
        self._client = http_client

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(base_url=self.base_url, timeout=self.timeout)
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, refreshing the token on 401 and honouring Retry-After on 429.

        Raises:
            ConnectionError: If the API cannot be reached
            MailAPIError: If the API answers with an error status
        """
        client = self._get_client()
        extra_headers = kwargs.pop("headers", {})
        retried_auth = False
        retried_throttle = False

        while True:
            headers = {
                "Authorization": f"Bearer {self.token_provider.get_access_token()}",
                **extra_headers,
            }
            try:
                response = client.request(method, path, headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                raise ConnectionError(f"Request to {path} timed out") from e
            except httpx.RequestError as e:
                raise ConnectionError(f"Request to {path} failed: {e}") from e

            if response.status_code == 401 and not retried_auth:
                logger.info("Access token rejected, refreshing")
                self.token_provider.invalidate()
                retried_auth = True
                continue

            if response.status_code == 429 and not retried_throttle:
                try:
                    retry_after = int(response.headers.get("Retry-After", "10"))
                except ValueError:
                    retry_after = 10
                retry_after = min(retry_after, self.max_retry_after)
                logger.warning(f"Rate limited, waiting {retry_after}s...")
                time.sleep(retry_after)
                retried_throttle = True
                continue

            if response.status_code >= 400:
                raise MailAPIError(response.status_code, response.text[:200])

            return response

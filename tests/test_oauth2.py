"""Tests for the OAuth2 token provider."""

import base64
import threading
import time
from datetime import datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from mailresponder.config import OAuth2Config
from mailresponder.oauth2 import AccessToken, OAuth2Error, TokenProvider, xoauth2_b64, xoauth2_string


def token_transport(responses, requests):
    """MockTransport answering token requests from a list of (status, json)."""

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status, payload = responses.pop(0)
        return httpx.Response(status, json=payload)

    return httpx.MockTransport(handler)


@pytest.fixture
def oauth_config():
    return OAuth2Config(provider="microsoft", client_id="client-1", client_secret="shh", refresh_token="rt-1")


class TestAccessToken:
    def test_expiring_within_skew(self):
        now = datetime(2024, 1, 1, 12, 0)
        assert AccessToken("t", expires_at=now + timedelta(minutes=4)).is_expiring(now)
        assert not AccessToken("t", expires_at=now + timedelta(minutes=10)).is_expiring(now)

    def test_unknown_expiry_is_not_expiring(self):
        assert not AccessToken("t").is_expiring()

    def test_repr_masks_value(self):
        assert "secret-token" not in repr(AccessToken("secret-token"))


class TestXOAuth2:
    def test_string_format(self):
        assert xoauth2_string("me@example.com", "tok") == "user=me@example.com\x01auth=Bearer tok\x01\x01"

    def test_b64(self):
        decoded = base64.b64decode(xoauth2_b64("me@example.com", "tok")).decode()
        assert decoded == xoauth2_string("me@example.com", "tok")


class TestTokenProvider:
    """Tests for token refresh."""

    def test_refresh_posts_refresh_grant(self, oauth_config):
        requests = []
        transport = token_transport([(200, {"access_token": "at-1", "expires_in": 3600})], requests)
        provider = TokenProvider(oauth_config, http_client=httpx.Client(transport=transport))

        assert provider.get_access_token() == "at-1"

        request = requests[0]
        assert str(request.url) == "https://login.microsoftonline.com/common/oauth2/v2.0/token"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["client_id"] == ["client-1"]
        assert form["client_secret"] == ["shh"]
        assert form["refresh_token"] == ["rt-1"]
        assert "offline_access" in form["scope"][0]

    def test_token_cached_until_expiring(self, oauth_config):
        requests = []
        transport = token_transport(
            [
                (200, {"access_token": "at-1", "expires_in": 3600}),
                (200, {"access_token": "at-2", "expires_in": 3600}),
            ],
            requests,
        )
        provider = TokenProvider(oauth_config, http_client=httpx.Client(transport=transport))

        assert provider.get_access_token() == "at-1"
        assert provider.get_access_token() == "at-1"
        assert len(requests) == 1

        provider._token.expires_at = datetime.now() + timedelta(minutes=2)
        assert provider.get_access_token() == "at-2"
        assert len(requests) == 2

    def test_rotated_refresh_token_replaces_old(self, oauth_config):
        requests = []
        transport = token_transport(
            [
                (200, {"access_token": "at-1", "expires_in": 3600, "refresh_token": "rt-2"}),
                (200, {"access_token": "at-2", "expires_in": 3600}),
            ],
            requests,
        )
        provider = TokenProvider(oauth_config, http_client=httpx.Client(transport=transport))

        provider.get_access_token()
        assert provider.refresh_token == "rt-2"

        provider.invalidate()
        provider.get_access_token()
        assert parse_qs(requests[1].content.decode())["refresh_token"] == ["rt-2"]

    def test_configured_access_token_used_first(self):
        config = OAuth2Config(client_id="c", access_token="preset")
        provider = TokenProvider(config, http_client=httpx.Client(transport=token_transport([], [])))
        assert provider.get_access_token() == "preset"

    def test_error_status_raises(self, oauth_config):
        transport = token_transport([(400, {"error": "invalid_grant"})], [])
        provider = TokenProvider(oauth_config, http_client=httpx.Client(transport=transport))

        with pytest.raises(OAuth2Error, match="400"):
            provider.get_access_token()

    def test_missing_access_token_raises(self, oauth_config):
        transport = token_transport([(200, {"token_type": "Bearer"})], [])
        provider = TokenProvider(oauth_config, http_client=httpx.Client(transport=transport))

        with pytest.raises(OAuth2Error, match="Invalid token response"):
            provider.refresh()

    def test_network_error_raises(self, oauth_config):
        def handler(request):
            raise httpx.ConnectError("refused")

        provider = TokenProvider(oauth_config, http_client=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(OAuth2Error, match="Token request failed"):
            provider.refresh()

    def test_no_refresh_token(self):
        provider = TokenProvider(OAuth2Config(client_id="c"))
        with pytest.raises(OAuth2Error, match="No refresh token"):
            provider.get_access_token()

    def test_custom_provider_needs_token_url(self):
        provider = TokenProvider(OAuth2Config(provider="custom", client_id="c", refresh_token="r"))
        with pytest.raises(OAuth2Error, match="token_url"):
            provider.refresh()


class TestConcurrentRefresh:
    def test_one_refresh_for_concurrent_callers(self, oauth_config):
        requests = []

        def handler(request):
            requests.append(request)
            time.sleep(0.05)
            return httpx.Response(200, json={"access_token": f"at-{len(requests)}", "expires_in": 3600, "refresh_token": "rt-2"})

        provider = TokenProvider(oauth_config, http_client=httpx.Client(transport=httpx.MockTransport(handler)))
        tokens = []
        threads = [threading.Thread(target=lambda: tokens.append(provider.get_access_token())) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(requests) == 1
        assert tokens == ["at-1"] * 4
        assert provider.refresh_token == "rt-2"

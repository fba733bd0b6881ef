"""Tests for the Ollama client."""

import json

import httpx
import pytest

from mailresponder.config import OllamaConfig
from mailresponder.llm_client import ChatTurn, LLMClient


def chat_response(content, status=200):
    return httpx.Response(status, json={"message": {"role": "assistant", "content": content}, "eval_count": 12})


@pytest.fixture
def config():
    return OllamaConfig(model="gemma3:27b", temperature=0.2, max_tokens=300, num_ctx=4096)


def make_client(config, handler):
    return LLMClient(config, http_client=httpx.Client(base_url=config.base_url, transport=httpx.MockTransport(handler)))


class TestGenerateReply:
    """Tests for reply generation."""

    def test_payload_order_and_options(self, config):
        payloads = []

        def handler(request):
            payloads.append(json.loads(request.content))
            return chat_response('{"reply": "We open at 9.", "language": "en", "tone": "friendly"}')

        client = make_client(config, handler)
        history = [ChatTurn("user", "Are you open today?"), ChatTurn("assistant", "Yes, until 5.")]
        response = client.generate_reply(history, "And on Saturday?", "Be brief.", subject="Hours", sender="a@x.com")

        assert response.success
        assert response.result.reply == "We open at 9."
        assert response.result.language == "en"
        assert response.tokens_used == 12

        payload = payloads[0]
        assert payload["model"] == "gemma3:27b"
        assert payload["stream"] is False
        assert payload["format"] == "json"
        assert payload["options"] == {"temperature": 0.2, "num_predict": 300, "num_ctx": 4096}
        roles = [m["role"] for m in payload["messages"]]
        assert roles == ["system", "user", "assistant", "user"]
        assert payload["messages"][0]["content"].startswith("Be brief.")
        assert payload["messages"][-1]["content"].endswith("And on Saturday?")
        assert "Subject: Hours" in payload["messages"][-1]["content"]

    def test_markdown_fences_stripped(self, config):
        client = make_client(config, lambda r: chat_response('```json\n{"reply": "Hi"}\n```'))
        response = client.generate_reply([], "Hello", "system")
        assert response.success
        assert response.result.reply == "Hi"

    def test_invalid_json(self, config):
        client = make_client(config, lambda r: chat_response("Sure! Here is your reply."))
        response = client.generate_reply([], "Hello", "system")
        assert not response.success
        assert "Invalid response format" in response.error
        assert response.raw_response == "Sure! Here is your reply."

    def test_missing_reply_field(self, config):
        client = make_client(config, lambda r: chat_response('{"language": "en"}'))
        assert not client.generate_reply([], "Hello", "system").success

    def test_empty_reply(self, config):
        client = make_client(config, lambda r: chat_response('{"reply": "   "}'))
        response = client.generate_reply([], "Hello", "system")
        assert not response.success
        assert "empty" in response.error

    def test_api_error(self, config):
        client = make_client(config, lambda r: httpx.Response(500, text="model not found"))
        response = client.generate_reply([], "Hello", "system")
        assert not response.success
        assert "500" in response.error

    def test_timeout(self, config):
        def handler(request):
            raise httpx.ReadTimeout("slow")

        response = make_client(config, handler).generate_reply([], "Hello", "system")
        assert not response.success
        assert response.error == "Request timed out"


class TestHealth:
    def test_list_models_and_health(self, config):
        tags = {"models": [{"name": "gemma3:27b"}, {"name": "llama3:latest"}]}
        client = make_client(config, lambda r: httpx.Response(200, json=tags))

        assert client.check_health()
        assert client.list_models() == ["gemma3:27b", "llama3:latest"]
        assert client.has_model()

    def test_has_model_without_tag(self):
        client = LLMClient(OllamaConfig(model="llama3"))
        assert client.has_model(["llama3:latest"])
        assert not client.has_model(["mistral:7b"])

    def test_unreachable(self, config):
        def handler(request):
            raise httpx.ConnectError("refused")

        client = make_client(config, handler)
        assert client.check_health() is False
        assert client.list_models() == []

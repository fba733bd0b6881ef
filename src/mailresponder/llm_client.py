"""LLM client for Ollama integration."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from mailresponder.config import OllamaConfig

logger = logging.getLogger(__name__)


class ReplyResult(BaseModel):
    """LLM reply output schema."""

    reply: str  # The reply text
    language: str | None = None  # Language of the reply
    tone: str | None = None  # Tone used


@dataclass
class ChatTurn:
    """One message of conversation history."""

    role: str  # user or assistant
    content: str


@dataclass
class LLMResponse:
    """Container for LLM response with metadata."""

    success: bool
    result: ReplyResult | None
    raw_response: str
    error: str | None = None
    tokens_used: int = 0


REPLY_FORMAT_INSTRUCTIONS = """

You MUST respond with valid JSON only, no other text. Use this exact schema:
{
  "reply": "The complete reply email body, without subject line",
  "language": "en|nl|de|fr|etc",
  "tone": "professional|friendly|formal|casual"
}

Guidelines:
- Answer in the language of the latest message
- Match the tone and formality level of the sender
- Address the questions and requests of the latest message
- Use earlier messages of the conversation as context
- Do not invent facts; if information is missing, say so"""


class LLMClient:
    """Client for Ollama LLM API."""

    def __init__(self, config: OllamaConfig, http_client: httpx.Client | None = None):
        """Initialize the LLM client."""
        self.config = config
        self._client = http_client

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> LLMClient:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()

    def check_health(self) -> bool:
        """Check if Ollama is available."""
        try:
            client = self._get_client()
            response = client.get("/api/tags")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False

    def list_models(self) -> list[str]:
        """List available models."""
        try:
            client = self._get_client()
            response = client.get("/api/tags")
            if response.status_code == 200:
                data = response.json()
                return [m["name"] for m in data.get("models", [])]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"Failed to list models: {e}")
        return []

    def has_model(self, models: list[str] | None = None) -> bool:
        """Check if the configured model is pulled (tag optional)."""
        models = models if models is not None else self.list_models()
        wanted = self.config.model
        if ":" in wanted:
            return wanted in models
        return wanted in [m.split(":")[0] for m in models]

    def generate_reply(
        self,
        history: list[ChatTurn],
        message: str,
        system_prompt: str,
        subject: str | None = None,
        sender: str | None = None,
    ) -> LLMResponse:
        """Draft a reply to the latest message of a conversation.

        Args:
            history: Earlier messages, oldest first (must not contain the latest message)
            message: Body of the message to answer
            system_prompt: Persona and instructions for the assistant
            subject: Subject of the latest message
            sender: Sender of the latest message
        """
        messages = self._build_messages(history, message, system_prompt, subject, sender)

        logger.debug(f"Prompt: {len(messages)} messages, {sum(len(m['content']) for m in messages)} characters")

        raw_response, tokens, error = self._call_llm(messages)

        if error:
            return LLMResponse(
                success=False,
                result=None,
                raw_response=raw_response,
                error=error,
            )

        try:
            result = self._parse_reply_response(raw_response)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to parse reply response: {e}")
            return LLMResponse(
                success=False,
                result=None,
                raw_response=raw_response,
                error=f"Invalid response format: {e}",
            )

        if not result.reply.strip():
            return LLMResponse(
                success=False,
                result=None,
                raw_response=raw_response,
                error="Model returned an empty reply",
            )

        return LLMResponse(
            success=True,
            result=result,
            raw_response=raw_response,
            tokens_used=tokens,
        )

    def _build_messages(
        self,
        history: list[ChatTurn],
        message: str,
        system_prompt: str,
        subject: str | None,
        sender: str | None,
    ) -> list[dict[str, str]]:
        """Build the chat message list: system, history, latest message."""
        messages = [{"role": "system", "content": system_prompt.strip() + REPLY_FORMAT_INSTRUCTIONS}]

        for turn in history:
            role = "assistant" if turn.role == "assistant" else "user"
            messages.append({"role": role, "content": turn.content})

        parts = []
        if sender:
            parts.append(f"From: {sender}")
        if subject:
            parts.append(f"Subject: {subject}")
        if parts:
            parts.append("")
        parts.append(message)
        messages.append({"role": "user", "content": "\n".join(parts)})

        return messages

    def _call_llm(self, messages: list[dict[str, str]]) -> tuple[str, int, str | None]:
        """Call the Ollama chat API and return (response, tokens, error)."""
        try:
            client = self._get_client()

            payload: dict[str, Any] = {
                "model": self.config.model,
                "messages": messages,
                "stream": False,
                "options": {
                    "temperature": self.config.temperature,
                    "num_predict": self.config.max_tokens,
                    "num_ctx": self.config.num_ctx,
                },
                "format": "json",
            }

            logger.debug(f"Calling Ollama API with model {self.config.model}")

            response = client.post("/api/chat", json=payload)

            if response.status_code != 200:
                return "", 0, f"API error: {response.status_code} - {response.text}"

            data = response.json()
            content = data.get("message", {}).get("content", "")
            tokens = int(data.get("prompt_eval_count", 0)) + int(data.get("eval_count", 0))

            return content, tokens, None

        except httpx.TimeoutException:
            return "", 0, "Request timed out"
        except httpx.RequestError as e:
            return "", 0, f"Request failed: {e}"
        except ValueError as e:
            return "", 0, f"Invalid API response: {e}"

    def _parse_reply_response(self, response: str) -> ReplyResult:
        """Parse and validate reply response."""
        response = self._clean_json_response(response)
        data = json.loads(response)
        return ReplyResult.model_validate(data)

    def _clean_json_response(self, response: str) -> str:
        """Clean markdown formatting from JSON response."""
        response = response.strip()
        if response.startswith("```json"):
            response = response[7:]
        if response.startswith("```"):
            response = response[3:]
        if response.endswith("```"):
            response = response[:-3]
        return response.strip()

from __future__ import annotations

from typing import Optional, Protocol

import httpx

from chatharbor.logging import get_logger
from chatharbor.service.errors import UpstreamError
from chatharbor.storage.models import Bot

logger = get_logger(__name__)

NO_ANSWER = "I'm sorry, I don't have enough information to answer that."

# Upper bound on training text folded into the system prompt
MAX_CONTEXT_CHARS = 12_000

_GROUNDED_TEMPLATE = """You are an AI assistant for the "{name}" chatbot.

This chatbot is described as: "{description}".

{system_prompt}

Answer questions *only* using the context below. If the answer cannot be found in the context, say: "{no_answer}"
Do not use outside knowledge and do not make up information. Be polite, clear, and concise.

Here is the context:

---

{context}

---"""


def build_system_instruction(bot: Bot) -> str:
    """Compose the system instruction for a bot from its prompt and training documents."""
    context = "\n\n".join(doc.content for doc in bot.documents if doc.content)
    if not context:
        return bot.system_prompt
    return _GROUNDED_TEMPLATE.format(
        name=bot.name,
        description=bot.description or "A helpful assistant",
        system_prompt=bot.system_prompt,
        no_answer=NO_ANSWER,
        context=context[:MAX_CONTEXT_CHARS],
    )


class ChatModel(Protocol):
    """Opaque inference collaborator: prompt in, text out."""

    async def complete(self, model: str, system_instruction: str, message: str) -> str: ...

    async def close(self) -> None: ...


class StubChatModel:
    """Deterministic replies for tests and offline development."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []

    async def complete(self, model: str, system_instruction: str, message: str) -> str:
        self.calls.append((model, system_instruction, message))
        return f"[{model}] {message}"

    async def close(self) -> None:
        return None


class HttpChatModel:
    """Client for OpenAI-compatible ``/chat/completions`` endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 30.0,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client for API calls."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def complete(self, model: str, system_instruction: str, message: str) -> str:
        client = await self._get_client()
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_instruction},
                {"role": "user", "content": message},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            response = await client.post(f"{self.base_url}/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "chat_model_api_error",
                status_code=e.response.status_code,
                model=model,
                error=str(e),
            )
            raise UpstreamError("AI service returned an error") from e
        except httpx.TimeoutException as e:
            logger.error("chat_model_timeout", model=model, error=str(e))
            raise UpstreamError("AI service timed out") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "chat_model_error", model=model, error_type=type(e).__name__, error=str(e)
            )
            raise UpstreamError("AI service unavailable") from e

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            logger.error("chat_model_bad_payload", model=model)
            raise UpstreamError("AI service returned an unexpected response") from e
        logger.info("chat_model_success", model=model, response_length=len(text))
        return text.strip()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

"""LLM client abstraction with OpenAI-compatible and Anthropic backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from shopchat.config import AnthropicConfig, OpenAIConfig
from shopchat.errors import ConfigurationError, ExternalServiceError, TransientServiceError
from shopchat.log import get_logger

logger = get_logger(__name__)


@dataclass
class LLMResponse:
    """Unified response from any LLM backend."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    raw: Any = None  # Backend-specific raw response


class LLMClient(ABC):
    """Abstract base class for chat-completion backends."""

    @abstractmethod
    async def chat(
        self,
        system: str,
        messages: list[dict[str, Any]],
        model: str,
        max_tokens: int = 400,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Send a system prompt plus conversation and return the reply text.

        Raises :class:`ExternalServiceError` (or its transient subclass) when the
        backend answers with an error after its own retries.
        """
        ...


class OpenAIClient(LLMClient):
    """OpenAI-compatible chat completions using the official SDK."""

    def __init__(self, config: OpenAIConfig):
        import openai

        if not config.api_key:
            raise ConfigurationError("openai.api_key is not set")

        self._openai = openai
        self._client = openai.AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url or None,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )

    async def chat(
        self,
        system: str,
        messages: list[dict[str, Any]],
        model: str,
        max_tokens: int = 400,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "system", "content": system}, *messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        logger.debug("llm_request", backend="openai", model=model, message_count=len(messages))
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except (self._openai.APITimeoutError, self._openai.APIConnectionError) as e:
            raise TransientServiceError("llm", str(e)) from e
        except self._openai.APIStatusError as e:
            if e.status_code == 429 or e.status_code >= 500:
                raise TransientServiceError("llm", str(e), status=e.status_code) from e
            raise ExternalServiceError("llm", str(e), status=e.status_code) from e

        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        usage = response.usage
        return LLMResponse(
            text=text,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            raw=response,
        )


class AnthropicClient(LLMClient):
    """Anthropic API backend using the official SDK."""

    def __init__(self, config: AnthropicConfig):
        import anthropic

        if not config.api_key:
            raise ConfigurationError("anthropic.api_key is not set")

        self._anthropic = anthropic
        self._client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )

    async def chat(
        self,
        system: str,
        messages: list[dict[str, Any]],
        model: str,
        max_tokens: int = 400,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> LLMResponse:
        # No response_format on this API; JSON output is requested by the prompt itself.
        logger.debug("llm_request", backend="anthropic", model=model, message_count=len(messages))
        try:
            response = await self._client.messages.create(
                model=model,
                max_tokens=max_tokens,
                system=system,
                messages=messages,
                temperature=temperature,
            )
        except (self._anthropic.APITimeoutError, self._anthropic.APIConnectionError) as e:
            raise TransientServiceError("llm", str(e)) from e
        except self._anthropic.APIStatusError as e:
            if e.status_code == 429 or e.status_code >= 500:
                raise TransientServiceError("llm", str(e), status=e.status_code) from e
            raise ExternalServiceError("llm", str(e), status=e.status_code) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return LLMResponse(
            text=text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            raw=response,
        )

"""OpenAI-compatible LLM Provider for third-party endpoints.

Used for Gemini through Google's OpenAI-compatible endpoint. Calls the
Chat Completions API with a ``json_schema`` response format.
"""

import logging

import openai
from openai import AsyncOpenAI

from .base import (
    LLMProvider,
    PromptSpec,
    ProviderResponse,
    TokenUsage,
    parse_structured_text,
    translate_api_error,
)

logger = logging.getLogger(__name__)


class OpenAICompatProvider(LLMProvider):
    """OpenAI-compatible provider for third-party endpoints."""

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = "",
        provider_label: str = "openai_compat",
    ) -> None:
        if not api_key:
            raise ValueError(
                f"API key not found for {provider_label}. "
                f"Set it as an environment variable."
            )
        super().__init__(api_key)
        self._base_url = base_url
        self.provider_name = provider_label

    def _get_async_client(self) -> AsyncOpenAI:
        if self._cached_async_client is None:
            kwargs: dict = {"api_key": self._api_key, "max_retries": 0}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._cached_async_client = AsyncOpenAI(**kwargs)
        return self._cached_async_client

    @staticmethod
    def _build_params(model: str, prompt: PromptSpec, temperature: float) -> dict:
        """Build Chat Completions API request parameters."""
        params: dict = {
            "model": model,
            "messages": [{"role": "user", "content": prompt.text}],
            "temperature": temperature,
            "max_tokens": prompt.max_tokens,
        }
        if prompt.response_schema is not None:
            params["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": prompt.schema_name,
                    "strict": True,
                    "schema": prompt.response_schema,
                },
            }
        return params

    @staticmethod
    def _extract_text(response) -> str | None:
        """Extract text from Chat Completions response."""
        if response.choices:
            return response.choices[0].message.content or None
        return None

    @staticmethod
    def _extract_usage(response) -> TokenUsage | None:
        usage = getattr(response, "usage", None)
        if usage is None:
            return None
        return TokenUsage(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )

    async def invoke(
        self,
        prompt: PromptSpec,
        model: str,
        temperature: float = 0.0,
        timeout: float | None = None,
    ) -> ProviderResponse:
        client = self._get_async_client()
        params = self._build_params(model, prompt, temperature)

        logger.debug(
            f"[{self.provider_name}] invoke model={model}, "
            f"schema={prompt.schema_name}, prompt_len={len(prompt.text)}"
        )
        try:
            response = await client.chat.completions.create(**params, timeout=timeout)
        except openai.OpenAIError as e:
            raise translate_api_error(e, model) from e

        raw_text = self._extract_text(response)
        usage = self._extract_usage(response)
        if prompt.response_schema is not None:
            content = parse_structured_text(raw_text, model, usage)
        else:
            content = raw_text or ""

        return ProviderResponse(
            content=content,
            usage=usage,
            model=model,
        )

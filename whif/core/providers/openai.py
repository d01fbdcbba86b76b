"""OpenAI LLM Provider implementation.

Uses the Responses API with a strict ``json_schema`` text format for
structured output, plain text otherwise.
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


class OpenAIProvider(LLMProvider):
    """OpenAI provider (gpt-*, o1-* models)."""

    provider_name = "openai"

    def __init__(self, api_key: str = "", *, base_url: str = "") -> None:
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY not found. Set it as an environment variable.\n"
                "  export OPENAI_API_KEY=sk-..."
            )
        super().__init__(api_key)
        self._base_url = base_url

    def _get_async_client(self) -> AsyncOpenAI:
        if self._cached_async_client is None:
            kwargs: dict = {"api_key": self._api_key, "max_retries": 0}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._cached_async_client = AsyncOpenAI(**kwargs)
        return self._cached_async_client

    @staticmethod
    def _build_params(
        model: str, prompt: PromptSpec, temperature: float
    ) -> dict:
        """Build request parameters for the Responses API."""
        params: dict = {
            "model": model,
            "input": prompt.text,
            "max_output_tokens": prompt.max_tokens,
        }
        # o1 reasoning models reject a temperature parameter
        if not model.startswith("o1"):
            params["temperature"] = temperature
        if prompt.response_schema is not None:
            params["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": prompt.schema_name,
                    "strict": True,
                    "schema": prompt.response_schema,
                }
            }
        return params

    @staticmethod
    def _extract_output_text(response) -> str | None:
        """Extract the output text content from a Responses API response."""
        for item in response.output:
            if getattr(item, "type", None) == "message":
                for content_item in item.content:
                    if getattr(content_item, "type", None) == "output_text":
                        return getattr(content_item, "text", None)
        return None

    @staticmethod
    def _extract_usage(response) -> TokenUsage | None:
        usage = getattr(response, "usage", None)
        if usage is None:
            return None
        return TokenUsage(
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
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
            f"[OpenAI] invoke model={model}, schema={prompt.schema_name}, "
            f"prompt_len={len(prompt.text)}"
        )
        try:
            response = await client.responses.create(**params, timeout=timeout)
        except openai.OpenAIError as e:
            raise translate_api_error(e, model) from e

        raw_text = self._extract_output_text(response)
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

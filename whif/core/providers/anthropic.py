"""Anthropic (Claude) LLM Provider implementation.

Uses the tool use pattern for reliable structured output:
instead of asking Claude to output JSON in text, we define a tool
with the response schema. Claude "calls" the tool, returning structured
data guaranteed to match the schema.
"""

import logging

import anthropic

from ..errors import TransientProviderError
from .base import (
    LLMProvider,
    PromptSpec,
    ProviderResponse,
    TokenUsage,
    translate_api_error,
)

logger = logging.getLogger(__name__)


def _clean_schema_for_tool(schema: dict) -> dict:
    """Clean a JSON schema for use as a tool input_schema.

    Keeps ``additionalProperties: false`` but strips schema-valued
    ``additionalProperties``, which tool schemas do not support.
    """
    cleaned = {}
    for key, value in schema.items():
        if key == "additionalProperties":
            if value is False:
                cleaned[key] = value
            elif isinstance(value, dict):
                logger.warning(
                    "Stripping schema-valued additionalProperties from tool schema"
                )
            continue
        if isinstance(value, dict):
            cleaned[key] = _clean_schema_for_tool(value)
        elif isinstance(value, list):
            cleaned[key] = [
                _clean_schema_for_tool(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            cleaned[key] = value
    return cleaned


def _make_structured_tool(schema_name: str, response_schema: dict) -> dict:
    """Create a tool definition that forces structured output."""
    return {
        "name": schema_name,
        "description": (
            "Return your response as structured data. "
            "You MUST call this tool with your complete response."
        ),
        "input_schema": _clean_schema_for_tool(response_schema),
    }


def _extract_tool_input(response) -> dict | None:
    """Extract tool_use input from a Claude response."""
    for block in response.content:
        if block.type == "tool_use":
            return block.input
    return None


def _extract_text(response) -> str:
    return "".join(
        block.text for block in response.content if block.type == "text"
    )


def _extract_usage(response) -> TokenUsage | None:
    """Extract token usage from an Anthropic API response."""
    if getattr(response, "usage", None) is None:
        return None
    return TokenUsage(
        input_tokens=getattr(response.usage, "input_tokens", 0) or 0,
        output_tokens=getattr(response.usage, "output_tokens", 0) or 0,
    )


class AnthropicProvider(LLMProvider):
    """Anthropic (Claude) LLM provider."""

    provider_name = "anthropic"

    def __init__(self, api_key: str = "", *, base_url: str = "") -> None:
        if not api_key:
            raise ValueError(
                "Anthropic API key not found. Set it via:\n"
                "  export ANTHROPIC_API_KEY=sk-ant-...\n"
                "Get your key from: https://console.anthropic.com/settings/keys"
            )
        super().__init__(api_key)
        self._base_url = base_url

    def _get_async_client(self) -> anthropic.AsyncAnthropic:
        if self._cached_async_client is None:
            kwargs: dict = {"api_key": self._api_key, "max_retries": 0}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._cached_async_client = anthropic.AsyncAnthropic(**kwargs)
        return self._cached_async_client

    async def invoke(
        self,
        prompt: PromptSpec,
        model: str,
        temperature: float = 0.0,
        timeout: float | None = None,
    ) -> ProviderResponse:
        client = self._get_async_client()
        params: dict = {
            "model": model,
            "max_tokens": prompt.max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt.text}],
        }
        if prompt.response_schema is not None:
            params["tools"] = [
                _make_structured_tool(prompt.schema_name, prompt.response_schema)
            ]
            params["tool_choice"] = {"type": "tool", "name": prompt.schema_name}

        logger.debug(
            f"[Claude] invoke model={model}, schema={prompt.schema_name}, "
            f"prompt_len={len(prompt.text)}"
        )
        try:
            response = await client.messages.create(**params, timeout=timeout)
        except anthropic.AnthropicError as e:
            raise translate_api_error(e, model) from e

        usage = _extract_usage(response)
        if prompt.response_schema is not None:
            content = _extract_tool_input(response)
            if content is None:
                raise TransientProviderError(
                    "Claude response did not contain a tool call",
                    model=model,
                    usage=usage,
                )
        else:
            content = _extract_text(response)

        return ProviderResponse(
            content=content,
            usage=usage,
            model=model,
        )

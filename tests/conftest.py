"""Shared fixtures: config isolation and a scripted pipeline provider."""

import re

import pytest

from whif import config as whif_config
from whif.core.providers import reset_provider_cache
from whif.core.providers.base import (
    LLMProvider,
    PromptSpec,
    ProviderResponse,
    TokenUsage,
)

_DEFAULT_USAGE = object()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from ~/.config/whif, stray .env files and WHIF_* env vars."""
    monkeypatch.setattr(whif_config, "CONFIG_FILE", tmp_path / "config.json")
    monkeypatch.setattr(whif_config, "_dotenv_loaded", True)
    for name in (
        "WHIF_DB_PATH",
        "WHIF_INITIAL_ALLOWANCE",
        "WHIF_ESTIMATED_COST",
        "WHIF_MAX_RETRIES",
        "WHIF_TIMEOUT_MS",
        "WHIF_MAX_CONCURRENCY",
        "WHIF_TRACE_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
    whif_config.reset_config()
    reset_provider_cache()
    yield
    whif_config.reset_config()
    reset_provider_cache()


class FakePipelineProvider(LLMProvider):
    """Answers every pipeline call site with canned, well-formed output.

    Args:
        statements: What the extract call returns.
        fail_on: schema_name -> exception raised instead of answering.
        score: Score returned for every category.
        usage: Token usage attached to every response (None for no metadata;
            defaults to a fresh 100 in / 50 out per provider).
    """

    provider_name = "fake"

    def __init__(
        self,
        statements: list[str] | None = None,
        fail_on: dict[str, Exception] | None = None,
        score: float = 0.5,
        usage: TokenUsage | None = _DEFAULT_USAGE,
    ) -> None:
        super().__init__("test-key")
        self.statements = statements or [
            "Make all public transit fares free",
            "Fund transit operations from general taxes",
        ]
        self.fail_on = fail_on or {}
        self.score = score
        if usage is _DEFAULT_USAGE:
            usage = TokenUsage(input_tokens=100, output_tokens=50)
        self.usage = usage
        self.calls: list[tuple[str, str]] = []

    async def invoke(
        self,
        prompt: PromptSpec,
        model: str,
        temperature: float = 0.0,
        timeout: float | None = None,
    ) -> ProviderResponse:
        name = prompt.schema_name
        self.calls.append((name, model))
        if name in self.fail_on:
            raise self.fail_on[name]

        if name == "extract_statements":
            content = {"statements": list(self.statements)}
        elif name == "downstream_impacts":
            statement = prompt.text.rsplit("Input impact statement: ", 1)[1].strip()
            content = {
                "impacts": [
                    f"{statement} -> cost shift",
                    f"{statement} -> ridership change",
                ]
            }
        elif name == "categorize_impacts":
            impacts = prompt.text.split("Input impact statements:\n", 1)[1].splitlines()
            content = {
                "categories": [
                    {"name": "Economic", "impacts": [i for i in impacts if "cost" in i]},
                    {
                        "name": "Labor & Social",
                        "impacts": [i for i in impacts if "cost" not in i]
                        + ["An impact nobody generated"],
                    },
                ]
            }
        elif name == "research_category":
            category = re.search(r"Impact category: (.+)", prompt.text).group(1)
            content = f"Findings for {category}: ridership rose 12% in comparable cities."
        elif name == "evaluate_category":
            content = {"score": self.score}
        elif name == "summarize_findings":
            content = {"summary": "## Overview\nFree transit is net positive.\n\n**Proceed.**"}
        else:
            raise AssertionError(f"unexpected call site {name}")

        return ProviderResponse(content=content, usage=self.usage, model=model)


@pytest.fixture
def fake_provider_cls():
    return FakePipelineProvider

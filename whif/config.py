"""Configuration management for Whif.

Config resolution order (highest priority first):
1. Programmatic (WhifConfig constructed in code, installed via configure())
2. Environment variables (WHIF_DB_PATH, WHIF_MAX_RETRIES, etc.)
3. Config file (~/.config/whif/config.json)
4. Hardcoded defaults

API keys are ALWAYS read from env vars (or a .env file), never stored in
the config file.
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)


# =============================================================================
# Config file location
# =============================================================================

CONFIG_DIR = Path.home() / ".config" / "whif"
CONFIG_FILE = CONFIG_DIR / "config.json"


# =============================================================================
# Config dataclasses
# =============================================================================


@dataclass
class StageModelConfig:
    """Model routing for one pipeline call site.

    The primary model is tried first, then each fallback in order.
    """

    model: str
    fallbacks: list[str] = field(default_factory=list)
    temperature: float = 0.0

    @property
    def candidates(self) -> list[str]:
        return [self.model, *self.fallbacks]


def _haiku_with_sonnet_fallback(temperature: float = 0.0) -> StageModelConfig:
    return StageModelConfig(
        model="claude-3-5-haiku-latest",
        fallbacks=["claude-3-7-sonnet-latest"],
        temperature=temperature,
    )


@dataclass
class StageModels:
    """Per-stage model routing.

    The evaluate stage has two call sites: ``research`` produces the
    findings for a category, ``evaluate`` scores them.
    """

    extract: StageModelConfig = field(default_factory=_haiku_with_sonnet_fallback)
    downstream: StageModelConfig = field(
        default_factory=lambda: _haiku_with_sonnet_fallback(temperature=0.7)
    )
    categorize: StageModelConfig = field(default_factory=_haiku_with_sonnet_fallback)
    research: StageModelConfig = field(
        default_factory=lambda: StageModelConfig(
            model="claude-sonnet-4-0",
            fallbacks=["claude-3-7-sonnet-latest", "claude-3-5-haiku-latest"],
        )
    )
    evaluate: StageModelConfig = field(default_factory=_haiku_with_sonnet_fallback)
    summarize: StageModelConfig = field(default_factory=_haiku_with_sonnet_fallback)


@dataclass
class RetryConfig:
    """Retry / fallback / timeout budget for every model call (milliseconds)."""

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    timeout_ms: int = 60000
    rate_limit_floor_ms: int = 5000


@dataclass
class LedgerConfig:
    """Balance ledger settings.

    Amounts are kept as strings so they round-trip through JSON without
    float conversion; use the Decimal properties.
    """

    initial_allowance: str = "10.00"
    estimated_cost: str = "1.00"  # pre-flight check before a run

    @property
    def initial_allowance_amount(self) -> Decimal:
        return Decimal(self.initial_allowance)

    @property
    def estimated_cost_amount(self) -> Decimal:
        return Decimal(self.estimated_cost)


@dataclass
class PipelineConfig:
    """Pipeline execution tuning."""

    max_concurrency: int = 8  # downstream fan-out bound


@dataclass
class TracingConfig:
    """Per-attempt trace output (JSON files, sanitized)."""

    enabled: bool = False
    log_dir: str = "./logs"


@dataclass
class WhifConfig:
    """Top-level Whif configuration.

    Examples:
        # Package use: no files needed
        config = WhifConfig(retry=RetryConfig(max_retries=1))
        configure(config)

        # CLI use: loads from ~/.config/whif/config.json + env
        config = WhifConfig.load()
    """

    models: StageModels = field(default_factory=StageModels)
    retry: RetryConfig = field(default_factory=RetryConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    tracing: TracingConfig = field(default_factory=TracingConfig)
    db_path: str = "./storage/whif.db"

    @classmethod
    def load(cls) -> "WhifConfig":
        """Load config from file + env vars.

        Priority: env var values > config.json values > defaults.
        """
        config = cls()

        # Layer 1: Load from config file if it exists
        if CONFIG_FILE.exists():
            try:
                with open(CONFIG_FILE) as f:
                    data = json.load(f)
                _apply_dict(config, data)
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Failed to load config from %s: %s", CONFIG_FILE, exc)

        # Layer 2: Env var overrides
        _apply_env(config)

        return config

    def save(self) -> None:
        """Save config to ~/.config/whif/config.json."""
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        with open(CONFIG_FILE, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for display / persistence."""
        return {
            "models": asdict(self.models),
            "retry": asdict(self.retry),
            "ledger": asdict(self.ledger),
            "pipeline": asdict(self.pipeline),
            "tracing": asdict(self.tracing),
            "db_path": self.db_path,
        }

    @property
    def db_path_resolved(self) -> Path:
        """Resolve database path, creating its parent directory."""
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


# =============================================================================
# Config dict / env application
# =============================================================================


def _apply_dict(config: WhifConfig, data: dict) -> None:
    """Apply a dict of values (config.json format) onto a WhifConfig."""
    models = data.get("models")
    if isinstance(models, dict):
        for stage, stage_data in models.items():
            if hasattr(config.models, stage) and isinstance(stage_data, dict):
                current: StageModelConfig = getattr(config.models, stage)
                setattr(
                    config.models,
                    stage,
                    StageModelConfig(
                        model=stage_data.get("model", current.model),
                        fallbacks=list(stage_data.get("fallbacks", current.fallbacks)),
                        temperature=float(
                            stage_data.get("temperature", current.temperature)
                        ),
                    ),
                )

    for section in ("retry", "ledger", "pipeline", "tracing"):
        values = data.get(section)
        if not isinstance(values, dict):
            continue
        target = getattr(config, section)
        for k, v in values.items():
            if hasattr(target, k):
                setattr(target, k, v)

    if "db_path" in data:
        config.db_path = data["db_path"]


def _env_int(name: str) -> int | None:
    val = os.environ.get(name)
    if not val:
        return None
    try:
        return int(val)
    except ValueError:
        logger.warning("Invalid %s=%r, ignoring", name, val)
        return None


def _env_decimal(name: str) -> str | None:
    val = os.environ.get(name)
    if not val:
        return None
    try:
        Decimal(val)
    except InvalidOperation:
        logger.warning("Invalid %s=%r, ignoring", name, val)
        return None
    return val


def _apply_env(config: WhifConfig) -> None:
    """Apply WHIF_* environment variable overrides."""
    if val := os.environ.get("WHIF_DB_PATH"):
        config.db_path = val
    if (n := _env_int("WHIF_MAX_RETRIES")) is not None:
        config.retry.max_retries = n
    if (n := _env_int("WHIF_TIMEOUT_MS")) is not None:
        config.retry.timeout_ms = n
    if (n := _env_int("WHIF_MAX_CONCURRENCY")) is not None:
        config.pipeline.max_concurrency = n
    if (d := _env_decimal("WHIF_INITIAL_ALLOWANCE")) is not None:
        config.ledger.initial_allowance = d
    if (d := _env_decimal("WHIF_ESTIMATED_COST")) is not None:
        config.ledger.estimated_cost = d
    if val := os.environ.get("WHIF_TRACE_DIR"):
        config.tracing.enabled = True
        config.tracing.log_dir = val


# =============================================================================
# API key resolution
# =============================================================================

_dotenv_loaded = False

_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def _ensure_dotenv() -> None:
    """Load .env file into os.environ if not already loaded."""
    global _dotenv_loaded
    if not _dotenv_loaded:
        _dotenv_loaded = True
        dotenv_path = find_dotenv(usecwd=True)
        if dotenv_path:
            load_dotenv(dotenv_path=dotenv_path, override=False)


def get_api_key_for_provider(provider_name: str) -> str:
    """Get API key for a provider family.

    Convention: {PROVIDER_UPPER}_API_KEY. Gemini also accepts GOOGLE_API_KEY.

    Returns empty string if not found.
    """
    _ensure_dotenv()
    env_var = _API_KEY_ENV.get(provider_name, f"{provider_name.upper()}_API_KEY")
    key = os.environ.get(env_var, "")
    if not key and provider_name == "gemini":
        key = os.environ.get("GOOGLE_API_KEY", "")
    return key


# =============================================================================
# Global config singleton
# =============================================================================

_config: WhifConfig | None = None


def get_config() -> WhifConfig:
    """Get the process-wide WhifConfig.

    First call loads from file + env vars. Subsequent calls return the
    cached instance. Use configure() to replace it programmatically.
    """
    global _config
    if _config is None:
        _config = WhifConfig.load()
    return _config


def configure(config: WhifConfig) -> None:
    """Set the process-wide WhifConfig programmatically."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global config (forces reload on next get_config())."""
    global _config
    _config = None

"""
Configuration snapshot for the Anthropic → OpenRouter proxy.

All options are read from environment variables once and frozen into a
Settings instance. Components receive the snapshot by reference instead of
reading os.environ at request time; reload_settings() is the explicit hook
for picking up a changed environment.
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_TOKENS_PER_CHAR = 0.25
DEFAULT_TIMEOUT_MS = 180000
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _parse_json_object(name: str, raw: Optional[str]) -> dict:
    """Parse a JSON object option, falling back to {} on empty or invalid input."""
    text = (raw or "").strip()
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"{name}: invalid JSON ({e}), ignoring")
        return {}
    if not isinstance(value, dict):
        logger.warning(f"{name}: expected a JSON object, got {type(value).__name__}, ignoring")
        return {}
    return value


def _parse_tokens_per_char(raw: Optional[str]) -> float:
    if raw is None or not raw.strip():
        return DEFAULT_TOKENS_PER_CHAR
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"ESTIMATE_TOKENS_PER_CHAR: invalid value '{raw}', using default {DEFAULT_TOKENS_PER_CHAR}")
        return DEFAULT_TOKENS_PER_CHAR
    # NaN fails the comparison too
    if not value > 0 or value == float("inf"):
        logger.warning(f"ESTIMATE_TOKENS_PER_CHAR={raw} is not a positive number, using default {DEFAULT_TOKENS_PER_CHAR}")
        return DEFAULT_TOKENS_PER_CHAR
    return value


def _parse_timeout_ms(raw: Optional[str]) -> int:
    if raw is None or not raw.strip():
        return DEFAULT_TIMEOUT_MS
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"TIMEOUT_MS: invalid value '{raw}', using default {DEFAULT_TIMEOUT_MS}")
        return DEFAULT_TIMEOUT_MS
    if value <= 0:
        logger.warning(f"TIMEOUT_MS={value} must be positive, using default {DEFAULT_TIMEOUT_MS}")
        return DEFAULT_TIMEOUT_MS
    return value


def _parse_log_level(raw: Optional[str]) -> str:
    level = (raw or "INFO").strip().upper()
    if level not in LOG_LEVELS:
        logger.warning(f"LOG_LEVEL: unknown level '{raw}', using INFO")
        return "INFO"
    return level


def _parse_port(raw: Optional[str]) -> int:
    try:
        return int(raw or "3000")
    except ValueError:
        logger.warning(f"PORT: invalid value '{raw}', using 3000")
        return 3000


@dataclass(frozen=True)
class Settings:
    """Immutable view of every recognised option."""

    openrouter_api_key: str = ""
    require_proxy_token: bool = False
    proxy_token: str = ""

    force_model: str = ""
    primary_model: str = ""
    fallback_model: str = ""
    model_map_ext: dict[str, Any] = field(default_factory=dict)
    model_map_file: str = "./model-map.json"

    reasoning_effort: str = "medium"

    estimate_usage: bool = True
    tokens_per_char: float = DEFAULT_TOKENS_PER_CHAR
    estimate_tokenizer: str = "chars"
    pricing: dict[str, Any] = field(default_factory=dict)

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_app_url: str = "public-proxy"
    openrouter_app_title: str = "ClaudeCode via OpenRouter"

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def chat_completions_url(self) -> str:
        return f"{self.openrouter_base_url.rstrip('/')}/chat/completions"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build a Settings snapshot from an environment mapping (os.environ by default)."""
    env = os.environ if environ is None else environ

    tokenizer = (env.get("ESTIMATE_TOKENIZER") or "chars").strip().lower()
    if tokenizer not in ("chars", "tiktoken"):
        logger.warning(f"ESTIMATE_TOKENIZER: unknown value '{tokenizer}', using 'chars'")
        tokenizer = "chars"

    return Settings(
        openrouter_api_key=(env.get("OPENROUTER_API_KEY") or "").strip(),
        require_proxy_token=str(env.get("REQUIRE_PROXY_TOKEN") or "0").strip() == "1",
        proxy_token=env.get("PROXY_TOKEN") or "",
        force_model=(env.get("FORCE_MODEL") or "").strip(),
        primary_model=(env.get("PRIMARY_MODEL") or "").strip(),
        fallback_model=(env.get("FALLBACK_MODEL") or "").strip(),
        model_map_ext=_parse_json_object("MODEL_MAP_EXT", env.get("MODEL_MAP_EXT")),
        model_map_file=env.get("MODEL_MAP_FILE") or "./model-map.json",
        reasoning_effort=(env.get("REASONING_EFFORT") or "").strip() or "medium",
        estimate_usage=str(env.get("ESTIMATE_USAGE") or "1").strip() == "1",
        tokens_per_char=_parse_tokens_per_char(env.get("ESTIMATE_TOKENS_PER_CHAR")),
        estimate_tokenizer=tokenizer,
        pricing=_parse_json_object("PRICING_JSON", env.get("PRICING_JSON")),
        timeout_ms=_parse_timeout_ms(env.get("TIMEOUT_MS")),
        openrouter_base_url=env.get("OPENROUTER_BASE_URL") or "https://openrouter.ai/api/v1",
        openrouter_app_url=env.get("OPENROUTER_APP_URL") or "public-proxy",
        openrouter_app_title=env.get("OPENROUTER_APP_TITLE") or "ClaudeCode via OpenRouter",
        host=env.get("HOST") or "0.0.0.0",
        port=_parse_port(env.get("PORT")),
        log_level=_parse_log_level(env.get("LOG_LEVEL")),
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide snapshot, loading it on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reload_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Re-read the environment and replace the process-wide snapshot."""
    global _settings
    _settings = load_settings(environ)
    logger.info("Configuration reloaded")
    return _settings

"""
Token usage mapping, estimation and cost computation.

Upstream usage is authoritative. The character-based estimate is only a
fallback for responses that carry no usage at all.
"""

import json
import logging
import math
from typing import Any, Optional

import tiktoken

from content import extract_text
from config import DEFAULT_TOKENS_PER_CHAR

logger = logging.getLogger(__name__)


def _non_negative_int(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0
    return int(number)


def _number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(number) or math.isinf(number) else number


def _first_present(usage: dict, *keys: str) -> Any:
    for key in keys:
        if usage.get(key) is not None:
            return usage[key]
    return None


def empty_usage() -> dict:
    return {
        "input_tokens": 0,
        "output_tokens": 0,
        "cache_creation_input_tokens": 0,
        "cache_read_input_tokens": 0,
    }


def map_usage(upstream_usage: Any) -> dict:
    """
    Map an OpenRouter usage object onto Anthropic's usage shape.

    Upstream never reports cache writes, so cache_creation_input_tokens is
    always 0.
    """
    if not isinstance(upstream_usage, dict):
        return empty_usage()

    details = upstream_usage.get("prompt_tokens_details")
    cached = details.get("cached_tokens") if isinstance(details, dict) else None

    return {
        "input_tokens": _non_negative_int(_first_present(upstream_usage, "prompt_tokens", "input_tokens")),
        "output_tokens": _non_negative_int(_first_present(upstream_usage, "completion_tokens", "output_tokens")),
        "cache_creation_input_tokens": 0,
        "cache_read_input_tokens": _non_negative_int(cached),
    }


# ─────────────────────────────────────────────────────────────────────────────
# Estimation
# ─────────────────────────────────────────────────────────────────────────────

def estimate_tokens(text: Optional[str], tokens_per_char: float = DEFAULT_TOKENS_PER_CHAR) -> int:
    return max(0, math.floor(len(text or "") * tokens_per_char))


def _piece(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def prompt_text(request: dict) -> str:
    """
    Concatenate the text the prompt estimate counts: the system prompt, every
    text block, and the output of user-authored tool_result blocks.
    """
    pieces: list[str] = []

    if not isinstance(request, dict):
        return ""

    system = request.get("system")
    if system:
        pieces.append(extract_text(system))

    messages = request.get("messages")
    if not isinstance(messages, list):
        messages = []

    for message in messages:
        if not isinstance(message, dict):
            continue
        role = message.get("role") or "user"
        content = message.get("content")
        if isinstance(content, list):
            for block in content:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text":
                    pieces.append(_piece(block.get("text")))
                if role == "user" and block.get("type") == "tool_result":
                    output = block.get("output")
                    if output is None:
                        output = block.get("content")
                    pieces.append(_piece("" if output is None else output))
        else:
            pieces.append(extract_text(content))

    return "\n".join(pieces)


def estimate_prompt_tokens(request: dict, tokens_per_char: float = DEFAULT_TOKENS_PER_CHAR) -> int:
    return estimate_tokens(prompt_text(request), tokens_per_char)


def _tiktoken_encoding() -> tiktoken.Encoding:
    try:
        return tiktoken.get_encoding("o200k_base")
    except Exception:
        return tiktoken.get_encoding("cl100k_base")


def count_prompt_tokens(request: dict, tokens_per_char: float = DEFAULT_TOKENS_PER_CHAR, tokenizer: str = "chars") -> int:
    """
    Prompt size for the count_tokens endpoint.

    With tokenizer="tiktoken" the prompt text is encoded for a real token
    count; any tokenizer failure falls back to the character estimate.
    """
    text = prompt_text(request)
    if tokenizer == "tiktoken":
        try:
            return len(_tiktoken_encoding().encode(text, disallowed_special=()))
        except Exception as e:
            logger.warning(f"tiktoken unavailable ({e}), using character estimate")
    return estimate_tokens(text, tokens_per_char)


def estimated_usage(input_tokens: int, output_text: str, tokens_per_char: float = DEFAULT_TOKENS_PER_CHAR) -> dict:
    usage = empty_usage()
    usage["input_tokens"] = max(0, int(input_tokens or 0))
    usage["output_tokens"] = estimate_tokens(output_text, tokens_per_char)
    return usage


# ─────────────────────────────────────────────────────────────────────────────
# Cost
# ─────────────────────────────────────────────────────────────────────────────

def compute_cost_usd(usage: dict, model: str, pricing: Optional[dict]) -> Optional[dict]:
    """
    USD cost from a {model: {in, out}} table priced per 1000 tokens.

    Returns None when the model has no pricing entry: unknown, not free.
    """
    if not isinstance(pricing, dict):
        return None
    price = pricing.get(model)
    if not isinstance(price, dict) or not price:
        return None

    in_cost = (usage.get("input_tokens", 0) / 1000) * _number(price.get("in"))
    out_cost = (usage.get("output_tokens", 0) / 1000) * _number(price.get("out"))
    return {"total": in_cost + out_cost, "in": in_cost, "out": out_cost}

"""
OpenRouter chat completion → Anthropic message (non-streaming path).
"""

import json
import logging
import uuid
from typing import Any, Optional

from config import Settings
from content import extract_text
from model_resolver import ModelResolver
from usage import compute_cost_usd, estimated_usage, map_usage

logger = logging.getLogger(__name__)


def message_text(content: Any) -> str:
    """Text of an upstream message `content`: string, list of parts, or absent."""
    if content is None:
        return ""
    return extract_text(content)


def tool_call_to_tool_use(tool_call: Any) -> dict:
    """
    Convert one OpenAI tool call into an Anthropic tool_use block.

    Arguments that are not valid JSON are kept as {"_raw": <arguments>}.
    """
    if not isinstance(tool_call, dict):
        tool_call = {}
    function = tool_call.get("function")
    if not isinstance(function, dict):
        function = {}

    raw_arguments = function.get("arguments")
    if isinstance(raw_arguments, str):
        try:
            arguments = json.loads(raw_arguments)
        except json.JSONDecodeError:
            arguments = {"_raw": raw_arguments}
    else:
        arguments = raw_arguments or {}

    return {
        "type": "tool_use",
        "id": tool_call.get("id") or f"toolu_{uuid.uuid4().hex[:24]}",
        "name": function.get("name") or "tool",
        "input": arguments,
    }


def openai_response_to_anthropic_message(
    response: dict,
    model: str,
    settings: Settings,
    input_tokens_estimate: int = 0,
) -> dict:
    """
    Convert an OpenAI chat completion response to Anthropic message format.

    The text block comes first (only when it has non-whitespace content),
    followed by tool_use blocks in upstream order. A message never has zero
    content blocks.
    """
    choices = response.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
    message = choice.get("message")
    if not isinstance(message, dict):
        message = {}

    text = message_text(message.get("content"))

    tool_calls = message.get("tool_calls")
    if not isinstance(tool_calls, list):
        tool_calls = []
    tool_use_blocks = [tool_call_to_tool_use(tc) for tc in tool_calls]

    content: list[dict] = []
    if text.strip():
        content.append({"type": "text", "text": text})
    content.extend(tool_use_blocks)
    if not content:
        content.append({"type": "text", "text": ""})

    usage = map_usage(response.get("usage"))
    if settings.estimate_usage and usage["input_tokens"] == 0 and usage["output_tokens"] == 0:
        usage = estimated_usage(input_tokens_estimate, text, settings.tokens_per_char)

    return {
        "id": response.get("id") or f"msg_{uuid.uuid4().hex}",
        "type": "message",
        "role": "assistant",
        "model": model,
        "content": content,
        "stop_reason": "tool_use" if tool_use_blocks else "end_turn",
        "stop_sequence": None,
        "usage": usage,
    }


def _number_or_none(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def build_client_response(
    upstream: dict,
    upstream_payload: dict,
    elapsed_ms: int,
    settings: Settings,
    resolver: ModelResolver,
    input_tokens_estimate: int = 0,
) -> tuple[dict, dict[str, str]]:
    """
    Build the Anthropic response body and the X-OR-* diagnostic headers.

    elapsed_ms covers every upstream attempt for the request, fallback
    included.
    """
    if not isinstance(upstream, dict):
        upstream = {}

    model_used = upstream.get("model") or upstream_payload.get("model") or "openrouter"
    model = resolver.resolve(str(model_used))

    message = openai_response_to_anthropic_message(upstream, model, settings, input_tokens_estimate)
    usage = message["usage"]

    cost = compute_cost_usd(usage, model, settings.pricing)
    total_tokens = usage["input_tokens"] + usage["output_tokens"]
    tps = total_tokens / (elapsed_ms / 1000) if total_tokens > 0 and elapsed_ms > 0 else None

    headers = {
        "X-OR-Model": model,
        "X-OR-Prompt-Tokens": str(usage["input_tokens"]),
        "X-OR-Completion-Tokens": str(usage["output_tokens"]),
        "X-OR-Total-Tokens": str(total_tokens),
        "X-OR-Duration-MS": str(elapsed_ms),
    }
    if tps is not None:
        headers["X-OR-TPS"] = f"{tps:.1f}"

    upstream_usage = upstream.get("usage") if isinstance(upstream.get("usage"), dict) else {}
    credits = _number_or_none(upstream_usage.get("cost"))
    if credits is not None:
        headers["X-OR-Cost-Credits"] = str(credits)
    cost_details = upstream_usage.get("cost_details")
    if isinstance(cost_details, dict):
        upstream_cost = _number_or_none(cost_details.get("upstream_inference_cost"))
        if upstream_cost is not None:
            headers["X-OR-Upstream-Cost"] = str(upstream_cost)
    if cost is not None:
        headers["X-OR-Cost-USD"] = f"{cost['total']:.6f}"

    logger.info(
        f"[USAGE] model={model} in={usage['input_tokens']} out={usage['output_tokens']}"
        + (f" cost_credits={credits}" if credits is not None else "")
        + (f" cost_usd~${cost['total']:.6f}" if cost is not None else "")
        + (f" tps={tps:.1f}" if tps is not None else "")
        + f" dur={elapsed_ms}ms"
    )

    return message, headers

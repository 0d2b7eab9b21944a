"""
Anthropic Messages request → OpenRouter chat-completions payload.

The tricky part is tool calling. Anthropic carries tool results as blocks
inside the next user turn; OpenAI-compatible APIs want one `tool` message per
call, placed right after the assistant message that made the calls and in
that message's tool_calls order. Results that cannot be paired with a call
are folded into the user's text instead of being sent unanchored.
"""

import logging
import uuid
from typing import Any, Optional

from config import Settings
from content import canonical_json, content_blocks, extract_text
from model_resolver import DEFAULT_REQUESTED_MODEL, ModelResolver

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.2
DEFAULT_MAX_TOKENS = 1024

# Copied verbatim from the client request, after model/reasoning handling
PASSTHROUGH_FIELDS = (
    "plugins",
    "transforms",
    "web_search_options",
    "models",
    "provider",
    "reasoning",
    "usage",
    "top_p",
    "top_k",
    "frequency_penalty",
    "presence_penalty",
    "repetition_penalty",
    "seed",
    "logit_bias",
    "response_format",
    "user",
)

THINKING_MARKER = ":thinking"


def new_tool_call_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:24]}"


def tools_anthropic_to_openai(tools: Optional[list]) -> list:
    """
    Convert Anthropic tools format to OpenAI tools format.

    Anthropic: {"name": "...", "description": "...", "input_schema": {...}}
    OpenAI: {"type": "function", "function": {"name": "...", "description": "...", "parameters": {...}}}
    """
    if not isinstance(tools, list):
        return []

    openai_tools = []
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        parameters = tool.get("input_schema")
        if parameters is None:
            parameters = {"type": "object", "properties": {}, "additionalProperties": True}
        openai_tools.append({
            "type": "function",
            "function": {
                "name": tool.get("name", ""),
                "description": tool.get("description") or "",
                "parameters": parameters,
            },
        })
    return openai_tools


def _text_of(value: Any) -> str:
    return value if isinstance(value, str) else canonical_json(value)


def _tool_result_text(block: dict) -> str:
    output = block.get("output")
    if output is None:
        output = block.get("content")
    return extract_text(output)


class _ToolCallAnchor:
    """The last emitted assistant message with tool calls, while only tool messages follow it."""

    def __init__(self, index: int, tool_calls: list):
        self.index = index
        self.call_ids = [tc["id"] for tc in tool_calls]
        self.names = {tc["id"]: tc["function"]["name"] for tc in tool_calls}
        self.results: dict[str, dict] = {}

    def accepts(self, tool_call_id: str) -> bool:
        return tool_call_id in self.names and tool_call_id not in self.results

    def ordered_results(self) -> list:
        return [self.results[call_id] for call_id in self.call_ids if call_id in self.results]


class MessageTranslator:
    """Single forward pass over the conversation, building OpenAI-shaped messages."""

    def __init__(self):
        self.messages: list[dict] = []
        self.anchor: Optional[_ToolCallAnchor] = None

    def _emit(self, message: dict) -> None:
        self.messages.append(message)
        if message["role"] == "assistant" and message.get("tool_calls"):
            self.anchor = _ToolCallAnchor(len(self.messages) - 1, message["tool_calls"])
        else:
            self.anchor = None

    def add_system(self, system: Any) -> None:
        if system:
            self._emit({"role": "system", "content": extract_text(system)})

    def add(self, message: Any) -> None:
        if not isinstance(message, dict):
            return
        role = message.get("role") or "user"
        content = message.get("content")

        if role == "assistant":
            self._add_assistant(content)
        elif role == "user":
            self._add_user(content)
        else:
            self._emit({"role": role, "content": extract_text(content)})

    def _add_assistant(self, content: Any) -> None:
        text = ""
        tool_calls = []

        for block in content_blocks(content):
            block_type = block.get("type") if isinstance(block, dict) else None
            if block_type == "text":
                text += _text_of(block.get("text")) + "\n"
            elif block_type == "tool_use":
                arguments = block.get("input")
                if arguments is None:
                    arguments = {}
                tool_calls.append({
                    "id": block.get("id") or new_tool_call_id(),
                    "type": "function",
                    "function": {
                        "name": block.get("name") or "tool",
                        "arguments": arguments if isinstance(arguments, str) else canonical_json(arguments),
                    },
                })
            else:
                text += canonical_json(block) + "\n"

        text = text.rstrip()
        if not text.strip() and not tool_calls:
            return

        assistant_msg: dict[str, Any] = {"role": "assistant", "content": text if text.strip() else ""}
        if tool_calls:
            assistant_msg["tool_calls"] = tool_calls
        self._emit(assistant_msg)

    def _add_user(self, content: Any) -> None:
        text = ""
        orphans = []
        placed = False

        for block in content_blocks(content):
            block_type = block.get("type") if isinstance(block, dict) else None
            if block_type == "text":
                text += _text_of(block.get("text")) + "\n"
            elif block_type == "tool_result":
                tool_call_id = block.get("tool_use_id") or block.get("id") or new_tool_call_id()
                result_text = _tool_result_text(block)
                if self.anchor is not None and self.anchor.accepts(tool_call_id):
                    self.anchor.results[tool_call_id] = {
                        "role": "tool",
                        "tool_call_id": tool_call_id,
                        "name": self.anchor.names.get(tool_call_id) or "tool",
                        "content": result_text,
                    }
                    placed = True
                else:
                    orphans.append((tool_call_id, result_text))
            else:
                text += canonical_json(block) + "\n"

        if placed:
            # Only tool messages for this anchor follow it; rewrite them in call order
            anchor = self.anchor
            del self.messages[anchor.index + 1:]
            self.messages.extend(anchor.ordered_results())

        if orphans:
            logger.warning(f"Folding {len(orphans)} unmatched tool_result block(s) into user text")
            text += "\n\n[tool_result]\n" + "\n".join(
                f"id={tool_call_id} content={result_text}" for tool_call_id, result_text in orphans
            )

        text = text.strip()
        if text:
            self._emit({"role": "user", "content": text})


def drop_spurious_user_messages(messages: list) -> list:
    """
    Remove user messages wedged between an assistant's tool calls and the
    tool messages answering them.

    For each assistant message with tool calls, the messages after it are
    scanned: matching tool messages are counted, user messages seen before
    the first matching tool message are candidates, and anything else ends
    the scan. Candidates are dropped only when a matching tool message
    follows them, so a user turn is never lost when nothing answers the calls.
    """
    result = list(messages)
    i = 0
    while i < len(result):
        message = result[i]
        tool_calls = message.get("tool_calls") if message.get("role") == "assistant" else None
        if tool_calls:
            call_ids = {tc.get("id") for tc in tool_calls if isinstance(tc, dict) and tc.get("id")}
            spurious = []
            seen_tools = 0
            j = i + 1
            while j < len(result):
                candidate = result[j]
                if candidate.get("role") == "tool" and candidate.get("tool_call_id") in call_ids:
                    seen_tools += 1
                elif candidate.get("role") == "user" and seen_tools == 0:
                    spurious.append(j)
                else:
                    break
                j += 1
            if seen_tools and spurious:
                logger.debug(f"Dropping {len(spurious)} user message(s) preceding tool results")
                for index in reversed(spurious):
                    del result[index]
        i += 1
    return result


def anthropic_messages_to_openai_messages(messages: Any, system: Any = None) -> list:
    translator = MessageTranslator()
    translator.add_system(system)
    if isinstance(messages, list):
        for message in messages:
            translator.add(message)
    return drop_spurious_user_messages(translator.messages)


def build_upstream_payload(
    request: dict,
    model_override: Optional[str],
    settings: Settings,
    resolver: ModelResolver,
    stream: bool = False,
) -> dict:
    """Build the OpenRouter chat-completions body for one Anthropic request."""
    requested_model = str(request.get("model") or DEFAULT_REQUESTED_MODEL)
    model = resolver.resolve_for_request(requested_model, model_override)

    payload: dict[str, Any] = {
        "model": model,
        "messages": anthropic_messages_to_openai_messages(request.get("messages"), request.get("system")),
        "temperature": request["temperature"] if request.get("temperature") is not None else DEFAULT_TEMPERATURE,
        "max_tokens": request["max_tokens"] if request.get("max_tokens") is not None else DEFAULT_MAX_TOKENS,
        "usage": {"include": True},
    }

    tools = tools_anthropic_to_openai(request.get("tools"))
    if tools:
        payload["tools"] = tools

    if THINKING_MARKER in requested_model or THINKING_MARKER in model:
        payload["reasoning"] = {"effort": settings.reasoning_effort}

    for key in PASSTHROUGH_FIELDS:
        if request.get(key) is not None:
            payload[key] = request[key]

    if stream:
        payload["stream"] = True
        payload["usage"] = {"include": True}

    return payload

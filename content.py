"""
Plain-text extraction for Anthropic's polymorphic content.

Content can be a bare string, a single block object, or a list of blocks
(strings or objects). extract_text() is total: it never raises and always
returns a string.
"""

import json
from typing import Any


def canonical_json(value: Any) -> str:
    """Compact JSON used wherever a structure has to be flattened into text."""
    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return str(value)


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else canonical_json(value)


def block_text(block: Any) -> str:
    """
    Textual form of one content block.

    Priority: `text` (when a string), then `input` (tool_use arguments), then
    `output` (tool_result content), then the whole block serialized.
    """
    if block is None:
        return ""
    if isinstance(block, str):
        return block
    if isinstance(block, dict):
        if isinstance(block.get("text"), str):
            return block["text"]
        if "input" in block:
            return _as_text(block["input"])
        if "output" in block:
            return _as_text(block["output"])
    return canonical_json(block)


def extract_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(block_text(block) for block in content)
    return block_text(content)


def content_blocks(content: Any) -> list:
    """Normalize message content to a list of blocks; a bare string is one text block."""
    if content is None:
        return []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [
            {"type": "text", "text": block} if isinstance(block, str) else block
            for block in content
            if block is not None
        ]
    return [content]

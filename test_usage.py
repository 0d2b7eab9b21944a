#!/usr/bin/env python3
"""
Test suite for content text extraction, usage mapping, token estimation and
cost computation.
"""

import math

from content import block_text, content_blocks, extract_text
from usage import (
    compute_cost_usd,
    count_prompt_tokens,
    estimate_prompt_tokens,
    estimate_tokens,
    map_usage,
    prompt_text,
)


def test_extract_text():
    assert extract_text(None) == ""
    assert extract_text("plain") == "plain"
    assert extract_text(["a", {"type": "text", "text": "b"}]) == "a\nb"
    assert extract_text({"type": "tool_use", "input": {"q": "x"}}) == '{"q":"x"}'
    assert extract_text({"type": "tool_result", "output": "done"}) == "done"
    assert extract_text({"type": "image", "source": "s"}) == '{"type":"image","source":"s"}'
    assert extract_text(42) == "42"
    print("✓ extract_text passed")


def test_block_text_prefers_text():
    assert block_text({"text": "t", "input": {"a": 1}}) == "t"
    assert block_text({"text": 5, "input": "in"}) == "in"
    assert block_text(None) == ""
    print("✓ block_text_prefers_text passed")


def test_content_blocks():
    assert content_blocks(None) == []
    assert content_blocks("hi") == [{"type": "text", "text": "hi"}]
    assert content_blocks(["hi", None, {"type": "tool_use"}]) == [
        {"type": "text", "text": "hi"},
        {"type": "tool_use"},
    ]
    print("✓ content_blocks passed")


def test_map_usage():
    assert map_usage({"prompt_tokens": 10, "completion_tokens": 3}) == {
        "input_tokens": 10,
        "output_tokens": 3,
        "cache_creation_input_tokens": 0,
        "cache_read_input_tokens": 0,
    }
    # Anthropic-style names are accepted too
    assert map_usage({"input_tokens": 4, "output_tokens": 2})["input_tokens"] == 4
    assert map_usage({"prompt_tokens": -5, "completion_tokens": "7"})["input_tokens"] == 0
    assert map_usage({"prompt_tokens": -5, "completion_tokens": "7"})["output_tokens"] == 7
    assert map_usage(None)["output_tokens"] == 0
    assert map_usage({"prompt_tokens_details": {"cached_tokens": 8}})["cache_read_input_tokens"] == 8
    print("✓ map_usage passed")


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abcdefg") == 1
    assert estimate_tokens("abcdefgh") == 2
    assert estimate_tokens("abcdefgh", 0.5) == 4
    print("✓ estimate_tokens passed")


def test_prompt_text():
    request = {
        "system": "sys",
        "messages": [
            {"role": "user", "content": "question"},
            {"role": "assistant", "content": [
                {"type": "text", "text": "answer"},
                {"type": "tool_use", "id": "a", "name": "f", "input": {"x": 1}},
            ]},
            {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "a", "content": "result"},
                {"type": "tool_result", "tool_use_id": "b", "output": {"k": "v"}},
            ]},
        ],
    }

    assert prompt_text(request) == 'sys\nquestion\nanswer\nresult\n{"k":"v"}'
    assert estimate_prompt_tokens(request, 1.0) == len(prompt_text(request))
    assert prompt_text({}) == ""
    print("✓ prompt_text passed")


def test_count_prompt_tokens_char_mode():
    request = {"messages": [{"role": "user", "content": "hello world!"}]}

    assert count_prompt_tokens(request, 0.25, "chars") == 3
    print("✓ count_prompt_tokens_char_mode passed")


def test_count_prompt_tokens_tiktoken_mode():
    request = {"messages": [{"role": "user", "content": "hello world"}]}

    tokens = count_prompt_tokens(request, 0.25, "tiktoken")
    assert isinstance(tokens, int)
    assert tokens > 0
    print("✓ count_prompt_tokens_tiktoken_mode passed")


def test_compute_cost_usd():
    usage = {"input_tokens": 2000, "output_tokens": 500}
    cost = compute_cost_usd(usage, "m", {"m": {"in": 0.003, "out": 0.015}})

    assert math.isclose(cost["in"], 0.006)
    assert math.isclose(cost["out"], 0.0075)
    assert math.isclose(cost["total"], 0.0135)

    assert compute_cost_usd(usage, "unknown", {"m": {"in": 1, "out": 1}}) is None
    assert compute_cost_usd(usage, "m", {}) is None
    assert compute_cost_usd(usage, "m", None) is None
    print("✓ compute_cost_usd passed")


def run_all_tests():
    """Run all tests."""
    try:
        test_extract_text()
        test_block_text_prefers_text()
        test_content_blocks()
        test_map_usage()
        test_estimate_tokens()
        test_prompt_text()
        test_count_prompt_tokens_char_mode()
        test_count_prompt_tokens_tiktoken_mode()
        test_compute_cost_usd()
        print("\n✅ All tests passed!")
    except AssertionError as e:
        print(f"\n❌ Test failed: {e}")
        raise


if __name__ == "__main__":
    run_all_tests()

#!/usr/bin/env python3
"""
Test suite for OpenRouter → Anthropic response translation and the X-OR-*
diagnostic headers.
"""

import math

from config import Settings
from model_resolver import ModelResolver
from response_translator import (
    build_client_response,
    openai_response_to_anthropic_message,
    tool_call_to_tool_use,
)


def _completion(content="Hello", tool_calls=None, usage=None, model="anthropic/claude-3.5-haiku") -> dict:
    message = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    response = {"id": "gen-123", "model": model, "choices": [{"index": 0, "message": message}]}
    if usage is not None:
        response["usage"] = usage
    return response


def test_plain_text_response():
    message = openai_response_to_anthropic_message(
        _completion("Hi there", usage={"prompt_tokens": 37, "completion_tokens": 5}),
        "anthropic/claude-3.5-haiku",
        Settings(),
    )

    assert message["id"] == "gen-123"
    assert message["type"] == "message"
    assert message["role"] == "assistant"
    assert message["content"] == [{"type": "text", "text": "Hi there"}]
    assert message["stop_reason"] == "end_turn"
    assert message["stop_sequence"] is None
    assert message["usage"] == {
        "input_tokens": 37,
        "output_tokens": 5,
        "cache_creation_input_tokens": 0,
        "cache_read_input_tokens": 0,
    }
    print("✓ plain_text_response passed")


def test_real_usage_is_never_overwritten():
    message = openai_response_to_anthropic_message(
        _completion("x" * 400, usage={"prompt_tokens": 37, "completion_tokens": 5}),
        "m",
        Settings(estimate_usage=True),
        input_tokens_estimate=999,
    )

    assert message["usage"]["input_tokens"] == 37
    assert message["usage"]["output_tokens"] == 5
    print("✓ real_usage_is_never_overwritten passed")


def test_usage_estimated_when_absent():
    message = openai_response_to_anthropic_message(
        _completion("abcdefgh"),
        "m",
        Settings(estimate_usage=True, tokens_per_char=0.25),
        input_tokens_estimate=10,
    )

    assert message["usage"]["input_tokens"] == 10
    assert message["usage"]["output_tokens"] == 2

    disabled = openai_response_to_anthropic_message(
        _completion("abcdefgh"), "m", Settings(estimate_usage=False), input_tokens_estimate=10
    )
    assert disabled["usage"]["input_tokens"] == 0
    assert disabled["usage"]["output_tokens"] == 0
    print("✓ usage_estimated_when_absent passed")


def test_cached_tokens_are_reported():
    message = openai_response_to_anthropic_message(
        _completion(usage={"prompt_tokens": 100, "completion_tokens": 3, "prompt_tokens_details": {"cached_tokens": 64}}),
        "m",
        Settings(),
    )

    assert message["usage"]["cache_read_input_tokens"] == 64
    assert message["usage"]["cache_creation_input_tokens"] == 0
    print("✓ cached_tokens_are_reported passed")


def test_empty_response_has_one_empty_text_block():
    for response in ({}, {"choices": []}, _completion(None), _completion("   ")):
        message = openai_response_to_anthropic_message(response, "m", Settings(estimate_usage=False))
        assert message["content"] == [{"type": "text", "text": ""}]
        assert message["stop_reason"] == "end_turn"
        assert message["id"].startswith(("gen-", "msg_"))
    print("✓ empty_response_has_one_empty_text_block passed")


def test_tool_calls_become_tool_use_blocks():
    message = openai_response_to_anthropic_message(
        _completion(
            "Let me check.",
            tool_calls=[
                {"id": "call_1", "type": "function", "function": {"name": "get_weather", "arguments": '{"city": "Tokyo"}'}},
                {"id": "call_2", "type": "function", "function": {"name": "lookup", "arguments": "{not json"}},
            ],
        ),
        "m",
        Settings(),
    )

    assert message["stop_reason"] == "tool_use"
    assert message["content"][0] == {"type": "text", "text": "Let me check."}
    assert message["content"][1] == {"type": "tool_use", "id": "call_1", "name": "get_weather", "input": {"city": "Tokyo"}}
    assert message["content"][2]["input"] == {"_raw": "{not json"}
    print("✓ tool_calls_become_tool_use_blocks passed")


def test_tool_only_response_has_no_text_block():
    message = openai_response_to_anthropic_message(
        _completion("", tool_calls=[{"function": {"arguments": "{}"}}]),
        "m",
        Settings(),
    )

    assert len(message["content"]) == 1
    block = message["content"][0]
    assert block["type"] == "tool_use"
    assert block["name"] == "tool"
    assert block["id"].startswith("toolu_")
    assert block["input"] == {}
    print("✓ tool_only_response_has_no_text_block passed")


def test_tool_call_to_tool_use_object_arguments():
    block = tool_call_to_tool_use({"id": "c", "function": {"name": "f", "arguments": {"a": 1}}})

    assert block == {"type": "tool_use", "id": "c", "name": "f", "input": {"a": 1}}
    print("✓ tool_call_to_tool_use_object_arguments passed")


def test_content_parts_are_joined():
    message = openai_response_to_anthropic_message(
        _completion(["a", {"type": "text", "text": "b"}]), "m", Settings()
    )

    assert message["content"][0]["text"] == "a\nb"
    print("✓ content_parts_are_joined passed")


def test_client_response_headers():
    upstream = _completion("ok", usage={"prompt_tokens": 60, "completion_tokens": 40})
    message, headers = build_client_response(
        upstream, {"model": "ignored"}, 2000, Settings(), ModelResolver()
    )

    assert message["model"] == "anthropic/claude-3.5-haiku"
    assert headers["X-OR-Model"] == "anthropic/claude-3.5-haiku"
    assert headers["X-OR-Prompt-Tokens"] == "60"
    assert headers["X-OR-Completion-Tokens"] == "40"
    assert headers["X-OR-Total-Tokens"] == "100"
    assert headers["X-OR-Duration-MS"] == "2000"
    assert headers["X-OR-TPS"] == "50.0"
    assert "X-OR-Cost-USD" not in headers
    assert "X-OR-Cost-Credits" not in headers
    print("✓ client_response_headers passed")


def test_model_falls_back_to_payload_then_resolves():
    upstream = _completion("ok")
    del upstream["model"]
    resolver = ModelResolver(extension_map={"claude-x": "anthropic/claude-x"})

    message, headers = build_client_response(upstream, {"model": "claude-x"}, 10, Settings(), resolver)
    assert message["model"] == "anthropic/claude-x"

    message, headers = build_client_response(upstream, {}, 10, Settings(), ModelResolver())
    assert headers["X-OR-Model"] == "openrouter"
    print("✓ model_falls_back_to_payload_then_resolves passed")


def test_no_tps_without_tokens():
    _, headers = build_client_response(
        _completion(""), {}, 500, Settings(estimate_usage=False), ModelResolver()
    )

    assert headers["X-OR-Total-Tokens"] == "0"
    assert "X-OR-TPS" not in headers
    print("✓ no_tps_without_tokens passed")


def test_cost_headers():
    settings = Settings(pricing={"anthropic/claude-3.5-haiku": {"in": 1.0, "out": 2.0}})
    upstream = _completion(
        "ok",
        usage={
            "prompt_tokens": 1000,
            "completion_tokens": 500,
            "cost": 0.0123,
            "cost_details": {"upstream_inference_cost": 0.01},
        },
    )

    _, headers = build_client_response(upstream, {}, 100, settings, ModelResolver())

    assert headers["X-OR-Cost-USD"] == "2.000000"
    assert math.isclose(float(headers["X-OR-Cost-Credits"]), 0.0123)
    assert math.isclose(float(headers["X-OR-Upstream-Cost"]), 0.01)
    print("✓ cost_headers passed")


def test_unpriced_model_has_no_cost_header():
    settings = Settings(pricing={"some/other-model": {"in": 1.0, "out": 2.0}})
    _, headers = build_client_response(
        _completion("ok", usage={"prompt_tokens": 10, "completion_tokens": 10}), {}, 100, settings, ModelResolver()
    )

    assert "X-OR-Cost-USD" not in headers
    print("✓ unpriced_model_has_no_cost_header passed")


def run_all_tests():
    """Run all tests."""
    try:
        test_plain_text_response()
        test_real_usage_is_never_overwritten()
        test_usage_estimated_when_absent()
        test_cached_tokens_are_reported()
        test_empty_response_has_one_empty_text_block()
        test_tool_calls_become_tool_use_blocks()
        test_tool_only_response_has_no_text_block()
        test_tool_call_to_tool_use_object_arguments()
        test_content_parts_are_joined()
        test_client_response_headers()
        test_model_falls_back_to_payload_then_resolves()
        test_no_tps_without_tokens()
        test_cost_headers()
        test_unpriced_model_has_no_cost_header()
        print("\n✅ All tests passed!")
    except AssertionError as e:
        print(f"\n❌ Test failed: {e}")
        raise


if __name__ == "__main__":
    run_all_tests()

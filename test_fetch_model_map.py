#!/usr/bin/env python3
"""
Test suite for the model-map / pricing generator.
"""

import json
import math
import os
import tempfile

import httpx

import fetch_model_map
from fetch_model_map import build_model_map, build_pricing_table, is_anthropic_model


MODELS = [
    {"id": "openai/gpt-4o", "pricing": {"prompt": "0.0000025", "completion": "0.00001"}},
    {"id": "anthropic/claude-3.5-sonnet-20240620", "pricing": {"prompt": "0.000003", "completion": "0.000015"}},
    {"id": "anthropic/claude-3.5-sonnet", "pricing": {"prompt": "0.000003", "completion": "0.000015"}},
    {"id": "anthropic/claude-3-opus-20240229", "pricing": {"prompt": "bad", "completion": "0.000075"}},
]


def test_is_anthropic_model():
    assert is_anthropic_model({"id": "anthropic/claude-3.5-sonnet"})
    assert is_anthropic_model({"id": "someone/Claude-finetune"})
    assert not is_anthropic_model({"id": "openai/gpt-4o"})
    print("✓ is_anthropic_model passed")


def test_build_model_map():
    model_map = build_model_map([m for m in MODELS if is_anthropic_model(m)])

    assert model_map["anthropic/claude-3.5-sonnet"] == "anthropic/claude-3.5-sonnet"
    assert model_map["claude-3.5-sonnet-20240620"] == "anthropic/claude-3.5-sonnet-20240620"
    # Undated name keeps the first id in sorted order
    assert model_map["claude-3.5-sonnet"] == "anthropic/claude-3.5-sonnet"
    assert model_map["claude-3-opus"] == "anthropic/claude-3-opus-20240229"
    assert model_map["claude-3-opus-20240229"] == "anthropic/claude-3-opus-20240229"
    print("✓ build_model_map passed")


def test_build_pricing_table():
    pricing = build_pricing_table(MODELS)

    assert math.isclose(pricing["anthropic/claude-3.5-sonnet"]["in"], 0.003)
    assert math.isclose(pricing["anthropic/claude-3.5-sonnet"]["out"], 0.015)
    assert "anthropic/claude-3-opus-20240229" not in pricing
    print("✓ build_pricing_table passed")


def test_main_writes_files():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/models")
        return httpx.Response(200, json={"data": MODELS})

    original_get = httpx.get
    transport = httpx.MockTransport(handler)

    def mock_get(url, **kwargs):
        with httpx.Client(transport=transport) as client:
            return client.get(url, **kwargs)

    fetch_model_map.httpx.get = mock_get
    try:
        with tempfile.TemporaryDirectory() as tmp:
            assert fetch_model_map.main(["--output-dir", tmp, "--base-url", "https://example.test/api/v1"]) == 0

            with open(os.path.join(tmp, "model-map.json"), encoding="utf-8") as f:
                model_map = json.load(f)
            with open(os.path.join(tmp, "anthropic-models.json"), encoding="utf-8") as f:
                listed = [m["id"] for m in json.load(f)]
            assert os.path.exists(os.path.join(tmp, "pricing.json"))
    finally:
        fetch_model_map.httpx.get = original_get

    assert "openai/gpt-4o" not in listed
    assert model_map["claude-3-opus"] == "anthropic/claude-3-opus-20240229"
    print("✓ main_writes_files passed")


def test_main_reports_fetch_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "down"})

    original_get = httpx.get
    transport = httpx.MockTransport(handler)

    def mock_get(url, **kwargs):
        with httpx.Client(transport=transport) as client:
            return client.get(url, **kwargs)

    fetch_model_map.httpx.get = mock_get
    try:
        with tempfile.TemporaryDirectory() as tmp:
            assert fetch_model_map.main(["--output-dir", tmp]) == 1
            assert not os.path.exists(os.path.join(tmp, "model-map.json"))
    finally:
        fetch_model_map.httpx.get = original_get
    print("✓ main_reports_fetch_errors passed")


def run_all_tests():
    """Run all tests."""
    try:
        test_is_anthropic_model()
        test_build_model_map()
        test_build_pricing_table()
        test_main_writes_files()
        test_main_reports_fetch_errors()
        print("\n✅ All tests passed!")
    except AssertionError as e:
        print(f"\n❌ Test failed: {e}")
        raise


if __name__ == "__main__":
    run_all_tests()

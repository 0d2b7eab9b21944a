#!/usr/bin/env python3
"""
Fetch Anthropic models from OpenRouter and generate the proxy's lookup files.

Writes, into the output directory:
- anthropic-models.json  raw listing of the Anthropic/Claude models
- model-map.json         alias table loaded by the proxy at startup
- pricing.json           {model: {"in": usd_per_1k, "out": usd_per_1k}}, usable as PRICING_JSON
"""

import os
import re
import sys
import json
import argparse

import httpx

DATED_MODEL_RE = re.compile(r"anthropic/(claude-[\d.]+-\w+?)(-\d{8})?$")


def is_anthropic_model(model: dict) -> bool:
    model_id = str(model.get("id", "")).lower()
    return "anthropic" in model_id or "claude" in model_id


def build_model_map(models: list[dict]) -> dict[str, str]:
    """
    Map full ids to themselves, short names (no "anthropic/") to full ids, and
    undated base names to the first matching full id in sorted order.
    """
    model_map: dict[str, str] = {}
    for model_id in sorted(str(m.get("id", "")) for m in models if m.get("id")):
        model_map[model_id] = model_id

        short_name = re.sub(r"^anthropic/", "", model_id)
        if short_name != model_id:
            model_map[short_name] = model_id

        match = DATED_MODEL_RE.search(model_id)
        if match and match.group(1) not in model_map:
            model_map[match.group(1)] = model_id
    return model_map


def build_pricing_table(models: list[dict]) -> dict[str, dict[str, float]]:
    """OpenRouter prices are USD per token; the proxy wants USD per 1000 tokens."""
    pricing: dict[str, dict[str, float]] = {}
    for model in models:
        prices = model.get("pricing") or {}
        try:
            prompt = float(prices.get("prompt"))
            completion = float(prices.get("completion"))
        except (TypeError, ValueError):
            continue
        pricing[model["id"]] = {"in": prompt * 1000, "out": completion * 1000}
    return pricing


def fetch_models(base_url: str, api_key: str = "") -> list[dict]:
    headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
    response = httpx.get(f"{base_url.rstrip('/')}/models", headers=headers, timeout=30.0)
    response.raise_for_status()
    return response.json().get("data", [])


def write_json(path: str, data) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--output-dir", default=".", help="directory for the generated files")
    parser.add_argument(
        "--base-url",
        default=os.environ.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
    )
    args = parser.parse_args(argv)

    try:
        models = fetch_models(args.base_url, os.environ.get("OPENROUTER_API_KEY", ""))
    except (httpx.HTTPError, ValueError) as e:
        print(f"Error fetching models: {e}", file=sys.stderr)
        return 1

    anthropic_models = sorted(
        (m for m in models if isinstance(m, dict) and m.get("id") and is_anthropic_model(m)),
        key=lambda m: m["id"],
    )
    print(f"=== {len(anthropic_models)} Anthropic models ===")
    for m in anthropic_models:
        print(m["id"])

    model_map = build_model_map(anthropic_models)
    pricing = build_pricing_table(anthropic_models)

    os.makedirs(args.output_dir, exist_ok=True)
    write_json(os.path.join(args.output_dir, "anthropic-models.json"), anthropic_models)
    write_json(os.path.join(args.output_dir, "model-map.json"), model_map)
    write_json(os.path.join(args.output_dir, "pricing.json"), pricing)

    print(f"\nMapped {len(model_map)} model aliases, priced {len(pricing)} models")
    print(f"Saved anthropic-models.json, model-map.json, pricing.json to {args.output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

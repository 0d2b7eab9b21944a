#!/usr/bin/env python3
"""Live smoke checks against a running proxy.

This script is intentionally framework-free (no pytest): it talks to a real
proxy which talks to real OpenRouter, so it is not part of the unit test run.
It runs 8 sequential checks and exits non-zero on the first failure.

Env vars:
- PROXY_BASE_URL   (default: http://127.0.0.1:3000)
- PROXY_API_KEY    (default: empty; an sk-or- key enables BYOK mode)
- PROXY_TOKEN      (default: empty; sent as proxy-token)
- TEST_MODEL       (default: anthropic/claude-3.5-haiku)
- STREAM_TIMEOUT_S (default: 90)
- READ_IDLE_TIMEOUT_S (default: 30)
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx


PROXY_BASE_URL = os.environ.get("PROXY_BASE_URL", "http://127.0.0.1:3000").rstrip("/")
PROXY_API_KEY = os.environ.get("PROXY_API_KEY", "")
PROXY_TOKEN = os.environ.get("PROXY_TOKEN", "")
TEST_MODEL = os.environ.get("TEST_MODEL", "anthropic/claude-3.5-haiku")
STREAM_TIMEOUT_S = float(os.environ.get("STREAM_TIMEOUT_S", "90"))
READ_IDLE_TIMEOUT_S = float(os.environ.get("READ_IDLE_TIMEOUT_S", "30"))

EXPECTED_STREAM_EVENTS = ["message_start", "content_block_delta", "message_delta", "message_stop"]


def _headers() -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if PROXY_API_KEY:
        headers["x-api-key"] = PROXY_API_KEY
    if PROXY_TOKEN:
        headers["proxy-token"] = PROXY_TOKEN
    return headers


def _url(path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return f"{PROXY_BASE_URL}{path}"


async def wait_for_health(timeout_s: float = 20.0) -> None:
    deadline = time.time() + timeout_s
    last_err: Optional[str] = None

    async with httpx.AsyncClient(timeout=5.0) as client:
        while time.time() < deadline:
            try:
                r = await client.get(_url("/health"))
                if r.status_code == 200 and r.json() == {"ok": True}:
                    return
                last_err = f"health status_code={r.status_code} body={r.text[:200]!r}"
            except Exception as e:
                last_err = repr(e)
            await asyncio.sleep(0.3)

    raise AssertionError(f"Proxy not healthy at {PROXY_BASE_URL}. Last error: {last_err}")


@dataclass
class SSEEvent:
    event: str
    data: Any


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[SSEEvent]:
    """Parse text/event-stream (event/data lines) from the proxy."""
    current_event: Optional[str] = None
    current_data_lines: list[str] = []

    async for line in response.aiter_lines():
        if line == "":
            if current_event is not None:
                data_str = "\n".join(current_data_lines)
                try:
                    data_obj: Any = json.loads(data_str)
                except ValueError:
                    data_obj = data_str
                yield SSEEvent(event=current_event, data=data_obj)
            current_event = None
            current_data_lines = []
            continue

        if line.startswith("event:"):
            current_event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            current_data_lines.append(line[len("data:"):].lstrip())


async def post_json(path: str, payload: Any, timeout_s: float = 60.0) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        if isinstance(payload, (bytes, str)):
            return await client.post(_url(path), headers=_headers(), content=payload)
        return await client.post(_url(path), headers=_headers(), json=payload)


async def run_stream_request(prompt: str, max_tokens: int) -> tuple[list[SSEEvent], dict[str, Any]]:
    """Run a streaming request and return (events, response_headers)."""
    payload = {
        "model": TEST_MODEL,
        "max_tokens": max_tokens,
        "stream": True,
        "messages": [{"role": "user", "content": prompt}],
    }
    timeout = httpx.Timeout(STREAM_TIMEOUT_S, connect=10.0, read=READ_IDLE_TIMEOUT_S, write=10.0, pool=10.0)

    async with httpx.AsyncClient(timeout=timeout) as client:
        async with client.stream("POST", _url("/v1/messages"), headers=_headers(), json=payload) as resp:
            if resp.status_code != 200:
                body = await resp.aread()
                raise AssertionError(f"stream request failed: status={resp.status_code} body={body[:400]!r}")
            events = [ev async for ev in iter_sse_events(resp)]
            return events, dict(resp.headers)


def assert_event_sequence(events: list[SSEEvent]) -> None:
    """message_start first, message_stop last, only known event names in between."""
    names = [e.event for e in events]
    if not names or names[0] != "message_start" or names[-1] != "message_stop":
        raise AssertionError(f"bad framing: {names!r}")
    unknown = set(names) - set(EXPECTED_STREAM_EVENTS)
    if unknown:
        raise AssertionError(f"unexpected events {sorted(unknown)!r} in {names!r}")


def assert_cors(headers: dict[str, Any]) -> None:
    lowered = {k.lower(): v for k, v in headers.items()}
    if lowered.get("access-control-allow-origin") != "*":
        raise AssertionError(f"missing CORS headers: {headers!r}")
    if lowered.get("anthropic-version") != "2023-06-01":
        raise AssertionError(f"missing anthropic-version header: {headers!r}")


async def step(name: str, fn) -> None:
    print(f"[TEST] {name} ...", flush=True)
    await fn()
    print(f"[OK]   {name}", flush=True)


async def main() -> int:
    print(f"proxy={PROXY_BASE_URL} model={TEST_MODEL}", flush=True)

    await step("1/8 health is ok", lambda: wait_for_health())

    async def _count_tokens():
        r = await post_json(
            "/v1/messages/count_tokens",
            {"model": TEST_MODEL, "messages": [{"role": "user", "content": "hello there, proxy"}]},
            timeout_s=20.0,
        )
        assert r.status_code == 200, r.text
        data = r.json()
        assert isinstance(data.get("input_tokens"), int) and data["input_tokens"] > 0, data

    await step("2/8 count_tokens works", _count_tokens)

    async def _invalid_json():
        r = await post_json("/v1/messages", b"{not json", timeout_s=20.0)
        assert r.status_code == 400 and r.json() == {"error": "invalid_json"}, r.text

    await step("3/8 malformed body is rejected locally", _invalid_json)

    async def _not_found():
        async with httpx.AsyncClient(timeout=10.0) as client:
            r = await client.get(_url("/v1/does-not-exist"))
        assert r.status_code == 404 and r.json() == {"error": "not_found"}, r.text
        assert_cors(dict(r.headers))

    await step("4/8 unknown route is not_found with CORS headers", _not_found)

    async def _non_streaming():
        r = await post_json(
            "/v1/messages",
            {
                "model": TEST_MODEL,
                "max_tokens": 64,
                "messages": [{"role": "user", "content": "Say: nonstream-ok"}],
            },
        )
        assert r.status_code == 200, r.text[:400]
        data = r.json()
        assert data.get("type") == "message" and data.get("role") == "assistant", data
        assert data["content"], data
        assert r.headers.get("x-or-model"), dict(r.headers)
        assert r.headers.get("x-or-duration-ms"), dict(r.headers)

    await step("5/8 non-streaming /v1/messages with X-OR headers", _non_streaming)

    async def _streaming():
        events, hdrs = await run_stream_request(prompt="Say: streaming-ok", max_tokens=64)
        assert_event_sequence(events)
        assert any(e.event == "content_block_delta" for e in events), [e.event for e in events]
        assert_cors(hdrs)

    await step("6/8 streaming framing", _streaming)

    async def _streaming_usage():
        events, _ = await run_stream_request(prompt="Count to five.", max_tokens=64)
        deltas = [e for e in events if e.event == "message_delta"]
        assert deltas, [e.event for e in events]
        usage = deltas[-1].data.get("usage") or {}
        assert usage.get("output_tokens", 0) > 0, usage

    await step("7/8 streaming reports usage", _streaming_usage)

    async def _tool_round_trip():
        r = await post_json(
            "/v1/messages",
            {
                "model": TEST_MODEL,
                "max_tokens": 128,
                "tools": [{
                    "name": "get_weather",
                    "description": "Current weather for a city",
                    "input_schema": {"type": "object", "properties": {"city": {"type": "string"}}},
                }],
                "messages": [
                    {"role": "user", "content": "What's the weather in Paris?"},
                    {"role": "assistant", "content": [
                        {"type": "tool_use", "id": "toolu_live_1", "name": "get_weather", "input": {"city": "Paris"}},
                    ]},
                    {"role": "user", "content": [
                        {"type": "tool_result", "tool_use_id": "toolu_live_1", "content": "Sunny, 21C"},
                    ]},
                ],
            },
        )
        assert r.status_code == 200, r.text[:400]
        assert r.json().get("stop_reason") in ("end_turn", "tool_use"), r.text[:400]

    await step("8/8 tool result round trip accepted upstream", _tool_round_trip)

    print("ALL CHECKS PASSED", flush=True)
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        raise SystemExit(130)

#!/usr/bin/env python3
"""
Anthropic Messages API → OpenRouter Proxy with SSE Streaming.

This proxy translates Anthropic Messages API requests to OpenRouter's
OpenAI-compatible chat completions API and maps responses back to
Anthropic's format, both as a single JSON message and as a live
Server-Sent Events stream.
"""

import hmac
import time
import uuid
import asyncio
import logging
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from config import Settings, get_settings, reload_settings
from model_resolver import ModelResolver, build_resolver
from request_translator import build_upstream_payload
from response_translator import build_client_response
from stream_translator import StreamTranslator
from usage import count_prompt_tokens, estimate_prompt_tokens

# Logging setup
logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

PROXY_VERSION = "1.0.0"
ANTHROPIC_VERSION = "2023-06-01"

# Client keys with this prefix are OpenRouter keys (bring-your-own-key)
BYOK_PREFIX = "sk-or-"

COMPAT_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "POST, GET, OPTIONS",
    "access-control-allow-headers": "content-type, x-api-key, anthropic-api-key, anthropic-version, proxy-token, x-or-model",
    "anthropic-version": ANTHROPIC_VERSION,
}

# ─────────────────────────────────────────────────────────────────────────────
# Prometheus Metrics
# ─────────────────────────────────────────────────────────────────────────────

# Request counter by endpoint and status
request_counter = Counter(
    'proxy_requests_total',
    'Total number of requests',
    ['endpoint', 'status']
)

# Request latency histogram by endpoint
request_latency = Histogram(
    'proxy_request_duration_seconds',
    'Request latency in seconds',
    ['endpoint']
)

# Error counter by endpoint
error_counter = Counter(
    'proxy_errors_total',
    'Total number of errors',
    ['endpoint', 'error_type']
)

fallback_counter = Counter(
    'proxy_upstream_fallbacks_total',
    'Number of retries against FALLBACK_MODEL'
)


def record_request(endpoint: str, status: int, start_time: float) -> None:
    request_counter.labels(endpoint=endpoint, status=str(status)).inc()
    request_latency.labels(endpoint=endpoint).observe(time.time() - start_time)


# ─────────────────────────────────────────────────────────────────────────────
# Helper functions
# ─────────────────────────────────────────────────────────────────────────────

class CompatHeadersMiddleware(BaseHTTPMiddleware):
    """Attach CORS and anthropic-version headers to every response, errors included."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for key, value in COMPAT_HEADERS.items():
            response.headers[key] = value
        return response


def get_or_generate_request_id(request: Request) -> str:
    """Get X-Request-Id from request headers or generate a new one."""
    request_id = request.headers.get("X-Request-Id")
    if not request_id:
        request_id = f"req_{uuid.uuid4().hex}"
    return request_id


def error_response(error: str, status_code: int, request_id: Optional[str] = None) -> JSONResponse:
    headers = {"X-Request-Id": request_id} if request_id else None
    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)


def resolve_upstream_key(request: Request, settings: Settings) -> str:
    """
    Pick the OpenRouter key for this request.

    A client key starting with sk-or- is used directly. Otherwise the server
    key is used, guarded by the proxy-token shared secret when
    REQUIRE_PROXY_TOKEN=1.

    Raises HTTPException 401 (missing_server_key) or 403 (forbidden).
    """
    client_key = request.headers.get("anthropic-api-key") or request.headers.get("x-api-key") or ""
    if client_key.startswith(BYOK_PREFIX):
        return client_key

    if not settings.openrouter_api_key:
        raise HTTPException(status_code=401, detail="missing_server_key")

    if settings.require_proxy_token:
        proxy_token = request.headers.get("proxy-token") or ""
        # Constant-time comparison to prevent timing attacks
        if not settings.proxy_token or not hmac.compare_digest(
            proxy_token.encode("utf-8"), settings.proxy_token.encode("utf-8")
        ):
            raise HTTPException(status_code=403, detail="forbidden")

    return settings.openrouter_api_key


def upstream_headers(api_key: str, settings: Settings) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    if settings.openrouter_app_url:
        headers["HTTP-Referer"] = settings.openrouter_app_url
    if settings.openrouter_app_title:
        headers["X-Title"] = settings.openrouter_app_title
    return headers


def wants_stream(request: Request, body: dict) -> bool:
    accept = request.headers.get("accept") or ""
    return "text/event-stream" in accept or body.get("stream") is True


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


def upstream_error_body(resp: httpx.Response) -> Any:
    """Upstream error body as JSON when possible, wrapped otherwise."""
    try:
        return resp.json()
    except ValueError:
        return {"error": "upstream_error", "detail": resp.text[:2000]}


async def read_json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="invalid_json")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="invalid_json")
    return body


def new_upstream_client(settings: Settings, transport: Optional[httpx.AsyncBaseTransport]) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(settings.timeout_s), transport=transport)


# ─────────────────────────────────────────────────────────────────────────────
# Upstream calls
# ─────────────────────────────────────────────────────────────────────────────

async def openrouter_chat_completion(
    client: httpx.AsyncClient,
    payload: dict,
    headers: dict[str, str],
    settings: Settings,
    request_id: str,
) -> tuple[int, Any]:
    """
    Execute one non-streaming chat completion.

    Returns (status_code, body). Timeouts and network failures are reported
    as 504 / 502 so the caller can treat them like upstream server errors.
    """
    try:
        resp = await asyncio.wait_for(
            client.post(settings.chat_completions_url, headers=headers, json=payload),
            timeout=settings.timeout_s,
        )
    except (httpx.TimeoutException, asyncio.TimeoutError):
        logger.warning(
            f"Model {payload.get('model')} timed out after {settings.timeout_ms}ms | request_id={request_id}"
        )
        return 504, {"error": "upstream_timeout"}
    except httpx.RequestError as e:
        logger.warning(
            f"Model {payload.get('model')} request failed: {type(e).__name__} | request_id={request_id}"
        )
        return 502, {"error": "upstream_unreachable"}

    if 200 <= resp.status_code < 300:
        try:
            return resp.status_code, resp.json()
        except ValueError:
            logger.warning(f"OpenRouter returned a non-JSON body | request_id={request_id}")
            return 502, {"error": "upstream_error"}

    logger.warning(
        f"Model {payload.get('model')} failed with status {resp.status_code} | request_id={request_id}"
    )
    return resp.status_code, upstream_error_body(resp)


async def complete_with_fallback(
    client: httpx.AsyncClient,
    payload: dict,
    headers: dict[str, str],
    settings: Settings,
    request_id: str,
) -> tuple[int, Any]:
    """Primary call, then one retry on FALLBACK_MODEL for 429/5xx when configured."""
    status_code, data = await openrouter_chat_completion(client, payload, headers, settings, request_id)

    if is_retryable_status(status_code) and settings.fallback_model:
        fallback_counter.inc()
        logger.warning(
            f"Retrying with fallback model={settings.fallback_model} after status {status_code} | "
            f"request_id={request_id}"
        )
        fallback_payload = {**payload, "model": settings.fallback_model}
        status_code, data = await openrouter_chat_completion(
            client, fallback_payload, headers, settings, request_id
        )

    return status_code, data


async def stream_messages(
    request_id: str,
    payload: dict,
    headers: dict[str, str],
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport],
    start_time: float,
) -> Response:
    """
    Open the upstream stream and hand it to StreamTranslator.

    Upstream errors are returned before any SSE framing starts. Once the
    response is streaming, closing the generator (client disconnect) closes
    the upstream connection.
    """
    endpoint = "/v1/messages"
    client = new_upstream_client(settings, transport)
    upstream_request = client.build_request(
        "POST", settings.chat_completions_url, headers=headers, json=payload
    )

    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.TimeoutException:
        await client.aclose()
        logger.warning(f"Stream open timed out | request_id={request_id}")
        error_counter.labels(endpoint=endpoint, error_type='upstream_timeout').inc()
        record_request(endpoint, 504, start_time)
        return error_response("upstream_timeout", 504, request_id)
    except httpx.RequestError as e:
        await client.aclose()
        logger.warning(f"Stream open failed: {type(e).__name__} | request_id={request_id}")
        error_counter.labels(endpoint=endpoint, error_type='upstream_unreachable').inc()
        record_request(endpoint, 502, start_time)
        return error_response("upstream_unreachable", 502, request_id)

    if not 200 <= upstream.status_code < 300:
        try:
            await upstream.aread()
        finally:
            await upstream.aclose()
            await client.aclose()
        logger.warning(
            f"Model {payload.get('model')} stream failed with status {upstream.status_code} | "
            f"request_id={request_id}"
        )
        error_counter.labels(endpoint=endpoint, error_type='upstream_error').inc()
        record_request(endpoint, upstream.status_code, start_time)
        return JSONResponse(
            status_code=upstream.status_code,
            content=upstream_error_body(upstream),
            headers={"X-Request-Id": request_id},
        )

    translator = StreamTranslator(model=payload["model"])

    async def stream_generator():
        try:
            async for event in translator.translate(upstream.aiter_bytes()):
                yield event
            record_request(endpoint, 200, start_time)
        except Exception:
            error_counter.labels(endpoint=endpoint, error_type='streaming_error').inc()
            record_request(endpoint, 500, start_time)
            logger.exception(f"Streaming error in v1_messages: request_id={request_id}")
            raise
        finally:
            await upstream.aclose()
            await client.aclose()

    return StreamingResponse(
        stream_generator(),
        media_type="text/event-stream; charset=utf-8",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-OR-Model": payload["model"],
            "X-Request-Id": request_id,
        },
    )


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI app
# ─────────────────────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    resolver: Optional[ModelResolver] = None,
) -> FastAPI:
    """
    Build the proxy application.

    `settings` and `resolver` live on app.state, are shared read-only by
    every request and are replaced by reload().
    `transport` replaces httpx's network transport (tests use MockTransport).
    """
    settings = settings or get_settings()
    resolver = resolver or build_resolver(settings)

    app = FastAPI(title="Anthropic to OpenRouter Proxy", version=PROXY_VERSION)
    app.state.settings = settings
    app.state.resolver = resolver
    app.state.transport = transport
    app.add_middleware(CompatHeadersMiddleware)

    if settings.openrouter_api_key:
        mode = "proxy-token required" if settings.require_proxy_token else "open"
        logger.info(f"Server key configured ({mode}); sk-or- client keys are used as-is")
    else:
        logger.warning("OPENROUTER_API_KEY not configured - only sk-or- client keys will be accepted")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """
        Render every HTTPException as {"error": <code>}; router 404/405 become not_found.
        """
        request_id = getattr(request.state, "request_id", None) or get_or_generate_request_id(request)
        if exc.status_code in (404, 405):
            return error_response("not_found", 404, request_id)
        return error_response(str(exc.detail), exc.status_code, request_id)

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.options("/{path:path}")
    async def preflight(path: str):
        return Response(status_code=204)

    @app.post("/v1/messages/count_tokens")
    async def v1_messages_count_tokens(request: Request):
        """Anthropic Messages API token counting (estimate)."""
        settings = request.app.state.settings
        request_id = get_or_generate_request_id(request)
        request.state.request_id = request_id

        body = await read_json_body(request)
        input_tokens = count_prompt_tokens(body, settings.tokens_per_char, settings.estimate_tokenizer)

        return JSONResponse(
            content={"input_tokens": input_tokens},
            headers={"X-Request-Id": request_id}
        )

    @app.post("/v1/messages")
    async def v1_messages(request: Request):
        """
        Anthropic Messages API endpoint.

        Accepts Anthropic-format requests and proxies them to OpenRouter,
        converting the response back to Anthropic format.
        """
        endpoint = "/v1/messages"
        request_id = get_or_generate_request_id(request)
        settings = request.app.state.settings
        resolver = request.app.state.resolver
        request.state.request_id = request_id
        start_time = time.time()

        try:
            api_key = resolve_upstream_key(request, settings)
            body = await read_json_body(request)
        except HTTPException as e:
            logger.warning(f"Rejected request: {e.detail} | request_id={request_id}")
            error_counter.labels(endpoint=endpoint, error_type=str(e.detail)).inc()
            record_request(endpoint, e.status_code, start_time)
            raise

        model_override = request.headers.get("x-or-model")
        headers = upstream_headers(api_key, settings)

        try:
            if wants_stream(request, body):
                payload = build_upstream_payload(body, model_override, settings, resolver, stream=True)
                logger.info(
                    f"request_id={request_id} model={payload['model']} stream=True "
                    f"messages_count={len(payload['messages'])}"
                )
                return await stream_messages(
                    request_id, payload, headers, settings, request.app.state.transport, start_time
                )

            payload = build_upstream_payload(body, model_override, settings, resolver)
            logger.info(
                f"request_id={request_id} model={payload['model']} stream=False "
                f"messages_count={len(payload['messages'])}"
            )

            t0 = time.monotonic()
            async with new_upstream_client(settings, request.app.state.transport) as client:
                status_code, data = await complete_with_fallback(client, payload, headers, settings, request_id)
            # Includes the fallback attempt when one was made
            duration_ms = int((time.monotonic() - t0) * 1000)

            if not 200 <= status_code < 300:
                error_counter.labels(endpoint=endpoint, error_type='upstream_error').inc()
                record_request(endpoint, status_code, start_time)
                return JSONResponse(status_code=status_code, content=data, headers={"X-Request-Id": request_id})

            input_tokens_estimate = (
                estimate_prompt_tokens(body, settings.tokens_per_char) if settings.estimate_usage else 0
            )
            message, diagnostic_headers = build_client_response(
                data, payload, duration_ms, settings, resolver, input_tokens_estimate
            )

            record_request(endpoint, 200, start_time)
            return JSONResponse(
                content=message,
                headers={**diagnostic_headers, "X-Request-Id": request_id},
            )

        except Exception:
            error_counter.labels(endpoint=endpoint, error_type='unexpected_error').inc()
            record_request(endpoint, 500, start_time)
            logger.exception(f"Unexpected error in v1_messages: request_id={request_id}")
            return error_response("internal_error", 500, request_id)

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def not_found(request: Request, path: str):
        return error_response("not_found", 404, get_or_generate_request_id(request))

    return app


def reload(app: FastAPI, environ=None) -> Settings:
    """
    Re-read configuration and the model-alias file into a running app.

    Requests already in flight keep the snapshot they started with.
    """
    settings = reload_settings(environ)
    app.state.resolver = build_resolver(settings)
    app.state.settings = settings
    logger.info(f"Reloaded settings and model map from {settings.model_map_file}")
    return settings


app = create_app()


# ─────────────────────────────────────────────────────────────────────────────
# Main entry point
# ─────────────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())

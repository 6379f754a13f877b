from __future__ import annotations

from typing import Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from .config import Settings, settings
from .constants import API_KEY_HEADER
from .handlers import generate_content
from .schemas.gemini import GenerateContentRequest
from .streaming import stream_generate_content
from .transform import (
    apply_thinking_budget,
    build_upstream_request,
    is_cherry_request,
    is_structured_output_request,
    is_target_model,
)
from .utils import CORS_HEADERS, json_error, log_debug


app = FastAPI(title="Gemini Anti-Truncation Proxy")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Goog-Api-Key"],
)

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None

# Not forwarded in either direction on passthrough
_HOP_BY_HOP = {"host", "content-length", "connection", "keep-alive", "transfer-encoding", "upgrade"}


def _get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # If http2 extras not installed, gracefully fall back to HTTP/1.1
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


def _upstream_url(cfg: Settings, request: Request) -> str:
    query = request.url.query
    return f"{cfg.upstream_url_base}{request.url.path}" + (f"?{query}" if query else "")


def _relay(upstream: httpx.Response) -> StreamingResponse:
    headers: Dict[str, str] = {
        k: v for k, v in upstream.headers.items() if k.lower() not in _HOP_BY_HOP
    }
    headers.update(CORS_HEADERS)
    return StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        headers=headers,
        background=BackgroundTask(upstream.aclose),
    )


async def _passthrough(cfg: Settings, client: httpx.AsyncClient, request: Request, url: str) -> Response:
    log_debug(cfg, f"Passthrough for {request.method} {request.url.path}")
    headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP}
    upstream_req = client.build_request(
        request.method,
        url,
        headers=headers,
        content=await request.body(),
        timeout=httpx.Timeout(cfg.upstream_timeout, connect=30.0),
    )
    upstream = await client.send(upstream_req, stream=True)
    return _relay(upstream)


@app.get("/healthz")
async def healthz():
    cfg = Settings()
    return {"ok": True, "upstream": cfg.upstream_url_base, "target_models": cfg.target_models}


@app.api_route("/{full_path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def proxy(request: Request, full_path: str) -> Response:
    cfg = Settings()
    log_debug(cfg, f"Request received: {request.method} {request.url.path}")

    api_key = request.query_params.get("key") or request.headers.get(API_KEY_HEADER)
    if not api_key:
        log_debug(cfg, "Gemini API key not detected. Rejecting request.")
        return json_error(403, "Forbidden", "Gemini API key not detected")

    client = _get_httpx_client()
    url = _upstream_url(cfg, request)
    try:
        if request.method != "POST":
            return await _passthrough(cfg, client, request, url)

        path = request.url.path
        is_stream = ":stream" in path or request.query_params.get("alt") == "sse"
        log_debug(cfg, f"Request identified as {'streaming' if is_stream else 'non-streaming'}.")
        if not is_target_model(path, cfg.target_models, is_stream):
            return await _passthrough(cfg, client, request, url)

        try:
            body = await request.json()
            GenerateContentRequest.model_validate(body)
        except ValueError as e:
            return json_error(400, "Invalid request body", str(e))

        if is_structured_output_request(body):
            log_debug(cfg, "Structured output request detected. Passing through without modification.")
            upstream = await client.send(
                build_upstream_request(url, request.headers, body, cfg.upstream_timeout), stream=True
            )
            return _relay(upstream)

        body, inject_begin = apply_thinking_budget(body)

        if is_stream:
            return StreamingResponse(
                stream_generate_content(
                    client,
                    cfg,
                    url,
                    request.headers,
                    body,
                    inject_begin=inject_begin,
                    cherry=is_cherry_request(request.headers),
                ),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive", **CORS_HEADERS},
            )
        return await generate_content(client, cfg, url, request.headers, body, inject_begin=inject_begin)
    except httpx.HTTPError as e:
        log_debug(cfg, f"Upstream error: {type(e).__name__}: {e}")
        return json_error(502, "Upstream error", str(e))
    except Exception as e:
        log_debug(cfg, f"Top-level exception caught: {type(e).__name__}: {e}")
        return json_error(500, "Internal Server Error", str(e))


@app.on_event("startup")
async def _startup_client():
    # Initialize shared HTTP client eagerly to establish pools
    _ = _get_httpx_client()
    return None


@app.on_event("shutdown")
async def _shutdown_close_client():
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        try:
            await _HTTPX_CLIENT.aclose()
        except Exception:
            ...
        _HTTPX_CLIENT = None

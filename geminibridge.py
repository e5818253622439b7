#!/usr/bin/env python3
"""
GeminiBridge - OpenAI-compatible proxy for Gemini's OpenAI endpoint

Gemini's OpenAI-compatibility layer is stricter than OpenAI about tool schemas
and expects "thought signatures" from earlier tool calls to be echoed back.
This proxy makes it behave as a drop-in OpenAI endpoint:

    client ──► sanitize tool schemas ──► inject stored signatures ──► Gemini
    client ◄── translate error bodies ◄── capture new signatures  ◄──┘

Usage:
    python geminibridge.py --port 8319

Client configuration:
    Point your client's base URL to http://localhost:8319/v1beta/openai/
"""

import argparse
import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Any

import httpx
from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.background import BackgroundTask

from errors import error_payload, translate_error_body
from schema_sanitizer import sanitize_tools
from signatures import (
    SignatureStore,
    derive_conversation_key,
    extract_signatures,
    inject_signatures,
)
from streaming import SSEEventParser, StreamAccumulator
from upstream import (
    RetryOrchestrator,
    UpstreamClient,
    UpstreamResponse,
    UpstreamTimeout,
    UpstreamUnavailable,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Stats Tracking
# =============================================================================


@dataclass
class ProxyStats:
    """Track proxy statistics for observability"""

    total_requests: int = 0
    streaming_requests: int = 0
    upstream_errors: int = 0  # Upstream answered with a 4xx/5xx
    transport_failures: int = 0  # Upstream never answered
    stream_failures: int = 0  # Stream broke after bytes were forwarded
    signatures_captured: int = 0
    signatures_injected: int = 0
    fallback_signatures: int = 0
    retries: dict[str, int] = field(default_factory=dict)

    def record_request(self, streaming: bool) -> None:
        self.total_requests += 1
        if streaming:
            self.streaming_requests += 1

    def record_retry(self, policy: str) -> None:
        self.retries[policy] = self.retries.get(policy, 0) + 1

    def record_upstream_error(self) -> None:
        self.upstream_errors += 1

    def record_transport_failure(self) -> None:
        self.transport_failures += 1

    def record_stream_failure(self) -> None:
        self.stream_failures += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "streaming_requests": self.streaming_requests,
            "upstream_errors": self.upstream_errors,
            "transport_failures": self.transport_failures,
            "stream_failures": self.stream_failures,
            "retries": dict(self.retries),
            "signatures": {
                "captured": self.signatures_captured,
                "injected": self.signatures_injected,
                "fallback": self.fallback_signatures,
            },
        }


# =============================================================================
# Configuration
# =============================================================================


class ProxyConfig(BaseSettings):
    """Proxy configuration settings.

    Configuration can be set via:
    1. CLI arguments (highest priority)
    2. Environment variables (GEMINIBRIDGE_<SETTING_NAME>)
    3. .env file in the working directory
    4. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="GEMINIBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Connection settings
    upstream_url: str = Field(
        default="https://generativelanguage.googleapis.com",
        description="Upstream Gemini API base URL",
    )
    port: int = Field(
        default=8319,
        description="Port to listen on",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Host to bind to",
    )

    # Timeouts and retries
    request_timeout: float = Field(
        default=300.0,
        description="Total seconds allowed per upstream attempt",
    )
    idle_timeout: float = Field(
        default=60.0,
        description="Max seconds between upstream chunks",
    )
    max_attempts: int = Field(
        default=5,
        description="Max upstream attempts per request across all retry classes",
    )

    # Signature cache
    signature_ttl: int = Field(
        default=3600,
        description="Seconds a captured thought signature is kept",
    )
    max_signatures_per_conversation: int = Field(
        default=100,
        description="Max signatures kept per conversation (oldest evicted)",
    )
    session_header: str = Field(
        default="x-session-id",
        description="Request header carrying an explicit conversation id",
    )

    # Debug settings
    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )
    log_tools: bool = Field(
        default=True,
        description="Log the request's tool names when the upstream rejects it",
    )


def load_config() -> ProxyConfig:
    """Load configuration from environment variables and .env file."""
    return ProxyConfig()


# =============================================================================
# Request Preparation
# =============================================================================

# Recomputed or rewritten on the way out
EXCLUDED_REQUEST_HEADERS = {"host", "content-length", "accept-encoding"}
# Describe the upstream framing, which the proxy re-frames
EXCLUDED_RESPONSE_HEADERS = {
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
}


@dataclass
class PreparedRequest:
    """Outbound request body and what was done to it."""

    content: bytes
    payload: dict[str, Any] | None = None  # None when the body isn't a JSON object
    stream: bool = False
    injected: int = 0
    fallbacks: int = 0


def prepare_request_body(
    raw: bytes, store: SignatureStore, conversation_key: str
) -> PreparedRequest:
    """Sanitize tools and inject signatures; anything unparseable passes through."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        if raw:
            logger.debug(f"[{conversation_key}] Body is not JSON, forwarding as-is")
        return PreparedRequest(content=raw)
    if not isinstance(payload, dict):
        return PreparedRequest(content=raw)

    if isinstance(payload.get("tools"), list):
        logger.info(f"[{conversation_key}] Sanitizing {len(payload['tools'])} tools...")
        payload = {**payload, "tools": sanitize_tools(payload["tools"])}

    injection = inject_signatures(store, conversation_key, payload)
    if injection.injected or injection.fallbacks:
        logger.debug(
            f"[{conversation_key}] Injected {injection.injected} signature(s), "
            f"{injection.fallbacks} fallback(s)"
        )

    return PreparedRequest(
        content=json.dumps(injection.body).encode("utf-8"),
        payload=injection.body,
        stream=injection.body.get("stream") is True,
        injected=injection.injected,
        fallbacks=injection.fallbacks,
    )


def forward_headers(request: Request) -> dict[str, str]:
    headers = {
        key: value
        for key, value in request.headers.items()
        if key.lower() not in EXCLUDED_REQUEST_HEADERS
    }
    # Encodings httpx decodes without optional extras
    headers["accept-encoding"] = "gzip, deflate"
    return headers


def response_headers(headers: httpx.Headers) -> dict[str, str]:
    return {
        key: value
        for key, value in headers.items()
        if key.lower() not in EXCLUDED_RESPONSE_HEADERS
    }


def get_client_ip(request: Request) -> str | None:
    """
    Extract client IP from request, handling proxies.

    Checks X-Forwarded-For header first (for clients behind load balancers),
    then falls back to direct client IP.
    """
    # Check X-Forwarded-For header (comma-separated list, first is original client)
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    # Check X-Real-IP header (some proxies use this)
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return None


# =============================================================================
# Response Handling
# =============================================================================


def log_upstream_error(
    conversation_key: str,
    status_code: int,
    body: bytes,
    payload: dict[str, Any] | None,
    log_tools: bool,
) -> None:
    logger.error(
        f"[{conversation_key}] ERROR {status_code}: "
        f"{body[:2000].decode('utf-8', errors='replace')}"
    )
    if not log_tools or not payload or not isinstance(payload.get("tools"), list):
        return
    names = []
    for tool in payload["tools"]:
        function = tool.get("function") if isinstance(tool, dict) else None
        name = function.get("name") if isinstance(function, dict) else None
        names.append(name or "unnamed")
    logger.error(f"[{conversation_key}] Request included tools: {', '.join(names)}")


def finish_buffered(
    app_state: Any,
    upstream: UpstreamResponse,
    prepared: PreparedRequest,
    conversation_key: str,
) -> Response:
    """Capture signatures from a success, translate an error, and build the response."""
    body = upstream.body or b""

    if upstream.is_success:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        stored = extract_signatures(app_state.store, conversation_key, payload)
        app_state.stats.signatures_captured += stored
        if stored:
            logger.info(f"[{conversation_key}] Captured {stored} signature(s)")
    elif upstream.status_code >= 400:
        app_state.stats.record_upstream_error()
        log_upstream_error(
            conversation_key,
            upstream.status_code,
            body,
            prepared.payload,
            app_state.config.log_tools,
        )
        body = translate_error_body(body)

    return Response(
        content=body,
        status_code=upstream.status_code,
        headers=response_headers(upstream.headers),
    )


async def relay_stream(
    app_state: Any, upstream: UpstreamResponse, conversation_key: str
) -> AsyncGenerator[bytes, None]:
    """
    Forward upstream bytes unchanged while capturing signatures from them.

    Each chunk is parsed before it is yielded, so a client that disconnects
    right after receiving it does not lose the signature it carried.
    """
    parser = SSEEventParser()
    accumulator = StreamAccumulator(app_state.store, conversation_key)
    try:
        async for chunk in app_state.upstream.iter_stream(upstream):
            for event in parser.feed(chunk):
                accumulator.feed(event)
            yield chunk
        for event in parser.flush():
            accumulator.feed(event)
    except (httpx.HTTPError, UpstreamTimeout) as e:
        # Bytes are already out; the stream can only be ended
        logger.error(f"[{conversation_key}] Stream aborted: {e or type(e).__name__}")
        app_state.stats.record_stream_failure()
        error_chunk = error_payload(str(e) or type(e).__name__, "upstream_error")
        yield f"data: {json.dumps(error_chunk)}\n\n".encode("utf-8")
    finally:
        await upstream.aclose()
        captured = len(accumulator.signature_ids())
        app_state.stats.signatures_captured += captured
        logger.info(
            f"[{conversation_key}] Stream complete: "
            f"{len(accumulator.tool_calls())} tool call(s), {captured} signature(s)"
        )


async def run_until_disconnect(
    request: Request, work: Awaitable[Response], conversation_key: str
) -> Response:
    """Await ``work``, abandoning it if the client goes away first."""
    task = asyncio.ensure_future(work)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        done, _ = await asyncio.wait(
            {task, watcher}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        watcher.cancel()

    if task in done:
        return task.result()

    logger.info(f"[{conversation_key}] Client disconnected, abandoning upstream request")
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    return Response(status_code=499)


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


# =============================================================================
# API Endpoints
# =============================================================================

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check."""
    state = request.app.state
    return {
        "status": "healthy",
        "upstream_url": state.config.upstream_url,
        "signature_store": state.store.stats(),
    }


@router.get("/stats")
async def get_stats(request: Request) -> dict[str, Any]:
    """Proxy counters plus signature store occupancy."""
    state = request.app.state
    return {**state.stats.to_dict(), "signature_store": state.store.stats()}


@router.post("/stats/reset")
async def reset_stats(request: Request) -> dict[str, Any]:
    request.app.state.stats = ProxyStats()
    return {"status": "reset"}


@router.get("/config")
async def get_config(request: Request) -> dict[str, Any]:
    """Effective configuration."""
    return request.app.state.config.model_dump()


@router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"],
)
async def proxy(request: Request, path: str) -> Response:
    """Forward any other request to the upstream."""
    state = request.app.state
    config: ProxyConfig = state.config

    conversation_key = derive_conversation_key(
        request.headers.get(config.session_header),
        get_client_ip(request),
        request.headers.get("user-agent"),
    )
    state.store.sweep()

    prepared = prepare_request_body(await request.body(), state.store, conversation_key)
    state.stats.record_request(prepared.stream)
    state.stats.signatures_injected += prepared.injected
    state.stats.fallback_signatures += prepared.fallbacks

    logger.info(
        f"[{conversation_key}] {request.method} {request.url.path} "
        f"streaming={prepared.stream}"
    )

    async def attempt() -> UpstreamResponse:
        return await state.orchestrator.execute(
            request.method,
            request.url.path,
            query=request.url.query,
            headers=forward_headers(request),
            content=prepared.content,
            stream=prepared.stream,
            label=conversation_key,
        )

    async def forward() -> Response:
        try:
            upstream = await attempt()
        except UpstreamUnavailable as e:
            state.stats.record_transport_failure()
            return JSONResponse(error_payload(e.message), status_code=502)
        # Only a successful streaming attempt comes back unbuffered
        if upstream.stream is None:
            return finish_buffered(state, upstream, prepared, conversation_key)
        return StreamingResponse(
            relay_stream(state, upstream, conversation_key),
            status_code=upstream.status_code,
            headers=response_headers(upstream.headers),
            background=BackgroundTask(upstream.aclose),
        )

    # Retries and backoff are abandoned if the client leaves before headers go out
    return await run_until_disconnect(request, forward(), conversation_key)


# =============================================================================
# Application
# =============================================================================


def create_app(
    config: ProxyConfig | None = None,
    store: SignatureStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> FastAPI:
    """
    Build the proxy application.

    Args:
        config: Settings (loaded from env / .env when omitted)
        store: Signature store shared by all requests (a fresh one when omitted)
        transport: httpx transport for upstream calls, e.g. a MockTransport in tests
        sleep: Backoff primitive used between retries
    """
    config = config or load_config()
    if store is None:
        store = SignatureStore(
            ttl=config.signature_ttl,
            max_per_conversation=config.max_signatures_per_conversation,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        async with httpx.AsyncClient(transport=transport) as http_client:
            app.state.upstream = UpstreamClient(
                http_client,
                config.upstream_url,
                request_timeout=config.request_timeout,
                idle_timeout=config.idle_timeout,
            )
            app.state.orchestrator = RetryOrchestrator(
                app.state.upstream,
                max_attempts=config.max_attempts,
                sleep=sleep,
                on_retry=lambda policy: app.state.stats.record_retry(policy),
            )
            yield

    app = FastAPI(title="GeminiBridge", lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.stats = ProxyStats()
    app.include_router(router)
    return app


config = load_config()
app = create_app(config)


# =============================================================================
# Main
# =============================================================================


def _env_help(env_var: str, description: str, default: str | None = None) -> str:
    """Format help text with environment variable name."""
    if default is not None:
        return f"{description} [env: {env_var}, default: {default}]"
    return f"{description} [env: {env_var}]"


def main() -> None:
    # Load config from environment variables / .env file first
    global config, app
    config = load_config()

    parser = argparse.ArgumentParser(
        description="GeminiBridge - OpenAI-compatible proxy for Gemini",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration Priority (highest to lowest):
  1. CLI arguments
  2. Environment variables (GEMINIBRIDGE_*)
  3. .env file in working directory
  4. Default values

Examples:
  # Basic usage (reads from env vars / .env if available)
  python geminibridge.py

  # Custom port, group turns by an explicit header
  python geminibridge.py --port 9000 --session-header x-conversation-id
""",
    )

    parser.add_argument(
        "--upstream",
        "-u",
        default=None,
        help=_env_help(
            "GEMINIBRIDGE_UPSTREAM_URL",
            "Upstream API base URL",
            "https://generativelanguage.googleapis.com",
        ),
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help=_env_help("GEMINIBRIDGE_PORT", "Port to listen on", "8319"),
    )
    parser.add_argument(
        "--host",
        default=None,
        help=_env_help("GEMINIBRIDGE_HOST", "Host to bind to", "0.0.0.0"),
    )

    timeouts = parser.add_argument_group("timeouts and retries")
    timeouts.add_argument(
        "--request-timeout",
        type=float,
        default=None,
        help=_env_help(
            "GEMINIBRIDGE_REQUEST_TIMEOUT", "Total seconds per upstream attempt", "300"
        ),
    )
    timeouts.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help=_env_help(
            "GEMINIBRIDGE_IDLE_TIMEOUT", "Max seconds between upstream chunks", "60"
        ),
    )
    timeouts.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help=_env_help(
            "GEMINIBRIDGE_MAX_ATTEMPTS", "Max upstream attempts per request", "5"
        ),
    )

    signatures = parser.add_argument_group("signature cache")
    signatures.add_argument(
        "--signature-ttl",
        type=int,
        default=None,
        help=_env_help(
            "GEMINIBRIDGE_SIGNATURE_TTL", "Seconds to keep thought signatures", "3600"
        ),
    )
    signatures.add_argument(
        "--session-header",
        default=None,
        help=_env_help(
            "GEMINIBRIDGE_SESSION_HEADER",
            "Header carrying an explicit conversation id",
            "x-session-id",
        ),
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging [env: GEMINIBRIDGE_DEBUG=true]",
    )
    parser.add_argument(
        "--no-log-tools",
        action="store_true",
        help="Don't log tool names on upstream errors "
        "[env: GEMINIBRIDGE_LOG_TOOLS=false]",
    )

    args = parser.parse_args()

    # CLI takes precedence over environment variables
    if args.upstream is not None:
        config.upstream_url = args.upstream
    if args.port is not None:
        config.port = args.port
    if args.host is not None:
        config.host = args.host
    if args.request_timeout is not None:
        config.request_timeout = args.request_timeout
    if args.idle_timeout is not None:
        config.idle_timeout = args.idle_timeout
    if args.max_attempts is not None:
        config.max_attempts = args.max_attempts
    if args.signature_ttl is not None:
        config.signature_ttl = args.signature_ttl
    if args.session_header is not None:
        config.session_header = args.session_header
    if args.debug:
        config.debug = True
    if args.no_log_tools:
        config.log_tools = False

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    app = create_app(config)

    logger.info("Starting GeminiBridge")
    logger.info(f"  Upstream: {config.upstream_url}")
    logger.info(f"  Listening: {config.host}:{config.port}")
    logger.info(
        f"  Signatures: TTL {config.signature_ttl}s, "
        f"max {config.max_signatures_per_conversation} per conversation"
    )
    logger.info(f"  Session header: {config.session_header}")
    logger.info(
        f"  Client base URL: http://localhost:{config.port}/v1beta/openai/"
    )

    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port, log_level="info")


if __name__ == "__main__":
    main()

"""Copilot Pool Proxy — FastAPI application entry point.

Exposes the Copilot chat API through OpenAI-style and Anthropic-style
endpoints, multiplexing many GitHub accounts behind per-account keys and
an optional pool key with cross-account retry.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from copilot_pool.config.settings import get_settings
from copilot_pool.logging.audit import (
    RequestTimer,
    generate_request_id,
    get_audit_logger,
    request_id_var,
    setup_logging,
)
from copilot_pool.proxy.handlers import (
    completions_handler,
    count_tokens_handler,
    embeddings_handler,
    error_response,
    messages_handler,
    models_handler,
)
from copilot_pool.routing.auth import ProxyBinding, authenticate
from copilot_pool.routing.retry import with_pool_retry
from copilot_pool.runtime import ProxyRuntime
from copilot_pool.upstream.errors import ProxyError

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging()
    if app.state.runtime is None:
        app.state.runtime = ProxyRuntime.from_settings()
    runtime: ProxyRuntime = app.state.runtime
    if get_settings().auto_start:
        await runtime.auto_start()
    get_audit_logger().info("Proxy started")
    yield
    await runtime.shutdown()
    get_audit_logger().info("Proxy stopped")


async def _proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    response = error_response(exc.status_code, exc.message, exc.error_type)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = 'Bearer realm="copilot-pool"'
    return response


async def _read_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ProxyError(400, "Request body must be valid JSON", "invalid_request_error")
    if not isinstance(body, dict):
        raise ProxyError(400, "Request body must be a JSON object", "invalid_request_error")
    return body


async def _proxy(request: Request, binding: ProxyBinding, handler, endpoint: str, body: dict):
    """Run ``handler`` for the bound account (with pool retry) and audit it."""
    logger = get_audit_logger()
    rid = generate_request_id()
    request_id_var.set(rid)
    runtime: ProxyRuntime = request.app.state.runtime

    async def bound_handler(payload: dict, state):
        return await handler(payload, state, runtime.client)

    with RequestTimer() as timer:
        try:
            result = await with_pool_retry(binding, body, bound_handler, runtime.selector)
        except Exception:
            logger.exception("Unhandled proxy error", extra={"audit_data": {"endpoint": endpoint}})
            return error_response(500, "Internal proxy error")

    logger.info(
        "Request proxied",
        extra={"audit_data": {
            "account_id": result.account.id,
            "pool_mode": binding.pool_mode,
            "strategy": binding.strategy,
            "endpoint": endpoint,
            "model": body.get("model"),
            "stream": bool(body.get("stream")),
            "status": result.response.status_code,
            "latency_ms": timer.elapsed_ms,
            "attempts": result.attempts,
        }},
    )
    result.response.headers["X-Request-Id"] = rid
    return result.response


def create_app(runtime: ProxyRuntime | None = None) -> FastAPI:
    app = FastAPI(
        title="Copilot Pool Proxy",
        description="Multi-account GitHub Copilot proxy with OpenAI and Anthropic endpoints",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.add_exception_handler(ProxyError, _proxy_error_handler)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": VERSION}

    @app.post("/chat/completions")
    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request, binding: ProxyBinding = Depends(authenticate)):
        body = await _read_body(request)
        return await _proxy(request, binding, completions_handler, "chat/completions", body)

    @app.get("/models")
    @app.get("/v1/models")
    async def list_models(request: Request, binding: ProxyBinding = Depends(authenticate)):
        return await _proxy(request, binding, models_handler, "models", {})

    @app.post("/embeddings")
    @app.post("/v1/embeddings")
    async def embeddings(request: Request, binding: ProxyBinding = Depends(authenticate)):
        body = await _read_body(request)
        return await _proxy(request, binding, embeddings_handler, "embeddings", body)

    @app.post("/v1/messages")
    async def messages(request: Request, binding: ProxyBinding = Depends(authenticate)):
        body = await _read_body(request)
        return await _proxy(request, binding, messages_handler, "messages", body)

    @app.post("/v1/messages/count_tokens")
    async def count_tokens(request: Request, binding: ProxyBinding = Depends(authenticate)):
        body = await _read_body(request)
        return await _proxy(request, binding, count_tokens_handler, "messages/count_tokens", body)

    @app.get("/usage")
    @app.get("/v1/usage")
    async def usage(request: Request, binding: ProxyBinding = Depends(authenticate)):
        runtime: ProxyRuntime = request.app.state.runtime
        data = await runtime.registry.get_usage(binding.account.id)
        if data is None:
            return error_response(502, "Failed to fetch usage from upstream")
        return data

    return app


app = create_app()

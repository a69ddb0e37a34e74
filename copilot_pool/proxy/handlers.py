"""Proxy handlers: one upstream round trip for one bound session.

Every handler takes the parsed request body, the session state of the
account it should use and the shared CopilotClient, and returns a
finished Response. Upstream errors are turned into error responses
before any streaming starts, so the caller can inspect the status and
retry on another account.
"""

import json
import math
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.responses import Response

from copilot_pool.instances.state import SessionState
from copilot_pool.logging.audit import get_logger
from copilot_pool.translation.anthropic import translate_to_anthropic, translate_to_openai
from copilot_pool.translation.responses import (
    ResponsesStreamState,
    build_responses_payload,
    new_completion_id,
    supports_chat_completions,
    translate_responses_event,
    translate_responses_result,
)
from copilot_pool.translation.stream import (
    AnthropicStreamState,
    anthropic_error_event,
    finish_stream,
    translate_chunk_to_anthropic_events,
)
from copilot_pool.translation.tokens import get_token_count
from copilot_pool.upstream.copilot import CopilotClient
from copilot_pool.upstream.errors import UpstreamHTTPError
from copilot_pool.upstream.sse import format_sse, iter_sse_events

logger = get_logger("proxy")

# Local estimates undercount for these families relative to their own tokenizers
TOKEN_FUDGE_FACTORS = (("claude", 1.15), ("grok", 1.03))

STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def error_response(status_code: int, message: str, error_type: str = "api_error") -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type}},
    )


def upstream_error_response(error: UpstreamHTTPError) -> JSONResponse:
    """Forward an upstream error body as-is when it already has the error shape."""
    try:
        body = json.loads(error.body) if error.body else None
    except ValueError:
        body = None
    if isinstance(body, dict) and "error" in body:
        return JSONResponse(status_code=error.status_code, content=body)
    return error_response(error.status_code or 500, error.body or error.message)


def has_vision_content(messages: list[dict]) -> bool:
    return any(
        isinstance(m.get("content"), list)
        and any(isinstance(p, dict) and p.get("type") == "image_url" for p in m["content"])
        for m in messages
    )


def initiator_for(messages: list[dict]) -> str:
    return "agent" if any(m.get("role") in ("assistant", "tool") for m in messages) else "user"


def prepare_chat_payload(body: dict, state: SessionState) -> dict:
    """Copy of ``body`` with max_tokens filled in from the model catalog."""
    payload = dict(body)
    if not payload.get("max_tokens"):
        model = state.find_model(payload.get("model", ""))
        limit = ((model or {}).get("capabilities") or {}).get("limits", {}).get("max_output_tokens")
        if limit:
            payload["max_tokens"] = limit
    return payload


# --- upstream chat call, via /chat/completions or /responses ---


@dataclass
class UpstreamCall:
    response: httpx.Response
    responses_state: ResponsesStreamState | None = None  # set when served by /responses


async def _call_chat(payload: dict, state: SessionState, client: CopilotClient) -> UpstreamCall:
    messages = payload.get("messages", [])
    options = {
        "vision": has_vision_content(messages),
        "initiator": initiator_for(messages),
        "stream": bool(payload.get("stream")),
    }
    if supports_chat_completions(state.find_model(payload.get("model", ""))):
        response = await client.post(state, "/chat/completions", payload, **options)
        return UpstreamCall(response)

    responses_payload = build_responses_payload(payload)
    response = await client.post(state, "/responses", responses_payload.model_dump(exclude_none=True), **options)
    return UpstreamCall(
        response,
        ResponsesStreamState(
            response_id=new_completion_id(),
            created=int(time.time()),
            model=payload.get("model", ""),
        ),
    )


def _chat_result(call: UpstreamCall) -> dict:
    data = call.response.json()
    if call.responses_state is None:
        return data
    return translate_responses_result(data, call.responses_state.response_id, call.responses_state.created)


async def _iter_chat_chunks(call: UpstreamCall) -> AsyncIterator[dict]:
    """Chat-completion chunks from the upstream stream; bad events are skipped."""
    async for event in iter_sse_events(call.response):
        if event.data == "[DONE]":
            return
        try:
            data = json.loads(event.data)
        except ValueError:
            logger.warning("Skipping unparseable stream event", extra={"audit_data": {
                "event": event.event,
                "data_length": len(event.data),
            }})
            continue
        if not isinstance(data, dict):
            continue
        if call.responses_state is None:
            yield data
        else:
            for chunk in translate_responses_event(event.event, data, call.responses_state):
                yield chunk


# --- handlers ---


async def completions_handler(body: dict, state: SessionState, client: CopilotClient) -> Response:
    payload = prepare_chat_payload(body, state)
    try:
        call = await _call_chat(payload, state, client)
    except UpstreamHTTPError as e:
        return upstream_error_response(e)

    if not payload.get("stream"):
        return JSONResponse(content=_chat_result(call))

    async def event_generator():
        try:
            async for chunk in _iter_chat_chunks(call):
                yield format_sse(json.dumps(chunk))
            yield format_sse("[DONE]")
        except httpx.HTTPError as e:
            logger.error("Upstream stream interrupted", extra={"audit_data": {"error": str(e)}})
            yield format_sse(json.dumps({"error": {"message": str(e), "type": "api_error"}}))
        finally:
            await call.response.aclose()

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=STREAM_HEADERS)


async def messages_handler(body: dict, state: SessionState, client: CopilotClient) -> Response:
    """Anthropic Messages front door over the upstream chat API."""
    payload = prepare_chat_payload(translate_to_openai(body), state)
    try:
        call = await _call_chat(payload, state, client)
    except UpstreamHTTPError as e:
        return upstream_error_response(e)

    if not payload.get("stream"):
        return JSONResponse(content=translate_to_anthropic(_chat_result(call)))

    async def event_generator():
        stream_state = AnthropicStreamState()
        try:
            async for chunk in _iter_chat_chunks(call):
                try:
                    events = translate_chunk_to_anthropic_events(chunk, stream_state)
                except (AttributeError, IndexError, KeyError, TypeError) as e:
                    logger.warning("Skipping untranslatable chunk", extra={"audit_data": {"error": str(e)}})
                    continue
                for event in events:
                    yield format_sse(json.dumps(event), event["type"])
            for event in finish_stream(stream_state):
                yield format_sse(json.dumps(event), event["type"])
        except httpx.HTTPError as e:
            logger.error("Upstream stream interrupted", extra={"audit_data": {"error": str(e)}})
            event = anthropic_error_event(str(e))
            yield format_sse(json.dumps(event), event["type"])
        finally:
            await call.response.aclose()

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=STREAM_HEADERS)


async def embeddings_handler(body: dict, state: SessionState, client: CopilotClient) -> Response:
    try:
        response = await client.post(state, "/embeddings", body)
    except UpstreamHTTPError as e:
        return upstream_error_response(e)
    return JSONResponse(content=response.json())


async def models_handler(body: dict, state: SessionState, client: CopilotClient) -> Response:
    """The session's cached model catalog in OpenAI list shape."""
    models = (state.models or {}).get("data", [])
    return JSONResponse(content={
        "object": "list",
        "data": [
            {
                "id": model.get("id"),
                "object": "model",
                "type": "model",
                "created": 0,
                "created_at": "1970-01-01T00:00:00.000Z",
                "owned_by": model.get("vendor", ""),
                "display_name": model.get("name", model.get("id")),
            }
            for model in models
        ],
        "has_more": False,
    })


def apply_fudge_factor(model_id: str, tokens: int) -> int:
    for prefix, factor in TOKEN_FUDGE_FACTORS:
        if model_id.startswith(prefix):
            return math.floor(tokens * factor + 0.5)
    return tokens


async def count_tokens_handler(body: dict, state: SessionState, client: CopilotClient) -> Response:
    """Estimate input tokens for an Anthropic request; ``1`` whenever unsure."""
    try:
        payload = translate_to_openai(body)
        model = state.find_model(payload["model"])
        if model is None:
            return JSONResponse(content={"input_tokens": 1})
        counts = get_token_count(payload, model)
        tokens = apply_fudge_factor(payload["model"], counts["input"] + counts["output"])
    except Exception as e:
        logger.warning("Token count failed", extra={"audit_data": {"error": str(e)}})
        return JSONResponse(content={"input_tokens": 1})
    return JSONResponse(content={"input_tokens": tokens})

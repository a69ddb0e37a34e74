"""Chat completions <-> Responses API, for models served only via /responses.

Callers always see chat-completion shapes: requests are rebuilt as
Responses payloads, and results or stream events are mapped back.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict

from copilot_pool.logging.audit import get_logger

logger = get_logger("translation")

# Chat keys that are either rebuilt below or rejected by the Responses endpoint
_CONSUMED_KEYS = {
    "model", "messages", "input", "stream", "max_tokens", "temperature", "top_p",
    "tools", "tool_choice", "stream_options", "n", "service_tier", "text",
    "response_format", "stop", "frequency_penalty", "presence_penalty", "seed",
    "logprobs", "top_logprobs", "logit_bias", "max_completion_tokens",
}


class ResponsesPayload(BaseModel):
    """Typed core of a Responses request; unknown fields pass through."""

    model_config = ConfigDict(extra="allow")

    model: str
    input: list[dict[str, Any]]
    stream: bool = False
    max_output_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    text: dict[str, Any] | None = None


def supports_chat_completions(model: dict | None) -> bool:
    """False only for models that advertise /responses but not /chat/completions."""
    endpoints = (model or {}).get("supported_endpoints")
    if not endpoints:
        return True
    return "/chat/completions" in endpoints or "/responses" not in endpoints


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:10]}"


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:10]}"


# --- request ---


def build_responses_payload(chat_payload: dict) -> ResponsesPayload:
    extras = {k: v for k, v in chat_payload.items() if k not in _CONSUMED_KEYS}
    tools = None
    if chat_payload.get("tools"):
        # Responses tools are flat, without the nested "function" wrapper
        tools = [
            {
                "type": "function",
                "name": tool["function"]["name"],
                "description": tool["function"].get("description"),
                "parameters": tool["function"].get("parameters"),
            }
            for tool in chat_payload["tools"]
        ]
    return ResponsesPayload(
        model=chat_payload["model"],
        input=_input_items(chat_payload.get("messages", [])),
        stream=bool(chat_payload.get("stream")),
        max_output_tokens=chat_payload.get("max_tokens") or chat_payload.get("max_completion_tokens"),
        temperature=chat_payload.get("temperature"),
        top_p=chat_payload.get("top_p"),
        tools=tools,
        tool_choice=_tool_choice(chat_payload.get("tool_choice")),
        text=_text_config(chat_payload),
        **extras,
    )


def _text_config(chat_payload: dict) -> dict | None:
    text = dict(chat_payload.get("text") or {})
    response_format = chat_payload.get("response_format")
    if isinstance(response_format, dict):
        if response_format.get("type") == "json_schema":
            # Responses flattens the nested json_schema object into the format
            text["format"] = {"type": "json_schema", **(response_format.get("json_schema") or {})}
        else:
            text["format"] = response_format
    return text or None


def _tool_choice(choice):
    if isinstance(choice, dict) and choice.get("type") == "function":
        return {"type": "function", "name": choice.get("function", {}).get("name", "")}
    return choice


def _input_items(messages: list[dict]) -> list[dict]:
    items = []
    for message in messages:
        role = message.get("role")
        content = message.get("content")
        if role == "tool":
            items.append({
                "type": "function_call_output",
                "call_id": message.get("tool_call_id", ""),
                "output": content if isinstance(content, str) else _text_of(content),
            })
            continue

        if role in ("system", "developer"):
            items.append({"type": "message", "role": role, "content": _text_of(content)})
            continue

        parts = _content_items(content, "output_text" if role == "assistant" else "input_text")
        if parts:
            items.append({"type": "message", "role": role, "content": parts})
        for call in message.get("tool_calls") or []:
            items.append({
                "type": "function_call",
                "call_id": call.get("id") or _new_call_id(),
                "name": call["function"]["name"],
                "arguments": call["function"].get("arguments") or "{}",
            })
    return items


def _content_items(content, text_type: str) -> list[dict]:
    if isinstance(content, str):
        return [{"type": text_type, "text": content}] if content else []
    items = []
    for part in content or []:
        if part.get("type") == "text":
            items.append({"type": text_type, "text": part.get("text", "")})
        elif part.get("type") == "image_url":
            image = part.get("image_url") or {}
            items.append({
                "type": "input_image",
                "image_url": image.get("url"),
                "detail": image.get("detail", "auto"),
            })
    return items


def _text_of(content) -> str:
    if isinstance(content, str):
        return content
    return "\n\n".join(p.get("text", "") for p in content or [] if p.get("type") == "text")


# --- non-streaming result ---


def _chat_usage(usage: dict | None) -> dict | None:
    if not usage:
        return None
    result = {
        "prompt_tokens": usage.get("input_tokens", 0),
        "completion_tokens": usage.get("output_tokens", 0),
        "total_tokens": usage.get("total_tokens", 0),
    }
    cached = (usage.get("input_tokens_details") or {}).get("cached_tokens")
    if cached:
        result["prompt_tokens_details"] = {"cached_tokens": cached}
    return result


def _finish_reason(response: dict, has_tool_calls: bool) -> str:
    if has_tool_calls:
        return "tool_calls"
    details = response.get("incomplete_details") or {}
    if response.get("status") == "incomplete" and details.get("reason") == "max_output_tokens":
        return "length"
    return "stop"


def translate_responses_result(data: dict, response_id: str, created: int) -> dict:
    content = ""
    tool_calls = []
    for item in data.get("output") or []:
        if item.get("type") == "message":
            for part in item.get("content") or []:
                if part.get("type") == "output_text":
                    content += part.get("text", "")
        elif item.get("type") == "function_call":
            tool_calls.append({
                "id": item.get("call_id") or _new_call_id(),
                "type": "function",
                "function": {"name": item.get("name", ""), "arguments": item.get("arguments") or "{}"},
            })

    message: dict[str, Any] = {"role": "assistant", "content": content or None}
    if tool_calls:
        message["tool_calls"] = tool_calls
    result = {
        "id": response_id,
        "object": "chat.completion",
        "created": created,
        "model": data.get("model", ""),
        "choices": [{
            "index": 0,
            "message": message,
            "logprobs": None,
            "finish_reason": _finish_reason(data, bool(tool_calls)),
        }],
    }
    usage = _chat_usage(data.get("usage"))
    if usage:
        result["usage"] = usage
    return result


# --- streaming ---


@dataclass
class ResponsesStreamState:
    response_id: str
    created: int
    model: str
    tool_indexes: dict[int, int] = field(default_factory=dict)  # output_index -> chat tool index
    item_outputs: dict[str, int] = field(default_factory=dict)  # item_id -> output_index
    has_tool_calls: bool = False
    done: bool = False

    def tool_index(self, output_index: int) -> int:
        if output_index not in self.tool_indexes:
            self.tool_indexes[output_index] = len(self.tool_indexes)
        return self.tool_indexes[output_index]


def _chunk(state: ResponsesStreamState, delta: dict, finish_reason: str | None = None, usage: dict | None = None) -> dict:
    chunk = {
        "id": state.response_id,
        "object": "chat.completion.chunk",
        "created": state.created,
        "model": state.model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason, "logprobs": None}],
    }
    if usage:
        chunk["usage"] = usage
    return chunk


def translate_responses_event(event_type: str, data: dict, state: ResponsesStreamState) -> list[dict]:
    """Chat-completion chunks for one Responses stream event."""
    if state.done:
        return []
    event_type = event_type or data.get("type", "")

    if event_type == "response.output_text.delta":
        return [_chunk(state, {"content": data.get("delta", "")})]

    if event_type == "response.output_item.added":
        item = data.get("item") or {}
        if item.get("type") != "function_call":
            return []
        output_index = data.get("output_index", 0)
        if item.get("id"):
            state.item_outputs[item["id"]] = output_index
        state.has_tool_calls = True
        return [_chunk(state, {"tool_calls": [{
            "index": state.tool_index(output_index),
            "id": item.get("call_id") or _new_call_id(),
            "type": "function",
            "function": {"name": item.get("name", ""), "arguments": ""},
        }]})]

    if event_type == "response.function_call_arguments.delta":
        output_index = data.get("output_index")
        if output_index is None:
            output_index = state.item_outputs.get(data.get("item_id", ""), 0)
        return [_chunk(state, {"tool_calls": [{
            "index": state.tool_index(output_index),
            "function": {"arguments": data.get("delta", "")},
        }]})]

    if event_type in ("response.completed", "response.incomplete"):
        response = data.get("response") or {}
        has_tool_calls = state.has_tool_calls or any(
            item.get("type") == "function_call" for item in response.get("output") or []
        )
        state.done = True
        return [_chunk(
            state,
            {},
            finish_reason=_finish_reason(response, has_tool_calls),
            usage=_chat_usage(response.get("usage")),
        )]

    if event_type in ("response.failed", "error"):
        error = (data.get("response") or {}).get("error") or data
        logger.warning("Responses stream failed", extra={"audit_data": {
            "error": error.get("message", "unknown"),
        }})
        state.done = True
        return [_chunk(state, {}, finish_reason="stop")]

    return []

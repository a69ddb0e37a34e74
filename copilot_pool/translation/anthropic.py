"""Anthropic Messages <-> OpenAI chat completions, non-streaming.

Pure functions over plain dicts. Upstream always speaks the OpenAI chat
shape; these map the Anthropic request in and the completion back out.
"""

import json
import re
from typing import Any

from copilot_pool.logging.audit import get_logger

logger = get_logger("translation")

_DATE_SUFFIX_RE = re.compile(r"-\d{8}$")

STOP_REASONS = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "content_filter": "end_turn",
}


def normalize_model_name(model: str) -> str:
    """``claude-sonnet-4-20250514`` -> ``claude-sonnet-4``."""
    return _DATE_SUFFIX_RE.sub("", model)


def map_stop_reason(finish_reason: str | None) -> str | None:
    if finish_reason is None:
        return None
    return STOP_REASONS.get(finish_reason, "end_turn")


# --- request: Anthropic -> OpenAI ---


def translate_to_openai(payload: dict) -> dict:
    result: dict[str, Any] = {
        "model": normalize_model_name(payload.get("model", "")),
        "messages": _system_messages(payload.get("system")) + _translate_messages(payload.get("messages", [])),
    }
    for key in ("max_tokens", "stream", "temperature", "top_p"):
        if payload.get(key) is not None:
            result[key] = payload[key]
    if payload.get("stop_sequences"):
        result["stop"] = payload["stop_sequences"]
    user_id = (payload.get("metadata") or {}).get("user_id")
    if user_id:
        result["user"] = user_id

    if payload.get("tools"):
        result["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema", {}),
                },
            }
            for tool in payload["tools"]
        ]
    tool_choice = _translate_tool_choice(payload.get("tool_choice"))
    if tool_choice is not None:
        result["tool_choice"] = tool_choice
    return result


def _system_messages(system) -> list[dict]:
    if isinstance(system, str):
        text = system
    elif isinstance(system, list):
        text = "\n\n".join(b.get("text", "") for b in system if b.get("type") == "text")
    else:
        return []
    return [{"role": "system", "content": text}] if text else []


def _translate_messages(messages: list[dict]) -> list[dict]:
    translated = []
    for message in messages:
        role = message.get("role")
        content = message.get("content")
        if isinstance(content, str) or content is None:
            translated.append({"role": role, "content": content or ""})
        elif role == "assistant":
            translated.append(_assistant_message(content))
        else:
            translated.extend(_user_messages(content))
    return translated


def _user_messages(blocks: list[dict]) -> list[dict]:
    # tool results must directly follow the assistant message that called them
    messages = [
        {
            "role": "tool",
            "tool_call_id": block.get("tool_use_id", ""),
            "content": _tool_result_text(block.get("content")),
        }
        for block in blocks
        if block.get("type") == "tool_result"
    ]
    rest = [b for b in blocks if b.get("type") != "tool_result"]
    if rest:
        messages.append({"role": "user", "content": _content_parts(rest)})
    return messages


def _assistant_message(blocks: list[dict]) -> dict:
    texts = [
        block.get("text") if block.get("type") == "text" else block.get("thinking")
        for block in blocks
        if block.get("type") in ("text", "thinking")
    ]
    tool_calls = [
        {
            "id": block.get("id", ""),
            "type": "function",
            "function": {"name": block.get("name", ""), "arguments": json.dumps(block.get("input", {}))},
        }
        for block in blocks
        if block.get("type") == "tool_use"
    ]
    message: dict[str, Any] = {"role": "assistant", "content": "\n\n".join(t for t in texts if t) or None}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return message


def _content_parts(blocks: list[dict]):
    """Joined text when there are no images, else OpenAI content parts."""
    if not any(b.get("type") == "image" for b in blocks):
        return "\n\n".join(b.get("text", "") for b in blocks if b.get("type") == "text")
    parts = []
    for block in blocks:
        if block.get("type") == "text":
            parts.append({"type": "text", "text": block.get("text", "")})
        elif block.get("type") == "image":
            source = block.get("source", {})
            if source.get("type") == "url":
                url = source.get("url", "")
            else:
                url = f"data:{source.get('media_type', 'image/png')};base64,{source.get('data', '')}"
            parts.append({"type": "image_url", "image_url": {"url": url}})
    return parts


def _tool_result_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"
        )
    return "" if content is None else str(content)


def _translate_tool_choice(choice):
    if not isinstance(choice, dict):
        return None
    kind = choice.get("type")
    if kind == "auto":
        return "auto"
    if kind == "any":
        return "required"
    if kind == "none":
        return "none"
    if kind == "tool" and choice.get("name"):
        return {"type": "function", "function": {"name": choice["name"]}}
    return None


# --- response: OpenAI -> Anthropic ---


def translate_usage(usage: dict | None) -> dict:
    usage = usage or {}
    cached = (usage.get("prompt_tokens_details") or {}).get("cached_tokens") or 0
    result = {
        "input_tokens": (usage.get("prompt_tokens") or 0) - cached,
        "output_tokens": usage.get("completion_tokens") or 0,
    }
    if cached:
        result["cache_read_input_tokens"] = cached
    return result


def translate_to_anthropic(response: dict) -> dict:
    """One Anthropic message from every choice of a chat completion."""
    text_blocks: list[dict] = []
    tool_blocks: list[dict] = []
    stop_reason = None

    for choice in response.get("choices", []):
        message = choice.get("message") or {}
        if message.get("content"):
            text_blocks.append({"type": "text", "text": message["content"]})
        for call in message.get("tool_calls") or []:
            function = call.get("function", {})
            tool_blocks.append({
                "type": "tool_use",
                "id": call.get("id", ""),
                "name": function.get("name", ""),
                "input": _parse_arguments(function.get("arguments")),
            })
        reason = map_stop_reason(choice.get("finish_reason"))
        if stop_reason != "tool_use" and reason is not None:
            stop_reason = reason

    return {
        "id": response.get("id", ""),
        "type": "message",
        "role": "assistant",
        "model": response.get("model", ""),
        "content": text_blocks + tool_blocks,
        "stop_reason": stop_reason,
        "stop_sequence": None,
        "usage": translate_usage(response.get("usage")),
    }


def _parse_arguments(arguments) -> dict:
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except (TypeError, ValueError):
        logger.warning("Unparseable tool call arguments", extra={"audit_data": {
            "arguments_length": len(str(arguments)),
        }})
        return {}
    return parsed if isinstance(parsed, dict) else {}

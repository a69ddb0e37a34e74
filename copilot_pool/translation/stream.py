"""OpenAI chat-completion chunks -> Anthropic SSE events.

Anthropic clients require every content block to be explicitly started
and stopped with consistent indexes, while OpenAI chunks carry no block
structure. The translator keeps one AnthropicStreamState per response
and moves between block states only through ``_transition``.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum

from copilot_pool.translation.anthropic import map_stop_reason, translate_usage


class BlockState(str, Enum):
    NONE = "none"
    TEXT = "text"
    TOOL = "tool"


@dataclass
class ToolCallInfo:
    id: str
    name: str
    anthropic_index: int


@dataclass
class AnthropicStreamState:
    message_start_sent: bool = False
    block: BlockState = BlockState.NONE
    block_index: int = -1  # index of the open (or last opened) block
    open_tool: int | None = None  # OpenAI tool index of the open tool block
    tool_calls: dict[int, ToolCallInfo] = field(default_factory=dict)
    finished: bool = False


def _transition(
    state: AnthropicStreamState,
    target: BlockState,
    events: list[dict],
    content_block: dict | None = None,
    tool_index: int | None = None,
) -> None:
    if state.block == target and (target != BlockState.TOOL or state.open_tool == tool_index):
        return

    if state.block != BlockState.NONE:
        events.append({"type": "content_block_stop", "index": state.block_index})
        state.block = BlockState.NONE
        state.open_tool = None

    if target == BlockState.NONE:
        return

    state.block_index += 1
    state.block = target
    state.open_tool = tool_index
    events.append({
        "type": "content_block_start",
        "index": state.block_index,
        "content_block": content_block,
    })


def _message_start(chunk: dict) -> dict:
    usage = translate_usage(chunk.get("usage"))
    usage["output_tokens"] = 0
    return {
        "type": "message_start",
        "message": {
            "id": chunk.get("id", ""),
            "type": "message",
            "role": "assistant",
            "content": [],
            "model": chunk.get("model", ""),
            "stop_reason": None,
            "stop_sequence": None,
            "usage": usage,
        },
    }


def translate_chunk_to_anthropic_events(chunk: dict, state: AnthropicStreamState) -> list[dict]:
    """Anthropic events for one OpenAI chunk, updating ``state`` in place."""
    events: list[dict] = []
    if state.finished or not chunk.get("choices"):
        return events

    if not state.message_start_sent:
        events.append(_message_start(chunk))
        state.message_start_sent = True

    choice = chunk["choices"][0]
    delta = choice.get("delta") or {}

    if delta.get("content"):
        _transition(state, BlockState.TEXT, events, {"type": "text", "text": ""})
        events.append({
            "type": "content_block_delta",
            "index": state.block_index,
            "delta": {"type": "text_delta", "text": delta["content"]},
        })

    for call in delta.get("tool_calls") or []:
        index = call.get("index", 0)
        function = call.get("function") or {}
        info = state.tool_calls.get(index)
        if info is None:
            tool_id = call.get("id") or f"toolu_{uuid.uuid4().hex[:24]}"
            name = function.get("name", "")
            _transition(
                state,
                BlockState.TOOL,
                events,
                {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
                tool_index=index,
            )
            info = ToolCallInfo(id=tool_id, name=name, anthropic_index=state.block_index)
            state.tool_calls[index] = info

        if function.get("arguments"):
            events.append({
                "type": "content_block_delta",
                "index": info.anthropic_index,
                "delta": {"type": "input_json_delta", "partial_json": function["arguments"]},
            })

    if choice.get("finish_reason"):
        _transition(state, BlockState.NONE, events)
        events.append({
            "type": "message_delta",
            "delta": {
                "stop_reason": map_stop_reason(choice["finish_reason"]),
                "stop_sequence": None,
            },
            "usage": translate_usage(chunk.get("usage")),
        })
        events.append({"type": "message_stop"})
        state.finished = True

    return events


def finish_stream(state: AnthropicStreamState) -> list[dict]:
    """Closing events for a stream that ended without a finish_reason."""
    events: list[dict] = []
    if not state.message_start_sent or state.finished:
        return events
    _transition(state, BlockState.NONE, events)
    events.append({
        "type": "message_delta",
        "delta": {"stop_reason": "end_turn", "stop_sequence": None},
        "usage": {"output_tokens": 0},
    })
    events.append({"type": "message_stop"})
    state.finished = True
    return events


def anthropic_error_event(message: str) -> dict:
    return {"type": "error", "error": {"type": "api_error", "message": message}}

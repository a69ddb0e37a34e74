"""Local token estimates for chat payloads, using tiktoken."""

import json
from functools import lru_cache

import tiktoken

DEFAULT_ENCODING = "o200k_base"
FALLBACK_ENCODING = "cl100k_base"

TOKENS_PER_MESSAGE = 3
TOKENS_PER_NAME = 1
TOKENS_PER_TOOL = 7
TOKENS_PER_IMAGE = 85
REPLY_PRIMING_TOKENS = 3


@lru_cache(maxsize=8)
def get_encoding(name: str | None):
    try:
        return tiktoken.get_encoding(name or DEFAULT_ENCODING)
    except ValueError:
        return tiktoken.get_encoding(FALLBACK_ENCODING)


def encoding_for_model(model: dict | None):
    tokenizer = ((model or {}).get("capabilities") or {}).get("tokenizer")
    return get_encoding(tokenizer)


def _count_text(encoding, text) -> int:
    if not text:
        return 0
    if not isinstance(text, str):
        text = json.dumps(text, separators=(",", ":"))
    return len(encoding.encode(text))


def _count_content(encoding, content) -> int:
    if isinstance(content, str) or content is None:
        return _count_text(encoding, content)
    total = 0
    for part in content:
        if part.get("type") == "image_url":
            total += TOKENS_PER_IMAGE
        else:
            total += _count_text(encoding, part.get("text"))
    return total


def _count_message(encoding, message: dict) -> int:
    total = TOKENS_PER_MESSAGE + _count_content(encoding, message.get("content"))
    if message.get("name"):
        total += TOKENS_PER_NAME + _count_text(encoding, message["name"])
    for call in message.get("tool_calls") or []:
        function = call.get("function", {})
        total += TOKENS_PER_TOOL
        total += _count_text(encoding, function.get("name"))
        total += _count_text(encoding, function.get("arguments"))
    return total


def get_token_count(payload: dict, model: dict | None = None, encoding=None) -> dict:
    """Estimate ``{"input": n, "output": m}`` for an OpenAI chat payload.

    Assistant turns already in the conversation count as output; everything
    else, plus tool definitions, counts as input.
    """
    encoding = encoding or encoding_for_model(model)
    input_tokens = REPLY_PRIMING_TOKENS
    output_tokens = 0
    for message in payload.get("messages", []):
        count = _count_message(encoding, message)
        if message.get("role") == "assistant":
            output_tokens += count
        else:
            input_tokens += count
    for tool in payload.get("tools") or []:
        input_tokens += TOKENS_PER_TOOL + _count_text(encoding, tool.get("function", tool))
    return {"input": input_tokens, "output": output_tokens}

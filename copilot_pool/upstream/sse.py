"""Minimal server-sent events reader over an httpx streaming response."""

from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx


@dataclass
class SSEEvent:
    event: str  # "" when the server sent no ``event:`` line
    data: str


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[SSEEvent]:
    """Yield one SSEEvent per blank-line-terminated block."""
    event = ""
    data_lines: list[str] = []

    async for line in response.aiter_lines():
        line = line.rstrip("\r")
        if not line:
            if data_lines:
                yield SSEEvent(event=event, data="\n".join(data_lines))
            event = ""
            data_lines = []
            continue
        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)

    if data_lines:
        yield SSEEvent(event=event, data="\n".join(data_lines))


def format_sse(data: str, event: str | None = None) -> str:
    if event:
        return f"event: {event}\ndata: {data}\n\n"
    return f"data: {data}\n\n"

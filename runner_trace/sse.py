"""Rebuild a single completion from an OpenAI-style SSE stream."""

import json
from typing import Any

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"


def is_streaming_body(body: str) -> bool:
    """Whether *body* looks like a server-sent event stream."""
    return SSE_DATA_PREFIX in body


def _first_choice(chunk: dict[str, Any]) -> dict[str, Any] | None:
    choices = chunk.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return None


def _merge_tool_calls(tool_calls: dict[int, dict], fragments: list) -> None:
    """Merge streamed tool call fragments into *tool_calls*, keyed by index."""
    for fragment in fragments:
        if not isinstance(fragment, dict):
            continue
        idx = fragment.get("index", 0)
        if idx not in tool_calls:
            tool_calls[idx] = {
                "id": "",
                "type": "function",
                "function": {"name": "", "arguments": ""},
            }
        call = tool_calls[idx]

        if fragment.get("id"):
            call["id"] = fragment["id"]
        if fragment.get("type"):
            call["type"] = fragment["type"]
        func = fragment.get("function")
        if isinstance(func, dict):
            if func.get("name"):
                call["function"]["name"] = func["name"]
            if isinstance(func.get("arguments"), str):
                call["function"]["arguments"] += func["arguments"]


def reconstruct_stream(body: str) -> str:
    """Turn a streamed chat completion into a non-streamed one.

    The last chunk that parses is the template for the result: its top-level
    fields (id, created, model, usage, ...) are kept as they are, the delta
    of its first choice is replaced by the message assembled from every
    chunk, and ``object`` becomes ``chat.completion``. A choice without a
    ``finish_reason`` key gets ``"stop"``; an explicit ``null`` is kept, so a
    cut-off stream still reads as unfinished. Unparsable chunks are skipped.
    If nothing parses, *body* is returned unchanged.
    """
    content_parts: list[str] = []
    tool_calls: dict[int, dict] = {}
    last_chunk: dict[str, Any] | None = None

    for line in body.split("\n"):
        line = line.rstrip("\r")
        if not line.startswith(SSE_DATA_PREFIX):
            continue

        data = line[len(SSE_DATA_PREFIX):]
        if data == SSE_DONE:
            break

        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            continue
        if not isinstance(chunk, dict):
            continue

        last_chunk = chunk

        choice = _first_choice(chunk)
        if choice is None:
            continue
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            continue

        content = delta.get("content")
        if isinstance(content, str):
            content_parts.append(content)
        if isinstance(delta.get("tool_calls"), list):
            _merge_tool_calls(tool_calls, delta["tool_calls"])

    if last_chunk is None:
        return body

    final = dict(last_chunk)
    choice = _first_choice(final)
    if choice is not None:
        choice = dict(choice)
        message: dict[str, Any] = {
            "role": "assistant",
            "content": "".join(content_parts),
        }
        if tool_calls:
            message["tool_calls"] = [tool_calls[idx] for idx in sorted(tool_calls)]
        choice["message"] = message
        choice.pop("delta", None)
        if "finish_reason" not in choice:
            choice["finish_reason"] = "stop"
        final["choices"] = [choice, *final["choices"][1:]]

    final["object"] = "chat.completion"

    try:
        return json.dumps(final, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError):
        return body

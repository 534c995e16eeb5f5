"""Classify the worker's newline-delimited JSON event stream.

Each stdout line becomes a :class:`StreamEvent` with zero or more condensed
one-line summaries for the human-readable log. Tool results are reported by
size only; their content never reaches the filtered log.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class EventKind(StrEnum):
    INIT = "init"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    OTHER = "other"  # valid JSON event with nothing worth condensing
    RAW = "raw"  # not JSON, or a JSON type we do not know


TOOL_SUMMARY_LIMIT = 50
TEXT_LIMIT = 100


@dataclass(slots=True)
class StreamEvent:
    kind: EventKind
    raw: str
    data: dict[str, Any] | None = None
    lines: list[str] = field(default_factory=list)

    @property
    def cost_usd(self) -> float | None:
        cost = (self.data or {}).get("total_cost_usd")
        return float(cost) if isinstance(cost, (int, float)) else None

    @property
    def num_turns(self) -> int | None:
        turns = (self.data or {}).get("num_turns")
        return turns if isinstance(turns, int) else None


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _tool_summary(tool_input: Any) -> str:
    if not isinstance(tool_input, dict):
        return ""
    for key in ("command", "file_path", "pattern"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return _truncate(value.replace("\n", " "), TOOL_SUMMARY_LIMIT)
    return ""


def _assistant_lines(message: Any) -> list[str]:
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    lines: list[str] = []
    texts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "tool_use":
            name = block.get("name", "?")
            summary = _tool_summary(block.get("input"))
            lines.append(f"[TOOL] {name}: {summary}" if summary else f"[TOOL] {name}")
        elif block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
    if not lines and texts:
        text = " ".join(texts).replace("\n", " ").strip()
        if text:
            lines.append(f"[TEXT] {_truncate(text, TEXT_LIMIT)}")
    return lines


def _result_size(result: Any) -> int:
    if isinstance(result, str):
        return len(result.encode("utf-8"))
    return len(json.dumps(result, default=str).encode("utf-8"))


def parse_stream_line(line: str) -> StreamEvent:
    stripped = line.strip()
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        return StreamEvent(EventKind.RAW, line, lines=[f"[RAW] {stripped[:TEXT_LIMIT]}"] if stripped else [])

    kind = data.get("type")
    if kind == "system":
        if data.get("subtype") != "init":
            return StreamEvent(EventKind.OTHER, line, data)
        tools = data.get("tools")
        count = len(tools) if isinstance(tools, list) else 0
        return StreamEvent(EventKind.INIT, line, data, [f"[INIT] model={data.get('model', '?')} tools={count}"])
    if kind == "assistant":
        return StreamEvent(EventKind.ASSISTANT, line, data, _assistant_lines(data.get("message")))
    if kind == "user":
        if "tool_use_result" not in data:
            return StreamEvent(EventKind.OTHER, line, data)
        return StreamEvent(
            EventKind.TOOL_RESULT, line, data, [f"[RESULT] {_result_size(data['tool_use_result'])} bytes"]
        )
    if kind == "result":
        event = StreamEvent(EventKind.RESULT, line, data)
        cost = event.cost_usd or 0.0
        turns = event.num_turns if event.num_turns is not None else "?"
        event.lines.append(f"[DONE] {data.get('subtype', '?')} turns={turns} cost=${cost:.4f}")
        return event
    return StreamEvent(EventKind.RAW, line, data, [f"[RAW] {stripped[:TEXT_LIMIT]}"])


def condense_line(line: str) -> list[str]:
    return parse_stream_line(line).lines

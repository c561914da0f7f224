"""Recognise tool calls that a backend wrote out as plain text.

Backends without a structured tool-calling mode are instructed (see
:mod:`palaver.adapters`) to reply with a JSON object when they want a
tool run.  The assembled text of such a turn is decoded here.

Three shapes are recognised, in priority order::

    {"tool_calls": [{"id": "...", "function": {"name": "...", "arguments": ...}}]}
    {"name": "...", "arguments": {...}}
    {"function": {"name": "...", "arguments": {...}}}
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from palaver.streaming import ToolCall, arguments_to_text, new_call_id

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*\n?([\s\S]*?)\n?```$")


@dataclass
class ExtractedToolCalls:
    tool_calls: list[ToolCall]
    hide_content: bool = True


def strip_code_fence(text: str) -> str:
    text = text.strip()
    match = _FENCE.match(text)
    if match:
        return match.group(1).strip()
    return text


def _call_from_entry(entry: Any) -> ToolCall | None:
    if not isinstance(entry, dict):
        return None
    function = entry.get("function")
    if isinstance(function, dict) and function.get("name"):
        name = function["name"]
        arguments = function.get("arguments", entry.get("arguments"))
    else:
        name = entry.get("name")
        arguments = entry.get("arguments")
    if not isinstance(name, str) or not name:
        return None
    return ToolCall(
        id=entry.get("id") or new_call_id(),
        name=name,
        arguments=arguments_to_text(arguments if arguments is not None else {}),
    )


def tool_calls_from_json(parsed: Any) -> list[ToolCall] | None:
    """Detect a tool-call shape in an already parsed JSON value."""
    if not isinstance(parsed, dict):
        return None

    entries = parsed.get("tool_calls", parsed.get("toolCalls"))
    if isinstance(entries, list) and entries:
        calls = [c for c in (_call_from_entry(e) for e in entries) if c is not None]
        return calls or None

    name = parsed.get("name")
    if isinstance(name, str) and name and "arguments" in parsed:
        return [ToolCall(
            id=new_call_id(),
            name=name,
            arguments=arguments_to_text(parsed["arguments"]),
        )]

    function = parsed.get("function")
    if isinstance(function, dict) and isinstance(function.get("name"), str) and function["name"]:
        return [ToolCall(
            id=new_call_id(),
            name=function["name"],
            arguments=arguments_to_text(function.get("arguments") or {}),
        )]

    return None


def parse_tool_call_text(text: str) -> list[ToolCall] | None:
    """Parse ``text`` (optionally fenced) and detect a tool-call shape."""
    try:
        parsed = json.loads(strip_code_fence(text))
    except json.JSONDecodeError:
        return None
    return tool_calls_from_json(parsed)


def extract_tool_calls(text: str | None) -> ExtractedToolCalls | None:
    """Return the tool calls encoded in ``text``, or ``None`` for prose."""
    if not text or not text.strip():
        return None
    calls = parse_tool_call_text(text)
    if calls is None:
        return None
    logger.info(f"Extracted {len(calls)} tool call(s) from text reply")
    return ExtractedToolCalls(tool_calls=calls)

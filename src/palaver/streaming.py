"""Streaming primitives for backend responses.

Backends stream :class:`StreamChunk` records.  The
:class:`ToolCallAccumulator` reassembles tool calls whose arguments
arrive in fragments across multiple chunks.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any


def new_call_id() -> str:
    """Return a fresh tool-call identifier."""
    return f"call_{uuid.uuid4().hex[:24]}"


def arguments_to_text(arguments: Any) -> str:
    """Tool arguments always travel as text, whatever shape they arrived in."""
    if arguments is None:
        return ""
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments)


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class StreamChunk:
    """Normalised streaming chunk from any backend.

    ``done`` marks the terminal sentinel; a done chunk carries no delta.
    """

    content_delta: str | None = None
    tool_call_fragments: list[ToolCallFragment] | None = None
    finish_reason: str | None = None
    done: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> StreamChunk:
        """Build a chunk from one decoded stream payload.

        Understands the OpenAI chunk shape (``choices[0].delta``) and the
        Ollama shape (``message`` plus ``done``).
        """
        choices = payload.get("choices")
        if choices:
            choice = choices[0] or {}
            delta = choice.get("delta") or {}
            return cls(
                content_delta=delta.get("content") or None,
                tool_call_fragments=_fragments(delta.get("tool_calls")),
                finish_reason=choice.get("finish_reason"),
            )

        message = payload.get("message")
        if isinstance(message, dict):
            return cls(
                content_delta=message.get("content") or None,
                tool_call_fragments=_fragments(message.get("tool_calls")),
                finish_reason="stop" if payload.get("done") else None,
            )

        return cls()


def _fragments(raw_calls: list | None) -> list[ToolCallFragment] | None:
    if not raw_calls:
        return None
    fragments = []
    for position, raw in enumerate(raw_calls):
        if not isinstance(raw, dict):
            continue
        function = raw.get("function") or {}
        arguments = function.get("arguments")
        index = raw.get("index")
        fragments.append(ToolCallFragment(
            index=index if isinstance(index, int) else position,
            call_id=raw.get("id") or None,
            name=function.get("name") or None,
            arguments_delta=arguments_to_text(arguments) if arguments is not None else None,
        ))
    return fragments or None


@dataclass
class ToolCall:
    """A resolved tool call, as stored in history and sent to the host."""

    id: str = ""
    name: str = ""
    arguments: str = ""

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    Slots are keyed by the fragment index, so calls streamed in parallel
    may interleave freely.  Within a slot, ``name`` is set once,
    ``arguments`` is appended and ``id`` takes the latest non-empty value.
    """

    def __init__(self) -> None:
        self._pending: dict[int, ToolCall] = {}

    def feed(self, fragment: ToolCallFragment) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = ToolCall()
        tc = self._pending[fragment.index]
        if fragment.call_id:
            tc.id = fragment.call_id
        if fragment.name and not tc.name:
            tc.name = fragment.name
        if fragment.arguments_delta is not None:
            tc.arguments += fragment.arguments_delta

    def feed_chunk(self, chunk: StreamChunk) -> None:
        for fragment in chunk.tool_call_fragments or []:
            self.feed(fragment)

    def has_named_call(self) -> bool:
        return any(tc.name for tc in self._pending.values())

    def finalize(self) -> list[ToolCall]:
        """Return completed (named) tool calls in index order."""
        calls = []
        for index in sorted(self._pending):
            tc = self._pending[index]
            if not tc.name:
                continue
            if not tc.id:
                tc.id = new_call_id()
            calls.append(tc)
        return calls


@dataclass
class TurnBuffer:
    """Text and tool-call state of the assistant turn being streamed."""

    text: str = ""
    accumulator: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    finish_reason: str | None = None

    def feed(self, chunk: StreamChunk) -> str | None:
        """Fold a chunk in; return the visible text delta, if any."""
        if chunk.finish_reason:
            self.finish_reason = chunk.finish_reason
        self.accumulator.feed_chunk(chunk)
        if chunk.content_delta:
            self.text += chunk.content_delta
            return chunk.content_delta
        return None

"""Events emitted by a conversation while it runs."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class StreamEvent:
    """Base for all conversation events."""


@dataclass
class TextDeltaEvent(StreamEvent):
    """Visible text fragment of the assistant turn being streamed."""

    content: str = ""


@dataclass
class ItemEvent(StreamEvent):
    """A discrete step of the conversation.

    ``name`` values: ``"message"``, ``"tool_call"``, ``"tool_result"``,
    ``"queued"``.
    """

    name: str = ""
    data: dict = field(default_factory=dict)


@dataclass
class StateChangeEvent(StreamEvent):
    previous: str = ""
    current: str = ""


@dataclass
class ErrorEvent(StreamEvent):
    """An error surfaced to the user as an inline transcript entry."""

    message: str = ""

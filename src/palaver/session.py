import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from palaver.message import Message, MessageRole


class _Unresolved:
    def __repr__(self) -> str:
        return "UNRESOLVED"


UNRESOLVED: Any = _Unresolved()


@dataclass
class PendingToolExecution:
    """A dispatched tool call waiting for the host's answer."""

    tool_call_id: str
    name: str
    arguments: str
    result: Any = UNRESOLVED
    requested_at: float = field(default_factory=time.time)
    resolved_at: float | None = None

    @property
    def resolved(self) -> bool:
        return self.result is not UNRESOLVED

    def resolve(self, result: Any) -> None:
        if self.resolved:
            raise ValueError(f"Tool call {self.tool_call_id} already resolved")
        self.result = result
        self.resolved_at = time.time()


@dataclass
class QueuedUserMessage:
    """User input that arrived while the conversation was busy."""

    text: str
    editable: bool = True


@dataclass
class TranscriptEntry:
    """One line of what the user sees; errors never reach the model."""

    role: MessageRole
    text: str
    is_error: bool = False


class ConversationSession(BaseModel):
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    history: list[Message] = Field(default_factory=list)
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    queued: QueuedUserMessage | None = None
    pending: dict[str, PendingToolExecution] = Field(default_factory=dict)
    context: dict[str, Any] | None = None

    def unresolved(self) -> list[PendingToolExecution]:
        return [p for p in self.pending.values() if not p.resolved]

    def last_assistant_text(self) -> str:
        for entry in reversed(self.transcript):
            if entry.role == MessageRole.ASSISTANT and not entry.is_error:
                return entry.text
        return ""

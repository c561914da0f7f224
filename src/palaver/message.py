from enum import Enum
from pydantic import BaseModel, field_serializer, field_validator

from palaver.streaming import ToolCall


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


def _tool_call_from_wire(data: dict) -> ToolCall:
    function = data.get("function") or {}
    return ToolCall(
        id=data.get("id", ""),
        name=function.get("name", data.get("name", "")),
        arguments=function.get("arguments", data.get("arguments", "")),
    )


class Message(BaseModel):
    role: MessageRole
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    @field_validator("tool_calls", mode="before")
    @classmethod
    def parse_tool_calls(cls, tool_calls):
        # accept the wire shape produced by serialize_tool_calls
        if not tool_calls:
            return tool_calls
        return [_tool_call_from_wire(t) if isinstance(t, dict) else t for t in tool_calls]

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @field_serializer("tool_calls")
    def serialize_tool_calls(self, tool_calls: list[ToolCall] | None) -> list[dict] | None:
        if tool_calls is None:
            return None
        return [t.to_wire() for t in tool_calls]

    def to_wire(self) -> dict:
        """Chat-completions shape of this message; absent fields omitted."""
        data = self.model_dump(exclude_none=True)
        if "content" not in data:
            data["content"] = None
        return data


def user_message(text: str) -> Message:
    return Message(role=MessageRole.USER, content=text)


def assistant_message(text: str | None, tool_calls: list[ToolCall] | None = None) -> Message:
    return Message(role=MessageRole.ASSISTANT, content=text, tool_calls=tool_calls or None)


def tool_message(tool_call_id: str, content: str) -> Message:
    return Message(role=MessageRole.TOOL, content=content, tool_call_id=tool_call_id)

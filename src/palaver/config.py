from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_settings() -> EngineSettings:
    return EngineSettings()


class EngineSettings(BaseSettings):
    """Process-wide settings, read from ``PALAVER_*`` environment variables."""

    base_url: str = "http://127.0.0.1:11434/v1"
    api_key: str = "ollama"
    model: str | None = None
    request_timeout: float = 120.0
    text_tool_models: list[str] = Field(default_factory=list)

    log_level: str = "INFO"
    log_file: str | None = None

    model_config = SettingsConfigDict(env_prefix="palaver_", case_sensitive=False, frozen=True)


def normalize_tool_definition(tool: dict) -> dict:
    """Accept nested ``{type, function: {...}}`` or flat ``{name, ...}`` tools."""
    function = tool.get("function") if isinstance(tool.get("function"), dict) else tool
    if not function.get("name"):
        raise ValueError("tool definition is missing a name")
    return {
        "type": "function",
        "function": {
            "name": function["name"],
            "description": function.get("description") or "",
            "parameters": function.get("parameters") or {"type": "object", "properties": {}},
        },
    }


class WidgetConfig(BaseModel):
    """Configuration the host page supplies for one embedded conversation.

    Args:
        model: Backend model id; ``None`` lets the backend choose.
        system: Custom system prompt.
        tools: Tool definitions, flat or nested; stored nested.
        context: Page context (e.g. form data) shown to the model.
        stream: Use the streaming endpoint (default) or one-shot replies.
        headers: Extra request headers for the backend.
        welcome_message: Shown when the transcript is still empty.
    """

    model: str | None = None
    system: str | None = None
    tools: list[dict] = Field(default_factory=list)
    context: dict[str, Any] | None = None
    stream: bool = True
    headers: dict[str, str] = Field(default_factory=dict)
    welcome_message: str | None = None

    @field_validator("tools", mode="before")
    @classmethod
    def _normalize_tools(cls, tools):
        if tools is None:
            return []
        return [normalize_tool_definition(t) for t in tools]

    def tool_names(self) -> list[str]:
        return [t["function"]["name"] for t in self.tools]

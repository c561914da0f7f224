"""The host-page side of the channel.

A :class:`ToolHost` owns the host :class:`~palaver.bridge.Endpoint`,
executes tool-call requests against registered :class:`Tool` objects and
answers each with a ``tool_result`` carrying the same correlation id.
"""

import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from palaver.bridge import (
    AssistantResponseMessage,
    ConfigMessage,
    Endpoint,
    InsertMessage,
    SendMessageRequest,
    StateUpdateMessage,
    ToolCallMessage,
    ToolResultMessage,
)
from palaver.exceptions import ToolExecutionError
from palaver.instrumentation import record_error, tool_span
from palaver.tools import Tool

logger = logging.getLogger(__name__)


class ToolHost:
    """Executes tools on behalf of the widget.

    Args:
        endpoint: Host end of the channel.
        tools: Tools to expose; more can be added with :meth:`register`.
        state: Page state handed to tools that take a ``context`` argument.
        on_reply: Called with each assistant reply the widget reports.
        on_insert: Called when the widget asks to insert text into the page.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        tools: list[Tool] | None = None,
        state: dict[str, Any] | None = None,
        on_reply: Callable[[AssistantResponseMessage], None] | None = None,
        on_insert: Callable[[InsertMessage], None] | None = None,
    ):
        self.endpoint = endpoint
        self.tools: dict[str, Tool] = {}
        self.state = dict(state or {})
        self.replies: list[AssistantResponseMessage] = []
        self.on_reply = on_reply
        self.on_insert = on_insert
        for t in tools or []:
            self.register(t)
        endpoint.on_receive(self._route)

    def register(self, t: Tool) -> None:
        self.tools[t.name] = t

    def tool_definitions(self) -> list[dict]:
        return [t.model_dump() for t in self.tools.values()]

    def configure(self, **config: Any) -> None:
        """Send widget configuration; registered tools are included."""
        config.setdefault("tools", self.tool_definitions())
        self.endpoint.send(ConfigMessage(config=config))

    def send_message(self, text: str) -> None:
        self.endpoint.send(SendMessageRequest(content=text))

    def update_state(self, state: dict[str, Any]) -> None:
        self.state = dict(state)
        self.endpoint.send(StateUpdateMessage(state={"formData": self.state}))

    async def execute(self, request: ToolCallMessage) -> Any:
        """Run one tool call; failures become ``{"error": ...}`` results."""
        t = self.tools.get(request.tool)
        if t is None:
            logger.warning(f"Unknown tool requested: {request.tool}")
            return {"error": f"Unknown tool: {request.tool}"}

        kwargs = dict(request.payload)
        if t.wants_context:
            kwargs["context"] = self.state
        async with tool_span(request.tool, request.tool_call_id) as span:
            try:
                result = await t(**kwargs)
            except ToolExecutionError as e:
                record_error(span, e)
                logger.warning(f"Tool {request.tool} reported: {e}")
                return {"error": str(e)}
            except Exception as e:
                record_error(span, e)
                logger.exception(f"Tool {request.tool} failed")
                return {"error": f"{type(e).__name__}: {e}"}
        return result.output

    async def _route(self, message: BaseModel) -> None:
        if isinstance(message, ToolCallMessage):
            result = await self.execute(message)
            self.endpoint.send(ToolResultMessage(
                tool_call_id=message.tool_call_id, result=result,
            ))
        elif isinstance(message, AssistantResponseMessage):
            self.replies.append(message)
            if self.on_reply is not None:
                self.on_reply(message)
        elif isinstance(message, InsertMessage):
            if self.on_insert is not None:
                self.on_insert(message)
        else:
            logger.debug(f"Host ignoring {message.type} message")

"""Typed message channel between the conversation and its host.

The widget and the host page never share objects: each side owns an
:class:`Endpoint` that can only ``send`` messages and register an
``on_receive`` handler.  :func:`open_channel` connects two endpoints.

Messages from the host are untrusted; :func:`parse_channel_message`
validates raw dicts before they reach the conversation.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

if TYPE_CHECKING:
    from palaver.conversation import Conversation

logger = logging.getLogger(__name__)


class ToolCallMessage(BaseModel):
    """Widget -> host: execute ``tool`` with ``payload``."""

    type: Literal["tool_call"] = "tool_call"
    tool_call_id: str
    tool: str
    payload: dict[str, Any] = Field(default_factory=dict)


class ToolResultMessage(BaseModel):
    """Host -> widget: outcome of a tool call.

    ``result`` is ``{"success": true, "message": ...}`` for a final,
    displayable outcome, ``{"error": ...}`` for a failure, or any other
    JSON value as raw data for the model.
    """

    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str | None = None
    result: Any = None


class AssistantResponseMessage(BaseModel):
    type: Literal["assistant_response"] = "assistant_response"
    message: str
    had_tool_calls: bool = False


class UserMessageNotice(BaseModel):
    type: Literal["user_message"] = "user_message"
    message: str


class SendMessageRequest(BaseModel):
    """Host -> widget: send ``content`` as if the user typed it."""

    type: Literal["send_message"] = "send_message"
    content: str


class StateUpdateMessage(BaseModel):
    type: Literal["state_update"] = "state_update"
    state: dict[str, Any] = Field(default_factory=dict)


class ConfigMessage(BaseModel):
    type: Literal["config"] = "config"
    config: dict[str, Any] = Field(default_factory=dict)


class InsertMessage(BaseModel):
    """Widget -> host: insert the last assistant reply into the page."""

    type: Literal["insert"] = "insert"
    text: str
    close: bool = True


ChannelMessage = Annotated[
    Union[
        ToolCallMessage,
        ToolResultMessage,
        AssistantResponseMessage,
        UserMessageNotice,
        SendMessageRequest,
        StateUpdateMessage,
        ConfigMessage,
        InsertMessage,
    ],
    Field(discriminator="type"),
]

_channel_adapter: TypeAdapter = TypeAdapter(ChannelMessage)

Handler = Callable[[Any], Awaitable[None] | None]


def parse_channel_message(raw: Any) -> BaseModel | None:
    """Validate an untrusted message; ``None`` when it is unusable."""
    if isinstance(raw, BaseModel):
        return raw
    if not isinstance(raw, dict):
        logger.warning(f"Ignoring non-object channel message: {raw!r}")
        return None
    try:
        return _channel_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid channel message: {e}")
        return None


class Endpoint:
    """One side of a channel.

    Sent messages land in the peer's inbox.  ``serve()`` (or ``drain()``)
    hands them to the registered receive handler in arrival order; async
    handlers run as separate tasks so a long turn never blocks delivery.
    """

    def __init__(self, name: str):
        self.name = name
        self._peer: Endpoint | None = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._handler: Handler | None = None
        self._tasks: set[asyncio.Task] = set()

    def send(self, message: Any) -> None:
        if self._peer is None:
            raise RuntimeError(f"Endpoint {self.name} is not connected")
        self._peer._inbox.put_nowait(message)

    def on_receive(self, handler: Handler) -> None:
        self._handler = handler

    async def _deliver(self, raw: Any) -> None:
        message = parse_channel_message(raw)
        if message is None or self._handler is None:
            return
        result = self._handler(message)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Handler on {self.name} raised: {task.exception()!r}"
            )

    async def serve(self) -> None:
        """Deliver messages forever; cancel the task to stop."""
        while True:
            raw = await self._inbox.get()
            await self._deliver(raw)

    async def drain(self) -> None:
        """Deliver everything queued, and wait for the handlers it started."""
        while not self._inbox.empty() or self._tasks:
            while not self._inbox.empty():
                await self._deliver(self._inbox.get_nowait())
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
                self._tasks = {t for t in self._tasks if not t.done()}


def open_channel(
        widget_name: str = "widget",
        host_name: str = "host",
) -> tuple[Endpoint, Endpoint]:
    """Create two connected endpoints: ``(widget, host)``."""
    widget, host = Endpoint(widget_name), Endpoint(host_name)
    widget._peer, host._peer = host, widget
    return widget, host


class ToolDispatchBridge:
    """Widget side of the tool handshake.

    Outbound: tool-call requests and reply notifications.  Inbound
    messages are routed to the attached conversation.
    """

    def __init__(self, endpoint: Endpoint):
        self.endpoint = endpoint
        self._conversation: Conversation | None = None
        endpoint.on_receive(self._route)

    def attach(self, conversation: "Conversation") -> None:
        self._conversation = conversation

    def dispatch(self, tool_call_id: str, name: str, arguments: dict) -> None:
        logger.info(f"Dispatching {name} ({tool_call_id}) to host")
        self.endpoint.send(ToolCallMessage(
            tool_call_id=tool_call_id, tool=name, payload=arguments,
        ))

    def notify_reply(self, text: str, had_tool_calls: bool) -> None:
        self.endpoint.send(AssistantResponseMessage(
            message=text, had_tool_calls=had_tool_calls,
        ))

    def notify_user_message(self, text: str) -> None:
        self.endpoint.send(UserMessageNotice(message=text))

    def insert(self, text: str, close: bool = True) -> None:
        self.endpoint.send(InsertMessage(text=text, close=close))

    async def _route(self, message: BaseModel) -> None:
        conversation = self._conversation
        if conversation is None:
            logger.warning(f"No conversation attached, dropping {message.type}")
            return
        if isinstance(message, ToolResultMessage):
            await conversation.handle_tool_result(message.tool_call_id, message.result)
        elif isinstance(message, SendMessageRequest):
            await conversation.submit(message.content, editable=False)
        elif isinstance(message, StateUpdateMessage):
            conversation.update_context(message.state)
        elif isinstance(message, ConfigMessage):
            conversation.apply_config(message.config)
        else:
            logger.debug(f"Widget ignoring {message.type} message")

"""The conversation state machine.

A :class:`Conversation` owns one :class:`ConversationSession` and moves
it through::

    IDLE -> SENDING -> STREAMING -> IDLE
                                 -> TOOL_CALLS_PENDING -> AWAITING_TOOL_RESULTS
    AWAITING_TOOL_RESULTS -> SENDING (raw tool data needs the model)
                          -> IDLE    (final results, or a correlation error)

At most one backend request is in flight.  User input that arrives while
the conversation is busy is kept in a single queue slot (last write
wins) and sent as soon as the conversation returns to ``IDLE``.

All mutation happens on the event loop between awaits, so no locking is
needed.  There is no timeout on the tool handshake: a host that never
answers leaves the conversation waiting.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from enum import Enum
from typing import Any

from palaver.adapters import AdapterRegistry, ModelAdapter, default_registry
from palaver.bridge import ToolDispatchBridge
from palaver.config import EngineSettings, WidgetConfig
from palaver.events import (
    ErrorEvent,
    ItemEvent,
    StateChangeEvent,
    StreamEvent,
    TextDeltaEvent,
)
from palaver.exceptions import CorrelationError, InvalidTransitionError, TransportError
from palaver.extraction import extract_tool_calls
from palaver.instrumentation import completion_span, record_error, record_turn
from palaver.message import (
    Message,
    MessageRole,
    assistant_message,
    tool_message,
    user_message,
)
from palaver.provider import ModelProvider, provider_from_settings
from palaver.session import (
    ConversationSession,
    PendingToolExecution,
    QueuedUserMessage,
    TranscriptEntry,
)
from palaver.streaming import StreamChunk, ToolCall, TurnBuffer, new_call_id

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
NO_RESPONSE = "(no response)"

TOOL_USAGE_GUIDELINES = """=== TOOL USAGE GUIDELINES ===

You have access to tools. Use them wisely:

**Default behavior:** Respond naturally with conversation. Only use tools when truly necessary.

**Do NOT use tools for:**
- Simple greetings, pleasantries, or casual conversation
- Questions you can answer from information already provided in the context above
- General knowledge questions within your training
- Clarifications or follow-up conversation

**DO use tools when:**
- User explicitly requests current/live data that isn't in the context above
- User asks you to perform an action (update, change, modify, set, etc.)
- You genuinely need information not available in the current context

**After calling a tool:** Use the result to answer the user's question. Do not call the same tool repeatedly."""


class ConversationState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    AWAITING_TOOL_RESULTS = "awaiting_tool_results"


_TRANSITIONS: dict[ConversationState, set[ConversationState]] = {
    ConversationState.IDLE: {ConversationState.SENDING},
    ConversationState.SENDING: {ConversationState.STREAMING, ConversationState.IDLE},
    ConversationState.STREAMING: {
        ConversationState.TOOL_CALLS_PENDING,
        ConversationState.IDLE,
    },
    ConversationState.TOOL_CALLS_PENDING: {
        ConversationState.AWAITING_TOOL_RESULTS,
        ConversationState.IDLE,
    },
    ConversationState.AWAITING_TOOL_RESULTS: {
        ConversationState.SENDING,
        ConversationState.IDLE,
    },
}


def is_final_result(result: Any) -> bool:
    """``{"success": true, "message": ...}`` needs no further model turn."""
    return isinstance(result, dict) and bool(result.get("success")) and bool(result.get("message"))


def is_error_result(result: Any) -> bool:
    return isinstance(result, dict) and bool(result.get("error"))


def _response_as_chunk(response: dict) -> StreamChunk:
    choices = response.get("choices")
    if choices:
        choice = choices[0] or {}
        return StreamChunk.from_payload({"choices": [{
            "delta": choice.get("message") or {},
            "finish_reason": choice.get("finish_reason"),
        }]})
    if isinstance(response.get("message"), dict):
        return StreamChunk.from_payload(response)
    raise TransportError("Invalid response format: missing choices array")


class Conversation:
    """One embedded conversation: history, queue and tool handshake.

    Args:
        provider: Backend transport.
        bridge: Channel to the host that executes tools.  Without one,
            tool calls are recorded but never answered.
        config: Host-supplied widget configuration.
        adapters: Registry choosing the backend adapter per request.
        request_timeout: Seconds before a backend request is abandoned.
        session: Existing session to continue; a fresh one by default.
    """

    def __init__(
        self,
        provider: ModelProvider,
        bridge: ToolDispatchBridge | None = None,
        config: WidgetConfig | None = None,
        adapters: AdapterRegistry | None = None,
        request_timeout: float = 120.0,
        session: ConversationSession | None = None,
    ):
        self.provider = provider
        self.bridge = bridge
        self.config = config or WidgetConfig()
        self.adapters = adapters or default_registry()
        self.request_timeout = request_timeout
        self.session = session or ConversationSession()

        self._state = ConversationState.IDLE
        self._listeners: list[Callable[[StreamEvent], None]] = []
        self._after_tools = False
        self._needs_model = False
        self._final_messages: list[str] = []

        if self.config.context is not None:
            self.session.context = dict(self.config.context)
        self._welcome()
        if bridge is not None:
            bridge.attach(self)

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        bridge: ToolDispatchBridge | None = None,
        config: WidgetConfig | None = None,
    ) -> Conversation:
        config = config or WidgetConfig()
        if config.model is None and settings.model:
            config = config.model_copy(update={"model": settings.model})
        return cls(
            provider=provider_from_settings(settings, headers=config.headers),
            bridge=bridge,
            config=config,
            adapters=default_registry(settings.text_tool_models),
            request_timeout=settings.request_timeout,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state is not ConversationState.IDLE

    @property
    def history(self) -> list[Message]:
        return self.session.history

    @property
    def transcript(self) -> list[TranscriptEntry]:
        return self.session.transcript

    @property
    def queued(self) -> QueuedUserMessage | None:
        return self.session.queued

    def _transition(self, new: ConversationState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f"Cannot move from {self._state.value} to {new.value}"
            )
        previous, self._state = self._state, new
        logger.debug(f"Conversation {self.session.session_id}: {previous.value} -> {new.value}")
        self._emit(StateChangeEvent(previous=previous.value, current=new.value))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[[StreamEvent], None]) -> Callable[[], None]:
        """Register ``listener`` for every event; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield events as they happen, until the consumer stops."""
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()

    def _emit(self, event: StreamEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def _surface_error(self, message: str) -> None:
        logger.error(f"Conversation {self.session.session_id}: {message}")
        self.session.transcript.append(TranscriptEntry(
            role=MessageRole.SYSTEM, text=f"Error: {message}", is_error=True,
        ))
        self._emit(ErrorEvent(message=message))

    def _fail(self, message: str) -> None:
        self._surface_error(message)
        if self._state is not ConversationState.IDLE:
            self._transition(ConversationState.IDLE)

    # ------------------------------------------------------------------
    # Host configuration
    # ------------------------------------------------------------------

    def _welcome(self) -> None:
        if self.config.welcome_message and not self.session.transcript:
            self.session.transcript.append(TranscriptEntry(
                role=MessageRole.SYSTEM, text=self.config.welcome_message,
            ))

    def apply_config(self, config: WidgetConfig | dict) -> None:
        if isinstance(config, WidgetConfig):
            config = config.model_dump(exclude_unset=True)
        merged = {**self.config.model_dump(), **config}
        self.config = WidgetConfig.model_validate(merged)
        if "context" in config and config["context"] is not None:
            self.session.context = dict(config["context"])
        self._welcome()
        logger.info(f"Applied config with {len(self.config.tools)} tool(s)")

    def update_context(self, state: dict) -> None:
        """Replace the page context shown to the model."""
        form_data = state.get("formData") if "formData" in state else state
        self.session.context = dict(form_data) if form_data else None

    def insert_last_reply(self) -> bool:
        """Ask the host to insert the latest assistant reply into the page."""
        text = self.session.last_assistant_text()
        if not text.strip() or self.bridge is None:
            return False
        self.bridge.insert(text)
        return True

    # ------------------------------------------------------------------
    # User input
    # ------------------------------------------------------------------

    async def submit(self, text: str, editable: bool = True) -> None:
        """Send ``text`` as the user, or queue it while a turn is running.

        Messages sent on the user's behalf by the host pass
        ``editable=False`` so the user cannot rewrite them while queued.
        """
        text = text.strip()
        if not text:
            return
        if self.busy:
            self._queue(text, editable)
            return
        self._start_user_turn(text)
        await self._run()

    def _queue(self, text: str, editable: bool = True) -> None:
        replaced = self.session.queued is not None
        self.session.queued = QueuedUserMessage(text=text, editable=editable)
        logger.info(f"Conversation busy ({self._state.value}), queued message")
        self._emit(ItemEvent(name="queued", data={"text": text, "replaced": replaced}))

    def edit_queued(self, text: str) -> bool:
        """Replace the queued message text; blank text withdraws it."""
        queued = self.session.queued
        if queued is None or not queued.editable:
            return False
        text = text.strip()
        if not text:
            self.withdraw_queued()
            return True
        queued.text = text
        return True

    def withdraw_queued(self) -> QueuedUserMessage | None:
        queued, self.session.queued = self.session.queued, None
        return queued

    def _discard_queued(self) -> None:
        queued = self.withdraw_queued()
        if queued is None:
            return
        logger.warning("Discarding queued message after a failed turn")
        self._emit(ItemEvent(name="queue_discarded", data={"text": queued.text}))

    def _start_user_turn(self, text: str) -> None:
        self.session.history.append(user_message(text))
        self.session.transcript.append(TranscriptEntry(role=MessageRole.USER, text=text))
        self._after_tools = False
        if self.bridge is not None:
            self.bridge.notify_user_message(text)

    async def _run(self) -> None:
        """Run model turns until the conversation idles with nothing queued
        or waits on the host."""
        while True:
            await self._turn()
            if self._state is not ConversationState.IDLE:
                return
            queued = self.withdraw_queued()
            if queued is None:
                return
            logger.info("Sending queued message")
            self._start_user_turn(queued.text)

    async def _drain_queue(self) -> None:
        queued = self.withdraw_queued()
        if queued is None:
            return
        self._start_user_turn(queued.text)
        await self._run()

    # ------------------------------------------------------------------
    # Model turns
    # ------------------------------------------------------------------

    def system_prompt(self) -> str:
        prompt = self.config.system or DEFAULT_SYSTEM_PROMPT
        if self.session.context:
            prompt += f"\n\nCurrent page context:\n{json.dumps(self.session.context, indent=2)}"
        if self.config.tools:
            prompt += f"\n\n{TOOL_USAGE_GUIDELINES}"
        return prompt

    def request_messages(self) -> list[dict]:
        """System prompt plus history, in wire format.

        Tool calls that never got an answer (an abandoned turn) are left
        out of the request so the backend sees a consistent exchange;
        history itself keeps them.
        """
        answered = {
            m.tool_call_id for m in self.session.history
            if m.role == MessageRole.TOOL and m.tool_call_id
        }
        messages = [{"role": "system", "content": self.system_prompt()}]
        for message in self.session.history:
            wire = message.to_wire()
            if message.tool_calls:
                calls = [tc.to_wire() for tc in message.tool_calls if tc.id in answered]
                if calls:
                    wire["tool_calls"] = calls
                else:
                    wire.pop("tool_calls")
                    wire["content"] = message.content or ""
            messages.append(wire)
        return messages

    async def _turn(self) -> None:
        self._transition(ConversationState.SENDING)
        tools = self.config.tools or None
        adapter = self.adapters.resolve(self.config.model, has_tools=bool(tools))
        messages, tools = adapter.preprocess(self.request_messages(), tools)
        buffer = TurnBuffer()

        system = type(self.provider).__name__
        async with completion_span(system, self.config.model, self.session.session_id) as span:
            try:
                async with asyncio.timeout(self.request_timeout):
                    await self._request(adapter, messages, tools, buffer)
            except TimeoutError as e:
                record_error(span, e)
                self._fail(f"Request timed out after {self.request_timeout:g}s")
                return
            except TransportError as e:
                record_error(span, e)
                self._fail(str(e))
                return
            except Exception as e:
                record_error(span, e)
                self._fail("Unexpected error")
                self._discard_queued()
                raise
            calls, hide_text = self._collect_calls(buffer)
            record_turn(span, buffer.finish_reason, len(calls))

        self._complete_turn(buffer, calls, hide_text)

    async def _request(
        self,
        adapter: ModelAdapter,
        messages: list[dict],
        tools: list[dict] | None,
        buffer: TurnBuffer,
    ) -> None:
        model = self.config.model
        if not self.config.stream:
            response = adapter.normalize_response(
                await self.provider.complete(model, messages, tools)
            )
            self._transition(ConversationState.STREAMING)
            buffer.feed(_response_as_chunk(response))
            return

        async with aclosing(self.provider.stream(model, messages, tools)) as stream:
            async for payload in stream:
                if self._state is ConversationState.SENDING:
                    self._transition(ConversationState.STREAMING)
                chunk = StreamChunk.from_payload(adapter.normalize_chunk(payload))
                delta = buffer.feed(chunk)
                if delta:
                    self._emit(TextDeltaEvent(content=delta))

    @staticmethod
    def _collect_calls(buffer: TurnBuffer) -> tuple[list[ToolCall], bool]:
        """Return the turn's tool calls and whether its text must be hidden."""
        # Structured calls take precedence over JSON-shaped text
        if buffer.accumulator.has_named_call():
            return buffer.accumulator.finalize(), True
        extracted = extract_tool_calls(buffer.text)
        if extracted is None:
            return [], False
        return extracted.tool_calls, extracted.hide_content

    def _complete_turn(
        self, buffer: TurnBuffer, calls: list[ToolCall], hide_text: bool = False,
    ) -> None:
        if self._state is ConversationState.SENDING:
            self._transition(ConversationState.STREAMING)
        if not calls:
            self._finish_reply(buffer.text)
            return
        if hide_text and buffer.text:
            # Deltas already went out; listeners should take them back
            self._emit(ItemEvent(name="hide_text", data={"text": buffer.text}))
        self._begin_tool_calls(buffer.text, calls)

    def _finish_reply(self, text: str) -> None:
        content = text if text.strip() else NO_RESPONSE
        self._reply(content)
        self._transition(ConversationState.IDLE)

    def _reply(self, content: str) -> None:
        had_tool_calls = self._after_tools
        self.session.history.append(assistant_message(content))
        self.session.transcript.append(TranscriptEntry(role=MessageRole.ASSISTANT, text=content))
        self._emit(ItemEvent(name="message", data={
            "role": "assistant", "content": content, "had_tool_calls": had_tool_calls,
        }))
        if self.bridge is not None:
            self.bridge.notify_reply(content, had_tool_calls=had_tool_calls)

    # ------------------------------------------------------------------
    # Tool handshake
    # ------------------------------------------------------------------

    def _assign_call_ids(self, calls: list[ToolCall]) -> None:
        """Give every call an id no other call in history uses.

        Text-tool models tend to copy the placeholder id from their
        instructions, so repeated ids are common.
        """
        used = {
            tc.id for m in self.session.history for tc in (m.tool_calls or [])
        }
        for call in calls:
            if not call.id or call.id in used:
                previous, call.id = call.id, new_call_id()
                logger.debug(f"Renamed tool call id {previous!r} to {call.id}")
            used.add(call.id)

    def _begin_tool_calls(self, text: str, calls: list[ToolCall]) -> None:
        self._assign_call_ids(calls)
        # Keep the calls even though the text is not shown to the user
        self.session.history.append(assistant_message(text or None, calls))
        self._transition(ConversationState.TOOL_CALLS_PENDING)
        logger.info(f"Model requested {len(calls)} tool call(s)")

        self.session.pending = {}
        self._needs_model = False
        self._final_messages = []
        ready: list[tuple[ToolCall, dict]] = []
        for call in calls:
            try:
                arguments = json.loads(call.arguments) if call.arguments.strip() else {}
            except json.JSONDecodeError as e:
                self._abandon_call(call, f"invalid arguments: {e}")
                continue
            if not isinstance(arguments, dict):
                self._abandon_call(call, "arguments must be a JSON object")
                continue
            self.session.pending[call.id] = PendingToolExecution(
                tool_call_id=call.id, name=call.name, arguments=call.arguments,
            )
            ready.append((call, arguments))

        if not ready:
            self._transition(ConversationState.IDLE)
            return

        self._transition(ConversationState.AWAITING_TOOL_RESULTS)
        for call, arguments in ready:
            self._emit(ItemEvent(name="tool_call", data={
                "tool_name": call.name, "call_id": call.id, "arguments": arguments,
            }))
            if self.bridge is not None:
                self.bridge.dispatch(call.id, call.name, arguments)

    def _abandon_call(self, call: ToolCall, reason: str) -> None:
        logger.warning(f"Abandoning tool call {call.name} ({call.id}): {reason}")
        self.session.history.append(tool_message(call.id, json.dumps({"error": reason})))
        self._surface_error(f"Could not execute {call.name}")

    async def handle_tool_result(self, tool_call_id: str | None, result: Any) -> None:
        """Resolve the pending execution ``tool_call_id`` with ``result``."""
        pending = self.session.pending.get(tool_call_id) if tool_call_id else None
        awaiting = self._state is ConversationState.AWAITING_TOOL_RESULTS
        if pending is None or pending.resolved or not awaiting:
            self._surface_error(str(CorrelationError(tool_call_id)))
            if awaiting:
                self.session.pending.clear()
                self._transition(ConversationState.IDLE)
                await self._drain_queue()
            return

        pending.resolve(result)
        self._emit(ItemEvent(name="tool_result", data={
            "tool_name": pending.name, "call_id": pending.tool_call_id, "result": result,
        }))

        if is_final_result(result):
            self.session.history.append(tool_message(pending.tool_call_id, json.dumps(result)))
            self._final_messages.append(str(result["message"]))
        elif is_error_result(result):
            self.session.history.append(tool_message(pending.tool_call_id, json.dumps(result)))
            self._surface_error(str(result["error"]))
        else:
            content = result if isinstance(result, str) else json.dumps(result)
            self.session.history.append(tool_message(pending.tool_call_id, content))
            self._needs_model = True

        if self.session.unresolved():
            return

        self._after_tools = True
        if self._needs_model:
            logger.info("Tool results need the model, continuing conversation")
            self._needs_model = False
            self._final_messages = []
            await self._run()
            return

        for message in self._final_messages:
            self._reply(message)
        self._final_messages = []
        self._transition(ConversationState.IDLE)
        await self._drain_queue()

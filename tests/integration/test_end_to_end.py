"""Widget and host talking over a channel, both sides pumped by serve()."""

import asyncio

import pytest

from palaver.bridge import ToolDispatchBridge, open_channel
from palaver.config import WidgetConfig
from palaver.conversation import Conversation, ConversationState
from palaver.host import ToolHost
from palaver.tools import tool

from tests.conftest import MockProvider, errors, finish, text_chunks, tool_call_chunks, wait_until

form = {}


@tool
def update_name(name: str):
    """Change the name field.

    Args:
        name: The new name.
    """
    form["name"] = name
    return {"success": True, "message": f"Name updated to {name}."}


@tool
async def get_weather(city: str):
    """Look up the current weather.

    Args:
        city: City to look up.
    """
    return {"city": city, "forecast": "rain"}


@tool
def lock_form():
    """Lock the form."""
    raise PermissionError("read-only")


class Harness:
    def __init__(self, provider, state=None):
        self.widget_end, self.host_end = open_channel()
        self.host = ToolHost(
            self.host_end, tools=[update_name, get_weather, lock_form], state=state,
        )
        self.conversation = Conversation(
            provider,
            bridge=ToolDispatchBridge(self.widget_end),
            config=WidgetConfig(tools=self.host.tool_definitions()),
        )
        self.tasks = []

    async def __aenter__(self):
        self.tasks = [
            asyncio.create_task(self.widget_end.serve()),
            asyncio.create_task(self.host_end.serve()),
        ]
        return self

    async def __aexit__(self, *exc):
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)


@pytest.mark.asyncio
async def test_final_tool_result_round_trip():
    form.clear()
    provider = MockProvider(streams=[
        tool_call_chunks("update_name", {"name": "Bob"}, call_id="call_1") + [finish()],
    ])
    async with Harness(provider) as h:
        await h.conversation.submit("Please rename me to Bob")
        await wait_until(lambda: h.host.replies)

    assert form == {"name": "Bob"}
    assert h.conversation.state is ConversationState.IDLE
    assert h.host.replies[0].message == "Name updated to Bob."
    assert h.host.replies[0].had_tool_calls
    assert len(provider.call_log) == 1


@pytest.mark.asyncio
async def test_raw_tool_result_round_trip():
    provider = MockProvider(streams=[
        tool_call_chunks("get_weather", {"city": "Oslo"}, call_id="call_w") + [finish()],
        text_chunks("Bring an umbrella."),
    ])
    async with Harness(provider) as h:
        await h.conversation.submit("Weather in Oslo?")
        await wait_until(lambda: h.host.replies)

    tool_message = h.conversation.history[2]
    assert tool_message.tool_call_id == "call_w"
    assert tool_message.content == '{"city": "Oslo", "forecast": "rain"}'
    assert h.host.replies[0].message == "Bring an umbrella."


@pytest.mark.asyncio
async def test_failing_tool_reported_inline():
    provider = MockProvider(streams=[
        tool_call_chunks("lock_form", {}, call_id="call_l") + [finish()],
    ])
    async with Harness(provider) as h:
        await h.conversation.submit("Lock it")
        await wait_until(lambda: errors(h.conversation))

    assert errors(h.conversation) == ["Error: PermissionError: read-only"]
    assert h.conversation.state is ConversationState.IDLE
    assert len(provider.call_log) == 1


@pytest.mark.asyncio
async def test_host_message_queued_behind_tool_turn():
    provider = MockProvider(streams=[
        tool_call_chunks("get_weather", {"city": "Oslo"}, call_id="call_w") + [finish()],
        text_chunks("Rainy."),
        text_chunks("You're welcome."),
    ])
    provider.gate = asyncio.Event()
    async with Harness(provider) as h:
        turn = asyncio.create_task(h.conversation.submit("Weather?"))
        await wait_until(lambda: provider.in_flight == 1)
        h.host.send_message("Thanks!")
        await wait_until(lambda: h.conversation.queued is not None)
        provider.gate.set()
        await turn
        await wait_until(lambda: len(h.host.replies) == 2)

    assert [r.message for r in h.host.replies] == ["Rainy.", "You're welcome."]
    assert provider.max_in_flight == 1
    assert provider.call_log[-1]["messages"][-1] == {"role": "user", "content": "Thanks!"}

"""Terminal stand-in for an embedded widget.

Runs a conversation against the backend named by ``PALAVER_*`` settings,
with a fake host page that owns a small form.  Type ``/save`` to insert
the last reply into the form, ``/quit`` to leave.
"""

import asyncio

from palaver.bridge import ToolDispatchBridge, open_channel
from palaver.config import WidgetConfig, get_settings
from palaver.conversation import Conversation
from palaver.events import ErrorEvent, ItemEvent, TextDeltaEvent
from palaver.host import ToolHost
from palaver.logs import configure_logging
from palaver.tools import tool

form = {"name": "Ada", "city": "London"}


@tool
def update_name(name: str):
    """Change the name field of the form.

    Args:
        name: The new name.
    """
    form["name"] = name
    return {"success": True, "message": f"Name updated to {name}."}


@tool
def get_weather(city: str):
    """Look up the current weather.

    Args:
        city: City to look up.
    """
    return {"city": city, "forecast": "light rain", "temperature_c": 14}


@tool
def read_form(context):
    """Return every field currently in the form."""
    return context


def show(event):
    if isinstance(event, TextDeltaEvent):
        print(event.content, end="", flush=True)
    elif isinstance(event, ItemEvent) and event.name == "hide_text":
        # Wipe the tool-call JSON that was already echoed
        lines = event.data["text"].count("\n")
        print("\r" + "\x1b[1A" * lines + "\x1b[0J", end="", flush=True)
    elif isinstance(event, ItemEvent) and event.name == "queue_discarded":
        print(f"\n[dropped queued message] {event.data['text']}")
    elif isinstance(event, ItemEvent) and event.name == "tool_call":
        print(f"\n[tool] {event.data['tool_name']}({event.data['arguments']})")
    elif isinstance(event, ItemEvent) and event.name == "message":
        print()
    elif isinstance(event, ErrorEvent):
        print(f"\nError: {event.message}")


async def main():
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)

    widget_end, host_end = open_channel()
    host = ToolHost(host_end, tools=[update_name, get_weather, read_form], state=form)
    host.on_insert = lambda message: form.update(notes=message.text)

    conversation = Conversation.from_settings(
        settings,
        bridge=ToolDispatchBridge(widget_end),
        config=WidgetConfig(
            tools=host.tool_definitions(),
            context=form,
            welcome_message="Hi! Ask me about the form.",
        ),
    )
    conversation.subscribe(show)
    print(conversation.transcript[0].text)

    pumps = [asyncio.create_task(widget_end.serve()), asyncio.create_task(host_end.serve())]
    try:
        while True:
            text = await asyncio.to_thread(input, "\n> ")
            if text.strip() == "/quit":
                break
            if text.strip() == "/save":
                conversation.insert_last_reply()
                await asyncio.sleep(0.05)
                print(f"form: {form}")
                continue
            await conversation.submit(text)
            while conversation.busy:
                await asyncio.sleep(0.05)
            host.update_state(form)
    finally:
        for task in pumps:
            task.cancel()


if __name__ == "__main__":
    asyncio.run(main())

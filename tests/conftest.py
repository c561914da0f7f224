import asyncio
import json

from palaver.provider import ModelProvider


# ---------------------------------------------------------------------------
# Stream payload builders (OpenAI chunk shape)
# ---------------------------------------------------------------------------

def text_chunks(*pieces: str, finish_reason: str = "stop") -> list[dict]:
    """One content chunk per piece, then a finish chunk."""
    payloads = [{"choices": [{"delta": {"content": p}}]} for p in pieces]
    payloads.append({"choices": [{"delta": {}, "finish_reason": finish_reason}]})
    return payloads


def tool_call_chunks(
    name: str,
    args: dict,
    call_id: str = "call_1",
    index: int = 0,
    split: int = 2,
) -> list[dict]:
    """A structured tool call whose arguments arrive in ``split`` fragments."""
    arguments = json.dumps(args)
    size = max(1, -(-len(arguments) // split))
    pieces = [arguments[i:i + size] for i in range(0, len(arguments), size)]
    payloads = [{"choices": [{"delta": {"tool_calls": [{
        "index": index,
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": pieces[0]},
    }]}}]}]
    for piece in pieces[1:]:
        payloads.append({"choices": [{"delta": {"tool_calls": [{
            "index": index,
            "function": {"arguments": piece},
        }]}}]})
    return payloads


def finish(reason: str = "tool_calls") -> dict:
    return {"choices": [{"delta": {}, "finish_reason": reason}]}


def sse_bytes(payloads: list[dict], done: bool = True) -> bytes:
    """Encode payloads as an SSE body."""
    body = "".join(f"data: {json.dumps(p, ensure_ascii=False)}\n\n" for p in payloads)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


def completion(content: str | None = None, tool_calls: list[dict] | None = None) -> dict:
    """A one-shot chat-completions response body."""
    message: dict = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"choices": [{
        "index": 0,
        "message": message,
        "finish_reason": "tool_calls" if tool_calls else "stop",
    }]}


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that replays scripted payloads. No network calls.

    Each entry of ``streams`` is the payload list for one streamed
    request; each entry of ``responses`` is one ``complete()`` body.  An
    exception instance in either list is raised instead.  When ``gate``
    is set, streams wait on it before yielding anything.
    """

    def __init__(self, streams=None, responses=None):
        self.streams: list = list(streams or [])
        self.responses: list = list(responses or [])
        self.call_log: list[dict] = []
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def complete(self, model, messages, tools=None):
        self.call_log.append({"model": model, "messages": messages, "tools": tools})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def stream(self, model, messages, tools=None):
        self.call_log.append({"model": model, "messages": messages, "tools": tools})
        payloads = self.streams.pop(0)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if isinstance(payloads, Exception):
                raise payloads
            for payload in payloads:
                yield payload
        finally:
            self.in_flight -= 1


class StallingProvider(ModelProvider):
    """Stream that never produces a payload."""

    def __init__(self):
        self.call_log: list[dict] = []

    async def stream(self, model, messages, tools=None):
        self.call_log.append({"model": model, "messages": messages, "tools": tools})
        await asyncio.Event().wait()
        yield {}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def roles(messages) -> list[str]:
    return [m.role.value for m in messages]


def errors(conversation) -> list[str]:
    return [e.text for e in conversation.transcript if e.is_error]


async def wait_until(predicate, timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)

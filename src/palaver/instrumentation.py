"""Optional OpenTelemetry spans for backend requests and tool runs.

Tracing is off until :func:`instrument` is called; every helper here is a
no-op while it is off, so the engine never needs ``opentelemetry-api``
at runtime.  Install it with ``pip install palaver[otel]``.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "palaver") -> None:
    """Start emitting spans, using the globally configured TracerProvider.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for tracing. "
            "Install it with: pip install palaver[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("No TracerProvider configured, palaver spans will be discarded")
    else:
        logger.info("Palaver tracing enabled")


def uninstrument() -> None:
    global _tracer
    _tracer = None


@asynccontextmanager
async def completion_span(system: str, model: str | None, conversation_id: str | None = None):
    """Span around one backend request (streamed or one-shot)."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    attributes = {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": system,
        "gen_ai.request.model": model or "",
    }
    if conversation_id:
        attributes["gen_ai.conversation.id"] = conversation_id
    with _tracer.start_as_current_span(
        f"chat {model or 'default'}", kind=SpanKind.CLIENT, attributes=attributes,
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str):
    """Span around one host-side tool execution."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}",
        attributes={
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    ) as span:
        yield span


def record_turn(span, finish_reason: str | None, tool_calls: int) -> None:
    """Attach the outcome of an assembled turn to its request span."""
    if span is None:
        return
    if finish_reason:
        span.set_attribute("gen_ai.response.finish_reasons", [finish_reason])
    span.set_attribute("palaver.tool_calls", tool_calls)


def record_error(span, exception: BaseException) -> None:
    """Mark ``span`` failed with ``exception``; no-op when tracing is off."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)

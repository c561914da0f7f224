"""Per-backend request shaping and response normalisation.

Backends with native tool calling need nothing special.  Backends that
can only emit text are told which JSON convention to use for a tool call
(:meth:`JsonToolCallAdapter.preprocess`) and their replies are rewritten
so that such JSON becomes a structured ``tool_calls`` field.

An :class:`AdapterRegistry` maps model-identifier predicates to adapter
factories.  Adapters are created per request because
:meth:`ModelAdapter.normalize_chunk` keeps state across one stream.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable

from palaver.extraction import parse_tool_call_text, strip_code_fence
from palaver.streaming import ToolCall

logger = logging.getLogger(__name__)

TOOL_CALL_INSTRUCTIONS = """You have access to the following tools. When you need to use a tool, respond with a JSON object in this exact format:
{{
  "tool_calls": [
    {{
      "id": "call_<unique_id>",
      "type": "function",
      "function": {{
        "name": "<function_name>",
        "arguments": "<json_string_of_arguments>"
      }}
    }}
  ]
}}

Available tools:
{tool_list}

Only use this format when you need to call a tool. For regular responses, reply normally without any JSON structure."""


class ModelAdapter:
    """Pass-through base; subclasses override what their backend needs.

    Args:
        has_tools: Whether the request being adapted declared any tools.
    """

    def __init__(self, has_tools: bool = False):
        self.has_tools = has_tools

    def preprocess(
            self,
            messages: list[dict],
            tools: list[dict] | None
    ) -> tuple[list[dict], list[dict] | None]:
        return messages, tools

    def normalize_response(self, response: dict) -> dict:
        return response

    def normalize_chunk(self, chunk: dict) -> dict:
        return chunk


class PassThroughAdapter(ModelAdapter):
    """Adapter for backends with native structured tool calling."""


def _tool_line(tool: dict) -> str:
    function = tool.get("function") or tool
    return f"- {function.get('name')}: {function.get('description') or ''}"


def _wire_tool_calls(calls: list[ToolCall], indexed: bool = False) -> list[dict]:
    wire = []
    for index, call in enumerate(calls):
        entry = call.to_wire()
        if indexed:
            entry["index"] = index
        wire.append(entry)
    return wire


class JsonToolCallAdapter(ModelAdapter):
    """Adapter for backends that can only write tool calls as JSON text."""

    def __init__(self, has_tools: bool = False):
        super().__init__(has_tools)
        self._accumulated = ""
        self._detected = False

    def preprocess(self, messages, tools):
        if not tools:
            return messages, tools

        instructions = TOOL_CALL_INSTRUCTIONS.format(
            tool_list="\n".join(_tool_line(t) for t in tools)
        )
        updated = [dict(m) for m in messages]
        for message in updated:
            if message.get("role") == "system":
                existing = message.get("content") or ""
                message["content"] = f"{instructions}\n\n{existing}" if existing else instructions
                return updated, tools
        return [{"role": "system", "content": instructions}, *updated], tools

    def normalize_response(self, response):
        choices = response.get("choices")
        if not choices:
            return response
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not content or message.get("tool_calls"):
            return response

        calls = parse_tool_call_text(content)
        if calls is None:
            return response

        logger.info(f"Promoted {len(calls)} text tool call(s) to structured calls")
        normalized = copy.deepcopy(response)
        choice = normalized["choices"][0]
        choice["message"] = {
            **choice.get("message", {}),
            "content": None,
            "tool_calls": _wire_tool_calls(calls),
        }
        choice["finish_reason"] = "tool_calls"
        return normalized

    def normalize_chunk(self, chunk):
        choices = chunk.get("choices")
        if not choices:
            return chunk
        delta = choices[0].get("delta") or {}
        content = delta.get("content")
        if not content:
            return chunk

        if self._detected:
            return self._without_content(chunk)

        self._accumulated += content
        if not self.has_tools:
            return chunk

        candidate = self._accumulated.strip()
        if not (candidate.startswith("{") or candidate.startswith("```")):
            return chunk
        if candidate.startswith("```"):
            candidate = strip_code_fence(candidate)
            if not candidate.startswith("{"):
                return chunk

        calls = parse_tool_call_text(candidate)
        if calls is None:
            # Not complete yet, keep accumulating
            return chunk

        self._detected = True
        logger.info(f"Detected {len(calls)} text tool call(s) in stream")
        return {
            **chunk,
            "choices": [{
                **choices[0],
                "delta": {"tool_calls": _wire_tool_calls(calls, indexed=True)},
                "finish_reason": "tool_calls",
            }],
        }

    @staticmethod
    def _without_content(chunk: dict) -> dict:
        choice = chunk["choices"][0]
        delta = {k: v for k, v in (choice.get("delta") or {}).items() if k != "content"}
        return {**chunk, "choices": [{**choice, "delta": delta}]}


AdapterFactory = Callable[[bool], ModelAdapter]
ModelPredicate = Callable[[str], bool]


def is_qwen_model(model: str) -> bool:
    return "qwen" in model.lower()


def model_name_contains(patterns: Iterable[str]) -> ModelPredicate:
    lowered = [p.lower() for p in patterns if p]

    def predicate(model: str) -> bool:
        name = model.lower()
        return any(p in name for p in lowered)

    return predicate


class AdapterRegistry:
    """Ordered mapping from model predicates to adapter factories."""

    def __init__(self, default: AdapterFactory = PassThroughAdapter):
        self._entries: list[tuple[ModelPredicate, AdapterFactory]] = []
        self._default = default

    def register(self, predicate: ModelPredicate, factory: AdapterFactory) -> None:
        self._entries.append((predicate, factory))

    def resolve(self, model: str | None, has_tools: bool = False) -> ModelAdapter:
        if model:
            for predicate, factory in self._entries:
                if predicate(model):
                    adapter = factory(has_tools)
                    logger.debug(f"Using {type(adapter).__name__} for model {model}")
                    return adapter
        return self._default(has_tools)


def default_registry(text_tool_models: Iterable[str] = ()) -> AdapterRegistry:
    """Registry with the built-in Qwen rule plus configured model patterns."""
    registry = AdapterRegistry()
    registry.register(is_qwen_model, JsonToolCallAdapter)
    patterns = list(text_tool_models)
    if patterns:
        registry.register(model_name_contains(patterns), JsonToolCallAdapter)
    return registry

"""Host-side tools: plain functions exposed to the model.

``@tool`` turns a function into a :class:`Tool` whose ``model_dump()``
is the chat-completions function definition, built from the signature
and the docstring's parameter section.  A parameter named ``context``
is filled in by the :class:`~palaver.host.ToolHost` with the current
page state and never appears in the schema.
"""

import inspect
import json
import re
from typing import Any, Callable

from pydantic import BaseModel, Field

_EXCLUDED_PARAMS = {"context"}

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
}

_GOOGLE_SECTION = re.compile(r"^\s*(Args|Arguments|Parameters|Params):\s*$")
_GOOGLE_PARAM = re.compile(r"^\s*(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")
_REST_PARAM = re.compile(r"^\s*:param\s+(?:\w+\s+)?(\w+)\s*:\s*(.*)$")
_NUMPY_PARAM = re.compile(r"^\s*(\w+)\s*(?::\s*.*)?$")


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


def _json_type(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    origin = getattr(annotation, "__origin__", None)
    return _JSON_TYPES.get(origin or annotation, "string")


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _collect(lines: list[str], start: int, pattern: re.Pattern) -> dict[str, str]:
    """Read ``name: text`` entries with indented continuation lines."""
    descriptions: dict[str, str] = {}
    current = None
    base = None
    for line in lines[start:]:
        if not line.strip():
            current = None
            continue
        if base is None:
            base = _indent(line)
        if _indent(line) < base:
            break
        if _indent(line) == base:
            match = pattern.match(line)
            if match is None:
                break
            current = match.group(1)
            descriptions[current] = match.group(2).strip()
        elif current is not None:
            text = line.strip()
            descriptions[current] = (
                f"{descriptions[current]}\n{text}" if descriptions[current] else text
            )
    return descriptions


def _parse_numpy(lines: list[str], start: int) -> dict[str, str]:
    descriptions: dict[str, str] = {}
    current = None
    base = None
    for line in lines[start:]:
        if not line.strip():
            continue
        if base is None:
            base = _indent(line)
        if line.strip().startswith("---"):
            # the previous line was the next section's header
            descriptions.pop(current, None)
            break
        if _indent(line) < base:
            break
        if _indent(line) == base:
            match = _NUMPY_PARAM.match(line)
            if match is None:
                break
            current = match.group(1)
            descriptions[current] = ""
        elif current is not None:
            text = line.strip()
            descriptions[current] = (
                f"{descriptions[current]}\n{text}" if descriptions[current] else text
            )
    return descriptions


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Extract per-parameter descriptions from a Google, reST or numpy docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()

    rest = {}
    for line in lines:
        match = _REST_PARAM.match(line)
        if match:
            rest[match.group(1)] = match.group(2).strip()
    if rest:
        return rest

    for i, line in enumerate(lines):
        if _GOOGLE_SECTION.match(line):
            return _collect(lines, i + 1, _GOOGLE_PARAM)
        if line.strip() == "Parameters" and i + 1 < len(lines) and lines[i + 1].strip().startswith("---"):
            return _parse_numpy(lines, i + 2)
    return {}


def _summary(func: Callable) -> str:
    doc = inspect.getdoc(func)
    if not doc:
        return ""
    return doc.split("\n\n", 1)[0].strip()


def _build_parameters_schema(func: Callable, skip: set[str] | None = None) -> tuple[dict, list[str]]:
    """Return the JSON schema for ``func``'s parameters and the required names."""
    skip = _EXCLUDED_PARAMS | (skip or set())
    descriptions = _parse_param_descriptions(func)
    properties: dict[str, dict] = {}
    required: list[str] = []
    for name, param in inspect.signature(func).parameters.items():
        if name in skip or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        properties[name] = {
            "type": _json_type(param.annotation),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {"type": "object", "properties": properties, "required": required}
    return schema, required


class Tool(BaseModel):
    """A callable the host exposes to the model."""

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict = Field(default_factory=dict)
    bound: dict[str, Any] = Field(default_factory=dict, exclude=True)
    model_config = {"arbitrary_types_allowed": True}

    def model_dump(self, **kwargs) -> dict:
        """The chat-completions function definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def model_dump_json(self, **kwargs) -> str:
        return json.dumps(self.model_dump())

    @property
    def wants_context(self) -> bool:
        return "context" in inspect.signature(self.func).parameters

    def bind(self, **values: Any) -> "Tool":
        """Fix some arguments; they disappear from the schema."""
        schema, _ = _build_parameters_schema(
            self.func, skip=set(self.bound) | set(values)
        )
        return Tool(
            func=self.func,
            name=self.name,
            description=self.description,
            parameters_schema=schema,
            bound={**self.bound, **values},
        )

    async def __call__(self, **kwargs: Any) -> ToolCallResult:
        output = self.func(**self.bound, **kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def tool(func: Callable | None = None, *, name: str | None = None, description: str | None = None):
    """Decorate a function as a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="...", description="...")``).
    """

    def wrap(f: Callable) -> Tool:
        schema, _ = _build_parameters_schema(f)
        t = Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None else _summary(f),
            parameters_schema=schema,
        )
        return t

    if func is not None:
        return wrap(func)
    return wrap

import pytest

from palaver.tools import (
    Tool,
    ToolCallResult,
    _build_parameters_schema,
    _parse_param_descriptions,
    tool,
)


class TestBuildParametersSchema:
    def test_python_types_map_to_json_schema_types(self):
        def set_fields(label: str, count: int, ratio: float, enabled: bool, tags: list, extra: dict):
            pass

        schema, _ = _build_parameters_schema(set_fields)
        types = {name: p["type"] for name, p in schema["properties"].items()}
        assert types == {
            "label": "string",
            "count": "integer",
            "ratio": "number",
            "enabled": "boolean",
            "tags": "array",
            "extra": "object",
        }

    def test_generic_aliases_use_their_origin(self):
        def f(names: list[str], lookup: dict[str, int]):
            pass

        schema, _ = _build_parameters_schema(f)
        assert schema["properties"]["names"]["type"] == "array"
        assert schema["properties"]["lookup"]["type"] == "object"

    def test_context_param_excluded(self):
        def read_form(context, field: str):
            pass

        schema, required = _build_parameters_schema(read_form)
        assert list(schema["properties"]) == ["field"]
        assert required == ["field"]

    def test_defaults_are_optional(self):
        def f(name: str, greeting: str = "hi"):
            pass

        schema, required = _build_parameters_schema(f)
        assert required == ["name"]
        assert schema["required"] == ["name"]

    def test_unannotated_param_defaults_to_string(self):
        def f(x):
            pass

        schema, _ = _build_parameters_schema(f)
        assert schema["properties"]["x"]["type"] == "string"

    def test_var_args_skipped(self):
        def f(a: str, *args, **kwargs):
            pass

        schema, _ = _build_parameters_schema(f)
        assert list(schema["properties"]) == ["a"]


class TestParseParamDescriptions:
    def test_google_style(self):
        def f(name: str, city: str):
            """Update the form.

            Args:
                name: New value for the name field.
                city (str): New value for the city field.

            Returns:
                A confirmation.
            """

        assert _parse_param_descriptions(f) == {
            "name": "New value for the name field.",
            "city": "New value for the city field.",
        }

    def test_rest_style(self):
        def f(name: str):
            """Update the form.

            :param name: New value for the name field.
            """

        assert _parse_param_descriptions(f) == {"name": "New value for the name field."}

    def test_numpy_style(self):
        def f(name: str, city: str):
            """Update the form.

            Parameters
            ----------
            name : str
                New value for the name field.
            city : str
                New value for the city field.
            """

        assert _parse_param_descriptions(f) == {
            "name": "New value for the name field.",
            "city": "New value for the city field.",
        }

    def test_multiline_description(self):
        def f(query: str):
            """Search.

            Args:
                query: What to look for.
                    Quoted phrases match exactly.
            """

        assert _parse_param_descriptions(f) == {
            "query": "What to look for.\nQuoted phrases match exactly.",
        }

    def test_no_docstring(self):
        def f(x: str):
            pass

        assert _parse_param_descriptions(f) == {}

    def test_summary_only(self):
        def f(x: str):
            """Just a summary."""

        assert _parse_param_descriptions(f) == {}


class TestToolDecorator:
    def test_bare_decorator(self):
        @tool
        def update_name(name: str):
            """Change the name field.

            Args:
                name: The new name.
            """
            return {"success": True, "message": f"Name set to {name}"}

        assert isinstance(update_name, Tool)
        assert update_name.name == "update_name"
        assert update_name.description == "Change the name field."

    def test_decorator_with_args(self):
        @tool(name="rename", description="Rename the user")
        def update_name(name: str):
            """Original docstring."""

        assert update_name.name == "rename"
        assert update_name.description == "Rename the user"

    def test_model_dump_is_function_definition(self):
        @tool
        def update_name(name: str):
            """Change the name field.

            Args:
                name: The new name.
            """

        assert update_name.model_dump() == {
            "type": "function",
            "function": {
                "name": "update_name",
                "description": "Change the name field.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "description": "The new name."},
                    },
                    "required": ["name"],
                },
            },
        }

    def test_wants_context(self):
        @tool
        def read_form(context):
            """Read the form."""

        @tool
        def ping():
            """Ping."""

        assert read_form.wants_context
        assert not ping.wants_context


class TestToolCall:
    @pytest.mark.asyncio
    async def test_sync_function(self):
        @tool
        def add(a: int, b: int):
            """Add numbers."""
            return a + b

        result = await add(a=2, b=3)
        assert result == ToolCallResult(tool_name="add", output=5)

    @pytest.mark.asyncio
    async def test_async_function_output_keeps_type(self):
        @tool
        async def get_weather(city: str):
            """Look up the weather."""
            return {"city": city, "forecast": "sun"}

        result = await get_weather(city="Lisbon")
        assert result.output == {"city": "Lisbon", "forecast": "sun"}


class TestToolBind:
    def test_bound_params_leave_schema(self):
        @tool
        def search(index: str, query: str, limit: int = 5):
            """Search."""
            return f"{index}:{query}:{limit}"

        bound = search.bind(index="docs")

        assert list(bound.parameters_schema["properties"]) == ["query", "limit"]
        assert bound.parameters_schema["required"] == ["query"]
        assert list(search.parameters_schema["properties"]) == ["index", "query", "limit"]

    @pytest.mark.asyncio
    async def test_chained_bind_is_callable(self):
        @tool
        def query(db: str, table: str, column: str):
            """Query a column."""
            return f"{db}.{table}.{column}"

        bound = query.bind(db="main").bind(table="users")
        result = await bound(column="email")

        assert result.output == "main.users.email"
        assert bound.name == "query"

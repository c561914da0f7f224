import pytest
from pydantic import ValidationError

from palaver.config import EngineSettings, WidgetConfig, get_settings, normalize_tool_definition


class TestEngineSettings:
    def test_defaults(self, monkeypatch):
        for key in ("PALAVER_BASE_URL", "PALAVER_API_KEY", "PALAVER_MODEL", "PALAVER_REQUEST_TIMEOUT"):
            monkeypatch.delenv(key, raising=False)
        settings = EngineSettings()

        assert settings.base_url == "http://127.0.0.1:11434/v1"
        assert settings.api_key == "ollama"
        assert settings.model is None
        assert settings.request_timeout == 120.0

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("PALAVER_MODEL", "qwen2.5")
        monkeypatch.setenv("PALAVER_REQUEST_TIMEOUT", "5")
        monkeypatch.setenv("PALAVER_TEXT_TOOL_MODELS", '["phi3"]')

        settings = get_settings()

        assert settings.model == "qwen2.5"
        assert settings.request_timeout == 5.0
        assert settings.text_tool_models == ["phi3"]

    def test_frozen(self):
        settings = EngineSettings()
        with pytest.raises(ValidationError):
            settings.model = "other"


class TestWidgetConfig:
    def test_flat_tools_are_nested(self):
        config = WidgetConfig(tools=[{"name": "update_name", "description": "Rename"}])

        assert config.tools == [{
            "type": "function",
            "function": {
                "name": "update_name",
                "description": "Rename",
                "parameters": {"type": "object", "properties": {}},
            },
        }]
        assert config.tool_names() == ["update_name"]

    def test_nested_tools_kept(self):
        tool = {"type": "function", "function": {
            "name": "f", "description": "d", "parameters": {"type": "object", "properties": {"a": {}}},
        }}
        assert WidgetConfig(tools=[tool]).tools == [tool]

    def test_tool_without_name_rejected(self):
        with pytest.raises(ValidationError):
            WidgetConfig(tools=[{"description": "nameless"}])

    def test_defaults(self):
        config = WidgetConfig()
        assert config.stream is True
        assert config.tools == []
        assert config.model is None


def test_normalize_tool_definition_requires_name():
    with pytest.raises(ValueError, match="missing a name"):
        normalize_tool_definition({"function": {"description": "x"}})

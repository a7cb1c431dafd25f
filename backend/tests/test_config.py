"""
Tests for RuntimeConfig defaults, environment parsing and runtime updates.
"""

from config import DEFAULT_LLM_BASE_URL, RuntimeConfig


class TestEnvironment:
    """Defaults and environment variable aliases."""

    def test_defaults(self, monkeypatch):
        for key in ("LLM_MODEL", "GEMINI_MODEL", "LLM_MODELS", "LLM_BASE_URL", "MCP_ENABLED", "ANONYMOUS_CHAT_TTL"):
            monkeypatch.delenv(key, raising=False)
        config = RuntimeConfig()
        assert config.llm_base_url == DEFAULT_LLM_BASE_URL
        assert config.model_default == "gemini-2.5-flash"
        assert config.models_available == ["gemini-2.5-flash", "gemini-2.5-pro"]
        assert config.mcp_enabled is False
        assert config.anonymous_chat_ttl == 3600
        assert config.llm_retry_statuses == [429, 500, 502, 503, 504]

    def test_legacy_aliases(self, monkeypatch):
        """GEMINI_* names are honoured when the LLM_* names are unset."""
        monkeypatch.delenv("LLM_MODEL", raising=False)
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        monkeypatch.setenv("GEMINI_MODEL", "gemini-2.5-pro")
        monkeypatch.setenv("GEMINI_API_KEY", "legacy-key")
        config = RuntimeConfig()
        assert config.model_default == "gemini-2.5-pro"
        assert config.llm_api_key == "legacy-key"

    def test_csv_and_bool_parsing(self, monkeypatch):
        monkeypatch.setenv("LLM_MODELS", " a , b,,c ")
        monkeypatch.setenv("MCP_ENABLED", "yes")
        config = RuntimeConfig()
        assert config.models_available == ["a", "b", "c"]
        assert config.mcp_enabled is True


class TestUpdate:
    """Runtime updates with validation."""

    def test_update_in_range(self):
        config = RuntimeConfig()
        result = config.update(mcp_max_corrections=3, temperature=0.2)
        assert sorted(result["updated"]) == ["mcp_max_corrections", "temperature"]
        assert config.mcp_max_corrections == 3

    def test_out_of_range_ignored(self):
        config = RuntimeConfig()
        before = config.temperature
        result = config.update(temperature=5.0)
        assert result["ignored"] == ["temperature"]
        assert config.temperature == before

    def test_secrets_are_read_only(self):
        config = RuntimeConfig(jwt_secret="original")
        result = config.update(jwt_secret="hijacked", _lock=None)
        assert result["updated"] == []
        assert config.jwt_secret == "original"

    def test_unknown_and_invalid(self):
        config = RuntimeConfig()
        result = config.update(nope=1, model_default="bad model!", anonymous_expiry_basis="never")
        assert sorted(result["ignored"]) == ["anonymous_expiry_basis", "model_default", "nope"]

    def test_to_dict_hides_secrets(self):
        data = RuntimeConfig(jwt_secret="s", llm_api_key="k").to_dict()
        assert "jwt_secret" not in data
        assert "llm_api_key" not in data
        assert "model_default" in data

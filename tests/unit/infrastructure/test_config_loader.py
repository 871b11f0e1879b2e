"""Tests for TOML config loader."""

import pytest

from character_tools.infrastructure.config.toml_loader import _apply_env_overrides, load_config

_ENV_VARS = (
    "LLM_PROVIDER",
    "OLLAMA_HOST",
    "OPENAI_BASE_URL",
    "OPENAI_API_KEY",
    "GENERATION_MODEL",
    "PORT",
    "LOG_LEVEL",
    "LOG_FILE",
    "CORS_ORIGINS",
    "CHARACTERS_DIR",
    "MAX_ITERATION_HISTORY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    """Tests for load_config function."""

    def test_loads_default_config(self):
        """The shipped default.toml loads with every section present."""
        config = load_config()

        assert config.llm.provider == "ollama"
        assert config.generation.model
        assert config.pipeline.max_iteration_history > 0
        assert config.persistence.characters_dir

    def test_empty_dir_uses_model_defaults(self, tmp_path):
        config = load_config(tmp_path)
        assert config.server.port == 8000
        assert config.log_level == "INFO"
        assert config.log_file == ""

    def test_loads_from_custom_dir(self, tmp_path):
        (tmp_path / "default.toml").write_text(
            """
[llm]
provider = "openai"

[server]
port = 9999

[generation]
model = "llama3:8b"
temperature = 0.3
"""
        )
        config = load_config(tmp_path)

        assert config.llm.provider == "openai"
        assert config.server.port == 9999
        assert config.generation.model == "llama3:8b"
        assert config.generation.temperature == 0.3

    def test_development_overrides_merge(self, tmp_path):
        """development.toml overrides keys but keeps the rest of each section."""
        (tmp_path / "default.toml").write_text(
            """
[server]
host = "127.0.0.1"
port = 8000
"""
        )
        (tmp_path / "development.toml").write_text(
            """
[server]
port = 8100
"""
        )
        config = load_config(tmp_path)

        assert config.server.host == "127.0.0.1"
        assert config.server.port == 8100

    def test_logging_section(self, tmp_path):
        (tmp_path / "default.toml").write_text(
            """
[logging]
level = "DEBUG"
file = "  logs/app.log  "
log_rotation_max_mb = 10
log_rotation_backups = 7
"""
        )
        config = load_config(tmp_path)

        assert config.log_level == "DEBUG"
        assert config.log_file == "logs/app.log"
        assert config.log_rotation_max_mb == 10
        assert config.log_rotation_backups == 7

    def test_env_wins_over_files(self, tmp_path, monkeypatch):
        (tmp_path / "default.toml").write_text(
            """
[pipeline]
max_iteration_history = 20
"""
        )
        monkeypatch.setenv("MAX_ITERATION_HISTORY", "4")
        monkeypatch.setenv("CHARACTERS_DIR", " cards ")

        config = load_config(tmp_path)

        assert config.pipeline.max_iteration_history == 4
        assert config.persistence.characters_dir == "cards"


class TestEnvOverrides:
    """Tests for environment variable overrides."""

    def test_provider_override(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "lm_studio")
        assert _apply_env_overrides({})["llm"]["provider"] == "lm_studio"

    def test_ollama_host_override(self, monkeypatch):
        monkeypatch.setenv("OLLAMA_HOST", "http://custom:11434")
        assert _apply_env_overrides({})["ollama"]["host"] == "http://custom:11434"

    def test_openai_settings_override(self, monkeypatch):
        monkeypatch.setenv("OPENAI_BASE_URL", "http://vllm:8000/v1")
        monkeypatch.setenv("OPENAI_API_KEY", " sk-test ")
        result = _apply_env_overrides({})
        assert result["openai_compatible"] == {"base_url": "http://vllm:8000/v1", "api_key": "sk-test"}

    def test_generation_model_override(self, monkeypatch):
        monkeypatch.setenv("GENERATION_MODEL", "mistral:7b ")
        result = _apply_env_overrides({"generation": {"temperature": 0.5}})
        assert result["generation"] == {"temperature": 0.5, "model": "mistral:7b"}

    def test_port_override(self, monkeypatch):
        monkeypatch.setenv("PORT", "9000")
        assert _apply_env_overrides({})["server"]["port"] == 9000

    def test_invalid_port_ignored(self, monkeypatch):
        """Invalid PORT value is ignored."""
        monkeypatch.setenv("PORT", "not_a_number")
        result = _apply_env_overrides({"server": {"port": 8000}})
        assert result["server"]["port"] == 8000

    def test_log_level_override(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert _apply_env_overrides({})["logging"]["level"] == "DEBUG"

    def test_log_file_override(self, monkeypatch):
        monkeypatch.setenv("LOG_FILE", " /tmp/ct.log")
        assert _apply_env_overrides({})["logging"]["file"] == "/tmp/ct.log"

    def test_cors_origins_override(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", "http://a.com, http://b.com")
        result = _apply_env_overrides({})
        assert result["security"]["cors_origins"] == ["http://a.com", "http://b.com"]

    def test_no_env_leaves_config_alone(self):
        config = {"server": {"port": 8000}}
        assert _apply_env_overrides(config) == {"server": {"port": 8000}}

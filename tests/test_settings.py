import json

from llamune.config import AppSettings, load_settings, save_settings


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"ollama_base_url": "http://config"}))
    monkeypatch.setenv("OLLAMA_API_URL", "http://env")
    monkeypatch.delenv("LLAMUNE_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.ollama_base_url == "http://config"


def test_env_override_when_llamune_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"ollama_base_url": "http://config"}))
    monkeypatch.setenv("OLLAMA_API_URL", "http://env")
    monkeypatch.setenv("LLAMUNE_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.ollama_base_url == "http://env"


def test_env_values_are_coerced(tmp_path, monkeypatch):
    monkeypatch.setenv("PORT", "4000")
    monkeypatch.setenv("MAX_TOOL_ROUNDS", "2")
    monkeypatch.setenv("REQUEST_TIMEOUT_S", "12.5")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.port == 4000
    assert settings.max_tool_rounds == 2
    assert settings.request_timeout_s == 12.5


def test_defaults(tmp_path, monkeypatch):
    for key in ("OLLAMA_API_URL", "DEFAULT_MODEL", "MAX_CANDIDATES", "MAX_TOOL_ROUNDS", "PORT"):
        monkeypatch.delenv(key, raising=False)
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.ollama_base_url == "http://localhost:11434"
    assert settings.max_candidates == 8
    assert settings.max_tool_rounds == 5


def test_save_settings_roundtrip(tmp_path, monkeypatch):
    monkeypatch.delenv("LLAMUNE_ENV_OVERRIDES_CONFIG", raising=False)
    config_path = tmp_path / "config.json"
    save_settings(AppSettings(default_model="llama3:8b"), config_path=config_path)
    assert json.loads(config_path.read_text())["default_model"] == "llama3:8b"
    assert load_settings(config_path=config_path).default_model == "llama3:8b"

import pytest
from pydantic import ValidationError

from echomind.config.settings import EchomindSettings


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ECHOMIND_API_KEY", raising=False)
    s = EchomindSettings(_env_file=None)
    assert s.default_provider == "chat"
    assert s.default_model == "gpt-3.5-turbo"
    assert s.http_timeout == 30.0
    assert s.temperature == 0.7
    assert s.cache_ttl_seconds == 300.0
    assert s.cache_max_entries == 100


def test_env_key_fallback(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ECHOMIND_API_KEY", "generic-key-123456")
    monkeypatch.setenv("CLAUDE_API_KEY", "claude-key-123456")
    s = EchomindSettings(_env_file=None)
    assert s.api_key_for("claude") == "claude-key-123456"
    assert s.api_key_for("openai") == "generic-key-123456"


def test_yaml_config_file(monkeypatch, tmp_path):
    cfg = tmp_path / "echomind.yaml"
    cfg.write_text("default_provider: ollama\ndefault_model: llama3\nhttp_timeout: 12\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ECHOMIND_CONFIG_FILE", str(cfg))
    monkeypatch.setenv("DEFAULT_MODEL", "mistral")
    s = EchomindSettings(_env_file=None)
    assert s.default_provider == "ollama"
    assert s.http_timeout == 12
    # 环境变量优先于配置文件
    assert s.default_model == "mistral"


def test_short_key_rejected(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ValidationError):
        EchomindSettings(_env_file=None, openai_api_key="short")


def test_log_level_normalized(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    assert EchomindSettings(_env_file=None, log_level="debug").log_level == "DEBUG"

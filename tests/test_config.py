from pathlib import Path

import pytest

from llm_compact.utils.config import Config, set_config_value


@pytest.fixture
def env_config(tmp_path: Path, make_config, monkeypatch):
    env_file = tmp_path / "conf" / ".env"
    monkeypatch.setitem(Config.model_config, "env_file", env_file)
    config = make_config()
    return config, env_file


def test_set_config_value_appends_and_replaces(env_config) -> None:
    config, env_file = env_config
    assert set_config_value("chunk_target_tokens", "9000", config)
    assert env_file.read_text() == "LLM_COMPACT_CHUNK_TARGET_TOKENS=9000\n"

    env_file.write_text("OTHER=1\nLLM_COMPACT_CHUNK_TARGET_TOKENS=9000")
    assert set_config_value("CHUNK_TARGET_TOKENS", "12000", config)
    assert env_file.read_text() == "OTHER=1\nLLM_COMPACT_CHUNK_TARGET_TOKENS=12000\n"


def test_set_config_value_rejects_unknown_key(env_config) -> None:
    config, env_file = env_config
    assert not set_config_value("NOT_A_SETTING", "1", config)
    assert not env_file.exists()


def test_set_config_value_rejects_bad_type(env_config) -> None:
    config, env_file = env_config
    assert not set_config_value("CHUNK_TARGET_TOKENS", "lots", config)
    assert not env_file.exists()


def test_env_prefix_is_read(monkeypatch) -> None:
    monkeypatch.setenv("LLM_COMPACT_CHUNK_TARGET_TOKENS", "4321")
    config = Config(_env_file=None, MODELS_CONFIG_PATH="/nonexistent/models.yaml")
    assert config.CHUNK_TARGET_TOKENS == 4321


def test_api_key_falls_back_to_vendor_variable(monkeypatch, make_config) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", " sk-test ")
    config = make_config(OPENAI_API_KEY=None)
    assert config.get_api_key("openai") == "sk-test"


def test_models_yaml_overrides(tmp_path: Path) -> None:
    models = tmp_path / "models.yaml"
    models.write_text("models:\n  openai:\n    compact: gpt-test\n")
    config = Config(_env_file=None, MODELS_CONFIG_PATH=str(models))
    assert config.model_overrides == {"openai": {"compact": "gpt-test"}}

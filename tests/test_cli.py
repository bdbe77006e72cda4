"""Tests for the llm-compact command line."""

import json

import pytest

from llm_compact.cli.app import main
from llm_compact.cli.parser import parse_arguments

_KEY_VARS = (
    "GOOGLE_API_KEY",
    "GEMINI_API_KEY",
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "OPENROUTER_API_KEY",
    "LLM_COMPACT_GOOGLE_API_KEY",
    "LLM_COMPACT_ANTHROPIC_API_KEY",
    "LLM_COMPACT_OPENAI_API_KEY",
    "LLM_COMPACT_OPENROUTER_API_KEY",
)


@pytest.fixture
def no_credentials(monkeypatch) -> None:
    for name in _KEY_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LLM_COMPACT_MODELS_CONFIG_PATH", "/nonexistent/llm-compact/models.yaml")


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cli.db'}"


def test_compact_arguments_default_from_config(make_config) -> None:
    config = make_config(CHUNK_TARGET_TOKENS=1234, MAP_CONCURRENCY=2)
    args = parse_arguments(config, ["compact", "chat.json", "--title", "Renamed", "--suggest"])

    assert args.command == "compact"
    assert args.file == "chat.json"
    assert args.title == "Renamed"
    assert args.chunk_tokens == 1234
    assert args.map_concurrency == 2
    assert args.suggest is True
    assert args.workspace is None


def test_overview_arguments(make_config) -> None:
    args = parse_arguments(
        make_config(),
        ["--verbose", "overview", "chat.json", "--no-diagrams", "--max-sections", "4", "--token-budget", "3000"],
    )
    assert args.verbose is True
    assert args.no_diagrams is True
    assert args.max_sections == 4
    assert args.token_budget == 3000


def test_subcommand_is_required(make_config) -> None:
    with pytest.raises(SystemExit):
        parse_arguments(make_config(), [])


def test_missing_result_and_session_exit_non_zero(no_credentials, db_url) -> None:
    assert main(["--db-url", db_url, "result", "ws", "conv"]) == 1
    assert main(["--db-url", db_url, "session", "does-not-exist"]) == 1


def test_usage_on_empty_database(no_credentials, db_url) -> None:
    assert main(["--db-url", db_url, "usage"]) == 0


def test_providers_without_credentials(no_credentials) -> None:
    assert main(["providers"]) == 1


def test_compact_without_credentials_reports_configuration_error(no_credentials, db_url, tmp_path) -> None:
    transcript = tmp_path / "chat.json"
    transcript.write_text(
        json.dumps({"workspace_id": "ws", "turns": [{"role": "user", "text": "hello"}, {"role": "assistant", "text": "hi"}]}),
        encoding="utf-8",
    )
    assert main(["--db-url", db_url, "compact", str(transcript)]) == 2


def test_compact_missing_file(no_credentials, db_url, tmp_path) -> None:
    assert main(["--db-url", db_url, "compact", str(tmp_path / "absent.json")]) == 1


def test_learnings_and_resources_arguments(make_config) -> None:
    assert parse_arguments(make_config(), ["learnings", "chat.json"]).file == "chat.json"
    args = parse_arguments(make_config(), ["resources", "chat.json", "--more"])
    assert args.command == "resources"
    assert args.more is True
    assert parse_arguments(make_config(), ["overview", "chat.json", "--resources"]).resources is True


@pytest.mark.parametrize("command", ["learnings", "resources"])
def test_learnings_and_resources_without_credentials(no_credentials, db_url, tmp_path, command) -> None:
    transcript = tmp_path / "chat.json"
    transcript.write_text(json.dumps({"turns": [{"role": "user", "text": "cache it?"}, {"role": "assistant", "text": "lru"}]}))
    assert main(["--db-url", db_url, command, str(transcript)]) == 2

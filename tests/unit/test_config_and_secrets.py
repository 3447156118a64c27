from pathlib import Path

import pytest

from chatflow.api.deps import build_deps
from chatflow.config import Settings
from chatflow.secrets import SecretNotFoundError, get_secret


def test_settings_defaults(monkeypatch):
    for name in (
        "CHATFLOW_DEFAULT_MODEL",
        "CHATFLOW_MAX_ITERATIONS",
        "CHATFLOW_NODE_TIMEOUT_S",
        "CHATFLOW_DATA_DIR",
        "CHATFLOW_DEBUG_LOGGING",
        "CHATFLOW_HISTORY_WINDOW",
        "API_PORT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("chatflow.config.load_dotenv", lambda: None)

    settings = Settings.from_env()
    assert settings.default_model == "gpt-4o-mini"
    assert settings.max_iterations == 6
    assert settings.history_window == 31
    assert settings.node_timeout_s is None
    assert settings.debug_logging is False
    assert settings.graphs_dir == Path("data") / "graphs"


def test_settings_from_env(monkeypatch, tmp_data_dir):
    monkeypatch.setattr("chatflow.config.load_dotenv", lambda: None)
    monkeypatch.setenv("CHATFLOW_DEFAULT_MODEL", "gpt-4.1-mini")
    monkeypatch.setenv("CHATFLOW_MAX_ITERATIONS", "10")
    monkeypatch.setenv("CHATFLOW_HISTORY_WINDOW", "0")
    monkeypatch.setenv("CHATFLOW_NODE_TIMEOUT_S", "2.5")
    monkeypatch.setenv("CHATFLOW_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("API_PORT", "9000")

    settings = Settings.from_env()
    assert settings.default_model == "gpt-4.1-mini"
    assert settings.max_iterations == 10
    assert settings.history_window == 0
    assert settings.node_timeout_s == 2.5
    assert settings.debug_logging is True
    assert settings.api_port == 9000
    assert settings.graphs_dir == tmp_data_dir / "graphs"


def test_secret_lookup_order(monkeypatch, tmp_secrets_dir):
    monkeypatch.delenv("CF_TEST_FILE_SECRET", raising=False)
    monkeypatch.delenv("CF_TEST_DOTENV_SECRET", raising=False)
    (tmp_secrets_dir / ".env").write_text("CF_TEST_DOTENV_SECRET=from-dotenv\n", encoding="utf-8")
    (tmp_secrets_dir / "CF_TEST_FILE_SECRET").write_text("from-file\n", encoding="utf-8")

    assert get_secret("CF_TEST_DOTENV_SECRET") == "from-dotenv"
    assert get_secret("CF_TEST_FILE_SECRET") == "from-file"

    monkeypatch.setenv("CF_TEST_FILE_SECRET", "from-env")
    assert get_secret("CF_TEST_FILE_SECRET") == "from-env"


def test_required_secret_missing(monkeypatch, tmp_secrets_dir):
    monkeypatch.delenv("CF_TEST_ABSENT", raising=False)
    assert get_secret("CF_TEST_ABSENT") is None
    with pytest.raises(SecretNotFoundError):
        get_secret("CF_TEST_ABSENT", required=True)


def test_build_deps_hands_debug_setting_to_client(monkeypatch, tmp_secrets_dir):  # noqa: ARG001
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.delenv("REDIRECT_NOTIFY_CHAT_ID", raising=False)

    assert build_deps(Settings(debug_logging=True)).llm._debug_enabled() is True
    assert build_deps(Settings()).llm._debug_enabled() is False

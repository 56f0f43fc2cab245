import pytest

from chorus.remote.config import BridgeConfig, parse_user_id
from chorus.server import ServerConfig
from chorus.session_manager import SessionManagerConfig

BRIDGE_ENV = ["TELEGRAM_BOT_TOKEN", "ALLOWED_USER_IDS", "PROJECT_DIR", "MAX_EXECUTION_TIME", "CLAUDE_BIN"]


@pytest.fixture
def clean_env(monkeypatch):
    for name in BRIDGE_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_parse_user_id():
    assert parse_user_id("123, 456") == 123
    assert parse_user_id(" 77 ") == 77
    assert parse_user_id("abc") is None
    assert parse_user_id("0") is None
    assert parse_user_id("") is None
    assert parse_user_id(None) is None


def test_flags_take_precedence(clean_env):
    clean_env.setenv("TELEGRAM_BOT_TOKEN", "env-token")
    clean_env.setenv("PROJECT_DIR", "/env/project")
    config = BridgeConfig.from_args([
        "--token=flag-token",
        "--user-id=55",
        "--project=/repo",
        "--max-time=10",
        "--pairing-code=ABC123",
    ])
    assert config.token == "flag-token"
    assert config.owner_id == 55
    assert config.project_dir == "/repo"
    assert config.max_time == 10
    assert config.pairing_code == "ABC123"
    assert config.agent_command == ["claude"]


def test_environment_fallbacks(clean_env):
    clean_env.setenv("TELEGRAM_BOT_TOKEN", "env-token")
    clean_env.setenv("ALLOWED_USER_IDS", "9,10")
    clean_env.setenv("PROJECT_DIR", "/env/project")
    clean_env.setenv("MAX_EXECUTION_TIME", "42")
    clean_env.setenv("CLAUDE_BIN", "claude --model opus")
    config = BridgeConfig.from_args([])
    assert config.token == "env-token"
    assert config.owner_id == 9
    assert config.project_dir == "/env/project"
    assert config.max_time == 42
    assert config.agent_command == ["claude", "--model", "opus"]


def test_missing_token_exits(clean_env):
    with pytest.raises(SystemExit):
        BridgeConfig.from_args([])


def test_server_and_session_config_from_env(monkeypatch):
    monkeypatch.setenv("CHORUS_PORT", "9901")
    monkeypatch.setenv("CHORUS_CORS_ORIGINS", "http://a.test, http://b.test")
    monkeypatch.setenv("CHORUS_SESSION_COMMAND", "claude --continue")
    monkeypatch.setenv("CHORUS_STARTUP_TIMEOUT", "5")
    server = ServerConfig.from_env()
    sessions = SessionManagerConfig.from_env()
    assert server.port == 9901
    assert server.cors_origins == ["http://a.test", "http://b.test"]
    assert sessions.default_command == ["claude", "--continue"]
    assert sessions.startup_timeout == 5

import pytest
from pydantic import ValidationError

from promptvault.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in (
        "TEST_MODE",
        "USE_MEMORY_KVS",
        "JWT_SECRET",
        "REDIS_URL",
        "CORS_ALLOW_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def test_defaults(isolated_env):
    settings = Settings.from_env()
    assert settings.redis_url == "redis://localhost:6379/0"
    assert settings.rate_limit_global_max == 1000
    assert settings.rate_limit_auth_max == 5
    assert settings.session_ttl_seconds == 86400
    assert settings.memory_kvs is False


def test_environment_overrides(isolated_env, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_SOCIAL_MAX", "7")
    monkeypatch.setenv("KVS_OPERATION_TIMEOUT", "0.25")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    settings = Settings.from_env()
    assert settings.rate_limit_social_max == 7
    assert settings.kvs_operation_timeout == 0.25
    assert settings.rate_limit_enabled is False


def test_dotenv_file_is_read(isolated_env, monkeypatch):
    (isolated_env / ".env").write_text("CACHE_TTL_SHORT=42\nJWT_SECRET=from-file\n")
    monkeypatch.setenv("CACHE_TTL_SHORT", "7")
    settings = Settings.from_env()
    assert settings.cache_ttl_short == 7
    assert settings.jwt_secret == "from-file"


def test_cors_origins_split(isolated_env, monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,,")
    settings = Settings.from_env()
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


@pytest.mark.parametrize(
    "name", ["SESSION_TTL_SECONDS", "PRESENCE_WINDOW_SECONDS", "CACHE_TTL_LONG"]
)
def test_durations_must_be_positive(isolated_env, monkeypatch, name):
    monkeypatch.setenv(name, "0")
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_test_mode_implies_memory_kvs(isolated_env, monkeypatch):
    monkeypatch.setenv("TEST_MODE", "true")
    assert Settings.from_env().memory_kvs is True


def test_missing_jwt_secret_is_generated(isolated_env):
    first = Settings.from_env()
    second = Settings.from_env()
    assert first.jwt_secret and len(first.jwt_secret) >= 64
    assert first.jwt_secret != second.jwt_secret


def test_settings_cache_reset(isolated_env, monkeypatch):
    reset_settings_cache()
    monkeypatch.setenv("RATE_LIMIT_SEARCH_MAX", "11")
    assert get_settings().rate_limit_search_max == 11
    monkeypatch.setenv("RATE_LIMIT_SEARCH_MAX", "12")
    assert get_settings().rate_limit_search_max == 11
    reset_settings_cache()
    assert get_settings().rate_limit_search_max == 12
    reset_settings_cache()

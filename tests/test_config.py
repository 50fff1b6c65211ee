import pytest

from chatharbor.config import AppEnv, Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings()
    assert settings.app_env == AppEnv.DEVELOPMENT
    assert settings.jwt_secret is None
    assert settings.clock_skew_seconds == 0
    assert settings.access_token_ttl_minutes == 7 * 24 * 60
    assert settings.max_message_length == 5000


@pytest.mark.parametrize(
    "app_env, override, expected",
    [
        ("production", None, True),
        ("staging", None, True),
        ("development", None, False),
        ("test", None, False),
        ("development", True, True),
        ("production", False, False),
    ],
)
def test_enforce_admission(app_env, override, expected):
    settings = Settings(app_env=app_env, admission_enforced=override)
    assert settings.enforce_admission is expected


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("APP_ENV", "Production")
    monkeypatch.setenv("JWT_SECRET", "s3cret")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("CLOCK_SKEW_SECONDS", "5")
    settings = Settings.from_env()
    assert settings.app_env == AppEnv.PRODUCTION
    assert settings.jwt_secret == "s3cret"
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.clock_skew_seconds == 5


def test_blank_values_become_none(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "  ")
    monkeypatch.setenv("REDIS_URL", "")
    settings = Settings.from_env()
    assert settings.jwt_secret is None
    assert settings.redis_url is None


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings() is not first

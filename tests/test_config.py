"""Tests for environment-driven settings."""

from gatehouse.config import Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings()
    assert settings.session_ttl_seconds == 7 * 24 * 60 * 60
    assert settings.max_sessions_per_user == 5
    assert settings.session_rotation_minutes == 30
    assert settings.session_cookie_name == "session-token"
    assert settings.email_verification_ttl_hours == 24
    assert settings.password_reset_ttl_minutes == 60
    assert settings.password_min_length == 8
    assert settings.register_rate_limit == 5
    assert settings.login_rate_limit == 10
    assert settings.forgot_password_rate_window_seconds == 3600


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("MAX_SESSIONS_PER_USER", "3")
    monkeypatch.setenv("SESSION_COOKIE_SECURE", "true")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("APP_BASE_URL", "https://app.example/")

    settings = Settings.from_env()

    assert settings.max_sessions_per_user == 3
    assert settings.session_cookie_secure is True
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.app_base_url == "https://app.example"


def test_blank_redis_url_disables_cache(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "   ")
    assert Settings.from_env().redis_url is None


def test_env_file_is_read(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SESSION_ROTATION_MINUTES", raising=False)
    (tmp_path / ".env").write_text("SESSION_ROTATION_MINUTES=45\n")

    assert Settings.from_env().session_rotation_minutes == 45


def test_settings_cache_is_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("PASSWORD_MIN_SCORE", "2")
    reset_settings_cache()

    assert get_settings().password_min_score == 2
    reset_settings_cache()

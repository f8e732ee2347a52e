import pytest
from pydantic import ValidationError

from authserver.config import (
    MIN_JWT_SECRET_LENGTH,
    Settings,
    get_settings,
    reset_settings_cache,
)

SECRET = "x" * MIN_JWT_SECRET_LENGTH


def test_defaults():
    settings = Settings(jwt_secret=SECRET)
    assert settings.access_token_exp_minutes == 15
    assert settings.refresh_token_exp_days == 7
    assert settings.auth_code_exp_minutes == 10
    assert settings.access_token_ttl_seconds == 900
    assert settings.auth_code_ttl_seconds == 600
    assert settings.require_pkce is True
    assert settings.allow_plain_pkce is False


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


@pytest.mark.parametrize(
    "field", ["access_token_exp_minutes", "refresh_token_exp_days", "auth_code_exp_minutes"]
)
def test_lifetimes_must_be_positive(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, **{field: 0})


def test_blank_redis_url_disables_redis():
    assert Settings(jwt_secret=SECRET, redis_url="").redis_url is None


def test_cors_origins_split_from_string():
    settings = Settings(
        jwt_secret=SECRET, cors_allow_origins=" https://a.example , ,https://b.example"
    )
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_from_env_reads_declared_names(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "env-secret-" + "y" * MIN_JWT_SECRET_LENGTH)
    monkeypatch.setenv("ACCESS_TOKEN_EXP_MINUTES", "5")
    monkeypatch.setenv("REQUIRE_PKCE", "false")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example")

    settings = Settings.from_env()

    assert settings.jwt_secret.startswith("env-secret-")
    assert settings.access_token_exp_minutes == 5
    assert settings.require_pkce is False
    assert settings.cors_allow_origins == ["https://a.example"]


def test_generated_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None).jwt_secret
    second = Settings(jwt_secret=None).jwt_secret

    assert len(first) >= MIN_JWT_SECRET_LENGTH
    assert first == second
    assert (tmp_path / ".jwt_secret").read_text() == first


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    monkeypatch.setenv("AUTH_CODE_EXP_MINUTES", "3")
    try:
        assert get_settings().auth_code_exp_minutes == 3
        monkeypatch.setenv("AUTH_CODE_EXP_MINUTES", "4")
        assert get_settings().auth_code_exp_minutes == 3
        reset_settings_cache()
        assert get_settings().auth_code_exp_minutes == 4
    finally:
        reset_settings_cache()

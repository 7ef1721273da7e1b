import pytest

from trustcore.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("LOGIN_RATE_LIMIT", "25")
    monkeypatch.setenv("SESSION_TTL_DAYS", "7")
    monkeypatch.setenv("REQUIRE_EMAIL_VERIFICATION", "false")
    settings = Settings.from_env()
    assert settings.login_rate_limit == 25
    assert settings.session_ttl_days == 7
    assert settings.require_email_verification is False


def test_blank_redis_url_disables_redis(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "  ")
    assert Settings.from_env().redis_url is None


def test_cors_origins_accept_csv_and_json():
    assert Settings(cors_allow_origins="https://a.test, https://b.test").cors_allow_origins == [
        "https://a.test",
        "https://b.test",
    ]
    assert Settings(cors_allow_origins='["https://c.test"]').cors_allow_origins == ["https://c.test"]


@pytest.mark.parametrize(
    "action",
    [
        "login",
        "signup",
        "two_factor_challenge",
        "recovery_code",
        "two_factor_enroll",
        "two_factor_disable",
        "account_deletion",
        "email_verification",
        "password_reset",
        "email_change",
        "password_change",
    ],
)
def test_every_guarded_action_has_a_policy(action):
    limit, window = Settings().rate_limit_policy(action)
    assert limit > 0 and window > 0


def test_challenge_policy_defaults():
    assert Settings().rate_limit_policy("two_factor_challenge") == (3, 300)


def test_unknown_action_raises():
    with pytest.raises(KeyError):
        Settings().rate_limit_policy("unknown")


def test_settings_cached_until_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("BUILD_SHA", "abc123")
    reset_settings_cache()
    assert get_settings().build_sha == "abc123"

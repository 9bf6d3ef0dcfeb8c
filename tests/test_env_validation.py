import pytest

from env_validation import EngineSettings, EnvironmentError, load_engine_settings, validate_environment

ENGINE_VARS = (
    "PROFILE_SYNC_URL",
    "AUTOMATION_WEBHOOK_URL",
    "ENGINE_TICK_INTERVAL",
    "ENGINE_COOLDOWN_SECONDS",
    "ENGINE_HANDLER_TIMEOUT",
    "ENGINE_HISTORY_SIZE",
    "ENGINE_ASSESSMENT_MAX_AGE",
    "ENGINE_ADAPTIVE_TARGETS",
    "BEHAVIOR_PERSIST",
)


@pytest.fixture
def clean_env(monkeypatch):
    for var in ENGINE_VARS:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def test_defaults_when_unset(clean_env):
    validate_environment()
    assert load_engine_settings() == EngineSettings()


def test_settings_read_from_environment(clean_env):
    clean_env.setenv("ENGINE_TICK_INTERVAL", "2.5")
    clean_env.setenv("ENGINE_HISTORY_SIZE", "1")
    clean_env.setenv("ENGINE_ADAPTIVE_TARGETS", "yes")
    clean_env.setenv("PROFILE_SYNC_URL", "https://profiles.example.com/sync")

    validate_environment()
    settings = load_engine_settings()
    assert settings.tick_interval == 2.5
    assert settings.history_size == 2
    assert settings.adaptive_targets is True
    assert settings.profile_sync_url == "https://profiles.example.com/sync"
    assert settings.automation_webhook_url is None


def test_invalid_url_is_rejected(clean_env):
    clean_env.setenv("AUTOMATION_WEBHOOK_URL", "ftp://automation")
    with pytest.raises(EnvironmentError):
        validate_environment()


@pytest.mark.parametrize("value", ["soon", "0", "-3"])
def test_non_positive_tunables_are_rejected(clean_env, value):
    clean_env.setenv("ENGINE_COOLDOWN_SECONDS", value)
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_non_numeric_value_falls_back_when_loading(clean_env):
    clean_env.setenv("ENGINE_HANDLER_TIMEOUT", "slow")
    assert load_engine_settings().handler_timeout == 10.0

"""Environment variable validation and engine settings."""

import os
import logging
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


@dataclass(frozen=True)
class EngineSettings:
    """Tunables for the orchestration loop and its collaborators."""

    tick_interval: float = 5.0
    cooldown_seconds: float = 30.0
    handler_timeout: float = 10.0
    history_size: int = 10
    assessment_max_age: float = 120.0
    adaptive_targets: bool = False
    behavior_persist: bool = False
    profile_sync_url: Optional[str] = None
    automation_webhook_url: Optional[str] = None


def validate_environment() -> None:
    """Validate engine environment variables.

    Raises EnvironmentError if validation fails.
    """
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "engine.db",
    }

    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "PROFILE_SYNC_URL": "Profile store endpoint for skill score sync",
        "AUTOMATION_WEBHOOK_URL": "Workflow automation webhook for optimization tasks",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    url_vars = {"PROFILE_SYNC_URL", "AUTOMATION_WEBHOOK_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    positive_vars = {
        "ENGINE_TICK_INTERVAL",
        "ENGINE_COOLDOWN_SECONDS",
        "ENGINE_HANDLER_TIMEOUT",
        "ENGINE_HISTORY_SIZE",
        "ENGINE_ASSESSMENT_MAX_AGE",
    }
    for var in positive_vars:
        value = os.getenv(var)
        if value is None:
            continue
        try:
            parsed = float(value)
        except ValueError:
            raise EnvironmentError(f"{var} must be numeric, got '{value}'")
        if parsed <= 0:
            raise EnvironmentError(f"{var} must be positive, got '{value}'")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.info("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, value, default)
        return default


def load_engine_settings() -> EngineSettings:
    """Build ``EngineSettings`` from the current environment."""
    return EngineSettings(
        tick_interval=get_env_float("ENGINE_TICK_INTERVAL", 5.0),
        cooldown_seconds=get_env_float("ENGINE_COOLDOWN_SECONDS", 30.0),
        handler_timeout=get_env_float("ENGINE_HANDLER_TIMEOUT", 10.0),
        history_size=max(2, int(get_env_float("ENGINE_HISTORY_SIZE", 10))),
        assessment_max_age=get_env_float("ENGINE_ASSESSMENT_MAX_AGE", 120.0),
        adaptive_targets=get_env_bool("ENGINE_ADAPTIVE_TARGETS", False),
        behavior_persist=get_env_bool("BEHAVIOR_PERSIST", False),
        profile_sync_url=os.getenv("PROFILE_SYNC_URL") or None,
        automation_webhook_url=os.getenv("AUTOMATION_WEBHOOK_URL") or None,
    )

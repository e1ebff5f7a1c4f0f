"""
Configuration loader for the WhatsApp Hub worker.
Reads settings from a YAML file with environment variable substitution,
then applies the worker's environment variable overrides.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid configuration: " + "; ".join(problems))


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./wahub.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"               # "sql" | "memory"


@dataclass
class DispatcherConfig:
    poll_interval_ms: int = 1500
    max_attempts: int = 5


@dataclass
class SessionConfig:
    driver: str = "wppconnect"                # "wppconnect" | "mock"
    session_name: str = "wingshack-session"
    token_folder: str = "wpp-session"
    server_url: str = "http://localhost:21465"
    secret_key: str = ""
    request_timeout_s: float = 60.0
    connect_timeout_s: float = 300.0
    status_poll_interval_s: float = 2.0
    events_webhook_url: str = ""
    events_token: str = ""                    # shared secret on /hooks/wppconnect
    acquire_attempts: int = 3
    retry_base_delay_s: float = 1.0
    retry_min_delay_s: float = 1.0
    settle_delay_s: float = 0.3
    cleanup_max_depth: int = 3

    @property
    def profile_dir(self) -> Path:
        return Path(self.token_folder) / self.session_name


@dataclass
class WebhookConfig:
    url: str = ""
    secret: str = ""
    timeout_s: float = 10.0


@dataclass
class Settings:
    app_name: str = "WhatsApp Hub Worker"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = True
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)


_settings: Optional[Settings] = None

# env var → (section, attribute, type)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "DATABASE_URL": ("database", "url", str),
    "STORE_BACKEND": ("database", "store_backend", str),
    "POLL_INTERVAL_MS": ("dispatcher", "poll_interval_ms", int),
    "MAX_ATTEMPTS": ("dispatcher", "max_attempts", int),
    "WPP_DRIVER": ("session", "driver", str),
    "WPP_SESSION_NAME": ("session", "session_name", str),
    "WPP_TOKEN_FOLDER": ("session", "token_folder", str),
    "WPPCONNECT_SERVER_URL": ("session", "server_url", str),
    "WPPCONNECT_SECRET_KEY": ("session", "secret_key", str),
    "WPPCONNECT_EVENTS_WEBHOOK_URL": ("session", "events_webhook_url", str),
    "WPPCONNECT_EVENTS_TOKEN": ("session", "events_token", str),
    "DASHBOARD_WEBHOOK_URL": ("webhook", "url", str),
    "WHATSAPP_WEBHOOK_SECRET": ("webhook", "secret", str),
    "LOG_LEVEL": ("", "log_level", str),
}


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _apply_section(target: Any, raw: dict[str, Any]) -> None:
    for key, value in (raw or {}).items():
        if hasattr(target, key):
            setattr(target, key, value)


def _apply_env_overrides(settings: Settings, environ: dict[str, str]) -> list[str]:
    problems = []
    for env_name, (section, attr, cast) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        target = getattr(settings, section) if section else settings
        try:
            setattr(target, attr, cast(raw))
        except ValueError:
            problems.append(f"{env_name} must be {cast.__name__}, got {raw!r}")
    return problems


def load_settings(config_path: str = None, environ: dict[str, str] = None) -> Settings:
    """Load settings from YAML file, then environment overrides."""
    global _settings

    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = environ.get(
            "WAHUB_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_level = raw.get("log_level", settings.log_level)
        settings.log_json = raw.get("log_json", settings.log_json)
        _apply_section(settings.database, raw.get("database"))
        _apply_section(settings.dispatcher, raw.get("dispatcher"))
        _apply_section(settings.session, raw.get("session"))
        _apply_section(settings.webhook, raw.get("webhook"))

    problems = _apply_env_overrides(settings, environ)
    if problems:
        raise ConfigError(problems)

    _settings = settings
    return settings


def validate_settings(settings: Settings) -> Settings:
    """Check every option the worker needs at startup. Raises ConfigError."""
    problems = []
    if settings.dispatcher.max_attempts < 1:
        problems.append("dispatcher.max_attempts must be >= 1")
    if settings.dispatcher.poll_interval_ms <= 0:
        problems.append("dispatcher.poll_interval_ms must be > 0")
    if not settings.webhook.url:
        problems.append("webhook.url (DASHBOARD_WEBHOOK_URL) is required")
    if not settings.webhook.secret:
        problems.append("webhook.secret (WHATSAPP_WEBHOOK_SECRET) is required")
    if not settings.session.events_token:
        problems.append("session.events_token (WPPCONNECT_EVENTS_TOKEN) is required")
    if not settings.session.session_name:
        problems.append("session.session_name is required")
    if settings.session.driver == "wppconnect" and not settings.session.server_url:
        problems.append("session.server_url (WPPCONNECT_SERVER_URL) is required")
    if settings.session.driver not in ("wppconnect", "mock"):
        problems.append(f"unknown session.driver '{settings.session.driver}'")
    if settings.session.acquire_attempts < 1:
        problems.append("session.acquire_attempts must be >= 1")
    if settings.database.store_backend not in ("sql", "memory"):
        problems.append(f"unknown database.store_backend '{settings.database.store_backend}'")
    if problems:
        raise ConfigError(problems)
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None

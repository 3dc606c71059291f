"""
Configuration loader for the Campaign Relay service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"                        # "anthropic" | "openai"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 1024
    api_key: str = ""
    timeout_s: float = 30.0


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./campaign_relay.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"
    message_log_backend: str = "memory"                # "sql" | "memory" | "file"
    message_log_dir: str = "./data/messages"           # directory for file backend
    pool_size: int = 10                                # ignored for SQLite
    sqlite_busy_timeout_ms: int = 5000


@dataclass
class CallProviderConfig:
    base_url: str = "https://api.elevenlabs.io/v1"
    api_key: str = ""
    agent_id: str = ""
    agent_phone_number_id: str = ""
    timeout_s: float = 30.0


@dataclass
class WhatsAppConfig:
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    timeout_s: float = 30.0


@dataclass
class MonitorConfig:
    poll_interval_s: float = 15.0
    max_duration_s: float = 3600.0      # hard ceiling per batch
    max_iterations: int = 240
    side_effect_concurrency: int = 5


@dataclass
class SessionConfig:
    history_window: int = 10
    session_ttl_s: float = 1800.0
    max_sessions: int = 1000
    generation_timeout_s: float = 30.0


@dataclass
class EventsConfig:
    subscriber_queue_size: int = 100
    heartbeat_s: float = 30.0


@dataclass
class FollowUpConfig:
    enabled: bool = True
    default_agent_id: str = ""
    default_client_name: str = "Cliente"
    message_template: str = (
        "¡Hola {name}! 👋\n\n"
        "Acabamos de tener una conversación telefónica y me gustaría continuar el diálogo contigo por aquí.\n\n"
        "¿En qué más puedo ayudarte? Puedo responder tus preguntas por aquí. 😊"
    )


@dataclass
class Settings:
    app_name: str = "CampaignRelay"
    debug: bool = False
    timezone: str = "UTC"
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    call_provider: CallProviderConfig = field(default_factory=CallProviderConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    followup: FollowUpConfig = field(default_factory=FollowUpConfig)


_settings: Optional[Settings] = None


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


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw dict, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CAMPAIGN_RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "llm" in raw:
            settings.llm = _section(LLMConfig, raw["llm"])
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "call_provider" in raw:
            settings.call_provider = _section(CallProviderConfig, raw["call_provider"])
        if "whatsapp" in raw:
            settings.whatsapp = _section(WhatsAppConfig, raw["whatsapp"])
        if "monitor" in raw:
            settings.monitor = _section(MonitorConfig, raw["monitor"])
        if "sessions" in raw:
            settings.sessions = _section(SessionConfig, raw["sessions"])
        if "events" in raw:
            settings.events = _section(EventsConfig, raw["events"])
        if "followup" in raw:
            settings.followup = _section(FollowUpConfig, raw["followup"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings

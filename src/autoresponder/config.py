"""Settings for the auto-responder.

Settings come from ~/.autoresponder/config.yaml, then environment variables
override individual fields. The standalone Bot API variant reads its own
three options from the environment only (see ``BotSettings``).
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from autoresponder.messaging import ChatKind


class CannedMessages(BaseModel):
    """Texts the responder sends. They depend only on the conversation kind."""
    private: str = (
        "Thank you for reaching out! I'll review your message and get back to "
        "you as soon as possible. If this is urgent, please call our support line."
    )
    group: str = (
        "Thank you for your message! Our team will get back to you shortly. "
        "We typically respond within 24 hours during business days."
    )
    acknowledgement: str = "Message received! I'll review and respond shortly."
    bot_acknowledgement: str = "Message received! Manager will be notified."

    def for_kind(self, kind: ChatKind) -> str:
        return self.group if kind == ChatKind.GROUP else self.private


class Settings(BaseModel):
    credentials_path: Path = Path("config.json")
    response_window_seconds: float = 120.0
    test_window_seconds: float = 10.0
    code_timeout_seconds: float = 30.0
    auth_timeout_seconds: float = 60.0
    code_idle_timeout_seconds: float = 300.0
    stop_grace_seconds: float = 5.0
    host: str = "127.0.0.1"
    port: int = 3001
    messages: CannedMessages = Field(default_factory=CannedMessages)


class BotSettings(BaseModel):
    bot_token: str = ""
    admin_chat_id: int | None = None
    test_group_id: int | None = None

    @classmethod
    def from_env(cls) -> "BotSettings":
        """Read BOT_TOKEN, ADMIN_CHAT_ID and TEST_GROUP_ID (after .env)."""
        from dotenv import load_dotenv

        load_dotenv()
        return cls(
            bot_token=os.environ.get("BOT_TOKEN", ""),
            admin_chat_id=_int_or_none(os.environ.get("ADMIN_CHAT_ID")),
            test_group_id=_int_or_none(os.environ.get("TEST_GROUP_ID")),
        )


# Environment variable -> Settings field
ENV_OVERRIDES = {
    "AUTORESPONDER_CREDENTIALS": "credentials_path",
    "AUTORESPONDER_RESPONSE_WINDOW": "response_window_seconds",
    "AUTORESPONDER_TEST_WINDOW": "test_window_seconds",
    "AUTORESPONDER_HOST": "host",
    "PORT": "port",
}


def _int_or_none(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(value.strip())


def get_config_dir() -> Path:
    """Get the auto-responder config directory."""
    return Path.home() / ".autoresponder"


def get_config_path() -> Path:
    """Get the settings file path."""
    return get_config_dir() / "config.yaml"


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load the raw settings file (empty dict when absent)."""
    config_path = path or get_config_path()
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


def load_settings(
    path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> Settings:
    """Build Settings from the YAML file plus environment overrides."""
    data = load_config(path)
    env = os.environ if environ is None else environ
    for var, field_name in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            data[field_name] = value
    return Settings.model_validate(data)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Cached settings for the current process."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None

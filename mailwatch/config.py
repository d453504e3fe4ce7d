"""Mailwatch configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Per-user mailbox and SMS credentials live in the settings store; the
``IMAP_`` and ``SMS_`` values here are the global fallbacks.
"""

from __future__ import annotations

from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode


class ImapConfig(BaseSettings):
    """Global fallback IMAP account, used only by listeners without a user id."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(default="imap.gmail.com", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    username: str = Field(default="", description="IMAP login username")
    password: SecretStr = Field(default=SecretStr(""), description="IMAP login password")


class ListenerConfig(BaseSettings):
    """Polling and reconnect behaviour shared by every mailbox listener."""

    model_config = {"env_prefix": "LISTENER_"}

    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to poll")
    poll_interval_seconds: float = Field(
        default=30.0,
        description="Seconds between IMAP poll cycles",
    )
    max_retries: int = Field(
        default=3,
        description="Consecutive connection failures before the listener gives up",
    )
    backoff_base_seconds: float = Field(
        default=1.0,
        description="Base of the reconnect backoff (base * 2^failures)",
    )
    backoff_max_seconds: float = Field(
        default=30.0,
        description="Upper bound for a single reconnect delay",
    )
    lookback_hours: int = Field(
        default=24,
        description="Only unseen messages received within this window are processed",
    )
    skip_automated: bool = Field(
        default=False,
        description="Skip messages from automated senders before classification",
    )


class GeminiConfig(BaseSettings):
    """Gemini classifier settings."""

    model_config = {"env_prefix": "GEMINI_"}

    api_key: SecretStr = Field(default=SecretStr(""), description="Gemini API key")
    model: str = Field(default="gemini-2.5-flash", description="Gemini model name")
    max_attempts: int = Field(default=3, description="Attempts per classification")
    base_delay_seconds: float = Field(
        default=6.0,
        description="First rate-limit backoff when the provider gives no hint",
    )
    max_delay_seconds: float = Field(
        default=30.0,
        description="Cap for computed rate-limit backoff",
    )
    body_limit: int = Field(default=2000, description="Characters of body sent to the model")


class SmsConfig(BaseSettings):
    """SMS gateway endpoint and global fallback credentials."""

    model_config = {"env_prefix": "SMS_"}

    endpoint: str = Field(
        default="https://interoperability.simplesms.ao/v1/send-sms",
        description="SMS provider send endpoint",
    )
    token: SecretStr = Field(default=SecretStr(""), description="Fallback bearer token")
    numbers: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Fallback recipient numbers (comma-separated in env)",
    )
    timeout_seconds: float = Field(default=10.0, description="HTTP request timeout")
    max_length: int = Field(default=160, description="Maximum SMS body length")

    @field_validator("numbers", mode="before")
    @classmethod
    def _split_numbers(cls, value: object) -> object:
        if isinstance(value, str):
            return [n.strip() for n in value.split(",") if n.strip()]
        return value


class VaultConfig(BaseSettings):
    """Credential vault key material."""

    model_config = {"env_prefix": "VAULT_"}

    passphrase: SecretStr = Field(
        default=SecretStr("change-me-in-production"),
        description="Server-wide passphrase the AES key is derived from",
    )


class DatabaseConfig(BaseSettings):
    """Document store connection."""

    model_config = {"env_prefix": "DATABASE_"}

    url: str = Field(
        default="sqlite+aiosqlite:///./mailwatch.db",
        description="Async SQLAlchemy URL",
    )
    echo: bool = Field(default=False, description="Log emitted SQL")


class Settings(BaseSettings):
    """Root settings for the mailwatch service.

    Nested configs are populated from their own env-var prefixes.
    Example: ``MAILWATCH_PORT=9000``, ``GEMINI_API_KEY=...``
    """

    model_config = {"env_prefix": "MAILWATCH_"}

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3000, description="Bind port")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(
        default=True,
        description="Use JSON log output (True for prod, False for dev)",
    )

    imap: ImapConfig = Field(default_factory=ImapConfig)
    listener: ListenerConfig = Field(default_factory=ListenerConfig)
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    sms: SmsConfig = Field(default_factory=SmsConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

"""Data models for the monitoring pipeline."""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class Importance(str, Enum):
    """Importance levels the classifier may assign."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> Importance | None:
        """Map a provider answer onto the enum, or ``None`` if unrecognised.

        Portuguese labels are accepted alongside the English ones.
        """
        if not isinstance(value, str):
            return None
        return _IMPORTANCE_ALIASES.get(value.strip().lower())


_IMPORTANCE_ALIASES: dict[str, Importance] = {
    "high": Importance.HIGH,
    "alta": Importance.HIGH,
    "medium": Importance.MEDIUM,
    "média": Importance.MEDIUM,
    "media": Importance.MEDIUM,
    "low": Importance.LOW,
    "baixa": Importance.LOW,
}


class ClassificationResult(BaseModel):
    """Outcome of classifying one email. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    importance: Importance = Field(description="Assigned importance level")
    summary: str = Field(max_length=200, description="Human-readable summary")
    confidence: float = Field(ge=0, le=100, description="Classifier confidence, 0-100")
    keywords: tuple[str, ...] = Field(default=(), max_length=10, description="Up to 10 keywords")


class ProcessedEmail(BaseModel):
    """A parsed, classified email as returned by the processor."""

    user_id: str = Field(description="Owning user")
    message_id: str = Field(description="Provider message identifier")
    sender: str = Field(description="Sender display string")
    recipient: str = Field(description="Recipient display string")
    subject: str = Field(description="Message subject")
    date: datetime = Field(description="Original message date")
    content: str = Field(description="Extracted text, capped in length")
    classification: ClassificationResult
    sms_sent: bool = Field(default=False, description="Whether an SMS alert went out")
    processed_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the processor finished (UTC)",
    )


class DailyStats(BaseModel):
    """Per-user counters for one calendar day."""

    user_id: str
    day: date
    total: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    alerts_sent: int = 0


class StatsSummary(BaseModel):
    """All-time totals for a user."""

    total: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    alerts_sent: int = 0
    unique_senders: int = 0


class UserCredentials(BaseModel):
    """Decrypted per-user credentials, held only in memory."""

    user_id: str | None = None
    mailbox_host: str
    mailbox_port: int = 993
    mailbox_user: str
    mailbox_password: SecretStr
    sms_recipient: str | None = None
    sms_token: SecretStr | None = None


class SmsResult(BaseModel):
    """Structured result of an SMS send. Failures never raise."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class ListenerPhase(str, Enum):
    """Lifecycle phase of a mailbox listener."""

    IDLE = "idle"
    CONNECTING = "connecting"
    POLLING = "polling"
    PROCESSING = "processing"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class ListenerStatus(BaseModel):
    """Snapshot reported by ``MailboxListener.status()``."""

    running: bool
    connected: bool
    retry_count: int
    phase: ListenerPhase
    last_error: str | None = None


class MailboxStats(BaseModel):
    """Message counts of the watched mailbox."""

    total_messages: int
    unread_messages: int

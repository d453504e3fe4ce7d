"""Mailwatch: IMAP mailbox monitor with AI importance triage and SMS alerts.

Public API re-exported here for convenience::

    from mailwatch import EmailProcessor, ListenerRegistry, MailboxListener
"""

from .classifier import GeminiClassifier
from .config import (
    DatabaseConfig,
    GeminiConfig,
    ImapConfig,
    ListenerConfig,
    Settings,
    SmsConfig,
    VaultConfig,
)
from .errors import (
    ClassificationError,
    ConfigurationError,
    GatewayError,
    MailboxConnectionError,
    MailwatchError,
    ParseError,
    PersistenceError,
)
from .listener import MailboxListener
from .logging import setup_logging
from .models import (
    ClassificationResult,
    DailyStats,
    Importance,
    ListenerPhase,
    ListenerStatus,
    ProcessedEmail,
    SmsResult,
    StatsSummary,
    UserCredentials,
)
from .processor import EmailProcessor
from .registry import ListenerRegistry
from .sms import SmsGateway
from .store import EmailStore, SettingsStore
from .vault import CredentialVault

__all__ = [
    "ClassificationError",
    "ClassificationResult",
    "ConfigurationError",
    "CredentialVault",
    "DailyStats",
    "DatabaseConfig",
    "EmailProcessor",
    "EmailStore",
    "GatewayError",
    "GeminiClassifier",
    "GeminiConfig",
    "ImapConfig",
    "Importance",
    "ListenerConfig",
    "ListenerPhase",
    "ListenerRegistry",
    "ListenerStatus",
    "MailboxConnectionError",
    "MailboxListener",
    "MailwatchError",
    "ParseError",
    "PersistenceError",
    "ProcessedEmail",
    "Settings",
    "SettingsStore",
    "SmsConfig",
    "SmsGateway",
    "SmsResult",
    "StatsSummary",
    "UserCredentials",
    "VaultConfig",
    "setup_logging",
]

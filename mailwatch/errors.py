"""Exception taxonomy for the monitoring pipeline."""

from __future__ import annotations


class MailwatchError(Exception):
    """Base class for all mailwatch errors."""


class ConfigurationError(MailwatchError):
    """Missing or placeholder credentials. Fatal for the affected listener."""


class MailboxConnectionError(MailwatchError, ConnectionError):
    """IMAP protocol or network failure. Retried with backoff by the listener."""


class ParseError(MailwatchError):
    """A raw message could not be parsed. Fatal for that message only."""


class ClassificationError(MailwatchError):
    """The AI provider failed after retries."""


class GatewayError(MailwatchError):
    """The SMS provider rejected a send or could not be reached."""


class PersistenceError(MailwatchError):
    """The document store rejected a write."""

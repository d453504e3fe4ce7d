"""EmailProcessor: raw message -> parsed, classified, alerted, persisted record."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from .classifier import GeminiClassifier, default_result
from .errors import ClassificationError, PersistenceError
from .models import ClassificationResult, Importance, ProcessedEmail
from .parser import MimeParser
from .sms import SmsGateway
from .store import EmailStore

logger = structlog.get_logger()

CONTENT_LIMIT = 2000
AUTOMATED_SENDER_MARKERS = ("noreply", "no-reply", "donotreply", "automated")
UNKNOWN_SENDER = "unknown sender"
UNKNOWN_RECIPIENT = "unknown recipient"
NO_SUBJECT = "(no subject)"


def should_process(sender: str, subject: str) -> bool:
    """Reject likely-automated senders and near-empty subjects."""
    sender_lower = sender.lower()
    if any(marker in sender_lower for marker in AUTOMATED_SENDER_MARKERS):
        return False
    return len(subject.strip()) >= 3


class EmailProcessor:
    """Turns a raw RFC 822 message into a persisted :class:`ProcessedEmail`.

    Only :class:`~mailwatch.errors.ParseError` escapes ``process``;
    classifier, gateway and persistence failures are downgraded so the
    caller can still flag the message as seen.
    """

    def __init__(
        self,
        classifier: GeminiClassifier,
        gateway: SmsGateway,
        store: EmailStore,
        *,
        parser: MimeParser | None = None,
    ) -> None:
        self._classifier = classifier
        self._gateway = gateway
        self._store = store
        self._parser = parser or MimeParser()

    should_process = staticmethod(should_process)

    async def process(self, raw_message: bytes, message_id: str, user_id: str) -> ProcessedEmail:
        parsed = self._parser.parse(raw_message)

        sender = parsed.sender or UNKNOWN_SENDER
        recipient = parsed.recipient or UNKNOWN_RECIPIENT
        subject = parsed.subject or NO_SUBJECT
        content = parsed.text_content(CONTENT_LIMIT)

        try:
            classification = await self._classifier.analyze(subject, content, sender)
        except ClassificationError as exc:
            logger.warning("classification_downgraded", user_id=user_id, message_id=message_id, error=str(exc))
            classification = default_result("Email received - analysis failed")

        sms_sent = False
        if classification.importance is Importance.HIGH:
            sms_sent = await self._escalate(sender, subject, classification, message_id, user_id)

        processed = ProcessedEmail(
            user_id=user_id,
            message_id=message_id,
            sender=sender,
            recipient=recipient,
            subject=subject,
            date=parsed.date or datetime.now(UTC),
            content=content,
            classification=classification,
            sms_sent=sms_sent,
        )

        try:
            await self._store.save_processed_email(processed)
        except PersistenceError as exc:
            logger.warning("processed_email_not_saved", user_id=user_id, message_id=message_id, error=str(exc))

        logger.info(
            "email_processed",
            user_id=user_id,
            message_id=message_id,
            sender=sender,
            subject=subject,
            importance=classification.importance.value,
            confidence=classification.confidence,
            sms_sent=sms_sent,
            keywords=list(classification.keywords),
        )
        return processed

    async def _escalate(
        self,
        sender: str,
        subject: str,
        classification: ClassificationResult,
        message_id: str,
        user_id: str,
    ) -> bool:
        """Send the SMS alert once per message. Returns whether an alert went out."""
        try:
            previous = await self._store.get_processed_email(user_id, message_id)
        except PersistenceError as exc:
            logger.warning("alert_history_unavailable", user_id=user_id, message_id=message_id, error=str(exc))
            previous = None
        if previous is not None and previous.sms_sent:
            logger.info("sms_alert_already_sent", user_id=user_id, message_id=message_id)
            return True

        result = await self._gateway.send_alert(sender, subject, classification.summary, user_id=user_id)
        if not result.success:
            logger.error("sms_alert_failed", user_id=user_id, message_id=message_id, error=result.error)
        return result.success

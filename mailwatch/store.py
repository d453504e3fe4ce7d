"""Document store: user settings, processed emails and daily statistics.

Processed emails are upserted on ``(user_id, message_id)`` and daily
counters are bumped with ``INSERT ... ON CONFLICT DO UPDATE`` so both
writes are atomic on SQLite and PostgreSQL alike.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from typing import Any

import structlog
from pydantic import SecretStr
from sqlalchemy import case, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import DailyStatsRecord, Database, ProcessedEmailRecord, UserSettingsRecord
from .errors import PersistenceError
from .models import (
    ClassificationResult,
    DailyStats,
    Importance,
    ProcessedEmail,
    StatsSummary,
    UserCredentials,
)
from .vault import CredentialVault

logger = structlog.get_logger()

_COUNTERS = ("total", "high", "medium", "low", "alerts_sent")


def _insert_for(dialect: str):
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise PersistenceError(f"upsert not supported on dialect {dialect!r}")


def _to_model(record: ProcessedEmailRecord) -> ProcessedEmail:
    return ProcessedEmail(
        user_id=record.user_id,
        message_id=record.message_id,
        sender=record.sender,
        recipient=record.recipient,
        subject=record.subject,
        date=record.date,
        content=record.content,
        classification=ClassificationResult(
            importance=Importance(record.importance),
            summary=record.summary,
            confidence=record.confidence,
            keywords=tuple(record.keywords or ()),
        ),
        sms_sent=record.sms_sent,
        processed_at=record.processed_at,
    )


def _counts(email: ProcessedEmail) -> dict[str, int]:
    importance = email.classification.importance
    return {
        "total": 1,
        "high": int(importance is Importance.HIGH),
        "medium": int(importance is Importance.MEDIUM),
        "low": int(importance is Importance.LOW),
        "alerts_sent": int(email.sms_sent),
    }


class EmailStore:
    """Persistence and query surface for processed emails and daily stats."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def save_processed_email(self, email: ProcessedEmail) -> bool:
        """Upsert *email* and count it in today's stats if it is new.

        ``sms_sent`` never goes back from true to false, and an alert
        first sent on a repeat pass is still counted once.  Returns
        ``True`` when the record did not exist before.  Raises
        :class:`PersistenceError` on database failures.
        """
        insert = _insert_for(self._db.dialect)
        values: dict[str, Any] = {
            "user_id": email.user_id,
            "message_id": email.message_id,
            "sender": email.sender,
            "recipient": email.recipient,
            "subject": email.subject,
            "date": email.date,
            "content": email.content,
            "importance": email.classification.importance.value,
            "summary": email.classification.summary,
            "confidence": email.classification.confidence,
            "keywords": list(email.classification.keywords),
            "sms_sent": email.sms_sent,
            "processed_at": email.processed_at,
        }
        stmt = insert(ProcessedEmailRecord).values(**values)
        updates = {k: stmt.excluded[k] for k in values if k not in ("user_id", "message_id", "sms_sent")}
        updates["sms_sent"] = or_(ProcessedEmailRecord.sms_sent, stmt.excluded.sms_sent)
        stmt = stmt.on_conflict_do_update(index_elements=["user_id", "message_id"], set_=updates)

        day = email.processed_at.date()
        try:
            async with self._db.session() as session, session.begin():
                existing = (
                    await session.execute(
                        select(ProcessedEmailRecord.id, ProcessedEmailRecord.sms_sent).where(
                            ProcessedEmailRecord.user_id == email.user_id,
                            ProcessedEmailRecord.message_id == email.message_id,
                        )
                    )
                ).first()
                await session.execute(stmt)
                is_new = existing is None
                if is_new:
                    await self._increment(session, email.user_id, day, _counts(email))
                elif email.sms_sent and not existing.sms_sent:
                    await self._increment(session, email.user_id, day, {"alerts_sent": 1})
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to save email {email.message_id}: {exc}") from exc

        logger.debug("processed_email_saved", user_id=email.user_id, message_id=email.message_id, new=is_new)
        return is_new

    async def _increment(
        self,
        session: AsyncSession,
        user_id: str,
        day: date,
        counts: dict[str, int],
    ) -> None:
        insert = _insert_for(self._db.dialect)
        row = {col: counts.get(col, 0) for col in _COUNTERS}
        stmt = insert(DailyStatsRecord).values(user_id=user_id, day=day, **row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "day"],
            set_={col: getattr(DailyStatsRecord, col) + stmt.excluded[col] for col in _COUNTERS},
        )
        await session.execute(stmt)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_processed_email(self, user_id: str, message_id: str) -> ProcessedEmail | None:
        try:
            async with self._db.session() as session:
                record = await session.scalar(
                    select(ProcessedEmailRecord).where(
                        ProcessedEmailRecord.user_id == user_id,
                        ProcessedEmailRecord.message_id == message_id,
                    )
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to load email {message_id}: {exc}") from exc
        return _to_model(record) if record is not None else None

    async def list_processed_emails(
        self,
        user_id: str,
        *,
        importance: Importance | None = None,
        sender: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ProcessedEmail]:
        stmt = select(ProcessedEmailRecord).where(ProcessedEmailRecord.user_id == user_id)
        if importance is not None:
            stmt = stmt.where(ProcessedEmailRecord.importance == importance.value)
        if sender:
            stmt = stmt.where(ProcessedEmailRecord.sender.ilike(f"%{sender}%"))
        if date_from is not None:
            stmt = stmt.where(ProcessedEmailRecord.processed_at >= date_from)
        if date_to is not None:
            stmt = stmt.where(ProcessedEmailRecord.processed_at <= date_to)
        stmt = stmt.order_by(ProcessedEmailRecord.processed_at.desc()).offset(offset).limit(limit)

        async with self._db.session() as session:
            records = (await session.scalars(stmt)).all()
        return [_to_model(r) for r in records]

    async def get_daily_stats(self, user_id: str, days: int = 7) -> list[DailyStats]:
        since = datetime.now(UTC).date() - timedelta(days=days)
        stmt = (
            select(DailyStatsRecord)
            .where(DailyStatsRecord.user_id == user_id, DailyStatsRecord.day >= since)
            .order_by(DailyStatsRecord.day.desc())
        )
        async with self._db.session() as session:
            records = (await session.scalars(stmt)).all()
        return [
            DailyStats(
                user_id=r.user_id,
                day=r.day,
                **{col: getattr(r, col) for col in _COUNTERS},
            )
            for r in records
        ]

    async def get_summary(self, user_id: str) -> StatsSummary:
        def _count(importance: Importance):
            return func.coalesce(
                func.sum(case((ProcessedEmailRecord.importance == importance.value, 1), else_=0)),
                0,
            )

        stmt = select(
            func.count(ProcessedEmailRecord.id),
            _count(Importance.HIGH),
            _count(Importance.MEDIUM),
            _count(Importance.LOW),
            func.coalesce(func.sum(case((ProcessedEmailRecord.sms_sent.is_(True), 1), else_=0)), 0),
            func.count(func.distinct(ProcessedEmailRecord.sender)),
        ).where(ProcessedEmailRecord.user_id == user_id)

        async with self._db.session() as session:
            row = (await session.execute(stmt)).one()
        total, high, medium, low, alerts, senders = row
        return StatsSummary(
            total=total,
            high=high,
            medium=medium,
            low=low,
            alerts_sent=alerts,
            unique_senders=senders,
        )


class SettingsStore:
    """Per-user mailbox and SMS credentials, encrypted at rest via the vault."""

    def __init__(self, database: Database, vault: CredentialVault) -> None:
        self._db = database
        self._vault = vault

    async def get(self, user_id: str) -> UserCredentials | None:
        """Load and decrypt the settings for *user_id*, or ``None``."""
        try:
            async with self._db.session() as session:
                record = await session.get(UserSettingsRecord, user_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to load settings for {user_id}: {exc}") from exc
        if record is None:
            return None

        token = (
            SecretStr(self._vault.decrypt(record.sms_token_encrypted))
            if record.sms_token_encrypted
            else None
        )
        return UserCredentials(
            user_id=record.user_id,
            mailbox_host=record.mailbox_host,
            mailbox_port=record.mailbox_port,
            mailbox_user=record.mailbox_user,
            mailbox_password=SecretStr(self._vault.decrypt(record.mailbox_password_encrypted)),
            sms_recipient=record.sms_recipient,
            sms_token=token,
        )

    async def save(
        self,
        user_id: str,
        *,
        mailbox_host: str,
        mailbox_port: int,
        mailbox_user: str,
        mailbox_password: str,
        sms_recipient: str | None = None,
        sms_token: str | None = None,
    ) -> None:
        """Create or replace the settings for *user_id*, encrypting secrets."""
        now = datetime.now(UTC)
        try:
            async with self._db.session() as session, session.begin():
                record = await session.get(UserSettingsRecord, user_id)
                if record is None:
                    record = UserSettingsRecord(user_id=user_id, created_at=now)
                    session.add(record)
                record.mailbox_host = mailbox_host
                record.mailbox_port = mailbox_port
                record.mailbox_user = mailbox_user
                record.mailbox_password_encrypted = self._vault.encrypt(mailbox_password)
                record.sms_recipient = sms_recipient
                record.sms_token_encrypted = self._vault.encrypt(sms_token) if sms_token else None
                record.updated_at = now
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to save settings for {user_id}: {exc}") from exc
        logger.info("user_settings_saved", user_id=user_id, has_sms_token=bool(sms_token))

    async def migrate_secrets(self) -> int:
        """Re-encrypt stored secrets that predate the ``v1`` scheme tag.

        Returns the number of users whose record was rewritten.
        """
        migrated = 0
        try:
            async with self._db.session() as session, session.begin():
                records = (await session.scalars(select(UserSettingsRecord))).all()
                for record in records:
                    changed = False
                    if not CredentialVault.is_encrypted(record.mailbox_password_encrypted):
                        plain = self._vault.decrypt(record.mailbox_password_encrypted)
                        record.mailbox_password_encrypted = self._vault.encrypt(plain)
                        changed = True
                    token = record.sms_token_encrypted
                    if token and not CredentialVault.is_encrypted(token):
                        record.sms_token_encrypted = self._vault.encrypt(self._vault.decrypt(token))
                        changed = True
                    if changed:
                        record.updated_at = datetime.now(UTC)
                        migrated += 1
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to migrate stored secrets: {exc}") from exc
        if migrated:
            logger.info("user_secrets_migrated", count=migrated)
        return migrated

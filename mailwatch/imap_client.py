"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
import re
from datetime import datetime

import structlog

from .errors import MailboxConnectionError
from .models import MailboxStats, UserCredentials

logger = structlog.get_logger()

_CONNECTION_ERRORS = (imaplib.IMAP4.error, OSError, EOFError)
_STATUS_COUNTS = re.compile(rb"(MESSAGES|UNSEEN)\s+(\d+)", re.IGNORECASE)


class AsyncImapClient:
    """Async-friendly IMAP client for one mailbox session.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` so a slow server never blocks other
    listeners.  Commands on one session are serialized.  Protocol and
    socket failures surface as :class:`MailboxConnectionError`.
    """

    def __init__(
        self,
        credentials: UserCredentials,
        mailbox: str = "INBOX",
        *,
        timeout: float = 30.0,
    ) -> None:
        self._credentials = credentials
        self._mailbox = mailbox
        self._timeout = timeout
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._authenticated = False
        self._lock = asyncio.Lock()

    @property
    def authenticated(self) -> bool:
        return self._conn is not None and self._authenticated

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, login, and select the configured mailbox."""
        try:
            await asyncio.to_thread(self._connect_sync)
        except _CONNECTION_ERRORS as exc:
            self._conn = None
            self._authenticated = False
            raise MailboxConnectionError(f"IMAP connect failed: {exc}") from exc
        logger.info(
            "imap_connected",
            host=self._credentials.mailbox_host,
            user_id=self._credentials.user_id,
            mailbox=self._mailbox,
        )

    def _connect_sync(self) -> None:
        host = self._credentials.mailbox_host
        port = self._credentials.mailbox_port
        if port == 993:
            conn = imaplib.IMAP4_SSL(host, port, timeout=self._timeout)
        else:
            conn = imaplib.IMAP4(host, port, timeout=self._timeout)
        try:
            conn.login(self._credentials.mailbox_user, self._credentials.mailbox_password.get_secret_value())
            status, _ = conn.select(self._mailbox)
            if status != "OK":
                raise imaplib.IMAP4.error(f"cannot select mailbox {self._mailbox}")
        except _CONNECTION_ERRORS:
            # The socket is open but the session is unusable
            try:
                conn.shutdown()
            except _CONNECTION_ERRORS:
                pass
            raise
        self._conn = conn
        self._authenticated = True

    async def disconnect(self) -> None:
        """Close mailbox and logout. Never raises."""
        if self._conn is not None:
            async with self._lock:
                await asyncio.to_thread(self._disconnect_sync)
            self._conn = None
            self._authenticated = False
            logger.info("imap_disconnected", user_id=self._credentials.user_id)

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.close()
        except _CONNECTION_ERRORS:
            pass
        try:
            self._conn.logout()
        except _CONNECTION_ERRORS:
            pass

    # ------------------------------------------------------------------
    # Message operations
    # ------------------------------------------------------------------

    async def search_unseen_since(self, since: datetime) -> list[str]:
        """UIDs of unseen messages received on or after *since*.

        IMAP date search is day-granular (not timestamp-granular).
        """
        criteria = f"(UNSEEN SINCE {since.strftime('%d-%b-%Y')})"
        data = await self._uid("SEARCH", None, criteria)
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    async def fetch(self, uid: str) -> bytes | None:
        """Full RFC 822 bytes of message *uid*, or ``None`` if it vanished."""
        data = await self._uid("FETCH", uid, "(BODY.PEEK[])")
        for item in data or []:
            if isinstance(item, tuple) and len(item) > 1:
                return item[1]
        return None

    async def mark_seen(self, uid: str) -> None:
        await self._uid("STORE", uid, "+FLAGS", "(\\Seen)")

    async def mailbox_stats(self) -> MailboxStats:
        """Total and unread message counts of the selected mailbox."""
        data = await self._command("status", self._mailbox, "(MESSAGES UNSEEN)")
        counts: dict[str, int] = {}
        for line in data or []:
            if isinstance(line, tuple):
                line = line[0]
            if isinstance(line, bytes):
                for name, value in _STATUS_COUNTS.findall(line):
                    counts[name.decode().upper()] = int(value)
        return MailboxStats(
            total_messages=counts.get("MESSAGES", 0),
            unread_messages=counts.get("UNSEEN", 0),
        )

    async def _uid(self, command: str, *args: object) -> list:
        return await self._command("uid", command, *args)

    async def _command(self, name: str, *args: object) -> list:
        label = args[0] if name == "uid" else name.upper()
        if self._conn is None or not self._authenticated:
            raise MailboxConnectionError("not connected")
        async with self._lock:
            try:
                status, data = await asyncio.to_thread(getattr(self._conn, name), *args)
            except _CONNECTION_ERRORS as exc:
                self._authenticated = False
                raise MailboxConnectionError(f"IMAP {label} failed: {exc}") from exc
        if status != "OK":
            raise MailboxConnectionError(f"IMAP {label} returned {status}")
        return data

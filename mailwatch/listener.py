"""MailboxListener: per-user polling state machine over one IMAP session.

Phases::

    idle -> connecting -> polling <-> reconnecting -> stopped
                             |
                         processing (within a tick)

Each listener owns one :class:`AsyncImapClient` and one asyncio task.
The task sleeps between ticks, so a tick and a reconnect attempt of the
same listener never overlap.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from .config import ImapConfig, ListenerConfig
from .envelope import extract_envelope, message_key
from .errors import ConfigurationError, MailboxConnectionError, MailwatchError, ParseError
from .imap_client import AsyncImapClient
from .models import ListenerPhase, ListenerStatus, MailboxStats, UserCredentials
from .processor import EmailProcessor, should_process
from .store import SettingsStore

logger = structlog.get_logger()

DEFAULT_OWNER = "default"
PLACEHOLDER_VALUES = frozenset({"", "your-password", "sua_senha", "changeme"})

ClientFactory = Callable[[UserCredentials, str], AsyncImapClient]


def reconnect_delay(failures: int, *, base: float, cap: float) -> float:
    """Backoff before the next reconnect: ``min(base * 2^failures, cap)``."""
    return min(base * 2**failures, cap)


class MailboxListener:
    """Polls one user's mailbox and hands unseen messages to the processor.

    A listener created with ``user_id=None`` uses the global ``IMAP_``
    account; otherwise credentials come from the settings store only.
    """

    def __init__(
        self,
        user_id: str | None,
        processor: EmailProcessor,
        *,
        settings_store: SettingsStore | None = None,
        config: ListenerConfig | None = None,
        imap_config: ImapConfig | None = None,
        client_factory: ClientFactory = AsyncImapClient,
    ) -> None:
        self.user_id = user_id
        self._processor = processor
        self._settings = settings_store
        self._config = config or ListenerConfig()
        self._imap_config = imap_config
        self._client_factory = client_factory

        self._client: AsyncImapClient | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._retry_count = 0
        self._phase = ListenerPhase.IDLE
        self._last_error: str | None = None
        self._messages_processed = 0

        self._wakeup = asyncio.Event()
        self._lifecycle_lock = asyncio.Lock()
        self._log = logger.bind(user_id=user_id)

    @property
    def owner(self) -> str:
        return self.user_id or DEFAULT_OWNER

    @property
    def connected(self) -> bool:
        return self._client is not None and self._client.authenticated

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def resolve_credentials(self) -> UserCredentials:
        """Per-user settings, or the global IMAP account when there is no user id.

        Raises :class:`ConfigurationError` when nothing usable is configured.
        """
        if self.user_id is not None:
            credentials = await self._settings.get(self.user_id) if self._settings else None
            if credentials is None:
                raise ConfigurationError(
                    f"No mailbox settings for user {self.user_id}. Configure IMAP credentials first."
                )
        else:
            imap = self._imap_config or ImapConfig()
            credentials = UserCredentials(
                mailbox_host=imap.host,
                mailbox_port=imap.port,
                mailbox_user=imap.username,
                mailbox_password=imap.password,
            )

        password = credentials.mailbox_password.get_secret_value()
        if (
            not credentials.mailbox_host
            or not credentials.mailbox_port
            or not credentials.mailbox_user
            or password.strip().lower() in PLACEHOLDER_VALUES
        ):
            raise ConfigurationError("Incomplete IMAP settings")
        return credentials

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Resolve credentials and begin polling. No-op if already running.

        Raises :class:`ConfigurationError` (after recording it in the
        status) when the user has no usable mailbox settings.
        """
        async with self._lifecycle_lock:
            if self._task is not None and not self._task.done():
                self._log.debug("listener_already_running")
                return

            self._phase = ListenerPhase.CONNECTING
            self._last_error = None
            try:
                credentials = await self.resolve_credentials()
            except MailwatchError as exc:
                self._phase = ListenerPhase.STOPPED
                self._running = False
                self._last_error = str(exc)
                self._log.error("listener_configuration_error", error=str(exc))
                raise

            self._client = self._client_factory(credentials, self._config.mailbox)
            self._running = True
            self._retry_count = 0
            self._wakeup.clear()
            self._task = asyncio.create_task(self._run(), name=f"listener-{self.owner}")
            self._log.info(
                "listener_starting",
                mailbox=self._config.mailbox,
                interval_seconds=self._config.poll_interval_seconds,
            )

    async def stop(self) -> None:
        """Stop polling from any phase. Idempotent.

        A tick in flight finishes its current message; nothing further
        is scheduled and the session is logged out.
        """
        async with self._lifecycle_lock:
            self._running = False
            self._wakeup.set()
            task, self._task = self._task, None
            if task is not None and task is not asyncio.current_task():
                try:
                    await task
                except Exception:
                    self._log.exception("listener_task_failed")
            await self._close_client()
            self._phase = ListenerPhase.STOPPED
            self._log.info("listener_stopped", messages_processed=self._messages_processed)

    def status(self) -> ListenerStatus:
        return ListenerStatus(
            running=self._running,
            connected=self.connected,
            retry_count=self._retry_count,
            phase=self._phase,
            last_error=self._last_error,
        )

    async def test_connection(self) -> bool:
        """Connect and log out on a throwaway session. Independent of the running state."""
        try:
            credentials = await self.resolve_credentials()
        except MailwatchError as exc:
            self._log.warning("imap_test_unconfigured", error=str(exc))
            return False

        client = self._client_factory(credentials, self._config.mailbox)
        try:
            await client.connect()
        except MailboxConnectionError as exc:
            self._log.warning("imap_test_failed", error=str(exc))
            return False
        finally:
            await client.disconnect()
        return True

    async def mailbox_stats(self) -> MailboxStats:
        """Message counts from the live session, or a throwaway one when not connected.

        Raises :class:`ConfigurationError` or :class:`MailboxConnectionError`.
        """
        if self._client is not None and self.connected:
            return await self._client.mailbox_stats()

        credentials = await self.resolve_credentials()
        client = self._client_factory(credentials, self._config.mailbox)
        try:
            await client.connect()
            return await client.mailbox_stats()
        finally:
            await client.disconnect()

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while self._running:
                if not self.connected:
                    if not await self._connect():
                        continue
                try:
                    await self._tick()
                except MailboxConnectionError as exc:
                    await self._handle_connection_error(exc)
                    continue
                self._retry_count = 0
                await self._pause(self._config.poll_interval_seconds)
        except Exception as exc:
            self._last_error = str(exc)
            self._log.exception("listener_crashed")
        finally:
            self._running = False
            await self._close_client()
            self._phase = ListenerPhase.STOPPED

    async def _connect(self) -> bool:
        assert self._client is not None
        if self._phase is not ListenerPhase.RECONNECTING:
            self._phase = ListenerPhase.CONNECTING
        try:
            await self._client.disconnect()
            await self._client.connect()
        except MailboxConnectionError as exc:
            await self._handle_connection_error(exc)
            return False

        # The failure counter is cleared only by a completed tick
        if self._retry_count:
            self._log.info("imap_reconnected", consecutive_failures=self._retry_count)
        self._phase = ListenerPhase.POLLING
        return True

    async def _handle_connection_error(self, exc: MailboxConnectionError) -> None:
        self._retry_count += 1
        self._last_error = str(exc)

        if self._retry_count >= self._config.max_retries:
            self._log.error(
                "listener_retries_exhausted",
                retry_count=self._retry_count,
                max_retries=self._config.max_retries,
                error=str(exc),
            )
            self._running = False
            return

        delay = reconnect_delay(
            self._retry_count,
            base=self._config.backoff_base_seconds,
            cap=self._config.backoff_max_seconds,
        )
        self._phase = ListenerPhase.RECONNECTING
        self._log.warning(
            "imap_reconnect_scheduled",
            attempt=self._retry_count,
            max_retries=self._config.max_retries,
            delay_seconds=delay,
            error=str(exc),
        )
        await self._pause(delay)

    async def _pause(self, seconds: float) -> None:
        """Sleep for *seconds* unless ``stop()`` wakes us first."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _tick(self) -> None:
        client = self._client
        if client is None or not client.authenticated:
            raise MailboxConnectionError("session not authenticated")

        since = datetime.now(UTC) - timedelta(hours=self._config.lookback_hours)
        uids = await client.search_unseen_since(since)
        if not uids:
            return

        self._log.info("new_messages_found", count=len(uids))
        self._phase = ListenerPhase.PROCESSING
        try:
            for uid in uids:
                if not self._running:
                    break
                await self._handle_message(client, uid)
        finally:
            self._phase = ListenerPhase.POLLING

    async def _handle_message(self, client: AsyncImapClient, uid: str) -> None:
        raw = await client.fetch(uid)
        if raw is None:
            self._log.warning("message_vanished", uid=uid)
            return

        message_id: str | None = None
        try:
            if self._config.skip_automated:
                envelope = extract_envelope(raw)
                if not should_process(envelope["from"], envelope["subject"]):
                    self._log.info("message_skipped", uid=uid, sender=envelope["from"])
                    await client.mark_seen(uid)
                    return

            message_id = message_key(raw, uid)
            await self._processor.process(raw, message_id, self.owner)
        except ParseError as exc:
            # Flagged seen anyway so it does not come back every tick
            self._log.warning("message_unparseable", uid=uid, error=str(exc))
        except MailboxConnectionError:
            raise
        except Exception:
            self._log.exception("message_processing_failed", uid=uid, message_id=message_id)
            return

        await client.mark_seen(uid)
        self._messages_processed += 1

    async def _close_client(self) -> None:
        if self._client is not None:
            await self._client.disconnect()

"""Tests for mailwatch.listener."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest
from pydantic import SecretStr

from tests.conftest import FakeImapClient, _build_plain_email

from mailwatch.config import ImapConfig, ListenerConfig
from mailwatch.errors import ConfigurationError, MailboxConnectionError, ParseError
from mailwatch.listener import MailboxListener, reconnect_delay
from mailwatch.models import ListenerPhase, UserCredentials


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class _ClientFactory:
    """Records every client the listener creates."""

    def __init__(self, client_cls: type[FakeImapClient] = FakeImapClient, **kwargs) -> None:
        self.client_cls = client_cls
        self.kwargs = kwargs
        self.clients: list[FakeImapClient] = []

    def __call__(self, credentials: UserCredentials, mailbox: str) -> FakeImapClient:
        client = self.client_cls(credentials, mailbox, **self.kwargs)
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeImapClient:
        return self.clients[0]


def _settings_store(credentials: UserCredentials | None) -> AsyncMock:
    store = AsyncMock()
    store.get.return_value = credentials
    return store


@pytest.fixture
def processor() -> AsyncMock:
    return AsyncMock()


def _listener(
    processor,
    credentials,
    config: ListenerConfig,
    factory: _ClientFactory,
    user_id: str | None = "u1",
) -> MailboxListener:
    return MailboxListener(
        user_id,
        processor,
        settings_store=_settings_store(credentials),
        config=config,
        client_factory=factory,
    )


class TestReconnectDelay:
    def test_monotonic_and_capped(self):
        delays = [reconnect_delay(n, base=1.0, cap=30.0) for n in range(1, 8)]
        assert delays == sorted(delays)
        assert delays[:4] == [2.0, 4.0, 8.0, 16.0]
        assert max(delays) == 30.0


class TestResolveCredentials:
    @pytest.mark.asyncio
    async def test_user_without_settings(self, processor, listener_config):
        listener = _listener(processor, None, listener_config, _ClientFactory())
        with pytest.raises(ConfigurationError):
            await listener.resolve_credentials()

    @pytest.mark.asyncio
    async def test_placeholder_password_rejected(self, processor, listener_config):
        credentials = UserCredentials(
            mailbox_host="imap.test.com",
            mailbox_user="u",
            mailbox_password=SecretStr("your-password"),
        )
        listener = _listener(processor, credentials, listener_config, _ClientFactory())
        with pytest.raises(ConfigurationError):
            await listener.resolve_credentials()

    @pytest.mark.asyncio
    async def test_global_account_without_user(self, processor, listener_config):
        listener = MailboxListener(
            None,
            processor,
            config=listener_config,
            imap_config=ImapConfig(host="imap.global.com", username="g", password="gp"),
            client_factory=_ClientFactory(),
        )
        credentials = await listener.resolve_credentials()
        assert credentials.mailbox_host == "imap.global.com"
        assert listener.owner == "default"

    @pytest.mark.asyncio
    async def test_user_never_falls_back_to_global(self, processor, listener_config):
        listener = MailboxListener(
            "u1",
            processor,
            settings_store=_settings_store(None),
            config=listener_config,
            imap_config=ImapConfig(host="imap.global.com", username="g", password="gp"),
            client_factory=_ClientFactory(),
        )
        with pytest.raises(ConfigurationError):
            await listener.resolve_credentials()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initial_status(self, processor, credentials, listener_config):
        status = _listener(processor, credentials, listener_config, _ClientFactory()).status()
        assert status.running is False
        assert status.connected is False
        assert status.retry_count == 0
        assert status.phase is ListenerPhase.IDLE

    @pytest.mark.asyncio
    async def test_start_without_settings_records_error(self, processor, listener_config):
        factory = _ClientFactory()
        listener = _listener(processor, None, listener_config, factory)
        with pytest.raises(ConfigurationError):
            await listener.start()
        status = listener.status()
        assert status.running is False
        assert status.phase is ListenerPhase.STOPPED
        assert "No mailbox settings" in status.last_error
        assert factory.clients == []

    @pytest.mark.asyncio
    async def test_start_connects_and_polls(self, processor, credentials, listener_config):
        factory = _ClientFactory()
        listener = _listener(processor, credentials, listener_config, factory)
        await listener.start()
        try:
            await _wait_for(lambda: factory.client.search_calls >= 2)
            status = listener.status()
            assert status.running is True
            assert status.connected is True
            assert status.phase is ListenerPhase.POLLING
        finally:
            await listener.stop()

        status = listener.status()
        assert status.running is False
        assert status.connected is False
        assert status.phase is ListenerPhase.STOPPED

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, processor, credentials, listener_config):
        factory = _ClientFactory()
        listener = _listener(processor, credentials, listener_config, factory)
        await listener.start()
        await listener.start()
        await listener.stop()
        assert len(factory.clients) == 1

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, processor, credentials, listener_config):
        listener = _listener(processor, credentials, listener_config, _ClientFactory())
        await listener.stop()
        await listener.start()
        await listener.stop()
        await listener.stop()
        assert listener.status().phase is ListenerPhase.STOPPED

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, processor, credentials, listener_config):
        factory = _ClientFactory()
        listener = _listener(processor, credentials, listener_config, factory)
        await listener.start()
        await listener.stop()
        await listener.start()
        try:
            await _wait_for(lambda: listener.status().connected)
        finally:
            await listener.stop()
        assert len(factory.clients) == 2


class TestPolling:
    @pytest.mark.asyncio
    async def test_messages_processed_and_marked_seen(self, processor, credentials, listener_config):
        raw_one = _build_plain_email(message_id="<one@example.com>")
        raw_two = _build_plain_email(message_id=None)
        factory = _ClientFactory(messages={"1": raw_one, "2": raw_two})
        listener = _listener(processor, credentials, listener_config, factory)

        await listener.start()
        try:
            await _wait_for(lambda: len(factory.client.seen) == 2)
        finally:
            await listener.stop()

        assert factory.client.seen == ["1", "2"]
        processor.process.assert_any_await(raw_one, "<one@example.com>", "u1")
        processor.process.assert_any_await(raw_two, "imap-uid-2", "u1")
        assert processor.process.await_count == 2

    @pytest.mark.asyncio
    async def test_parse_error_still_marked_seen(self, processor, credentials, listener_config):
        processor.process.side_effect = ParseError("malformed")
        factory = _ClientFactory(messages={"7": b"garbage"})
        listener = _listener(processor, credentials, listener_config, factory)

        await listener.start()
        try:
            await _wait_for(lambda: factory.client.seen == ["7"])
        finally:
            await listener.stop()
        assert processor.process.await_count == 1

    @pytest.mark.asyncio
    async def test_processing_failure_leaves_unseen(self, processor, credentials, listener_config):
        processor.process.side_effect = RuntimeError("boom")
        factory = _ClientFactory(messages={"7": _build_plain_email()})
        listener = _listener(processor, credentials, listener_config, factory)

        await listener.start()
        try:
            await _wait_for(lambda: processor.process.await_count >= 2)
            assert listener.status().running is True
        finally:
            await listener.stop()
        assert factory.client.seen == []

    @pytest.mark.asyncio
    async def test_skip_automated(self, processor, credentials):
        config = ListenerConfig(poll_interval_seconds=0.01, skip_automated=True)
        raw = _build_plain_email(from_addr="noreply@shop.com", subject="Your receipt")
        factory = _ClientFactory(messages={"3": raw})
        listener = _listener(processor, credentials, config, factory)

        await listener.start()
        try:
            await _wait_for(lambda: factory.client.seen == ["3"])
        finally:
            await listener.stop()
        processor.process.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_headers_do_not_stop_listener(self, processor, credentials, listener_config):
        good = _build_plain_email(message_id="<good@example.com>")
        factory = _ClientFactory(messages={"1": b"Message-ID: <\r\nSubject: x\r\n\r\nbody", "2": good})
        listener = _listener(processor, credentials, listener_config, factory)

        await listener.start()
        try:
            await _wait_for(lambda: len(factory.client.seen) == 2)
            assert listener.status().running is True
        finally:
            await listener.stop()

        assert factory.client.seen == ["1", "2"]
        processor.process.assert_any_await(good, "<good@example.com>", "u1")

    @pytest.mark.asyncio
    async def test_malformed_headers_with_skip_automated(self, processor, credentials):
        config = ListenerConfig(poll_interval_seconds=0.01, skip_automated=True)
        factory = _ClientFactory(messages={"1": b"Message-ID: <\r\nFrom: a@b.com\r\nSubject: hello there\r\n\r\nx"})
        listener = _listener(processor, credentials, config, factory)

        await listener.start()
        try:
            await _wait_for(lambda: factory.client.seen == ["1"])
            assert listener.status().running is True
        finally:
            await listener.stop()


class TestReconnect:
    @pytest.mark.asyncio
    async def test_retries_exhausted_stops_listener(self, processor, credentials, listener_config):
        factory = _ClientFactory(connect_failures=-1)
        listener = _listener(processor, credentials, listener_config, factory)

        await listener.start()
        await _wait_for(lambda: listener.status().phase is ListenerPhase.STOPPED)

        status = listener.status()
        assert status.running is False
        assert status.retry_count == listener_config.max_retries
        assert "connection refused" in status.last_error
        assert factory.client.connect_calls == listener_config.max_retries
        await listener.stop()

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, processor, credentials, listener_config):
        factory = _ClientFactory(connect_failures=2)
        listener = _listener(processor, credentials, listener_config, factory)

        await listener.start()
        try:
            await _wait_for(lambda: factory.client.search_calls >= 2)
            status = listener.status()
            assert status.running is True
            assert status.retry_count == 0
        finally:
            await listener.stop()
        assert factory.client.connect_calls == 3

    @pytest.mark.asyncio
    async def test_reconnects_after_dropped_session(self, processor, credentials, listener_config):
        class DroppingClient(FakeImapClient):
            async def search_unseen_since(self, since):
                if self.search_calls == 0:
                    self.search_calls += 1
                    self._authenticated = False
                    raise MailboxConnectionError("socket error: EOF")
                return await super().search_unseen_since(since)

        factory = _ClientFactory(DroppingClient)
        listener = _listener(processor, credentials, listener_config, factory)

        await listener.start()
        try:
            await _wait_for(lambda: factory.client.search_calls >= 2)
            assert listener.status().retry_count == 0
        finally:
            await listener.stop()
        assert factory.client.connect_calls == 2

    @pytest.mark.asyncio
    async def test_reconnect_alone_does_not_clear_failures(self, processor, credentials, listener_config):
        class AlwaysDroppingClient(FakeImapClient):
            async def search_unseen_since(self, since):
                self.search_calls += 1
                self._authenticated = False
                raise MailboxConnectionError("socket error: EOF")

        factory = _ClientFactory(AlwaysDroppingClient)
        listener = _listener(processor, credentials, listener_config, factory)

        await listener.start()
        await _wait_for(lambda: listener.status().phase is ListenerPhase.STOPPED)

        status = listener.status()
        assert status.running is False
        assert status.retry_count == listener_config.max_retries
        assert factory.client.search_calls == listener_config.max_retries
        assert factory.client.connect_calls == listener_config.max_retries
        await listener.stop()

    @pytest.mark.asyncio
    async def test_stop_during_backoff(self, processor, credentials):
        config = ListenerConfig(max_retries=5, backoff_base_seconds=10.0, backoff_max_seconds=60.0)
        factory = _ClientFactory(connect_failures=-1)
        listener = _listener(processor, credentials, config, factory)

        await listener.start()
        await _wait_for(lambda: listener.status().phase is ListenerPhase.RECONNECTING)
        await asyncio.wait_for(listener.stop(), timeout=1.0)
        assert listener.status().phase is ListenerPhase.STOPPED
        assert factory.client.connect_calls == 1


class TestConnectionTest:
    @pytest.mark.asyncio
    async def test_success(self, processor, credentials, listener_config):
        factory = _ClientFactory()
        listener = _listener(processor, credentials, listener_config, factory)
        assert await listener.test_connection() is True
        assert factory.client.authenticated is False
        assert listener.status().running is False

    @pytest.mark.asyncio
    async def test_failure(self, processor, credentials, listener_config):
        listener = _listener(processor, credentials, listener_config, _ClientFactory(connect_failures=-1))
        assert await listener.test_connection() is False

    @pytest.mark.asyncio
    async def test_unconfigured(self, processor, listener_config):
        listener = _listener(processor, None, listener_config, _ClientFactory())
        assert await listener.test_connection() is False


class TestMailboxStats:
    @pytest.mark.asyncio
    async def test_uses_live_session(self, processor, credentials, listener_config):
        processor.process.side_effect = RuntimeError("boom")
        factory = _ClientFactory(messages={"1": _build_plain_email(), "2": _build_plain_email()})
        listener = _listener(processor, credentials, listener_config, factory)

        await listener.start()
        try:
            await _wait_for(lambda: listener.status().connected)
            stats = await listener.mailbox_stats()
        finally:
            await listener.stop()
        assert (stats.total_messages, stats.unread_messages) == (2, 2)
        assert len(factory.clients) == 1

    @pytest.mark.asyncio
    async def test_throwaway_session_when_idle(self, processor, credentials, listener_config):
        factory = _ClientFactory(messages={"1": _build_plain_email()})
        listener = _listener(processor, credentials, listener_config, factory)

        stats = await listener.mailbox_stats()
        assert stats.total_messages == 1
        assert factory.client.authenticated is False
        assert listener.status().running is False

    @pytest.mark.asyncio
    async def test_unreachable_mailbox(self, processor, credentials, listener_config):
        listener = _listener(processor, credentials, listener_config, _ClientFactory(connect_failures=-1))
        with pytest.raises(MailboxConnectionError):
            await listener.mailbox_stats()

"""ListenerRegistry: user id -> MailboxListener directory."""

from __future__ import annotations

import threading
from collections.abc import Callable

import structlog

from .listener import MailboxListener
from .models import ListenerStatus, MailboxStats

logger = structlog.get_logger()

ListenerFactory = Callable[[str], MailboxListener]


class ListenerRegistry:
    """Holds at most one listener per user, created lazily on first reference.

    Lookup-or-create runs under a lock so concurrent requests for the
    same user can never produce two listeners.  The registry does no
    polling itself.
    """

    def __init__(self, factory: ListenerFactory) -> None:
        self._factory = factory
        self._listeners: dict[str, MailboxListener] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> MailboxListener | None:
        with self._lock:
            return self._listeners.get(user_id)

    def get_or_create(self, user_id: str) -> MailboxListener:
        with self._lock:
            listener = self._listeners.get(user_id)
            if listener is None:
                listener = self._factory(user_id)
                self._listeners[user_id] = listener
                logger.debug("listener_registered", user_id=user_id)
            return listener

    async def start_for_user(self, user_id: str) -> ListenerStatus:
        listener = self.get_or_create(user_id)
        await listener.start()
        return listener.status()

    async def stop_for_user(self, user_id: str) -> None:
        listener = self.get(user_id)
        if listener is not None:
            await listener.stop()

    def status_for_user(self, user_id: str) -> ListenerStatus:
        return self.get_or_create(user_id).status()

    async def test_for_user(self, user_id: str) -> bool:
        return await self.get_or_create(user_id).test_connection()

    async def mailbox_stats_for_user(self, user_id: str) -> MailboxStats:
        return await self.get_or_create(user_id).mailbox_stats()

    def count(self) -> int:
        with self._lock:
            return len(self._listeners)

    async def stop_all(self) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            await listener.stop()

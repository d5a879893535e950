"""Interfaces of the systems the streak engine talks to but does not own."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Protocol

from streakkeeper.domain import NotificationRequest

log = logging.getLogger(__name__)

ReconnectCallback = Callable[[], Awaitable[object]]


class RelationshipDirectory(Protocol):
    """relationship id -> display name, used for notification text only."""

    async def display_name(self, relationship_id: str) -> Optional[str]: ...


class NotificationDelivery(Protocol):
    async def schedule(self, request: NotificationRequest) -> str:
        """Hand a request to the platform; returns a handle for ``cancel``."""
        ...

    async def cancel(self, handle: str) -> None: ...


class Connectivity(Protocol):
    def is_online(self) -> bool: ...

    def on_reconnect(self, callback: ReconnectCallback) -> None: ...


class StaticDirectory:
    """In-memory directory; unknown ids fall back to the id itself."""

    def __init__(self, names: Optional[dict[str, str]] = None):
        self.names = dict(names or {})

    async def display_name(self, relationship_id: str) -> Optional[str]:
        return self.names.get(relationship_id)


class ManualConnectivity:
    """Connectivity flag flipped by the host application (or a test)."""

    def __init__(self, online: bool = True):
        self._online = online
        self._callbacks: list[ReconnectCallback] = []

    def is_online(self) -> bool:
        return self._online

    def on_reconnect(self, callback: ReconnectCallback) -> None:
        self._callbacks.append(callback)

    async def set_online(self, online: bool) -> None:
        """Update the flag; an offline -> online edge fires the reconnect callbacks."""
        came_back = online and not self._online
        self._online = online
        if came_back:
            log.info("Connectivity restored, running %d reconnect callback(s)", len(self._callbacks))
            for callback in self._callbacks:
                await callback()

"""Client state and event notifications.

Listeners receive a ``CacheEvent`` for every non-fatal error, every entry
into the reconnect loop, and every state transition. A listener may be a
plain callable or a coroutine function; coroutine listeners are scheduled
on the running loop and never block the client.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Union

logger = logging.getLogger(__name__)


class ClientState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"


class CacheEventType(str, Enum):
    """Type of client event."""

    ERROR = "error"
    RECONNECTING = "reconnecting"
    STATE_CHANGED = "state_changed"


@dataclass(frozen=True)
class CacheEvent:
    """Notification delivered to listeners."""

    type: CacheEventType
    error: BaseException | None = None
    state: ClientState | None = None


EventListener = Callable[[CacheEvent], Union[None, Awaitable[None]]]


class EventDispatcher:
    """Fans events out to registered listeners."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._listeners: list[EventListener] = []
        self._pending: set[asyncio.Task[None]] = set()
        self._logger = log or logger

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)
        listener_name = getattr(listener, "__name__", listener.__class__.__name__)
        self._logger.debug(f"Registered cache event listener: {listener_name}")

    def remove_listener(self, listener: EventListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def emit(self, event: CacheEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception as e:
                self._logger.error(f"Cache event listener failed on {event.type.value}: {e}")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.error(f"Cache event listener failed: {error}")

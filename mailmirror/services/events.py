import asyncio
import inspect
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class LifecycleEvent(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    FOREGROUND = "foreground"
    BACKGROUND = "background"
    EXTERNAL_UPDATE = "external_update"


class EventHub:
    """Fan-out of application lifecycle and provider push events.

    Subscribers are called in subscription order as ``callback(event, account)``.
    Coroutine results are scheduled on the running loop.
    """

    def __init__(self):
        self._subscribers = []
        self._pending = set()

    def subscribe(self, callback):
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event, account=None):
        event = LifecycleEvent(event)
        logger.debug("Publishing %s (account=%s)", event.value, account)
        for callback in list(self._subscribers):
            try:
                result = callback(event, account)
            except Exception:
                logger.exception("Lifecycle subscriber failed for %s", event.value)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def drain(self):
        """Wait for coroutine subscribers scheduled by earlier publishes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = ["EventHub", "LifecycleEvent"]

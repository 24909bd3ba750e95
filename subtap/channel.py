"""
Cross-context message channel.

The host page and the isolated context share no objects; they talk only by
posting messages, the way ``window.postMessage`` works in a browser.
Delivery is asynchronous and goes to whoever is listening when the message
is delivered, so a message posted before the receiver attaches is lost.
Receivers must be idempotent to duplicates and must not rely on ordering.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Envelope:
    """A delivered message plus the identity of the context that posted it."""

    source: str
    data: Any


Listener = Callable[[Envelope], None]


class MessageChannel:
    """
    At-most-once-per-send, unordered message channel.

    Args:
        loop: Event loop to deliver on. Defaults to the running loop at the
            time of each post, which is what single-loop callers want.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop
        self._listeners: list[Listener] = []
        self._posted = 0

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def posted_count(self) -> int:
        return self._posted

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def post(self, data: Any, *, source: str) -> None:
        """Schedule delivery of ``data`` to the current listeners."""
        loop = self._loop or asyncio.get_running_loop()
        self._posted += 1
        loop.call_soon_threadsafe(self._deliver, Envelope(source=source, data=data))

    def _deliver(self, envelope: Envelope) -> None:
        if not self._listeners:
            logger.debug(f"No listener attached, message from {envelope.source} dropped")
            return
        for listener in list(self._listeners):
            # A failing listener must not starve the others
            try:
                listener(envelope)
            except Exception:
                logger.exception("Channel listener raised while handling a message")

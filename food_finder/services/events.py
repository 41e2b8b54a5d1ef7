from __future__ import annotations

import logging
from typing import Callable, List

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class CacheInvalidationBroadcaster:
    """Publish/subscribe hub announcing that cached place data was cleared.

    A failing listener is logged and skipped; it never stops the others.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self) -> int:
        notified = 0
        for listener in list(self._listeners):
            try:
                listener()
                notified += 1
            except Exception:
                logger.exception("Cache-cleared listener %r failed", listener)
        return notified

    def __len__(self) -> int:
        return len(self._listeners)

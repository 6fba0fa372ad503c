"""
Observer notification: a cached snapshot of the selected tab plus the set of
live observer channels it is pushed to.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Protocol

from .logger import get_logger
from .models import ListenerRecord, ObserverSnapshot

logger = get_logger("notifier")


def now_ms() -> int:
    return int(time.time() * 1000)


class Observer(Protocol):
    def post_message(self, message: Dict[str, Any]) -> None:
        """Deliver a snapshot message. Raise if the channel is gone."""


class NotificationCache:
    """Which tab observers last saw, and when.

    Records are never copied in; a snapshot is built from the live listeners
    passed to it.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.current_tab_id: Optional[Any] = None
        self.current_url: str = ""
        self.last_update: int = 0

    def update(self, tab_id: Any, current_url: str, timestamp: Optional[int] = None) -> None:
        self.current_tab_id = tab_id
        self.current_url = current_url
        self.last_update = timestamp if timestamp is not None else now_ms()

    def is_fresh_for(self, tab_id: Any) -> bool:
        return self.current_tab_id == tab_id and self.last_update > 0

    def forget_tab(self, tab_id: Any) -> bool:
        """Drop the cache if it describes the given tab."""
        if self.current_tab_id == tab_id:
            self.reset()
            return True
        return False

    def snapshot(self, listeners: Dict[Any, List[ListenerRecord]]) -> ObserverSnapshot:
        return ObserverSnapshot(
            listeners=listeners,
            current_url=self.current_url,
            cached=True,
            timestamp=self.last_update,
        )


class ObserverHub:
    """Zero or more observer channels; dead ones are dropped on the next push."""

    def __init__(self) -> None:
        self._observers: List[Observer] = []

    def __len__(self) -> int:
        return len(self._observers)

    def add(self, observer: Observer) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def discard(self, observer: Observer) -> None:
        self._observers = [o for o in self._observers if o is not observer]

    def send(self, observer: Observer, message: Dict[str, Any]) -> bool:
        try:
            observer.post_message(message)
        except Exception as e:
            logger.debug("Dropping observer %r: %s", observer, e)
            self.discard(observer)
            return False
        return True

    def publish(self, message: Dict[str, Any]) -> int:
        """Push to every live observer. Returns the number that accepted the message."""
        delivered = 0
        for observer in list(self._observers):
            if self.send(observer, message):
                delivered += 1
        return delivered

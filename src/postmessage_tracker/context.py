#!/usr/bin/env python3
"""
Hosted runtime model: browsing contexts (windows and frames), their message
listeners and history, and the entry points the instrumentation replaces.

Every registration and history call of a context goes through its
`entry_points` object. The native `EntryPoints` does the actual work; an
interception layer stands in front of it once installed.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlsplit

from .errors import SecurityError
from .logger import get_logger
from .signatures import ScriptFunction

logger = get_logger("context")

MESSAGE = "message"

__all__ = ["MESSAGE", "BrowsingContext", "EntryPoints", "MessageEvent", "ScriptFunction"]


@dataclasses.dataclass
class MessageEvent:
    data: Any
    origin: str = ""
    source: Optional["BrowsingContext"] = None
    ports: Sequence[Any] = ()


class EntryPoints:
    """Native registration and history entry points of one context."""

    def __init__(self, context: "BrowsingContext"):
        self.context = context

    def add_event_listener(self, event_type: str, listener: Callable[..., Any]) -> None:
        registered = self.context._listeners.setdefault(event_type, [])
        if listener not in registered:
            registered.append(listener)

    def remove_event_listener(self, event_type: str, listener: Callable[..., Any]) -> None:
        registered = self.context._listeners.get(event_type, [])
        if listener in registered:
            registered.remove(listener)

    def set_onmessage(self, listener: Optional[Callable[..., Any]]) -> None:
        self.context._onmessage = listener

    def push_state(self, state: Any, title: str = "", url: Optional[str] = None) -> None:
        self.context.history.append((state, title, url))
        if url:
            self.context.url = urljoin(self.context.url, url)


class BrowsingContext:
    """
    A window or frame. Frames attach to their parent on creation.

    An isolated context refuses access to `top` and `parent` the way a
    cross-origin window would.
    """

    def __init__(
        self,
        name: str = "",
        domain: str = "",
        url: str = "",
        parent: Optional["BrowsingContext"] = None,
        isolated: bool = False,
    ):
        self.name = name
        self.domain = domain or (urlsplit(url).hostname or "")
        self.url = url
        self.isolated = isolated
        self.history: List[Tuple[Any, str, Optional[str]]] = []
        self.unloaded = False
        self.entry_points: EntryPoints = EntryPoints(self)
        self._parent = parent
        self._frames: List[BrowsingContext] = []
        self._listeners: Dict[str, List[Callable[..., Any]]] = {}
        self._onmessage: Optional[Callable[..., Any]] = None
        self._unload_callbacks: List[Callable[[], Any]] = []
        if parent is not None:
            parent._frames.append(self)

    def __repr__(self) -> str:
        return f"<BrowsingContext {self.name or 'top'} {self.url}>"

    @property
    def top(self) -> "BrowsingContext":
        if self.isolated:
            raise SecurityError("Blocked access to 'top' of a cross-origin frame")
        node = self
        while node._parent is not None:
            node = node._parent
        return node

    @property
    def parent(self) -> "BrowsingContext":
        if self.isolated:
            raise SecurityError("Blocked access to 'parent' of a cross-origin frame")
        return self._parent if self._parent is not None else self

    @property
    def frames(self) -> Tuple["BrowsingContext", ...]:
        return tuple(self._frames)

    @property
    def origin(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}" if parts.scheme else ""

    # --- entry points ---

    def add_event_listener(self, event_type: str, listener: Callable[..., Any]) -> None:
        self.entry_points.add_event_listener(event_type, listener)

    def remove_event_listener(self, event_type: str, listener: Callable[..., Any]) -> None:
        self.entry_points.remove_event_listener(event_type, listener)

    @property
    def onmessage(self) -> Optional[Callable[..., Any]]:
        return self._onmessage

    @onmessage.setter
    def onmessage(self, listener: Optional[Callable[..., Any]]) -> None:
        self.entry_points.set_onmessage(listener)

    def push_state(self, state: Any, title: str = "", url: Optional[str] = None) -> None:
        self.entry_points.push_state(state, title, url)

    # --- messaging ---

    def listeners(self, event_type: str = MESSAGE) -> List[Callable[..., Any]]:
        return list(self._listeners.get(event_type, []))

    def post_message(
        self, data: Any, source: Optional["BrowsingContext"] = None, ports: Sequence[Any] = ()
    ) -> int:
        """Deliver a message synchronously. Returns the number of handlers that ran without error."""
        event = MessageEvent(data=data, origin=source.origin if source is not None else "", source=source, ports=ports)
        handlers = self.listeners(MESSAGE)
        if self._onmessage is not None:
            handlers.append(self._onmessage)
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.warning("Message handler %r failed in %r: %s", handler, self, e)
        return delivered

    # --- lifecycle ---

    def on_unload(self, callback: Callable[[], Any]) -> None:
        self._unload_callbacks.append(callback)

    def unload(self) -> None:
        if self.unloaded:
            return
        for frame in self._frames:
            frame.unload()
        for callback in self._unload_callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Unload callback failed in %r: %s", self, e)
        self._listeners.clear()
        self._onmessage = None
        self.unloaded = True

#!/usr/bin/env python3
"""
Browser tabs over the hosted runtime model.

A tab owns its current top-level browsing context and reports the same
events a browser does: status updates around navigation, activation and
removal. Every context it creates, frames included, gets the interception
layer installed before any page code runs.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from .bridge import TAB_ACTIVATED, TAB_REMOVED, TAB_UPDATED, Bridge
from .broker import InterceptionLayer
from .context import BrowsingContext
from .errors import TrackerError
from .lifecycle import STATUS_COMPLETE, STATUS_LOADING
from .logger import get_logger
from .models import Sender
from .unwrap import Unwrapper

logger = get_logger("browser")

PageScript = Callable[[BrowsingContext], Any]


class Tab:
    def __init__(
        self,
        tab_id: Any,
        bridge: Bridge,
        unwrapper: Optional[Unwrapper] = None,
        diagnostics: bool = True,
    ):
        self.tab_id = tab_id
        self.bridge = bridge
        self.unwrapper = unwrapper or Unwrapper()
        self.diagnostics = diagnostics
        self.window: Optional[BrowsingContext] = None
        self.closed = False

    def __repr__(self) -> str:
        return f"<Tab {self.tab_id} {self.url}>"

    @property
    def url(self) -> str:
        return self.window.url if self.window is not None else ""

    def _instrument(self, context: BrowsingContext) -> BrowsingContext:
        InterceptionLayer.install(context, self.bridge, self.unwrapper, diagnostics=self.diagnostics)
        return context

    def _require_window(self) -> BrowsingContext:
        if self.closed:
            raise TrackerError(f"Tab {self.tab_id} is closed")
        if self.window is None:
            raise TrackerError(f"Tab {self.tab_id} has no document")
        return self.window

    def navigate(self, url: str, script: Optional[PageScript] = None, name: str = "") -> BrowsingContext:
        """
        Load a new document. `script` runs against the new window before the
        tab reports "complete", the way page scripts run during load.
        """
        if self.closed:
            raise TrackerError(f"Tab {self.tab_id} is closed")
        if self.window is not None:
            self.window.unload()
        self.bridge.sender = Sender(self.tab_id, url)
        self.bridge.tab_event(TAB_UPDATED, STATUS_LOADING, url)

        window = self._instrument(BrowsingContext(name, url=url))
        window.on_unload(self.bridge.page_changing)
        self.window = window
        if script is not None:
            script(window)
        self.bridge.tab_event(TAB_UPDATED, STATUS_COMPLETE, url)
        logger.debug("Tab %s navigated to %s", self.tab_id, url)
        return window

    def attach_frame(
        self,
        url: str,
        name: str = "",
        parent: Optional[BrowsingContext] = None,
        isolated: bool = False,
        script: Optional[PageScript] = None,
    ) -> BrowsingContext:
        """Create an instrumented frame under `parent` (default: the top window)."""
        host = parent if parent is not None else self._require_window()
        frame = self._instrument(BrowsingContext(name, url=url, parent=host, isolated=isolated))
        if script is not None:
            script(frame)
        return frame

    def push_state(self, state: Any = None, url: Optional[str] = None) -> str:
        """Same-document navigation through the page's history. Returns the new URL."""
        window = self._require_window()
        window.push_state(state, "", url)
        self.bridge.sender = Sender(self.tab_id, window.url)
        self.bridge.tab_event(TAB_UPDATED, STATUS_LOADING, window.url)
        self.bridge.tab_event(TAB_UPDATED, STATUS_COMPLETE, window.url)
        return window.url

    def activate(self) -> None:
        self.bridge.tab_event(TAB_ACTIVATED)

    def close(self) -> None:
        if self.closed:
            return
        if self.window is not None:
            self.window.unload()
        self.bridge.tab_event(TAB_REMOVED)
        self.closed = True

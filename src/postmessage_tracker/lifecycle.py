#!/usr/bin/env python3
"""
Tab lifecycle: turns navigation and tab events into tracking-store resets.

Status transitions follow the browser's tab update events:

- any status other than "complete" is a document transition. It is absorbed
  by a pending history push, ignored while the tab is already loading, and
  otherwise clears the tab's records and keys;
- "loading" additionally marks the tab as loading until the page reports
  that it is changing document again.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from .errors import TabNotFoundError
from .logger import get_logger
from .store import TrackingStore

logger = get_logger("lifecycle")

STATUS_LOADING = "loading"
STATUS_COMPLETE = "complete"


class TabDirectory:
    """Known tabs and their current URL, as last reported."""

    def __init__(self) -> None:
        self._urls: Dict[Any, str] = {}

    def __contains__(self, tab_id: Any) -> bool:
        return tab_id in self._urls

    def tab_ids(self) -> List[Any]:
        return list(self._urls)

    def update(self, tab_id: Any, url: Optional[str] = None) -> None:
        if url is not None or tab_id not in self._urls:
            self._urls[tab_id] = url if url is not None else self._urls.get(tab_id, "")

    def get_url(self, tab_id: Any) -> str:
        try:
            return self._urls[tab_id]
        except KeyError:
            raise TabNotFoundError(tab_id) from None

    def remove(self, tab_id: Any) -> None:
        self._urls.pop(tab_id, None)


class TabLifecycleController:
    """Drives per-tab resets of a TrackingStore."""

    def __init__(self, store: TrackingStore):
        self.store = store

    def history_pushed(self, tab_id: Any) -> None:
        self.store.ensure(tab_id).flags.pending_push = True

    def page_changing(self, tab_id: Any) -> None:
        state = self.store.get(tab_id)
        if state is not None:
            state.flags.loading = False

    def status_changed(
        self, tab_id: Any, status: Optional[str], clear: Optional[Callable[[Any], bool]] = None
    ) -> bool:
        """Apply a tab status update. Returns True if records were cleared.

        A document change clears the tab through `clear` when given.
        """
        if not status or status == STATUS_COMPLETE:
            return False

        state = self.store.ensure(tab_id)
        cleared = False
        if state.flags.pending_push:
            state.flags.pending_push = False
            logger.debug("Tab %s: status %s absorbed by history push", tab_id, status)
        elif not state.flags.loading:
            cleared = clear(tab_id) if clear is not None else state.clear()
            if cleared:
                logger.debug("Tab %s: document changed, listeners cleared", tab_id)

        if status == STATUS_LOADING:
            state.flags.loading = True
        return cleared

    def tab_removed(self, tab_id: Any) -> bool:
        """Destroy every piece of state held for the tab."""
        return self.store.remove(tab_id) is not None

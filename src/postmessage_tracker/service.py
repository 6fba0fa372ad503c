#!/usr/bin/env python3
"""
Aggregation service: owns every TabState and reacts to bridged messages and
tab events.

All mutation happens synchronously inside one call, so when the service is
driven from a single event loop (the bridge receiver, the web server) the
messages of a tab are applied strictly in arrival order.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from .blocklist import LIST_KEYS, KIND_LISTENER, KIND_REGEX, KIND_URL, BlocklistManager, BlocklistMatcher, BlockMatch
from .errors import TabNotFoundError
from .identity import extract_source_url
from .lifecycle import STATUS_COMPLETE, TabDirectory, TabLifecycleController
from .logger import get_logger
from .models import NATIVE_CODE, InboundMessage, ListenerRecord, ObserverSnapshot, Sender
from .notifier import NotificationCache, Observer, ObserverHub, now_ms
from .persistence import KeyValueBackend, PersistenceManager
from .reporter import ListenerReporter
from .settings import SettingsStore
from .store import TrackingStore

logger = get_logger("service")

ACTION_UPDATE_DEDUPE = "updateDedupeSetting"
# Extensions whose own listeners leak through page instrumentation
EXTENSION_DENYLIST = ("wappalyzer", "domlogger")

BadgeSink = Callable[[Any, int], None]


def is_from_extension(record: ListenerRecord) -> bool:
    combined = f"{record.code} {record.stack_line}"
    return any(name in combined for name in EXTENSION_DENYLIST)


class AggregationService:
    """Tracking, identity, blocklist and persistence for every tab."""

    def __init__(
        self,
        backend: KeyValueBackend,
        settings: SettingsStore,
        *,
        tabs: Optional[TabDirectory] = None,
        reporter: Optional[ListenerReporter] = None,
        badge: Optional[BadgeSink] = None,
        debounce: float = 0.1,
    ):
        self.store = TrackingStore()
        self.persistence = PersistenceManager(backend, self.store, delay=debounce)
        self.settings = settings
        self.matcher = BlocklistMatcher()
        self.blocklists = BlocklistManager(settings)
        self.lifecycle = TabLifecycleController(self.store)
        self.tabs = tabs if tabs is not None else TabDirectory()
        self.cache = NotificationCache()
        self.observers = ObserverHub()
        self.reporter = reporter
        self.badge = badge
        self.selected_tab_id: Optional[Any] = None
        self.started = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    # --- setup / teardown ---

    def start(self) -> None:
        if self.started:
            return
        self.persistence.load()
        current = self.settings.load()
        self.store.dedupe_enabled = current.dedupe_enabled
        self.matcher.update(
            codes=current.blocked_listeners,
            urls=current.blocked_urls,
            patterns=current.blocked_regex,
        )
        self._unsubscribe = self.settings.subscribe(self._on_settings_changed)
        self.started = True
        logger.info("Aggregation service started")

    def close(self, flush: bool = True) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.persistence.close(flush=flush)
        self.started = False

    def _on_settings_changed(self, changes: Dict[str, Any]) -> None:
        blocklist_changed = False
        if LIST_KEYS[KIND_LISTENER] in changes:
            self.matcher.update(codes=changes[LIST_KEYS[KIND_LISTENER]])
            blocklist_changed = True
        if LIST_KEYS[KIND_URL] in changes:
            self.matcher.update(urls=changes[LIST_KEYS[KIND_URL]])
            blocklist_changed = True
        if LIST_KEYS[KIND_REGEX] in changes:
            self.matcher.update(patterns=changes[LIST_KEYS[KIND_REGEX]])
            logger.info("Updated blocked regex patterns: %d", len(self.matcher.compiled_patterns))
            blocklist_changed = True
        if "dedupeEnabled" in changes:
            self._apply_dedupe(bool(changes["dedupeEnabled"]))
        elif blocklist_changed:
            self.update_cache()
            self.refresh_count()

    def _apply_dedupe(self, enabled: bool) -> None:
        self.store.set_dedupe(enabled)
        if not enabled:
            self.persistence.schedule_save()
        logger.info("Dedupe setting updated to: %s", enabled)
        self.update_cache()
        self.refresh_count()

    # --- queries ---

    @property
    def dedupe_enabled(self) -> bool:
        return self.store.dedupe_enabled

    def listeners(self, tab_id: Any) -> List[ListenerRecord]:
        return self.store.records(tab_id)

    def block_reason(self, record: ListenerRecord) -> Optional[BlockMatch]:
        return self.matcher.match(record)

    def active_count(self, tab_id: Any) -> int:
        return sum(1 for record in self.store.records(tab_id) if not self.matcher.is_blocked(record))

    # --- bridged messages ---

    def handle_message(self, message: Mapping[str, Any], sender: Optional[Sender] = None) -> Dict[str, Any]:
        try:
            inbound = InboundMessage.model_validate(message)
        except ValidationError as e:
            logger.warning("Rejected malformed message from %s: %s", sender, e)
            return {"success": False, "error": "invalid message"}

        if inbound.action == ACTION_UPDATE_DEDUPE:
            self.set_dedupe(bool(inbound.enabled))
            return {"success": True}

        if sender is None:
            return {"success": False}

        tab_id = sender.tab_id
        self.tabs.update(tab_id, sender.url or None)
        added = False

        if inbound.listener:
            if inbound.listener == NATIVE_CODE:
                return {"success": True}
            added = self.add_listener(tab_id, inbound.to_record(parent_url=sender.url))

        if inbound.push_state:
            self.lifecycle.history_pushed(tab_id)
        if inbound.change_page:
            self.lifecycle.page_changing(tab_id)

        if inbound.log:
            logger.info("Page log (tab %s): %s", tab_id, inbound.log)
        else:
            self.refresh_count()
            if added:
                self.notify_observers()
        return {"success": True}

    def add_listener(self, tab_id: Any, record: ListenerRecord) -> bool:
        """Track a record if it is new for the tab. Returns True if it was appended."""
        if is_from_extension(record):
            logger.debug("Ignoring extension listener on tab %s", tab_id)
            return False
        if not self.store.record_observed(tab_id, record):
            return False
        self.persistence.schedule_save()

        if not self.matcher.is_blocked(record):
            logger.info(
                "New listener on tab %s (%s) from %s",
                tab_id,
                record.frame_path or "unknown",
                extract_source_url(record) or record.stack_line or "unknown source",
            )
            if self.reporter is not None:
                self.reporter.report(record)
        return True

    def clear_listeners(self, tab_id: Any) -> bool:
        """Drop the tab's records and keys. Observers are pushed the change."""
        had_listeners = self.store.clear(tab_id)
        if had_listeners:
            self.persistence.schedule_save()
            self.notify_observers()
        return had_listeners

    def set_dedupe(self, enabled: bool) -> None:
        if not self.settings.set({"dedupeEnabled": enabled}):
            # Unchanged in settings; still make sure the store agrees
            if self.store.dedupe_enabled != enabled:
                self._apply_dedupe(enabled)

    # --- tab events ---

    def on_tab_updated(self, tab_id: Any, status: Optional[str] = None, url: Optional[str] = None) -> None:
        self.tabs.update(tab_id, url)
        if status == STATUS_COMPLETE:
            if tab_id == self.selected_tab_id:
                self.refresh_count()
                self.update_cache()
        elif status:
            self.lifecycle.status_changed(tab_id, status, clear=self.clear_listeners)

    def on_tab_activated(self, tab_id: Any) -> None:
        self.selected_tab_id = tab_id
        self.tabs.update(tab_id)
        self.refresh_count()
        self.notify_observers()

    def on_tab_removed(self, tab_id: Any) -> None:
        self.lifecycle.tab_removed(tab_id)
        self.tabs.remove(tab_id)
        self.persistence.schedule_save()
        self.cache.forget_tab(tab_id)
        logger.debug("Tab %s removed", tab_id)

    # --- badge / observers ---

    def refresh_count(self) -> Optional[int]:
        """Push the selected tab's active listener count to the badge sink."""
        tab_id = self.selected_tab_id
        if tab_id is None:
            return None
        count = self.active_count(tab_id)
        try:
            self.tabs.get_url(tab_id)
            if self.badge is not None:
                self.badge(tab_id, count)
        except TabNotFoundError:
            logger.debug("Tab %s no longer exists, cleaning up", tab_id)
            self.on_tab_removed(tab_id)
            return None
        return count

    def update_cache(self) -> None:
        tab_id = self.selected_tab_id
        if tab_id is None:
            return
        try:
            current_url = self.tabs.get_url(tab_id)
        except TabNotFoundError:
            current_url = "Unknown URL"
        self.cache.update(tab_id, current_url)

    def snapshot_for_observer(self) -> ObserverSnapshot:
        if self.selected_tab_id is not None and self.cache.is_fresh_for(self.selected_tab_id):
            return self.cache.snapshot(self.store.listeners_by_tab())
        self.update_cache()
        return ObserverSnapshot(
            listeners=self.store.listeners_by_tab(),
            current_url=self.cache.current_url or "Loading...",
            cached=False,
            timestamp=now_ms(),
        )

    def notify_observers(self) -> int:
        self.update_cache()
        if not len(self.observers):
            return 0
        return self.observers.publish(self.snapshot_for_observer().to_message())

    def connect_observer(self, observer: Observer) -> None:
        self.observers.add(observer)
        self.observers.send(observer, self.snapshot_for_observer().to_message())

    def observer_request(self, observer: Observer) -> None:
        """An observer asked for data: answer it alone."""
        self.observers.send(observer, self.snapshot_for_observer().to_message())

    def disconnect_observer(self, observer: Observer) -> None:
        self.observers.discard(observer)

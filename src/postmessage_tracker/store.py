"""
Per-tab tracking state.

Each tab owns an append-only list of listener records and the set of
identity keys already seen. Appending a record and recording its key happen
in one synchronous call, so two observations for the same tab can never
interleave between the duplicate check and the key insert.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from .identity import listener_key
from .logger import get_logger
from .models import ListenerRecord
from .persistence import decode_tab_id, encode_tab_map

logger = get_logger("store")


@dataclasses.dataclass
class NavigationFlags:
    """Transient navigation markers; never persisted."""

    # A history push was reported; absorbs the next status transition
    pending_push: bool = False
    # The tab reported "loading" and no page change has been reported since
    loading: bool = False


@dataclasses.dataclass
class TabState:
    tab_id: Any
    records: List[ListenerRecord] = dataclasses.field(default_factory=list)
    seen_keys: Set[str] = dataclasses.field(default_factory=set)
    flags: NavigationFlags = dataclasses.field(default_factory=NavigationFlags)

    @property
    def is_empty(self) -> bool:
        return not self.records

    def clear(self) -> bool:
        had_records = bool(self.records)
        self.records = []
        self.seen_keys.clear()
        return had_records


class TrackingStore:
    """All TabStates of one aggregation service."""

    def __init__(self, dedupe_enabled: bool = True):
        self.dedupe_enabled = dedupe_enabled
        self._tabs: Dict[Any, TabState] = {}

    def __contains__(self, tab_id: Any) -> bool:
        return tab_id in self._tabs

    def __iter__(self) -> Iterator[TabState]:
        return iter(list(self._tabs.values()))

    def tab_ids(self) -> List[Any]:
        return list(self._tabs)

    def get(self, tab_id: Any) -> Optional[TabState]:
        return self._tabs.get(tab_id)

    def ensure(self, tab_id: Any) -> TabState:
        state = self._tabs.get(tab_id)
        if state is None:
            state = self._tabs[tab_id] = TabState(tab_id)
        return state

    def records(self, tab_id: Any) -> List[ListenerRecord]:
        state = self._tabs.get(tab_id)
        return list(state.records) if state else []

    def total_records(self) -> int:
        return sum(len(state.records) for state in self._tabs.values())

    def is_duplicate(self, tab_id: Any, record: ListenerRecord) -> bool:
        if not self.dedupe_enabled:
            return False
        state = self._tabs.get(tab_id)
        return state is not None and listener_key(record) in state.seen_keys

    def record_observed(self, tab_id: Any, record: ListenerRecord) -> bool:
        """Append the record unless it duplicates one already seen. Returns True if appended."""
        state = self.ensure(tab_id)
        key = listener_key(record)
        if self.dedupe_enabled and key in state.seen_keys:
            return False
        state.records.append(record)
        if self.dedupe_enabled:
            state.seen_keys.add(key)
        return True

    def clear(self, tab_id: Any) -> bool:
        """Empty a tab's records and keys, keeping the entry. Returns True if it had records."""
        return self.ensure(tab_id).clear()

    def remove(self, tab_id: Any) -> Optional[TabState]:
        return self._tabs.pop(tab_id, None)

    def set_dedupe(self, enabled: bool) -> None:
        """Toggle deduplication; turning it off forgets every seen key."""
        self.dedupe_enabled = enabled
        if not enabled:
            for state in self._tabs.values():
                state.seen_keys.clear()

    def listeners_by_tab(self) -> Dict[Any, List[ListenerRecord]]:
        return {tab_id: list(state.records) for tab_id, state in self._tabs.items()}

    def snapshot(self) -> Tuple[Dict[str, List[Dict[str, Any]]], Dict[str, List[str]]]:
        """JSON-ready projection of records and keys; navigation flags are left out."""
        listeners = encode_tab_map(
            {tab_id: [record.to_dict() for record in state.records] for tab_id, state in self._tabs.items()}
        )
        keys = encode_tab_map({tab_id: sorted(state.seen_keys) for tab_id, state in self._tabs.items()})
        return listeners, keys

    def restore(self, listeners: Mapping[Any, Any], keys: Mapping[Any, Any]) -> None:
        """Replace the whole store from a persisted snapshot. Flags start absent."""
        self._tabs = {}
        for raw_id, raw_records in listeners.items():
            state = self.ensure(decode_tab_id(raw_id))
            for raw in raw_records or []:
                if isinstance(raw, Mapping):
                    state.records.append(ListenerRecord.from_dict(raw))
                else:
                    logger.warning("Skipping malformed persisted record for tab %s", raw_id)
        for raw_id, raw_keys in keys.items():
            self.ensure(decode_tab_id(raw_id)).seen_keys.update(str(key) for key in raw_keys or [])

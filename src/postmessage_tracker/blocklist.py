#!/usr/bin/env python3
"""
Blocklist matching and management.

A record is blocked when its code is on the exact-code list, its cleaned
source URL is on the exact-URL list, or any user pattern matches its code.
Matching runs on every refresh, so the exact lists are kept as sets and the
patterns are compiled once per change.
"""

from __future__ import annotations

import dataclasses
import json
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, List, Optional

from .errors import InvalidBlocklistFile
from .identity import clean_url, extract_source_url
from .logger import get_logger
from .models import ListenerRecord

if TYPE_CHECKING:
    from .settings import SettingsStore

logger = get_logger("blocklist")

KIND_LISTENER = "listener"
KIND_URL = "url"
KIND_REGEX = "regex"

# Settings key for each list kind; also the key used in export files
LIST_KEYS: Dict[str, str] = {
    KIND_LISTENER: "blockedListeners",
    KIND_URL: "blockedUrls",
    KIND_REGEX: "blockedRegex",
}
EXPORT_VERSION = "1.0"
EXPORT_FILENAMES: Dict[str, str] = {
    KIND_LISTENER: "postmessage-tracker-blocked-listeners.json",
    KIND_URL: "postmessage-tracker-blocked-urls.json",
    KIND_REGEX: "postmessage-tracker-blocked-regex.json",
}


@dataclasses.dataclass(frozen=True)
class CompiledPattern:
    pattern: str
    regex: "re.Pattern[str]"


@dataclasses.dataclass(frozen=True)
class BlockMatch:
    """Why a record is blocked: which list matched and the matching value."""

    kind: str
    value: str


def compile_patterns(patterns: Iterable[str], flags: int = re.IGNORECASE) -> List[CompiledPattern]:
    """Compile user patterns, dropping invalid ones with a warning."""
    compiled: List[CompiledPattern] = []
    for pattern in patterns:
        try:
            compiled.append(CompiledPattern(pattern, re.compile(pattern, flags)))
        except (re.error, TypeError) as e:
            logger.warning("Invalid regex pattern %r dropped: %s", pattern, e)
    logger.debug("Compiled regex patterns: %d", len(compiled))
    return compiled


def parse_pattern_text(text: str) -> List[str]:
    """One pattern per line; surrounding whitespace and blank lines are ignored."""
    return [line.strip() for line in text.splitlines() if line.strip()]


def validate_kind(kind: str) -> str:
    if kind not in LIST_KEYS:
        raise ValueError(f"Unknown blocklist kind: {kind!r} (expected one of {', '.join(LIST_KEYS)})")
    return kind


class BlocklistMatcher:
    """Read-only view of the three rule lists, optimized for repeated matching."""

    def __init__(
        self,
        codes: Iterable[str] = (),
        urls: Iterable[str] = (),
        patterns: Iterable[str] = (),
    ):
        self._codes: FrozenSet[str] = frozenset()
        self._urls: FrozenSet[str] = frozenset()
        self._patterns: List[CompiledPattern] = []
        self.update(codes=codes, urls=urls, patterns=patterns)

    def update(
        self,
        codes: Optional[Iterable[str]] = None,
        urls: Optional[Iterable[str]] = None,
        patterns: Optional[Iterable[str]] = None,
    ) -> None:
        """Replace any of the lists; lists passed as None are left alone."""
        if codes is not None:
            self._codes = frozenset(codes)
        if urls is not None:
            self._urls = frozenset(urls)
        if patterns is not None:
            self._patterns = compile_patterns(patterns)

    @property
    def compiled_patterns(self) -> List[CompiledPattern]:
        return list(self._patterns)

    def match_pattern(self, code: str) -> Optional[str]:
        if not code:
            return None
        for compiled in self._patterns:
            if compiled.regex.search(code):
                return compiled.pattern
        return None

    def match(self, record: ListenerRecord) -> Optional[BlockMatch]:
        if record.code in self._codes:
            return BlockMatch(KIND_LISTENER, record.code)
        if self._urls:
            source_url = extract_source_url(record)
            if source_url and source_url in self._urls:
                return BlockMatch(KIND_URL, source_url)
        pattern = self.match_pattern(record.code)
        if pattern is not None:
            return BlockMatch(KIND_REGEX, pattern)
        return None

    def is_blocked(self, record: ListenerRecord) -> bool:
        return self.match(record) is not None


class BlocklistManager:
    """Edits the user-authored lists held in settings storage."""

    def __init__(self, settings: "SettingsStore"):
        self.settings = settings

    def entries(self, kind: str) -> List[str]:
        return list(self.settings.get(LIST_KEYS[validate_kind(kind)]))

    def _store(self, kind: str, values: List[str]) -> None:
        self.settings.set({LIST_KEYS[kind]: values})

    def add(self, kind: str, value: str) -> bool:
        """Append a rule unless it is already present. URLs are cleaned first."""
        entries = self.entries(kind)
        if kind == KIND_URL:
            value = clean_url(value) or ""
        if not value or value in entries:
            return False
        entries.append(value)
        self._store(kind, entries)
        return True

    def remove(self, kind: str, value: str) -> bool:
        entries = self.entries(kind)
        if kind == KIND_URL:
            value = clean_url(value) or ""
        remaining = [entry for entry in entries if entry != value]
        if len(remaining) == len(entries):
            return False
        self._store(kind, remaining)
        return True

    def replace(self, kind: str, values: Iterable[str]) -> None:
        self._store(validate_kind(kind), [str(value) for value in values])

    def clear(self, kind: str) -> None:
        self._store(validate_kind(kind), [])

    def export_data(self, kind: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        stamp = (now or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z")
        return {
            LIST_KEYS[validate_kind(kind)]: self.entries(kind),
            "exportDate": stamp,
            "version": EXPORT_VERSION,
        }

    def export_json(self, kind: str) -> str:
        return json.dumps(self.export_data(kind), indent=2)

    def import_data(self, kind: str, data: Any) -> int:
        """Replace a list from a parsed export file. Returns the number of imported rules."""
        key = LIST_KEYS[validate_kind(kind)]
        if not isinstance(data, dict) or not isinstance(data.get(key), list):
            raise InvalidBlocklistFile("Invalid file format")
        self.replace(kind, data[key])
        count = len(data[key])
        logger.info("Imported %d %s rules", count, kind)
        return count

    def import_json(self, kind: str, text: str) -> int:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidBlocklistFile(f"Invalid JSON: {e}") from e
        return self.import_data(kind, data)

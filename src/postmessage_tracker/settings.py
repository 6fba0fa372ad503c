from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import StorageError
from .logger import get_logger
from .persistence import KeyValueBackend

logger = get_logger("settings")

SettingsListener = Callable[[Dict[str, Any]], None]


class TrackerSettings(BaseModel):
    """User-authored settings. Field aliases are the durable storage keys."""

    model_config = ConfigDict(populate_by_name=True)

    dedupe_enabled: bool = Field(default=True, alias="dedupeEnabled")
    blocked_listeners: List[str] = Field(default_factory=list, alias="blockedListeners")
    blocked_urls: List[str] = Field(default_factory=list, alias="blockedUrls")
    blocked_regex: List[str] = Field(default_factory=list, alias="blockedRegex")
    log_url: str = Field(default="", alias="log_url")

    # Display preferences, kept for front-ends; the tracker itself never reads them
    prettify_enabled: bool = Field(default=False, alias="prettifyEnabled")
    syntax_highlight_enabled: bool = Field(default=True, alias="syntaxHighlightEnabled")
    expand_threshold: int = Field(default=4000, alias="expandThreshold")
    max_lines: int = Field(default=40, alias="maxLines")
    code_font_size: int = Field(default=12, alias="codeFontSize")
    highlight_rules: Dict[str, Any] = Field(default_factory=dict, alias="highlightRules")

    def as_storage(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


STORAGE_KEYS = [field.alias or name for name, field in TrackerSettings.model_fields.items()]


class SettingsStore:
    """
    Settings kept in a key/value backend, with change notification.

    Subscribers receive a mapping of storage key to new value for every key
    whose value actually changed.
    """

    def __init__(self, backend: KeyValueBackend, defaults: Optional[Mapping[str, Any]] = None):
        self.backend = backend
        self.defaults = dict(defaults or {})
        self._settings = TrackerSettings.model_validate(self.defaults)
        self._listeners: List[SettingsListener] = []

    @property
    def current(self) -> TrackerSettings:
        return self._settings

    def load(self) -> TrackerSettings:
        stored: Dict[str, Any] = {}
        try:
            stored = self.backend.get(STORAGE_KEYS)
        except StorageError as e:
            logger.error("Failed to load settings, using defaults: %s", e)

        merged = {**self.defaults, **stored}
        try:
            self._settings = TrackerSettings.model_validate(merged)
        except ValidationError as e:
            logger.error("Stored settings are invalid, using defaults: %s", e)
            self._settings = TrackerSettings.model_validate(self.defaults)
        logger.info(
            "Loaded settings - dedupe: %s, blocked listeners: %d, blocked URLs: %d, blocked regex: %d",
            self._settings.dedupe_enabled,
            len(self._settings.blocked_listeners),
            len(self._settings.blocked_urls),
            len(self._settings.blocked_regex),
        )
        return self._settings

    def get(self, key: str) -> Any:
        return self._settings.as_storage()[key]

    def set(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate and store changes keyed by storage key. Returns the keys that changed."""
        unknown = set(changes) - set(STORAGE_KEYS)
        if unknown:
            raise KeyError(f"Unknown settings keys: {', '.join(sorted(unknown))}")

        before = self._settings.as_storage()
        updated = TrackerSettings.model_validate({**before, **changes})
        after = updated.as_storage()
        changed = {key: after[key] for key in changes if after[key] != before[key]}
        self._settings = updated
        if not changed:
            return changed

        try:
            self.backend.set(changed)
        except StorageError as e:
            logger.error("Failed to save settings %s: %s", ", ".join(changed), e)

        for listener in list(self._listeners):
            try:
                listener(dict(changed))
            except Exception:
                logger.exception("Settings listener failed")
        return changed

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

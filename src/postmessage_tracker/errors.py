"""
Exception types shared across the tracker.
"""


class TrackerError(Exception):
    """Base class for all tracker errors."""


class SecurityError(TrackerError):
    """Raised by the runtime model when a window property is not accessible."""


class StorageError(TrackerError):
    """Raised when the durable key/value backend cannot be read or written."""


class TabNotFoundError(TrackerError, LookupError):
    """Raised when a tab id no longer refers to an open tab."""

    def __init__(self, tab_id: int):
        super().__init__(f"Tab {tab_id} does not exist")
        self.tab_id = tab_id


class InvalidBlocklistFile(TrackerError, ValueError):
    """Raised when an imported blocklist file does not have the expected shape."""


class ObserverClosed(TrackerError):
    """Raised by an observer whose channel has gone away."""

"""
Data models exchanged between the instrumented context, the aggregation
service and its observers.

The wire names (`listener`, `stack`, `fullstack`, `hops`, `domain`, `window`,
`parent_url`) are the ones used by the bridge and by the durable store, so
records round-trip through JSON without renaming.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

UNKNOWN = "unknown"
NATIVE_CODE = "function () { [native code] }"


@dataclasses.dataclass(frozen=True)
class ListenerRecord:
    """One observed registration of a message handler."""

    window_label: str = ""
    frame_path: str = ""
    domain: str = ""
    stack_line: str = ""
    full_stack: Optional[Tuple[str, ...]] = None
    code: str = ""
    parent_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "window": self.window_label,
            "hops": self.frame_path,
            "domain": self.domain,
            "stack": self.stack_line,
            "listener": self.code,
            "parent_url": self.parent_url,
        }
        if self.full_stack is not None:
            data["fullstack"] = list(self.full_stack)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ListenerRecord":
        fullstack = data.get("fullstack")
        return cls(
            window_label=_text(data.get("window")),
            frame_path=_text(data.get("hops")),
            domain=_text(data.get("domain")),
            stack_line=_text(data.get("stack")),
            full_stack=tuple(str(line) for line in fullstack) if isinstance(fullstack, (list, tuple)) else None,
            code=_text(data.get("listener")),
            parent_url=_text(data.get("parent_url")),
        )

    def with_parent_url(self, parent_url: str) -> "ListenerRecord":
        return dataclasses.replace(self, parent_url=parent_url)

    def stack_lines(self) -> Sequence[str]:
        """The lines searched for a source URL: the full stack, else the single selected line."""
        if self.full_stack is not None:
            return self.full_stack
        return (self.stack_line,) if self.stack_line else ()


@dataclasses.dataclass(frozen=True)
class Sender:
    """The tab a bridged message came from."""

    tab_id: Any
    url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"tabId": self.tab_id, "url": self.url}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Sender":
        if "tabId" not in data:
            raise ValueError("sender is missing 'tabId'")
        return cls(tab_id=data["tabId"], url=_text(data.get("url")))


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


class InboundMessage(BaseModel):
    """A message relayed by the bridge from an instrumented context."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    listener: Optional[str] = None
    stack: Optional[str] = None
    fullstack: Optional[List[str]] = None
    hops: Optional[str] = None
    domain: Optional[str] = None
    window: Optional[str] = None
    parent_url: Optional[str] = None
    push_state: bool = Field(default=False, alias="pushState")
    change_page: bool = Field(default=False, alias="changePage")
    log: Optional[str] = None
    # Control messages sent by settings front-ends rather than pages
    action: Optional[str] = None
    enabled: Optional[bool] = None

    def to_record(self, parent_url: str = "") -> ListenerRecord:
        return ListenerRecord(
            window_label=self.window or "",
            frame_path=self.hops or "",
            domain=self.domain or "",
            stack_line=self.stack or "",
            full_stack=tuple(self.fullstack) if self.fullstack is not None else None,
            code=self.listener or "",
            parent_url=parent_url or self.parent_url or "",
        )


@dataclasses.dataclass
class ObserverSnapshot:
    """The message pushed to connected observers."""

    listeners: Dict[int, List[ListenerRecord]]
    current_url: str
    cached: bool
    timestamp: int

    def to_message(self) -> Dict[str, Any]:
        return {
            "listeners": {
                str(tab_id): [record.to_dict() for record in records] for tab_id, records in self.listeners.items()
            },
            "currentUrl": self.current_url,
            "cached": self.cached,
            "timestamp": self.timestamp,
        }

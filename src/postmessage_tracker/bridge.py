#!/usr/bin/env python3
"""
Bridge: carries observations and tab events from an instrumented context to
the aggregation service.

The page side only ever emits; delivery problems are logged and swallowed so
the monitored page never sees them. The service side drains envelopes in
arrival order, which keeps the messages of one tab serialized.
"""

from __future__ import annotations

import abc
import asyncio
import dataclasses
import json
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import aiohttp

from .logger import get_logger
from .models import Sender

if TYPE_CHECKING:
    from .service import AggregationService

logger = get_logger("bridge")

BRIDGE_MESSAGE_TYPE = "POSTMESSAGE_TRACKER_DATA"

KIND_MESSAGE = "message"
KIND_TAB = "tab"

TAB_UPDATED = "updated"
TAB_ACTIVATED = "activated"
TAB_REMOVED = "removed"


@dataclasses.dataclass
class BridgeEnvelope:
    """One unit of bridge traffic: a page message, or a tab event."""

    kind: str
    sender: Optional[Sender] = None
    payload: Dict[str, Any] = dataclasses.field(default_factory=dict)
    event: Optional[str] = None
    tab_id: Any = None
    status: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def message(cls, sender: Sender, payload: Mapping[str, Any]) -> "BridgeEnvelope":
        return cls(kind=KIND_MESSAGE, sender=sender, payload=dict(payload))

    @classmethod
    def tab(
        cls, event: str, tab_id: Any, status: Optional[str] = None, url: Optional[str] = None
    ) -> "BridgeEnvelope":
        return cls(kind=KIND_TAB, event=event, tab_id=tab_id, status=status, url=url)

    def to_dict(self) -> Dict[str, Any]:
        if self.kind == KIND_MESSAGE:
            return {
                "kind": KIND_MESSAGE,
                "sender": self.sender.to_dict() if self.sender else None,
                "payload": self.payload,
            }
        data: Dict[str, Any] = {"kind": KIND_TAB, "event": self.event, "tabId": self.tab_id}
        if self.status is not None:
            data["status"] = self.status
        if self.url is not None:
            data["url"] = self.url
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BridgeEnvelope":
        if not isinstance(data, Mapping):
            raise ValueError("envelope is not an object")
        kind = data.get("kind")
        if kind == KIND_MESSAGE:
            payload = data.get("payload")
            if not isinstance(payload, Mapping):
                raise ValueError("message envelope without a payload object")
            sender = data.get("sender")
            return cls.message(Sender.from_dict(sender) if isinstance(sender, Mapping) else None, payload)
        if kind == KIND_TAB:
            if data.get("event") not in (TAB_UPDATED, TAB_ACTIVATED, TAB_REMOVED):
                raise ValueError(f"unknown tab event: {data.get('event')!r}")
            if "tabId" not in data:
                raise ValueError("tab envelope is missing 'tabId'")
            return cls.tab(data["event"], data["tabId"], data.get("status"), data.get("url"))
        raise ValueError(f"unknown envelope kind: {kind!r}")


class Bridge(abc.ABC):
    """Page-side end of the bridge. `sender` is updated when the tab navigates."""

    def __init__(self, sender: Sender):
        self.sender = sender

    @abc.abstractmethod
    def deliver(self, envelope: BridgeEnvelope) -> None:
        """Hand an envelope to the transport. May raise."""

    def _send(self, envelope: BridgeEnvelope) -> bool:
        try:
            self.deliver(envelope)
        except Exception as e:
            logger.warning("Bridge delivery failed: %s", e)
            return False
        return True

    def emit(self, payload: Mapping[str, Any]) -> bool:
        return self._send(BridgeEnvelope.message(self.sender, payload))

    def page_changing(self) -> bool:
        return self.emit({"changePage": True})

    def tab_event(self, event: str, status: Optional[str] = None, url: Optional[str] = None) -> bool:
        return self._send(BridgeEnvelope.tab(event, self.sender.tab_id, status, url))


class QueueBridge(Bridge):
    """Puts envelopes on an asyncio queue, from the loop's thread or any other."""

    def __init__(
        self,
        sender: Sender,
        queue: "asyncio.Queue[Optional[BridgeEnvelope]]",
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        super().__init__(sender)
        self.queue = queue
        self.loop = loop

    def deliver(self, envelope: BridgeEnvelope) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self.loop is not None and running is not self.loop:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, envelope)
        else:
            self.queue.put_nowait(envelope)


class DirectBridge(Bridge):
    """Hands envelopes straight to a receiver on the calling thread."""

    def __init__(self, sender: Sender, receiver: "BridgeReceiver"):
        super().__init__(sender)
        self.receiver = receiver

    def deliver(self, envelope: BridgeEnvelope) -> None:
        self.receiver.dispatch(envelope)


class BridgeReceiver:
    """Service-side end: applies envelopes to the aggregation service in order."""

    def __init__(
        self,
        service: "AggregationService",
        queue: Optional["asyncio.Queue[Optional[BridgeEnvelope]]"] = None,
    ):
        self.service = service
        self.queue = queue
        self.processed = 0

    def dispatch(self, envelope: BridgeEnvelope) -> Optional[Dict[str, Any]]:
        try:
            if envelope.kind == KIND_MESSAGE:
                return self.service.handle_message(envelope.payload, envelope.sender)
            if envelope.event == TAB_UPDATED:
                self.service.on_tab_updated(envelope.tab_id, envelope.status, envelope.url)
            elif envelope.event == TAB_ACTIVATED:
                self.service.on_tab_activated(envelope.tab_id)
            elif envelope.event == TAB_REMOVED:
                self.service.on_tab_removed(envelope.tab_id)
            else:
                logger.warning("Ignoring unknown bridge envelope: %r", envelope)
            return None
        except Exception as e:
            logger.error("Failed to apply bridge envelope %r: %s", envelope, e, exc_info=True)
            return None
        finally:
            self.processed += 1

    def dispatch_json(self, text: str) -> Optional[Dict[str, Any]]:
        try:
            envelope = BridgeEnvelope.from_dict(json.loads(text))
        except (ValueError, TypeError) as e:
            logger.warning("Dropping malformed bridge frame: %s", e)
            return None
        return self.dispatch(envelope)

    def drain_nowait(self) -> int:
        """Apply everything already queued. Returns the number of envelopes applied."""
        if self.queue is None:
            return 0
        count = 0
        while True:
            try:
                envelope = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            self.queue.task_done()
            if envelope is None:
                return count
            self.dispatch(envelope)
            count += 1

    async def run(self) -> None:
        """Apply envelopes until a None sentinel arrives or the task is cancelled."""
        if self.queue is None:
            raise RuntimeError("BridgeReceiver.run() needs a queue")
        while True:
            envelope = await self.queue.get()
            try:
                if envelope is None:
                    return
                self.dispatch(envelope)
            finally:
                self.queue.task_done()


class WebSocketBridgeClient:
    """Forwards queued envelopes to a remote aggregation server's bridge websocket."""

    def __init__(
        self,
        url: str,
        queue: "asyncio.Queue[Optional[BridgeEnvelope]]",
        max_connection_errors: int = 5,
        retry_delay: float = 0.5,
    ):
        self.url = url
        self.queue = queue
        self.session: Optional[aiohttp.ClientSession] = None
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.connection_errors = 0
        self.max_connection_errors = max_connection_errors
        self.retry_delay = retry_delay
        self.sent = 0

    async def connect(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        self.ws = await self.session.ws_connect(self.url)
        logger.info("Connected to bridge endpoint %s", self.url)

    async def close(self) -> None:
        if self.ws and not self.ws.closed:
            await self.ws.close()
        if self.session and not self.session.closed:
            await self.session.close()

    async def send(self, envelope: BridgeEnvelope) -> bool:
        """Send one envelope, reconnecting as needed. Returns False once it gives up."""
        payload = json.dumps(envelope.to_dict())
        # The error budget is per envelope
        self.connection_errors = 0
        while self.connection_errors < self.max_connection_errors:
            try:
                if self.ws is None or self.ws.closed:
                    await self.connect()
                await self.ws.send_str(payload)
                self.connection_errors = 0
                self.sent += 1
                return True
            except (aiohttp.ClientError, ConnectionError, OSError) as e:
                self.connection_errors += 1
                logger.warning(
                    "Bridge send failed (%d/%d): %s", self.connection_errors, self.max_connection_errors, e
                )
                await asyncio.sleep(self.retry_delay)
        logger.error("Too many bridge connection errors, dropping envelope")
        return False

    async def run(self) -> None:
        try:
            while True:
                envelope = await self.queue.get()
                try:
                    if envelope is None:
                        return
                    await self.send(envelope)
                finally:
                    self.queue.task_done()
        finally:
            await self.close()

"""
Pytest configuration and shared fixtures for the tracker tests.
"""

from typing import Any, Callable, Dict, List

import pytest

from postmessage_tracker.bridge import Bridge, BridgeEnvelope
from postmessage_tracker.models import ListenerRecord, Sender
from postmessage_tracker.persistence import MemoryBackend
from postmessage_tracker.service import AggregationService
from postmessage_tracker.settings import SettingsStore

SCENARIO_CODE = "function(e){console.log(e)}"
SCENARIO_STACK = "(https://cdn.example.com/a.js?x=1:10:5)"


class RecordingBridge(Bridge):
    """Bridge that keeps every envelope instead of transporting it."""

    def __init__(self, sender: Sender = Sender(1, "https://example.com/")):
        super().__init__(sender)
        self.envelopes: List[BridgeEnvelope] = []

    def deliver(self, envelope: BridgeEnvelope) -> None:
        self.envelopes.append(envelope)

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [envelope.payload for envelope in self.envelopes if envelope.kind == "message"]

    @property
    def observations(self) -> List[Dict[str, Any]]:
        return [payload for payload in self.payloads if "listener" in payload]


@pytest.fixture
def make_record() -> Callable[..., ListenerRecord]:
    """Factory for records shaped like the bridge delivers them."""

    def factory(
        code: str = SCENARIO_CODE,
        stack: str = SCENARIO_STACK,
        hops: str = "top",
        domain: str = "example.com",
        **fields: Any,
    ) -> ListenerRecord:
        fields.setdefault("full_stack", (stack,) if stack else None)
        return ListenerRecord(
            window_label=fields.pop("window_label", "top"),
            frame_path=hops,
            domain=domain,
            stack_line=stack,
            code=code,
            **fields,
        )

    return factory


@pytest.fixture
def scenario_message() -> Dict[str, Any]:
    return {
        "listener": SCENARIO_CODE,
        "stack": SCENARIO_STACK,
        "fullstack": [SCENARIO_STACK],
        "hops": "top",
        "domain": "example.com",
        "window": "top",
    }


@pytest.fixture
def recording_bridge() -> RecordingBridge:
    return RecordingBridge()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def settings_backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def settings(settings_backend: MemoryBackend) -> SettingsStore:
    return SettingsStore(settings_backend)


@pytest.fixture
def service(backend: MemoryBackend, settings: SettingsStore):
    """A started aggregation service over in-memory storage."""
    svc = AggregationService(backend, settings, debounce=0.01)
    svc.start()
    yield svc
    svc.close(flush=False)

"""
Tests for the interception layer installed in front of a context's entry points.
"""

import logging

import pytest

from postmessage_tracker import broker
from postmessage_tracker.bridge import BRIDGE_MESSAGE_TYPE, Bridge
from postmessage_tracker.broker import (
    INTERNAL_MARKER,
    InterceptionLayer,
    is_from_extension,
    is_ignored_extension_payload,
)
from postmessage_tracker.context import MESSAGE, BrowsingContext, ScriptFunction
from postmessage_tracker.models import Sender

SCENARIO_CODE = "function(e){console.log(e)}"
SENTRY_SOURCE = (
    "function () { var args = [].slice.call(arguments); if (typeof fn === 'function') { return fn.apply(this, args) } }"
)
OBSERVATION_KEYS = {"window", "hops", "domain", "stack", "fullstack", "listener"}


def monitored_add(context, handler):
    """Registers through a monitoring wrapper, adding one frame of its own."""
    wrapper = ScriptFunction(SENTRY_SOURCE, properties={"__sentry_original__": handler})
    context.add_event_listener(MESSAGE, wrapper)


class FailingBridge(Bridge):
    def deliver(self, envelope):
        raise ConnectionError("extension context invalidated")


@pytest.fixture
def window():
    return BrowsingContext(url="https://example.com/")


@pytest.fixture
def handler():
    return ScriptFunction(SCENARIO_CODE, name="onMessage")


@pytest.fixture
def layer(window, recording_bridge):
    return InterceptionLayer.install(window, recording_bridge)


class TestInstall:
    """Test installing the layer."""

    def test_install_is_idempotent(self, window, recording_bridge, layer):
        """Test a second install keeps the first layer and its single diagnostic listener."""
        assert InterceptionLayer.install(window, recording_bridge) is layer
        assert window.entry_points is layer
        assert len(window.listeners()) == 1
        assert recording_bridge.observations == []

    def test_install_without_diagnostics(self, window, recording_bridge):
        InterceptionLayer.install(window, recording_bridge, diagnostics=False)
        assert window.listeners() == []


class TestObservation:
    """Test observations emitted for message handler registrations."""

    def test_observation_fields(self, window, handler, layer, recording_bridge):
        """Test the emitted observation and the untouched registration."""
        window.add_event_listener(MESSAGE, handler)
        (observation,) = recording_bridge.observations
        assert set(observation) == OBSERVATION_KEYS
        assert observation["window"] == "top"
        assert observation["hops"] == "top"
        assert observation["domain"] == "example.com"
        assert observation["listener"] == SCENARIO_CODE
        assert "TestObservation.test_observation_fields" in observation["stack"]
        assert observation["stack"] in observation["fullstack"]
        assert handler in window.listeners()

    def test_envelope_sender(self, window, handler, layer, recording_bridge):
        window.add_event_listener(MESSAGE, handler)
        assert recording_bridge.envelopes[-1].sender == Sender(1, "https://example.com/")

    def test_onmessage_property(self, window, handler, layer, recording_bridge):
        """Test assigning onmessage is observed and still takes effect."""
        window.onmessage = handler
        (observation,) = recording_bridge.observations
        assert "TestObservation.test_onmessage_property" in observation["stack"]
        assert window.onmessage is handler

    def test_clearing_onmessage(self, window, layer, recording_bridge):
        window.onmessage = None
        assert recording_bridge.observations == []

    def test_other_event_types_pass_through(self, window, handler, layer, recording_bridge):
        """Test non-message registrations are not observed."""
        window.add_event_listener("click", handler)
        assert recording_bridge.observations == []
        assert window.listeners("click") == [handler]

    def test_python_handler_source(self, window, layer, recording_bridge):
        def on_message(event):
            return event.data

        window.add_event_listener(MESSAGE, on_message)
        assert recording_bridge.observations[0]["listener"].startswith("def on_message(event):")

    def test_internal_listener_skipped(self, window, layer, recording_bridge):
        """Test listeners marked internal are never reported."""
        internal = ScriptFunction("function(e){}", properties={INTERNAL_MARKER: True})
        window.add_event_listener(MESSAGE, internal)
        assert recording_bridge.observations == []
        assert internal in window.listeners()

    def test_extension_listener_skipped(self, window, layer, recording_bridge):
        """Test denylisted extension handlers are registered but not reported."""
        extension = ScriptFunction("function(e){ window.wappalyzer.handle(e) }")
        window.add_event_listener(MESSAGE, extension)
        assert recording_bridge.observations == []
        assert extension in window.listeners()

    def test_unwrapped_handler_reported(self, window, handler, layer, recording_bridge):
        """Test the wrapped handler is reported and the unwrap is announced first."""
        window.add_event_listener(MESSAGE, ScriptFunction(SENTRY_SOURCE, properties={"__sentry_original__": handler}))
        assert recording_bridge.payloads[0] == {"log": "Unwrapping sentry wrapper"}
        assert recording_bridge.observations[0]["listener"] == SCENARIO_CODE

    def test_wrapper_offset_skips_wrapper_frame(self, window, handler, layer, recording_bridge):
        """Test the wrapper's own frame is skipped when selecting the call site."""
        monitored_add(window, handler)
        stack = recording_bridge.observations[0]["stack"]
        assert "test_wrapper_offset_skips_wrapper_frame" in stack
        assert "monitored_add" not in stack

    def test_dispatcher_uses_marker(self, window, layer, recording_bridge):
        """Test dispatcher handlers report the frame after the framework's registration."""

        class init:
            def on(self, context, listener):
                context.add_event_listener(MESSAGE, listener)

        dispatcher = ScriptFunction("function(e){ return jQuery.event.dispatch.apply(elem, arguments) }")
        init().on(window, dispatcher)
        stack = recording_bridge.observations[0]["stack"]
        assert "TestObservation.test_dispatcher_uses_marker" in stack
        assert "<locals>" not in stack

    def test_bound_handler_label(self, window, layer, recording_bridge):
        class Widget:
            def on_message(self, event):
                return event

        window.add_event_listener(MESSAGE, Widget().on_message)
        listener = recording_bridge.observations[0]["listener"]
        assert listener.startswith("bound ") and listener.endswith("Widget.on_message")

    def test_frame_observation(self, window, handler, recording_bridge):
        """Test a frame reports its name and path from the top."""
        frame = BrowsingContext("ads", url="https://ads.example/", parent=window)
        InterceptionLayer.install(frame, recording_bridge)
        frame.add_event_listener(MESSAGE, handler)
        observation = recording_bridge.observations[0]
        assert (observation["window"], observation["hops"], observation["domain"]) == (
            "ads",
            "top.frames[0]",
            "ads.example",
        )

    def test_isolated_frame_reports_unknown(self, window, handler, recording_bridge):
        """Test inaccessible window properties become unknown without losing the observation."""
        frame = BrowsingContext("x", url="https://other.example/", parent=window, isolated=True)
        InterceptionLayer.install(frame, recording_bridge)
        frame.add_event_listener(MESSAGE, handler)
        observation = recording_bridge.observations[0]
        assert observation["window"] == "unknown"
        assert observation["hops"] == "unknown"
        assert observation["domain"] == "other.example"
        assert observation["listener"] == SCENARIO_CODE

    def test_enrichment_failure_falls_back(self, window, handler, layer, recording_bridge, monkeypatch):
        """Test a failing call-site lookup still emits an observation."""

        def broken(*args, **kwargs):
            raise RuntimeError("no stack")

        monkeypatch.setattr(broker, "locate_call_site", broken)
        window.add_event_listener(MESSAGE, handler)
        observation = recording_bridge.observations[0]
        assert observation["window"] == "unknown"
        assert observation["listener"] == SCENARIO_CODE
        assert handler in window.listeners()

    def test_failing_bridge_does_not_block_registration(self, window, handler, caplog):
        """Test delivery errors are logged and the page is unaffected."""
        InterceptionLayer.install(window, FailingBridge(Sender(3)))
        with caplog.at_level(logging.WARNING, logger="postmessage_tracker"):
            window.add_event_listener(MESSAGE, handler)
        assert handler in window.listeners()
        assert "Bridge delivery failed" in caplog.text


class TestHistory:
    def test_push_state_emits_signal(self, window, layer, recording_bridge):
        """Test history pushes emit a navigation signal and still navigate."""
        window.push_state({}, "", "/next")
        assert recording_bridge.payloads == [{"pushState": True}]
        assert window.url == "https://example.com/next"


class TestMessageLogger:
    """Test the diagnostic logging of received messages."""

    def test_logs_messages(self, window, layer, caplog):
        with caplog.at_level(logging.INFO, logger="postmessage_tracker"):
            window.post_message("hello", source=window)
            window.post_message({"a": 1}, source=window, ports=[object()])
        assert "top→top hello" in caplog.text
        assert 'top→top port1 j {"a": 1}' in caplog.text

    def test_ignores_extension_payloads(self, window, layer, caplog):
        with caplog.at_level(logging.INFO, logger="postmessage_tracker"):
            window.post_message({"type": BRIDGE_MESSAGE_TYPE, "detail": {}}, source=window)
        assert "→" not in caplog.text


class TestExtensionFilters:
    """Test the page-side extension filters."""

    @pytest.mark.parametrize(
        "data, expected",
        [
            ({"type": BRIDGE_MESSAGE_TYPE}, True),
            ({"ext": "React-DevTools"}, True),
            ({"wappalyzerData": 1}, True),
            ({"source": "vue-devtools-proxy"}, True),
            ({"sender": "BITWARDEN-WEBAUTHN"}, True),
            ({"source": "app", "payload": "x"}, False),
            ("react-devtools", False),
            (None, False),
            ({}, False),
        ],
    )
    def test_is_ignored_extension_payload(self, data, expected):
        assert is_ignored_extension_payload(data) is expected

    def test_is_from_extension(self):
        """Test handler text and stack are both searched."""
        assert is_from_extension("function(){}", "at x (chrome-extension://domlogger/a.js:1:1)")
        assert not is_from_extension("function(){}", "at x (https://example.com/a.js:1:1)")

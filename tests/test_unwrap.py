"""
Tests for wrapper signatures and the recursive unwrapper.
"""

import functools
import re

import pytest

from postmessage_tracker.models import NATIVE_CODE
from postmessage_tracker.signatures import (
    SENTRY,
    ScriptFunction,
    SignatureMatcher,
    WrapperSignature,
    dispatcher_marker,
    handler_source,
)
from postmessage_tracker.unwrap import (
    NamedPropertyRule,
    OffsetOnlyRule,
    SolePropertyRule,
    Unwrapper,
    bound_label,
)

RAVEN_SOURCE = (
    "function wrapped() { var args = Raven.deep(arguments); try { return func.apply(this, args); } "
    "catch (e) { Raven.captureException(e); throw e; } }"
)
NEWRELIC_SOURCE = (
    "function nrWrapper() { var args = arguments; start(args); try { return fn.apply(this, args) } "
    "catch (err) { throw err } finally { end() } }"
)
ROLLBAR_SOURCE = "function () { var rollbarContext = {}; try { return f.apply(this, arguments) } catch (e) { rollbarWrappedError(e) } }"
BUGSNAG_SOURCE = "function () { try { return fn.apply(this, arguments) } catch (e) { autoNotify && notifyException(e) } }"
SENTRY_SOURCE = (
    "function () { var args = [].slice.call(arguments); if (typeof fn === 'function') { return fn.apply(this, args) } }"
)
BUGSNAG2_SOURCE = "function () { return function () { return fn.apply(this, arguments) } }"


@pytest.fixture
def inner():
    return ScriptFunction("function(e){console.log(e)}", name="onMessage")


@pytest.fixture
def unwrapper():
    return Unwrapper()


def sentry(wrapped):
    return ScriptFunction(SENTRY_SOURCE, properties={"__sentry_original__": wrapped})


def newrelic(wrapped):
    return ScriptFunction(NEWRELIC_SOURCE, properties={"nr@original": wrapped})


class TestSignatures:
    """Test recognition of each known wrapper shape."""

    @pytest.mark.parametrize(
        "source, properties, expected",
        [
            (RAVEN_SOURCE, {"original": lambda e: None}, "raven"),
            (NEWRELIC_SOURCE, {"nr@original": lambda e: None}, "newrelic"),
            (ROLLBAR_SOURCE, {"_isWrap": True}, "rollbar"),
            (BUGSNAG_SOURCE, {"bugsnag": lambda e: None}, "bugsnag"),
            (SENTRY_SOURCE, {"__sentry_original__": lambda e: None}, "sentry"),
            (BUGSNAG2_SOURCE, {"__trace__": lambda e: None}, "bugsnag2"),
        ],
    )
    def test_identify(self, source, properties, expected):
        assert SignatureMatcher().identify(ScriptFunction(source, properties=properties)) == expected

    def test_text_without_marker_property(self):
        """Test both the text and the property check must hold."""
        assert SignatureMatcher().identify(ScriptFunction(SENTRY_SOURCE)) is None
        assert SignatureMatcher().identify(ScriptFunction(ROLLBAR_SOURCE, properties={"_isWrap": False})) is None

    def test_plain_handler(self, inner):
        assert SignatureMatcher().identify(inner) is None

    def test_functools_wrapper(self):
        """Test functools.wraps wrappers are recognized by __wrapped__."""

        def handler(event):
            return event

        @functools.wraps(handler)
        def wrapper(event):
            return handler(event)

        assert SignatureMatcher().identify(wrapper) == "functools"
        assert SignatureMatcher().identify(handler) is None

    def test_matcher_never_raises(self):
        """Test objects that fail inspection simply do not match."""

        class Hostile:
            @property
            def __dict__(self):
                raise RuntimeError("no inspection")

        assert SignatureMatcher().identify(Hostile()) is None


class TestHandlerSource:
    def test_builtin_is_native_code(self):
        """Test builtins read as native code."""
        assert handler_source(len) == NATIVE_CODE

    def test_python_function_source(self):
        def on_message(event):
            return event.data

        assert handler_source(on_message).startswith("def on_message(event):")

    def test_script_function_source(self, inner):
        assert handler_source(inner) == "function(e){console.log(e)}"

    def test_dispatcher_marker(self):
        """Test dispatcher handlers yield a marker matching the framework frame."""
        marker = dispatcher_marker("function(e){ return jQuery.event.dispatch.apply(elem, arguments) }")
        assert marker is not None
        assert marker.search("at init.on (https://code.jquery.com/jquery.js:10:3)")
        assert dispatcher_marker("function(e){}") is None


class TestUnwrapper:
    """Test recursive unwrapping and the offset it accumulates."""

    def test_sentry_unwraps(self, unwrapper, inner):
        result = unwrapper.unwrap(sentry(inner))
        assert result.handler is inner
        assert result.offset == 1
        assert result.layers == ["sentry"]

    def test_nested_wrappers(self, unwrapper, inner):
        """Test offsets add up across layers."""
        result = unwrapper.unwrap(sentry(newrelic(inner)))
        assert result.handler is inner
        assert result.layers == ["sentry", "newrelic"]
        assert result.offset == 2

    def test_rollbar_offset(self, unwrapper, inner):
        """Test rollbar layers count two frames."""
        wrapper = ScriptFunction(ROLLBAR_SOURCE, properties={"_isWrap": True, "_wrapped": inner})
        result = unwrapper.unwrap(wrapper)
        assert result.handler is inner
        assert result.offset == 2

    def test_rollbar_without_original(self, unwrapper):
        """Test a rollbar wrapper hiding its original still contributes its frames."""
        wrapper = ScriptFunction(ROLLBAR_SOURCE, properties={"_isWrap": True})
        result = unwrapper.unwrap(wrapper)
        assert result.handler is wrapper
        assert result.offset == 2

    def test_bugsnag_offset_only(self, unwrapper):
        """Test bugsnag wrappers are kept but counted."""
        wrapper = ScriptFunction(BUGSNAG_SOURCE, properties={"bugsnag": lambda e: None})
        result = unwrapper.unwrap(wrapper)
        assert result.handler is wrapper
        assert (result.layers, result.offset) == (["bugsnag"], 1)

    def test_raven_single_candidate(self, unwrapper, inner):
        wrapper = ScriptFunction(RAVEN_SOURCE, properties={"__raven__": inner, "flag": True})
        result = unwrapper.unwrap(wrapper)
        assert result.handler is inner
        assert result.offset == 1

    def test_raven_ambiguity_stops(self, unwrapper, inner):
        """Test raven with several function-valued properties is left wrapped."""
        wrapper = ScriptFunction(RAVEN_SOURCE, properties={"a": inner, "b": lambda e: None})
        result = unwrapper.unwrap(wrapper)
        assert result.handler is wrapper
        assert result.layers == ["raven"]
        assert result.offset == 0

    def test_functools_chain(self, unwrapper):
        def handler(event):
            return event

        @functools.wraps(handler)
        def logged(event):
            return handler(event)

        result = unwrapper.unwrap(logged)
        assert result.handler is handler
        assert result.layers == ["functools"]

    def test_cycle_terminates(self, unwrapper):
        """Test a wrapper pointing back at itself does not loop."""
        wrapper = ScriptFunction(SENTRY_SOURCE)
        wrapper["__sentry_original__"] = wrapper
        result = unwrapper.unwrap(wrapper)
        assert result.handler is wrapper
        assert result.layers == ["sentry"]

    def test_depth_limit(self, inner):
        """Test unwrapping stops at the depth limit."""
        handler = inner
        for _ in range(10):
            handler = sentry(handler)
        result = Unwrapper(max_depth=3).unwrap(handler)
        assert len(result.layers) == 3
        assert result.handler is not inner

    def test_detection_callback(self, unwrapper, inner):
        detected = []
        unwrapper.unwrap(sentry(newrelic(inner)), on_detect=detected.append)
        assert detected == ["sentry", "newrelic"]

    def test_failing_callback_is_ignored(self, unwrapper, inner):
        def explode(name):
            raise RuntimeError(name)

        assert unwrapper.unwrap(sentry(inner), on_detect=explode).handler is inner

    def test_unrecognized_handler_unchanged(self, unwrapper, inner):
        result = unwrapper.unwrap(inner)
        assert result.handler is inner
        assert (result.layers, result.offset, result.label) == ([], 0, None)

    def test_register_before(self, inner):
        """Test registered shapes can take precedence over built-in ones."""
        custom = WrapperSignature("custom", re.compile(r"typeof"), lambda handler, properties: "inner" in properties)
        unwrapper = Unwrapper()
        unwrapper.register(custom, NamedPropertyRule("inner", offset=3), before=SENTRY.name)
        wrapper = ScriptFunction(SENTRY_SOURCE, properties={"inner": inner, "__sentry_original__": inner})
        result = unwrapper.unwrap(wrapper)
        assert result.layers == ["custom"]
        assert result.offset == 3
        assert unwrapper.signatures.signatures[4] is custom

    def test_register_appends(self, inner):
        unwrapper = Unwrapper(pairs=[])
        unwrapper.register(SENTRY, OffsetOnlyRule(offset=5))
        assert unwrapper.unwrap(sentry(inner)).offset == 5


class TestRules:
    def test_sole_property_rule(self, inner):
        assert SolePropertyRule().apply(None, {"x": inner, "y": 1}) == (inner, 1)
        assert SolePropertyRule().apply(None, {}) == (None, 0)

    def test_named_property_rule_order(self, inner):
        rule = NamedPropertyRule("first", "second", offset=2)
        assert rule.apply(None, {"second": inner}) == (inner, 2)
        assert rule.apply(None, {"first": "not callable"}) == (None, 2)


class TestBoundLabel:
    """Test labels for bound handlers."""

    def test_bound_method(self, unwrapper):
        class Widget:
            def on_message(self, event):
                return event

        label = bound_label(Widget().on_message)
        assert label.startswith("bound ") and label.endswith("Widget.on_message")
        assert unwrapper.unwrap(Widget().on_message).label == label

    def test_bound_script_function(self):
        assert bound_label(ScriptFunction("function () { [native code] }", name="bound handle")) == "bound handle"

    def test_plain_function(self, inner):
        assert bound_label(inner) is None
        assert bound_label(print) is None

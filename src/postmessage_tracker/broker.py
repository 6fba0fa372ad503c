#!/usr/bin/env python3
"""
Registration broker: the interception layer installed in front of a
browsing context's entry points.

For every message handler registered through `add_event_listener` or the
`onmessage` property, the broker unwraps monitoring wrappers, locates the
registering call site, resolves the frame path and emits a listener
observation over the bridge. History pushes emit a navigation signal. The
original registration always goes through unchanged, whatever happens
during enrichment.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Mapping, Optional

from .bridge import BRIDGE_MESSAGE_TYPE, Bridge
from .callsite import locate_call_site
from .context import MESSAGE, BrowsingContext, EntryPoints, MessageEvent
from .frames import TOP, resolve_hops
from .logger import get_logger
from .models import UNKNOWN
from .signatures import dispatcher_marker, handler_properties, handler_source
from .unwrap import Unwrapper

logger = get_logger("broker")

INTERNAL_MARKER = "__postmessage_tracker_internal__"

# Matched case-sensitively against handler text and stack
PAGE_EXTENSION_DENYLIST = (
    "wappalyzer",
    "react-devtools",
    "vue-devtools",
    "domlogger",
    "bitwarden-webauthn",
    BRIDGE_MESSAGE_TYPE,
    INTERNAL_MARKER,
)

SENDER_FIELDS = ("SENDER", "sender", "source", "from", "origin", "extension", "ext_id")


def is_from_extension(text: str, stack: str = "") -> bool:
    combined = f"{text} {stack}"
    return any(name in combined for name in PAGE_EXTENSION_DENYLIST)


def _mentions_extension(value: str) -> bool:
    lowered = value.lower()
    return any(name.lower() in lowered for name in PAGE_EXTENSION_DENYLIST)


def is_ignored_extension_payload(data: Any) -> bool:
    """True for message payloads produced by the bridge itself or by a denylisted extension."""
    if not data:
        return False
    if not isinstance(data, Mapping):
        return False
    if data.get("type") == BRIDGE_MESSAGE_TYPE:
        return True
    ext = data.get("ext")
    if isinstance(ext, str) and _mentions_extension(ext):
        return True
    if any(_mentions_extension(str(key)) for key in data):
        return True
    for field in SENDER_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and _mentions_extension(value):
            return True
    return False


def is_internal(listener: Any) -> bool:
    try:
        return bool(handler_properties(listener).get(INTERNAL_MARKER))
    except Exception:
        return False


def _guarded(compute: Callable[[], str]) -> str:
    try:
        return compute()
    except Exception as e:
        logger.debug("Enrichment failed: %s", e)
        return UNKNOWN


def make_message_logger(context: BrowsingContext) -> Callable[[MessageEvent], None]:
    """A marked listener that logs every message the context receives."""

    def log_message(event: MessageEvent) -> None:
        try:
            if is_ignored_extension_payload(event.data):
                return
            ports = f"port{len(event.ports)} " if event.ports else ""
            data = event.data if isinstance(event.data, str) else "j " + json.dumps(event.data, default=str)
            logger.info("%s→%s %s%s", resolve_hops(context, event.source), resolve_hops(context), ports, data)
        except Exception as e:
            logger.debug("Message logging failed: %s", e)

    setattr(log_message, INTERNAL_MARKER, True)
    return log_message


class InterceptionLayer(EntryPoints):
    """Entry points that observe registrations, then delegate to the native ones."""

    def __init__(self, context: BrowsingContext, native: EntryPoints, bridge: Bridge, unwrapper: Unwrapper):
        super().__init__(context)
        self.native = native
        self.bridge = bridge
        self.unwrapper = unwrapper

    @classmethod
    def install(
        cls,
        context: BrowsingContext,
        bridge: Bridge,
        unwrapper: Optional[Unwrapper] = None,
        diagnostics: bool = True,
    ) -> "InterceptionLayer":
        """Install once per context; a second call returns the layer already in place."""
        existing = context.entry_points
        if isinstance(existing, InterceptionLayer):
            return existing
        layer = cls(context, existing, bridge, unwrapper or Unwrapper())
        context.entry_points = layer
        if diagnostics:
            context.add_event_listener(MESSAGE, make_message_logger(context))
        logger.debug("Interception installed in %s", resolve_hops(context))
        return layer

    # --- hooked entry points ---

    def add_event_listener(self, event_type: str, listener: Callable[..., Any]) -> None:
        if event_type == MESSAGE and callable(listener):
            self._observe(listener)
        return self.native.add_event_listener(event_type, listener)

    def remove_event_listener(self, event_type: str, listener: Callable[..., Any]) -> None:
        return self.native.remove_event_listener(event_type, listener)

    def set_onmessage(self, listener: Optional[Callable[..., Any]]) -> None:
        if callable(listener):
            self._observe(listener)
        return self.native.set_onmessage(listener)

    def push_state(self, state: Any, title: str = "", url: Optional[str] = None) -> None:
        self.bridge.emit({"pushState": True})
        return self.native.push_state(state, title, url)

    # --- enrichment ---

    def _announce_unwrap(self, name: str) -> None:
        self.bridge.emit({"log": f"Unwrapping {name} wrapper"})

    def _window_label(self) -> str:
        context = self.context
        return TOP if context.top is context else context.name

    def _observe(self, listener: Callable[..., Any]) -> Optional[Dict[str, Any]]:
        """Build and emit the observation for one registration. Never raises."""
        try:
            if is_internal(listener) or is_from_extension(handler_source(listener)):
                return None
            marker = dispatcher_marker(handler_source(listener))
            result = self.unwrapper.unwrap(listener, on_detect=self._announce_unwrap)
            code = result.label or handler_source(result.handler)
            site = locate_call_site(result.offset, marker)
            if is_from_extension(code, " ".join(site.stack)):
                return None
            observation = {
                "window": _guarded(self._window_label),
                "hops": _guarded(lambda: resolve_hops(self.context)),
                "domain": _guarded(lambda: self.context.domain),
                "stack": site.line,
                "fullstack": site.stack,
                "listener": code,
            }
        except Exception as e:
            logger.debug("Observation failed: %s", e)
            observation = {
                "window": UNKNOWN,
                "hops": UNKNOWN,
                "domain": UNKNOWN,
                "stack": "",
                "listener": _guarded(lambda: handler_source(listener)),
            }
        self.bridge.emit(observation)
        return observation

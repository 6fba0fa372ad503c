#!/usr/bin/env python3
"""
Wrapper signatures: recognizing error-monitoring wrappers around handlers.

Monitoring libraries replace a page's handler with their own function that
calls the original inside a try/catch. Each library leaves a recognizable
body and usually a property pointing back at what it wrapped. A signature
pairs a pattern over the handler's text with a check on its properties; both
must hold for the signature to match.
"""

from __future__ import annotations

import dataclasses
import inspect
import re
import textwrap
from typing import Any, Callable, Dict, Iterable, List, Optional

from .logger import get_logger
from .models import NATIVE_CODE

logger = get_logger("signatures")

# Handlers whose text contains this are jQuery-style dispatchers; the real
# registration site is the line after the framework's `init.on` frame.
DISPATCHER_NEEDLE = "event.dispatch.apply"
DISPATCHER_MARKER = re.compile(r"init\.on|init\..*on\]")

MarkerCheck = Callable[[Any, Dict[str, Any]], bool]


class ScriptFunction:
    """
    A page-script function as seen by the instrumentation: callable, with a
    textual form and a bag of properties. Property names need not be Python
    identifiers (`fn["nr@original"]`).
    """

    def __init__(
        self,
        source: str,
        name: str = "",
        body: Optional[Callable[..., Any]] = None,
        properties: Optional[Dict[str, Any]] = None,
    ):
        self.source = source
        self.name = name
        self.body = body
        self.properties: Dict[str, Any] = dict(properties or {})

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        if self.body is None:
            return None
        return self.body(*args, **kwargs)

    def __getitem__(self, key: str) -> Any:
        return self.properties[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.properties[key] = value

    def __repr__(self) -> str:
        return f"<ScriptFunction {self.name or 'anonymous'}>"


def handler_source(handler: Any) -> str:
    """The textual form of a handler, never raising."""
    if isinstance(handler, ScriptFunction):
        return handler.source
    if inspect.isbuiltin(handler) or type(handler).__name__ in ("method-wrapper", "wrapper_descriptor"):
        return NATIVE_CODE
    target = handler.__func__ if inspect.ismethod(handler) else handler
    try:
        return textwrap.dedent(inspect.getsource(target)).strip()
    except (OSError, TypeError):
        pass
    try:
        return repr(handler)
    except Exception:
        return "unknown"


def handler_properties(handler: Any) -> Dict[str, Any]:
    """Own properties of a handler: the property bag of a script function, else its __dict__."""
    if isinstance(handler, ScriptFunction):
        return dict(handler.properties)
    try:
        return dict(vars(handler))
    except TypeError:
        return {}


def handler_name(handler: Any) -> str:
    if isinstance(handler, ScriptFunction):
        return handler.name
    return getattr(handler, "__name__", "") or ""


def function_valued(properties: Dict[str, Any]) -> List[Any]:
    return [value for value in properties.values() if callable(value)]


def dispatcher_marker(text: str) -> Optional["re.Pattern[str]"]:
    return DISPATCHER_MARKER if DISPATCHER_NEEDLE in text else None


@dataclasses.dataclass(frozen=True)
class WrapperSignature:
    """A known wrapper shape. A pattern of None matches any text."""

    name: str
    pattern: Optional["re.Pattern[str]"]
    marker: MarkerCheck

    def matches(self, handler: Any, text: str, properties: Dict[str, Any]) -> bool:
        if self.pattern is not None and not self.pattern.search(text):
            return False
        return bool(self.marker(handler, properties))


def _pattern(expr: str) -> "re.Pattern[str]":
    return re.compile(expr, re.DOTALL)


def _always(handler: Any, properties: Dict[str, Any]) -> bool:
    return True


def _truthy(name: str) -> MarkerCheck:
    return lambda handler, properties: bool(properties.get(name))


def _callable(name: str) -> MarkerCheck:
    return lambda handler, properties: callable(properties.get(name))


RAVEN = WrapperSignature("raven", _pattern(r"\.deep.*apply.*captureException"), _always)
NEWRELIC = WrapperSignature(
    "newrelic", _pattern(r"arguments.*(start|typeof).*err.*finally.*end"), _truthy("nr@original")
)
ROLLBAR = WrapperSignature("rollbar", _pattern(r"rollbarContext.*rollbarWrappedError"), _truthy("_isWrap"))
BUGSNAG = WrapperSignature(
    "bugsnag", _pattern(r"autoNotify.*(unhandledException|notifyException)"), _callable("bugsnag")
)
SENTRY = WrapperSignature("sentry", _pattern(r"call.*arguments.*typeof.*apply"), _callable("__sentry_original__"))
BUGSNAG2 = WrapperSignature("bugsnag2", _pattern(r"function.*function.*\.apply.*arguments"), _callable("__trace__"))
# functools.wraps records the wrapped callable under __wrapped__
FUNCTOOLS = WrapperSignature("functools", None, _callable("__wrapped__"))

DEFAULT_SIGNATURES = (RAVEN, NEWRELIC, ROLLBAR, BUGSNAG, SENTRY, BUGSNAG2, FUNCTOOLS)


class SignatureMatcher:
    """Ordered signatures; the first one matching a handler wins."""

    def __init__(self, signatures: Iterable[WrapperSignature] = DEFAULT_SIGNATURES):
        self.signatures: List[WrapperSignature] = list(signatures)

    def find(self, handler: Any) -> Optional[WrapperSignature]:
        try:
            text = handler_source(handler)
            properties = handler_properties(handler)
            for signature in self.signatures:
                if signature.matches(handler, text, properties):
                    return signature
        except Exception as e:
            logger.debug("Signature check failed for %r: %s", handler, e)
        return None

    def identify(self, handler: Any) -> Optional[str]:
        signature = self.find(handler)
        return signature.name if signature else None

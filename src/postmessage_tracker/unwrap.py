#!/usr/bin/env python3
"""
Peeling monitoring wrappers off message handlers.

The unwrapper walks an ordered list of (signature, rule) pairs. The first
signature matching the current handler selects the rule that either exposes
the next inner handler or only accounts for the extra call frame the wrapper
adds. Recursion stops when nothing matches, a rule exposes nothing, a rule
finds more than one candidate, or the depth limit is hit.
"""

from __future__ import annotations

import dataclasses
import inspect
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .logger import get_logger
from .signatures import (
    BUGSNAG,
    BUGSNAG2,
    FUNCTOOLS,
    NEWRELIC,
    RAVEN,
    ROLLBAR,
    SENTRY,
    ScriptFunction,
    SignatureMatcher,
    WrapperSignature,
    function_valued,
    handler_name,
    handler_properties,
)

logger = get_logger("unwrap")

MAX_UNWRAP_DEPTH = 16

# (inner handler or None, stack offset contributed by this layer)
Step = Tuple[Optional[Any], int]


class UnwrapRule:
    """How to get from a matched wrapper to what it wraps."""

    def apply(self, handler: Any, properties: Dict[str, Any]) -> Step:
        raise NotImplementedError


class SolePropertyRule(UnwrapRule):
    """The wrapped handler is the only function-valued property."""

    def __init__(self, offset: int = 1):
        self.offset = offset

    def apply(self, handler: Any, properties: Dict[str, Any]) -> Step:
        candidates = function_valued(properties)
        if len(candidates) != 1:
            return None, 0
        return candidates[0], self.offset


class NamedPropertyRule(UnwrapRule):
    """The wrapped handler sits under one of a few known property names."""

    def __init__(self, *names: str, offset: int = 1):
        self.names = names
        self.offset = offset

    def apply(self, handler: Any, properties: Dict[str, Any]) -> Step:
        for name in self.names:
            candidate = properties.get(name)
            if callable(candidate):
                return candidate, self.offset
        return None, self.offset


class OffsetOnlyRule(UnwrapRule):
    """The original is not reachable; only the wrapper's call frame is accounted for."""

    def __init__(self, offset: int = 1):
        self.offset = offset

    def apply(self, handler: Any, properties: Dict[str, Any]) -> Step:
        return None, self.offset


def default_pairs() -> List[Tuple[WrapperSignature, UnwrapRule]]:
    return [
        (RAVEN, SolePropertyRule()),
        (NEWRELIC, NamedPropertyRule("nr@original")),
        (ROLLBAR, NamedPropertyRule("_wrapped", "_rollbar_wrapped", offset=2)),
        (BUGSNAG, OffsetOnlyRule()),
        (SENTRY, NamedPropertyRule("__sentry_original__")),
        (BUGSNAG2, OffsetOnlyRule()),
        (FUNCTOOLS, NamedPropertyRule("__wrapped__")),
    ]


@dataclasses.dataclass
class UnwrapResult:
    handler: Any
    offset: int = 0
    layers: List[str] = dataclasses.field(default_factory=list)
    # Shown instead of the handler's text when set
    label: Optional[str] = None


def bound_label(handler: Any) -> Optional[str]:
    """Bound handlers are reported by name, their text says nothing useful."""
    try:
        if inspect.ismethod(handler):
            return f"bound {handler.__func__.__qualname__}"
        name = handler_name(handler)
        if isinstance(handler, ScriptFunction) and name.startswith("bound "):
            return name
    except Exception:
        return None
    return None


class Unwrapper:
    """Recursively unwraps handlers using an ordered, extensible list of rules."""

    def __init__(
        self,
        pairs: Optional[Sequence[Tuple[WrapperSignature, UnwrapRule]]] = None,
        max_depth: int = MAX_UNWRAP_DEPTH,
    ):
        self._pairs: List[Tuple[WrapperSignature, UnwrapRule]] = list(pairs if pairs is not None else default_pairs())
        self.max_depth = max_depth

    @property
    def signatures(self) -> SignatureMatcher:
        return SignatureMatcher(signature for signature, _ in self._pairs)

    def register(self, signature: WrapperSignature, rule: UnwrapRule, before: Optional[str] = None) -> None:
        """Add a wrapper shape, at the end or ahead of the named signature."""
        names = [existing.name for existing, _ in self._pairs]
        if before is not None and before in names:
            self._pairs.insert(names.index(before), (signature, rule))
        else:
            self._pairs.append((signature, rule))

    def _step(self, handler: Any) -> Optional[Tuple[str, Step]]:
        try:
            matcher = self.signatures
            signature = matcher.find(handler)
            if signature is None:
                return None
            rule = next(rule for candidate, rule in self._pairs if candidate is signature)
            return signature.name, rule.apply(handler, handler_properties(handler))
        except Exception as e:
            logger.debug("Unwrap step failed for %r: %s", handler, e)
            return None

    def unwrap(self, handler: Any, on_detect: Optional[Callable[[str], None]] = None) -> UnwrapResult:
        result = UnwrapResult(handler)
        seen = set()
        current = handler
        for _ in range(self.max_depth):
            if id(current) in seen:
                break
            seen.add(id(current))
            step = self._step(current)
            if step is None:
                break
            name, (inner, offset) = step
            result.layers.append(name)
            result.offset += offset
            if on_detect is not None:
                try:
                    on_detect(name)
                except Exception:
                    logger.debug("Unwrap detection callback failed", exc_info=True)
            if inner is None:
                break
            current = inner
        result.handler = current
        result.label = bound_label(current)
        return result

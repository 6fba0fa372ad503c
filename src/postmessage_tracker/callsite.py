#!/usr/bin/env python3
"""
Call-site location: which line of the caller's stack registered a handler.

The locator raises and catches a throwaway exception to get at the current
frame, renders every frame from there outwards as one line, and then picks
a line either by position (base offset plus whatever the unwrapper added)
or as the line right after the first one matching a marker pattern.
"""

from __future__ import annotations

import dataclasses
import re
import traceback
from functools import lru_cache
from pathlib import Path
from types import FrameType
from typing import List, Optional

from .logger import get_logger

logger = get_logger("callsite")

# Frames between the locator and the page code that registered the handler:
# locator, broker observation, broker hook, context entry method.
BASE_OFFSET = 4
INTERNAL_SCHEME = "postmessage-tracker"

_PACKAGE_ROOT = Path(__file__).resolve().parent


class _StackProbe(Exception):
    pass


@dataclasses.dataclass(frozen=True)
class CallSite:
    line: str
    stack: List[str]


@lru_cache(maxsize=1024)
def frame_location(filename: str) -> str:
    """Render a code filename as a URL; package files get an internal scheme."""
    if not filename or filename.startswith("<"):
        return filename
    try:
        path = Path(filename).resolve()
    except (OSError, ValueError):
        return filename
    try:
        return f"{INTERNAL_SCHEME}://{path.relative_to(_PACKAGE_ROOT).as_posix()}"
    except ValueError:
        return path.as_uri()


def format_frame(frame: FrameType, lineno: int) -> str:
    code = frame.f_code
    return f"at {code.co_qualname} ({frame_location(code.co_filename)}:{lineno})"


def capture_stack(frame: FrameType) -> List[str]:
    """Lines for `frame` and every frame that called it, innermost first."""
    return [format_frame(f, lineno) for f, lineno in traceback.walk_stack(frame)]


def select_line(stack: List[str], index: int, marker: Optional["re.Pattern[str]"] = None) -> str:
    if marker is not None:
        for position, line in enumerate(stack):
            if marker.search(line):
                return stack[position + 1] if position + 1 < len(stack) else ""
        return ""
    if 0 <= index < len(stack):
        return stack[index]
    return ""


def locate_call_site(
    extra_offset: int = 0,
    marker: Optional["re.Pattern[str]"] = None,
    base_offset: int = BASE_OFFSET,
) -> CallSite:
    """
    Locate the registering call site. Must be called directly from the
    broker's observation method for the base offset to hold.

    Never raises: a failure to render the stack yields an empty line, a
    failure to select yields an empty line with the full stack kept.
    """
    stack: List[str] = []
    try:
        try:
            raise _StackProbe()
        except _StackProbe as probe:
            frame = probe.__traceback__.tb_frame
        stack = capture_stack(frame)
        return CallSite(select_line(stack, base_offset + extra_offset, marker), stack)
    except Exception as e:
        logger.debug("Call-site lookup failed: %s", e)
        return CallSite("", stack)

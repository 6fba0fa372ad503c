"""
Frame hop resolution: the path from the top browsing context to a window.
"""

from __future__ import annotations

from typing import Any, Optional

from .logger import get_logger

logger = get_logger("frames")

TOP = "top"
DIFFERENT_WINDOW = "diffwin"
UNKNOWN = "unknown"

# Frame trees deeper than this are treated as unresolvable
MAX_HOPS = 64


def resolve_hops(current: Any, window: Optional[Any] = None) -> str:
    """
    Describe `window` (default: `current`) as seen from `current`'s top.

    Returns "top", "top.frames[i]...frames[j]", "diffwin" when `window`
    belongs to another top-level context, or "unknown" when any window
    property is not accessible.
    """
    try:
        target = window if window is not None else current
        target_top = target.top
        if target_top is not target and target_top is current.top:
            hops = []
            node = target
            while node is not target_top:
                if len(hops) >= MAX_HOPS:
                    raise RecursionError("frame tree too deep")
                parent = node.parent
                index = 0
                for position, frame in enumerate(parent.frames):
                    if frame is node:
                        index = position
                hops.insert(0, f"frames[{index}]")
                node = parent
            return ".".join([TOP] + hops)
        return TOP if target_top is current.top else DIFFERENT_WINDOW
    except Exception as e:
        logger.debug("Hop resolution failed: %s", e)
        return UNKNOWN

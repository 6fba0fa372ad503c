"""
Identity keys for listener records.

Two records with the same key are the same logical listener: same script
URL (query and fragment ignored), same frame path, same domain, same code.
"""

import re
from typing import Iterable, Optional
from urllib.parse import urlsplit

from .models import ListenerRecord

KEY_SEPARATOR = "|"

_SOURCE_SCHEMES = r"(?:https?|file)"
_PARENTHESIZED_URL = re.compile(r"\(" + _SOURCE_SCHEMES + r"://[^)]+\)")
_BARE_URL = re.compile(_SOURCE_SCHEMES + r"://[^\s)]+")
_LINE_AND_COLUMN = re.compile(r":\d+:\d+$")
_LINE_ONLY = re.compile(r":\d+$")

# Schemes whose empty path normalizes to "/"
_HIERARCHICAL_SCHEMES = {"http", "https", "ws", "wss", "ftp"}


def clean_url(url: Optional[str]) -> Optional[str]:
    """Reduce a URL to scheme, host and path; query, fragment, port and credentials are dropped."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        host = parts.hostname or ""
    except ValueError:
        parts = None
        host = ""
    if parts is None or not parts.scheme or (parts.scheme != "file" and not host):
        return url.split("?")[0].split("#")[0]
    if ":" in host:
        host = f"[{host}]"
    path = parts.path or ("/" if parts.scheme in _HIERARCHICAL_SCHEMES else "")
    return f"{parts.scheme}://{host}{path}"


def _strip_position(url: str) -> str:
    return _LINE_ONLY.sub("", _LINE_AND_COLUMN.sub("", url))


def source_url_from_lines(lines: Iterable[str]) -> Optional[str]:
    """First script URL in the stack lines; a parenthesized location wins over a bare one on the same line."""
    for line in lines:
        if not isinstance(line, str):
            continue
        for match in _PARENTHESIZED_URL.findall(line):
            url = clean_url(_strip_position(match[1:-1]))
            if url:
                return url
        for match in _BARE_URL.findall(line):
            url = clean_url(_strip_position(match))
            if url:
                return url
    return None


def extract_source_url(record: ListenerRecord) -> Optional[str]:
    return source_url_from_lines(record.stack_lines())


def listener_key(record: ListenerRecord) -> str:
    return KEY_SEPARATOR.join(
        (extract_source_url(record) or "", record.frame_path, record.domain, record.code)
    )

"""Parsing of tunnel helper output."""

from __future__ import annotations

import re
from collections.abc import Callable

UrlExtractor = Callable[[str], str | None]

_URL_ANNOUNCEMENT = re.compile(r"your url is:\s*(https?://\S+)", re.IGNORECASE)


def extract_public_url(line: str) -> str | None:
    """Return the public URL announced on ``line``, if any.

    Recognizes localtunnel's ``your url is: https://...`` announcement.
    """
    match = _URL_ANNOUNCEMENT.search(line)
    if not match:
        return None
    return match.group(1).rstrip("/.,;")

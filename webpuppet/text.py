"""Cleanup of free-text fields coming out of the web client."""
from __future__ import annotations

import html
import re

_TAG_RE = re.compile(r"<[^>]*>")
# the web client renders emoji as <span class="emoji emoji1f334"></span>
_EMOJI_SPAN_RE = re.compile(r'<span class="emoji emoji[0-9a-f]+"></span>', re.IGNORECASE)
_EMOJI_CHAR_RE = re.compile(
    "["
    "\U0001F000-\U0001FAFF"
    "\U00002600-\U000027BF"
    "\U00002B00-\U00002BFF"
    "\U0001F1E6-\U0001F1FF"
    "\U0000FE0F"
    "\U0000200D"
    "]+"
)


def strip_emoji(text: str | None) -> str:
    if not text:
        return ""
    text = _EMOJI_SPAN_RE.sub("", text)
    return _EMOJI_CHAR_RE.sub("", text)


def strip_html(text: str | None) -> str:
    if not text:
        return ""
    return _TAG_RE.sub("", text)


def unescape_html(text: str | None) -> str:
    if not text:
        return ""
    return html.unescape(text)


def plain_text(text: str | None) -> str:
    """Name fields: emoji spans dropped, tags stripped, entities decoded."""
    return strip_emoji(unescape_html(strip_html(strip_emoji(text)))).strip()


__all__ = ["strip_emoji", "strip_html", "unescape_html", "plain_text"]

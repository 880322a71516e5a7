"""
Email body text extraction: HTML (or plain) body -> line/tab-delimited plain text.
Table structure survives: rows become lines and cells become tab-separated columns,
so the rule-based parser can read order tables pasted into emails.
"""
from __future__ import annotations

import re
from typing import Iterator, Optional

from .config import settings

# Tags whose content is dropped entirely
_DROP_CONTENT_TAGS = frozenset({"style", "script"})
# Row / paragraph / line-break boundaries -> newline
_LINE_BREAK_TAGS = frozenset({"/tr", "/p", "/div", "br"})
# Cell boundaries -> tab
_CELL_BREAK_TAGS = frozenset({"/td", "/th"})

_ENTITIES = {"nbsp": " ", "amp": "&", "lt": "<", "gt": ">", "quot": '"'}
_ENTITY_RE = re.compile(r"&(nbsp|amp|lt|gt|quot|#\d{1,6});", re.IGNORECASE)
_TAG_NAME_RE = re.compile(r"\s*(/?)\s*([A-Za-z][A-Za-z0-9]*)")
_BLANK_RUN_RE = re.compile(r"[ \t\xa0]+")
_HTML_HINT_RE = re.compile(r"<\s*/?\s*(?:html|body|div|p|br|table|tr|td|th|span)\b", re.IGNORECASE)


def _tag_name(tag: str) -> str:
    """'TD class="x"' -> 'td', '/TR' -> '/tr', 'br/' -> 'br'."""
    m = _TAG_NAME_RE.match(tag)
    if not m:
        return ""
    return m.group(1) + m.group(2).lower()


def _decode_entity(m: re.Match) -> str:
    ent = m.group(1)
    if ent.startswith("#"):
        try:
            return chr(int(ent[1:]))
        except (ValueError, OverflowError):
            return m.group(0)
    return _ENTITIES[ent.lower()]


def decode_entities(text: str) -> str:
    return _ENTITY_RE.sub(_decode_entity, text)


def iter_text_chunks(body: str) -> Iterator[str]:
    """
    Single left-to-right scan over the body, splitting on '<'.
    Yields decoded text pieces and the '\\n' / '\\t' separators implied by tags.
    Never looks back, so large bodies stream through in one pass.
    """
    pos = 0
    n = len(body)
    skipping: Optional[str] = None

    while pos < n:
        lt = body.find("<", pos)
        if lt < 0:
            if skipping is None:
                yield decode_entities(body[pos:])
            return
        if lt > pos and skipping is None:
            yield decode_entities(body[pos:lt])
        gt = body.find(">", lt + 1)
        if gt < 0:
            # Unterminated tag: keep the rest as text
            if skipping is None:
                yield decode_entities(body[lt:])
            return

        name = _tag_name(body[lt + 1:gt])
        pos = gt + 1

        if skipping is not None:
            if name == "/" + skipping:
                skipping = None
            continue
        if name in _DROP_CONTENT_TAGS:
            skipping = name
        elif name in _LINE_BREAK_TAGS:
            yield "\n"
        elif name in _CELL_BREAK_TAGS:
            yield "\t"


def _collapse_blank_run(m: re.Match) -> str:
    return "\t" if "\t" in m.group(0) else " "


def normalize_email_body(body: str | None) -> str:
    """
    Strip markup from an email body, keeping table structure as tabs/newlines.
    Plain-text bodies pass through the same scan unchanged apart from entity decoding
    and blank-run collapsing.
    """
    if not body:
        return ""
    body = body.replace("\r\n", "\n").replace("\r", "\n")
    if _HTML_HINT_RE.search(body):
        # Source newlines in markup are plain whitespace; only tags break lines
        body = body.replace("\n", " ")
    text = "".join(iter_text_chunks(body))
    return _BLANK_RUN_RE.sub(_collapse_blank_run, text)


def text_lines(text: str) -> list[str]:
    """Non-empty, trimmed lines."""
    return [ln.strip() for ln in text.split("\n") if ln.strip()]


def truncate_for_fallback(text: str, max_chars: int | None = None) -> str:
    """Size cap applied only to text handed to the AI fallback."""
    limit = max_chars if max_chars is not None else settings.MAX_FALLBACK_TEXT_CHARS
    return text[:limit]

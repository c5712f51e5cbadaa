"""Plain-text cleanup for resolved email bodies.

``clean_email_text`` is the final normalization pass applied to every body
returned to a caller. Each step assumes the output of the previous one, so the
order below matters. The pass is idempotent.
"""
import re

# Zero-width space, ZW non-joiner, ZW joiner, BOM, combining grapheme joiner
INVISIBLE_CHARS = "\u200b\u200c\u200d\ufeff\u034f"

_BRACKETED_URL = re.compile(r"\[https?://[^\]]+\]")
_URL_LINE = re.compile(r"^[ \t]*https?://\S+[ \t]*$", re.MULTILINE)
# A URL right after "(" is the target of a rendered link, not a bare URL
_INLINE_URL = re.compile(r"(?<!\()https?://\S+")
_INVISIBLE = re.compile(f"[{INVISIBLE_CHARS}]")
_BLANK_LINE = re.compile(r"^[ \t\r\f\v\xa0]+$", re.MULTILINE)

_MIME_BOUNDARY = re.compile(r"^--[A-Za-z0-9'()+_,./:=?-]+(--)?[ \t]*$", re.MULTILINE)
_MIME_HEADER = re.compile(
    r"^(Content-Type|Content-Transfer-Encoding|Content-Disposition|Content-ID|MIME-Version):.*(\n[ \t]+.*)*\n?",
    re.IGNORECASE | re.MULTILINE,
)


def clean_email_text(text: str | None) -> str:
    """Normalize a plain-text email body for display.

    Steps: trim; drop ``[http...]`` links, URL-only lines and inline bare
    URLs; strip invisible characters; blank out whitespace-only lines;
    collapse 3+ newlines to 2; collapse spaces, tabs and no-break spaces and
    strip them at line edges; trim blank lines at both ends.
    """
    if not text:
        return ""

    cleaned = text.replace("\r\n", "\n").replace("\r", "\n").strip()

    # 1. Links in square brackets, e.g. [https://example.com/track]
    cleaned = _BRACKETED_URL.sub("", cleaned)

    # 2. Lines that are only a link
    cleaned = _URL_LINE.sub("", cleaned)

    # 3. Inline bare links, keeping the rest of the line
    cleaned = _INLINE_URL.sub("", cleaned)

    # 4. Hidden characters
    cleaned = _INVISIBLE.sub("", cleaned)

    # 5. Whitespace-only lines
    cleaned = _BLANK_LINE.sub("", cleaned)

    # 6. Paragraph breaks
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)

    # 7. Spaces and tabs
    cleaned = re.sub(r"[ \t\xa0]+", " ", cleaned)
    cleaned = re.sub(r"\n ", "\n", cleaned)
    cleaned = re.sub(r" \n", "\n", cleaned)

    # 8. Leading/trailing blank lines
    cleaned = cleaned.strip("\n")
    return cleaned.strip()


def strip_mime_artifacts(text: str | None) -> str:
    """Remove MIME boundary markers and part headers leaking into a body."""
    if not text:
        return ""

    text = text.replace("\r\n", "\n")
    text = _MIME_BOUNDARY.sub("", text)
    text = _MIME_HEADER.sub("", text)
    text = re.sub(r"\n\s*\n\s*\n", "\n\n", text)
    return text.strip()

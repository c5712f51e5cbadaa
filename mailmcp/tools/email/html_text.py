"""HTML to plain-text conversion for email bodies.

Regex-based: only a readable rendition is needed, not a DOM.
"""
import re

# Tags that start a new line; their closing tag ends a paragraph
BLOCK_TAGS = (
    "p", "div", "h1", "h2", "h3", "h4", "h5", "h6",
    "li", "dt", "dd", "blockquote", "pre", "address",
    "article", "section", "header", "footer", "main",
)

HTML_ENTITIES: dict[str, str] = {
    "&nbsp;": " ",
    "&amp;": "&",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
    "&apos;": "'",
    "&copy;": "©",
    "&reg;": "®",
    "&trade;": "™",
    "&hellip;": "...",
    "&mdash;": "—",
    "&ndash;": "–",
    "&lsquo;": "‘",
    "&rsquo;": "’",
    "&ldquo;": "“",
    "&rdquo;": "”",
    "&bull;": "•",
    "&euro;": "€",
    "&pound;": "£",
    "&yen;": "¥",
}

_HTML_SNIFF = re.compile(r"<\s*(html|body|div|p|br|img|a|span|table|tr|td)\b[^>]*>", re.IGNORECASE)
_SCRIPT_STYLE = re.compile(r"<(script|style|head)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_BLOCK_CLOSE = re.compile(r"</(%s)\b[^>]*>" % "|".join(BLOCK_TAGS), re.IGNORECASE)
_LI_OPEN = re.compile(r"<li\b[^>]*>", re.IGNORECASE)
_BLOCK_OPEN = re.compile(r"<(%s)\b[^>]*>" % "|".join(t for t in BLOCK_TAGS if t != "li"), re.IGNORECASE)
_BR = re.compile(r"<br\s*/?>", re.IGNORECASE)
_HR = re.compile(r"<hr\b[^>]*>", re.IGNORECASE)
_LINK = re.compile(
    r"""<a\b[^>]*?href\s*=\s*(["'])(.*?)\1[^>]*>(.*?)</a\s*>""",
    re.IGNORECASE | re.DOTALL,
)
_IMG_ALT = re.compile(r"""<img\b[^>]*?alt\s*=\s*(["'])(.*?)\1[^>]*>""", re.IGNORECASE | re.DOTALL)
_IMG = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]*>")
_ENTITY = re.compile(r"&(#[xX][0-9A-Fa-f]+|#\d+|[A-Za-z][A-Za-z0-9]*);")


def is_html_content(content: str) -> bool:
    """Sniff for common structural HTML tags."""
    if not content:
        return False
    return _HTML_SNIFF.search(content) is not None


def _decode_entity(match: re.Match) -> str:
    entity = match.group(0)
    named = HTML_ENTITIES.get(entity.lower())
    if named is not None:
        return named

    body = match.group(1)
    if not body.startswith("#"):
        return entity
    try:
        codepoint = int(body[2:], 16) if body[1] in "xX" else int(body[1:])
        if codepoint == 0 or 0xD800 <= codepoint <= 0xDFFF:
            return entity
        return chr(codepoint)
    except (ValueError, OverflowError):
        return entity


def decode_html_entities(text: str) -> str:
    """Decode common named entities and numeric ``&#NNN;`` / ``&#xHHH;`` ones.

    Each entity is decoded exactly once; unknown or out-of-range entities are
    left as they are.
    """
    if not text or "&" not in text:
        return text
    return _ENTITY.sub(_decode_entity, text)


def _render_link(match: re.Match) -> str:
    href = match.group(2).strip()
    label = _ANY_TAG.sub("", match.group(3)).strip()
    if not label or label == href:
        return href
    return f"{label} ({href})"


def html_to_text(html: str) -> str:
    """Convert an HTML email body to readable plain text."""
    if not html:
        return ""

    text = _SCRIPT_STYLE.sub("", html)
    text = _COMMENT.sub("", text)

    # Block-level elements
    text = _BLOCK_CLOSE.sub("\n\n", text)
    text = _LI_OPEN.sub("\n• ", text)
    text = _BLOCK_OPEN.sub("\n", text)

    # Line breaks
    text = _BR.sub("\n", text)
    text = _HR.sub("\n---\n", text)

    # Tables: cells end with a tab, rows with a newline
    text = re.sub(r"</t[dh]\s*>", "\t", text, flags=re.IGNORECASE)
    text = re.sub(r"<t[dh]\b[^>]*>", "", text, flags=re.IGNORECASE)
    text = re.sub(r"</tr\s*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<tr\b[^>]*>", "", text, flags=re.IGNORECASE)
    text = re.sub(r"</?table\b[^>]*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</?(tbody|thead|tfoot)\b[^>]*>", "", text, flags=re.IGNORECASE)

    text = _LINK.sub(_render_link, text)
    text = _IMG_ALT.sub(lambda m: f"[image: {m.group(2).strip()}]" if m.group(2).strip() else "[image]", text)
    text = _IMG.sub("[image]", text)

    text = _ANY_TAG.sub("", text)
    text = decode_html_entities(text)

    text = re.sub(r" +", " ", text)
    text = re.sub(r" *\t[ \t]*", "\t", text)
    text = re.sub(r"\n[ \t]+", "\n", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()

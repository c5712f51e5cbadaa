"""MIME body resolution for fetched IMAP messages.

Turns whatever the server handed back for a message (full RFC 822 source, or a
set of ``BODY[<label>]`` sections) into the best readable plain-text body, and
enumerates attachments either from a BODYSTRUCTURE tree or a parsed message.

Nothing in here talks to the network and nothing raises on odd input: a
structurally broken message degrades to an empty body.
"""
import email
import email.utils
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage, Message
from typing import Any

from mailmcp.tools.email.html_text import html_to_text, is_html_content
from mailmcp.tools.email.text_cleaner import clean_email_text, strip_mime_artifacts

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
UNKNOWN_FILENAME = "unknown"


@dataclass
class Envelope:
    from_: str = ""
    to: str = ""
    subject: str = ""
    date: datetime | None = None

    @classmethod
    def from_headers(cls, raw_headers: bytes | None) -> "Envelope":
        """Build an envelope from a raw RFC 822 header block."""
        if not raw_headers:
            return cls()
        msg = email.message_from_bytes(raw_headers, policy=policy.default)
        return cls(
            from_=_header_text(msg, "From"),
            to=_header_text(msg, "To"),
            subject=_header_text(msg, "Subject"),
            date=parse_date(_header_text(msg, "Date")),
        )


@dataclass
class BodyStructure:
    """One node of an IMAP BODYSTRUCTURE tree."""
    type: str
    subtype: str
    parameters: dict[str, str] = field(default_factory=dict)
    disposition: str | None = None
    disposition_parameters: dict[str, str] = field(default_factory=dict)
    size: int = 0
    children: list["BodyStructure"] = field(default_factory=list)

    @property
    def content_type(self) -> str:
        if self.type and self.subtype:
            return f"{self.type}/{self.subtype}"
        return DEFAULT_CONTENT_TYPE

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass
class AttachmentInfo:
    filename: str
    content_type: str
    size: int
    data: bytes | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"filename": self.filename, "content_type": self.content_type, "size": self.size}


@dataclass
class FetchedMessage:
    """Everything fetched for one message; built per fetch, never cached."""
    uid: int
    envelope: Envelope = field(default_factory=Envelope)
    raw_source: bytes | None = None
    body_parts: dict[str, bytes] = field(default_factory=dict)
    structure: BodyStructure | None = None
    flags: list[str] = field(default_factory=list)
    size: int = 0


# ----------------------------------------------------------------------
# Header helpers
# ----------------------------------------------------------------------

def _header_text(msg: Message, name: str) -> str:
    try:
        value = msg.get(name)
    except (ValueError, TypeError, IndexError) as e:
        logger.debug("Unparseable %s header: %s", name, e)
        return ""
    return str(value).strip() if value is not None else ""


def parse_date(value: str | None) -> datetime | None:
    """Parse an RFC 2822 date; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ----------------------------------------------------------------------
# Body resolution
# ----------------------------------------------------------------------

def is_attachment_part(part: Message) -> bool:
    """Whether a MIME leaf is an attachment rather than a body part."""
    if part.is_multipart():
        return False
    disposition = part.get_content_disposition()
    if disposition == "attachment":
        return True
    # Inline with a filename (embedded image, etc.)
    return disposition == "inline" and bool(part.get_filename())


def _part_text(part: Message) -> str:
    payload = part.get_payload(decode=True) or b""
    if not isinstance(payload, bytes):
        return str(payload)
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _text_from_source(raw_source: bytes) -> str:
    try:
        msg = email.message_from_bytes(raw_source, policy=policy.default)
        plain_body: str | None = None
        html_body: str | None = None

        for part in msg.walk():
            if part.is_multipart() or is_attachment_part(part):
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain" and plain_body is None:
                plain_body = _part_text(part)
            elif content_type == "text/html" and html_body is None:
                html_body = _part_text(part)
    except Exception as e:
        logger.warning("Could not parse message source: %s", e)
        return ""

    # Plain text always wins; HTML is only a fallback
    if plain_body is not None:
        return plain_body
    if html_body is not None:
        return html_to_text(html_body)
    return ""


def _pick_body_part(body_parts: dict[str, bytes]) -> bytes | None:
    if "TEXT" in body_parts:
        return body_parts["TEXT"]
    if "1" in body_parts:
        return body_parts["1"]
    for label, content in body_parts.items():
        if label.upper() != "HEADER":
            return content
    return None


def _text_from_parts(body_parts: dict[str, bytes]) -> str:
    content = _pick_body_part(body_parts)
    if not content:
        return ""
    text = content.decode("utf-8", errors="replace")
    if is_html_content(text):
        return html_to_text(text)
    return strip_mime_artifacts(text)


def resolve_text(message: FetchedMessage) -> str | None:
    """Resolve the readable body of a fetched message.

    Priority: parsed ``raw_source`` (plain part, else converted HTML part,
    else empty), then ``body_parts`` (``TEXT``, else the first non-``HEADER``
    section), else ``None`` for a message with nothing fetched.

    Returns:
        Body text, ``""`` for a message without content, or ``None``.
    """
    if message.raw_source is not None:
        return _text_from_source(message.raw_source)
    if message.body_parts:
        return _text_from_parts(message.body_parts)
    return None


def resolve_clean_text(message: FetchedMessage) -> str | None:
    """``resolve_text`` followed by display normalization."""
    text = resolve_text(message)
    if text is None:
        return None
    return clean_email_text(text)


# ----------------------------------------------------------------------
# Attachments
# ----------------------------------------------------------------------

def attachments_from_structure(structure: BodyStructure | None) -> list[AttachmentInfo]:
    """List attachment nodes anywhere in a BODYSTRUCTURE tree (no payloads)."""
    if structure is None:
        return []

    attachments = []
    for node in structure.walk():
        if (node.disposition or "").lower() != "attachment":
            continue
        filename = (
            node.disposition_parameters.get("filename")
            or node.parameters.get("name")
            or UNKNOWN_FILENAME
        )
        attachments.append(AttachmentInfo(filename, node.content_type, node.size))
    return attachments


def attachments_from_message(msg: EmailMessage, include_data: bool = False) -> list[AttachmentInfo]:
    """List attachments of a parsed message.

    Args:
        msg: Parsed message.
        include_data: Keep the decoded payload on each record.
    """
    attachments = []
    for part in msg.walk():
        if not is_attachment_part(part):
            continue
        payload = part.get_payload(decode=True) or b""
        filename = part.get_filename() or part.get_param("name") or UNKNOWN_FILENAME
        attachments.append(AttachmentInfo(
            filename=str(filename),
            content_type=part.get_content_type() or DEFAULT_CONTENT_TYPE,
            size=len(payload),
            data=payload if include_data else None,
        ))
    return attachments


# ----------------------------------------------------------------------
# IMAP response parsing
# ----------------------------------------------------------------------

class _Reader:
    """Recursive-descent reader for IMAP parenthesized data."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def at_end(self) -> bool:
        self._skip_space()
        return self.pos >= len(self.data)

    def _skip_space(self) -> None:
        while self.pos < len(self.data) and self.data[self.pos] in b" \r\n\t":
            self.pos += 1

    def read(self) -> Any:
        self._skip_space()
        ch = self.data[self.pos:self.pos + 1]
        if ch == b"(":
            return self._read_list()
        if ch == b'"':
            return self._read_quoted()
        if ch == b"{":
            return self._read_literal()
        return self._read_atom()

    def _read_list(self) -> list[Any]:
        self.pos += 1
        items = []
        while True:
            self._skip_space()
            if self.pos >= len(self.data):
                raise ValueError("Unterminated list")
            if self.data[self.pos:self.pos + 1] == b")":
                self.pos += 1
                return items
            items.append(self.read())

    def _read_quoted(self) -> bytes:
        self.pos += 1
        out = bytearray()
        while self.pos < len(self.data):
            ch = self.data[self.pos]
            self.pos += 1
            if ch == 0x5C and self.pos < len(self.data):  # backslash
                out.append(self.data[self.pos])
                self.pos += 1
            elif ch == 0x22:  # closing quote
                return bytes(out)
            else:
                out.append(ch)
        raise ValueError("Unterminated quoted string")

    def _read_literal(self) -> bytes:
        end = self.data.index(b"}", self.pos)
        length = int(self.data[self.pos + 1:end])
        start = end + 1
        if self.data[start:start + 2] == b"\r\n":
            start += 2
        self.pos = start + length
        return self.data[start:self.pos]

    def _read_atom(self) -> Any:
        start = self.pos
        depth = 0
        while self.pos < len(self.data):
            ch = self.data[self.pos:self.pos + 1]
            if ch == b"[":
                depth += 1
            elif ch == b"]":
                depth -= 1
            elif depth == 0 and ch in (b" ", b"(", b")", b"\r", b"\n"):
                break
            self.pos += 1
        atom = self.data[start:self.pos].decode("ascii", errors="replace")
        if not atom:
            raise ValueError(f"Unexpected byte at {start}")
        if atom.upper() == "NIL":
            return None
        if atom.isdigit():
            return int(atom)
        return atom


def join_response(data: list[Any]) -> bytes:
    """Reassemble an imaplib response list (with literal tuples) into bytes."""
    out = bytearray()
    for item in data:
        if isinstance(item, tuple):
            head, literal = item[0], item[1]
            out += head + b"\r\n" + literal
        elif isinstance(item, bytes):
            out += item
        out += b" "
    return bytes(out)


def parse_imap_data(data: bytes) -> list[Any]:
    """Tokenize IMAP response data into nested lists of atoms/strings."""
    reader = _Reader(data)
    items = []
    while not reader.at_end():
        items.append(reader.read())
    return items


def parse_fetch_response(data: list[Any]) -> list[dict[str, Any]]:
    """Parse ``FETCH`` response data into one attribute dict per message.

    Keys are upper-cased item names (``UID``, ``FLAGS``, ``BODY[TEXT]``, ...).
    """
    if not data or data == [None]:
        return []

    tokens = parse_imap_data(join_response(data))
    messages = []
    for token in tokens:
        if not isinstance(token, list):
            continue
        attrs: dict[str, Any] = {}
        for key, value in zip(token[::2], token[1::2]):
            attrs[str(key).upper()] = value
        messages.append(attrs)
    return messages


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _param_dict(value: Any) -> dict[str, str]:
    if not isinstance(value, list):
        return {}
    return {_as_text(k).lower(): _as_text(v) for k, v in zip(value[::2], value[1::2])}


def _disposition(value: Any) -> tuple[str | None, dict[str, str]]:
    if not isinstance(value, list) or not value:
        return None, {}
    return _as_text(value[0]).lower(), _param_dict(value[1] if len(value) > 1 else None)


def _build_structure(node: list[Any]) -> BodyStructure:
    if node and isinstance(node[0], list):
        children = []
        index = 0
        while index < len(node) and isinstance(node[index], list):
            children.append(_build_structure(node[index]))
            index += 1
        extension = node[index:]
        subtype = _as_text(extension[0]).lower() if extension else "mixed"
        params = _param_dict(extension[1]) if len(extension) > 1 else {}
        disposition, disp_params = _disposition(extension[2] if len(extension) > 2 else None)
        return BodyStructure("multipart", subtype, params, disposition, disp_params, 0, children)

    main_type = _as_text(node[0]).lower() if node else ""
    subtype = _as_text(node[1]).lower() if len(node) > 1 else ""
    params = _param_dict(node[2]) if len(node) > 2 else {}
    size = node[6] if len(node) > 6 and isinstance(node[6], int) else 0

    # Fields after the 7 basic ones depend on the media type
    if main_type == "text":
        disposition_index = 9
    elif main_type == "message" and subtype == "rfc822":
        disposition_index = 11
    else:
        disposition_index = 8

    children = []
    if main_type == "message" and subtype == "rfc822" and len(node) > 8 and isinstance(node[8], list):
        children.append(_build_structure(node[8]))

    disposition, disp_params = _disposition(
        node[disposition_index] if len(node) > disposition_index else None
    )
    return BodyStructure(main_type, subtype, params, disposition, disp_params, size, children)


def parse_bodystructure(data: bytes | str | list[Any] | None) -> BodyStructure | None:
    """Parse an IMAP BODYSTRUCTURE value into a ``BodyStructure`` tree.

    Accepts the raw parenthesized text or an already tokenized list. Returns
    ``None`` when the value cannot be parsed.
    """
    if data is None:
        return None
    try:
        if isinstance(data, list):
            node = data
        else:
            raw = data.encode("utf-8") if isinstance(data, str) else data
            tokens = parse_imap_data(raw)
            node = tokens[0] if tokens else None
        if not isinstance(node, list):
            return None
        return _build_structure(node)
    except (ValueError, IndexError, TypeError) as e:
        logger.warning("Could not parse BODYSTRUCTURE: %s", e)
        return None

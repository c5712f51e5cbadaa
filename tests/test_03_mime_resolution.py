"""Tests for MIME body resolution and attachment enumeration from parsed messages."""
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser

import pytest

from mailmcp.tools.email.mime import (
    FetchedMessage,
    attachments_from_message,
    resolve_clean_text,
    resolve_text,
)


def _alternative(plain: str, html: str) -> bytes:
    msg = EmailMessage()
    msg["From"] = "alice@example.com"
    msg["To"] = "me@qq.com"
    msg["Subject"] = "Greeting"
    msg.set_content(plain)
    msg.add_alternative(html, subtype="html")
    return msg.as_bytes()


def _html_only(html: str) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = "Offer"
    msg.set_content(html, subtype="html")
    return msg.as_bytes()


class TestResolveFromRawSource:
    """Full RFC 822 source: plain wins, HTML is the fallback."""

    def test_plain_wins_over_html(self):
        raw = _alternative("Hello\n\nWorld", "<p>Hello</p><p>World</p>")
        text = resolve_text(FetchedMessage(uid=42, raw_source=raw))
        assert text.strip() == "Hello\n\nWorld"

    def test_plain_wins_even_when_html_comes_first(self):
        raw = (
            b"MIME-Version: 1.0\r\n"
            b'Content-Type: multipart/alternative; boundary="XX"\r\n'
            b"\r\n"
            b"--XX\r\n"
            b"Content-Type: text/html; charset=utf-8\r\n"
            b"\r\n"
            b"<p>From HTML</p>\r\n"
            b"--XX\r\n"
            b"Content-Type: text/plain; charset=utf-8\r\n"
            b"\r\n"
            b"From plain\r\n"
            b"--XX--\r\n"
        )
        text = resolve_text(FetchedMessage(uid=1, raw_source=raw))
        assert text.strip() == "From plain"

    def test_html_only_converted(self):
        raw = _html_only("<p>A</p><p>B</p>")
        assert resolve_clean_text(FetchedMessage(uid=3, raw_source=raw)) == "A\n\nB"

    def test_html_only_with_link(self):
        raw = _html_only("<div>Special offer! <a href='http://ad.example/x'>Click here</a></div>")
        text = resolve_clean_text(FetchedMessage(uid=7, raw_source=raw))
        assert text == "Special offer! Click here (http://ad.example/x)"

    def test_charset_decoded(self):
        msg = EmailMessage()
        msg.set_content("Grüße aus Köln", charset="iso-8859-1")
        text = resolve_text(FetchedMessage(uid=1, raw_source=msg.as_bytes()))
        assert text.strip() == "Grüße aus Köln"

    def test_text_attachment_is_not_the_body(self):
        msg = EmailMessage()
        msg.set_content("<p>Body</p>", subtype="html")
        msg.add_attachment(b"notes", maintype="text", subtype="plain", filename="notes.txt")

        assert resolve_clean_text(FetchedMessage(uid=1, raw_source=msg.as_bytes())) == "Body"

    def test_no_text_parts_gives_empty_string(self):
        msg = EmailMessage()
        msg.set_content(b"\x89PNG", maintype="image", subtype="png", filename="a.png")
        assert resolve_text(FetchedMessage(uid=1, raw_source=msg.as_bytes())) == ""

    def test_garbage_source_does_not_raise(self):
        text = resolve_text(FetchedMessage(uid=1, raw_source=b"\x00\xff\xfe not a message"))
        assert isinstance(text, str)

    def test_raw_source_takes_priority_over_body_parts(self):
        message = FetchedMessage(
            uid=1,
            raw_source=_alternative("From source", "<p>x</p>"),
            body_parts={"TEXT": b"From parts"},
        )
        assert resolve_text(message).strip() == "From source"


class TestResolveFromBodyParts:
    """Only ``BODY[<label>]`` sections were fetched."""

    def test_nothing_fetched_is_none(self):
        assert resolve_text(FetchedMessage(uid=1)) is None
        assert resolve_clean_text(FetchedMessage(uid=1)) is None

    def test_empty_text_part_is_empty_string(self):
        """Present-but-empty is distinct from absent."""
        assert resolve_text(FetchedMessage(uid=1, body_parts={"TEXT": b""})) == ""

    def test_text_label_preferred(self):
        parts = {"HEADER": b"Subject: x\r\n\r\n", "1": b"part one", "TEXT": b"whole text"}
        assert resolve_text(FetchedMessage(uid=1, body_parts=parts)) == "whole text"

    def test_first_non_header_label_used(self):
        parts = {"HEADER": b"Subject: x\r\n\r\n", "2": b"second part"}
        assert resolve_text(FetchedMessage(uid=1, body_parts=parts)) == "second part"

    def test_header_only_is_empty_string(self):
        parts = {"HEADER": b"Subject: x\r\n\r\n"}
        assert resolve_text(FetchedMessage(uid=1, body_parts=parts)) == ""

    def test_html_section_converted(self):
        parts = {"TEXT": b"<html><body><p>A</p><p>B</p></body></html>"}
        assert resolve_clean_text(FetchedMessage(uid=1, body_parts=parts)) == "A\n\nB"

    def test_mime_artifacts_stripped_from_plain_section(self):
        parts = {"TEXT": (
            b"--b1\r\nContent-Type: text/plain; charset=utf-8\r\n"
            b"Content-Transfer-Encoding: 7bit\r\n\r\nHi there\r\n--b1--\r\n"
        )}
        assert resolve_clean_text(FetchedMessage(uid=1, body_parts=parts)) == "Hi there"


class TestAttachmentsFromMessage:
    """Attachment records from a parsed message."""

    @pytest.fixture
    def parsed(self):
        msg = EmailMessage()
        msg.set_content("See attached")
        msg.add_attachment(b"%PDF-1.4 data", maintype="application", subtype="pdf", filename="foo.pdf")
        msg.add_attachment(b"notes", maintype="text", subtype="plain", filename="notes.txt")
        return BytesParser(policy=policy.default).parsebytes(msg.as_bytes())

    def test_metadata_without_payload(self, parsed):
        attachments = attachments_from_message(parsed)
        assert [a.filename for a in attachments] == ["foo.pdf", "notes.txt"]
        assert attachments[0].content_type == "application/pdf"
        assert attachments[0].size == len(b"%PDF-1.4 data")
        assert all(a.data is None for a in attachments)

    def test_payload_when_requested(self, parsed):
        attachments = attachments_from_message(parsed, include_data=True)
        assert attachments[1].data == b"notes"

    def test_body_part_not_listed(self):
        msg = EmailMessage()
        msg.set_content("no attachments here")
        assert attachments_from_message(msg) == []

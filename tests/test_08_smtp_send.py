"""Tests for message building and SMTP submission."""
import base64
import smtplib
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from mailmcp.tools.email.credential_store import EmailAccount
from mailmcp.tools.email.errors import (
    AuthExpiredError,
    ConnectionFailedError,
    EmailValidationError,
    InvalidCredentialsError,
    SendFailedError,
)
from mailmcp.tools.email.imap_client import xoauth2_string
from mailmcp.tools.email.smtp_client import ComposeRequest, SmtpSender, build_message

SMTP_SSL = "mailmcp.tools.email.smtp_client.smtplib.SMTP_SSL"
SMTP = "mailmcp.tools.email.smtp_client.smtplib.SMTP"


@pytest.fixture
def smtp():
    mock = MagicMock()
    mock.send_message.return_value = {}
    return mock


@pytest.fixture
def smtp_ssl(smtp):
    with patch(SMTP_SSL, return_value=smtp) as factory:
        yield factory


class TestComposeRequest:
    """Local validation."""

    def test_recipients_split(self):
        request = ComposeRequest(to="a@x.com, b@y.com; c@z.com", text="hi")
        assert request.recipients == ["a@x.com", "b@y.com", "c@z.com"]

    @pytest.mark.parametrize("kwargs,match", [
        ({"to": "a@x.com"}, "text or html"),
        ({"to": "", "text": "hi"}, "recipient"),
        ({"to": "not-an-address", "text": "hi"}, "Invalid recipient"),
        ({"to": "a@x.com", "text": "hi", "attachments": [{"filename": "a.txt"}]}, "path' or 'data"),
    ])
    def test_invalid(self, kwargs, match):
        with pytest.raises(EmailValidationError, match=match):
            ComposeRequest(**kwargs).validate()


class TestBuildMessage:
    """MIME assembly."""

    def test_text_and_html(self, qq_account):
        msg = build_message(qq_account, ComposeRequest(to="a@x.com", subject="Hi", text="plain", html="<p>rich</p>"))

        assert msg.get_content_type() == "multipart/alternative"
        assert msg["From"] == "work <me@qq.com>"
        assert msg["To"] == "a@x.com"
        assert msg["Subject"] == "Hi"
        assert msg["Message-ID"].endswith("@qq.com>")
        assert [p.get_content_type() for p in msg.iter_parts()] == ["text/plain", "text/html"]

    def test_html_only(self, qq_account):
        msg = build_message(qq_account, ComposeRequest(to="a@x.com", html="<p>rich</p>"))
        assert msg.get_content_type() == "text/html"

    def test_attachments(self, qq_account, tmp_path):
        report = tmp_path / "report.pdf"
        report.write_bytes(b"%PDF-1.4")
        request = ComposeRequest(to="a@x.com", text="see attached", attachments=[
            {"path": str(report)},
            {"filename": "notes.txt", "data": base64.b64encode(b"notes").decode()},
        ])

        msg = build_message(qq_account, request)

        assert msg.get_content_type() == "multipart/mixed"
        attachments = list(msg.iter_attachments())
        assert [a.get_filename() for a in attachments] == ["report.pdf", "notes.txt"]
        assert attachments[0].get_content_type() == "application/pdf"
        assert attachments[1].get_content() == "notes"

    def test_missing_attachment_file(self, qq_account, tmp_path):
        request = ComposeRequest(to="a@x.com", text="x", attachments=[{"path": str(tmp_path / "nope.pdf")}])
        with pytest.raises(EmailValidationError, match="not found"):
            build_message(qq_account, request)

    def test_bad_base64(self, qq_account):
        request = ComposeRequest(to="a@x.com", text="x", attachments=[{"filename": "a.bin", "data": "!!not base64"}])
        with pytest.raises(EmailValidationError, match="base64"):
            build_message(qq_account, request)


class TestSmtpSender:
    """Submission and error classification."""

    def test_password_send(self, smtp_ssl, smtp, qq_account, settings):
        message_id = SmtpSender(qq_account, settings).send(ComposeRequest(to="a@x.com", text="hi"))

        args, kwargs = smtp_ssl.call_args
        assert args == ("smtp.qq.com", 465)
        assert kwargs["timeout"] == settings.mail.smtp_timeout
        smtp.login.assert_called_once_with("me@qq.com", "auth-code")
        smtp.send_message.assert_called_once()
        smtp.quit.assert_called_once()
        assert message_id.endswith("@qq.com>")

    def test_oauth_send(self, smtp_ssl, smtp, make_oauth_account, settings):
        SmtpSender(make_oauth_account(timedelta(hours=1)), settings).send(
            ComposeRequest(to="a@x.com", text="hi")
        )

        mechanism, authobject = smtp.auth.call_args[0]
        assert mechanism == "XOAUTH2"
        assert authobject() == xoauth2_string("me@gmail.com", "access-old").decode()
        assert authobject(b"error challenge") == ""
        smtp.login.assert_not_called()

    def test_validation_before_network(self, smtp_ssl, qq_account, settings):
        with pytest.raises(EmailValidationError):
            SmtpSender(qq_account, settings).send(ComposeRequest(to="a@x.com"))
        smtp_ssl.assert_not_called()

    def test_starttls_port(self, smtp, settings):
        account = EmailAccount(email="me@outlook.com", provider="outlook", password="pw")
        with patch(SMTP, return_value=smtp) as factory:
            SmtpSender(account, settings).send(ComposeRequest(to="a@x.com", text="hi"))

        assert factory.call_args[0] == ("smtp.office365.com", 587)
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("me@outlook.com", "pw")

    def test_rejected_password(self, smtp_ssl, smtp, qq_account, settings):
        smtp.login.side_effect = smtplib.SMTPAuthenticationError(535, b"Login fail")

        with pytest.raises(InvalidCredentialsError) as excinfo:
            SmtpSender(qq_account, settings).send(ComposeRequest(to="a@x.com", text="hi"))
        assert isinstance(excinfo.value.__cause__, smtplib.SMTPAuthenticationError)
        smtp.send_message.assert_not_called()
        smtp.quit.assert_called_once()

    def test_rejected_token(self, smtp_ssl, smtp, make_oauth_account, settings):
        smtp.auth.side_effect = smtplib.SMTPAuthenticationError(535, b"Username and Password not accepted")

        with pytest.raises(AuthExpiredError):
            SmtpSender(make_oauth_account(timedelta(hours=1)), settings).send(
                ComposeRequest(to="a@x.com", text="hi")
            )

    def test_rejected_message(self, smtp_ssl, smtp, qq_account, settings):
        smtp.send_message.side_effect = smtplib.SMTPDataError(550, b"Message rejected as spam")

        with pytest.raises(SendFailedError, match="Failed to send email"):
            SmtpSender(qq_account, settings).send(ComposeRequest(to="a@x.com", text="hi"))

    def test_unreachable_server(self, qq_account, settings):
        with patch(SMTP_SSL, side_effect=ConnectionRefusedError("Connection refused")):
            with pytest.raises(ConnectionFailedError):
                SmtpSender(qq_account, settings).send(ComposeRequest(to="a@x.com", text="hi"))

    def test_quit_failure_ignored(self, smtp_ssl, smtp, qq_account, settings):
        smtp.quit.side_effect = smtplib.SMTPServerDisconnected("gone")

        SmtpSender(qq_account, settings).send(ComposeRequest(to="a@x.com", text="hi"))
        smtp.close.assert_called_once()

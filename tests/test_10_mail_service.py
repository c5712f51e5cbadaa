"""Tests for the mail service and the MCP tool functions built on it."""
from datetime import timedelta
from email.message import EmailMessage

import pytest

from mailmcp.tools.email.credential_store import EmailAccount
from mailmcp.tools.email.errors import (
    AuthExpiredError,
    AuthFailedError,
    ConnectionFailedError,
    EmailValidationError,
    NotFoundError,
)
from mailmcp.tools.email.imap_client import MessageSummary
from mailmcp.tools.email.mime import Envelope, FetchedMessage, parse_bodystructure
from mailmcp.tools.email.service import (
    MailService,
    email_detail_impl,
    email_login_impl,
    email_query_impl,
    email_send_impl,
)
from mailmcp.tools.email.smtp_client import ComposeRequest
from mailmcp.tools.email.token_manager import TokenManager


def _greeting_source() -> bytes:
    msg = EmailMessage()
    msg["From"] = "alice@example.com"
    msg["To"] = "me@qq.com"
    msg["Subject"] = "Greeting"
    msg.set_content("Hello\n\n\n\nWorld")
    msg.add_alternative("<p>Hello</p><p>World</p>", subtype="html")
    return msg.as_bytes()


def _offer_source() -> bytes:
    msg = EmailMessage()
    msg["Subject"] = "Offer"
    msg.set_content("<div>Special offer! <a href='http://ad.example/x'>Click here</a></div>", subtype="html")
    return msg.as_bytes()


def _attachment_source() -> bytes:
    msg = EmailMessage()
    msg["Subject"] = "Report"
    msg.set_content("See attached")
    msg.add_attachment(b"%PDF-1.4", maintype="application", subtype="pdf", filename="report.pdf")
    return msg.as_bytes()


MESSAGES = {
    42: FetchedMessage(uid=42, envelope=Envelope(subject="Greeting", from_="alice@example.com"),
                       raw_source=_greeting_source()),
    7: FetchedMessage(uid=7, envelope=Envelope(subject="Offer"), raw_source=_offer_source()),
    9: FetchedMessage(uid=9, envelope=Envelope(subject="Report"), raw_source=_attachment_source()),
}


class FakeSession:
    """In-memory stand-in for ``ImapSession``."""

    opened: list["FakeSession"] = []

    def __init__(self, account, settings):
        self.account = account
        self.closed = False
        self.structure_requested = False
        FakeSession.opened.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def close(self):
        self.closed = True

    def with_mailbox(self, name, fn):
        return fn(len(MESSAGES))

    def test_connection(self):
        return True

    def list_recent(self, count, mailbox="INBOX"):
        return [
            MessageSummary(uid=uid, sender=m.envelope.from_, recipient="me@qq.com",
                           subject=m.envelope.subject, date=None, flags=["\\Seen"] if uid == 42 else [])
            for uid, m in sorted(MESSAGES.items(), reverse=True)
        ][:count]

    def fetch_message(self, uid, include_source=True, include_structure=False, mailbox="INBOX"):
        self.structure_requested = include_structure
        return MESSAGES.get(uid)


class FailingSession(FakeSession):
    def __enter__(self):
        raise ConnectionFailedError("Could not connect to imap.qq.com:993: timed out")


class FakeSender:
    """Records sent requests."""

    sent: list[ComposeRequest] = []
    created = 0

    def __init__(self, account, settings):
        FakeSender.created += 1
        self.account = account

    def send(self, request):
        FakeSender.sent.append(request)
        return "<abc@qq.com>"


@pytest.fixture(autouse=True)
def _reset_fakes():
    FakeSession.opened = []
    FakeSender.sent = []
    FakeSender.created = 0


@pytest.fixture
def service(store, settings):
    return MailService(
        store=store,
        token_manager=TokenManager(store, settings, strategies=[]),
        settings=settings,
        session_factory=FakeSession,
        sender_factory=FakeSender,
    )


@pytest.fixture
def saved(store, qq_account):
    store.upsert(qq_account)
    return qq_account


def _text(result) -> str:
    return result["content"][0]["text"]


class TestFetchBody:
    """Clean body for a UID."""

    def test_plain_part_cleaned(self, service, saved):
        assert service.fetch_body("me@qq.com", 42) == "Hello\n\nWorld"
        assert FakeSession.opened[-1].closed

    def test_html_only_converted_link_target_kept(self, service, saved):
        assert service.fetch_body(None, 7) == "Special offer! Click here (http://ad.example/x)"

    def test_missing_uid(self, service, saved):
        assert service.fetch_body(None, 999) is None

    def test_missing_uid_detail(self, service, saved):
        with pytest.raises(NotFoundError, match="999"):
            service.fetch_detail(None, 999)


class TestFetchDetail:
    """Headers, body and attachments."""

    def test_attachments_from_source(self, service, saved):
        detail = service.fetch_detail(None, 9, include_attachments=True)

        assert FakeSession.opened[-1].structure_requested
        assert detail.body == "See attached"
        assert [(a.filename, a.content_type) for a in detail.attachments] == [("report.pdf", "application/pdf")]

    def test_attachments_from_structure(self, service, saved):
        structure = parse_bodystructure(
            b'(("text" "plain" NIL NIL NIL "7bit" 12 1 NIL NIL NIL NIL)'
            b'("application" "zip" ("name" "a.zip") NIL NIL "base64" 2048 NIL ("attachment" NIL) NIL NIL)'
            b' "mixed" NIL NIL NIL NIL)'
        )
        MESSAGES[10] = FetchedMessage(uid=10, raw_source=_greeting_source(), structure=structure)
        try:
            detail = service.fetch_detail(None, 10, include_attachments=True)
        finally:
            del MESSAGES[10]
        assert [(a.filename, a.size) for a in detail.attachments] == [("a.zip", 2048)]

    def test_no_attachments_unless_requested(self, service, saved):
        assert service.fetch_detail(None, 9).attachments == []


class TestAccountResolution:
    """Lookup, default and inactive accounts."""

    def test_no_accounts(self, service):
        with pytest.raises(NotFoundError, match="No email accounts"):
            service.list_recent()

    def test_unknown_account(self, service, saved):
        with pytest.raises(NotFoundError, match="nobody"):
            service.list_recent("nobody@qq.com")

    def test_by_display_name(self, service, saved):
        assert service.resolve_account("work").email == "me@qq.com"

    def test_inactive_password_account(self, service, store, qq_account):
        qq_account.active = False
        store.upsert(qq_account)
        with pytest.raises(AuthFailedError):
            service.resolve_account("me@qq.com")

    def test_inactive_oauth_account(self, service, store, make_oauth_account):
        account = make_oauth_account(timedelta(hours=-2))
        account.active = False
        store.upsert(account)
        with pytest.raises(AuthExpiredError):
            service.resolve_account("me@gmail.com")

    def test_expired_token_without_refresh_never_connects(self, service, store, make_oauth_account):
        store.upsert(make_oauth_account(timedelta(minutes=-5), refresh_token=""))

        with pytest.raises(AuthExpiredError):
            service.fetch_body("me@gmail.com", 42)
        assert FakeSession.opened == []


class TestListRecent:
    """Count bounds and ordering."""

    @pytest.mark.parametrize("count", [0, 51, -1])
    def test_count_out_of_range(self, service, saved, count):
        with pytest.raises(EmailValidationError):
            service.list_recent(None, count)

    def test_newest_first(self, service, saved):
        assert [s.uid for s in service.list_recent(None, 2)] == [42, 9]


class TestDeliver:
    """Outbound path."""

    def test_validated_before_sender_built(self, service, saved):
        with pytest.raises(EmailValidationError):
            service.deliver(None, ComposeRequest(to="a@x.com"))
        assert FakeSender.created == 0

    def test_sent(self, service, saved):
        assert service.deliver(None, ComposeRequest(to="a@x.com", text="hi")) == "<abc@qq.com>"
        assert FakeSender.sent[0].recipients == ["a@x.com"]


class TestAccountManagement:
    """Login, OAuth save, default and removal."""

    def test_login_password_verifies_and_saves(self, service, store):
        account = service.login_password("me@qq.com", "auth-code", "work")
        assert account.last_login is not None
        assert store.get("work").email == "me@qq.com"
        assert FakeSession.opened[-1].closed

    def test_login_unknown_provider_needs_host(self, service):
        with pytest.raises(EmailValidationError, match="imap_host"):
            service.login_password("me@corp.example", "pw")

    def test_failed_login_not_saved(self, store, settings):
        service = MailService(store=store, settings=settings, session_factory=FailingSession,
                              token_manager=TokenManager(store, settings, strategies=[]))
        with pytest.raises(ConnectionFailedError):
            service.login_password("me@qq.com", "auth-code")
        assert store.list_all() == []

    def test_save_oauth_keeps_refresh_token(self, service, store, make_oauth_account):
        store.upsert(make_oauth_account(timedelta(minutes=-5)))

        account = service.save_oauth_account("me@gmail.com", "access-new", expires_in=3600)

        assert account.refresh_token == "refresh-1"
        assert service.token_manager.token_status(account).needs_refresh is False

    def test_set_default_and_remove(self, service, store, saved, make_oauth_account):
        store.upsert(make_oauth_account(None))
        service.set_default("me@gmail.com")
        assert store.get_default().email == "me@gmail.com"

        service.remove_account("me@gmail.com")
        assert store.get_default().email == "me@qq.com"
        with pytest.raises(NotFoundError):
            service.remove_account("me@gmail.com")


class TestToolFunctions:
    """MCP tool results."""

    def test_query(self, service, saved):
        result = email_query_impl(service, None, 5)
        assert "is_error" not in result
        assert "**UID:** 42 (Read)" in _text(result)
        assert "**UID:** 7 (Unread)" in _text(result)

    def test_query_empty_inbox(self, service, saved, monkeypatch):
        monkeypatch.setattr(FakeSession, "list_recent", lambda self, count, mailbox="INBOX": [])
        assert _text(email_query_impl(service)) == "No emails found in INBOX"

    def test_query_without_account_is_error_with_hint(self, service):
        result = email_query_impl(service)
        assert result["is_error"] is True
        assert "Error (not_found)" in _text(result)
        assert "Hint:" in _text(result)

    def test_detail(self, service, saved):
        text = _text(email_detail_impl(service, 42))
        assert "**Subject:** Greeting" in text
        assert "Hello\n\nWorld" in text

    def test_detail_with_attachments(self, service, saved):
        text = _text(email_detail_impl(service, 9, include_attachments=True))
        assert "**Attachments (1):**" in text
        assert "- report.pdf (8 bytes, application/pdf)" in text

    def test_detail_missing_uid(self, service, saved):
        result = email_detail_impl(service, 999)
        assert result["is_error"] is True
        assert "not found" in _text(result)

    def test_expired_token_hint(self, service, store, make_oauth_account):
        store.upsert(make_oauth_account(timedelta(minutes=-5), refresh_token=""))
        result = email_detail_impl(service, 42, "me@gmail.com")
        assert result["is_error"] is True
        assert "Error (auth_expired)" in _text(result)
        assert "gmail_oauth" in _text(result)

    def test_send(self, service, saved):
        result = email_send_impl(service, "a@x.com, b@y.com", "Hi", text="hello")
        assert "Email sent successfully" in _text(result)
        assert "a@x.com, b@y.com" in _text(result)

    def test_send_without_body(self, service, saved):
        result = email_send_impl(service, "a@x.com", "Hi")
        assert result["is_error"] is True
        assert "Error (validation)" in _text(result)

    def test_login_status_empty(self, service):
        assert "No email accounts found" in _text(email_login_impl(service, "status"))

    def test_login_status_lists_default(self, service, saved):
        text = _text(email_login_impl(service, "status"))
        assert "me@qq.com" in text
        assert "(default)" in text

    def test_login_action(self, service, store):
        result = email_login_impl(service, "login", email="me@qq.com", password="auth-code")
        assert "Login successful" in _text(result)
        assert store.get("me@qq.com") is not None

    def test_check(self, service, saved):
        text = _text(email_login_impl(service, "check", account="me@qq.com"))
        assert "Status: Active" in text
        assert "Connection: OK" in text

    def test_gmail_oauth_instructions(self, service, settings):
        text = _text(email_login_impl(service, "gmail_oauth"))
        assert settings.auth_service.oauth_url in text

    def test_gmail_oauth_saves_tokens(self, service, store):
        result = email_login_impl(
            service, "gmail_oauth", email="me@gmail.com",
            access_token="a1", refresh_token="r1", expires_in=3600,
        )
        assert "saved" in _text(result)
        assert store.get("me@gmail.com").is_oauth

    def test_invalid_action(self, service):
        result = email_login_impl(service, "dance")
        assert result["is_error"] is True
        assert "Invalid action" in _text(result)

    def test_remove_requires_account(self, service):
        assert email_login_impl(service, "remove")["is_error"] is True

    def test_custom_account_record(self, service, store):
        account = EmailAccount(email="me@corp.example", password="pw", imap_host="imap.corp.example",
                               smtp_host="smtp.corp.example", smtp_port=587)
        store.upsert(account)
        assert "me@corp.example" in _text(email_login_impl(service, "status"))

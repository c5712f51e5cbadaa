"""Email operations behind the MCP tools.

``MailService`` owns its collaborators (credential store, token manager,
settings) and exposes the account-level operations: list recent messages,
fetch a message body or detail, deliver a message, and manage saved accounts.
The ``*_impl`` functions wrap those operations as MCP tool results; they never
raise.
"""
import functools
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import timedelta
from email import policy
from email.parser import BytesParser
from typing import Any, Callable, Iterator

from mailmcp.core.settings import Settings, get_settings
from mailmcp.tools.email.credential_store import (
    AuthMode,
    CredentialStore,
    EmailAccount,
    detect_provider,
    get_credential_store,
    get_provider_display_name,
    utcnow,
)
from mailmcp.tools.email.errors import (
    AuthExpiredError,
    AuthFailedError,
    EmailValidationError,
    NotFoundError,
)
from mailmcp.tools.email.formatting import (
    format_account,
    format_email_detail,
    format_email_preview,
    make_tool_error,
    make_tool_result,
)
from mailmcp.tools.email.imap_client import ImapSession, MessageSummary
from mailmcp.tools.email.mime import (
    AttachmentInfo,
    Envelope,
    attachments_from_message,
    attachments_from_structure,
    resolve_clean_text,
)
from mailmcp.tools.email.smtp_client import ComposeRequest, SmtpSender
from mailmcp.tools.email.token_manager import DEFAULT_TOKEN_LIFETIME, TokenManager

logger = logging.getLogger(__name__)

MAX_QUERY_COUNT = 50


@dataclass
class MessageDetail:
    uid: int
    envelope: Envelope
    body: str
    flags: list[str] = field(default_factory=list)
    size: int = 0
    attachments: list[AttachmentInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "from": self.envelope.from_,
            "to": self.envelope.to,
            "subject": self.envelope.subject,
            "date": self.envelope.date.isoformat() if self.envelope.date else "",
            "body": self.body,
            "flags": list(self.flags),
            "size": self.size,
            "attachments": [a.to_dict() for a in self.attachments],
        }


class MailService:
    """Account-level email operations."""

    def __init__(
        self,
        store: CredentialStore | None = None,
        token_manager: TokenManager | None = None,
        settings: Settings | None = None,
        session_factory: Callable[[EmailAccount, Settings], ImapSession] = ImapSession,
        sender_factory: Callable[[EmailAccount, Settings], SmtpSender] = SmtpSender,
    ):
        self._settings = settings or get_settings()
        self._store = store or get_credential_store()
        self._tokens = token_manager or TokenManager(self._store, self._settings)
        self._session_factory = session_factory
        self._sender_factory = sender_factory

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def store(self) -> CredentialStore:
        return self._store

    @property
    def token_manager(self) -> TokenManager:
        return self._tokens

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def resolve_account(self, account: str | None = None) -> EmailAccount:
        """Find a saved account by address/display name, or the default.

        Raises:
            NotFoundError: No such account (or no default).
            AuthExpiredError: The account was deactivated after failed refreshes.
        """
        record = self._store.get(account) if account else self._store.get_default()
        if record is None:
            if account:
                raise NotFoundError(f'Account "{account}" not found. Log in with the email_login tool first.')
            raise NotFoundError("No email accounts found. Log in with the email_login tool first.")

        if not record.active:
            if record.is_oauth:
                raise AuthExpiredError(f"Account {record.email} is inactive because its OAuth token expired.")
            raise AuthFailedError(f"Account {record.email} is inactive. Log in again.")
        return record

    def _usable(self, account: str | None) -> EmailAccount:
        return self._tokens.ensure_usable(self.resolve_account(account))

    @contextmanager
    def _session(self, record: EmailAccount) -> Iterator[ImapSession]:
        session = self._session_factory(record, self._settings)
        with session:
            yield session

    def list_accounts(self) -> list[tuple[EmailAccount, bool]]:
        """All saved accounts with a flag marking the default."""
        default = self._store.get_default()
        default_email = default.email.lower() if default else None
        return [(a, a.email.lower() == default_email) for a in self._store.list_all()]

    def login_password(
        self,
        email: str,
        password: str,
        display_name: str | None = None,
        imap_host: str | None = None,
        imap_port: int | None = None,
        smtp_host: str | None = None,
        smtp_port: int | None = None,
    ) -> EmailAccount:
        """Verify a password (or app passcode) over IMAP and save the account."""
        if not email or "@" not in email:
            raise EmailValidationError("A valid email address is required.")
        if not password:
            raise EmailValidationError("A password or authorization code is required.")

        provider = detect_provider(email)
        if provider == "custom" and not imap_host:
            raise EmailValidationError(
                f"Unknown provider for {email}; imap_host and smtp_host are required."
            )

        existing = self._store.get(email)
        account = EmailAccount(
            email=email,
            provider=provider,
            auth_mode=AuthMode.PASSWORD,
            display_name=display_name or (existing.display_name if existing else None),
            password=password,
            imap_host=imap_host or "",
            imap_port=imap_port or 993,
            smtp_host=smtp_host or "",
            smtp_port=smtp_port or 465,
        )

        with self._session(account) as session:
            session.with_mailbox("INBOX", lambda total: total)

        account = replace(account, last_login=utcnow().isoformat())
        self._store.upsert(account)
        logger.info("Saved %s account %s", get_provider_display_name(provider), email)
        return account

    def save_oauth_account(
        self,
        email: str,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int | None = None,
        display_name: str | None = None,
    ) -> EmailAccount:
        """Save tokens returned by the OAuth login flow."""
        if not email or "@" not in email:
            raise EmailValidationError("A valid email address is required.")
        if not access_token:
            raise EmailValidationError("access_token is required.")

        now = utcnow()
        existing = self._store.get(email)
        account = EmailAccount(
            email=email,
            provider=detect_provider(email),
            auth_mode=AuthMode.OAUTH,
            display_name=display_name or (existing.display_name if existing else None),
            access_token=access_token,
            refresh_token=refresh_token or (existing.refresh_token if existing else ""),
            token_expiry=(now + timedelta(seconds=expires_in or DEFAULT_TOKEN_LIFETIME)).isoformat(),
            last_login=now.isoformat(),
        )
        self._store.upsert(account)
        logger.info("Saved OAuth account %s", email)
        return account

    def account_status(self, account: str | None = None) -> dict[str, Any]:
        """Stored state of an account, including OAuth token expiry."""
        record = self._store.get(account) if account else self._store.get_default()
        if record is None:
            raise NotFoundError(f'Account "{account}" not found.' if account else "No default account configured.")

        status: dict[str, Any] = {
            "email": record.email,
            "display_name": record.display_name or record.email,
            "provider": get_provider_display_name(record.provider),
            "auth_mode": record.auth_mode.value,
            "active": record.active,
            "last_login": record.last_login or "Never",
        }
        if record.is_oauth:
            token = self._tokens.token_status(record)
            status["token_expired"] = token.is_expired
            status["token_expires_in"] = token.expires_in
        return status

    def check_connection(self, account: str | None = None) -> bool:
        """Open a session for the account and select INBOX."""
        record = self._usable(account)
        session = self._session_factory(record, self._settings)
        try:
            return session.test_connection()
        finally:
            session.close()

    def set_default(self, account: str) -> EmailAccount:
        record = self.resolve_account(account)
        self._store.set_default(record.email)
        return record

    def remove_account(self, account: str) -> None:
        record = self._store.get(account)
        if record is None or not self._store.remove(record.email):
            raise NotFoundError(f'Account "{account}" not found.')

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def list_recent(self, account: str | None = None, count: int = 5) -> list[MessageSummary]:
        """Newest ``count`` INBOX messages, newest first."""
        if count < 1 or count > MAX_QUERY_COUNT:
            raise EmailValidationError(f"count must be between 1 and {MAX_QUERY_COUNT}.")
        record = self._usable(account)
        with self._session(record) as session:
            return session.list_recent(count)

    def fetch_body(self, account: str | None, uid: int) -> str | None:
        """Clean plain-text body of message ``uid``; None if it does not exist."""
        record = self._usable(account)
        with self._session(record) as session:
            message = session.fetch_message(uid, include_source=True)
        if message is None:
            return None
        return resolve_clean_text(message)

    def fetch_detail(
        self,
        account: str | None,
        uid: int,
        include_attachments: bool = False,
    ) -> MessageDetail:
        """Headers, clean body and (optionally) attachment list of a message.

        Raises:
            NotFoundError: The UID does not resolve to a message.
        """
        record = self._usable(account)
        with self._session(record) as session:
            message = session.fetch_message(uid, include_source=True, include_structure=include_attachments)
        if message is None:
            raise NotFoundError(f"Email with UID {uid} not found.")

        attachments: list[AttachmentInfo] = []
        if include_attachments:
            attachments = attachments_from_structure(message.structure)
            if not attachments and message.structure is None and message.raw_source:
                parsed = BytesParser(policy=policy.default).parsebytes(message.raw_source)
                attachments = attachments_from_message(parsed)

        return MessageDetail(
            uid=uid,
            envelope=message.envelope,
            body=resolve_clean_text(message) or "",
            flags=message.flags,
            size=message.size,
            attachments=attachments,
        )

    def deliver(self, account: str | None, request: ComposeRequest) -> str:
        """Send ``request`` from the account; returns the Message-ID."""
        request.validate()
        record = self._usable(account)
        return self._sender_factory(record, self._settings).send(request)


# ======================================================================
# Tool implementation functions
# ======================================================================

def handle_email_errors(func):
    """Turn any exception from a tool function into an ``is_error`` result."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> dict[str, Any]:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.error("%s failed: %s", func.__name__, e)
            return make_tool_error(e)
    return wrapper


LOGIN_ACTIONS = ("status", "check", "login", "gmail_oauth", "set_default", "remove")


def _login_guide(service: MailService) -> str:
    return (
        "To add an account:\n"
        '- Password / authorization code (QQ, Yahoo, Outlook, ...): {"action": "login", '
        '"email": "...", "password": "..."}\n'
        f'- Gmail: {{"action": "gmail_oauth"}} and authorize at {service.settings.auth_service.oauth_url}'
    )


@handle_email_errors
def email_login_impl(
    service: MailService,
    action: str,
    account: str | None = None,
    email: str | None = None,
    password: str | None = None,
    display_name: str | None = None,
    access_token: str | None = None,
    refresh_token: str | None = None,
    expires_in: int | None = None,
) -> dict[str, Any]:
    """Account management: status, check, login, gmail_oauth, set_default, remove."""
    action = (action or "").strip().lower().replace("-", "_")

    if action == "status":
        accounts = service.list_accounts()
        if not accounts:
            return make_tool_result("No email accounts found. Please login first.\n\n" + _login_guide(service))
        lines = [format_account(a, is_default) for a, is_default in accounts]
        return make_tool_result(f"Saved accounts ({len(accounts)}):\n\n" + "\n".join(lines))

    if action == "check":
        status = service.account_status(account)
        text = (
            f"Account: {status['email']} ({status['display_name']})\n"
            f"Provider: {status['provider']}\n"
            f"Auth: {status['auth_mode']}\n"
            f"Status: {'Active' if status['active'] else 'Inactive'}\n"
            f"Last login: {status['last_login']}"
        )
        if status.get("token_expired") is not None:
            if status["token_expired"]:
                text += "\nToken: expired (will be refreshed on next use)"
            else:
                text += f"\nToken: valid for {int(status['token_expires_in'] // 60)} more minutes"
        if status["active"]:
            connected = service.check_connection(status["email"])
            text += f"\nConnection: {'OK' if connected else 'FAILED'}"
        return make_tool_result(text)

    if action == "login":
        saved = service.login_password(email or account or "", password or "", display_name)
        return make_tool_result(
            f"Login successful. Account {saved.email} saved"
            + (" as default." if service.store.get_default().email == saved.email else ".")
        )

    if action == "gmail_oauth":
        if access_token:
            saved = service.save_oauth_account(
                email or account or "", access_token, refresh_token, expires_in, display_name
            )
            return make_tool_result(f"Gmail account {saved.email} saved and ready to use.")
        return make_tool_result(
            "Gmail OAuth Login Instructions:\n\n"
            f"1. Open {service.settings.auth_service.oauth_url} and authorize access to your Gmail account.\n"
            "2. Call this tool again with action 'gmail_oauth' and the returned "
            "email, access_token, refresh_token and expires_in.\n\n"
            "Once saved, expired tokens are refreshed automatically."
        )

    if action == "set_default":
        if not account:
            raise EmailValidationError("account is required for set_default.")
        record = service.set_default(account)
        return make_tool_result(f"Default account set to {record.email}.")

    if action == "remove":
        if not account:
            raise EmailValidationError("account is required for remove.")
        service.remove_account(account)
        return make_tool_result(f"Account {account} removed.")

    raise EmailValidationError(f"Invalid action '{action}'. Use one of: {', '.join(LOGIN_ACTIONS)}")


@handle_email_errors
def email_query_impl(service: MailService, account: str | None = None, count: int = 5) -> dict[str, Any]:
    """List the newest messages of an account."""
    summaries = service.list_recent(account, count)
    if not summaries:
        return make_tool_result("No emails found in INBOX")
    previews = [format_email_preview(s.to_dict()) for s in summaries]
    return make_tool_result(f"Found {len(previews)} emails:\n" + "\n".join(previews))


@handle_email_errors
def email_detail_impl(
    service: MailService,
    uid: int,
    account: str | None = None,
    include_attachments: bool = False,
) -> dict[str, Any]:
    """Read one message by UID."""
    detail = service.fetch_detail(account, int(uid), include_attachments)
    return make_tool_result(format_email_detail(detail.to_dict()))


@handle_email_errors
def email_send_impl(
    service: MailService,
    to: str | list[str],
    subject: str,
    text: str | None = None,
    html: str | None = None,
    account: str | None = None,
    attachments: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Send a message from a saved account."""
    request = ComposeRequest(to=to, subject=subject, text=text, html=html, attachments=attachments or [])
    message_id = service.deliver(account, request)
    return make_tool_result(
        f"Email sent successfully.\nMessage ID: {message_id}\n"
        f"To: {', '.join(request.recipients)}\nSubject: {subject}"
    )

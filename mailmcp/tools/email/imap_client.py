"""IMAP connection session.

Opens an authenticated IMAP-over-TLS channel for one saved account (password
login or XOAUTH2 bearer), serializes access per mailbox, and tears the
connection down within a fixed deadline even when the server never answers
LOGOUT.

Usage:
    with ImapSession(account) as session:
        summaries = session.list_recent(5)
        message = session.fetch_message(42)
"""
import imaplib
import logging
import socket
import ssl
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, TypeVar

from mailmcp.core.settings import Settings, get_settings
from mailmcp.tools.email.credential_store import EmailAccount
from mailmcp.tools.email.errors import (
    AuthExpiredError,
    AuthFailedError,
    ConnectionFailedError,
    NotFoundError,
)
from mailmcp.tools.email.mime import (
    Envelope,
    FetchedMessage,
    parse_bodystructure,
    parse_fetch_response,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class MessageSummary:
    uid: int
    sender: str
    recipient: str
    subject: str
    date: datetime | None
    size: int = 0
    flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "from": self.sender,
            "to": self.recipient,
            "subject": self.subject,
            "date": self.date.isoformat() if self.date else "",
            "size": self.size,
            "flags": list(self.flags),
        }


def xoauth2_string(email_address: str, access_token: str) -> bytes:
    """SASL XOAUTH2 initial client response (unencoded)."""
    return f"user={email_address}\x01auth=Bearer {access_token}\x01\x01".encode()


def make_ssl_context(verify: bool) -> ssl.SSLContext:
    """TLS context for IMAP/SMTP; ``verify=False`` skips hostname and chain checks."""
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _flags(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.decode() if isinstance(v, bytes) else str(v) for v in value]


def _int(value: Any) -> int:
    return value if isinstance(value, int) else 0


class ImapSession:
    """One authenticated IMAP connection for a single account.

    Every socket operation (connect included) is bounded by
    ``operation_timeout``; ``close()`` is bounded by ``teardown_timeout``.
    """

    def __init__(self, account: EmailAccount, settings: Settings | None = None):
        """Initialize the session without connecting.

        Args:
            account: Account with imap_host/imap_port and a usable credential
                (callers run OAuth accounts through ``TokenManager`` first).
            settings: Optional settings (defaults to ``get_settings()``)
        """
        self._account = account
        self._settings = settings or get_settings()
        self._conn: imaplib.IMAP4_SSL | None = None
        self._locks: dict[str, threading.RLock] = {}
        self._selected: dict[str, int] = {}
        self._locks_guard = threading.Lock()

    @property
    def account(self) -> EmailAccount:
        return self._account

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "ImapSession":
        """Connect and authenticate.

        Raises:
            ConnectionFailedError: Network, DNS, TLS or timeout failure.
            AuthFailedError: Password login rejected.
            AuthExpiredError: XOAUTH2 bearer token rejected.
        """
        if self._conn is not None:
            return self

        account = self._account
        mail = self._settings.mail
        if not account.imap_host:
            raise ConnectionFailedError(
                f"IMAP server not configured for {account.email}."
            )

        try:
            conn = imaplib.IMAP4_SSL(
                account.imap_host,
                account.imap_port or 993,
                ssl_context=make_ssl_context(mail.tls_verify),
                timeout=mail.operation_timeout,
            )
        except (socket.timeout, ssl.SSLError, OSError) as e:
            logger.error("Failed to connect to IMAP server %s: %s", account.imap_host, e)
            raise ConnectionFailedError(
                f"Could not connect to {account.imap_host}:{account.imap_port}: {e}"
            ) from e

        try:
            if account.is_oauth:
                token = xoauth2_string(account.email, account.access_token)
                conn.authenticate("XOAUTH2", lambda _challenge: token)
            else:
                conn.login(account.email, account.password)
        except imaplib.IMAP4.error as e:
            self._force_shutdown(conn)
            logger.error("IMAP authentication failed for %s: %s", account.email, e)
            if account.is_oauth:
                raise AuthExpiredError(
                    f"OAuth token rejected by {account.imap_host}: {e}"
                ) from e
            raise AuthFailedError(f"Invalid login for {account.email}: {e}") from e
        except (socket.timeout, ssl.SSLError, OSError) as e:
            self._force_shutdown(conn)
            raise ConnectionFailedError(f"Connection lost during login: {e}") from e

        self._conn = conn
        logger.info("Authenticated with IMAP server %s (%s)", account.imap_host, account.auth_mode.value)
        return self

    def close(self) -> None:
        """Log out within ``teardown_timeout``; force-close the socket otherwise.

        Never raises.
        """
        conn, self._conn = self._conn, None
        if conn is None:
            return

        done = threading.Event()

        def _logout() -> None:
            try:
                conn.logout()
                done.set()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug("IMAP logout failed: %s", e)

        worker = threading.Thread(target=_logout, name="imap-logout", daemon=True)
        worker.start()
        worker.join(self._settings.mail.teardown_timeout)

        if not done.is_set():
            logger.debug(
                "IMAP logout did not finish within %.1fs, closing transport",
                self._settings.mail.teardown_timeout,
            )
            self._force_shutdown(conn)

    @staticmethod
    def _force_shutdown(conn: imaplib.IMAP4) -> None:
        try:
            conn.shutdown()
        except OSError as e:
            logger.debug("IMAP transport shutdown failed: %s", e)

    def __enter__(self) -> "ImapSession":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    def _require_conn(self) -> imaplib.IMAP4_SSL:
        if self._conn is None:
            self.open()
        return self._conn

    def _command(self, name: str, call: Callable[[], tuple[str, list[Any]]]) -> list[Any]:
        """Run an IMAP command, mapping transport errors to the taxonomy."""
        try:
            typ, data = call()
        except imaplib.IMAP4.abort as e:
            raise ConnectionFailedError(f"IMAP {name} aborted: {e}") from e
        except imaplib.IMAP4.error as e:
            raise NotFoundError(f"IMAP {name} rejected: {e}") from e
        except (socket.timeout, ssl.SSLError, OSError) as e:
            raise ConnectionFailedError(f"IMAP {name} failed: {e}") from e
        if typ != "OK":
            raise NotFoundError(f"IMAP {name} returned {typ}: {data}")
        return data

    # ------------------------------------------------------------------
    # Mailbox access
    # ------------------------------------------------------------------

    def _mailbox_lock(self, name: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.RLock())

    @contextmanager
    def mailbox(self, name: str = "INBOX") -> Iterator[int]:
        """Select ``name`` read-only under its exclusive lock.

        Re-entrant on the same thread: a nested call (e.g. an operation run
        inside ``with_mailbox``) reuses the open selection.

        Yields:
            Number of messages in the mailbox.
        """
        conn = self._require_conn()
        with self._mailbox_lock(name):
            if name in self._selected:
                yield self._selected[name]
                return

            data = self._command("SELECT", lambda: conn.select(name, readonly=True))
            try:
                total = int(data[0]) if data and data[0] else 0
            except ValueError:
                total = 0
            self._selected[name] = total
            try:
                yield total
            finally:
                del self._selected[name]
                try:
                    conn.close()
                except (imaplib.IMAP4.error, OSError) as e:
                    logger.debug("IMAP CLOSE of %s failed: %s", name, e)

    def with_mailbox(self, name: str, fn: Callable[[int], R]) -> R:
        """Run ``fn(message_count)`` while holding the mailbox."""
        with self.mailbox(name) as total:
            return fn(total)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def list_recent(self, count: int = 5, mailbox: str = "INBOX") -> list[MessageSummary]:
        """Summaries of the newest ``count`` messages, newest first."""
        conn = self._require_conn()
        with self.mailbox(mailbox) as total:
            if total == 0 or count <= 0:
                return []
            start = max(1, total - count + 1)
            data = self._command(
                "FETCH",
                lambda: conn.fetch(f"{start}:{total}", "(UID FLAGS RFC822.SIZE BODY.PEEK[HEADER])"),
            )

        summaries = []
        for attrs in parse_fetch_response(data):
            envelope = Envelope.from_headers(attrs.get("BODY[HEADER]"))
            summaries.append(MessageSummary(
                uid=_int(attrs.get("UID")),
                sender=envelope.from_,
                recipient=envelope.to,
                subject=envelope.subject,
                date=envelope.date,
                size=_int(attrs.get("RFC822.SIZE")),
                flags=_flags(attrs.get("FLAGS")),
            ))

        # Server order is not trusted
        summaries.sort(key=lambda s: s.date or _EPOCH, reverse=True)
        logger.info("Listed %d messages from %s for %s", len(summaries), mailbox, self._account.email)
        return summaries

    def _uid_fetch(self, uid: int, items: list[str], mailbox: str) -> dict[str, Any] | None:
        conn = self._require_conn()
        query = "(" + " ".join(["UID", "FLAGS", "RFC822.SIZE"] + items) + ")"
        with self.mailbox(mailbox):
            data = self._command("UID FETCH", lambda: conn.uid("FETCH", str(uid), query))

        try:
            responses = parse_fetch_response(data)
        except ValueError as e:
            logger.warning("Unparseable FETCH response for UID %s: %s", uid, e)
            return None
        for attrs in responses:
            if attrs.get("UID") == uid:
                return attrs
        return None

    def fetch_message(
        self,
        uid: int,
        include_source: bool = True,
        include_structure: bool = False,
        mailbox: str = "INBOX",
    ) -> FetchedMessage | None:
        """Fetch one message by UID.

        Args:
            uid: Message UID.
            include_source: Fetch the full RFC 822 source; otherwise only the
                ``TEXT`` section.
            include_structure: Also fetch BODYSTRUCTURE.
            mailbox: Mailbox to select.

        Returns:
            The fetched message, or None if the UID does not resolve.
        """
        items = ["BODY.PEEK[HEADER]", "BODY.PEEK[]" if include_source else "BODY.PEEK[TEXT]"]
        if include_structure:
            items.append("BODYSTRUCTURE")

        attrs = self._uid_fetch(uid, items, mailbox)
        if attrs is None:
            return None

        message = FetchedMessage(
            uid=uid,
            envelope=Envelope.from_headers(attrs.get("BODY[HEADER]")),
            flags=_flags(attrs.get("FLAGS")),
            size=_int(attrs.get("RFC822.SIZE")),
            structure=parse_bodystructure(attrs.get("BODYSTRUCTURE")),
        )
        if include_source:
            if isinstance(attrs.get("BODY[]"), bytes):
                message.raw_source = attrs["BODY[]"]
        elif isinstance(attrs.get("BODY[TEXT]"), bytes):
            message.body_parts["TEXT"] = attrs["BODY[TEXT]"]
        return message

    def fetch_body_parts(self, uid: int, labels: list[str], mailbox: str = "INBOX") -> FetchedMessage | None:
        """Fetch selected ``BODY[<label>]`` sections of a message by UID."""
        items = [f"BODY.PEEK[{label}]" for label in labels]
        attrs = self._uid_fetch(uid, items, mailbox)
        if attrs is None:
            return None

        message = FetchedMessage(
            uid=uid,
            flags=_flags(attrs.get("FLAGS")),
            size=_int(attrs.get("RFC822.SIZE")),
        )
        for label in labels:
            value = attrs.get(f"BODY[{label.upper()}]")
            if isinstance(value, bytes):
                message.body_parts[label] = value
        message.envelope = Envelope.from_headers(message.body_parts.get("HEADER"))
        return message

    def test_connection(self) -> bool:
        """Open, select INBOX, and report whether that worked."""
        try:
            self.with_mailbox("INBOX", lambda total: total)
            return True
        except (AuthFailedError, AuthExpiredError, ConnectionFailedError, NotFoundError) as e:
            logger.warning("IMAP connection test failed for %s: %s", self._account.email, e)
            return False

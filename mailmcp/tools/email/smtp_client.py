"""Outbound mail submission over SMTP.

Builds the message locally and submits it with the same credential mode the
account uses for IMAP (password login or XOAUTH2). Provider rejections are
classified so the caller can tell "re-authenticate" from "check password".
"""
import base64
import binascii
import logging
import mimetypes
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from pathlib import Path
from typing import Any

from mailmcp.core.settings import Settings, get_settings
from mailmcp.tools.email.credential_store import EmailAccount
from mailmcp.tools.email.errors import (
    AuthExpiredError,
    EmailToolError,
    EmailValidationError,
    ErrorKind,
    InvalidCredentialsError,
    as_tool_error,
    classify_error,
)
from mailmcp.tools.email.imap_client import make_ssl_context, xoauth2_string

logger = logging.getLogger(__name__)

IMPLICIT_TLS_PORT = 465
MAX_ATTACHMENT_MB = 25


def _guess_mime_type(filename: str) -> str:
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or "application/octet-stream"


def _split_recipients(to: str | list[str]) -> list[str]:
    if isinstance(to, str):
        to = to.replace(";", ",").split(",")
    return [addr.strip() for addr in to if addr and addr.strip()]


@dataclass
class ComposeRequest:
    """An outbound message.

    ``attachments`` items are dicts with ``filename`` plus either ``path`` (a
    local file) or ``data`` (bytes or base64 text); ``mime_type`` is optional.
    """
    to: str | list[str]
    subject: str = ""
    text: str | None = None
    html: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)

    @property
    def recipients(self) -> list[str]:
        return _split_recipients(self.to)

    def validate(self) -> None:
        """Reject a malformed request before any network call.

        Raises:
            EmailValidationError: No body, no recipient, or a bad attachment.
        """
        if not self.text and not self.html:
            raise EmailValidationError("Either text or html content must be provided.")
        recipients = self.recipients
        if not recipients:
            raise EmailValidationError("At least one recipient is required.")
        for address in recipients:
            if "@" not in address:
                raise EmailValidationError(f"Invalid recipient address: {address}")
        for attachment in self.attachments:
            if not isinstance(attachment, dict):
                raise EmailValidationError("Attachments must be objects with filename and data or path.")
            if "path" not in attachment and "data" not in attachment:
                raise EmailValidationError(
                    f"Attachment {attachment.get('filename', '?')} needs either 'path' or 'data'."
                )


def _attachment_bytes(attachment: dict[str, Any]) -> tuple[str, bytes]:
    if "path" in attachment:
        path = Path(attachment["path"]).expanduser()
        if not path.is_file():
            raise EmailValidationError(f"Attachment file not found: {path}")
        size_mb = path.stat().st_size / (1024 * 1024)
        if size_mb > MAX_ATTACHMENT_MB:
            raise EmailValidationError(
                f"Attachment file too large: {size_mb:.2f}MB (exceeds {MAX_ATTACHMENT_MB}MB limit)"
            )
        return attachment.get("filename") or path.name, path.read_bytes()

    data = attachment["data"]
    filename = attachment.get("filename") or "attachment"
    if isinstance(data, str):
        try:
            data = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EmailValidationError(f"Attachment {filename} data is not valid base64") from e
    return filename, bytes(data)


def build_message(account: EmailAccount, request: ComposeRequest) -> EmailMessage:
    """Assemble the MIME message (text, html alternative, attachments)."""
    msg = EmailMessage()
    msg["From"] = formataddr((account.display_name or "", account.email))
    msg["To"] = ", ".join(request.recipients)
    msg["Subject"] = request.subject
    msg["Date"] = formatdate(localtime=True)
    domain = account.email.split("@")[-1] if "@" in account.email else None
    msg["Message-ID"] = make_msgid(domain=domain)

    if request.text:
        msg.set_content(request.text)
        if request.html:
            msg.add_alternative(request.html, subtype="html")
    else:
        msg.set_content(request.html, subtype="html")

    for attachment in request.attachments:
        filename, data = _attachment_bytes(attachment)
        mime_type = attachment.get("mime_type") or _guess_mime_type(filename)
        maintype, _, subtype = mime_type.partition("/")
        msg.add_attachment(data, maintype=maintype, subtype=subtype or "octet-stream", filename=filename)

    return msg


def classify_send_error(exc: BaseException, account: EmailAccount | None = None) -> EmailToolError:
    """Map an SMTP failure to a typed error.

    A rejected login means an expired token for OAuth accounts and wrong
    credentials for password accounts.
    """
    if isinstance(exc, EmailToolError):
        return exc
    kind = classify_error(exc)
    if kind in (ErrorKind.INVALID_CREDENTIALS, ErrorKind.AUTH_FAILED):
        if account is not None and account.is_oauth:
            error: EmailToolError = AuthExpiredError(f"OAuth token rejected by SMTP server: {exc}")
        else:
            error = InvalidCredentialsError(f"Invalid login: {exc}")
        error.__cause__ = exc
        return error
    return as_tool_error(exc, prefix="Failed to send email: ")


class SmtpSender:
    """Submits messages for one account."""

    def __init__(self, account: EmailAccount, settings: Settings | None = None):
        self._account = account
        self._settings = settings or get_settings()

    def _connect(self) -> smtplib.SMTP:
        account = self._account
        mail = self._settings.mail
        context = make_ssl_context(mail.tls_verify)
        if account.smtp_port == IMPLICIT_TLS_PORT:
            return smtplib.SMTP_SSL(
                account.smtp_host, account.smtp_port, timeout=mail.smtp_timeout, context=context
            )

        smtp = smtplib.SMTP(account.smtp_host, account.smtp_port, timeout=mail.smtp_timeout)
        try:
            smtp.ehlo()
            if account.use_tls:
                smtp.starttls(context=context)
                smtp.ehlo()
        except (smtplib.SMTPException, OSError):
            smtp.close()
            raise
        return smtp

    def _authenticate(self, smtp: smtplib.SMTP) -> None:
        account = self._account
        if not account.is_oauth:
            smtp.login(account.email, account.password)
            return

        token = xoauth2_string(account.email, account.access_token).decode()

        def _xoauth2(challenge: bytes | None = None) -> str:
            # An error challenge gets an empty reply so the server sends the final status
            return token if challenge is None else ""

        smtp.ehlo_or_helo_if_needed()
        smtp.auth("XOAUTH2", _xoauth2)

    def send(self, request: ComposeRequest) -> str:
        """Send ``request`` and return its Message-ID.

        Raises:
            EmailValidationError: The request is malformed (no network call made).
            AuthExpiredError: OAuth token rejected.
            InvalidCredentialsError: Password rejected.
            ConnectionFailedError: Network failure.
            SendFailedError: Any other rejection.
        """
        request.validate()
        msg = build_message(self._account, request)
        account = self._account

        if not account.smtp_host:
            raise EmailValidationError(f"SMTP server not configured for {account.email}.")

        try:
            smtp = self._connect()
            try:
                self._authenticate(smtp)
                refused = smtp.send_message(msg)
            finally:
                try:
                    smtp.quit()
                except (smtplib.SMTPException, OSError) as e:
                    logger.debug("SMTP QUIT failed: %s", e)
                    smtp.close()
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email from %s: %s", account.email, e)
            raise classify_send_error(e, account) from e

        if refused:
            logger.warning("Some recipients were refused: %s", ", ".join(refused))
        logger.info("Email sent from %s to %s", account.email, msg["To"])
        return msg["Message-ID"]

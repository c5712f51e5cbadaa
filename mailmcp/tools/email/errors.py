"""Error taxonomy for email operations.

Every failure surfaced to a tool caller belongs to one ``ErrorKind`` so a
remediation hint can be attached (re-authenticate, check password, check
network, ...).
"""
import smtplib
import socket
import ssl
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    AUTH_FAILED = "auth_failed"
    AUTH_EXPIRED = "auth_expired"
    INVALID_CREDENTIALS = "invalid_credentials"
    CONNECTION_FAILED = "connection_failed"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    SEND_FAILED = "send_failed"


REMEDIATION_HINTS: dict[ErrorKind, str] = {
    ErrorKind.AUTH_FAILED: (
        "Check the email address and password/authorization code, "
        "then log in again with the email_login tool."
    ),
    ErrorKind.AUTH_EXPIRED: (
        "The OAuth token is no longer valid. Re-authenticate with the "
        "email_login tool using action 'gmail_oauth'."
    ),
    ErrorKind.INVALID_CREDENTIALS: (
        "The mail server rejected the login. Check your email and password/authorization code."
    ),
    ErrorKind.CONNECTION_FAILED: (
        "Check your internet connection and the email server settings, then retry."
    ),
    ErrorKind.NOT_FOUND: (
        "Check the account name or message UID. Use email_query to list recent messages."
    ),
    ErrorKind.VALIDATION: "Fix the request arguments and try again.",
    ErrorKind.SEND_FAILED: "The message was not delivered. Retry later or check the recipient.",
}


class EmailToolError(Exception):
    """Base class for classified email errors."""

    kind: ErrorKind = ErrorKind.SEND_FAILED

    @property
    def hint(self) -> str:
        return REMEDIATION_HINTS[self.kind]


class AuthFailedError(EmailToolError):
    """Static credentials (password / app passcode) were rejected."""

    kind = ErrorKind.AUTH_FAILED


class AuthExpiredError(EmailToolError):
    """OAuth token is invalid and could not be refreshed."""

    kind = ErrorKind.AUTH_EXPIRED


class InvalidCredentialsError(EmailToolError):
    """SMTP login rejected for a password account."""

    kind = ErrorKind.INVALID_CREDENTIALS


class ConnectionFailedError(EmailToolError):
    """Network, DNS, TLS or timeout failure."""

    kind = ErrorKind.CONNECTION_FAILED


class NotFoundError(EmailToolError):
    """Account or message does not exist."""

    kind = ErrorKind.NOT_FOUND


class EmailValidationError(EmailToolError):
    """Malformed caller input."""

    kind = ErrorKind.VALIDATION


class SendFailedError(EmailToolError):
    """Generic delivery rejection."""

    kind = ErrorKind.SEND_FAILED


_OAUTH_WORDS = ("oauth", "token", "xoauth2")
_LOGIN_WORDS = ("invalid login", "invalid credentials", "authentication failed", "username and password")
_NETWORK_WORDS = ("connection", "timeout", "timed out")


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception raised by an email operation to an ``ErrorKind``."""
    if isinstance(exc, EmailToolError):
        return exc.kind
    if isinstance(exc, (
        socket.timeout,
        TimeoutError,
        ssl.SSLError,
        ConnectionError,
        httpx.TransportError,
        smtplib.SMTPServerDisconnected,
        smtplib.SMTPConnectError,
    )):
        return ErrorKind.CONNECTION_FAILED
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return ErrorKind.INVALID_CREDENTIALS
    if isinstance(exc, ValueError):
        return ErrorKind.VALIDATION

    message = str(exc).lower()
    if any(word in message for word in _OAUTH_WORDS):
        return ErrorKind.AUTH_EXPIRED
    if any(word in message for word in _LOGIN_WORDS):
        return ErrorKind.AUTH_FAILED
    # SMTPException derives from OSError but is a protocol-level rejection
    is_socket_error = isinstance(exc, OSError) and not isinstance(exc, smtplib.SMTPException)
    if is_socket_error or any(word in message for word in _NETWORK_WORDS):
        return ErrorKind.CONNECTION_FAILED
    return ErrorKind.SEND_FAILED


def remediation_hint(exc: BaseException) -> str:
    return REMEDIATION_HINTS[classify_error(exc)]


ERROR_TYPES: dict[ErrorKind, type[EmailToolError]] = {
    ErrorKind.AUTH_FAILED: AuthFailedError,
    ErrorKind.AUTH_EXPIRED: AuthExpiredError,
    ErrorKind.INVALID_CREDENTIALS: InvalidCredentialsError,
    ErrorKind.CONNECTION_FAILED: ConnectionFailedError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.VALIDATION: EmailValidationError,
    ErrorKind.SEND_FAILED: SendFailedError,
}


def as_tool_error(exc: BaseException, prefix: str = "") -> EmailToolError:
    """Wrap any exception in the typed error for its kind."""
    if isinstance(exc, EmailToolError):
        return exc
    error = ERROR_TYPES[classify_error(exc)](f"{prefix}{exc}")
    error.__cause__ = exc
    return error

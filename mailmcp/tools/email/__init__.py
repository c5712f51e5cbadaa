"""Email tools package for IMAP/SMTP accounts.

Provides password (app passcode) and OAuth (XOAUTH2) access to QQ Mail, Gmail,
Yahoo, Outlook, iCloud, Zoho and custom IMAP/SMTP providers, plus the body
resolution that turns fetched MIME messages into clean plain text.
"""
from mailmcp.tools.email.credential_store import (
    get_credential_store,
    CredentialStore,
    EmailAccount,
    AuthMode,
    detect_provider,
    get_provider_display_name,
    PROVIDER_CONFIG,
    DOMAIN_TO_PROVIDER,
)
from mailmcp.tools.email.errors import (
    ErrorKind,
    EmailToolError,
    classify_error,
    remediation_hint,
)
from mailmcp.tools.email.mime import resolve_text, resolve_clean_text
from mailmcp.tools.email.text_cleaner import clean_email_text
from mailmcp.tools.email.token_manager import TokenManager
from mailmcp.tools.email.service import MailService

__all__ = [
    "get_credential_store",
    "CredentialStore",
    "EmailAccount",
    "AuthMode",
    "detect_provider",
    "get_provider_display_name",
    "PROVIDER_CONFIG",
    "DOMAIN_TO_PROVIDER",
    "ErrorKind",
    "EmailToolError",
    "classify_error",
    "remediation_hint",
    "resolve_text",
    "resolve_clean_text",
    "clean_email_text",
    "TokenManager",
    "MailService",
]

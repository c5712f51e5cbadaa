"""Credential store for saved email accounts.

Keeps every account (password or OAuth) in a single JSON file, together with
the process-wide default account. Writes go to a temp file that is renamed
over the store, so a concurrent reader never sees a partial file.

Usage:
    from mailmcp.tools.email.credential_store import get_credential_store

    store = get_credential_store()
    account = store.get("me@qq.com") or store.get_default()
"""
import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from mailmcp.core.settings import get_settings

logger = logging.getLogger(__name__)

# Provider auto-detection: provider ID -> IMAP/SMTP server config
PROVIDER_CONFIG: dict[str, dict[str, Any]] = {
    "gmail": {
        "name": "Gmail",
        "auth_mode": "oauth",
        "imap_host": "imap.gmail.com",
        "imap_port": 993,
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 465,
    },
    "qq": {
        "name": "QQ Mail",
        "auth_mode": "password",
        "imap_host": "imap.qq.com",
        "imap_port": 993,
        "smtp_host": "smtp.qq.com",
        "smtp_port": 465,
    },
    "yahoo": {
        "name": "Yahoo Mail",
        "auth_mode": "password",
        "imap_host": "imap.mail.yahoo.com",
        "imap_port": 993,
        "smtp_host": "smtp.mail.yahoo.com",
        "smtp_port": 465,
    },
    "outlook": {
        "name": "Outlook",
        "auth_mode": "password",
        "imap_host": "outlook.office365.com",
        "imap_port": 993,
        "smtp_host": "smtp.office365.com",
        "smtp_port": 587,
    },
    "icloud": {
        "name": "iCloud",
        "auth_mode": "password",
        "imap_host": "imap.mail.me.com",
        "imap_port": 993,
        "smtp_host": "smtp.mail.me.com",
        "smtp_port": 587,
    },
    "zoho": {
        "name": "Zoho Mail",
        "auth_mode": "password",
        "imap_host": "imap.zoho.com",
        "imap_port": 993,
        "smtp_host": "smtp.zoho.com",
        "smtp_port": 465,
    },
}

# Email domain -> provider ID mapping
DOMAIN_TO_PROVIDER: dict[str, str] = {
    "gmail.com": "gmail",
    "googlemail.com": "gmail",
    "qq.com": "qq",
    "foxmail.com": "qq",
    "yahoo.com": "yahoo",
    "yahoo.co.uk": "yahoo",
    "yahoo.co.jp": "yahoo",
    "ymail.com": "yahoo",
    "outlook.com": "outlook",
    "hotmail.com": "outlook",
    "live.com": "outlook",
    "msn.com": "outlook",
    "icloud.com": "icloud",
    "me.com": "icloud",
    "mac.com": "icloud",
    "zoho.com": "zoho",
    "zohomail.com": "zoho",
}


def detect_provider(email_address: str) -> str:
    """Detect email provider from email address domain.

    Args:
        email_address: Email address to detect provider for

    Returns:
        Provider ID (e.g., "gmail", "qq", "outlook") or "custom"
    """
    if not email_address or "@" not in email_address:
        return "custom"

    domain = email_address.split("@")[1].lower()
    return DOMAIN_TO_PROVIDER.get(domain, "custom")


def get_provider_display_name(provider: str) -> str:
    """Get human-readable display name for a provider."""
    config = PROVIDER_CONFIG.get(provider)
    if config:
        return config["name"]
    return provider.capitalize()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AuthMode(str, Enum):
    PASSWORD = "password"
    OAUTH = "oauth"


@dataclass
class EmailAccount:
    """A saved email account (password or OAuth bearer)."""
    email: str
    provider: str = "custom"
    auth_mode: AuthMode = AuthMode.PASSWORD
    display_name: str | None = None

    # Password / app passcode (password mode only)
    password: str = ""

    # OAuth fields (oauth mode only)
    access_token: str = ""
    refresh_token: str = ""
    token_expiry: str | None = None  # ISO format timestamp

    # IMAP/SMTP server config (derived from provider unless custom)
    imap_host: str = ""
    imap_port: int = 993
    smtp_host: str = ""
    smtp_port: int = 465
    use_tls: bool = True

    active: bool = True
    last_login: str | None = None

    def __post_init__(self) -> None:
        self.auth_mode = AuthMode(self.auth_mode)
        if self.auth_mode is AuthMode.OAUTH:
            # OAuth accounts never carry a password
            self.password = ""
        fill_provider_defaults(self)

    @property
    def is_oauth(self) -> bool:
        return self.auth_mode is AuthMode.OAUTH

    @property
    def expiry(self) -> datetime | None:
        return parse_timestamp(self.token_expiry)

    def matches(self, email_or_display_name: str) -> bool:
        key = email_or_display_name.strip().lower()
        if self.email.lower() == key:
            return True
        return bool(self.display_name) and self.display_name.lower() == key

    def to_dict(self) -> dict[str, Any]:
        """Convert account to a JSON-serializable dictionary."""
        data = asdict(self)
        data["auth_mode"] = self.auth_mode.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EmailAccount":
        """Create an account from a dictionary, ignoring unknown keys."""
        known_fields = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in known_fields}

        # Auto-detect auth mode if not set
        if "auth_mode" not in filtered:
            filtered["auth_mode"] = (
                AuthMode.OAUTH if filtered.get("access_token") else AuthMode.PASSWORD
            )
        if not filtered.get("provider"):
            filtered["provider"] = detect_provider(filtered.get("email", ""))

        return cls(**filtered)


def fill_provider_defaults(account: EmailAccount) -> None:
    """Fill missing server config from the provider table."""
    config = PROVIDER_CONFIG.get(account.provider)
    if not config:
        return
    if not account.imap_host:
        account.imap_host = config["imap_host"]
        account.imap_port = config["imap_port"]
    if not account.smtp_host:
        account.smtp_host = config["smtp_host"]
        account.smtp_port = config["smtp_port"]


class CredentialStore:
    """JSON-file repository of email accounts.

    File layout::

        {"accounts": [...], "default_account": "me@qq.com", "last_updated": "..."}

    Reads tolerate a missing or corrupt file (treated as empty). Writes are
    atomic at the file level; concurrent writers follow last-writer-wins.
    """

    def __init__(self, storage_path: Path | None = None):
        """Initialize the credential store.

        Args:
            storage_path: Optional JSON file path (defaults to settings)
        """
        if storage_path is None:
            storage_path = get_settings().mail.storage_path

        self._path = Path(storage_path).expanduser()
        self._lock = threading.RLock()
        self._ensure_dirs()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_dirs(self) -> None:
        """Create the storage directory if it doesn't exist."""
        self._path.parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Raw file access
    # ------------------------------------------------------------------

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {"accounts": [], "default_account": None}

        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (IOError, json.JSONDecodeError) as e:
            logger.warning("Invalid storage file %s, starting empty: %s", self._path, e)
            return {"accounts": [], "default_account": None}

        if not isinstance(data, dict):
            logger.warning("Invalid storage data: not an object, starting empty")
            return {"accounts": [], "default_account": None}
        if not isinstance(data.get("accounts"), list):
            logger.warning("Invalid storage data: accounts is not a list, fixing")
            data["accounts"] = []
        return data

    def _write(self, data: dict[str, Any]) -> None:
        data["last_updated"] = utcnow().isoformat()
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        temp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            # Atomic rename
            temp_path.replace(self._path)
        except (IOError, OSError) as e:
            logger.error("Failed to write storage %s: %s", self._path, e)
            temp_path.unlink(missing_ok=True)
            raise
        logger.debug("Storage data updated: %s", self._path)

    def _load_accounts(self, data: dict[str, Any]) -> list[EmailAccount]:
        accounts = []
        for raw in data["accounts"]:
            try:
                accounts.append(EmailAccount.from_dict(raw))
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed account record: %s", e)
        return accounts

    # ------------------------------------------------------------------
    # Repository contract
    # ------------------------------------------------------------------

    def get(self, email_or_display_name: str) -> EmailAccount | None:
        """Look up an account by email address or display name."""
        with self._lock:
            accounts = self._load_accounts(self._read())
        for account in accounts:
            if account.email.lower() == email_or_display_name.strip().lower():
                return account
        for account in accounts:
            if account.matches(email_or_display_name):
                return account
        return None

    def get_default(self) -> EmailAccount | None:
        with self._lock:
            default = self._read().get("default_account")
        if not default:
            return None
        return self.get(default)

    def list_all(self) -> list[EmailAccount]:
        with self._lock:
            return self._load_accounts(self._read())

    def upsert(self, account: EmailAccount) -> None:
        """Insert or replace the account with the same address.

        The first account saved becomes the default.
        """
        with self._lock:
            data = self._read()
            records = data["accounts"]
            key = account.email.lower()
            for i, raw in enumerate(records):
                if str(raw.get("email", "")).lower() == key:
                    records[i] = account.to_dict()
                    logger.info("Account updated: %s", account.email)
                    break
            else:
                records.append(account.to_dict())
                logger.info("Account added: %s", account.email)

            if not data.get("default_account"):
                data["default_account"] = account.email
            self._write(data)

    def remove(self, email: str) -> bool:
        """Delete an account. Returns False if it did not exist.

        Removing the default promotes the first remaining account.
        """
        with self._lock:
            data = self._read()
            key = email.lower()
            remaining = [r for r in data["accounts"] if str(r.get("email", "")).lower() != key]
            if len(remaining) == len(data["accounts"]):
                return False

            data["accounts"] = remaining
            if str(data.get("default_account") or "").lower() == key:
                data["default_account"] = remaining[0]["email"] if remaining else None
            self._write(data)
        logger.info("Account removed: %s", email)
        return True

    def set_default(self, email: str) -> None:
        account = self.get(email)
        if account is None:
            raise KeyError(f"Account not found: {email}")
        with self._lock:
            data = self._read()
            data["default_account"] = account.email
            self._write(data)
        logger.info("Default account set to %s", account.email)

    def validate(self, email_or_display_name: str) -> bool:
        """Check that the account exists and is active."""
        account = self.get(email_or_display_name)
        return account is not None and account.active


def get_credential_store(storage_path: Path | None = None) -> CredentialStore:
    """Get a credential store.

    Args:
        storage_path: Optional JSON file path

    Returns:
        CredentialStore instance
    """
    return CredentialStore(storage_path)

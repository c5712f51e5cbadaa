"""Shared fixtures: isolated settings and credential store per test."""
from datetime import timedelta

import pytest

from mailmcp.core.settings import MailSettings, Settings
from mailmcp.tools.email.credential_store import AuthMode, CredentialStore, EmailAccount, utcnow


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        mail=MailSettings(
            storage_path=tmp_path / "storage.json",
            teardown_timeout=0.2,
            operation_timeout=5.0,
        )
    )


@pytest.fixture
def store(settings) -> CredentialStore:
    return CredentialStore(settings.mail.storage_path)


@pytest.fixture
def qq_account() -> EmailAccount:
    return EmailAccount(email="me@qq.com", provider="qq", password="auth-code", display_name="work")


@pytest.fixture
def make_oauth_account():
    """Factory for a Gmail OAuth account whose token expires ``expires_in`` from now."""
    def _make(expires_in: timedelta | None, refresh_token: str = "refresh-1") -> EmailAccount:
        return EmailAccount(
            email="me@gmail.com",
            provider="gmail",
            auth_mode=AuthMode.OAUTH,
            access_token="access-old",
            refresh_token=refresh_token,
            token_expiry=(utcnow() + expires_in).isoformat() if expires_in is not None else None,
        )
    return _make

# mailmcp/core/settings.py
"""Centralized settings module for mailmcp.

This module provides a single source of truth for all configuration settings
across the application. Settings can be configured via environment variables
or a local ``.env`` file.

Usage:
    from mailmcp.core.settings import get_settings

    settings = get_settings()
    print(settings.mail.storage_path)
    print(settings.oauth.client_id)
    print(settings.server.transport)
"""
import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_HOST = "https://mailauth.mailmcp.de"


class MailSettings(BaseSettings):
    """Mail connection and credential storage settings."""

    model_config = SettingsConfigDict(
        env_prefix="MAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    storage_path: Path = Field(
        default=Path.home() / ".mailmcp" / "storage.json",
        description="JSON file holding saved email accounts"
    )
    operation_timeout: float = Field(
        default=30.0,
        description="Seconds allowed for IMAP connect and each fetch command"
    )
    teardown_timeout: float = Field(
        default=3.0,
        description="Seconds allowed for a graceful IMAP logout before force-closing"
    )
    smtp_timeout: float = Field(
        default=60.0,
        description="Socket timeout in seconds for SMTP submission"
    )
    tls_verify: bool = Field(
        default=False,
        description="Verify server certificate chain and hostname for IMAP/SMTP"
    )
    refresh_margin_seconds: int = Field(
        default=300,
        description="Refresh OAuth tokens expiring within this many seconds"
    )
    sweep_grace_seconds: int = Field(
        default=3300,
        description="Startup sweep refreshes tokens expired longer ago than this"
    )
    sweep_interval_seconds: int = Field(
        default=0,
        description="Interval for the periodic token sweep (0 disables it)"
    )
    refresh_attempts: int = Field(
        default=2,
        description="Attempts per refresh strategy on transport errors"
    )


class OAuthSettings(BaseSettings):
    """Google OAuth client configuration used for direct token refresh."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    client_id: str | None = Field(
        default=None,
        description="Google OAuth client ID"
    )
    client_secret: str | None = Field(
        default=None,
        description="Google OAuth client secret"
    )
    token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Google OAuth token endpoint"
    )


class AuthServiceSettings(BaseSettings):
    """Hosted OAuth helper service (login page and refresh endpoint)."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    service_host: str | None = Field(
        default=None,
        description="Base URL of the OAuth helper service"
    )
    gmail_auth_endpoint: str | None = Field(
        default=None,
        description="Path of the Gmail OAuth login page on the helper service"
    )
    gmail_token_refresh_endpoint: str | None = Field(
        default=None,
        description="Path of the token refresh endpoint on the helper service"
    )

    @property
    def oauth_url(self) -> str:
        if self.service_host and self.gmail_auth_endpoint:
            return f"{self.service_host}{self.gmail_auth_endpoint}"
        return f"{DEFAULT_SERVICE_HOST}/api/auth/gmail-oauth"

    @property
    def refresh_url(self) -> str:
        if self.service_host and self.gmail_token_refresh_endpoint:
            return f"{self.service_host}{self.gmail_token_refresh_endpoint}"
        return f"{DEFAULT_SERVICE_HOST}/api/auth/refresh-token"


class ServerSettings(BaseSettings):
    """MCP server configuration settings."""

    model_config = SettingsConfigDict(env_prefix="MCP_", extra="ignore")

    name: str = Field(
        default="mailmcp",
        description="Server name announced to MCP clients"
    )
    transport: str = Field(
        default="stdio",
        description="MCP transport: stdio, sse or streamable-http"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level for the server process"
    )


class Settings(BaseSettings):
    """Root settings class containing all configuration sections."""

    model_config = SettingsConfigDict(env_prefix="", env_nested_delimiter="__")

    mail: MailSettings = Field(default_factory=MailSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    auth_service: AuthServiceSettings = Field(default_factory=AuthServiceSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are cached for performance. The cache is populated on first call
    and reused for subsequent calls.

    Returns:
        Settings: The application settings instance.
    """
    return Settings()

"""MCP server exposing the email tools (login, query, detail, send).

Speaks JSON-RPC over stdin/stdout by default; set MCP_TRANSPORT to ``sse`` or
``streamable-http`` to serve over HTTP instead. Logs go to stderr because
stdout is the protocol channel.

Usage:
    python -m mailmcp.stdio_server
"""
import asyncio
import logging
import sys
from functools import lru_cache

from mcp.server.fastmcp import FastMCP

from mailmcp.core.settings import get_settings
from mailmcp.tools.email.service import (
    MailService,
    email_detail_impl,
    email_login_impl,
    email_query_impl,
    email_send_impl,
)
from mailmcp.tools.email.token_manager import TokenSweeper

logger = logging.getLogger(__name__)

mcp = FastMCP(get_settings().server.name)


@lru_cache
def get_service() -> MailService:
    """Process-wide service (store, token manager, settings)."""
    return MailService()


@mcp.tool(
    name="email_login",
    description=(
        "Manage email accounts. Actions: "
        "'status' lists saved accounts; "
        "'check' shows one account (or the default) and tests its connection; "
        "'login' saves a password/authorization-code account after verifying it over IMAP "
        "(QQ Mail needs the authorization code, not the web password); "
        "'gmail_oauth' returns the Gmail OAuth login link, or saves the tokens when "
        "email and access_token are given; "
        "'set_default' and 'remove' take an account address or display name."
    ),
)
async def tool_email_login(
    action: str,
    account: str | None = None,
    email: str | None = None,
    password: str | None = None,
    display_name: str | None = None,
    access_token: str | None = None,
    refresh_token: str | None = None,
    expires_in: int | None = None,
) -> dict:
    """Manage email accounts."""
    return await asyncio.to_thread(
        email_login_impl, get_service(), action,
        account=account, email=email, password=password, display_name=display_name,
        access_token=access_token, refresh_token=refresh_token, expires_in=expires_in,
    )


@mcp.tool(
    name="email_query",
    description=(
        "List the most recent emails in the INBOX of a saved account (default account if omitted). "
        "Returns subject, sender, date, read status and UID for each email, newest first. "
        "Use the UID with email_detail to read a message."
    ),
)
async def tool_email_query(account: str | None = None, count: int = 5) -> dict:
    """List recent emails."""
    return await asyncio.to_thread(email_query_impl, get_service(), account, count)


@mcp.tool(
    name="email_detail",
    description=(
        "Read one email by UID: headers and a cleaned plain-text body "
        "(HTML-only emails are converted to text). "
        "Set includeAttachments to also list attachment names, types and sizes."
    ),
)
async def tool_email_detail(
    uid: int,
    account: str | None = None,
    includeAttachments: bool = False,
) -> dict:
    """Read an email."""
    return await asyncio.to_thread(email_detail_impl, get_service(), uid, account, includeAttachments)


@mcp.tool(
    name="email_send",
    description=(
        "Send an email from a saved account (default account if omitted). "
        "Provide 'text', 'html' or both. Recipients are comma-separated. "
        "Attachments are objects with 'filename' and either 'path' or base64 'data'. "
        "IMPORTANT: Always confirm with the user before sending."
    ),
)
async def tool_email_send(
    to: str,
    subject: str,
    text: str | None = None,
    html: str | None = None,
    account: str | None = None,
    attachments: list[dict] | None = None,
) -> dict:
    """Send an email."""
    return await asyncio.to_thread(
        email_send_impl, get_service(), to, subject,
        text=text, html=html, account=account, attachments=attachments,
    )


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.server.log_level.upper(), stream=sys.stderr)

    service = get_service()
    service.token_manager.sweep_expired_tokens()
    sweeper = TokenSweeper(service.token_manager, settings.mail.sweep_interval_seconds)
    sweeper.start()

    logger.info("Starting %s MCP server (transport: %s)", settings.server.name, settings.server.transport)
    try:
        mcp.run(transport=settings.server.transport)
    finally:
        sweeper.stop()


if __name__ == "__main__":
    main()

"""Shared formatting utilities for email tool results."""

from typing import Any

from mailmcp.tools.email.credential_store import EmailAccount, get_provider_display_name
from mailmcp.tools.email.errors import EmailToolError, as_tool_error


def make_tool_result(text: str) -> dict[str, Any]:
    """Create a standard MCP tool result.

    Args:
        text: Result text content.

    Returns:
        MCP-compatible tool result dict.
    """
    return {"content": [{"type": "text", "text": text}]}


def make_tool_error(exc: BaseException | str) -> dict[str, Any]:
    """Create an MCP error result carrying the remediation hint for ``exc``."""
    if isinstance(exc, str):
        text = exc
    else:
        error: EmailToolError = as_tool_error(exc)
        text = f"Error ({error.kind.value}): {error}\n\nHint: {error.hint}"
    return {"content": [{"type": "text", "text": text}], "is_error": True}


def format_email_preview(summary: dict[str, Any]) -> str:
    """Format an email message summary for list results.

    Args:
        summary: Dict with uid, subject, from, date and optionally flags keys.

    Returns:
        Formatted markdown string.
    """
    flags = summary.get("flags") or []
    status = "Read" if "\\Seen" in flags else "Unread"
    return (
        f"\n**Subject:** {summary['subject'] or '(No subject)'}\n"
        f"**From:** {summary['from']}\n"
        f"**Date:** {summary['date']}\n"
        f"**UID:** {summary['uid']} ({status})\n"
    )


def format_email_detail(parsed: dict[str, Any]) -> str:
    """Format a full email message for reading.

    Args:
        parsed: Dict with uid, subject, from, to, date, body and attachments keys.

    Returns:
        Formatted markdown string.
    """
    formatted = (
        f"\n**Subject:** {parsed['subject'] or '(No subject)'}\n"
        f"**From:** {parsed['from']}\n"
        f"**To:** {parsed['to']}\n"
        f"**Date:** {parsed['date']}\n"
        f"**UID:** {parsed['uid']}\n"
        f"\n---\n{parsed['body'] or '(No text content)'}\n"
    )

    attachments = parsed.get("attachments", [])
    if attachments:
        formatted += f"\n\n**Attachments ({len(attachments)}):**\n"
        for att in attachments:
            formatted += f"- {att['filename']} ({att['size']} bytes, {att['content_type']})\n"

    return formatted


def format_account(account: EmailAccount, is_default: bool = False) -> str:
    """One-line description of a saved account."""
    line = f"- **{get_provider_display_name(account.provider)}** ({account.email}) [{account.auth_mode.value}]"
    if account.display_name:
        line += f" alias '{account.display_name}'"
    if is_default:
        line += " (default)"
    if not account.active:
        line += " (inactive, re-authentication required)"
    return line

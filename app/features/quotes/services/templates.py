"""
Template rendering for notification titles, messages and email bodies.

Placeholders use the `{{token}}` syntax. Every placeholder is replaced;
tokens without a value become empty strings so placeholder syntax never
reaches an end user.
"""

import html
import re
from collections.abc import Mapping
from typing import Any

from app.features.quotes.domain import RecipientInfo, TemplateFailure
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

FALLBACK_FULL_NAME = "Valued Customer"


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """Substitute every `{{token}}` in `template` from `values`."""

    def _replace(match: re.Match) -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return TOKEN_PATTERN.sub(_replace, template or "")


def build_recipient_tokens(info: RecipientInfo) -> dict[str, str]:
    """
    Token values describing the recipient.

    Raises:
        TemplateFailure: if `info` is not a usable recipient record.
    """
    if not isinstance(info, RecipientInfo):
        raise TemplateFailure(
            f"Recipient info must be RecipientInfo, got {type(info).__name__}",
            operation="build_recipient_tokens",
        )

    fields = {
        "first_name": info.first_name,
        "last_name": info.last_name,
        "company_name": info.company_name,
        "email": info.email,
    }
    for name, value in fields.items():
        if value is not None and not isinstance(value, str):
            raise TemplateFailure(
                f"Recipient field {name} must be text, got {type(value).__name__}",
                operation="build_recipient_tokens",
            )

    first_name = info.first_name or ""
    last_name = info.last_name or ""
    full_name = " ".join(part for part in (first_name, last_name) if part) or FALLBACK_FULL_NAME
    company_name = info.company_name or ""

    return {
        "firstName": first_name,
        "lastName": last_name,
        "fullName": full_name,
        "companyName": company_name,
        "userName": company_name or full_name,
        "userEmail": info.email or "",
    }


def render_for_recipient(
    template: str,
    info: RecipientInfo | None,
    event_tokens: Mapping[str, Any] | None = None,
) -> str:
    """
    Render a template for one recipient.

    Recipient tokens take precedence over event tokens. Malformed recipient
    info degrades to empty substitutions instead of aborting.
    """
    values: dict[str, Any] = dict(event_tokens or {})

    if info is not None:
        try:
            values.update(build_recipient_tokens(info))
        except TemplateFailure as e:
            logger.warning("Recipient tokens unavailable, rendering with blanks", error=str(e))

    return render_template(template, values)


def render_email_html(title: str, message: str, action_url: str | None, action_label: str) -> str:
    """Minimal HTML email wrapping an already rendered notification."""
    button = ""
    if action_url:
        button = (
            '<div style="text-align: center; margin: 30px 0;">'
            f'<a href="{html.escape(action_url, quote=True)}" '
            'style="background: #667eea; color: white; padding: 15px 30px; '
            'text-decoration: none; border-radius: 5px; display: inline-block;">'
            f"{html.escape(action_label)}</a></div>"
        )

    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<div style="background: #667eea; color: white; padding: 30px; text-align: center;">'
        f'<h1 style="margin: 0; font-size: 24px;">{html.escape(title)}</h1></div>'
        '<div style="padding: 30px; background: #f8f9fa;">'
        f"<p>{html.escape(message)}</p>{button}</div></div>"
    )

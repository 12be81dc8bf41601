"""
Transactional email delivery through the Resend HTTP API.
"""

import html
import logging
import re
from typing import Iterable

import httpx
from pydantic import BaseModel, Field

from src.core.settings import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class MailerError(Exception):
    """Raised when the email provider rejects or cannot receive a message."""


class EmailMessage(BaseModel):
    """Outgoing transactional email."""

    to: list[str] = Field(..., description="Recipient addresses")
    subject: str = Field(..., description="Subject line")
    html: str = Field(..., description="HTML body")
    text: str | None = Field(None, description="Plain text body")


def _strip_html(body: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"<[^>]+>", " ", body)).strip()


def _unique_recipients(recipients: Iterable[str | None]) -> list[str]:
    seen: list[str] = []
    for recipient in recipients:
        if recipient and recipient not in seen:
            seen.append(recipient)
    return seen


def render_notification_html(title: str, message: str | None, link: str | None) -> str:
    parts = [f"<h2>{html.escape(title)}</h2>"]
    if message:
        parts.append(f"<p>{html.escape(message)}</p>")
    if link:
        href = html.escape(link, quote=True)
        parts.append(f'<p><a href="{href}">Open in Arc</a></p>')
    return "".join(parts)


async def send_email(message: EmailMessage) -> bool:
    """
    Send a transactional email.

    Returns:
        True if the message was handed to the provider, False if sending was
        skipped (no API key configured or no recipients)

    Raises:
        MailerError: If the provider call fails
    """
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY not set; skipping email send")
        return False

    recipients = _unique_recipients(message.to)
    if not recipients:
        logger.warning("No email recipients provided; skipping email send")
        return False

    body = {
        "from": settings.RESEND_FROM_EMAIL,
        "to": recipients,
        "subject": message.subject,
        "html": message.html,
        "text": message.text or _strip_html(message.html),
    }

    async with httpx.AsyncClient(timeout=30) as client:
        try:
            response = await client.post(
                RESEND_API_URL,
                json=body,
                headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MailerError(
                f"Resend API error {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.RequestError as e:
            raise MailerError(f"Resend request failed: {e}") from e

    return True

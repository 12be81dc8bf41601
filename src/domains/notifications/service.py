# src/domains/notifications/service.py
import json
import logging
from typing import Any, Dict, Optional

from prisma import Prisma
from src.core.settings import settings
from src.domains.outbox.exceptions import StaleReferenceError, TransientJobError
from src.shared.mailer import (
    EmailMessage,
    MailerError,
    render_notification_html,
    send_email,
)

logger = logging.getLogger(__name__)

_ENTITY_PATHS = {
    "rfi": "rfis",
    "submittal": "submittals",
    "invoice": "invoices",
    "change_order": "change-orders",
    "drawing_set": "drawings",
    "drawing_sheet": "drawings",
    "drawing_revision": "drawings",
    "task": "tasks",
    "daily_log": "daily-logs",
}


class UserEmailNotFoundError(Exception):
    """The notification's recipient has no deliverable email address."""


def build_notification_href(payload: Dict[str, Any]) -> Optional[str]:
    """Deep link into the app for a notification, scoped to its project."""
    project_id = payload.get("project_id")
    if not isinstance(project_id, str):
        return None

    entity_type = payload.get("entity_type")
    entity_id = payload.get("entity_id")
    base = f"/projects/{project_id}"
    if entity_type == "file":
        return f"{base}/files?fileId={entity_id}" if entity_id else f"{base}/files"
    if entity_type in _ENTITY_PATHS:
        return f"{base}/{_ENTITY_PATHS[entity_type]}"
    return base


class NotificationDeliveryService:
    """Delivers queued in-app notifications by email."""

    def __init__(self, db: Prisma):
        self.db = db

    async def deliver(self, notification_id: str) -> Optional[str]:
        """
        Email a notification to its recipient.

        Returns:
            A completion note when delivery was intentionally skipped

        Raises:
            StaleReferenceError: If the notification no longer exists
            UserEmailNotFoundError: If the recipient has no email address
            TransientJobError: If the email provider call fails
        """
        notification = await self.db.notification.find_unique(
            where={"id": notification_id}
        )
        if not notification:
            raise StaleReferenceError(f"Notification not found ({notification_id})")

        prefs = await self.db.usernotificationpref.find_first(
            where={"orgId": notification.orgId, "userId": notification.userId}
        )
        if prefs and prefs.emailEnabled is False:
            return "skipped: email notifications disabled"

        user = await self.db.appuser.find_unique(where={"id": notification.userId})
        if not user or not user.email:
            raise UserEmailNotFoundError("User email not found")

        payload = notification.payload or {}
        if isinstance(payload, str):
            payload = json.loads(payload)

        title = payload.get("title")
        if not isinstance(title, str):
            title = f"Arc: {notification.notificationType}"
        message = payload.get("message") if isinstance(payload.get("message"), str) else ""

        href = build_notification_href(payload)
        link = f"{settings.APP_BASE_URL.rstrip('/')}{href}" if href else None

        try:
            sent = await send_email(
                EmailMessage(
                    to=[user.email],
                    subject=title,
                    html=render_notification_html(title, message, link),
                )
            )
        except MailerError as e:
            raise TransientJobError(str(e)) from e

        if not sent:
            return "skipped: email delivery not configured"
        logger.info(f"Delivered notification {notification_id} to user {notification.userId}")
        return None

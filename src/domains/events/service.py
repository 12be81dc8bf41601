# src/domains/events/service.py
import logging
from enum import Enum
from typing import Any, Optional

from prisma import Json, Prisma

logger = logging.getLogger(__name__)


class EventChannel(str, Enum):
    ACTIVITY = "activity"
    INTEGRATION = "integration"
    NOTIFICATION = "notification"


class EventService:
    """Append-only domain event log."""

    def __init__(self, db: Prisma):
        self.db = db

    async def record_event(
        self,
        org_id: str,
        event_type: str,
        payload: Optional[dict[str, Any]] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        channel: EventChannel = EventChannel.ACTIVITY,
    ) -> None:
        await self.db.event.create(
            data={
                "orgId": org_id,
                "eventType": event_type,
                "entityType": entity_type,
                "entityId": entity_id,
                "payload": Json(payload or {}),
                "channel": channel.value,
            }
        )

    async def try_record_event(self, org_id: str, event_type: str, **kwargs: Any) -> bool:
        """Record an event, logging instead of raising on failure."""
        try:
            await self.record_event(org_id, event_type, **kwargs)
            return True
        except Exception as e:
            logger.warning(
                f"Failed to record {event_type} event for org {org_id}: {e}",
                exc_info=True,
            )
            return False

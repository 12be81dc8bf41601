# src/domains/external_accounting/qbo/webhooks.py
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel

from prisma import Prisma

logger = logging.getLogger(__name__)

WEBHOOK_BATCH_SIZE = 50


class WebhookRunResult(BaseModel):
    processed: int = 0
    reconciled: int = 0


class QBOWebhookProcessor:
    """
    Reconciles stored QBO change notifications against local sync records.

    Intuit reports entity changes by realm and QBO id. When a change refers to
    an invoice or payment this service pushed, the local sync state is marked
    current again; anything else is acknowledged as ignored.
    """

    def __init__(self, db: Prisma):
        self.db = db

    async def process_pending(self, limit: int = WEBHOOK_BATCH_SIZE) -> WebhookRunResult:
        events = await self.db.qbowebhookevent.find_many(
            where={"processStatus": "pending"},
            order={"receivedAt": "asc"},
            take=limit,
        )

        result = WebhookRunResult()
        for event in events:
            try:
                reconciled = await self._process(event)
            except Exception as e:
                logger.error(f"QBO webhook event {event.eventId} failed: {e}", exc_info=True)
                await self._mark(event.id, "error", str(e) or "Webhook processing failed")
            else:
                if reconciled:
                    result.reconciled += 1
            result.processed += 1

        if result.processed:
            logger.info(
                f"Processed {result.processed} QBO webhook events "
                f"({result.reconciled} reconciled)"
            )
        return result

    async def _process(self, event: Any) -> bool:
        if not event.realmId or not event.entityName or not event.entityQboId:
            await self._mark(event.id, "ignored", "Missing webhook context")
            return False

        connection = await self.db.qboconnection.find_first(
            where={"realmId": event.realmId, "status": "active"}
        )
        if not connection:
            await self._mark(event.id, "ignored", "No active org connection for realm")
            return False

        entity_type = event.entityName.lower()
        if entity_type not in ("invoice", "payment"):
            await self._mark(event.id, "ignored", f"Entity {event.entityName} not handled")
            return False

        record = await self.db.qbosyncrecord.find_first(
            where={
                "orgId": connection.orgId,
                "entityType": entity_type,
                "qboId": event.entityQboId,
            }
        )
        if not record:
            await self._mark(event.id, "ignored", f"No local {entity_type} sync record")
            return False

        now = datetime.now(timezone.utc)
        if entity_type == "invoice":
            await self.db.invoice.update_many(
                where={"orgId": connection.orgId, "id": record.entityId},
                data={
                    "qboId": event.entityQboId,
                    "qboSyncStatus": "synced",
                    "qboSyncedAt": now,
                },
            )
        await self.db.qbosyncrecord.update(
            where={"id": record.id},
            data={"status": "synced", "errorMessage": None, "lastSyncedAt": now},
        )
        await self._mark(event.id, "reconciled")
        return True

    async def _mark(self, event_id: str, status: str, error: Optional[str] = None) -> None:
        await self.db.qbowebhookevent.update(
            where={"id": event_id},
            data={
                "processStatus": status,
                "processError": error,
                "processedAt": datetime.now(timezone.utc),
            },
        )

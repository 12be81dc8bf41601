# src/domains/external_portal/pins.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from prisma import Prisma
from src.core.settings import settings

from .exceptions import PinNotConfiguredError
from .models import PinValidationResult, TokenType
from .security import hash_bid_token, hash_secret, verify_secret

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PortalPinService:
    """
    Optional PIN guarding a portal or bid access link.

    Failed attempts are counted per link. Reaching the limit locks the link
    for a fixed period, during which PINs are not checked at all.
    """

    def __init__(self, db: Prisma):
        self.db = db

    def _table(self, token_type: TokenType) -> Any:
        if token_type == TokenType.PORTAL:
            return self.db.portalaccesstoken
        return self.db.bidaccesstoken

    async def set_pin(self, org_id: str, token_type: TokenType, token_id: str, pin: str) -> None:
        """
        Require a PIN on a link, resetting any previous attempts or lock.

        Raises:
            PinNotConfiguredError: If the link is not in the organization
        """
        updated = await self._table(token_type).update_many(
            where={"id": token_id, "orgId": org_id},
            data={
                "pinHash": await hash_secret(pin),
                "pinRequired": True,
                "pinAttempts": 0,
                "pinLockedUntil": None,
            },
        )
        if not updated:
            raise PinNotConfiguredError("Access link not found")

    async def remove_pin(self, org_id: str, token_type: TokenType, token_id: str) -> None:
        updated = await self._table(token_type).update_many(
            where={"id": token_id, "orgId": org_id},
            data={
                "pinHash": None,
                "pinRequired": False,
                "pinAttempts": 0,
                "pinLockedUntil": None,
            },
        )
        if not updated:
            raise PinNotConfiguredError("Access link not found")

    async def validate_pin(
        self, token_type: TokenType, token: str, pin: str
    ) -> PinValidationResult:
        """
        Check a PIN against a raw access link token.

        Returns:
            ``valid=False`` with no details when the link is unknown, revoked or
            has no PIN; ``locked_until`` while locked; otherwise the outcome
            with the attempts left before lockout
        """
        table = self._table(token_type)
        if token_type == TokenType.PORTAL:
            row = await table.find_unique(where={"token": token})
        else:
            row = await table.find_unique(where={"tokenHash": hash_bid_token(token)})

        if not row or row.revokedAt or not row.pinHash:
            return PinValidationResult(valid=False)

        now = _utcnow()
        if row.pinLockedUntil and row.pinLockedUntil > now:
            return PinValidationResult(valid=False, locked_until=row.pinLockedUntil)

        if await verify_secret(pin, row.pinHash):
            await table.update(
                where={"id": row.id}, data={"pinAttempts": 0, "pinLockedUntil": None}
            )
            return PinValidationResult(valid=True)

        # Only a correct PIN clears the count; an expired lock keeps it
        unlocked = {"OR": [{"pinLockedUntil": None}, {"pinLockedUntil": {"lte": now}}]}
        counted = await table.update_many(
            where={"id": row.id, **unlocked},
            data={"pinAttempts": {"increment": 1}},
        )
        if not counted:
            # A concurrent guess locked the link first
            return PinValidationResult(valid=False, attempts_remaining=0)

        locked_until = now + timedelta(minutes=settings.PIN_LOCKOUT_MINUTES)
        locked = await table.update_many(
            where={
                "id": row.id,
                "pinAttempts": {"gte": settings.PIN_MAX_ATTEMPTS},
                **unlocked,
            },
            data={"pinLockedUntil": locked_until},
        )
        if locked:
            logger.warning(f"PIN locked for {token_type.value} link {row.id}")
            return PinValidationResult(
                valid=False, attempts_remaining=0, locked_until=locked_until
            )

        attempts = (row.pinAttempts or 0) + 1
        return PinValidationResult(
            valid=False,
            attempts_remaining=max(0, settings.PIN_MAX_ATTEMPTS - attempts),
        )

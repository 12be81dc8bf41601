# src/domains/external_portal/service.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from prisma import Prisma
from prisma.errors import UniqueViolationError
from src.core.settings import settings

from .exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    IncorrectClaimPasswordError,
    InvalidAccessLinkError,
    InvalidCredentialsError,
)
from .models import (
    AccountStatus,
    AuthMode,
    ExternalPortalAccountResponse,
    ExternalPortalSession,
    IssuedSession,
    TokenContext,
    TokenType,
)
from .security import (
    generate_session_token,
    hash_bid_token,
    hash_secret,
    sha256_hex,
    verify_secret,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _status_patch(status: AccountStatus, now: datetime) -> Dict[str, Any]:
    return {
        "status": status.value,
        "pausedAt": now if status == AccountStatus.PAUSED else None,
        "revokedAt": now if status == AccountStatus.REVOKED else None,
    }


def _grant_scope(context: TokenContext) -> Dict[str, str]:
    if context.token_type == TokenType.PORTAL:
        return {"portalAccessTokenId": context.token_id}
    return {"bidAccessTokenId": context.token_id}


class ExternalPortalAuthService:
    """
    Accounts and sessions for clients and bidders reached through access links.

    An access link alone grants its own scope. An account adds a password on
    top, and each link the account has used becomes a grant that can be paused
    or revoked independently of the account.
    """

    def __init__(self, db: Prisma):
        self.db = db

    async def resolve_token(
        self, token_type: TokenType, token: str
    ) -> Optional[TokenContext]:
        """Resolve a raw access link token, ignoring revoked links."""
        if token_type == TokenType.PORTAL:
            row = await self.db.portalaccesstoken.find_unique(where={"token": token})
        else:
            row = await self.db.bidaccesstoken.find_unique(
                where={"tokenHash": hash_bid_token(token)}
            )
        if not row or row.revokedAt:
            return None
        return TokenContext(token_id=row.id, org_id=row.orgId, token_type=token_type)

    async def find_session(self, raw_token: Optional[str]) -> Optional[ExternalPortalSession]:
        """
        Validate a session cookie value.

        A session is valid only while it is unrevoked, unexpired and its
        account is active. ``last_seen_at`` is bumped on success.
        """
        if not raw_token:
            return None

        row = await self.db.externalportalsession.find_unique(
            where={"sessionTokenHash": sha256_hex(raw_token)},
            include={"account": True},
        )
        now = _utcnow()
        if not row or row.revokedAt or row.expiresAt <= now:
            return None
        if not row.account or row.account.status != AccountStatus.ACTIVE.value:
            return None

        await self.db.externalportalsession.update(
            where={"id": row.id}, data={"lastSeenAt": now}
        )
        return ExternalPortalSession(
            id=row.id,
            org_id=row.orgId,
            account=ExternalPortalAccountResponse.from_prisma(row.account),
        )

    async def has_grant_for_token(
        self,
        session: Optional[ExternalPortalSession],
        org_id: str,
        token_id: str,
        token_type: TokenType,
    ) -> bool:
        if not session or session.org_id != org_id:
            return False

        context = TokenContext(token_id=token_id, org_id=org_id, token_type=token_type)
        grant = await self.db.externalportalaccountgrant.find_first(
            where={
                "orgId": org_id,
                "accountId": session.account.id,
                "status": AccountStatus.ACTIVE.value,
                "pausedAt": None,
                "revokedAt": None,
                **_grant_scope(context),
            }
        )
        return grant is not None

    async def _find_account(self, org_id: str, email: str) -> Any:
        return await self.db.externalportalaccount.find_first(
            where={"orgId": org_id, "email": {"equals": email, "mode": "insensitive"}}
        )

    async def _claim_account(
        self,
        context: TokenContext,
        email: str,
        password: str,
        full_name: Optional[str],
    ) -> Any:
        existing = await self._find_account(context.org_id, email)
        if not existing:
            try:
                return await self.db.externalportalaccount.create(
                    data={
                        "orgId": context.org_id,
                        "email": email,
                        "fullName": full_name,
                        "passwordHash": await hash_secret(password),
                        "status": AccountStatus.ACTIVE.value,
                    }
                )
            except UniqueViolationError:
                # Concurrent claim for the same email; verify against the winner
                existing = await self._find_account(context.org_id, email)
                if not existing:
                    raise

        if not await verify_secret(password, existing.passwordHash):
            raise IncorrectClaimPasswordError()
        if not existing.fullName and full_name:
            existing = await self.db.externalportalaccount.update(
                where={"id": existing.id}, data={"fullName": full_name}
            )
        return existing

    async def _login_account(
        self, context: TokenContext, email: str, password: str
    ) -> Any:
        existing = await self._find_account(context.org_id, email)
        if not existing or not await verify_secret(password, existing.passwordHash):
            raise InvalidCredentialsError()
        return existing

    async def _activate_grant(self, account_id: str, context: TokenContext) -> None:
        scope = _grant_scope(context)
        grant = await self.db.externalportalaccountgrant.find_first(
            where={"orgId": context.org_id, "accountId": account_id, **scope}
        )
        if grant is None:
            await self.db.externalportalaccountgrant.create(
                data={
                    "orgId": context.org_id,
                    "accountId": account_id,
                    "status": AccountStatus.ACTIVE.value,
                    **scope,
                }
            )
        elif grant.status != AccountStatus.ACTIVE.value:
            await self.db.externalportalaccountgrant.update(
                where={"id": grant.id},
                data=_status_patch(AccountStatus.ACTIVE, _utcnow()),
            )

    async def authenticate_with_token(
        self,
        token: str,
        token_type: TokenType,
        mode: AuthMode,
        email: str,
        password: str,
        full_name: Optional[str] = None,
    ) -> IssuedSession:
        """
        Sign in (or claim an account) through an access link and open a session.

        Args:
            token: Raw access link token
            token_type: portal or bid link
            mode: ``claim`` creates the account if the email is new,
                ``login`` requires an existing account
            email: Account email, matched case-insensitively
            password: Account password
            full_name: Stored on claim when the account has no name yet

        Raises:
            InvalidAccessLinkError: Unknown or revoked link
            InvalidCredentialsError: Login with unknown email or wrong password
            IncorrectClaimPasswordError: Claim of an existing email with the
                wrong password
            AccountInactiveError: Account is paused or revoked
        """
        context = await self.resolve_token(token_type, token)
        if not context:
            raise InvalidAccessLinkError()

        normalized = normalize_email(email)
        name = (full_name or "").strip() or None

        if mode == AuthMode.CLAIM:
            account = await self._claim_account(context, normalized, password, name)
        else:
            account = await self._login_account(context, normalized, password)

        if account.status != AccountStatus.ACTIVE.value:
            raise AccountInactiveError()

        await self._activate_grant(account.id, context)

        now = _utcnow()
        account = await self.db.externalportalaccount.update(
            where={"id": account.id}, data={"lastLoginAt": now}
        )

        raw_token = generate_session_token()
        expires_at = now + timedelta(days=settings.EXTERNAL_PORTAL_SESSION_TTL_DAYS)
        await self.db.externalportalsession.create(
            data={
                "orgId": context.org_id,
                "accountId": account.id,
                "sessionTokenHash": sha256_hex(raw_token),
                "expiresAt": expires_at,
                "lastSeenAt": now,
            }
        )

        logger.info(
            f"External portal {mode.value} for account {account.id} "
            f"via {token_type.value} link {context.token_id}"
        )
        return IssuedSession(
            raw_token=raw_token,
            expires_at=expires_at,
            account=ExternalPortalAccountResponse.from_prisma(account),
        )

    async def sign_out(self, raw_token: Optional[str]) -> None:
        if not raw_token:
            return
        await self.db.externalportalsession.update_many(
            where={"sessionTokenHash": sha256_hex(raw_token), "revokedAt": None},
            data={"revokedAt": _utcnow()},
        )

    async def set_account_status(
        self, org_id: str, account_id: str, status: AccountStatus
    ) -> ExternalPortalAccountResponse:
        """
        Change an account's status. Pausing or revoking also revokes every open
        session of the account.

        Raises:
            AccountNotFoundError: If the account is not in the organization
        """
        now = _utcnow()
        updated = await self.db.externalportalaccount.update_many(
            where={"id": account_id, "orgId": org_id},
            data=_status_patch(status, now),
        )
        if not updated:
            raise AccountNotFoundError()

        if status != AccountStatus.ACTIVE:
            revoked = await self.db.externalportalsession.update_many(
                where={"orgId": org_id, "accountId": account_id, "revokedAt": None},
                data={"revokedAt": now},
            )
            logger.info(
                f"External portal account {account_id} set to {status.value}, "
                f"revoked {revoked} sessions"
            )

        account = await self.db.externalportalaccount.find_unique(where={"id": account_id})
        if not account:
            raise AccountNotFoundError()
        return ExternalPortalAccountResponse.from_prisma(account)

    async def _set_bid_invite_grant_status(
        self, org_id: str, invite_id: str, status: AccountStatus
    ) -> int:
        tokens = await self.db.bidaccesstoken.find_many(
            where={"orgId": org_id, "bidInviteId": invite_id}
        )
        token_ids = [token.id for token in tokens]
        if not token_ids:
            return 0
        return await self.db.externalportalaccountgrant.update_many(
            where={"orgId": org_id, "bidAccessTokenId": {"in": token_ids}},
            data=_status_patch(status, _utcnow()),
        )

    async def pause_bid_invite_grants(self, org_id: str, invite_id: str) -> int:
        return await self._set_bid_invite_grant_status(
            org_id, invite_id, AccountStatus.PAUSED
        )

    async def resume_bid_invite_grants(self, org_id: str, invite_id: str) -> int:
        return await self._set_bid_invite_grant_status(
            org_id, invite_id, AccountStatus.ACTIVE
        )

    async def revoke_bid_invite_grants(self, org_id: str, invite_id: str) -> int:
        return await self._set_bid_invite_grant_status(
            org_id, invite_id, AccountStatus.REVOKED
        )

    async def list_project_accounts(
        self, org_id: str, project_id: str
    ) -> List[ExternalPortalAccountResponse]:
        """Accounts holding grants on a project's portal links, sorted by email."""
        grants = await self.db.externalportalaccountgrant.find_many(
            where={
                "orgId": org_id,
                "portalAccessToken": {"is": {"projectId": project_id}},
            },
            include={"account": True},
        )

        by_account: Dict[str, ExternalPortalAccountResponse] = {}
        for grant in grants:
            if not grant.account:
                continue
            current = by_account.get(grant.account.id)
            if current is None:
                current = ExternalPortalAccountResponse.from_prisma(grant.account)
                current.grant_count = 0
                by_account[grant.account.id] = current
            current.grant_count = (current.grant_count or 0) + 1

        return sorted(by_account.values(), key=lambda account: account.email)

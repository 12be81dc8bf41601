# tests/unit/domains/external_portal/test_service.py
"""
Tests for ExternalPortalAuthService accounts, sessions and grants.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from src.domains.external_portal.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    IncorrectClaimPasswordError,
    InvalidAccessLinkError,
    InvalidCredentialsError,
)
from src.domains.external_portal.models import (
    AccountStatus,
    AuthMode,
    ExternalPortalAccountResponse,
    ExternalPortalSession,
    TokenType,
)
from src.domains.external_portal.security import hash_bid_token, sha256_hex
from src.domains.external_portal.service import ExternalPortalAuthService, normalize_email
from tests.fixtures.portal_fixtures import TEST_PASSWORD, make_portal_account


@pytest.fixture
def service(mock_prisma: Mock) -> ExternalPortalAuthService:
    return ExternalPortalAuthService(mock_prisma)


@pytest.fixture
def portal_link(mock_prisma: Mock, mock_portal_token_row: Mock) -> Mock:
    mock_prisma.portalaccesstoken.find_unique = AsyncMock(return_value=mock_portal_token_row)
    return mock_portal_token_row


def make_session(account_id: str = "test-account-id", org_id: str = "") -> ExternalPortalSession:
    return ExternalPortalSession(
        id="test-session-id",
        org_id=org_id or "42f929b1-8fdb-45b1-a7cf-34fae2314561",
        account=ExternalPortalAccountResponse.from_prisma(make_portal_account(id=account_id)),
    )


class TestResolveToken:
    @pytest.mark.asyncio
    async def test_portal_token_is_looked_up_raw(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, portal_link: Mock
    ) -> None:
        context = await service.resolve_token(TokenType.PORTAL, "raw-portal-token")

        assert context.token_id == "test-token-id"
        assert context.org_id == portal_link.orgId
        mock_prisma.portalaccesstoken.find_unique.assert_called_once_with(
            where={"token": "raw-portal-token"}
        )

    @pytest.mark.asyncio
    async def test_bid_token_is_looked_up_by_hmac(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, mock_portal_token_row: Mock
    ) -> None:
        mock_prisma.bidaccesstoken.find_unique = AsyncMock(return_value=mock_portal_token_row)

        context = await service.resolve_token(TokenType.BID, "raw-bid-token")

        assert context.token_type == TokenType.BID
        mock_prisma.bidaccesstoken.find_unique.assert_called_once_with(
            where={"tokenHash": hash_bid_token("raw-bid-token")}
        )

    @pytest.mark.asyncio
    async def test_revoked_link_does_not_resolve(
        self, service: ExternalPortalAuthService, portal_link: Mock
    ) -> None:
        portal_link.revokedAt = datetime.now(timezone.utc)

        assert await service.resolve_token(TokenType.PORTAL, "raw") is None


class TestAuthenticateWithToken:
    """Test suite for claiming and signing in through an access link."""

    @pytest.mark.asyncio
    async def test_claim_creates_account_grant_and_session(
        self,
        service: ExternalPortalAuthService,
        mock_prisma: Mock,
        portal_link: Mock,
        mock_portal_account: Mock,
    ) -> None:
        mock_prisma.externalportalaccount.find_first = AsyncMock(return_value=None)
        mock_prisma.externalportalaccount.create = AsyncMock(return_value=mock_portal_account)
        mock_prisma.externalportalaccount.update = AsyncMock(return_value=mock_portal_account)
        mock_prisma.externalportalaccountgrant.find_first = AsyncMock(return_value=None)

        issued = await service.authenticate_with_token(
            token="raw-portal-token",
            token_type=TokenType.PORTAL,
            mode=AuthMode.CLAIM,
            email="  Client@Example.com ",
            password=TEST_PASSWORD,
            full_name=" Jamie Client ",
        )

        created = mock_prisma.externalportalaccount.create.call_args.kwargs["data"]
        assert created["email"] == "client@example.com"
        assert created["fullName"] == "Jamie Client"
        assert created["passwordHash"].startswith("$2")
        assert created["passwordHash"] != TEST_PASSWORD

        grant = mock_prisma.externalportalaccountgrant.create.call_args.kwargs["data"]
        assert grant["portalAccessTokenId"] == "test-token-id"
        assert grant["status"] == "active"

        session = mock_prisma.externalportalsession.create.call_args.kwargs["data"]
        assert session["sessionTokenHash"] == sha256_hex(issued.raw_token)
        assert session["accountId"] == "test-account-id"
        ttl = issued.expires_at - datetime.now(timezone.utc)
        assert timedelta(days=29) < ttl <= timedelta(days=30)
        assert issued.account.email == "client@example.com"

    @pytest.mark.asyncio
    async def test_claim_existing_account_with_wrong_password(
        self,
        service: ExternalPortalAuthService,
        mock_prisma: Mock,
        portal_link: Mock,
        mock_portal_account: Mock,
    ) -> None:
        mock_prisma.externalportalaccount.find_first = AsyncMock(return_value=mock_portal_account)

        with pytest.raises(IncorrectClaimPasswordError):
            await service.authenticate_with_token(
                "raw", TokenType.PORTAL, AuthMode.CLAIM, "client@example.com", "wrong-password"
            )

        mock_prisma.externalportalsession.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_claim_existing_account_fills_missing_name(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, portal_link: Mock
    ) -> None:
        unnamed = make_portal_account(fullName=None)
        mock_prisma.externalportalaccount.find_first = AsyncMock(return_value=unnamed)
        mock_prisma.externalportalaccount.update = AsyncMock(return_value=make_portal_account())
        mock_prisma.externalportalaccountgrant.find_first = AsyncMock(return_value=Mock(status="active"))

        await service.authenticate_with_token(
            "raw", TokenType.PORTAL, AuthMode.CLAIM, "client@example.com", TEST_PASSWORD, "Jamie"
        )

        first_update = mock_prisma.externalportalaccount.update.call_args_list[0].kwargs
        assert first_update["data"] == {"fullName": "Jamie"}
        mock_prisma.externalportalaccountgrant.create.assert_not_called()
        mock_prisma.externalportalaccountgrant.update.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("account_exists", [False, True])
    async def test_login_failures_are_indistinguishable(
        self,
        service: ExternalPortalAuthService,
        mock_prisma: Mock,
        portal_link: Mock,
        mock_portal_account: Mock,
        account_exists: bool,
    ) -> None:
        mock_prisma.externalportalaccount.find_first = AsyncMock(
            return_value=mock_portal_account if account_exists else None
        )

        with pytest.raises(InvalidCredentialsError) as exc_info:
            await service.authenticate_with_token(
                "raw", TokenType.PORTAL, AuthMode.LOGIN, "client@example.com", "wrong-password"
            )

        assert exc_info.value.detail == "Invalid email or password"
        mock_prisma.externalportalaccount.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_paused_account_cannot_sign_in(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, portal_link: Mock
    ) -> None:
        mock_prisma.externalportalaccount.find_first = AsyncMock(
            return_value=make_portal_account(status="paused")
        )

        with pytest.raises(AccountInactiveError):
            await service.authenticate_with_token(
                "raw", TokenType.PORTAL, AuthMode.LOGIN, "client@example.com", TEST_PASSWORD
            )

        mock_prisma.externalportalaccountgrant.create.assert_not_called()
        mock_prisma.externalportalsession.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_link_is_rejected(
        self, service: ExternalPortalAuthService, mock_prisma: Mock
    ) -> None:
        mock_prisma.portalaccesstoken.find_unique = AsyncMock(return_value=None)

        with pytest.raises(InvalidAccessLinkError):
            await service.authenticate_with_token(
                "raw", TokenType.PORTAL, AuthMode.LOGIN, "client@example.com", TEST_PASSWORD
            )

    @pytest.mark.asyncio
    async def test_login_reactivates_paused_grant(
        self,
        service: ExternalPortalAuthService,
        mock_prisma: Mock,
        mock_portal_token_row: Mock,
        mock_portal_account: Mock,
    ) -> None:
        mock_prisma.bidaccesstoken.find_unique = AsyncMock(return_value=mock_portal_token_row)
        mock_prisma.externalportalaccount.find_first = AsyncMock(return_value=mock_portal_account)
        mock_prisma.externalportalaccount.update = AsyncMock(return_value=mock_portal_account)
        mock_prisma.externalportalaccountgrant.find_first = AsyncMock(
            return_value=Mock(id="grant-1", status="paused")
        )

        await service.authenticate_with_token(
            "raw", TokenType.BID, AuthMode.LOGIN, "client@example.com", TEST_PASSWORD
        )

        where = mock_prisma.externalportalaccountgrant.find_first.call_args.kwargs["where"]
        assert where["bidAccessTokenId"] == "test-token-id"
        update = mock_prisma.externalportalaccountgrant.update.call_args.kwargs
        assert update["where"] == {"id": "grant-1"}
        assert update["data"] == {"status": "active", "pausedAt": None, "revokedAt": None}


class TestSessions:
    @pytest.mark.asyncio
    async def test_valid_session_is_returned_and_touched(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, mock_portal_session_row: Mock
    ) -> None:
        mock_prisma.externalportalsession.find_unique = AsyncMock(
            return_value=mock_portal_session_row
        )

        session = await service.find_session("raw-session")

        assert session.id == "test-session-id"
        assert session.account.id == "test-account-id"
        assert (
            mock_prisma.externalportalsession.find_unique.call_args.kwargs["where"]
            == {"sessionTokenHash": sha256_hex("raw-session")}
        )
        assert "lastSeenAt" in mock_prisma.externalportalsession.update.call_args.kwargs["data"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value",
        [
            ("expiresAt", datetime.now(timezone.utc) - timedelta(seconds=1)),
            ("revokedAt", datetime.now(timezone.utc)),
        ],
    )
    async def test_expired_or_revoked_session_is_invalid(
        self,
        service: ExternalPortalAuthService,
        mock_prisma: Mock,
        mock_portal_session_row: Mock,
        field: str,
        value: datetime,
    ) -> None:
        setattr(mock_portal_session_row, field, value)
        mock_prisma.externalportalsession.find_unique = AsyncMock(
            return_value=mock_portal_session_row
        )

        assert await service.find_session("raw-session") is None
        mock_prisma.externalportalsession.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_session_of_revoked_account_is_invalid(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, mock_portal_session_row: Mock
    ) -> None:
        mock_portal_session_row.account.status = "revoked"
        mock_prisma.externalportalsession.find_unique = AsyncMock(
            return_value=mock_portal_session_row
        )

        assert await service.find_session("raw-session") is None

    @pytest.mark.asyncio
    async def test_missing_cookie_skips_lookup(
        self, service: ExternalPortalAuthService, mock_prisma: Mock
    ) -> None:
        assert await service.find_session(None) is None
        mock_prisma.externalportalsession.find_unique.assert_not_called()

    @pytest.mark.asyncio
    async def test_sign_out_revokes_by_hash(
        self, service: ExternalPortalAuthService, mock_prisma: Mock
    ) -> None:
        await service.sign_out("raw-session")

        where = mock_prisma.externalportalsession.update_many.call_args.kwargs["where"]
        assert where == {"sessionTokenHash": sha256_hex("raw-session"), "revokedAt": None}


class TestGrants:
    @pytest.mark.asyncio
    async def test_grant_in_other_org_is_denied(
        self, service: ExternalPortalAuthService, mock_prisma: Mock
    ) -> None:
        session = make_session(org_id="another-org")

        granted = await service.has_grant_for_token(
            session, "42f929b1-8fdb-45b1-a7cf-34fae2314561", "test-token-id", TokenType.PORTAL
        )

        assert granted is False
        mock_prisma.externalportalaccountgrant.find_first.assert_not_called()

    @pytest.mark.asyncio
    async def test_active_grant_is_found(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, test_org_id: str
    ) -> None:
        mock_prisma.externalportalaccountgrant.find_first = AsyncMock(return_value=Mock())

        granted = await service.has_grant_for_token(
            make_session(), test_org_id, "test-token-id", TokenType.PORTAL
        )

        assert granted is True
        where = mock_prisma.externalportalaccountgrant.find_first.call_args.kwargs["where"]
        assert where["portalAccessTokenId"] == "test-token-id"
        assert where["status"] == "active"
        assert where["revokedAt"] is None

    @pytest.mark.asyncio
    async def test_bid_invite_without_links_updates_nothing(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, test_org_id: str
    ) -> None:
        mock_prisma.bidaccesstoken.find_many = AsyncMock(return_value=[])

        assert await service.pause_bid_invite_grants(test_org_id, "invite-1") == 0
        mock_prisma.externalportalaccountgrant.update_many.assert_not_called()

    @pytest.mark.asyncio
    async def test_revoke_bid_invite_grants(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, test_org_id: str
    ) -> None:
        mock_prisma.bidaccesstoken.find_many = AsyncMock(
            return_value=[Mock(id="bid-token-1"), Mock(id="bid-token-2")]
        )
        mock_prisma.externalportalaccountgrant.update_many = AsyncMock(return_value=3)

        assert await service.revoke_bid_invite_grants(test_org_id, "invite-1") == 3
        call = mock_prisma.externalportalaccountgrant.update_many.call_args.kwargs
        assert call["where"]["bidAccessTokenId"] == {"in": ["bid-token-1", "bid-token-2"]}
        assert call["data"]["status"] == "revoked"
        assert call["data"]["revokedAt"] is not None
        assert call["data"]["pausedAt"] is None


class TestAccountManagement:
    @pytest.mark.asyncio
    async def test_pausing_revokes_sessions(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, test_org_id: str
    ) -> None:
        mock_prisma.externalportalaccount.update_many = AsyncMock(return_value=1)
        mock_prisma.externalportalsession.update_many = AsyncMock(return_value=2)
        mock_prisma.externalportalaccount.find_unique = AsyncMock(
            return_value=make_portal_account(status="paused")
        )

        account = await service.set_account_status(
            test_org_id, "test-account-id", AccountStatus.PAUSED
        )

        assert account.status == AccountStatus.PAUSED
        data = mock_prisma.externalportalaccount.update_many.call_args.kwargs["data"]
        assert data["status"] == "paused"
        assert data["pausedAt"] is not None
        session_where = mock_prisma.externalportalsession.update_many.call_args.kwargs["where"]
        assert session_where == {
            "orgId": test_org_id,
            "accountId": "test-account-id",
            "revokedAt": None,
        }

    @pytest.mark.asyncio
    async def test_reactivating_keeps_sessions(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, test_org_id: str
    ) -> None:
        mock_prisma.externalportalaccount.update_many = AsyncMock(return_value=1)
        mock_prisma.externalportalaccount.find_unique = AsyncMock(
            return_value=make_portal_account()
        )

        await service.set_account_status(test_org_id, "test-account-id", AccountStatus.ACTIVE)

        mock_prisma.externalportalsession.update_many.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_account(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, test_org_id: str
    ) -> None:
        mock_prisma.externalportalaccount.update_many = AsyncMock(return_value=0)

        with pytest.raises(AccountNotFoundError):
            await service.set_account_status(test_org_id, "missing", AccountStatus.REVOKED)

    @pytest.mark.asyncio
    async def test_project_accounts_are_grouped_and_sorted(
        self, service: ExternalPortalAuthService, mock_prisma: Mock, test_org_id: str
    ) -> None:
        zoe = make_portal_account(id="acct-z", email="zoe@example.com")
        amy = make_portal_account(id="acct-a", email="amy@example.com")
        mock_prisma.externalportalaccountgrant.find_many = AsyncMock(
            return_value=[Mock(account=zoe), Mock(account=amy), Mock(account=zoe), Mock(account=None)]
        )

        accounts = await service.list_project_accounts(test_org_id, "test-project-id")

        assert [a.email for a in accounts] == ["amy@example.com", "zoe@example.com"]
        assert [a.grant_count for a in accounts] == [1, 2]
        where = mock_prisma.externalportalaccountgrant.find_many.call_args.kwargs["where"]
        assert where["portalAccessToken"] == {"is": {"projectId": "test-project-id"}}


def test_normalize_email() -> None:
    assert normalize_email("  Foo@Bar.COM ") == "foo@bar.com"

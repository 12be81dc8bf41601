# src/domains/external_accounting/qbo/client.py
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from src.core.settings import settings

from .exceptions import QBOError
from .types import (
    QBOCompanyInfo,
    QBOCustomer,
    QBOInvoice,
    QBOPayment,
    QBOServiceItem,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_ITEM_NAME = "Construction Services"
MAX_RETRY_AFTER_SECONDS = 10


def escape_query_literal(value: str) -> str:
    """Escape a value for use inside a single-quoted QBO query literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class QBOClient:
    """Thin typed client over the QBO v3 accounting API for one company."""

    def __init__(
        self,
        access_token: str,
        realm_id: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 2,
    ):
        self.access_token = access_token
        self.realm_id = realm_id
        self.base_url = base_url or settings.qbo_api_base_url
        self.http_client = http_client
        self.max_retries = max_retries

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make an authenticated request against the company endpoint.

        Rate-limited responses are retried after the server's Retry-After
        (bounded). Every other non-2xx response raises ``QBOError``.

        Raises:
            QBOError: For non-2xx responses
            httpx.RequestError: For transport failures
        """
        url = f"{self.base_url}/{self.realm_id}/{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        query = {"minorversion": settings.QBO_MINOR_VERSION, **(params or {})}

        for attempt in range(self.max_retries + 1):
            if self.http_client is not None:
                response = await self.http_client.request(
                    method, url, params=query, json=json, headers=headers
                )
            else:
                async with httpx.AsyncClient(
                    timeout=settings.QBO_REQUEST_TIMEOUT
                ) as client:
                    response = await client.request(
                        method, url, params=query, json=json, headers=headers
                    )

            if response.status_code == 429 and attempt < self.max_retries:
                retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                logger.info(
                    f"QBO rate limited realm {self.realm_id}, retrying in {retry_after}s"
                )
                await asyncio.sleep(retry_after)
                continue

            if response.is_error:
                try:
                    payload = response.json()
                except ValueError:
                    payload = {"raw": response.text}
                raise QBOError(response.status_code, payload)

            return response.json()

        raise QBOError(429, {"raw": "Rate limit retries exhausted"})

    async def query(self, statement: str) -> Dict[str, Any]:
        result = await self._request("GET", "query", params={"query": statement})
        return result.get("QueryResponse") or {}

    async def get_company_info(self) -> QBOCompanyInfo:
        result = await self._request("GET", f"companyinfo/{self.realm_id}")
        return QBOCompanyInfo.model_validate(result.get("CompanyInfo") or {})

    async def get_last_invoice_number(self) -> str:
        """Return the DocNumber of the most recently created invoice, or "0"."""
        response = await self.query(
            "SELECT DocNumber FROM Invoice ORDERBY MetaData.CreateTime DESC MAXRESULTS 1"
        )
        invoices = response.get("Invoice") or []
        if invoices and invoices[0].get("DocNumber"):
            return str(invoices[0]["DocNumber"])
        return "0"

    async def doc_number_exists(self, doc_number: str) -> bool:
        response = await self.query(
            "SELECT Id FROM Invoice WHERE DocNumber = "
            f"'{escape_query_literal(doc_number)}'"
        )
        return len(response.get("Invoice") or []) > 0

    async def find_customer_by_name(self, display_name: str) -> Optional[QBOCustomer]:
        response = await self.query(
            "SELECT * FROM Customer WHERE DisplayName = "
            f"'{escape_query_literal(display_name)}'"
        )
        customers = response.get("Customer") or []
        if not customers:
            return None
        return QBOCustomer.model_validate(customers[0])

    async def create_customer(self, display_name: str) -> QBOCustomer:
        result = await self._request(
            "POST", "customer", json={"DisplayName": display_name}
        )
        return QBOCustomer.model_validate(result["Customer"])

    async def get_or_create_customer(self, display_name: str) -> QBOCustomer:
        found = await self.find_customer_by_name(display_name)
        if found:
            return found
        return await self.create_customer(display_name)

    async def get_default_income_account_id(self) -> Optional[str]:
        response = await self.query(
            "SELECT Id, Name FROM Account WHERE AccountType = 'Income' "
            "AND Active = true MAXRESULTS 1"
        )
        accounts = response.get("Account") or []
        return accounts[0].get("Id") if accounts else None

    async def get_default_service_item(
        self, income_account_id: Optional[str] = None
    ) -> QBOServiceItem:
        """
        Find a service item for invoice lines, creating one if none exists.

        Raises:
            QBOError: If no item exists and no active income account is found
        """
        response = await self.query("SELECT * FROM Item WHERE Type = 'Service' MAXRESULTS 1")
        items = response.get("Item") or []
        if items:
            return QBOServiceItem(value=str(items[0]["Id"]), name=items[0]["Name"])

        account_id = income_account_id or await self.get_default_income_account_id()
        if not account_id:
            raise QBOError(
                400,
                {
                    "raw": "Unable to create QBO service item: "
                    "no active Income account found"
                },
            )

        result = await self._request(
            "POST",
            "item",
            json={
                "Name": DEFAULT_SERVICE_ITEM_NAME,
                "Type": "Service",
                "IncomeAccountRef": {"value": account_id},
            },
        )
        item = result["Item"]
        return QBOServiceItem(value=str(item["Id"]), name=item["Name"])

    async def create_invoice(self, invoice: QBOInvoice) -> QBOInvoice:
        body = invoice.model_dump(exclude_none=True, exclude={"Id", "SyncToken"})
        result = await self._request("POST", "invoice", json=body)
        return QBOInvoice.model_validate(result["Invoice"])

    async def update_invoice(self, invoice: QBOInvoice) -> QBOInvoice:
        """Full update of an existing invoice. Requires Id and SyncToken."""
        if not invoice.Id or not invoice.SyncToken:
            raise ValueError("Invoice Id and SyncToken required for update")
        body = invoice.model_dump(exclude_none=True)
        result = await self._request("POST", "invoice", json=body)
        return QBOInvoice.model_validate(result["Invoice"])

    async def get_invoice(self, qbo_invoice_id: str) -> QBOInvoice:
        result = await self._request("GET", f"invoice/{qbo_invoice_id}")
        return QBOInvoice.model_validate(result["Invoice"])

    async def create_payment(self, payment: QBOPayment) -> QBOPayment:
        body = payment.model_dump(exclude_none=True, exclude={"Id", "SyncToken"})
        result = await self._request("POST", "payment", json=body)
        return QBOPayment.model_validate(result["Payment"])


def _parse_retry_after(value: Optional[str]) -> int:
    try:
        seconds = int(value) if value else 1
    except ValueError:
        seconds = 1
    return max(0, min(seconds, MAX_RETRY_AFTER_SECONDS))

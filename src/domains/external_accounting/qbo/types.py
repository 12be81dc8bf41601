"""QuickBooks Online API type definitions."""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class QBORef(BaseModel):
    """Reference to another QBO entity."""

    value: str = Field(..., description="Referenced entity ID")
    name: Optional[str] = Field(None, description="Referenced entity display name")


class QBOEmailAddress(BaseModel):
    Address: str


class QBOCustomer(BaseModel):
    """QBO customer structure."""

    model_config = ConfigDict(extra="allow")

    Id: Optional[str] = Field(None, description="QBO customer identifier")
    SyncToken: Optional[str] = Field(None, description="Optimistic lock token")
    DisplayName: str = Field(..., description="Unique customer display name")
    PrimaryEmailAddr: Optional[QBOEmailAddress] = None


class QBOSalesItemLineDetail(BaseModel):
    ItemRef: QBORef
    Qty: Optional[float] = None
    UnitPrice: Optional[float] = None


class QBOInvoiceLine(BaseModel):
    """QBO invoice line structure."""

    DetailType: Literal["SalesItemLineDetail", "DescriptionOnly"] = (
        "SalesItemLineDetail"
    )
    Amount: float = Field(..., description="Line amount in currency units")
    Description: Optional[str] = None
    SalesItemLineDetail: Optional[QBOSalesItemLineDetail] = None


class QBOInvoice(BaseModel):
    """QBO invoice structure."""

    model_config = ConfigDict(extra="allow")

    Id: Optional[str] = Field(None, description="QBO invoice identifier")
    SyncToken: Optional[str] = Field(None, description="Optimistic lock token")
    DocNumber: Optional[str] = Field(None, description="Invoice document number")
    TxnDate: Optional[str] = Field(None, description="Transaction date YYYY-MM-DD")
    DueDate: Optional[str] = None
    CustomerRef: Optional[QBORef] = None
    Line: List[QBOInvoiceLine] = Field(default_factory=list)
    PrivateNote: Optional[str] = None


class QBOLinkedTxn(BaseModel):
    TxnId: str
    TxnType: str = "Invoice"


class QBOPaymentLine(BaseModel):
    Amount: float
    LinkedTxn: List[QBOLinkedTxn]


class QBOPayment(BaseModel):
    """QBO received payment structure."""

    model_config = ConfigDict(extra="allow")

    Id: Optional[str] = None
    SyncToken: Optional[str] = None
    TotalAmt: float = Field(..., description="Total payment amount")
    CustomerRef: QBORef
    TxnDate: Optional[str] = None
    PaymentRefNum: Optional[str] = None
    PrivateNote: Optional[str] = None
    Line: List[QBOPaymentLine] = Field(default_factory=list)


class QBOServiceItem(BaseModel):
    """Minimal reference to the service item used on invoice lines."""

    value: str = Field(..., description="QBO item ID")
    name: str = Field(..., description="QBO item name")


class QBOCompanyInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    CompanyName: Optional[str] = None
    LegalName: Optional[str] = None


class QBOTokenResponse(BaseModel):
    """Response from the Intuit OAuth token endpoint."""

    access_token: str = Field(..., description="Access token for API calls")
    refresh_token: str = Field(..., description="Rotated refresh token")
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    x_refresh_token_expires_in: Optional[int] = Field(
        None, description="Refresh token lifetime in seconds"
    )
    token_type: str = Field(default="bearer", description="Token type")


class QBOFault(BaseModel):
    """Single error entry from a QBO Fault payload."""

    code: Optional[str] = None
    message: Optional[str] = None
    detail: Optional[str] = None
    element: Optional[str] = None

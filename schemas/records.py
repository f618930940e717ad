"""
Pydantic schemas for typed records produced from untyped ERP rows
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Dict, Any, List
from datetime import date, datetime


class SyncRecord(BaseModel):
    """Base for records handed to the reconciliation engine"""

    model_config = ConfigDict(extra="ignore")

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump()


class CustomerRecord(SyncRecord):
    """
    Customer row from the customer export.

    Only extracted fields live here; portal-owned columns are never part
    of a sync payload.
    """

    customer_id: int
    email: Optional[str] = None
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None

    shipping_address1: Optional[str] = None
    shipping_address2: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_state: Optional[str] = None
    shipping_zip: Optional[str] = None
    shipping_country: Optional[str] = None

    billing_address1: Optional[str] = None
    billing_address2: Optional[str] = None
    billing_city: Optional[str] = None
    billing_state: Optional[str] = None
    billing_zip: Optional[str] = None
    billing_country: Optional[str] = None

    hubspot_id: Optional[int] = None


class EtaLineRecord(SyncRecord):
    """One sales-order line ETA at a location"""

    item_id: int = Field(..., gt=0)
    location_id: int = Field(..., gt=0)
    so_id: int = Field(..., gt=0)
    line_seq: int

    location_name: Optional[str] = None
    starting_on_hand: Optional[float] = None
    so_tranid: Optional[str] = None
    customer_id: Optional[int] = None
    ns_line_id: Optional[int] = None
    customer: Optional[str] = None

    queue_date: Optional[date] = None
    tran_date: Optional[date] = None
    ship_date: Optional[date] = None

    qty_remaining: Optional[float] = None
    projected_after: Optional[float] = None
    deficit: Optional[float] = None

    eta_date: Optional[date] = None
    eta_source_type: Optional[str] = None
    eta_source_id: Optional[int] = None
    eta_source_tranid: Optional[str] = None
    eta_source_qty: Optional[float] = None

    manifest_generated_at: Optional[str] = None

    @field_validator("line_seq", mode="before")
    @classmethod
    def line_seq_must_be_integral(cls, v):
        if isinstance(v, bool) or v is None:
            raise ValueError("line_seq is required")
        if isinstance(v, float) and not v.is_integer():
            raise ValueError("line_seq must be integral")
        return v


class PaymentInstrumentRecord(SyncRecord):
    """Payment method returned by the instruments script for one customer"""

    customer_id: int = Field(..., gt=0)
    instrument_id: str = Field(..., min_length=1)
    payment_method: Optional[str] = None
    brand: Optional[str] = None
    last4: Optional[str] = None
    expiry: Optional[str] = None
    token: Optional[str] = None
    token_family: Optional[str] = None
    token_namespace: Optional[str] = None
    is_default: bool = False
    raw: Optional[Any] = None
    last_seen_at: Optional[datetime] = None


class CustomerIdentifierRecord(SyncRecord):
    """Email to ERP customer mapping inserted into profiles"""

    email: str = Field(..., min_length=3)
    netsuite_customer_id: int

    @field_validator("email")
    @classmethod
    def email_must_look_like_one(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v


class InvoiceHeaderRecord(SyncRecord):
    invoice_id: int = Field(..., gt=0)
    tran_id: Optional[str] = None
    trandate: Optional[date] = None
    total: float = 0
    tax_total: float = 0
    amount_paid: float = 0
    amount_remaining: float = 0
    customer_id: Optional[int] = None
    created_from_so_id: Optional[int] = None
    created_from_so_tranid: Optional[str] = None
    netsuite_url: Optional[str] = None
    last_modified: Optional[str] = None


class InvoiceLineRecord(SyncRecord):
    invoice_id: int = Field(..., gt=0)
    line_no: int
    item_id: Optional[int] = None
    item_sku: Optional[str] = None
    item_display_name: Optional[str] = None
    quantity: float = 0
    rate: float = 0
    amount: float = 0
    description: Optional[str] = None
    comment: Optional[str] = None


class InvoicePaymentRecord(SyncRecord):
    invoice_id: int = Field(..., gt=0)
    payment_id: int = Field(..., gt=0)
    tran_id: Optional[str] = None
    payment_date: Optional[date] = None
    amount: float = 0
    status: Optional[str] = None
    payment_option: Optional[str] = None


class SalesOrderRecord(SyncRecord):
    so_id: int = Field(..., gt=0)
    customer_id: int = Field(..., gt=0)
    tran_id: Optional[str] = None
    trandate: Optional[date] = None
    total: Optional[float] = None
    tax_total: Optional[float] = None
    netsuite_url: Optional[str] = None
    sales_rep: Optional[str] = None
    ship_address: Optional[str] = None
    so_reference: Optional[str] = None
    hubspot_so_id: Optional[str] = None
    sales_channel_id: Optional[str] = None
    affiliate_id: Optional[str] = None
    order_note: Optional[str] = None
    ship_complete: Optional[bool] = None
    billing_terms_id: Optional[str] = None
    sales_team: Optional[List[Any]] = None
    partners: Optional[List[Any]] = None
    giveaway: Optional[bool] = None
    warranty: Optional[bool] = None


class SalesOrderLineRecord(SyncRecord):
    so_id: int = Field(..., gt=0)
    line_no: int
    item_id: Optional[int] = None
    item_sku: Optional[str] = None
    item_display_name: Optional[str] = None
    quantity: Optional[float] = None
    rate: Optional[float] = None
    amount: Optional[float] = None
    description: Optional[str] = None
    comment: Optional[str] = None
    is_closed: bool = False
    fulfillment_status: Optional[str] = None
    ns_line_id: Optional[int] = None


class TrackingDetail(BaseModel):
    number: str
    carrier: str = ""
    url: str = ""


class FulfillmentRecord(SyncRecord):
    fulfillment_id: int = Field(..., gt=0)
    tran_id: Optional[str] = None
    trandate: Optional[date] = None
    customer_id: Optional[int] = None
    status: Optional[str] = None
    ship_status: Optional[str] = None
    created_from_so_id: Optional[int] = None
    created_from_so_tranid: Optional[str] = None
    tracking: Optional[str] = None
    tracking_urls: Optional[List[str]] = None
    tracking_details: Optional[List[TrackingDetail]] = None
    last_modified: Optional[str] = None


class FulfillmentLineRecord(SyncRecord):
    """
    Shipped line of a fulfillment.

    line_key is the raw line reference used to merge repeated lines; it
    is not stored.
    """

    fulfillment_id: int = Field(..., gt=0)
    line_no: int
    line_key: Optional[str] = Field(None, exclude=True)
    line_id: Optional[int] = None
    item_id: Optional[int] = None
    item_sku: Optional[str] = None
    item_display_name: Optional[str] = None
    quantity: float = 0
    serial_numbers: Optional[List[str]] = None
    comments: Optional[List[str]] = None


class ExportManifest(BaseModel):
    """
    Metadata resolved from an export manifest.

    file_id is the export the manifest points at; the remaining fields are
    carried into job responses.
    """

    file_id: int
    file_name: Optional[str] = None
    rows: Optional[int] = None
    generated_at: Optional[str] = None
    tag: Optional[str] = None
    location_name: Optional[str] = None
    counts: Optional[Dict[str, Any]] = None
    keys: List[str] = Field(default_factory=list)

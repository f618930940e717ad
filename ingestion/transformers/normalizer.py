"""
Transform untyped ERP rows into typed records with Pydantic validation
"""

from typing import Dict, Any, Optional, List, Callable, Tuple, TypeVar
from urllib.parse import quote
from datetime import date, datetime
import math
import re
import logging

from pydantic import ValidationError

from schemas.records import (
    CustomerRecord,
    EtaLineRecord,
    PaymentInstrumentRecord,
    CustomerIdentifierRecord,
    InvoiceHeaderRecord,
    InvoiceLineRecord,
    InvoicePaymentRecord,
    SalesOrderRecord,
    SalesOrderLineRecord,
    FulfillmentRecord,
    FulfillmentLineRecord,
    TrackingDetail,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

_US_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_DIGITS = re.compile(r"^\d+$")


# ============================================================================
# Coercion helpers
# ============================================================================

def coerce_str(value: Any) -> Optional[str]:
    """Trimmed string, or None for missing/blank values"""
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def to_number(value: Any) -> Optional[float]:
    """Finite float, or None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        n = float(value)
    else:
        s = str(value).strip()
        if not s:
            return None
        try:
            n = float(s)
        except ValueError:
            return None
    return n if math.isfinite(n) else None


def to_int(value: Any) -> Optional[int]:
    """Integral number, or None"""
    n = to_number(value)
    if n is None or not n.is_integer():
        return None
    return int(n)


def coerce_bigint(value: Any) -> Optional[int]:
    """Digits-only id with thousands separators and spaces removed"""
    if value is None or value == "":
        return None
    s = re.sub(r"[, ]", "", str(value)).strip()
    if not _DIGITS.match(s):
        return None
    return int(s)


def normalize_email(value: Any) -> Optional[str]:
    s = coerce_str(value)
    return s.lower() if s else None


def parse_flag(value: Any) -> bool:
    """NetSuite checkbox: "T"/"F" strings or real booleans"""
    if isinstance(value, str):
        return value == "T"
    return bool(value)


def parse_tristate(value: Any) -> Optional[bool]:
    """T/TRUE/Y and F/FALSE/N in any case; None when absent or unrecognized"""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    s = str(value).strip().upper()
    if s in ("T", "TRUE", "Y"):
        return True
    if s in ("F", "FALSE", "N"):
        return False
    return None


def normalize_date(value: Any) -> Optional[date]:
    """
    Parse M/D/YYYY (NetSuite display format) or ISO dates.

    Returns None for anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = coerce_str(value)
    if not s:
        return None

    m = _US_DATE.match(s)
    if m:
        month, day, year = (int(x) for x in m.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None

    m = _ISO_DATE.match(s)
    if m:
        year, month, day = (int(x) for x in m.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None

    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def chunked(items: List[R], size: int) -> List[List[R]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def lower_keys(row: Dict[str, Any]) -> Dict[str, Any]:
    """SuiteQL lowercases column aliases; normalize hand-written rows the same way"""
    return {str(k).lower(): v for k, v in row.items()}


# ============================================================================
# Tracking numbers
# ============================================================================

_CARRIER_PATTERNS = [
    (re.compile(r"^1Z[0-9A-Z]{16}$"), "ups"),
    (re.compile(r"^[A-Z]{2}\d{9}US$"), "usps"),
    (re.compile(r"^9\d{19,21}$"), "usps"),
    (re.compile(r"^\d{20,22}$"), "fedex"),
    (re.compile(r"^(\d{12}|\d{15})$"), "fedex"),
    (re.compile(r"^(\d{10}|JJD\d+|JVGL\d+)$"), "dhl"),
    (re.compile(r"^C\d{12}$"), "ontrac"),
]

_TRACKING_URLS = [
    ("fedex", "https://www.fedex.com/fedextrack/?tracknumbers={}"),
    ("ups", "https://www.ups.com/track?tracknum={}"),
    ("usps", "https://tools.usps.com/go/TrackConfirmAction?tLabels={}"),
    ("dhl", "https://www.dhl.com/global-en/home/tracking.html?tracking-id={}"),
    ("ontrac", "https://www.ontrac.com/trackingres.asp?tracking_number={}"),
]


def infer_carrier(number: str) -> str:
    """Carrier guessed from the shape of a tracking number, "" when unknown"""
    n = re.sub(r"\s+", "", number or "").upper()
    for pattern, carrier in _CARRIER_PATTERNS:
        if pattern.match(n):
            return carrier
    return ""


def tracking_url(carrier: str, number: str) -> str:
    if not number:
        return ""
    c = (carrier or "").lower()
    for name, template in _TRACKING_URLS:
        if name in c:
            return template.format(quote(number, safe=""))
    return f"https://www.google.com/search?q={quote(number + ' tracking', safe='')}"


def tracking_numbers(record: Dict[str, Any]) -> List[str]:
    """
    Package tracking numbers of a fulfillment record.

    Falls back to every string under a key containing "tracking" when the
    package list carries none.
    """
    packages = record.get("packageList")
    if isinstance(packages, dict):
        packages = packages.get("packages") or packages.get("items") or []
    if packages is None:
        packages = record.get("packages") or []
    if not isinstance(packages, list):
        packages = [packages]

    numbers: List[str] = []
    for package in packages:
        if not isinstance(package, dict):
            continue
        number = coerce_str(
            package.get("packageTrackingNumber")
            or package.get("trackingNumber")
            or package.get("packageTrackingNo")
        )
        if number:
            numbers.append(number)
    if numbers:
        return numbers

    found: List[str] = []

    def walk(node: Any) -> None:
        if isinstance(node, dict):
            for key, value in node.items():
                if "tracking" in str(key).lower() and isinstance(value, str) and value.strip():
                    found.append(value.strip())
                elif isinstance(value, (dict, list)):
                    walk(value)
        elif isinstance(node, list):
            for value in node:
                walk(value)

    walk(record)
    return list(dict.fromkeys(found))


def tracking_details(numbers: List[str]) -> List[TrackingDetail]:
    details: Dict[Tuple[str, str, str], TrackingDetail] = {}
    for number in numbers:
        carrier = infer_carrier(number)
        detail = TrackingDetail(number=number, carrier=carrier, url=tracking_url(carrier, number))
        details.setdefault((detail.number, detail.carrier, detail.url), detail)
    return list(details.values())


# ============================================================================
# Normalizer
# ============================================================================

class RecordNormalizer:
    """
    Normalize ERP rows into typed records.

    Handles:
    - Field mapping per export
    - Type coercion
    - Validation (rows failing validation are counted and skipped)
    """

    def __init__(self, job_name: str):
        self.job_name = job_name
        self.rejected = 0

    def normalize_many(
        self,
        rows: List[Dict[str, Any]],
        mapper: Callable[[Dict[str, Any]], R],
    ) -> List[R]:
        """Map every row, skipping the ones that fail validation"""
        records: List[R] = []
        for row in rows:
            try:
                records.append(mapper(row))
            except (ValidationError, ValueError, TypeError) as e:
                self.rejected += 1
                logger.debug(f"[{self.job_name}] rejected row: {e}")
        return records

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def normalize_customer(self, record: Dict[str, Any]) -> CustomerRecord:
        """Normalize one customer export line"""
        customer_id = to_int(record.get("customer_id"))
        if customer_id is None:
            raise ValueError("customer_id is not numeric")

        bill = self._pick_address(record.get("addresses"), "default_billing")
        ship = self._pick_address(record.get("addresses"), "default_shipping")

        return CustomerRecord(
            customer_id=customer_id,
            email=coerce_str(record.get("email")),
            first_name=coerce_str(record.get("first_name")),
            middle_name=coerce_str(record.get("middle_name")),
            last_name=coerce_str(record.get("last_name")),
            phone=coerce_str(record.get("phone")),
            mobile=coerce_str(record.get("mobilephone")),
            shipping_address1=coerce_str(ship.get("addr1")),
            shipping_address2=coerce_str(ship.get("addr2")),
            shipping_city=coerce_str(ship.get("city")),
            shipping_state=coerce_str(ship.get("state")),
            shipping_zip=coerce_str(ship.get("zip")),
            shipping_country=coerce_str(ship.get("country")),
            billing_address1=coerce_str(bill.get("addr1")),
            billing_address2=coerce_str(bill.get("addr2")),
            billing_city=coerce_str(bill.get("city")),
            billing_state=coerce_str(bill.get("state")),
            billing_zip=coerce_str(bill.get("zip")),
            billing_country=coerce_str(bill.get("country")),
            hubspot_id=coerce_bigint(record.get("hubspot_id")),
        )

    @staticmethod
    def _pick_address(addresses: Any, flag: str) -> Dict[str, Any]:
        """Address marked with the default flag, else the only address"""
        if not isinstance(addresses, list):
            return {}
        candidates = [a for a in addresses if isinstance(a, dict)]
        for address in candidates:
            if parse_flag(address.get(flag)):
                return address
        if len(candidates) == 1:
            return candidates[0]
        return {}

    # ------------------------------------------------------------------
    # ETAs
    # ------------------------------------------------------------------

    def normalize_eta(
        self,
        record: Dict[str, Any],
        location_name: Optional[str] = None,
        generated_at: Optional[str] = None,
    ) -> EtaLineRecord:
        """Normalize one ETA export line; location_name falls back to the manifest's"""
        return EtaLineRecord(
            item_id=to_int(record.get("item_id")),
            location_id=to_int(record.get("location_id")),
            so_id=to_int(record.get("so_id")),
            line_seq=to_number(record.get("line_seq")),
            location_name=coerce_str(record.get("location_name")) or coerce_str(location_name),
            starting_on_hand=to_number(record.get("starting_on_hand")),
            so_tranid=coerce_str(record.get("so_tranid")),
            customer_id=to_int(record.get("customer_id")),
            ns_line_id=to_int(record.get("ns_line_id")),
            customer=coerce_str(record.get("customer")),
            queue_date=normalize_date(record.get("queue_date")),
            tran_date=normalize_date(record.get("tran_date")),
            ship_date=normalize_date(record.get("ship_date")),
            qty_remaining=to_number(record.get("qty_remaining")),
            projected_after=to_number(record.get("projected_after")),
            deficit=to_number(record.get("deficit")),
            eta_date=normalize_date(record.get("eta_date")),
            eta_source_type=coerce_str(record.get("eta_source_type")),
            eta_source_id=to_int(record.get("eta_source_id")),
            eta_source_tranid=coerce_str(record.get("eta_source_tranid")),
            eta_source_qty=to_number(record.get("eta_source_qty")),
            manifest_generated_at=coerce_str(generated_at),
        )

    # ------------------------------------------------------------------
    # Payment instruments
    # ------------------------------------------------------------------

    def normalize_instrument(
        self,
        record: Dict[str, Any],
        customer_id: int,
        default_instrument_id: Optional[str] = None,
        seen_at: Optional[datetime] = None,
    ) -> PaymentInstrumentRecord:
        """Normalize one instrument; an explicit isDefault wins over defaultInstrumentId"""
        instrument_id = coerce_str(record.get("id"))
        is_default = record.get("isDefault")
        if not isinstance(is_default, bool):
            is_default = bool(default_instrument_id) and instrument_id == default_instrument_id

        return PaymentInstrumentRecord(
            customer_id=customer_id,
            instrument_id=instrument_id,
            payment_method=coerce_str(record.get("paymentMethod")),
            brand=coerce_str(record.get("brand")),
            last4=coerce_str(record.get("last4")),
            expiry=coerce_str(record.get("expiry")),
            token=coerce_str(record.get("token")),
            token_family=coerce_str(record.get("tokenFamily")),
            token_namespace=coerce_str(record.get("tokenNamespace")),
            is_default=is_default,
            raw=record.get("raw"),
            last_seen_at=seen_at,
        )

    # ------------------------------------------------------------------
    # Customer identifiers
    # ------------------------------------------------------------------

    def normalize_identifier(self, record: Dict[str, Any], email_field: str = "email") -> CustomerIdentifierRecord:
        row = lower_keys(record)
        email = normalize_email(row.get(email_field))
        customer_id = to_int(row.get("id"))
        if email is None or customer_id is None:
            raise ValueError("identifier row needs an id and an email")
        return CustomerIdentifierRecord(email=email, netsuite_customer_id=customer_id)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def normalize_invoice_header(self, record: Dict[str, Any]) -> InvoiceHeaderRecord:
        row = lower_keys(record)
        return InvoiceHeaderRecord(
            invoice_id=to_int(row.get("invoiceid")),
            tran_id=coerce_str(row.get("tranid")),
            trandate=normalize_date(row.get("trandate")),
            total=to_number(row.get("total")) or 0,
            tax_total=to_number(row.get("taxtotal")) or 0,
            customer_id=to_int(row.get("customerid")),
            last_modified=coerce_str(row.get("lastmodifieddate")),
        )

    def normalize_invoice_line(self, record: Dict[str, Any]) -> InvoiceLineRecord:
        row = lower_keys(record)
        sku = coerce_str(row.get("sku"))
        return InvoiceLineRecord(
            invoice_id=to_int(row.get("invoiceid")),
            line_no=to_int(row.get("lineno")) or 0,
            item_id=to_int(row.get("itemid")),
            item_sku=sku,
            item_display_name=coerce_str(row.get("displayname")) or sku,
            quantity=to_number(row.get("quantity")) or 0,
            rate=to_number(row.get("rate")) or 0,
            amount=to_number(row.get("amount")) or 0,
            description=coerce_str(row.get("description")),
            comment=coerce_str(row.get("linecomment")),
        )

    def normalize_invoice_payment(self, record: Dict[str, Any]) -> InvoicePaymentRecord:
        row = lower_keys(record)
        return InvoicePaymentRecord(
            invoice_id=to_int(row.get("invoiceid")),
            payment_id=to_int(row.get("paymentid")),
            tran_id=coerce_str(row.get("tranid")),
            payment_date=normalize_date(row.get("paymentdate")),
            amount=to_number(row.get("amount")) or 0,
            status=coerce_str(row.get("status")),
            payment_option=coerce_str(row.get("paymentoption")),
        )

    # ------------------------------------------------------------------
    # Sales orders
    # ------------------------------------------------------------------

    def normalize_sales_order(self, record: Dict[str, Any]) -> SalesOrderRecord:
        """Normalize one sales order export line; rows without a customer are rejected"""
        so_id = to_int(record.get("so_id"))
        customer_id = to_int(record.get("customer_id"))
        if so_id is None or not customer_id:
            raise ValueError("sales order needs a numeric so_id and a customer_id")

        giveaway = record.get("giveaway")
        warranty = record.get("warranty")
        return SalesOrderRecord(
            so_id=so_id,
            customer_id=customer_id,
            tran_id=coerce_str(record.get("tran_id")),
            trandate=normalize_date(record.get("trandate")),
            total=to_number(record.get("total")),
            tax_total=to_number(record.get("tax_total")),
            sales_rep=coerce_str(record.get("sales_rep")),
            ship_address=coerce_str(record.get("ship_address")),
            so_reference=coerce_str(record.get("so_reference")),
            hubspot_so_id=coerce_str(record.get("hubspot_so_id")),
            sales_channel_id=coerce_str(record.get("sales_channel_id")),
            affiliate_id=coerce_str(record.get("affiliate_id")),
            order_note=coerce_str(record.get("order_note")),
            ship_complete=parse_tristate(record.get("ship_complete")),
            billing_terms_id=coerce_str(record.get("billing_terms_id")),
            sales_team=record.get("sales_team") if isinstance(record.get("sales_team"), list) else None,
            partners=record.get("partners") if isinstance(record.get("partners"), list) else None,
            giveaway=parse_tristate(giveaway if giveaway is not None else record.get("custbody_hpl_giveaway")),
            warranty=parse_tristate(warranty if warranty is not None else record.get("custbody_hpl_warranty")),
        )

    def normalize_sales_order_line(self, record: Dict[str, Any]) -> SalesOrderLineRecord:
        line_no = record.get("line_no")
        if line_no is None:
            line_no = record.get("linesequencenumber")
        if line_no is None:
            line_no = record.get("lineNo")
        line_no = to_int(line_no) if line_no is not None else 0
        if line_no is None:
            raise ValueError("line_no is not integral")

        display = record.get("item_display_name")
        if display is None:
            display = record.get("displayname")
        if display is None:
            display = record.get("sku")

        return SalesOrderLineRecord(
            so_id=to_int(record.get("so_id")),
            line_no=line_no,
            item_id=to_int(record.get("item_id")),
            item_sku=coerce_str(record.get("item_sku")),
            item_display_name=coerce_str(display),
            quantity=to_number(record.get("quantity")),
            rate=to_number(record.get("rate")),
            amount=to_number(record.get("amount")),
            description=coerce_str(record.get("description")),
            comment=coerce_str(record.get("comment")),
            is_closed=bool(parse_tristate(record.get("is_closed"))),
            fulfillment_status=coerce_str(record.get("fulfillment_status")),
            ns_line_id=to_int(record.get("ns_line_id")),
        )

    # ------------------------------------------------------------------
    # Fulfillments
    # ------------------------------------------------------------------

    def normalize_fulfillment_header(self, record: Dict[str, Any]) -> FulfillmentRecord:
        row = lower_keys(record)
        return FulfillmentRecord(
            fulfillment_id=to_int(row.get("fulfillmentid")),
            tran_id=coerce_str(row.get("tranid")),
            trandate=normalize_date(row.get("trandate")),
            customer_id=to_int(row.get("customerid")),
            status=coerce_str(row.get("status")),
            last_modified=coerce_str(row.get("lastmodifieddate")),
        )

    def normalize_fulfillment_lines(self, fulfillment_id: int, record: Dict[str, Any]) -> List[FulfillmentLineRecord]:
        """
        Shipped lines of one fulfillment record.

        Lines without a numeric line reference are skipped. Repeated line
        references are merged, unioning serial numbers and comments.
        """
        rows: List[Any] = []
        for holder in (record.get("item"), record.get("itemList")):
            if isinstance(holder, dict):
                holder = holder.get("items")
            if isinstance(holder, list):
                rows = holder
                break

        merged: Dict[str, FulfillmentLineRecord] = {}
        for row in rows:
            if not isinstance(row, dict):
                continue
            line_id = to_int(row.get("line"))
            if line_id is None:
                self.rejected += 1
                continue
            key = str(row.get("line"))

            line = self._fulfillment_line(fulfillment_id, line_id, key, row)
            previous = merged.get(key)
            if previous is None:
                merged[key] = line
                continue
            if line.serial_numbers:
                previous.serial_numbers = list(dict.fromkeys((previous.serial_numbers or []) + line.serial_numbers))
            if line.comments:
                previous.comments = list(dict.fromkeys((previous.comments or []) + line.comments))
        return list(merged.values())

    @staticmethod
    def _fulfillment_line(fulfillment_id: int, line_id: int, key: str, row: Dict[str, Any]) -> FulfillmentLineRecord:
        item = row.get("item") or row.get("itemRef") or {}
        if not isinstance(item, dict):
            item = {}

        sku = coerce_str(item.get("refName") or item.get("name") or item.get("text"))
        if sku is None:
            raw_item = coerce_str(row.get("itemid"))
            if raw_item and not _DIGITS.match(raw_item):
                sku = raw_item

        serials: List[str] = []
        assignment = row.get("inventoryassignment") or row.get("inventoryAssignment") or row.get("inventoryDetail")
        if isinstance(assignment, dict):
            entries = assignment.get("assignments") or assignment.get("assignment") or assignment.get("details") or []
            for entry in entries if isinstance(entries, list) else [entries]:
                if not isinstance(entry, dict):
                    continue
                refs = [entry.get("issueinventorynumber"), entry.get("inventorynumber")]
                serial = next((r.get("text") for r in refs if isinstance(r, dict) and r.get("text")), None)
                serial = serial or entry.get("serialnumber") or entry.get("lotnumber")
                if serial:
                    serials.append(str(serial))

        comment = row.get("custcolns_comment")
        if comment is None:
            comment = row.get("comments")

        return FulfillmentLineRecord(
            fulfillment_id=fulfillment_id,
            line_no=line_id,
            line_key=key,
            line_id=line_id,
            item_id=to_int(item.get("id") or item.get("internalId")),
            item_sku=sku,
            item_display_name=coerce_str(row.get("description") or item.get("displayName") or item.get("refName")),
            quantity=abs(to_number(row.get("quantity")) or 0),
            serial_numbers=list(dict.fromkeys(serials)) or None,
            comments=[str(comment)] if comment is not None else None,
        )


def dedupe_first(records: List[R], key: Callable[[R], Any]) -> Tuple[List[R], int]:
    """First record per key wins; returns the kept records and the duplicate count"""
    seen = set()
    kept: List[R] = []
    for record in records:
        k = key(record)
        if k in seen:
            continue
        seen.add(k)
        kept.append(record)
    return kept, len(records) - len(kept)

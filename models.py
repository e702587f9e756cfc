import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from utils import _as_float, logger

_ID_DECORATION = re.compile(r"^\s*(?:inv-)?\s*#?\s*", re.IGNORECASE)


def normalize_invoice_id(value: Any) -> str:
    """Strip `inv-`, `#` and whitespace decorations: "inv-7", "#7" and " 7 " all become "7"."""
    if value is None:
        return ""
    return _ID_DECORATION.sub("", str(value)).strip()


def ids_equivalent(left: Any, right: Any) -> bool:
    """Exact match after normalisation, or numeric-string equivalence ("7" == 7 == "007")."""
    a = normalize_invoice_id(left)
    b = normalize_invoice_id(right)
    if not a or not b:
        return False
    if a == b:
        return True
    if a.isdigit() and b.isdigit():
        return int(a) == int(b)
    return False


class CredentialRecord(BaseModel):
    access_token: Optional[str] = None
    realm_id: Optional[str] = None
    refresh_token: Optional[str] = None
    # absolute UNIX timestamp (seconds)
    expiry: Optional[float] = None

    @property
    def usable(self) -> bool:
        return bool(self.access_token) and bool(self.realm_id)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expiry is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expiry

    def seconds_remaining(self, now: Optional[float] = None) -> Optional[int]:
        if self.expiry is None:
            return None
        now = time.time() if now is None else now
        return max(int(self.expiry - now), 0)


class InvoiceStatus(str, Enum):
    PAID = "Paid"
    UNPAID = "Unpaid"
    PARTIALLY_PAID = "PartiallyPaid"


def invoice_status(balance: float, total_amount: float) -> InvoiceStatus:
    balance = round(balance or 0.0, 2)
    total_amount = round(total_amount or 0.0, 2)
    if balance == 0:
        return InvoiceStatus.PAID
    if balance == total_amount:
        return InvoiceStatus.UNPAID
    return InvoiceStatus.PARTIALLY_PAID


class LineItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    description: str = ""
    amount: float = 0.0
    quantity: float = 1.0
    unit_price: float = Field(default=0.0, alias="unitPrice")

    @classmethod
    def from_quickbooks(cls, line: Dict[str, Any]) -> "LineItem":
        detail = line.get("SalesItemLineDetail") or {}
        amount = _as_float(line.get("Amount")) or 0.0
        quantity = _as_float(detail.get("Qty"))
        if quantity is None:
            quantity = _as_float(line.get("Quantity"))
        return cls(
            id=str(line.get("Id") or ""),
            description=line.get("Description") or "",
            amount=max(amount, 0.0),
            quantity=quantity if quantity else 1.0,
            unit_price=_as_float(detail.get("UnitPrice")) or 0.0,
        )


class NormalizedInvoice(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    document_number: str = Field(default="", alias="documentNumber")
    customer_name: str = Field(default="Unknown Customer", alias="customerName")
    transaction_date: str = Field(default="", alias="transactionDate")
    due_date: str = Field(default="", alias="dueDate")
    total_amount: float = Field(default=0.0, alias="totalAmount")
    balance: float = 0.0
    line_items: List[LineItem] = Field(default_factory=list, alias="lineItems")
    memo: Optional[str] = None
    currency: str = "USD"

    @computed_field
    @property
    def status(self) -> InvoiceStatus:
        return invoice_status(self.balance, self.total_amount)

    def matches(self, invoice_id: Any) -> bool:
        return ids_equivalent(self.id, invoice_id) or ids_equivalent(self.document_number, invoice_id)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_quickbooks(cls, raw: Dict[str, Any]) -> "NormalizedInvoice":
        try:
            customer = raw.get("CustomerRef") or {}
            memo = (raw.get("CustomerMemo") or {}).get("value") or raw.get("PrivateNote")
            currency_ref = raw.get("CurrencyRef") or {}
            return cls(
                id=str(raw.get("Id") or ""),
                document_number=str(raw.get("DocNumber") or ""),
                customer_name=customer.get("name") or "Unknown Customer",
                transaction_date=raw.get("TxnDate") or "",
                due_date=raw.get("DueDate") or "",
                total_amount=_as_float(raw.get("TotalAmt")) or 0.0,
                balance=_as_float(raw.get("Balance")) or 0.0,
                line_items=[LineItem.from_quickbooks(line) for line in raw.get("Line") or [] if isinstance(line, dict)],
                memo=memo,
                currency=currency_ref.get("value") or currency_ref.get("name") or "USD",
            )
        except Exception as e:
            logger.error("Error mapping QuickBooks invoice %s: %s", raw.get("Id") if isinstance(raw, dict) else raw, e)
            raw = raw if isinstance(raw, dict) else {}
            return cls(
                id=str(raw.get("Id") or ""),
                document_number=str(raw.get("DocNumber") or ""),
                customer_name="Error parsing invoice",
                transaction_date=str(raw.get("TxnDate") or ""),
            )


# ---- Upstream query envelope ----

@dataclass(frozen=True)
class InvoiceList:
    invoices: List[Dict[str, Any]]


@dataclass(frozen=True)
class EmptyList:
    invoices: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class MalformedResponse:
    reason: str


QueryEnvelope = Union[InvoiceList, EmptyList, MalformedResponse]


def decode_query_response(payload: Any) -> QueryEnvelope:
    """Classify a `/query` response body as a list of invoices, an empty result, or garbage."""
    if not isinstance(payload, dict):
        return MalformedResponse(f"expected a JSON object, got {type(payload).__name__}")
    if "Fault" in payload:
        errors = (payload.get("Fault") or {}).get("Error") or []
        first = errors[0] if errors and isinstance(errors[0], dict) else {}
        return MalformedResponse(f"upstream fault {first.get('code', '?')}: {first.get('Message') or first.get('Detail') or 'unknown'}")
    query_response = payload.get("QueryResponse")
    if not isinstance(query_response, dict):
        return MalformedResponse("response has no QueryResponse object")
    if "Invoice" not in query_response:
        return EmptyList()
    invoices = query_response.get("Invoice")
    if not isinstance(invoices, list):
        return MalformedResponse("QueryResponse.Invoice is not a list")
    if not invoices:
        return EmptyList()
    return InvoiceList([inv for inv in invoices if isinstance(inv, dict)])

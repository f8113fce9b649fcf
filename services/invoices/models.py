"""Invoice data models and status state machine.

Status graph:
    pending -> paid | cancelled
    pending -> overdue          (derived on read, never commanded)
    overdue -> paid | cancelled
    paid, cancelled             (terminal)

Fiat amounts are integers in the smallest fiat unit. Crypto amounts are
decimals with 8 fractional digits.
"""

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class InvoiceStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}


def effective_status(status: InvoiceStatus, due_date: datetime, now: datetime) -> InvoiceStatus:
    """Status as seen at ``now``: a pending invoice past its due date reads as overdue."""
    if status == InvoiceStatus.PENDING and due_date < now:
        return InvoiceStatus.OVERDUE
    return status


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ClientInfo(BaseModel):
    """Billed client identity. Name and email are required."""

    name: str = Field(..., description="Client or company name")
    email: str = Field(..., description="Client contact email")
    address: str = Field("", description="Postal address")
    tax_id: str = Field("", description="Company / tax registration number")


class LineItemInput(BaseModel):
    """Line item as submitted by the issuer."""

    description: str = ""
    quantity: int = Field(1, ge=0)
    unit_price: int = Field(..., ge=0, description="Unit price in smallest fiat unit")


class LineItem(LineItemInput):
    total: int = Field(..., ge=0, description="quantity x unit_price")


class InvoiceCreate(BaseModel):
    """Input for invoice creation."""

    client: ClientInfo
    items: list[LineItemInput]
    tax_rate: Decimal = Field(Decimal("0"), ge=0, le=100, description="Tax rate in percent")
    due_date: datetime | None = None
    crypto_currency: str | None = Field(None, description="Target cryptocurrency code, e.g. ETH")
    wallet_address: str | None = Field(None, description="Destination wallet address")
    note: str = ""

    @field_validator("due_date")
    @classmethod
    def _due_date_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @field_validator("crypto_currency", "wallet_address")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


class InvoiceTotals(BaseModel):
    items: list[LineItem]
    subtotal: int
    tax: int
    total: int


def compute_totals(items: list[LineItemInput], tax_rate: Decimal) -> InvoiceTotals:
    """Compute line totals, subtotal, tax (rounded half-up) and grand total.

    Args:
        items: Submitted line items
        tax_rate: Tax rate in percent

    Returns:
        Totals with per-line totals filled in
    """
    lines = [
        LineItem(
            description=item.description.strip(),
            quantity=item.quantity,
            unit_price=item.unit_price,
            total=item.quantity * item.unit_price,
        )
        for item in items
    ]
    subtotal = sum(line.total for line in lines)
    tax = int(
        (Decimal(subtotal) * Decimal(tax_rate) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    return InvoiceTotals(items=lines, subtotal=subtotal, tax=tax, total=subtotal + tax)


class Invoice(BaseModel):
    """Stored invoice record.

    ``paid_at`` is set iff status is paid. ``tx_hash`` is only ever set on a
    paid invoice; it may stay empty when the payment was confirmed manually.
    ``crypto_amount`` is set iff a crypto currency was chosen at creation and
    is never recomputed afterwards.
    """

    id: str
    owner_id: str
    invoice_number: str
    client: ClientInfo
    items: list[LineItem]
    subtotal: int
    tax_rate: Decimal
    tax: int
    total: int
    currency: str
    crypto_currency: str | None = None
    crypto_amount: Decimal | None = None
    wallet_address: str | None = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    created_at: datetime
    due_date: datetime
    paid_at: datetime | None = None
    tx_hash: str | None = None
    verification_details: dict[str, Any] | None = None
    note: str = ""


class StatusUpdate(BaseModel):
    """Manual status change. Bypasses on-chain verification entirely."""

    status: InvoiceStatus
    tx_hash: str | None = None


class MonthlyStats(BaseModel):
    """Activity of one calendar month (``YYYY-MM``)."""

    month: str
    revenue: int = 0
    invoices_created: int = 0


class InvoiceSummary(BaseModel):
    """Per-account aggregation for dashboards.

    ``monthly`` covers the last six calendar months, oldest first. Revenue is
    counted in the month an invoice was paid, creations in the month it was created.
    """

    total_revenue: int = 0
    pending_amount: int = 0
    overdue_amount: int = 0
    invoice_count: int = 0
    paid_count: int = 0
    pending_count: int = 0
    overdue_count: int = 0
    cancelled_count: int = 0
    recent_invoices: list[Invoice] = Field(default_factory=list)
    monthly: list[MonthlyStats] = Field(default_factory=list)

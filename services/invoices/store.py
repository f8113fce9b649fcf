"""In-memory invoice store enforcing the invoice status state machine.

Overdue is never commanded. It is derived on every read from
``(status, due_date, now)`` and written back opportunistically so later
reads agree. Transitions of one invoice are serialized by a lock owned by
that invoice; different invoices never block each other.
"""

import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from services.invoices.models import (
    Invoice,
    InvoiceCreate,
    InvoiceStatus,
    InvoiceSummary,
    MonthlyStats,
    can_transition,
    compute_totals,
    effective_status,
)
from services.rates.converter import CurrencyConverter
from services.shared.config import Settings
from services.shared.errors import InvalidTransitionError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class InvoiceStore:
    """Owns invoice records. Returned invoices are copies; mutate through the store."""

    def __init__(
        self,
        settings: Settings,
        converter: CurrencyConverter,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize invoice store.

        Args:
            settings: Application settings
            converter: Converter used to freeze crypto amounts at creation
            clock: Callable returning the current UTC time
        """
        self.settings = settings
        self.converter = converter
        self._clock = clock or (lambda: datetime.now(UTC))
        self._records: dict[str, Invoice] = {}
        self._record_locks: dict[str, threading.Lock] = {}
        self._sequences: defaultdict[str, int] = defaultdict(int)
        # Guards the dicts above, never held across a transition
        self._index_lock = threading.Lock()

    def _lock_for(self, invoice_id: str) -> threading.Lock:
        with self._index_lock:
            return self._record_locks.setdefault(invoice_id, threading.Lock())

    def _next_number(self, owner_id: str, now: datetime) -> str:
        with self._index_lock:
            self._sequences[owner_id] += 1
            return f"{now.year}-{self._sequences[owner_id]:04d}"

    def _lookup(self, invoice_id: str, owner_id: str | None) -> Invoice:
        record = self._records.get(invoice_id)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            raise NotFoundError(
                f"Invoice '{invoice_id}' not found", details={"invoice_id": invoice_id}
            )
        return record

    def _read(self, record: Invoice, now: datetime) -> Invoice:
        """Apply derived overdue to a record, writing it back when it changed."""
        derived = effective_status(record.status, record.due_date, now)
        if derived == record.status:
            return record.model_copy(deep=True)

        with self._lock_for(record.id):
            current = self._records.get(record.id)
            if current is not None and current.status == InvoiceStatus.PENDING:
                current = current.model_copy(update={"status": InvoiceStatus.OVERDUE})
                self._records[record.id] = current
                logger.info(f"Invoice {current.invoice_number} is past due, marked overdue")
            return (current or record).model_copy(deep=True)

    def create(self, owner_id: str, data: InvoiceCreate) -> Invoice:
        """Create a pending invoice.

        Totals are computed from the line items. When a crypto currency is
        requested, the rate cache is refreshed if stale and the crypto amount
        is frozen from the current rate.

        Args:
            owner_id: Issuing account
            data: Validated creation input

        Returns:
            The new invoice

        Raises:
            ValidationError: Missing client identity or no line items
            UnknownCurrencyError: Requested crypto currency has no known rate
        """
        if not owner_id:
            raise ValidationError("Owner account is required")
        if not data.client.name.strip() or not data.client.email.strip():
            raise ValidationError(
                "Client name and email are required", details={"fields": ["name", "email"]}
            )
        if not data.items:
            raise ValidationError(
                "At least one line item is required", details={"fields": ["items"]}
            )

        totals = compute_totals(data.items, data.tax_rate)

        crypto_currency = data.crypto_currency.upper() if data.crypto_currency else None
        crypto_amount = None
        if crypto_currency:
            self.converter.rate_cache.refresh_if_stale()
            crypto_amount = self.converter.to_crypto(totals.total, crypto_currency)

        now = self._clock()
        invoice = Invoice(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            invoice_number=self._next_number(owner_id, now),
            client=data.client.model_copy(
                update={
                    "name": data.client.name.strip(),
                    "email": data.client.email.strip(),
                    "address": data.client.address.strip(),
                    "tax_id": data.client.tax_id.strip(),
                }
            ),
            items=totals.items,
            subtotal=totals.subtotal,
            tax_rate=data.tax_rate,
            tax=totals.tax,
            total=totals.total,
            currency=self.settings.fiat_currency,
            crypto_currency=crypto_currency,
            crypto_amount=crypto_amount,
            wallet_address=data.wallet_address,
            created_at=now,
            due_date=data.due_date or now + timedelta(days=self.settings.default_due_days),
            note=data.note.strip(),
        )

        with self._index_lock:
            self._records[invoice.id] = invoice

        logger.info(
            f"Created invoice {invoice.invoice_number} for {owner_id}: "
            f"total={invoice.total} {invoice.currency}"
            + (f", {invoice.crypto_amount} {crypto_currency}" if crypto_currency else "")
        )
        return invoice.model_copy(deep=True)

    def get(self, invoice_id: str, owner_id: str | None = None) -> Invoice:
        """Get a single invoice with derived overdue applied.

        Raises:
            NotFoundError: Unknown id, or owned by another account
        """
        return self._read(self._lookup(invoice_id, owner_id), self._clock())

    def query(
        self,
        owner_id: str,
        status: InvoiceStatus | None = None,
        search: str | None = None,
    ) -> list[Invoice]:
        """List an account's invoices, newest first.

        Args:
            owner_id: Owning account
            status: Only return invoices in this (derived) status
            search: Case-insensitive substring over client name, email and invoice number

        Returns:
            Matching invoices
        """
        now = self._clock()
        with self._index_lock:
            owned = [r for r in self._records.values() if r.owner_id == owner_id]

        result = [self._read(record, now) for record in owned]

        if status is not None:
            result = [inv for inv in result if inv.status == status]

        if search and search.strip():
            needle = search.strip().lower()
            result = [
                inv
                for inv in result
                if needle in inv.client.name.lower()
                or needle in inv.client.email.lower()
                or needle in inv.invoice_number.lower()
            ]

        return sorted(result, key=lambda inv: inv.created_at, reverse=True)

    def transition(
        self,
        invoice_id: str,
        target: InvoiceStatus,
        tx_hash: str | None = None,
        verification_details: dict[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> Invoice:
        """Move an invoice to a new status.

        Legality is checked against the derived status while holding the
        invoice's lock, so two concurrent transitions of the same invoice
        cannot both succeed.

        Args:
            invoice_id: Invoice to update
            target: Requested status
            tx_hash: External payment reference, stored only when paying
            verification_details: On-chain evidence, stored only when paying
            owner_id: If given, the invoice must belong to this account

        Returns:
            Updated invoice

        Raises:
            NotFoundError: Unknown invoice
            InvalidTransitionError: Transition not allowed from the current status
        """
        with self._lock_for(invoice_id):
            record = self._lookup(invoice_id, owner_id)
            now = self._clock()
            current = effective_status(record.status, record.due_date, now)

            if not can_transition(current, target):
                raise InvalidTransitionError(
                    f"Cannot change invoice {record.invoice_number} from {current} to {target}",
                    details={"invoice_id": invoice_id, "current": current, "target": target},
                )

            update: dict[str, Any] = {"status": target}
            if target == InvoiceStatus.PAID:
                update["paid_at"] = now
                update["tx_hash"] = tx_hash.strip() if tx_hash and tx_hash.strip() else None
                update["verification_details"] = verification_details

            record = record.model_copy(update=update)
            self._records[invoice_id] = record

        logger.info(f"Invoice {record.invoice_number}: {current} -> {target}")
        return record.model_copy(deep=True)

    def delete(self, invoice_id: str, owner_id: str | None = None) -> bool:
        """Remove an invoice in any status. Deleting a missing invoice is a no-op.

        Returns:
            True if a record was removed
        """
        with self._lock_for(invoice_id), self._index_lock:
            record = self._records.get(invoice_id)
            if record is None or (owner_id is not None and record.owner_id != owner_id):
                return False
            del self._records[invoice_id]
            self._record_locks.pop(invoice_id, None)

        logger.info(f"Deleted invoice {record.invoice_number} ({record.status})")
        return True

    def summarize(self, owner_id: str, recent: int = 5, months: int = 6) -> InvoiceSummary:
        """Aggregate an account's invoices for dashboards."""
        invoices = self.query(owner_id)
        summary = InvoiceSummary(invoice_count=len(invoices), recent_invoices=invoices[:recent])

        for inv in invoices:
            if inv.status == InvoiceStatus.PAID:
                summary.paid_count += 1
                summary.total_revenue += inv.total
            elif inv.status == InvoiceStatus.PENDING:
                summary.pending_count += 1
                summary.pending_amount += inv.total
            elif inv.status == InvoiceStatus.OVERDUE:
                summary.overdue_count += 1
                summary.overdue_amount += inv.total
            else:
                summary.cancelled_count += 1

        summary.monthly = self._monthly_stats(invoices, months)
        return summary

    def _monthly_stats(self, invoices: list[Invoice], months: int) -> list[MonthlyStats]:
        now = self._clock()
        buckets: dict[tuple[int, int], MonthlyStats] = {}
        for back in range(months - 1, -1, -1):
            year, month = divmod(now.year * 12 + now.month - 1 - back, 12)
            buckets[(year, month + 1)] = MonthlyStats(month=f"{year:04d}-{month + 1:02d}")

        for inv in invoices:
            created = buckets.get((inv.created_at.year, inv.created_at.month))
            if created is not None:
                created.invoices_created += 1
            if inv.status == InvoiceStatus.PAID and inv.paid_at is not None:
                paid = buckets.get((inv.paid_at.year, inv.paid_at.month))
                if paid is not None:
                    paid.revenue += inv.total

        return list(buckets.values())

"""Payment confirmation: on-chain verification applied to the invoice store.

``confirm_payment`` is the guarded path: the invoice only becomes paid when a
ledger verifier confirms the transaction. ``apply_manual_status`` is the
unguarded escape hatch for currencies without a verifier; it trusts the
caller and records no evidence beyond the optional reference string.
"""

import logging
from collections.abc import Callable

from prometheus_client import Counter
from pydantic import BaseModel

from services.invoices.models import Invoice, InvoiceStatus
from services.invoices.store import InvoiceStore
from services.shared.config import Settings
from services.shared.errors import (
    AlreadyPaidError,
    InvalidTransitionError,
    MissingReferenceError,
    UnsupportedCurrencyError,
)
from services.verification.base import LedgerVerifier, VerificationFailure, VerificationResult
from services.verification.factory import VerifierRegistry, create_verifier

logger = logging.getLogger(__name__)


payment_verifications_total = Counter(
    "payment_verifications_total",
    "On-chain payment verification attempts",
    ["chain", "outcome"],  # outcome: verified or a failure reason code
)

manual_status_changes_total = Counter(
    "manual_status_changes_total",
    "Unverified manual invoice status changes",
    ["status"],
)


class PaymentConfirmation(BaseModel):
    """Result of a payment confirmation attempt.

    Attributes:
        verified: Whether the invoice is now paid
        invoice: Invoice after the attempt (unchanged when not verified)
        details: Full verifier evidence
        failure: Reason and message when not verified
    """

    verified: bool
    invoice: Invoice
    details: VerificationResult
    failure: VerificationFailure | None = None


class PaymentVerificationOrchestrator:
    """Selects the ledger verifier for an invoice and applies its verdict."""

    def __init__(
        self,
        settings: Settings,
        store: InvoiceStore,
        verifier_factory: Callable[[str], LedgerVerifier] | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            settings: Application settings
            store: Invoice store the verdicts are applied to
            verifier_factory: Builds a verifier for a currency code
        """
        self.settings = settings
        self.store = store
        self._verifier_factory = verifier_factory or (lambda code: create_verifier(code, settings))
        self._verifiers: dict[str, LedgerVerifier] = {}

    def verifier_for(self, currency: str) -> LedgerVerifier:
        """Get (and cache) the verifier for a currency code.

        Raises:
            UnsupportedCurrencyError: If the currency has no verifier
        """
        code = currency.upper()
        if not VerifierRegistry.is_supported(code):
            raise UnsupportedCurrencyError(
                f"On-chain verification is not supported for '{code}', confirm it manually",
                details={"currency": code, "supported": VerifierRegistry.list_currencies()},
            )
        if code not in self._verifiers:
            self._verifiers[code] = self._verifier_factory(code)
        return self._verifiers[code]

    def confirm_payment(
        self, invoice_id: str, tx_hash: str | None, owner_id: str | None = None
    ) -> PaymentConfirmation:
        """Verify a claimed payment on-chain and mark the invoice paid if it checks out.

        Args:
            invoice_id: Invoice being paid
            tx_hash: Transaction reference submitted by the payer
            owner_id: If given, the invoice must belong to this account

        Returns:
            PaymentConfirmation; ``verified`` False leaves the invoice untouched

        Raises:
            NotFoundError: Unknown invoice
            AlreadyPaidError: Invoice is already paid (including by a concurrent call)
            InvalidTransitionError: Invoice is cancelled
            MissingReferenceError: No transaction reference supplied
            UnsupportedCurrencyError: Invoice currency cannot be verified on-chain
        """
        invoice = self.store.get(invoice_id, owner_id=owner_id)

        if invoice.status == InvoiceStatus.PAID:
            raise AlreadyPaidError(
                f"Invoice {invoice.invoice_number} is already paid",
                details={"invoice_id": invoice_id, "tx_hash": invoice.tx_hash},
            )
        if invoice.status == InvoiceStatus.CANCELLED:
            raise InvalidTransitionError(
                f"Invoice {invoice.invoice_number} is cancelled",
                details={"invoice_id": invoice_id, "current": invoice.status},
            )
        if not tx_hash or not tx_hash.strip():
            raise MissingReferenceError("A transaction hash is required to confirm payment")
        tx_hash = tx_hash.strip()

        if not invoice.crypto_currency:
            raise UnsupportedCurrencyError(
                f"Invoice {invoice.invoice_number} has no crypto currency to verify",
                details={"invoice_id": invoice_id},
            )
        verifier = self.verifier_for(invoice.crypto_currency)

        result = verifier.verify(tx_hash, invoice.wallet_address, invoice.crypto_amount)
        payment_verifications_total.labels(
            chain=verifier.chain_family,
            outcome="verified" if result.verified else str(result.reason),
        ).inc()

        if not result.verified:
            logger.info(
                f"Payment for invoice {invoice.invoice_number} not verified "
                f"({result.reason}): {result.error}"
            )
            return PaymentConfirmation(
                verified=False,
                invoice=invoice,
                details=result,
                failure=VerificationFailure(
                    reason=result.reason,
                    message=result.error or str(result.reason),
                    evidence=result,
                ),
            )

        try:
            paid = self.store.transition(
                invoice_id,
                InvoiceStatus.PAID,
                tx_hash=tx_hash,
                verification_details=result.model_dump(mode="json"),
                owner_id=owner_id,
            )
        except InvalidTransitionError as e:
            # Another confirmation won the race while we were talking to the explorer
            latest = self.store.get(invoice_id, owner_id=owner_id)
            if latest.status == InvoiceStatus.PAID:
                raise AlreadyPaidError(
                    f"Invoice {latest.invoice_number} is already paid",
                    details={"invoice_id": invoice_id, "tx_hash": latest.tx_hash},
                ) from e
            raise

        logger.info(
            f"Invoice {paid.invoice_number} paid, verified on-chain: {tx_hash} "
            f"({result.confirmations} confirmations)"
        )
        return PaymentConfirmation(verified=True, invoice=paid, details=result)

    def apply_manual_status(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        tx_hash: str | None = None,
        owner_id: str | None = None,
    ) -> Invoice:
        """Change status without on-chain verification.

        Lower assurance than ``confirm_payment``: a payment marked this way is
        trusted as claimed and carries no ``verification_details``.

        Raises:
            NotFoundError: Unknown invoice
            InvalidTransitionError: Transition not allowed
        """
        invoice = self.store.transition(invoice_id, status, tx_hash=tx_hash, owner_id=owner_id)
        manual_status_changes_total.labels(status=str(status)).inc()
        if status == InvoiceStatus.PAID:
            logger.warning(
                f"Invoice {invoice.invoice_number} marked paid manually without on-chain "
                f"verification (reference: {invoice.tx_hash or 'none'})"
            )
        return invoice

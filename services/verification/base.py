"""Abstract base class for ledger verifiers.

One implementation per chain family (EVM, UTXO). Every verifier answers the
same question: does transaction ``tx_hash`` pay ``expected_amount`` to
``expected_address``, and is it settled on-chain?

Verification is read-only evidence gathering against public explorer APIs.
A negative answer, including an unreachable explorer, is a normal result and
is returned, never raised.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from enum import StrEnum
from typing import Any

import httpx
from pydantic import BaseModel

from services.shared.config import Settings


class VerificationReason(StrEnum):
    """Why a transaction did not satisfy an invoice."""

    TRANSACTION_NOT_FOUND = "TransactionNotFound"
    WRONG_DESTINATION = "WrongDestination"
    AMOUNT_MISMATCH = "AmountMismatch"
    NOT_YET_CONFIRMED = "NotYetConfirmed"
    TRANSACTION_FAILED = "TransactionFailed"
    EXPLORER_ERROR = "ExplorerError"
    NOT_CONFIGURED = "NotConfigured"


class VerificationResult(BaseModel):
    """Outcome of a single verification attempt.

    Attributes:
        verified: Whether the transaction satisfies the invoice
        chain_family: Verifier family that produced the result (e.g. 'evm', 'utxo')
        currency: Currency code the transaction was checked as
        tx_hash: Transaction that was checked
        reason: Failure reason code (None when verified)
        error: Human-readable failure description
        confirmations: Chain height minus inclusion height, evidence only
        block_height: Block the transaction was included in
        from_address: Sender, when the explorer exposes it
        to_address: Observed recipient
        value: Observed transferred value in whole coin units
    """

    verified: bool
    chain_family: str
    currency: str
    tx_hash: str
    reason: VerificationReason | None = None
    error: str | None = None
    confirmations: int | None = None
    block_height: int | None = None
    from_address: str | None = None
    to_address: str | None = None
    value: Decimal | None = None


class VerificationFailure(BaseModel):
    """Negative verification outcome handed back to the caller for display.

    Not persisted; the invoice is left untouched when this is produced.
    """

    reason: VerificationReason
    message: str
    evidence: VerificationResult


def amount_within_tolerance(observed: Decimal, expected: Decimal, tolerance: Decimal) -> bool:
    """Absolute-epsilon comparison, independent of the currency's unit scale."""
    return abs(observed - expected) <= tolerance


class LedgerVerifier(ABC):
    """Abstract base class for chain-family verifiers.

    Implementations must be stateless between calls: one instance can serve
    concurrent verifications for different invoices.
    """

    def __init__(
        self, settings: Settings, currency: str, client: httpx.Client | None = None
    ) -> None:
        """Initialize verifier.

        Args:
            settings: Application settings
            currency: Currency code this instance verifies (e.g. 'ETH', 'USDC')
            client: HTTP client for the explorer (created with the configured timeout if omitted)
        """
        self.settings = settings
        self.currency = currency.upper()
        self._client = client or httpx.Client(timeout=settings.http_timeout_seconds)

    @abstractmethod
    def verify(
        self,
        tx_hash: str,
        expected_address: str | None = None,
        expected_amount: Decimal | None = None,
    ) -> VerificationResult:
        """Check a transaction against an expected destination and amount.

        Args:
            tx_hash: Transaction identifier
            expected_address: Destination wallet; skipped when None
            expected_amount: Amount in whole coin units; skipped when None

        Returns:
            VerificationResult, verified or carrying a reason code
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the verifier is configured (API keys, endpoints)."""
        pass

    @property
    @abstractmethod
    def chain_family(self) -> str:
        """Chain family identifier for logging/metrics (e.g. 'evm')."""
        pass

    def _failure(
        self, tx_hash: str, reason: VerificationReason, error: str, **evidence: Any
    ) -> VerificationResult:
        return VerificationResult(
            verified=False,
            chain_family=self.chain_family,
            currency=self.currency,
            tx_hash=tx_hash,
            reason=reason,
            error=error,
            **evidence,
        )

    def _success(self, tx_hash: str, **evidence: Any) -> VerificationResult:
        return VerificationResult(
            verified=True,
            chain_family=self.chain_family,
            currency=self.currency,
            tx_hash=tx_hash,
            **evidence,
        )

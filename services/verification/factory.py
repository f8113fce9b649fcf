"""Factory for creating ledger verifiers per currency.

Implements Factory Pattern with a registry lookup table keyed by currency code.
Only currencies in the table can be verified on-chain; everything else needs
manual (unverified) confirmation.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging

import httpx

from services.shared.config import Settings
from services.shared.errors import UnsupportedCurrencyError
from services.verification.base import LedgerVerifier
from services.verification.evm_verifier import EvmLedgerVerifier
from services.verification.utxo_verifier import UtxoLedgerVerifier

logger = logging.getLogger(__name__)


class VerifierRegistry:
    """Registry of currency codes to chain-family verifier classes.

    Supports runtime registration of new currencies.
    """

    _verifiers: dict[str, type[LedgerVerifier]] = {
        "ETH": EvmLedgerVerifier,
        "USDC": EvmLedgerVerifier,
        "BTC": UtxoLedgerVerifier,
    }

    @classmethod
    def register(cls, currency: str, verifier_class: type[LedgerVerifier]) -> None:
        """Register a verifier for a currency code.

        Args:
            currency: Currency code (e.g. 'ETH')
            verifier_class: Class implementing LedgerVerifier
        """
        cls._verifiers[currency.upper()] = verifier_class
        logger.info(f"Registered ledger verifier for {currency.upper()}: {verifier_class.__name__}")

    @classmethod
    def is_supported(cls, currency: str | None) -> bool:
        return bool(currency) and currency.upper() in cls._verifiers

    @classmethod
    def get_verifier_class(cls, currency: str) -> type[LedgerVerifier]:
        """Get verifier class by currency code.

        Raises:
            UnsupportedCurrencyError: If no verifier is registered for the code
        """
        code = currency.upper()
        if code not in cls._verifiers:
            available = ", ".join(cls._verifiers.keys())
            raise UnsupportedCurrencyError(
                f"On-chain verification is not supported for '{currency}'. "
                f"Supported currencies: {available}",
                details={"currency": currency, "supported": list(cls._verifiers)},
            )
        return cls._verifiers[code]

    @classmethod
    def list_currencies(cls) -> list[str]:
        return list(cls._verifiers.keys())


def create_verifier(
    currency: str, settings: Settings, client: httpx.Client | None = None
) -> LedgerVerifier:
    """Create the ledger verifier for a currency.

    Logs a warning if the verifier is not fully configured (e.g. missing API key);
    such a verifier still answers, with a NotConfigured result.

    Args:
        currency: Currency code of the invoice
        settings: Application settings
        client: Optional shared HTTP client

    Returns:
        Verifier instance for the currency's chain family

    Raises:
        UnsupportedCurrencyError: If the currency cannot be verified on-chain

    Example:
        >>> verifier = create_verifier("BTC", Settings())
        >>> result = verifier.verify("4a5e1e...", "bc1q...", Decimal("0.01"))
    """
    verifier_class = VerifierRegistry.get_verifier_class(currency)
    verifier = verifier_class(settings, currency, client=client)

    if not verifier.is_available():
        logger.warning(
            f"Ledger verifier for {currency.upper()} is not fully available. "
            f"Check configuration (e.g. APP_ETHERSCAN_API_KEY)."
        )

    logger.info(f"Created {verifier.chain_family} ledger verifier for {currency.upper()}")
    return verifier

"""UTXO-family ledger verifier backed by an Esplora explorer (Blockstream).

A bitcoin transaction pays the invoice when one or more of its outputs lock
funds to the invoice wallet. Their values are summed and compared to the
expected amount. Confirmation depth comes from the current tip height.

See: https://github.com/Blockstream/esplora/blob/master/API.md
"""

import logging
from decimal import Decimal
from typing import Any

import httpx

from services.verification.base import (
    LedgerVerifier,
    VerificationReason,
    VerificationResult,
    amount_within_tolerance,
)

logger = logging.getLogger(__name__)

SATS_PER_BTC = Decimal(100_000_000)

BECH32_PREFIXES = ("bc1", "tb1", "bcrt1")


def same_address(observed: str | None, expected: str) -> bool:
    """Compare bitcoin addresses. Bech32 is case-insensitive, base58 is not."""
    if not observed:
        return False
    if expected.lower().startswith(BECH32_PREFIXES):
        return observed.lower() == expected.lower()
    return observed == expected


class UtxoLedgerVerifier(LedgerVerifier):
    """Esplora-based verifier for bitcoin. Needs no API key."""

    @property
    def chain_family(self) -> str:
        return "utxo"

    def is_available(self) -> bool:
        return bool(self.settings.blockstream_api_url)

    @property
    def _base_url(self) -> str:
        return self.settings.blockstream_api_url.rstrip("/")

    def verify(
        self,
        tx_hash: str,
        expected_address: str | None = None,
        expected_amount: Decimal | None = None,
    ) -> VerificationResult:
        """Verify a bitcoin payment.

        Args:
            tx_hash: Transaction id (hex)
            expected_address: Wallet that must receive an output
            expected_amount: Expected BTC received by that wallet

        Returns:
            VerificationResult with confirmation depth on success
        """
        try:
            response = self._client.get(f"{self._base_url}/tx/{tx_hash}")
            # Esplora answers 400 for malformed ids and 404 for unknown ones
            if response.status_code in (400, 404):
                return self._failure(
                    tx_hash, VerificationReason.TRANSACTION_NOT_FOUND, "Transaction not found"
                )
            response.raise_for_status()
            tx: dict[str, Any] = response.json()

            outputs = tx.get("vout") or []
            sender = self._first_input_address(tx)

            if expected_address:
                paid = [
                    o
                    for o in outputs
                    if same_address(o.get("scriptpubkey_address"), expected_address)
                ]
                if not paid:
                    observed = ", ".join(
                        o["scriptpubkey_address"] for o in outputs if o.get("scriptpubkey_address")
                    )
                    return self._failure(
                        tx_hash,
                        VerificationReason.WRONG_DESTINATION,
                        f"No output pays {expected_address}",
                        from_address=sender,
                        to_address=observed or None,
                    )
                recipient: str | None = expected_address
            else:
                paid = outputs
                recipient = next((o.get("scriptpubkey_address") for o in outputs), None)

            value = sum((Decimal(o.get("value", 0)) for o in paid), Decimal(0)) / SATS_PER_BTC

            if expected_amount is not None and not amount_within_tolerance(
                value, expected_amount, self.settings.amount_tolerance
            ):
                return self._failure(
                    tx_hash,
                    VerificationReason.AMOUNT_MISMATCH,
                    f"Received {value:.8f} BTC, expected {expected_amount}",
                    from_address=sender,
                    to_address=recipient,
                    value=value,
                )

            status = tx.get("status") or {}
            if not status.get("confirmed"):
                return self._failure(
                    tx_hash,
                    VerificationReason.NOT_YET_CONFIRMED,
                    "Transaction is in the mempool but not confirmed",
                    from_address=sender,
                    to_address=recipient,
                    value=value,
                )

            block_height = int(status["block_height"])

        except httpx.HTTPError as e:
            logger.warning(f"Blockstream request failed for {tx_hash}: {e}")
            return self._failure(
                tx_hash, VerificationReason.EXPLORER_ERROR, f"Blockstream request failed: {e}"
            )
        except (ArithmeticError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unexpected Blockstream response for {tx_hash}: {e}")
            return self._failure(
                tx_hash, VerificationReason.EXPLORER_ERROR, f"Unexpected Blockstream response: {e}"
            )

        return self._success(
            tx_hash,
            confirmations=self._confirmations(block_height),
            block_height=block_height,
            from_address=sender,
            to_address=recipient,
            value=value,
        )

    def _confirmations(self, block_height: int) -> int | None:
        """Depth below the current tip. Supplementary, so failures yield None."""
        try:
            response = self._client.get(f"{self._base_url}/blocks/tip/height")
            response.raise_for_status()
            return max(int(response.text.strip()) - block_height, 0)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not read Blockstream tip height: {e}")
            return None

    @staticmethod
    def _first_input_address(tx: dict[str, Any]) -> str | None:
        for vin in tx.get("vin") or []:
            address = (vin.get("prevout") or {}).get("scriptpubkey_address")
            if address:
                return str(address)
        return None

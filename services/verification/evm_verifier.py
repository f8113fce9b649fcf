"""EVM-family ledger verifier backed by the Etherscan proxy API.

Checks native ETH transfers and ERC-20 token transfers (USDC). Uses three
JSON-RPC proxy calls: the transaction itself, its receipt (inclusion and
success status) and the current block number for confirmation depth.

See: https://docs.etherscan.io/api-endpoints/geth-parity-proxy
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx

from services.shared.errors import ExternalServiceError
from services.verification.base import (
    LedgerVerifier,
    VerificationReason,
    VerificationResult,
    amount_within_tolerance,
)

logger = logging.getLogger(__name__)

WEI_PER_ETH = Decimal(10) ** 18

# transfer(address,uint256)
TRANSFER_SELECTOR = "0xa9059cbb"


@dataclass(frozen=True)
class Erc20Token:
    contract: str
    decimals: int


ERC20_TOKENS: dict[str, Erc20Token] = {
    "USDC": Erc20Token(contract="0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", decimals=6),
}


class EvmLedgerVerifier(LedgerVerifier):
    """Etherscan-based verifier for ETH and ERC-20 tokens.

    Requires APP_ETHERSCAN_API_KEY.
    """

    @property
    def chain_family(self) -> str:
        return "evm"

    def is_available(self) -> bool:
        return bool(self.settings.etherscan_api_key)

    def verify(
        self,
        tx_hash: str,
        expected_address: str | None = None,
        expected_amount: Decimal | None = None,
    ) -> VerificationResult:
        """Verify an ETH or ERC-20 transfer.

        Args:
            tx_hash: 0x-prefixed transaction hash
            expected_address: Destination wallet, compared case-insensitively
            expected_amount: Expected amount in whole coin units

        Returns:
            VerificationResult with confirmation depth on success
        """
        if not self.is_available():
            return self._failure(
                tx_hash,
                VerificationReason.NOT_CONFIGURED,
                "Etherscan API key is not configured (APP_ETHERSCAN_API_KEY)",
            )

        try:
            tx = self._proxy("eth_getTransactionByHash", txhash=tx_hash)
            if not tx:
                return self._failure(
                    tx_hash, VerificationReason.TRANSACTION_NOT_FOUND, "Transaction not found"
                )

            recipient, value = self._transfer_of(tx)
            sender = tx.get("from")

            if expected_address and (recipient or "").lower() != expected_address.lower():
                return self._failure(
                    tx_hash,
                    VerificationReason.WRONG_DESTINATION,
                    f"Transaction pays {recipient}, expected {expected_address}",
                    from_address=sender,
                    to_address=recipient,
                    value=value,
                )

            if expected_amount is not None and not amount_within_tolerance(
                value, expected_amount, self.settings.amount_tolerance
            ):
                return self._failure(
                    tx_hash,
                    VerificationReason.AMOUNT_MISMATCH,
                    f"Received {value:.6f} {self.currency}, expected {expected_amount}",
                    from_address=sender,
                    to_address=recipient,
                    value=value,
                )

            receipt = self._proxy("eth_getTransactionReceipt", txhash=tx_hash)
            if not receipt or not receipt.get("blockNumber"):
                return self._failure(
                    tx_hash,
                    VerificationReason.NOT_YET_CONFIRMED,
                    "Transaction is not yet included in a block",
                    from_address=sender,
                    to_address=recipient,
                    value=value,
                )

            inclusion_height = int(receipt["blockNumber"], 16)
            if receipt.get("status") == "0x0":
                return self._failure(
                    tx_hash,
                    VerificationReason.TRANSACTION_FAILED,
                    "Transaction reverted on-chain",
                    block_height=inclusion_height,
                    from_address=sender,
                    to_address=recipient,
                    value=value,
                )

            head = int(self._proxy("eth_blockNumber"), 16)

        except httpx.HTTPError as e:
            logger.warning(f"Etherscan request failed for {tx_hash}: {e}")
            return self._failure(
                tx_hash, VerificationReason.EXPLORER_ERROR, f"Etherscan request failed: {e}"
            )
        except ExternalServiceError as e:
            logger.warning(f"Etherscan rejected request for {tx_hash}: {e}")
            return self._failure(
                tx_hash, VerificationReason.EXPLORER_ERROR, f"Etherscan error: {e}"
            )
        except (ArithmeticError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unexpected Etherscan response for {tx_hash}: {e}")
            return self._failure(
                tx_hash, VerificationReason.EXPLORER_ERROR, f"Unexpected Etherscan response: {e}"
            )

        return self._success(
            tx_hash,
            confirmations=max(head - inclusion_height, 0),
            block_height=inclusion_height,
            from_address=sender,
            to_address=recipient,
            value=value,
        )

    def _proxy(self, action: str, **params: str) -> Any:
        """Call an Etherscan proxy action and return its JSON-RPC ``result``.

        Raises:
            httpx.HTTPError: Network failure, timeout or non-2xx status
            ExternalServiceError: Etherscan answered with an error payload
        """
        response = self._client.get(
            self.settings.etherscan_api_url,
            params={
                "chainid": str(self.settings.etherscan_chain_id),
                "module": "proxy",
                "action": action,
                "apikey": self.settings.etherscan_api_key,
                **params,
            },
        )
        response.raise_for_status()
        data = response.json()

        if data.get("error"):
            error = data["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ExternalServiceError(message)
        # Non-proxy error envelope, e.g. invalid API key or rate limit
        if data.get("status") == "0":
            raise ExternalServiceError(f"{data.get('message', 'NOTOK')}: {data.get('result')}")
        return data.get("result")

    def _transfer_of(self, tx: dict[str, Any]) -> tuple[str | None, Decimal]:
        """Extract the paid recipient and value from a transaction.

        Native transfers use ``to``/``value``. Token transfers must call the
        token contract and are decoded from ``transfer(address,uint256)``
        calldata; anything else reports the called address and zero value.

        Returns:
            Tuple of (recipient, value in whole units)
        """
        token = ERC20_TOKENS.get(self.currency)
        if token is None:
            return tx.get("to"), Decimal(int(tx["value"], 16)) / WEI_PER_ETH

        called = (tx.get("to") or "").lower()
        calldata = (tx.get("input") or "").lower()
        is_transfer = calldata.startswith(TRANSFER_SELECTOR) and len(calldata) >= 138
        if called != token.contract or not is_transfer:
            return tx.get("to"), Decimal(0)

        # 4-byte selector, then two 32-byte words: padded recipient and amount
        recipient = "0x" + calldata[34:74]
        amount = int(calldata[74:138], 16)
        return recipient, Decimal(amount) / (Decimal(10) ** token.decimals)

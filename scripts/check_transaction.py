#!/usr/bin/env python3
"""Check a transaction against an expected payment, without touching invoices.

Useful to debug why a payment confirmation was rejected.

Usage:
    python scripts/check_transaction.py BTC <txid> --address bc1q... --amount 0.0123
    python scripts/check_transaction.py ETH 0xabc... --address 0x123... --amount 0.5

Requirements:
    - APP_ETHERSCAN_API_KEY environment variable set for ETH / USDC
"""

import argparse
import sys
from decimal import Decimal, InvalidOperation

from services.shared.config import Settings
from services.shared.errors import UnsupportedCurrencyError
from services.verification.factory import VerifierRegistry, create_verifier


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify a transaction on-chain")
    parser.add_argument(
        "currency", help=f"Currency code ({', '.join(VerifierRegistry.list_currencies())})"
    )
    parser.add_argument("tx_hash", help="Transaction hash / id")
    parser.add_argument("--address", default=None, help="Expected destination wallet")
    parser.add_argument("--amount", default=None, help="Expected amount in whole coin units")
    return parser.parse_args(argv)


def check_transaction(argv: list[str] | None = None) -> int:
    """Run a single verification and print the evidence.

    Returns:
        Process exit code: 0 verified, 1 not verified, 2 usage error
    """
    args = parse_args(argv)

    expected_amount = None
    if args.amount is not None:
        try:
            expected_amount = Decimal(args.amount)
        except InvalidOperation:
            print(f"Invalid amount: {args.amount}")
            return 2

    try:
        verifier = create_verifier(args.currency, Settings())
    except UnsupportedCurrencyError as e:
        print(e.message)
        return 2

    print("=" * 80)
    print(f"VERIFYING {args.currency.upper()} TRANSACTION ({verifier.chain_family})")
    print("=" * 80)

    result = verifier.verify(args.tx_hash, args.address, expected_amount)

    for field, value in result.model_dump().items():
        if value is not None:
            print(f"  {field:<14} {value}")

    print("-" * 80)
    if result.verified:
        print("✓ Transaction satisfies the expected payment")
        return 0
    print(f"✗ Not verified: {result.reason}")
    return 1


if __name__ == "__main__":
    sys.exit(check_transaction())

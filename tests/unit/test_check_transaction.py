"""Unit tests for the check_transaction script."""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from scripts.check_transaction import check_transaction
from services.verification.base import VerificationReason, VerificationResult

TXID = "c" * 64


def _result(verified: bool, reason: VerificationReason | None = None) -> VerificationResult:
    return VerificationResult(
        verified=verified,
        chain_family="utxo",
        currency="BTC",
        tx_hash=TXID,
        reason=reason,
        confirmations=6 if verified else None,
    )


@pytest.fixture
def verifier() -> MagicMock:
    mock = MagicMock()
    mock.chain_family = "utxo"
    return mock


def test_verified_transaction_exits_zero(
    verifier: MagicMock, capsys: pytest.CaptureFixture[str]
) -> None:
    verifier.verify.return_value = _result(True)

    with patch("scripts.check_transaction.create_verifier", return_value=verifier):
        code = check_transaction(["btc", TXID, "--address", "bc1qxyz", "--amount", "0.0123"])

    assert code == 0
    verifier.verify.assert_called_once_with(TXID, "bc1qxyz", Decimal("0.0123"))
    output = capsys.readouterr().out
    assert "VERIFYING BTC TRANSACTION (utxo)" in output
    assert "confirmations" in output


def test_rejected_transaction_exits_one(
    verifier: MagicMock, capsys: pytest.CaptureFixture[str]
) -> None:
    verifier.verify.return_value = _result(False, VerificationReason.AMOUNT_MISMATCH)

    with patch("scripts.check_transaction.create_verifier", return_value=verifier):
        code = check_transaction(["BTC", TXID])

    assert code == 1
    assert "AmountMismatch" in capsys.readouterr().out


def test_invalid_amount_exits_two(capsys: pytest.CaptureFixture[str]) -> None:
    code = check_transaction(["BTC", TXID, "--amount", "lots"])

    assert code == 2
    assert "Invalid amount" in capsys.readouterr().out


def test_unsupported_currency_exits_two(capsys: pytest.CaptureFixture[str]) -> None:
    code = check_transaction(["SOL", TXID])

    assert code == 2
    assert "not supported" in capsys.readouterr().out

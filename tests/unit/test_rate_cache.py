"""Unit tests for RateCache.

Tests the throttled refresh and fallback behaviour with a mocked oracle client.
"""

import logging
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from services.rates.cache import FALLBACK_RATES, RateCache


@pytest.fixture
def oracle_payload() -> dict:
    """Oracle answer for all supported coins (CZK)."""
    return {
        "ethereum": {"czk": 90000.5},
        "bitcoin": {"czk": 1600000},
        "usd-coin": {"czk": 23.4},
        "solana": {"czk": 3300},
    }


class TestRateCacheInitialState:
    """Test the cache before any oracle answer."""

    def test_starts_with_fallback_rates(self, rate_cache: RateCache) -> None:
        """Fallback table is served until the oracle answers."""
        snapshot = rate_cache.snapshot()

        assert snapshot.rates == FALLBACK_RATES
        assert snapshot.refreshed_at is None
        assert snapshot.fiat_currency == "CZK"

    def test_fallback_snapshot_is_stale(self, rate_cache: RateCache) -> None:
        """Never-refreshed rates are reported stale."""
        assert rate_cache.is_stale() is True
        assert rate_cache.snapshot().is_stale is True

    def test_get_rate_is_case_insensitive(self, rate_cache: RateCache) -> None:
        assert rate_cache.get_rate("eth") == Decimal("85000")
        assert rate_cache.get_rate("DOGE") is None


class TestRateCacheRefresh:
    """Test oracle refresh."""

    def test_refresh_updates_rates(
        self, rate_cache: RateCache, oracle_client: MagicMock, oracle_payload: dict, make_response
    ) -> None:
        """Successful refresh replaces rates and stamps the snapshot."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response(oracle_payload)

        snapshot = rate_cache.refresh()

        assert snapshot.rates["ETH"] == Decimal("90000.5")
        assert snapshot.rates["USDC"] == Decimal("23.4")
        assert snapshot.refreshed_at is not None
        assert snapshot.is_stale is False

    def test_lightning_mirrors_bitcoin(
        self, rate_cache: RateCache, oracle_client: MagicMock, oracle_payload: dict, make_response
    ) -> None:
        """LN is priced as BTC."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response(oracle_payload)

        rate_cache.refresh()

        assert rate_cache.get_rate("LN") == Decimal("1600000")

    def test_request_asks_for_configured_fiat(
        self, rate_cache: RateCache, oracle_client: MagicMock, oracle_payload: dict, make_response
    ) -> None:
        """Oracle is queried for all coin ids in the configured fiat currency."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response(oracle_payload)

        rate_cache.refresh()

        params = oracle_client.get.call_args.kwargs["params"]
        assert params["vs_currencies"] == "czk"
        assert set(params["ids"].split(",")) == {"ethereum", "bitcoin", "usd-coin", "solana"}

    def test_partial_response_keeps_missing_symbols(
        self, rate_cache: RateCache, oracle_client: MagicMock, make_response
    ) -> None:
        """Symbols absent from the oracle answer keep their previous rate."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response({"bitcoin": {"czk": 1700000}})

        rate_cache.refresh()

        assert rate_cache.get_rate("BTC") == Decimal("1700000")
        assert rate_cache.get_rate("ETH") == FALLBACK_RATES["ETH"]
        assert rate_cache.get_rate("SOL") == FALLBACK_RATES["SOL"]

    def test_unusable_prices_are_ignored(
        self, rate_cache: RateCache, oracle_client: MagicMock, make_response
    ) -> None:
        """Zero, negative and non-numeric prices never replace a rate."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response(
            {"ethereum": {"czk": 0}, "bitcoin": {"czk": "n/a"}, "solana": {"czk": -5}}
        )

        rate_cache.refresh()

        assert rate_cache.get_rate("ETH") == FALLBACK_RATES["ETH"]
        assert rate_cache.get_rate("BTC") == FALLBACK_RATES["BTC"]
        assert rate_cache.get_rate("SOL") == FALLBACK_RATES["SOL"]

    def test_non_finite_prices_are_ignored(
        self,
        rate_cache: RateCache,
        oracle_client: MagicMock,
        make_response,
        store,
        invoice_input,
    ) -> None:
        """NaN and Infinity never reach the cache, so invoicing keeps working."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response(
            text='{"ethereum": {"czk": NaN}, "bitcoin": {"czk": Infinity}, '
            '"solana": {"czk": 3300}}'
        )

        snapshot = rate_cache.refresh()

        assert snapshot.rates["ETH"] == FALLBACK_RATES["ETH"]
        assert snapshot.rates["BTC"] == FALLBACK_RATES["BTC"]
        assert snapshot.rates["SOL"] == Decimal("3300")
        invoice = store.create("acct-1", invoice_input(crypto_currency="ETH"))
        assert invoice.crypto_amount == Decimal("0.01423529")

    def test_no_usable_prices_is_a_failed_refresh(
        self,
        rate_cache: RateCache,
        oracle_client: MagicMock,
        make_response,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """An answer without any usable price leaves the snapshot unstamped and stale."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response({"status": {"error_code": 429}})

        with caplog.at_level(logging.WARNING):
            snapshot = rate_cache.refresh()

        assert snapshot.refreshed_at is None
        assert snapshot.is_stale is True
        assert snapshot.rates == FALLBACK_RATES
        assert "no usable prices" in caplog.text

    def test_unreachable_oracle_keeps_previous_rates(
        self, rate_cache: RateCache, oracle_client: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Oracle failure is logged, retried once, and never raised."""
        with caplog.at_level(logging.WARNING):
            snapshot = rate_cache.refresh()

        assert snapshot.rates == FALLBACK_RATES
        assert snapshot.is_stale is True
        assert oracle_client.get.call_count == 2
        assert "keeping previous rates" in caplog.text

    def test_server_error_keeps_previous_rates(
        self, rate_cache: RateCache, oracle_client: MagicMock, oracle_payload: dict, make_response
    ) -> None:
        """A non-2xx answer after a good refresh leaves the good rates in place."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response(oracle_payload)
        rate_cache.refresh()

        oracle_client.get.return_value = make_response({"status": "down"}, status_code=503)
        snapshot = rate_cache.refresh()

        assert snapshot.rates["ETH"] == Decimal("90000.5")

    def test_server_error_is_retried_once(
        self, rate_cache: RateCache, oracle_client: MagicMock, make_response
    ) -> None:
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response({}, status_code=503)

        rate_cache.refresh()

        assert oracle_client.get.call_count == 2

    @pytest.mark.parametrize("status_code", [400, 404, 429])
    def test_client_error_is_not_retried(
        self, rate_cache: RateCache, oracle_client: MagicMock, make_response, status_code: int
    ) -> None:
        """A 4xx answer will not change on a second attempt."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response({}, status_code=status_code)

        snapshot = rate_cache.refresh()

        assert oracle_client.get.call_count == 1
        assert snapshot.rates == FALLBACK_RATES
        assert snapshot.refreshed_at is None

    def test_malformed_body_keeps_previous_rates(
        self, rate_cache: RateCache, oracle_client: MagicMock, make_response
    ) -> None:
        """A non-object JSON body is treated as an oracle failure."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response(["not", "an", "object"])

        snapshot = rate_cache.refresh()

        assert snapshot.rates == FALLBACK_RATES
        assert snapshot.refreshed_at is None


class TestRateCacheThrottle:
    """Test refresh throttling and staleness."""

    def test_refresh_if_stale_is_throttled(
        self,
        rate_cache: RateCache,
        oracle_client: MagicMock,
        oracle_payload: dict,
        make_response,
        clock,
    ) -> None:
        """Only one oracle call per refresh interval."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response(oracle_payload)

        rate_cache.refresh_if_stale()
        clock.advance(minutes=4)
        rate_cache.refresh_if_stale()

        assert oracle_client.get.call_count == 1

        clock.advance(minutes=2)
        rate_cache.refresh_if_stale()

        assert oracle_client.get.call_count == 2

    def test_failed_attempt_counts_towards_interval(
        self, rate_cache: RateCache, oracle_client: MagicMock, clock
    ) -> None:
        """An unreachable oracle is not retried on every call."""
        rate_cache.refresh_if_stale()
        calls_after_first_attempt = oracle_client.get.call_count

        clock.advance(seconds=30)
        rate_cache.refresh_if_stale()

        assert oracle_client.get.call_count == calls_after_first_attempt

    def test_snapshot_becomes_stale_after_max_staleness(
        self,
        rate_cache: RateCache,
        oracle_client: MagicMock,
        oracle_payload: dict,
        make_response,
        clock,
    ) -> None:
        """Rates older than the max staleness are still served, flagged stale."""
        oracle_client.get.side_effect = None
        oracle_client.get.return_value = make_response(oracle_payload)
        rate_cache.refresh()

        oracle_client.get.side_effect = httpx.ConnectError("down")
        clock.advance(minutes=16)
        snapshot = rate_cache.refresh_if_stale()

        assert snapshot.is_stale is True
        assert snapshot.rates["ETH"] == Decimal("90000.5")

    def test_snapshot_is_a_copy(self, rate_cache: RateCache) -> None:
        """Mutating a snapshot never touches the cache."""
        snapshot = rate_cache.snapshot()
        snapshot.rates["ETH"] = Decimal("1")

        assert rate_cache.get_rate("ETH") == FALLBACK_RATES["ETH"]

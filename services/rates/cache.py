"""Crypto-to-fiat rate cache.

Holds one fiat price per supported cryptocurrency. Starts from a baked-in
fallback table and is refreshed from a CoinGecko-compatible price oracle at
most once per refresh interval. Oracle failures never surface to callers:
the previous snapshot is kept and conversions carry on with it, flagged stale.

Oracle API:
https://docs.coingecko.com/reference/simple-price
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from prometheus_client import Counter, Gauge
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.shared.config import Settings
from services.shared.errors import ExternalServiceError

logger = logging.getLogger(__name__)


rate_refresh_total = Counter(
    "rate_refresh_total",
    "Rate oracle refresh attempts",
    ["status"],  # success, failed
)

rate_snapshot_age_seconds = Gauge(
    "rate_snapshot_age_seconds",
    "Age of the served rate snapshot at the last read",
)

# Oracle coin ids per currency code
COIN_IDS: dict[str, str] = {
    "ETH": "ethereum",
    "BTC": "bitcoin",
    "USDC": "usd-coin",
    "SOL": "solana",
}

# Codes priced from another code's rate (Lightning settles in bitcoin)
MIRRORED_CODES: dict[str, str] = {"LN": "BTC"}

# Served until the oracle answers for the first time (CZK)
FALLBACK_RATES: dict[str, Decimal] = {
    "ETH": Decimal("85000"),
    "BTC": Decimal("1550000"),
    "USDC": Decimal("23"),
    "SOL": Decimal("3200"),
    "LN": Decimal("1550000"),
}


def _is_transient(error: BaseException) -> bool:
    """Transport failures, timeouts and 5xx answers are worth a second attempt."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return isinstance(error, httpx.TransportError)


class RateSnapshot(BaseModel):
    """Point-in-time copy of the cached rates.

    Attributes:
        rates: Fiat price per currency code
        fiat_currency: Fiat currency the prices are quoted in
        refreshed_at: Last successful oracle refresh, None while on fallback rates
        is_stale: Whether the snapshot is older than the configured max staleness
    """

    rates: dict[str, Decimal]
    fiat_currency: str
    refreshed_at: datetime | None = None
    is_stale: bool


class RateCache:
    """In-memory rate cache with a throttled, best-effort refresh.

    There is no lock around refreshes. Overlapping fetches write the same
    oracle answer, so the last writer wins and values converge.
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.Client | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize rate cache seeded with fallback rates.

        Args:
            settings: Application settings
            client: HTTP client for the oracle (created if not provided)
            clock: Callable returning the current UTC time
        """
        self.settings = settings
        self._client = client or httpx.Client(timeout=settings.http_timeout_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._rates: dict[str, Decimal] = dict(FALLBACK_RATES)
        self._refreshed_at: datetime | None = None
        self._last_attempt_at: datetime | None = None

    @property
    def refresh_interval(self) -> timedelta:
        return timedelta(seconds=self.settings.rate_refresh_interval_seconds)

    @property
    def max_staleness(self) -> timedelta:
        return timedelta(seconds=self.settings.rate_max_staleness_seconds)

    def supported_currencies(self) -> list[str]:
        """List currency codes that currently have a cached rate."""
        return sorted(self._rates)

    def get_rate(self, currency: str) -> Decimal | None:
        """Get cached fiat price for a currency code.

        Args:
            currency: Currency code (case-insensitive)

        Returns:
            Fiat price, or None if the code has no cached rate
        """
        return self._rates.get(currency.upper())

    def is_stale(self) -> bool:
        """Check whether the served rates are older than the max staleness."""
        if self._refreshed_at is None:
            return True
        return self._clock() - self._refreshed_at > self.max_staleness

    def snapshot(self) -> RateSnapshot:
        """Stable read of the current rates.

        Used by invoice creation and by external consumers such as wallet
        valuation. Stale snapshots are served, flagged via ``is_stale``.

        Returns:
            Copy of the current rates
        """
        if self._refreshed_at is not None:
            age = (self._clock() - self._refreshed_at).total_seconds()
            rate_snapshot_age_seconds.set(age)

        return RateSnapshot(
            rates=dict(self._rates),
            fiat_currency=self.settings.fiat_currency,
            refreshed_at=self._refreshed_at,
            is_stale=self.is_stale(),
        )

    def refresh_if_stale(self) -> RateSnapshot:
        """Refresh from the oracle unless an attempt ran within the refresh interval.

        Calls arriving inside the interval are no-ops returning the current
        snapshot. A failed attempt also counts towards the interval.

        Returns:
            Current snapshot (refreshed or not)
        """
        now = self._clock()
        last = self._last_attempt_at
        if last is not None and now - last < self.refresh_interval:
            return self.snapshot()
        return self.refresh()

    def refresh(self) -> RateSnapshot:
        """Fetch rates from the oracle and update the cache in place.

        Oracle errors are logged and swallowed; the previous rates are kept.

        Returns:
            Current snapshot
        """
        self._last_attempt_at = self._clock()

        try:
            payload = self._fetch_prices()
            updated = self._apply_prices(payload)
        except ExternalServiceError as e:
            rate_refresh_total.labels(status="failed").inc()
            logger.warning(f"Rate refresh failed, keeping previous rates: {e}")
            return self.snapshot()
        except httpx.HTTPError as e:
            rate_refresh_total.labels(status="failed").inc()
            logger.warning(f"Rate oracle unreachable, keeping previous rates: {e}")
            return self.snapshot()
        except (ArithmeticError, TypeError, ValueError) as e:
            rate_refresh_total.labels(status="failed").inc()
            logger.warning(f"Unreadable oracle response, keeping previous rates: {e}")
            return self.snapshot()

        if not updated:
            rate_refresh_total.labels(status="failed").inc()
            logger.warning(
                f"Rate oracle returned no usable prices, keeping previous rates: {payload!r}"
            )
            return self.snapshot()

        self._refreshed_at = self._clock()
        rate_refresh_total.labels(status="success").inc()
        logger.info(f"Rates refreshed ({', '.join(updated)}): {self._rates}")
        return self.snapshot()

    @retry(
        retry=retry_if_exception(_is_transient),
        wait=wait_exponential_jitter(initial=0.5, max=2),
        stop=stop_after_attempt(2),
        reraise=True,
    )
    def _fetch_prices(self) -> dict[str, Any]:
        """Call the price oracle with retry logic for transient errors.

        Returns:
            Oracle response mapping coin id to ``{fiat: price}``

        Raises:
            httpx.HTTPError: After all retry attempts exhausted
            ExternalServiceError: If the response body is not a JSON object
        """
        response = self._client.get(
            self.settings.rate_oracle_url,
            params={
                "ids": ",".join(COIN_IDS.values()),
                "vs_currencies": self.settings.fiat_currency.lower(),
            },
        )
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(f"Malformed oracle response: {e}") from e
        if not isinstance(data, dict):
            raise ExternalServiceError("Malformed oracle response: expected an object")
        return data

    def _apply_prices(self, payload: dict[str, Any]) -> list[str]:
        """Merge oracle prices into the cache.

        Symbols missing from the payload (or with unusable values) keep their
        previous rate. Only finite, positive prices are accepted.

        Args:
            payload: Oracle response

        Returns:
            Currency codes that received a new rate
        """
        fiat_key = self.settings.fiat_currency.lower()
        fresh: dict[str, Decimal] = {}

        for code, coin_id in COIN_IDS.items():
            entry = payload.get(coin_id)
            if not isinstance(entry, dict) or entry.get(fiat_key) is None:
                continue
            try:
                price = Decimal(str(entry[fiat_key]))
            except InvalidOperation:
                logger.warning(f"Ignoring non-numeric oracle price for {code}: {entry[fiat_key]!r}")
                continue
            if not price.is_finite() or price <= 0:
                logger.warning(f"Ignoring unusable oracle price for {code}: {price}")
                continue
            fresh[code] = price

        self._rates.update(fresh)
        for code, source in MIRRORED_CODES.items():
            if source in self._rates:
                self._rates[code] = self._rates[source]

        return list(fresh)

"""Shared fixtures for unit tests.

Provides fixtures for:
- Deterministic clock
- Test settings (explorer key set, no .env file)
- Rate cache / converter / invoice store wired with a mocked oracle client
- Factory for real httpx responses returned by mocked clients
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from services.invoices.models import ClientInfo, InvoiceCreate, LineItemInput
from services.invoices.store import InvoiceStore
from services.rates.cache import RateCache
from services.rates.converter import CurrencyConverter
from services.shared.config import Settings


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


ResponseFactory = Callable[..., httpx.Response]


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at a fixed instant."""
    return FakeClock(datetime(2025, 3, 10, 12, 0, tzinfo=UTC))


@pytest.fixture
def settings() -> Settings:
    """Create test settings with an Etherscan key and no .env file."""
    return Settings(_env_file=None, etherscan_api_key="test-etherscan-key")


@pytest.fixture
def make_response() -> ResponseFactory:
    """Build httpx responses; raise_for_status works because a request is attached."""

    def _make(
        json_data: Any = None,
        status_code: int = 200,
        text: str | None = None,
        url: str = "https://explorer.test/",
    ) -> httpx.Response:
        request = httpx.Request("GET", url)
        if text is not None:
            return httpx.Response(status_code, text=text, request=request)
        return httpx.Response(status_code, json=json_data, request=request)

    return _make


@pytest.fixture
def oracle_client() -> MagicMock:
    """HTTP client for the price oracle; unreachable unless a test says otherwise."""
    client = MagicMock()
    client.get.side_effect = httpx.ConnectError("oracle unreachable")
    return client


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    """Skip tenacity backoff sleeps between oracle attempts."""
    monkeypatch.setattr(RateCache._fetch_prices.retry, "sleep", lambda seconds: None)


@pytest.fixture
def rate_cache(settings: Settings, oracle_client: MagicMock, clock: FakeClock) -> RateCache:
    return RateCache(settings, client=oracle_client, clock=clock)


@pytest.fixture
def converter(rate_cache: RateCache) -> CurrencyConverter:
    return CurrencyConverter(rate_cache)


@pytest.fixture
def store(settings: Settings, converter: CurrencyConverter, clock: FakeClock) -> InvoiceStore:
    return InvoiceStore(settings, converter, clock=clock)


@pytest.fixture
def invoice_input() -> Callable[..., InvoiceCreate]:
    """Factory for valid invoice creation input (one item: 2 x 500, 21 % tax)."""

    def _make(**overrides: Any) -> InvoiceCreate:
        data: dict[str, Any] = {
            "client": ClientInfo(name="Acme s.r.o.", email="billing@acme.test"),
            "items": [LineItemInput(description="Consulting", quantity=2, unit_price=500)],
            "tax_rate": 21,
        }
        data.update(overrides)
        return InvoiceCreate(**data)

    return _make

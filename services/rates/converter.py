"""Fiat <-> crypto conversion on top of the rate cache."""

from decimal import ROUND_HALF_UP, Decimal

from services.rates.cache import RateCache
from services.shared.errors import UnknownCurrencyError

CRYPTO_PLACES = Decimal("0.00000001")


class CurrencyConverter:
    """Pure conversion layer. Reads rates, never refreshes them."""

    def __init__(self, rate_cache: RateCache) -> None:
        self.rate_cache = rate_cache

    def _rate(self, currency: str) -> Decimal:
        rate = self.rate_cache.get_rate(currency)
        if rate is None or rate <= 0:
            raise UnknownCurrencyError(
                f"No exchange rate known for '{currency}'",
                details={"currency": currency, "known": self.rate_cache.supported_currencies()},
            )
        return rate

    def to_crypto(self, fiat_total: int | Decimal, currency: str) -> Decimal:
        """Convert a fiat amount into the given cryptocurrency.

        Args:
            fiat_total: Amount in fiat units
            currency: Target currency code

        Returns:
            Crypto amount rounded half-up to 8 decimal places

        Raises:
            UnknownCurrencyError: If no rate is cached for the code
        """
        rate = self._rate(currency)
        return (Decimal(fiat_total) / rate).quantize(CRYPTO_PLACES, rounding=ROUND_HALF_UP)

    def to_fiat(self, amount: Decimal, currency: str) -> int:
        """Value a crypto amount in whole fiat units (wallet valuation)."""
        rate = self._rate(currency)
        return int((amount * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

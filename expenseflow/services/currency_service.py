"""
Currency conversion service.
Converts expense amounts into a company's default currency using a static rate table.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

# Units of each currency per one USD.
DEFAULT_RATES: Dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.85"),
    "GBP": Decimal("0.73"),
    "INR": Decimal("83.12"),
    "CAD": Decimal("1.36"),
    "AUD": Decimal("1.52"),
    "JPY": Decimal("149.34"),
    "CNY": Decimal("7.24"),
}

RATE_PRECISION = Decimal("0.00000001")


class CurrencyService:
    """Service for converting amounts between currencies."""

    def __init__(self, rates: Optional[Mapping[str, Decimal]] = None):
        self.rates = dict(rates or DEFAULT_RATES)

    def _base_rate(self, currency: str) -> Decimal:
        rate = self.rates.get(currency.upper())
        if rate is None:
            logger.warning(f"No exchange rate for {currency}, falling back to 1")
            return Decimal("1")
        return rate

    def get_exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """
        Get the exchange rate between two currencies.

        Args:
            from_currency: Source currency code (e.g., 'EUR')
            to_currency: Target currency code (e.g., 'USD')

        Returns:
            Decimal: Units of to_currency per unit of from_currency
        """
        if from_currency.upper() == to_currency.upper():
            return Decimal("1")

        rate = self._base_rate(to_currency) / self._base_rate(from_currency)
        return rate.quantize(RATE_PRECISION)

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        """
        Convert amount from one currency to another.

        The result is exactly amount * get_exchange_rate(...), so an expense
        storing both values keeps them consistent.
        """
        if from_currency.upper() == to_currency.upper():
            return amount
        return Decimal(str(amount)) * self.get_exchange_rate(from_currency, to_currency)

    def supported_currencies(self) -> List[str]:
        """Get list of currencies present in the rate table."""
        return sorted(self.rates)

    def is_supported(self, currency_code: str) -> bool:
        return currency_code.upper() in self.rates


# Global currency service instance
currency_service = CurrencyService()

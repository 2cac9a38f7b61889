import logging
from decimal import Decimal

from expenseflow.services.currency_service import CurrencyService, DEFAULT_RATES, currency_service


class TestCurrencyService:
    """Static-table currency conversion"""

    def test_same_currency_is_identity(self):
        assert currency_service.get_exchange_rate("EUR", "eur") == Decimal("1")
        assert currency_service.convert(Decimal("42.10"), "EUR", "EUR") == Decimal("42.10")

    def test_rate_from_usd(self):
        assert currency_service.get_exchange_rate("USD", "INR") == Decimal("83.12000000")

    def test_rate_between_non_base_currencies(self):
        rate = currency_service.get_exchange_rate("EUR", "USD")
        assert rate == (Decimal("1") / Decimal("0.85")).quantize(Decimal("0.00000001"))
        assert rate == Decimal("1.17647059")

    def test_convert_is_amount_times_rate(self):
        amount = Decimal("100.00")
        rate = currency_service.get_exchange_rate("EUR", "USD")
        assert currency_service.convert(amount, "EUR", "USD") == amount * rate
        assert currency_service.convert(amount, "EUR", "USD") == Decimal("117.64705900")

    def test_unknown_currency_falls_back_to_one(self, caplog):
        with caplog.at_level(logging.WARNING):
            rate = currency_service.get_exchange_rate("XYZ", "USD")
        assert rate == Decimal("1")
        assert "XYZ" in caplog.text

    def test_custom_rate_table(self):
        service = CurrencyService(rates={"USD": Decimal("1"), "SEK": Decimal("10")})
        assert service.get_exchange_rate("SEK", "USD") == Decimal("0.1")
        assert service.is_supported("sek")
        assert not service.is_supported("EUR")

    def test_supported_currencies(self):
        assert currency_service.supported_currencies() == sorted(DEFAULT_RATES)
        assert "JPY" in currency_service.supported_currencies()

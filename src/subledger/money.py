"""
Money and currency utilities using py-moneyed and Babel.

The engine stores every amount as an integer count of minor units. This
module is the one place that converts between minor units, exact Decimal
fractions and display strings.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

DEFAULT_LOCALE = "en_US"


def round_minor_units(value: Decimal | int) -> int:
    """Round an exact minor-unit fraction to a whole unit, half away from zero."""
    # ROUND_HALF_UP on Decimal rounds halves away from zero for negatives too
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage_of(amount: int, percentage: int | Decimal) -> int:
    """Whole-unit share of ``amount``."""
    return round_minor_units(Decimal(amount) * Decimal(percentage) / Decimal(100))


class MoneyHandler:
    """Central handler for money operations with proper error handling."""

    def __init__(self, default_currency: str = "USD", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self._validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def get_currency_precision(self, currency_code: str) -> int:
        """Get decimal precision for a currency."""
        return get_currency_precision(currency_code.upper())

    def from_minor_units(self, minor_units: int, currency: str | None = None) -> Money:
        """Create Money from minor units (e.g., cents)."""
        code = currency or self.default_currency.code
        validated_currency = self._validate_currency(code)
        divisor = Decimal(10 ** self.get_currency_precision(code))
        return Money(amount=Decimal(minor_units) / divisor, currency=validated_currency)

    def to_minor_units(self, money: Money) -> int:
        """Convert Money to minor units, rounding half away from zero."""
        precision = self.get_currency_precision(money.currency.code)
        return round_minor_units(money.amount * (10**precision))

    def format_minor_units(
        self, minor_units: int, currency: str | None = None, locale: str | None = None
    ) -> str:
        """Locale-aware display string for a minor-unit amount."""
        money = self.from_minor_units(minor_units, currency)
        validated_locale = self._validate_locale(locale or self.default_locale)
        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale
            )
        except (TypeError, ValueError):
            return f"{money.currency.code} {money.amount}"

    def to_dict(self, minor_units: int, currency: str | None = None) -> dict[str, Any]:
        """Serialize a minor-unit amount for API payloads."""
        money = self.from_minor_units(minor_units, currency)
        return {
            "amount": str(money.amount),
            "currency": money.currency.code,
            "minor_units": minor_units,
        }


_money_handler: MoneyHandler | None = None


def get_money_handler() -> MoneyHandler:
    """Money handler configured from billing settings."""
    global _money_handler
    if _money_handler is None:
        from subledger.settings import get_settings

        billing = get_settings().billing
        _money_handler = MoneyHandler(billing.default_currency, billing.default_locale)
    return _money_handler


def format_minor_units(minor_units: int, currency: str | None = None) -> str:
    """Format a minor-unit amount with the default handler."""
    return get_money_handler().format_minor_units(minor_units, currency)


__all__ = [
    "MoneyHandler",
    "format_minor_units",
    "get_money_handler",
    "percentage_of",
    "round_minor_units",
]

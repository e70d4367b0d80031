"""
Money and currency utilities using py-moneyed and Babel.

Provides currency handling with proper decimal precision,
locale-aware formatting, and currency validation.
"""

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

# Default locale for formatting
DEFAULT_LOCALE = "en_US"


class MoneyHandler:
    """Central handler for money operations with proper error handling."""

    def __init__(self, default_currency: str = "USD", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self._validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        """Validate and return Currency object."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        """Validate locale code."""
        try:
            Locale.parse(locale_code)
            return locale_code
        except UnknownLocaleError:
            return DEFAULT_LOCALE

    def create_money(self, amount: int | Decimal | str, currency: str | None = None) -> Money:
        """Create Money object with proper validation.

        Floats are rejected; every amount in the engine is an exact decimal.
        """
        if isinstance(amount, float):
            raise TypeError("Money amounts must be Decimal, int or str, not float")
        currency = currency or self.default_currency.code
        validated_currency = self._validate_currency(currency)
        return Money(amount=Decimal(amount), currency=validated_currency)

    def get_currency_precision(self, currency_code: str) -> int:
        """Get decimal precision for a currency."""
        return get_currency_precision(currency_code.upper())

    def quantum(self, currency_code: str) -> Decimal:
        """Smallest representable amount for a currency, e.g. 0.01 for USD."""
        return Decimal(1).scaleb(-self.get_currency_precision(currency_code))

    def round_money(self, money: Money) -> Money:
        """Round Money half-up to proper currency precision."""
        quantum = self.quantum(money.currency.code)
        rounded_amount = money.amount.quantize(quantum, rounding=ROUND_HALF_UP)
        return Money(amount=rounded_amount, currency=money.currency)

    def truncate_money(self, money: Money) -> Money:
        """Truncate Money toward zero to currency precision."""
        quantum = self.quantum(money.currency.code)
        truncated = money.amount.quantize(quantum, rounding=ROUND_DOWN)
        return Money(amount=truncated, currency=money.currency)

    def format_money(self, money: Money, locale: str | None = None, **kwargs: Any) -> str:
        """Format Money object with locale-aware formatting."""
        locale = locale or self.default_locale
        validated_locale = self._validate_locale(locale)

        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale, **kwargs
            )
        except (TypeError, ValueError):
            # Fallback to simple formatting if locale issues
            return f"{money.currency.code} {money.amount}"

    def money_to_minor_units(self, money: Money) -> int:
        """Convert Money to minor units (e.g., cents for USD)."""
        precision = self.get_currency_precision(money.currency.code)
        return int(self.round_money(money).amount.scaleb(precision))

    def money_from_minor_units(self, minor_units: int, currency: str) -> Money:
        """Create Money from minor units (e.g., cents)."""
        validated_currency = self._validate_currency(currency)
        precision = self.get_currency_precision(currency)
        amount = Decimal(minor_units).scaleb(-precision)
        return Money(amount=amount, currency=validated_currency)

    def to_dict(self, money: Money) -> dict[str, Any]:
        """Convert Money to dictionary for serialization."""
        return {
            "amount": str(money.amount),
            "currency": money.currency.code,
            "minor_units": self.money_to_minor_units(money),
        }


# Global instance for convenience
money_handler = MoneyHandler()


# Convenience functions
def create_money(amount: int | Decimal | str, currency: str = "USD") -> Money:
    """Create Money object with default handler."""
    return money_handler.create_money(amount, currency)


def format_money(money: Money, locale: str | None = None, **kwargs: Any) -> str:
    """Format Money with default handler."""
    return money_handler.format_money(money, locale, **kwargs)


def format_amount(amount: Decimal, currency: str, locale: str | None = None) -> str:
    """Format a bare decimal amount in ``currency``."""
    return money_handler.format_money(money_handler.create_money(amount, currency), locale)


def truncate_amount(amount: Decimal, currency: str) -> Decimal:
    """Truncate a decimal amount toward zero to the currency precision."""
    return money_handler.truncate_money(money_handler.create_money(amount, currency)).amount


def amount_from_minor_units(minor_units: int, currency: str) -> Decimal:
    """Decimal amount for an integer count of minor units."""
    return money_handler.money_from_minor_units(minor_units, currency).amount


def amount_to_minor_units(amount: Decimal, currency: str) -> int:
    """Integer minor units for a decimal amount."""
    return money_handler.money_to_minor_units(money_handler.create_money(amount, currency))

"""Currency conversion and price formatting.

Rates are expressed as base currency units per one unit of the listed currency,
so {'USD': 1350} reads "1 USD = 1350 KRW". Every function here is pure: it reads
the table it is handed and never mutates it.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Mapping, Union

from .exceptions import ConversionRateMissingError

logger = logging.getLogger(__name__)

Number = Union[int, float, Decimal]

BASE_CURRENCY = 'KRW'

SUPPORTED_CURRENCIES = ('KRW', 'USD', 'EUR', 'JPY', 'GBP', 'CNY', 'CAD', 'AUD')

# Currencies quoted without minor units
ZERO_DECIMAL_CURRENCIES = frozenset({'KRW', 'JPY'})

CURRENCY_SYMBOLS = {
    'KRW': '₩',
    'USD': '$',
    'EUR': '€',
    'JPY': '¥',
    'GBP': '£',
    'CNY': '¥',
    'CAD': 'C$',
    'AUD': 'A$',
    'SGD': 'S$',
}

_WHOLE = Decimal('1')
_CENTS = Decimal('0.01')


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps 0.1 as 0.1 instead of its binary expansion
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")


def currency_symbol(currency: str) -> str:
    """Display symbol for a currency code, the code itself when unmapped."""
    return CURRENCY_SYMBOLS.get(currency, currency)


def round_for(amount: Number, currency: str) -> Decimal:
    """Round to whole units for zero-decimal currencies, to cents otherwise."""
    quantum = _WHOLE if currency in ZERO_DECIMAL_CURRENCIES else _CENTS
    return _to_decimal(amount).quantize(quantum, rounding=ROUND_HALF_UP)


def _rate(rates: Mapping[str, Number], currency: str) -> Decimal:
    rate = rates.get(currency)
    if not rate:
        raise ConversionRateMissingError(currency)
    return _to_decimal(rate)


def convert(
    amount: Number,
    from_currency: str,
    to_currency: str,
    rates: Mapping[str, Number],
    base: str = BASE_CURRENCY
) -> Number:
    """Convert an amount between two currencies through the base currency.

    Args:
        amount: Amount in from_currency
        from_currency: Currency code of amount
        to_currency: Currency code of the result
        rates: Rate table, base units per unit of each currency
        base: Base currency of the table

    Returns:
        amount unchanged when both currencies match, otherwise a Decimal rounded
        for to_currency

    Raises:
        ConversionRateMissingError: If a non-base currency is missing from rates
    """
    if from_currency == to_currency:
        return amount

    base_amount = _to_decimal(amount)
    if from_currency != base:
        base_amount = base_amount * _rate(rates, from_currency)

    if to_currency == base:
        return round_for(base_amount, to_currency)

    return round_for(base_amount / _rate(rates, to_currency), to_currency)


def format_amount(amount: Number, currency: str) -> str:
    """Render an amount with its currency symbol and thousands separators."""
    rounded = round_for(amount, currency)
    if currency in ZERO_DECIMAL_CURRENCIES:
        return f"{currency_symbol(currency)}{int(rounded):,}"
    return f"{currency_symbol(currency)}{rounded:,.2f}"


def format_price(
    amount: Number,
    currency: str,
    rates: Mapping[str, Number],
    base: str = BASE_CURRENCY
) -> str:
    """Render a listing price as '<base amount> (<original amount>)'.

    Listings already priced in the base currency render once. When the rate is
    missing only the original amount is rendered.
    """
    if currency == base:
        return format_amount(amount, base)

    try:
        base_amount = convert(amount, currency, base, rates, base)
    except ConversionRateMissingError as e:
        logger.warning(f"Currency conversion failed, showing original price: {e}")
        return format_amount(amount, currency)

    return f"{format_amount(base_amount, base)} ({format_amount(amount, currency)})"


class CurrencyConverter:
    """Converter bound to a rate cache; always reads the cache's current table."""

    def __init__(self, cache, base: str = BASE_CURRENCY):
        self.cache = cache
        self.base = base

    def convert(self, amount: Number, from_currency: str, to_currency: str) -> Number:
        return convert(amount, from_currency, to_currency, self.cache.current_table(), self.base)

    def to_base(self, amount: Number, currency: str) -> Number:
        return self.convert(amount, currency, self.base)

    def format_price(self, amount: Number, currency: str) -> str:
        return format_price(amount, currency, self.cache.current_table(), self.base)

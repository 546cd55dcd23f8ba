"""Tests for currency conversion and price formatting."""

from decimal import Decimal

import pytest

from exchange import (
    FALLBACK_RATES,
    ConversionRateMissingError,
    CurrencyConverter,
    convert,
    currency_symbol,
    format_price
)
from exchange.converter import format_amount, round_for

RATES = {'USD': Decimal('1350'), 'EUR': Decimal('1470'), 'JPY': Decimal('9.0')}


class StaticCache:
    def __init__(self, table):
        self.table = table

    def current_table(self):
        return self.table


def test_identity_returns_amount_unchanged():
    """Converting to the same currency returns the input as-is."""
    assert convert(10, 'USD', 'USD', RATES) == 10
    assert convert(Decimal('12.345'), 'EUR', 'EUR', {}) == Decimal('12.345')


def test_usd_to_krw():
    assert convert(10, 'USD', 'KRW', RATES) == Decimal('13500')


def test_krw_to_usd_rounds_to_cents():
    assert convert(13500, 'KRW', 'USD', RATES) == Decimal('10.00')
    assert convert(1000, 'KRW', 'USD', RATES) == Decimal('0.74')


def test_cross_rate_goes_through_base():
    """EUR -> USD multiplies by the EUR rate then divides by the USD rate."""
    assert convert(100, 'EUR', 'USD', RATES) == Decimal('108.89')


def test_zero_decimal_targets_round_to_whole_units():
    assert convert(Decimal('10.01'), 'USD', 'KRW', RATES) == Decimal('13514')
    assert convert(1, 'USD', 'JPY', RATES) == Decimal('150')


def test_round_half_up():
    assert round_for(Decimal('0.125'), 'USD') == Decimal('0.13')
    assert round_for(Decimal('2.5'), 'KRW') == Decimal('3')


def test_missing_rate_raises():
    with pytest.raises(ConversionRateMissingError) as exc_info:
        convert(10, 'GBP', 'KRW', RATES)
    assert exc_info.value.currency == 'GBP'
    assert 'GBP' in str(exc_info.value)


def test_missing_target_rate_raises():
    with pytest.raises(ConversionRateMissingError):
        convert(10, 'KRW', 'CAD', RATES)


@pytest.mark.parametrize('currency', ['USD', 'EUR', 'JPY'])
def test_round_trip_within_rounding(currency):
    """base -> X -> base lands within the rounding error of both steps."""
    amount = Decimal('987654')
    there = convert(amount, 'KRW', currency, RATES)
    back = convert(there, currency, 'KRW', RATES)
    quantum = Decimal('1') if currency == 'JPY' else Decimal('0.01')
    tolerance = Decimal('1') + quantum * RATES[currency]
    assert abs(back - amount) <= tolerance


def test_fallback_table_converts():
    assert convert(10, 'USD', 'KRW', FALLBACK_RATES) == Decimal('13500')
    assert convert(1, 'GBP', 'KRW', FALLBACK_RATES) == Decimal('1710')


def test_currency_symbol():
    assert currency_symbol('KRW') == '₩'
    assert currency_symbol('USD') == '$'
    assert currency_symbol('CHF') == 'CHF'


def test_format_amount():
    assert format_amount(Decimal('13500'), 'KRW') == '₩13,500'
    assert format_amount(10, 'USD') == '$10.00'
    assert format_amount(Decimal('1234.5'), 'EUR') == '€1,234.50'


def test_format_price_shows_base_then_original():
    assert format_price(10, 'USD', RATES) == '₩13,500 ($10.00)'


def test_format_price_base_listing_renders_once():
    assert format_price(25000, 'KRW', RATES) == '₩25,000'


def test_format_price_missing_rate_shows_original():
    assert format_price(5, 'GBP', RATES) == '£5.00'


def test_converter_reads_current_table():
    """The bound converter always uses whatever table the cache holds now."""
    cache = StaticCache(RATES)
    converter = CurrencyConverter(cache)
    assert converter.to_base(10, 'USD') == Decimal('13500')

    cache.table = {'USD': Decimal('1400')}
    assert converter.to_base(10, 'USD') == Decimal('14000')
    assert converter.format_price(1, 'USD') == '₩1,400 ($1.00)'


def test_convert_does_not_mutate_table():
    table = dict(RATES)
    convert(10, 'USD', 'EUR', table)
    format_price(10, 'GBP', table)
    assert table == RATES

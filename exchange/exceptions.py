"""Exchange rate exception hierarchy."""


class ExchangeError(Exception):
    """Base exception for exchange rate errors."""
    pass


class RateUnavailableError(ExchangeError):
    """Raised when no usable rate table can be obtained from a source."""
    pass


class ConversionRateMissingError(ExchangeError):
    """Raised when a currency has no entry in the current rate table."""

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Exchange rate not found for {currency}")

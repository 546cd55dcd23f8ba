"""Exchange rate providers.

Both providers return a rate table of base currency units (KRW) per one unit of
each supported currency. They are plain blocking clients built on requests; the
rate cache runs them in a worker thread.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional

import backoff
import requests

from .converter import BASE_CURRENCY
from .exceptions import RateUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10  # seconds

# Korea Eximbank cur_unit -> (currency code, units quoted)
EXIM_CURRENCY_UNITS = {
    'USD': ('USD', 1),
    'EUR': ('EUR', 1),
    'JPY(100)': ('JPY', 100),
    'GBP': ('GBP', 1),
    'CNH': ('CNY', 1),
    'CNY': ('CNY', 1),
    'CAD': ('CAD', 1),
    'AUD': ('AUD', 1),
}

EXIM_ERROR_MESSAGES = {
    2: 'data code error',
    3: 'authentication code error',
    4: 'daily request limit reached',
}

REQUIRED_CURRENCIES = ('USD', 'EUR')

PUBLIC_CURRENCIES = ('USD', 'EUR', 'JPY', 'GBP', 'CNY', 'CAD', 'AUD')

def _round_rate(rate: Decimal) -> Decimal:
    return rate.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

def _require(rates: Dict[str, Decimal], source: str) -> Dict[str, Decimal]:
    missing = [code for code in REQUIRED_CURRENCIES if code not in rates]
    if missing:
        raise RateUnavailableError(
            f"Essential currency rates ({', '.join(missing)}) not found in {source} response"
        )
    return rates

@backoff.on_exception(
    backoff.expo,
    (requests.exceptions.ConnectionError,),
    max_tries=3
)
def _get_json(url: str, params: Optional[Dict[str, Any]], timeout: float) -> Any:
    response = requests.get(url, params=params, timeout=timeout)
    response.raise_for_status()
    return response.json()

class RateProvider:
    """Base class for rate sources."""

    name = "base"

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def fetch_rates(self) -> Dict[str, Decimal]:
        """Fetch a fresh rate table.

        Raises:
            RateUnavailableError: On any network, HTTP or payload error
        """
        try:
            data = _get_json(self.url, self._params(), self.timeout)
        except requests.exceptions.Timeout:
            raise RateUnavailableError(f"{self.name} timed out after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            raise RateUnavailableError(f"{self.name} request failed: {e}")
        except ValueError as e:
            raise RateUnavailableError(f"{self.name} returned invalid JSON: {e}")
        return self.parse(data)

    def _params(self) -> Optional[Dict[str, Any]]:
        return None

    def parse(self, data: Any) -> Dict[str, Decimal]:
        raise NotImplementedError

class KoreaEximProvider(RateProvider):
    """Korea Eximbank daily exchange rates (requires an API key)."""

    name = "koreaexim"

    def __init__(self, api_key: str, url: str, timeout: float = DEFAULT_TIMEOUT):
        if not api_key:
            raise ValueError("Korea Eximbank API key not configured")
        super().__init__(url, timeout)
        self.api_key = api_key

    def _params(self) -> Dict[str, Any]:
        return {
            'authkey': self.api_key,
            'searchdate': datetime.now().strftime('%Y%m%d'),
            'data': 'AP01'
        }

    def parse(self, data: Any) -> Dict[str, Decimal]:
        """Map Korea Eximbank rows onto the rate table.

        Rows look like {"result": 1, "cur_unit": "JPY(100)", "deal_bas_r": "912.34"}.
        """
        if not isinstance(data, list) or not data:
            raise RateUnavailableError("Invalid API response format from Korea Eximbank")

        first_result = data[0].get('result') if isinstance(data[0], dict) else None
        if first_result is not None and first_result != 1:
            reason = EXIM_ERROR_MESSAGES.get(first_result, 'unknown error')
            raise RateUnavailableError(f"Korea Eximbank API error: {reason}")

        rates: Dict[str, Decimal] = {}
        for item in data:
            if not isinstance(item, dict) or item.get('result') != 1:
                continue
            mapping = EXIM_CURRENCY_UNITS.get(item.get('cur_unit'))
            if not mapping or not item.get('deal_bas_r'):
                continue
            currency, units = mapping
            try:
                rate = Decimal(str(item['deal_bas_r']).replace(',', '')) / units
            except InvalidOperation:
                logger.warning(f"Skipping unparsable rate for {item.get('cur_unit')}: {item['deal_bas_r']}")
                continue
            if rate > 0:
                rates[currency] = _round_rate(rate)
                logger.debug(f"Mapped {item['cur_unit']} -> {currency}: {rates[currency]}")

        return _require(rates, "Korea Eximbank")

class OpenExchangeProvider(RateProvider):
    """Public endpoint quoting currencies per one KRW, used without an API key."""

    name = "open.er-api"

    def parse(self, data: Any) -> Dict[str, Decimal]:
        if not isinstance(data, dict) or data.get('result') != 'success':
            raise RateUnavailableError(f"{self.name} returned an error response")
        if data.get('base_code', BASE_CURRENCY) != BASE_CURRENCY:
            raise RateUnavailableError(f"{self.name} returned base {data.get('base_code')}")

        quoted = data.get('rates') or {}
        rates: Dict[str, Decimal] = {}
        for currency in PUBLIC_CURRENCIES:
            try:
                per_base = Decimal(str(quoted[currency]))
            except (KeyError, InvalidOperation):
                continue
            if per_base > 0:
                # Invert currency-per-KRW into KRW-per-currency
                rates[currency] = _round_rate(Decimal(1) / per_base)

        return _require(rates, self.name)

def build_provider(settings: Dict[str, Any]) -> RateProvider:
    """Pick the keyed provider when an API key is configured, the public one otherwise."""
    timeout = settings.get('http_timeout', DEFAULT_TIMEOUT)
    if settings.get('exchange_api_key'):
        return KoreaEximProvider(settings['exchange_api_key'], settings['exchange_api_url'], timeout)
    logger.info("No exchange API key configured, using public exchange rate endpoint")
    return OpenExchangeProvider(settings['exchange_public_url'], timeout)

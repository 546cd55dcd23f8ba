"""Exchange rate cache for listing prices.

This module provides:
1. A rate cache that always has a conversion table to hand out
2. A daily background refresh at a fixed wall-clock time
3. Snapshot persistence so restarts reuse the last known good table
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

from .converter import (
    BASE_CURRENCY, SUPPORTED_CURRENCIES, CURRENCY_SYMBOLS, CurrencyConverter,
    convert, format_price, format_amount, currency_symbol
)
from .exceptions import ExchangeError, RateUnavailableError, ConversionRateMissingError

# Configure logging
logger = logging.getLogger(__name__)

# Approximate KRW values used until a real table is available
FALLBACK_RATES: Mapping[str, Decimal] = MappingProxyType({
    'USD': Decimal('1350'),
    'EUR': Decimal('1470'),
    'JPY': Decimal('9.0'),
    'GBP': Decimal('1710'),
    'CNY': Decimal('185'),
    'CAD': Decimal('995'),
    'AUD': Decimal('860'),
})

DEFAULT_REFRESH_TIME = (3, 0)
DEFAULT_REFRESH_TIMEZONE = 'Asia/Seoul'
DEFAULT_FETCH_TIMEOUT = 10.0  # seconds

def next_refresh_at(
    now: datetime,
    at: Tuple[int, int] = DEFAULT_REFRESH_TIME,
    tz: ZoneInfo = ZoneInfo(DEFAULT_REFRESH_TIMEZONE)
) -> datetime:
    """Next occurrence of the wall-clock time ``at`` in ``tz`` strictly after ``now``."""
    local_now = now.astimezone(tz)
    candidate = local_now.replace(hour=at[0], minute=at[1], second=0, microsecond=0)
    if candidate <= local_now:
        candidate = (candidate + timedelta(days=1)).replace(hour=at[0], minute=at[1])
    return candidate


class RateCache:
    """Holds the current rate table and refreshes it on a daily schedule."""

    def __init__(
        self,
        provider,
        store,
        base_currency: str = BASE_CURRENCY,
        refresh_time: Tuple[int, int] = DEFAULT_REFRESH_TIME,
        refresh_timezone: str = DEFAULT_REFRESH_TIMEZONE,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    ):
        """Initialize rate cache.

        Args:
            provider: Object with a blocking ``fetch_rates()`` returning a rate table
            store: Object with async ``load_latest_snapshot(base)`` and ``save_snapshot(base, rates)``
            base_currency: Currency the table is expressed in
            refresh_time: (hour, minute) of the daily refresh
            refresh_timezone: IANA zone the refresh time is read in
            fetch_timeout: Seconds before a fetch is abandoned
        """
        self.provider = provider
        self.store = store
        self.base_currency = base_currency
        self.refresh_time = refresh_time
        self.refresh_tz = ZoneInfo(refresh_timezone)
        self.fetch_timeout = fetch_timeout

        self._table: Optional[Mapping[str, Decimal]] = None
        self._last_update: Optional[datetime] = None
        self._refresh_lock = asyncio.Lock()
        self._schedule_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], provider, store) -> "RateCache":
        return cls(
            provider,
            store,
            base_currency=settings['base_currency'],
            refresh_time=settings['refresh_time'],
            refresh_timezone=settings['refresh_timezone'],
            fetch_timeout=settings['http_timeout']
        )

    @property
    def last_update(self) -> Optional[datetime]:
        return self._last_update

    @property
    def has_table(self) -> bool:
        return self._table is not None

    def current_table(self) -> Mapping[str, Decimal]:
        """Return the table currently held, or the fallback table. Never blocks."""
        table = self._table
        if table is None:
            return FALLBACK_RATES
        return table

    def _adopt(self, rates: Mapping[str, Any], updated_at: datetime) -> None:
        # Swap references; readers holding the old table keep a consistent view
        self._table = MappingProxyType(dict(rates))
        self._last_update = updated_at

    def _clean(self, rates: Mapping[str, Any]) -> Dict[str, Decimal]:
        cleaned = {}
        for code, rate in (rates or {}).items():
            code = str(code).upper()
            if code == self.base_currency:
                continue
            value = rate if isinstance(rate, Decimal) else Decimal(str(rate))
            if value > 0:
                cleaned[code] = value
        if not cleaned:
            raise RateUnavailableError("Rate table is empty")
        return cleaned

    async def initialize(self) -> None:
        """Load the last persisted snapshot, or fetch, or fall back."""
        snapshot = None
        try:
            snapshot = await self.store.load_latest_snapshot(self.base_currency)
        except Exception as e:
            logger.error(f"Failed to load exchange rate snapshot: {e}")

        if snapshot is not None:
            try:
                self._adopt(self._clean(snapshot.rates), snapshot.updated_at)
                logger.info(f"Loaded cached exchange rates from {snapshot.updated_at.isoformat()}")
                return
            except (RateUnavailableError, ArithmeticError, ValueError) as e:
                logger.warning(f"Ignoring unusable exchange rate snapshot: {e}")

        await self.refresh()

        if self._table is None:
            self._adopt(FALLBACK_RATES, datetime.now(timezone.utc))
            logger.warning("Using fallback exchange rates")

    async def refresh(self) -> bool:
        """Fetch and install a new table.

        Only one refresh runs at a time; later callers wait for the lock. Never
        raises: a failed fetch keeps the previous table.

        Returns:
            True if a fresh table was installed
        """
        async with self._refresh_lock:
            return await self._fetch_and_adopt(keep_previous=True)

    async def force_refresh(self) -> bool:
        """Refresh, discarding the cached table if the fetch fails.

        Readers keep seeing the current table while the fetch is in flight; on
        failure it is replaced by the fallback table rather than kept.
        """
        async with self._refresh_lock:
            return await self._fetch_and_adopt(keep_previous=False)

    async def _fetch_and_adopt(self, keep_previous: bool) -> bool:
        # Caller holds _refresh_lock
        logger.info(f"Updating exchange rates from {getattr(self.provider, 'name', 'provider')}")
        try:
            fetched = await asyncio.wait_for(
                asyncio.to_thread(self.provider.fetch_rates),
                timeout=self.fetch_timeout
            )
            rates = self._clean(fetched)
        except asyncio.TimeoutError:
            logger.error(f"Exchange rate fetch timed out after {self.fetch_timeout}s")
            self._after_failed_fetch(keep_previous)
            return False
        except Exception as e:
            logger.error(f"Failed to update exchange rates: {e}")
            self._after_failed_fetch(keep_previous)
            return False

        updated_at = datetime.now(timezone.utc)
        try:
            snapshot = await self.store.save_snapshot(self.base_currency, rates)
            updated_at = snapshot.updated_at
        except Exception as e:
            # The fetched table is still good; only the restart snapshot is lost
            logger.error(f"Failed to persist exchange rate snapshot: {e}")

        self._adopt(rates, updated_at)
        logger.info(f"Exchange rates updated: {dict(rates)}")
        return True

    def _after_failed_fetch(self, keep_previous: bool) -> None:
        if keep_previous and self._table is not None:
            return
        self._adopt(FALLBACK_RATES, datetime.now(timezone.utc))
        logger.warning("Using fallback rates due to API failure")

    def next_refresh_at(self, now: Optional[datetime] = None) -> datetime:
        return next_refresh_at(now or datetime.now(timezone.utc), self.refresh_time, self.refresh_tz)

    def _next_scheduled_run(self, now: datetime, last_run_at: Optional[datetime]) -> datetime:
        """Next daily slot after ``now`` that has not already run.

        A sleep can end a little before its deadline, which would otherwise
        make the slot that just ran come up again.
        """
        run_at = self.next_refresh_at(now)
        if last_run_at is not None and run_at <= last_run_at:
            run_at = self.next_refresh_at(last_run_at)
        return run_at

    async def _schedule_loop(self) -> None:
        """Refresh once a day at the configured time."""
        last_run_at = None
        while True:
            try:
                now = datetime.now(timezone.utc)
                run_at = self._next_scheduled_run(now, last_run_at)
                delay = (run_at - now).total_seconds()
                logger.info(f"Next exchange rate refresh at {run_at.isoformat()}")
                await asyncio.sleep(delay)
                last_run_at = run_at
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in exchange rate schedule: {e}")
                # Don't let the task die, wait and retry
                await asyncio.sleep(60)

    def start(self) -> None:
        """Start the daily refresh task."""
        if self._schedule_task and not self._schedule_task.done():
            return
        self._schedule_task = asyncio.create_task(self._schedule_loop(), name="exchange-refresh")

    async def stop(self) -> None:
        """Cancel the daily refresh task."""
        task, self._schedule_task = self._schedule_task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


__all__ = [
    'RateCache',
    'CurrencyConverter',
    'FALLBACK_RATES',
    'BASE_CURRENCY',
    'SUPPORTED_CURRENCIES',
    'CURRENCY_SYMBOLS',
    'next_refresh_at',
    'convert',
    'format_price',
    'format_amount',
    'currency_symbol',
    'ExchangeError',
    'RateUnavailableError',
    'ConversionRateMissingError'
]

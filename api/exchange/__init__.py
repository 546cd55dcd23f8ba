"""
Exchange rate endpoints.
Serves the cached rate table and conversions between listing currencies.
"""

import logging
from decimal import Decimal
from typing import Dict, Optional
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from auth import CurrentUser, require_admin
from exchange import (
    RateCache, CurrencyConverter, ConversionRateMissingError, SUPPORTED_CURRENCIES
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/exchange",
    tags=["Exchange"]
)


class RatesResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    rates: Dict[str, float]
    last_update: Optional[datetime] = None
    base_currency: str


class ConversionResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    amount: Decimal
    from_currency: str
    to_currency: str
    converted: Decimal
    formatted: str


def get_rate_cache(request: Request) -> RateCache:
    """Rate cache installed on the app at startup."""
    return request.app.state.rate_cache


def _rates_response(cache: RateCache) -> RatesResponse:
    return RatesResponse(
        rates={code: float(rate) for code, rate in cache.current_table().items()},
        last_update=cache.last_update,
        base_currency=cache.base_currency
    )


@router.get("", response_model=RatesResponse, response_model_by_alias=True)
async def get_rates(cache: RateCache = Depends(get_rate_cache)):
    """Get the current rate table (base currency units per unit of each currency)."""
    return _rates_response(cache)


@router.post("/refresh", response_model=RatesResponse, response_model_by_alias=True)
async def refresh_rates(
    cache: RateCache = Depends(get_rate_cache),
    admin: CurrentUser = Depends(require_admin)
):
    """Fetch a fresh rate table now. Admin only."""
    logger.info(f"Manual exchange rate refresh requested by {admin.id}")
    if not await cache.refresh():
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch exchange rates"
        )
    return _rates_response(cache)


@router.get("/convert", response_model=ConversionResponse, response_model_by_alias=True)
async def convert_amount(
    amount: Decimal = Query(..., ge=0),
    from_currency: str = Query(..., alias="from"),
    to_currency: Optional[str] = Query(None, alias="to"),
    cache: RateCache = Depends(get_rate_cache)
):
    """Convert an amount between two currencies using the cached table."""
    converter = CurrencyConverter(cache, cache.base_currency)
    source = from_currency.upper()
    target = (to_currency or cache.base_currency).upper()

    for code in (source, target):
        if code != cache.base_currency and code not in SUPPORTED_CURRENCIES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unsupported currency: {code}"
            )

    try:
        converted = converter.convert(amount, source, target)
    except ConversionRateMissingError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )

    return ConversionResponse(
        amount=amount,
        from_currency=source,
        to_currency=target,
        converted=converted,
        formatted=converter.format_price(amount, source)
    )


__all__ = ['router', 'get_rate_cache']

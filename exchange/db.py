"""Persistence for exchange rate snapshots."""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional

import asyncpg
from pydantic import BaseModel


class RateSnapshot(BaseModel):
    base_currency: str
    rates: Dict[str, Decimal]
    updated_at: datetime


async def load_latest_snapshot(
    conn: asyncpg.Connection,
    base_currency: str
) -> Optional[RateSnapshot]:
    """Get the newest stored snapshot for a base currency"""
    row = await conn.fetchrow(
        """
        SELECT base_currency, rates, updated_at
        FROM exchange_rates
        WHERE base_currency = $1
        ORDER BY updated_at DESC
        LIMIT 1
        """,
        base_currency
    )
    if not row:
        return None

    return RateSnapshot(
        base_currency=row['base_currency'],
        rates={code: Decimal(str(rate)) for code, rate in row['rates'].items()},
        updated_at=row['updated_at']
    )


async def save_snapshot(
    conn: asyncpg.Connection,
    base_currency: str,
    rates: Mapping[str, Decimal]
) -> RateSnapshot:
    """Store a new snapshot"""
    row = await conn.fetchrow(
        """
        INSERT INTO exchange_rates (base_currency, rates)
        VALUES ($1, $2)
        RETURNING base_currency, updated_at
        """,
        base_currency,
        {code: float(rate) for code, rate in rates.items()}
    )
    return RateSnapshot(
        base_currency=row['base_currency'],
        rates=dict(rates),
        updated_at=row['updated_at']
    )


class SnapshotStore:
    """Snapshot persistence bound to a connection pool."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def load_latest_snapshot(self, base_currency: str) -> Optional[RateSnapshot]:
        async with self.pool.acquire() as conn:
            return await load_latest_snapshot(conn, base_currency)

    async def save_snapshot(self, base_currency: str, rates: Mapping[str, Decimal]) -> RateSnapshot:
        async with self.pool.acquire() as conn:
            return await save_snapshot(conn, base_currency, rates)

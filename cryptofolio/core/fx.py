"""Exchange rate history: timestamped, directional rates between currencies."""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterator

import duckdb

from cryptofolio.core.currencies import CurrencyCatalog
from cryptofolio.core.db import (
    from_db_amount,
    to_db_amount,
    to_db_timestamp,
    transaction,
    utcnow,
)
from cryptofolio.core.errors import InvalidInput, NotFound, RateUnavailable
from cryptofolio.core.models import ExchangeRate
from cryptofolio.logging_config import get_logger

logger = get_logger(__name__)

_COLUMNS = "id, from_currency, to_currency, rate, ts, source, notes, created_at"


def _row_to_rate(row) -> ExchangeRate:
    rate_id, from_ccy, to_ccy, rate, ts, source, notes, created_at = row
    return ExchangeRate(
        id=rate_id,
        from_currency=from_ccy,
        to_currency=to_ccy,
        rate=from_db_amount(rate),
        timestamp=ts,
        source=source,
        notes=notes,
        created_at=created_at,
    )


class RateHistory:
    """Rates for one pair, newest first.

    Each iteration runs a fresh query and streams rows in batches, so the
    sequence can be walked any number of times.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection, from_ccy: str, to_ccy: str, batch_size: int = 500):
        self.conn = conn
        self.from_currency = from_ccy
        self.to_currency = to_ccy
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[ExchangeRate]:
        # Own cursor so interleaved queries on the main connection don't reset it
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"""
                SELECT {_COLUMNS}
                FROM exchange_rates
                WHERE from_currency = ? AND to_currency = ?
                ORDER BY ts DESC
            """, [self.from_currency, self.to_currency])
            while True:
                rows = cursor.fetchmany(self.batch_size)
                if not rows:
                    break
                for row in rows:
                    yield _row_to_rate(row)
        finally:
            cursor.close()


class ExchangeRateStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection, catalog: CurrencyCatalog):
        self.conn = conn
        self.catalog = catalog

    def upsert(self, rate: ExchangeRate) -> int:
        """
        Insert a rate, or replace rate/source/notes of the row already stored
        for the same (from, to, timestamp).

        Returns:
            The row id.
        """
        from_ccy = self.catalog.get(rate.from_currency).code
        to_ccy = self.catalog.get(rate.to_currency).code
        if from_ccy == to_ccy:
            raise InvalidInput(f"Exchange rate needs two different currencies, got {from_ccy}/{to_ccy}")
        if rate.rate is None or rate.rate <= 0:
            raise InvalidInput(f"Exchange rate must be positive, got {rate.rate}")

        ts = to_db_timestamp(rate.timestamp)
        value = to_db_amount(rate.rate)
        source = rate.source or "manual"

        with transaction(self.conn):
            existing = self.conn.execute("""
                SELECT id FROM exchange_rates
                WHERE from_currency = ? AND to_currency = ? AND ts = ?
            """, [from_ccy, to_ccy, ts]).fetchone()

            if existing:
                rate_id = existing[0]
                self.conn.execute("""
                    UPDATE exchange_rates
                    SET rate = ?, source = ?, notes = ?
                    WHERE id = ?
                """, [value, source, rate.notes, rate_id])
            else:
                rate_id = self.conn.execute("""
                    INSERT INTO exchange_rates (from_currency, to_currency, rate, ts, source, notes)
                    VALUES (?, ?, ?, ?, ?, ?)
                    RETURNING id
                """, [from_ccy, to_ccy, value, ts, source, rate.notes]).fetchone()[0]

        logger.info(
            "Stored exchange rate",
            pair=f"{from_ccy}/{to_ccy}",
            rate=str(rate.rate),
            timestamp=ts.isoformat(),
            source=source,
            replaced=bool(existing),
        )
        return rate_id

    def latest(self, from_ccy: str, to_ccy: str) -> ExchangeRate:
        """Most recent rate for the ordered pair. The reverse pair is never consulted."""
        from_ccy, to_ccy = from_ccy.upper(), to_ccy.upper()
        row = self.conn.execute(f"""
            SELECT {_COLUMNS}
            FROM exchange_rates
            WHERE from_currency = ? AND to_currency = ?
            ORDER BY ts DESC
            LIMIT 1
        """, [from_ccy, to_ccy]).fetchone()
        if not row:
            raise NotFound("Exchange rate", f"{from_ccy}/{to_ccy}")
        return _row_to_rate(row)

    def as_of(self, from_ccy: str, to_ccy: str, instant: datetime) -> ExchangeRate:
        """Most recent rate recorded at or before `instant`."""
        from_ccy, to_ccy = from_ccy.upper(), to_ccy.upper()
        row = self.conn.execute(f"""
            SELECT {_COLUMNS}
            FROM exchange_rates
            WHERE from_currency = ? AND to_currency = ? AND ts <= ?
            ORDER BY ts DESC
            LIMIT 1
        """, [from_ccy, to_ccy, to_db_timestamp(instant)]).fetchone()
        if not row:
            raise NotFound("Exchange rate", f"{from_ccy}/{to_ccy} at {instant.isoformat()}")
        return _row_to_rate(row)

    def history(self, from_ccy: str, to_ccy: str) -> RateHistory:
        return RateHistory(self.conn, from_ccy.upper(), to_ccy.upper())

    def lookup(
        self,
        from_ccy: str,
        to_ccy: str,
        at: datetime | None = None,
        max_age: timedelta | None = None,
    ) -> Decimal:
        """
        Conversion factor from one currency to another.

        Tries the direct pair first, then inverts the reverse pair. With
        `max_age`, a rate older than that relative to `at` does not count.

        Raises:
            RateUnavailable: no usable rate in either direction
        """
        from_ccy, to_ccy = from_ccy.upper(), to_ccy.upper()
        if from_ccy == to_ccy:
            return Decimal("1")

        at = to_db_timestamp(at) if at is not None else utcnow()
        candidates = []
        for base, quote in ((from_ccy, to_ccy), (to_ccy, from_ccy)):
            try:
                candidates.append(self.as_of(base, quote, at))
            except NotFound:
                continue
        if not candidates:
            raise RateUnavailable(from_ccy, to_ccy)

        # Prefer the freshest observation; the direct pair wins ties
        best = max(candidates, key=lambda r: r.timestamp)
        if max_age is not None and at - best.timestamp > max_age:
            raise RateUnavailable(
                from_ccy, to_ccy,
                reason=f"latest rate from {best.timestamp.isoformat()} is older than {max_age}",
            )

        if best.from_currency == from_ccy:
            return best.rate
        return best.inverse().rate

    def convert(
        self,
        amount: Decimal,
        from_ccy: str,
        to_ccy: str,
        at: datetime | None = None,
        max_age: timedelta | None = None,
    ) -> Decimal:
        return amount * self.lookup(from_ccy, to_ccy, at=at, max_age=max_age)

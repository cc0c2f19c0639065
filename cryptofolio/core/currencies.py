"""Currency catalog: fiat, crypto and stablecoin metadata."""
import re
from typing import List

import duckdb

from cryptofolio.core.db import transaction, utcnow
from cryptofolio.core.errors import AlreadyExists, InvalidInput, NotFound
from cryptofolio.core.models import AssetType, Currency
from cryptofolio.logging_config import get_logger

logger = get_logger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9]{2,10}$")

_COLUMNS = "code, name, symbol, decimals, asset_type, enabled, created_at, updated_at"


def normalize_code(code: str) -> str:
    """Upper-case a currency code and check its shape."""
    normalized = (code or "").strip().upper()
    if not CODE_PATTERN.match(normalized):
        raise InvalidInput(f"Invalid currency code: {code!r}")
    return normalized


def _row_to_currency(row) -> Currency:
    code, name, symbol, decimals, asset_type, enabled, created_at, updated_at = row
    return Currency(
        code=code,
        name=name,
        symbol=symbol,
        decimals=decimals,
        asset_type=AssetType(asset_type),
        enabled=enabled,
        created_at=created_at,
        updated_at=updated_at,
    )


class CurrencyCatalog:
    """Registry of known currencies, persisted in the currencies table."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def register(self, currency: Currency) -> Currency:
        code = normalize_code(currency.code)
        if currency.decimals < 0:
            raise InvalidInput(f"Decimal precision must be non-negative, got {currency.decimals}")

        with transaction(self.conn):
            if self._fetch(code) is not None:
                raise AlreadyExists("Currency", code)
            now = utcnow()
            self.conn.execute(f"""
                INSERT INTO currencies ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, [code, currency.name, currency.symbol, currency.decimals,
                  currency.asset_type.value, currency.enabled, now, now])

        logger.info("Registered currency", code=code, asset_type=currency.asset_type.value)
        return self.get(code)

    def get(self, code: str) -> Currency:
        currency = self._fetch(normalize_code(code))
        if currency is None:
            raise NotFound("Currency", code.upper())
        return currency

    def exists(self, code: str) -> bool:
        try:
            return self._fetch(normalize_code(code)) is not None
        except InvalidInput:
            return False

    def list(self, asset_type: AssetType | str | None = None, enabled_only: bool = False) -> List[Currency]:
        """List currencies: fiat, then stablecoins, then crypto; alphabetical within each."""
        query = f"SELECT {_COLUMNS} FROM currencies WHERE 1 = 1"
        params = []
        if asset_type is not None:
            query += " AND asset_type = ?"
            params.append(AssetType.parse(asset_type).value)
        if enabled_only:
            query += " AND enabled = TRUE"
        query += """
            ORDER BY
                CASE asset_type
                    WHEN 'fiat' THEN 1
                    WHEN 'stablecoin' THEN 2
                    WHEN 'crypto' THEN 3
                END,
                code
        """
        return [_row_to_currency(row) for row in self.conn.execute(query, params).fetchall()]

    def set_enabled(self, code: str, enabled: bool) -> Currency:
        currency = self.get(code)
        if currency.enabled != enabled:
            with transaction(self.conn):
                self.conn.execute(
                    "UPDATE currencies SET enabled = ?, updated_at = ? WHERE code = ?",
                    [enabled, utcnow(), currency.code],
                )
            logger.info("Currency toggled", code=currency.code, enabled=enabled)
        return self.get(currency.code)

    def update(
        self,
        code: str,
        name: str | None = None,
        symbol: str | None = None,
        decimals: int | None = None,
    ) -> Currency:
        """Edit display metadata. Code and asset type never change."""
        currency = self.get(code)
        if decimals is not None and decimals < 0:
            raise InvalidInput(f"Decimal precision must be non-negative, got {decimals}")

        with transaction(self.conn):
            self.conn.execute("""
                UPDATE currencies
                SET name = ?, symbol = ?, decimals = ?, updated_at = ?
                WHERE code = ?
            """, [
                name if name is not None else currency.name,
                symbol if symbol is not None else currency.symbol,
                decimals if decimals is not None else currency.decimals,
                utcnow(),
                currency.code,
            ])
        return self.get(currency.code)

    def _fetch(self, code: str) -> Currency | None:
        row = self.conn.execute(
            f"SELECT {_COLUMNS} FROM currencies WHERE code = ?", [code]
        ).fetchone()
        return _row_to_currency(row) if row else None

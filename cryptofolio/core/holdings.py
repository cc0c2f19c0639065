"""Per-account holdings with weighted-average cost basis."""
from decimal import Decimal
from typing import List

import duckdb

from cryptofolio.core.currencies import CurrencyCatalog
from cryptofolio.core.db import (
    AMOUNT_SCALE,
    from_db_amount,
    get_setting,
    to_db_amount,
    transaction,
    utcnow,
)
from cryptofolio.core.errors import InsufficientHoldings, InvalidInput, NotFound
from cryptofolio.core.models import Holding, HoldingSnapshot
from cryptofolio.logging_config import get_logger

logger = get_logger(__name__)

_COLUMNS = "id, account_id, asset, quantity, avg_cost_basis, cost_basis_currency, updated_at"


def _row_to_holding(row) -> Holding:
    holding_id, account_id, asset, quantity, avg_cost, basis_ccy, updated_at = row
    return Holding(
        id=holding_id,
        account_id=account_id,
        asset=asset,
        quantity=from_db_amount(quantity),
        avg_cost_basis=from_db_amount(avg_cost),
        cost_basis_currency=basis_ccy,
        updated_at=updated_at,
    )


def weighted_average(q0: Decimal, c0: Decimal, quantity: Decimal, price: Decimal) -> Decimal:
    """Blend `quantity` units bought at `price` into a position of q0 units at c0."""
    total = q0 + quantity
    if total == 0:
        return c0
    return (q0 * c0 + quantity * price) / total


class HoldingsLedger:
    """
    Quantity and average cost basis per (account, asset).

    `apply` is the only mutation used by transactions. It runs inside the
    caller's unit of work when there is one, otherwise in its own.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection, catalog: CurrencyCatalog):
        self.conn = conn
        self.catalog = catalog

    def get(self, account_id: str, asset: str) -> Holding | None:
        row = self.conn.execute(f"""
            SELECT {_COLUMNS}
            FROM holdings
            WHERE account_id = ? AND asset = ?
        """, [account_id, asset.upper()]).fetchone()
        return _row_to_holding(row) if row else None

    def list(self, account_id: str | None = None, include_zero: bool = False) -> List[Holding]:
        query = f"SELECT {_COLUMNS} FROM holdings WHERE 1 = 1"
        params = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if not include_zero:
            query += " AND quantity > 0"
        query += " ORDER BY account_id, asset"
        return [_row_to_holding(row) for row in self.conn.execute(query, params).fetchall()]

    def apply(
        self,
        account_id: str,
        asset: str,
        quantity_delta: Decimal,
        unit_price: Decimal | None = None,
        cost_basis_currency: str | None = None,
    ) -> HoldingSnapshot:
        """
        Apply a quantity change to a holding.

        Increases blend `unit_price` into the average cost; without a price
        the average is kept. Decreases never change the average; with a price
        they report the realized gain of the units removed.

        Args:
            account_id: Resolved account id
            asset: Currency code of the held asset
            quantity_delta: Signed quantity change, non-zero
            unit_price: Price per unit in the holding's cost-basis currency
            cost_basis_currency: Basis currency for a newly created holding
                (defaults to the base_currency setting)

        Returns:
            HoldingSnapshot with the state before and after

        Raises:
            NotFound: unknown account or asset
            InvalidInput: zero delta or negative price
            InsufficientHoldings: the decrease exceeds the available quantity
        """
        asset = self.catalog.get(asset).code
        if to_db_amount(quantity_delta) == 0:
            raise InvalidInput(f"Quantity change must be non-zero at {AMOUNT_SCALE} decimal places, got {quantity_delta}")
        if unit_price is not None and unit_price < 0:
            raise InvalidInput(f"Unit price must not be negative, got {unit_price}")

        with transaction(self.conn):
            self._require_account(account_id)
            before = self.get(account_id, asset)
            q0 = before.quantity if before else Decimal("0")
            c0 = before.avg_cost_basis if before else Decimal("0")
            realized = None

            if quantity_delta > 0:
                q1 = q0 + quantity_delta
                c1 = weighted_average(q0, c0, quantity_delta, unit_price) if unit_price is not None else c0
            else:
                q1 = q0 + quantity_delta
                if q1 < 0:
                    raise InsufficientHoldings(account_id, asset, available=q0, required=-quantity_delta)
                c1 = c0
                if unit_price is not None:
                    realized = (unit_price - c0) * -quantity_delta

            now = utcnow()
            if before is None:
                basis_ccy = (cost_basis_currency or get_setting(self.conn, "base_currency") or "USD").upper()
                holding_id = self.conn.execute(f"""
                    INSERT INTO holdings (account_id, asset, quantity, avg_cost_basis, cost_basis_currency, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    RETURNING id
                """, [account_id, asset, to_db_amount(q1), to_db_amount(c1), basis_ccy, now]).fetchone()[0]
            else:
                basis_ccy = before.cost_basis_currency
                holding_id = before.id
                self.conn.execute("""
                    UPDATE holdings
                    SET quantity = ?, avg_cost_basis = ?, updated_at = ?
                    WHERE id = ?
                """, [to_db_amount(q1), to_db_amount(c1), now, holding_id])

        after = Holding(
            id=holding_id,
            account_id=account_id,
            asset=asset,
            quantity=from_db_amount(to_db_amount(q1)),
            avg_cost_basis=from_db_amount(to_db_amount(c1)),
            cost_basis_currency=basis_ccy,
            updated_at=now,
        )
        logger.debug(
            "Applied holding delta",
            account_id=account_id,
            asset=asset,
            delta=str(quantity_delta),
            quantity=str(after.quantity),
            avg_cost_basis=str(after.avg_cost_basis),
        )
        return HoldingSnapshot(before=before, after=after, quantity_delta=quantity_delta, realized_pnl=realized)

    def remove(self, account_id: str, asset: str) -> bool:
        """Explicitly delete one holding row. Returns whether a row existed."""
        with transaction(self.conn):
            existed = self.get(account_id, asset) is not None
            self.conn.execute(
                "DELETE FROM holdings WHERE account_id = ? AND asset = ?", [account_id, asset.upper()]
            )
        return existed

    def remove_account(self, account_id: str) -> int:
        """Delete every holding of an account. Returns the number removed."""
        with transaction(self.conn):
            count = self.conn.execute(
                "SELECT COUNT(*) FROM holdings WHERE account_id = ?", [account_id]
            ).fetchone()[0]
            self.conn.execute("DELETE FROM holdings WHERE account_id = ?", [account_id])
        if count:
            logger.info("Removed account holdings", account_id=account_id, count=count)
        return count

    def _require_account(self, account_id: str) -> None:
        exists = self.conn.execute("SELECT 1 FROM accounts WHERE id = ?", [account_id]).fetchone()
        if not exists:
            raise NotFound("Account", account_id)

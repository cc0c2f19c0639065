"""Portfolio valuation: per-holding, per-account, per-category and asset totals.

Totals are expressed in the base_currency setting. Holdings kept in another
cost-basis currency are converted with the latest stored exchange rate.
"""
from collections import defaultdict
from decimal import Decimal
from typing import Callable, Dict, List, Protocol, runtime_checkable

import duckdb
import pandas as pd

from cryptofolio.core.currencies import CurrencyCatalog
from cryptofolio.core.db import from_db_amount, get_setting
from cryptofolio.core.errors import PriceUnavailable
from cryptofolio.core.fx import ExchangeRateStore
from cryptofolio.core.models import (
    AccountSummary,
    AssetTotal,
    CategorySummary,
    Holding,
    HoldingValuation,
    PortfolioSummary,
)
from cryptofolio.logging_config import get_logger

logger = get_logger(__name__)

UNCATEGORIZED = "Uncategorized"


@runtime_checkable
class PriceFeed(Protocol):
    def current_price(self, asset: str) -> Decimal | None:
        ...


def pnl_percent(pnl: Decimal, cost: Decimal) -> Decimal:
    if cost == 0:
        return Decimal("0")
    return pnl / cost * 100


class PortfolioAggregator:
    """
    Read-only valuation of the holdings table.

    `price` is a PriceFeed or any callable taking an asset code. It returns the
    current price in the holding's cost-basis currency, or None / raises
    PriceUnavailable when no price is known. Prices are fetched once per asset
    and aggregation call.

    Converting a cost-basis currency into the base currency raises
    RateUnavailable when no rate is stored in either direction.
    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        price: PriceFeed | Callable[[str], Decimal | None],
        rates: ExchangeRateStore | None = None,
    ):
        self.conn = conn
        self.rates = rates or ExchangeRateStore(conn, CurrencyCatalog(conn))
        if isinstance(price, PriceFeed):
            self._price = price.current_price
        else:
            self._price = price

    @property
    def base_currency(self) -> str:
        return (get_setting(self.conn, "base_currency") or "USD").upper()

    def valuations(self) -> List[HoldingValuation]:
        rows = self.conn.execute("""
            SELECT h.id, h.account_id, h.asset, h.quantity, h.avg_cost_basis,
                   h.cost_basis_currency, h.updated_at, a.name, a.category_id
            FROM holdings h
            JOIN accounts a ON a.id = h.account_id
            WHERE h.quantity > 0
            ORDER BY a.name, h.asset
        """).fetchall()

        base = self.base_currency
        prices: Dict[str, Decimal | None] = {}
        factors: Dict[str, Decimal] = {}
        valuations = []
        for row in rows:
            holding_id, account_id, asset, quantity, avg_cost, basis_ccy, updated_at, account_name, category_id = row
            holding = Holding(
                id=holding_id,
                account_id=account_id,
                asset=asset,
                quantity=from_db_amount(quantity),
                avg_cost_basis=from_db_amount(avg_cost),
                cost_basis_currency=basis_ccy,
                updated_at=updated_at,
            )
            if asset not in prices:
                prices[asset] = self._lookup_price(asset)
            if basis_ccy not in factors:
                factors[basis_ccy] = self.rates.lookup(basis_ccy, base)
            valuations.append(self._value(holding, account_name, category_id, prices[asset], factors[basis_ccy]))
        return valuations

    def by_account(self) -> List[AccountSummary]:
        return self._by_account(self.valuations(), self.base_currency)

    def by_category(self) -> List[CategorySummary]:
        """Accounts grouped by category, highest value first."""
        base = self.base_currency
        names = dict(self.conn.execute("SELECT id, name FROM categories").fetchall())
        grouped: Dict[str | None, List[AccountSummary]] = defaultdict(list)
        for account in self._by_account(self.valuations(), base):
            grouped[account.category_id].append(account)

        summaries = []
        for category_id, accounts in grouped.items():
            total_value = sum((a.total_value for a in accounts), Decimal("0"))
            total_cost = sum((a.total_cost for a in accounts), Decimal("0"))
            pnl = sum((a.unrealized_pnl for a in accounts), Decimal("0"))
            summaries.append(CategorySummary(
                category_id=category_id,
                category_name=names.get(category_id, UNCATEGORIZED) if category_id else UNCATEGORIZED,
                accounts=accounts,
                total_value=total_value,
                total_cost=total_cost,
                unrealized_pnl=pnl,
                pnl_percent=pnl_percent(pnl, total_cost),
                currency=base,
            ))
        summaries.sort(key=lambda s: s.total_value, reverse=True)
        return summaries

    def asset_totals(self) -> List[AssetTotal]:
        """Quantities and values per asset across all accounts, highest value first."""
        base = self.base_currency
        grouped: Dict[str, List[HoldingValuation]] = defaultdict(list)
        for valuation in self.valuations():
            grouped[valuation.holding.asset].append(valuation)

        totals = []
        for asset, items in grouped.items():
            total_value, total_cost, pnl = _totals(items)
            totals.append(AssetTotal(
                asset=asset,
                quantity=sum((v.holding.quantity for v in items), Decimal("0")),
                value=total_value,
                cost=total_cost,
                unrealized_pnl=pnl,
                currency=base,
            ))
        totals.sort(key=lambda t: (-t.value, t.asset))
        return totals

    def summary(self) -> PortfolioSummary:
        valuations = self.valuations()
        total_value, total_cost, pnl = _totals(valuations)
        unpriced = sorted({v.holding.asset for v in valuations if v.price is None})
        return PortfolioSummary(
            total_value=total_value,
            total_cost=total_cost,
            unrealized_pnl=pnl,
            pnl_percent=pnl_percent(pnl, total_cost),
            holdings_count=len(valuations),
            unpriced_assets=unpriced,
            currency=self.base_currency,
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Valuations as a DataFrame, one row per holding."""
        columns = [
            "account", "category", "asset", "quantity", "avg_cost_basis",
            "cost_basis_currency", "price", "value", "cost", "unrealized_pnl", "pnl_percent",
            "base_value", "base_cost",
        ]
        records = [
            {
                "account": v.account_name,
                "category": v.category_id,
                "asset": v.holding.asset,
                "quantity": v.holding.quantity,
                "avg_cost_basis": v.holding.avg_cost_basis,
                "cost_basis_currency": v.holding.cost_basis_currency,
                "price": v.price,
                "value": v.value,
                "cost": v.cost,
                "unrealized_pnl": v.unrealized_pnl,
                "pnl_percent": v.pnl_percent,
                "base_value": v.base_value,
                "base_cost": v.base_cost,
            }
            for v in self.valuations()
        ]
        return pd.DataFrame(records, columns=columns)

    def _by_account(self, valuations: List[HoldingValuation], base: str) -> List[AccountSummary]:
        grouped: Dict[str, List[HoldingValuation]] = defaultdict(list)
        for valuation in valuations:
            grouped[valuation.holding.account_id].append(valuation)

        summaries = []
        for account_id, items in grouped.items():
            total_value, total_cost, pnl = _totals(items)
            summaries.append(AccountSummary(
                account_id=account_id,
                account_name=items[0].account_name,
                category_id=items[0].category_id,
                holdings=items,
                total_value=total_value,
                total_cost=total_cost,
                unrealized_pnl=pnl,
                pnl_percent=pnl_percent(pnl, total_cost),
                currency=base,
            ))
        return summaries

    def _lookup_price(self, asset: str) -> Decimal | None:
        try:
            return self._price(asset)
        except PriceUnavailable:
            logger.debug("No price available", asset=asset)
            return None

    @staticmethod
    def _value(
        holding: Holding,
        account_name: str,
        category_id: str | None,
        price: Decimal | None,
        to_base: Decimal,
    ) -> HoldingValuation:
        cost = holding.cost_basis_total
        if price is None:
            value = pnl = pct = None
        else:
            value = holding.quantity * price
            pnl = value - cost
            pct = pnl_percent(pnl, cost)
        return HoldingValuation(
            holding=holding,
            account_name=account_name,
            category_id=category_id,
            price=price,
            value=value,
            cost=cost,
            unrealized_pnl=pnl,
            pnl_percent=pct,
            base_value=value * to_base if value is not None else None,
            base_cost=cost * to_base,
        )


def _totals(valuations: List[HoldingValuation]) -> tuple[Decimal, Decimal, Decimal]:
    """Sum value, cost and P&L in the base currency. Unpriced holdings count towards cost only."""
    total_value = sum((v.base_value for v in valuations if v.base_value is not None), Decimal("0"))
    total_cost = sum((v.base_cost for v in valuations), Decimal("0"))
    priced_cost = sum((v.base_cost for v in valuations if v.base_value is not None), Decimal("0"))
    return total_value, total_cost, total_value - priced_cost

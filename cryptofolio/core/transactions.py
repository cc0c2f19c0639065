"""
Transaction recording: validates and applies Buy, Sell, Transfer and Swap
requests against the holdings ledger.

Each request runs as one DuckDB transaction. All legs are validated before
the first holding changes; any failure afterwards rolls the unit back, so a
partially applied transaction is never visible.
"""
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, assert_never

import duckdb

from cryptofolio.core.accounts import AccountRegistry
from cryptofolio.core.currencies import CurrencyCatalog
from cryptofolio.core.db import (
    AMOUNT_SCALE,
    MAX_AMOUNT,
    from_db_amount,
    get_setting,
    in_transaction,
    to_db_amount,
    to_db_timestamp,
    transaction,
    utcnow,
)
from cryptofolio.core.errors import (
    InsufficientHoldings,
    InvalidInput,
    LedgerArithmeticError,
    NotFound,
)
from cryptofolio.core.fx import ExchangeRateStore
from cryptofolio.core.holdings import HoldingsLedger
from cryptofolio.core.models import (
    Buy,
    Currency,
    ExchangeRate,
    Holding,
    Sell,
    Swap,
    Transaction,
    TransactionRequest,
    TransactionResult,
    TransactionType,
    Transfer,
)
from cryptofolio.logging_config import get_logger

logger = get_logger(__name__)

_COLUMNS = """
    id, tx_type, from_account_id, from_asset, from_quantity,
    to_account_id, to_asset, to_quantity, unit_price, price_currency,
    fee, fee_asset, exchange_rate, exchange_rate_pair, ts, notes, created_at
"""


class _DryRunRollback(Exception):
    def __init__(self, result: TransactionResult):
        self.result = result


def to_decimal(value, field: str, exact: bool = False) -> Decimal:
    """
    Coerce user input to Decimal.

    Rejects NaN, infinities and magnitudes the amount columns cannot hold.
    With `exact`, also rejects more fractional digits than are stored.
    """
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidInput(f"{field} is not a valid number: {value!r}") from None
    if not amount.is_finite():
        raise InvalidInput(f"{field} must be a finite number, got {value!r}")
    if abs(amount) >= MAX_AMOUNT:
        raise InvalidInput(f"{field} {amount} exceeds the largest storable amount")
    if exact and amount != 0 and amount.normalize().as_tuple().exponent < -AMOUNT_SCALE:
        raise InvalidInput(f"{field} {amount} has more than {AMOUNT_SCALE} decimal places")
    return amount


def _positive(value, field: str, exact: bool = False) -> Decimal:
    amount = to_decimal(value, field, exact=exact)
    if amount <= 0:
        raise InvalidInput(f"{field} must be positive, got {amount}")
    if to_db_amount(amount) == 0:
        raise InvalidInput(f"{field} {amount} rounds to zero at {AMOUNT_SCALE} decimal places")
    return amount


def _row_to_transaction(row) -> Transaction:
    (tx_id, tx_type, from_account_id, from_asset, from_quantity,
     to_account_id, to_asset, to_quantity, unit_price, price_currency,
     fee, fee_asset, exchange_rate, exchange_rate_pair, ts, notes, created_at) = row
    return Transaction(
        id=tx_id,
        tx_type=TransactionType(tx_type),
        timestamp=ts,
        from_account_id=from_account_id,
        from_asset=from_asset,
        from_quantity=from_db_amount(from_quantity),
        to_account_id=to_account_id,
        to_asset=to_asset,
        to_quantity=from_db_amount(to_quantity),
        unit_price=from_db_amount(unit_price),
        price_currency=price_currency,
        fee=from_db_amount(fee),
        fee_asset=fee_asset,
        exchange_rate=from_db_amount(exchange_rate),
        exchange_rate_pair=exchange_rate_pair,
        notes=notes,
        created_at=created_at,
    )


def get_transaction(conn: duckdb.DuckDBPyConnection, tx_id: int) -> Transaction:
    row = conn.execute(f"SELECT {_COLUMNS} FROM transactions WHERE id = ?", [tx_id]).fetchone()
    if not row:
        raise NotFound("Transaction", str(tx_id))
    return _row_to_transaction(row)


def list_transactions(
    conn: duckdb.DuckDBPyConnection,
    account_id: str | None = None,
    limit: int = 50,
) -> List[Transaction]:
    """Newest transactions first, optionally only those touching one account."""
    query = f"SELECT {_COLUMNS} FROM transactions"
    params: list = []
    if account_id is not None:
        query += " WHERE from_account_id = ? OR to_account_id = ?"
        params += [account_id, account_id]
    query += " ORDER BY ts DESC, id DESC LIMIT ?"
    params.append(limit)
    return [_row_to_transaction(row) for row in conn.execute(query, params).fetchall()]


class TransactionRecorder:
    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        catalog: CurrencyCatalog,
        rates: ExchangeRateStore,
        holdings: HoldingsLedger,
        accounts: AccountRegistry,
    ):
        self.conn = conn
        self.catalog = catalog
        self.rates = rates
        self.holdings = holdings
        self.accounts = accounts

    # Convenience wrappers

    def buy(self, **fields) -> TransactionResult:
        return self.record(Buy(**fields))

    def sell(self, **fields) -> TransactionResult:
        return self.record(Sell(**fields))

    def transfer(self, **fields) -> TransactionResult:
        return self.record(Transfer(**fields))

    def swap(self, **fields) -> TransactionResult:
        return self.record(Swap(**fields))

    def record(self, request: TransactionRequest, dry_run: bool = False) -> TransactionResult:
        """
        Validate and apply one transaction request atomically.

        Args:
            request: Buy, Sell, Transfer or Swap
            dry_run: Run everything, then roll back and return the would-be result

        Returns:
            TransactionResult with the stored record, holding snapshots in
            apply order, advisory realized P&L / fee loss and any captured rate

        Raises:
            NotFound, InvalidInput, InsufficientHoldings, LedgerArithmeticError,
            RateUnavailable, Conflict
        """
        if not isinstance(request, (Buy, Sell, Transfer, Swap)):
            raise InvalidInput(f"Unsupported transaction request: {type(request).__name__}")
        if dry_run and in_transaction(self.conn):
            raise InvalidInput("A dry run cannot join an enclosing transaction")

        ts = to_db_timestamp(request.timestamp) if request.timestamp is not None else utcnow()

        try:
            with transaction(self.conn):
                match request:
                    case Buy():
                        result = self._buy(request, ts)
                    case Sell():
                        result = self._sell(request, ts)
                    case Transfer():
                        result = self._transfer(request, ts)
                    case Swap():
                        result = self._swap(request, ts)
                    case _:
                        assert_never(request)
                if dry_run:
                    result.dry_run = True
                    raise _DryRunRollback(result)
        except _DryRunRollback as rollback:
            logger.info("Dry run, nothing recorded", tx_type=rollback.result.transaction.tx_type.value)
            return rollback.result

        tx = result.transaction
        logger.info(
            "Recorded transaction",
            tx_id=tx.id,
            tx_type=tx.tx_type.value,
            from_account=tx.from_account_id,
            from_asset=tx.from_asset,
            from_quantity=str(tx.from_quantity) if tx.from_quantity is not None else None,
            to_account=tx.to_account_id,
            to_asset=tx.to_asset,
            to_quantity=str(tx.to_quantity) if tx.to_quantity is not None else None,
        )
        return result

    # Handlers. Each validates every leg first, then applies.

    def _buy(self, req: Buy, ts: datetime) -> TransactionResult:
        account = self.accounts.resolve(req.account)
        asset = self._inbound_asset(req.asset)
        quantity = _positive(req.quantity, "Quantity", exact=True)
        price = _positive(req.unit_price, "Unit price")

        holding = self.holdings.get(account.id, asset.code)
        basis_ccy = self._basis_currency(holding)
        price_ccy = self.catalog.get(req.price_currency).code if req.price_currency else basis_ccy
        basis_price = self._in_basis(price, price_ccy, basis_ccy, ts)

        snapshot = self.holdings.apply(
            account.id, asset.code, quantity, basis_price, cost_basis_currency=basis_ccy
        )
        tx = self._insert(Transaction(
            id=None,
            tx_type=TransactionType.BUY,
            timestamp=ts,
            to_account_id=account.id,
            to_asset=asset.code,
            to_quantity=quantity,
            unit_price=price,
            price_currency=price_ccy,
            notes=req.notes,
        ))
        return TransactionResult(transaction=tx, holdings=[snapshot])

    def _sell(self, req: Sell, ts: datetime) -> TransactionResult:
        account = self.accounts.resolve(req.account)
        asset = self.catalog.get(req.asset)
        quantity = _positive(req.quantity, "Quantity", exact=True)
        price = _positive(req.unit_price, "Unit price")

        holding = self._require(account.id, asset.code, quantity)
        price_ccy = self.catalog.get(req.price_currency).code if req.price_currency else holding.cost_basis_currency
        basis_price = self._in_basis(price, price_ccy, holding.cost_basis_currency, ts)

        snapshot = self.holdings.apply(account.id, asset.code, -quantity, basis_price)
        tx = self._insert(Transaction(
            id=None,
            tx_type=TransactionType.SELL,
            timestamp=ts,
            from_account_id=account.id,
            from_asset=asset.code,
            from_quantity=quantity,
            unit_price=price,
            price_currency=price_ccy,
            notes=req.notes,
        ))
        return TransactionResult(transaction=tx, holdings=[snapshot], realized_pnl=snapshot.realized_pnl)

    def _transfer(self, req: Transfer, ts: datetime) -> TransactionResult:
        source_account = self.accounts.resolve(req.from_account)
        dest_account = self.accounts.resolve(req.to_account)
        if source_account.id == dest_account.id:
            raise InvalidInput("Transfer source and destination must be different accounts")

        asset = self.catalog.get(req.asset)
        quantity = _positive(req.quantity, "Quantity", exact=True)
        fee = to_decimal(req.fee if req.fee is not None else 0, "Fee", exact=True)
        if fee < 0:
            raise InvalidInput(f"Fee must not be negative, got {fee}")
        fee_asset = self.catalog.get(req.fee_asset).code if req.fee_asset else asset.code

        # Fee is always deducted in units of the transferred asset
        if fee_asset == asset.code or fee == 0:
            fee_units = fee
        else:
            fee_units = self.rates.convert(fee, fee_asset, asset.code, at=ts, max_age=self._max_rate_age())
        if fee_units >= quantity:
            raise InvalidInput(f"Fee ({fee_units} {asset.code}) must be smaller than the transferred quantity")

        source = self._require(source_account.id, asset.code, quantity)
        dest = self.holdings.get(dest_account.id, asset.code)
        basis_ccy = source.cost_basis_currency
        dest_ccy = dest.cost_basis_currency if dest else basis_ccy
        carried_cost = self._in_basis(source.avg_cost_basis, basis_ccy, dest_ccy, ts)
        net_received = quantity - fee_units

        out_leg = self.holdings.apply(source_account.id, asset.code, -quantity)
        in_leg = self.holdings.apply(
            dest_account.id, asset.code, net_received,
            unit_price=carried_cost, cost_basis_currency=dest_ccy,
        )
        tx = self._insert(Transaction(
            id=None,
            tx_type=TransactionType.TRANSFER,
            timestamp=ts,
            from_account_id=source_account.id,
            from_asset=asset.code,
            from_quantity=quantity,
            to_account_id=dest_account.id,
            to_asset=asset.code,
            to_quantity=net_received,
            fee=fee,
            fee_asset=fee_asset,
            notes=req.notes,
        ))
        return TransactionResult(
            transaction=tx,
            holdings=[out_leg, in_leg],
            fee_loss=fee_units * source.avg_cost_basis,
        )

    def _swap(self, req: Swap, ts: datetime) -> TransactionResult:
        source_account = self.accounts.resolve(req.from_account)
        dest_account = self.accounts.resolve(req.to_account) if req.to_account else source_account

        from_asset = self.catalog.get(req.from_asset)
        to_asset = self._inbound_asset(req.to_asset)
        if source_account.id == dest_account.id and from_asset.code == to_asset.code:
            raise InvalidInput("Swap must change the asset or the account")

        from_quantity = _positive(req.from_quantity, "From quantity", exact=True)
        to_quantity = to_decimal(req.to_quantity, "To quantity", exact=True)
        if to_quantity < 0:
            raise InvalidInput(f"To quantity must be positive, got {to_quantity}")
        if to_quantity == 0:
            raise LedgerArithmeticError(
                f"Cannot derive an implied rate for {from_asset.code}/{to_asset.code}: to quantity is zero"
            )
        manual_rate = _positive(req.manual_rate, "Manual rate") if req.manual_rate is not None else None

        # FROM units paid per one TO unit
        ratio = manual_rate if manual_rate is not None else from_quantity / to_quantity

        source = self._require(source_account.id, from_asset.code, from_quantity)
        basis_ccy = source.cost_basis_currency
        dest = self.holdings.get(dest_account.id, to_asset.code)
        dest_ccy = dest.cost_basis_currency if dest else basis_ccy
        unit_price = self._in_basis(self._unit_cost(source) * ratio, basis_ccy, dest_ccy, ts)

        captured = None
        if from_asset.is_fiat and to_asset.is_fiat and from_asset.code != to_asset.code:
            # Stored as "FROM per one TO", i.e. on the TO -> FROM pair
            origin = "manual rate" if manual_rate is not None else "implied"
            captured = ExchangeRate(
                from_currency=to_asset.code,
                to_currency=from_asset.code,
                rate=ratio,
                timestamp=ts,
                source="swap",
                notes=f"{origin} by swap {from_quantity} {from_asset.code} -> {to_quantity} {to_asset.code}",
            )

        out_leg = self.holdings.apply(source_account.id, from_asset.code, -from_quantity)
        in_leg = self.holdings.apply(
            dest_account.id, to_asset.code, to_quantity,
            unit_price=unit_price, cost_basis_currency=dest_ccy,
        )
        if captured is not None:
            captured.id = self.rates.upsert(captured)

        tx = self._insert(Transaction(
            id=None,
            tx_type=TransactionType.SWAP,
            timestamp=ts,
            from_account_id=source_account.id,
            from_asset=from_asset.code,
            from_quantity=from_quantity,
            to_account_id=dest_account.id,
            to_asset=to_asset.code,
            to_quantity=to_quantity,
            unit_price=unit_price,
            price_currency=dest_ccy,
            exchange_rate=ratio,
            exchange_rate_pair=captured.pair if captured else f"{to_asset.code}/{from_asset.code}",
            notes=req.notes,
        ))
        return TransactionResult(transaction=tx, holdings=[out_leg, in_leg], exchange_rate=captured)

    # Helpers

    def _inbound_asset(self, code: str) -> Currency:
        currency = self.catalog.get(code)
        if not currency.enabled:
            raise InvalidInput(f"Currency {currency.code} is disabled")
        return currency

    def _require(self, account_id: str, asset: str, quantity: Decimal) -> Holding:
        holding = self.holdings.get(account_id, asset)
        available = holding.quantity if holding else Decimal("0")
        if available < quantity:
            raise InsufficientHoldings(account_id, asset, available=available, required=quantity)
        return holding

    def _basis_currency(self, holding: Holding | None) -> str:
        if holding is not None:
            return holding.cost_basis_currency
        return (get_setting(self.conn, "base_currency") or "USD").upper()

    @staticmethod
    def _unit_cost(holding: Holding) -> Decimal:
        # A holding of its own basis currency is worth exactly one unit each
        if holding.asset == holding.cost_basis_currency:
            return Decimal("1")
        return holding.avg_cost_basis

    def _in_basis(self, amount: Decimal, from_ccy: str, to_ccy: str, ts: datetime) -> Decimal:
        if from_ccy == to_ccy:
            return amount
        return self.rates.convert(amount, from_ccy, to_ccy, at=ts, max_age=self._max_rate_age())

    def _max_rate_age(self) -> timedelta | None:
        days = int(get_setting(self.conn, "fx_max_age_days") or 0)
        return timedelta(days=days) if days > 0 else None

    def _insert(self, tx: Transaction) -> Transaction:
        tx_id = self.conn.execute("""
            INSERT INTO transactions (
                tx_type, from_account_id, from_asset, from_quantity,
                to_account_id, to_asset, to_quantity, unit_price, price_currency,
                fee, fee_asset, exchange_rate, exchange_rate_pair, ts, notes
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
        """, [
            tx.tx_type.value,
            tx.from_account_id,
            tx.from_asset,
            to_db_amount(tx.from_quantity),
            tx.to_account_id,
            tx.to_asset,
            to_db_amount(tx.to_quantity),
            to_db_amount(tx.unit_price),
            tx.price_currency,
            to_db_amount(tx.fee),
            tx.fee_asset,
            to_db_amount(tx.exchange_rate),
            tx.exchange_rate_pair,
            tx.timestamp,
            tx.notes,
        ]).fetchone()[0]
        return get_transaction(self.conn, tx_id)

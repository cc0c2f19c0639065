"""Tests for recording buys, sells, transfers and swaps."""
from datetime import timedelta
from decimal import Decimal

import pytest

from cryptofolio.core.accounts import AccountRegistry
from cryptofolio.core.currencies import CurrencyCatalog
from cryptofolio.core.db import transaction
from cryptofolio.core.errors import (
    Conflict,
    InsufficientHoldings,
    InvalidInput,
    LedgerArithmeticError,
    NotFound,
    RateUnavailable,
)
from cryptofolio.core.fx import ExchangeRateStore
from cryptofolio.core.holdings import HoldingsLedger
from cryptofolio.core.models import Buy, ExchangeRate, Sell, Swap, Transfer, TransactionType
from cryptofolio.core.transactions import TransactionRecorder, get_transaction, list_transactions


def count_transactions(conn):
    return conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]


# Buy / Sell

def test_buy_blends_average_cost(recorder, ledger, exchange, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("0.1"), unit_price=Decimal("50000"), timestamp=t0)
    result = recorder.record(Buy(account="binance", asset="BTC", quantity=Decimal("0.1"), unit_price=Decimal("60000")))

    holding = ledger.get(exchange.id, "BTC")
    assert holding.quantity == Decimal("0.2")
    assert holding.avg_cost_basis == Decimal("55000")
    assert result.transaction.tx_type == TransactionType.BUY
    assert result.transaction.to_account_id == exchange.id
    assert result.transaction.price_currency == "USD"
    assert result.holdings[0].after.avg_cost_basis == Decimal("55000")


def test_buy_records_transaction_row(conn, recorder, exchange, t0):
    result = recorder.buy(account=exchange.id, asset="ETH", quantity="1.5", unit_price="3200", timestamp=t0, notes="dca")

    stored = get_transaction(conn, result.transaction.id)
    assert stored.to_quantity == Decimal("1.5")
    assert stored.unit_price == Decimal("3200")
    assert stored.timestamp == t0
    assert stored.notes == "dca"
    assert stored.from_account_id is None


def test_buy_converts_foreign_price(recorder, rates, ledger, exchange, t0):
    rates.upsert(ExchangeRate(from_currency="EUR", to_currency="USD", rate=Decimal("1.1"), timestamp=t0))

    recorder.buy(account="Binance", asset="SOL", quantity=Decimal("10"), unit_price=Decimal("100"),
                 price_currency="EUR", timestamp=t0 + timedelta(hours=1))

    holding = ledger.get(exchange.id, "SOL")
    assert holding.cost_basis_currency == "USD"
    assert holding.avg_cost_basis == Decimal("110")


def test_buy_foreign_price_without_rate(recorder, exchange, t0):
    with pytest.raises(RateUnavailable):
        recorder.buy(account="Binance", asset="SOL", quantity=Decimal("10"), unit_price=Decimal("100"),
                     price_currency="CRC", timestamp=t0)


@pytest.mark.parametrize("quantity, price", [("0", "100"), ("-1", "100"), ("1", "0"), ("1", "-5"), ("abc", "1"), ("NaN", "1")])
def test_buy_rejects_bad_amounts(recorder, exchange, quantity, price):
    with pytest.raises(InvalidInput):
        recorder.buy(account="Binance", asset="BTC", quantity=quantity, unit_price=price)


@pytest.mark.parametrize("quantity, price", [
    ("1e-19", "100"),
    ("0.0000000000000000001", "100"),
    ("1e21", "100"),
    ("1", "1e20"),
    ("1", "1e-19"),
])
def test_buy_rejects_unstorable_amounts(conn, recorder, ledger, exchange, quantity, price):
    with pytest.raises(InvalidInput):
        recorder.buy(account="Binance", asset="ETH", quantity=quantity, unit_price=price)

    assert ledger.get(exchange.id, "ETH") is None
    assert count_transactions(conn) == 0


def test_buy_accepts_full_eighteen_decimals(recorder, ledger, exchange):
    recorder.buy(account="Binance", asset="ETH", quantity=Decimal("0.000000000000000001"), unit_price=Decimal("3000"))
    assert ledger.get(exchange.id, "ETH").quantity == Decimal("1e-18")


def test_transfer_fee_beyond_storage_precision(recorder, exchange, ledger_wallet, t0):
    recorder.buy(account="Binance", asset="ETH", quantity=Decimal("1"), unit_price=Decimal("3000"), timestamp=t0)
    with pytest.raises(InvalidInput):
        recorder.transfer(from_account="Binance", to_account="Ledger", asset="ETH",
                          quantity=Decimal("0.5"), fee=Decimal("1e-19"), timestamp=t0)


def test_buy_unknown_account_lists_candidates(recorder, exchange, bank):
    with pytest.raises(NotFound) as exc_info:
        recorder.buy(account="Kraken", asset="BTC", quantity=Decimal("1"), unit_price=Decimal("1"))
    assert exc_info.value.candidates == ["BAC", "Binance"]


def test_buy_of_disabled_currency(recorder, catalog, exchange):
    catalog.set_enabled("SOL", False)
    with pytest.raises(InvalidInput):
        recorder.buy(account="Binance", asset="SOL", quantity=Decimal("1"), unit_price=Decimal("1"))


def test_sell_keeps_average_and_reports_pnl(recorder, ledger, exchange, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("0.5"), unit_price=Decimal("40000"), timestamp=t0)
    result = recorder.sell(account="Binance", asset="BTC", quantity=Decimal("0.2"), unit_price=Decimal("50000"), timestamp=t0)

    holding = ledger.get(exchange.id, "BTC")
    assert holding.quantity == Decimal("0.3")
    assert holding.avg_cost_basis == Decimal("40000")
    assert result.realized_pnl == Decimal("2000")
    assert result.transaction.from_quantity == Decimal("0.2")


def test_sell_everything(recorder, ledger, exchange, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("0.2"), unit_price=Decimal("40000"), timestamp=t0)
    recorder.sell(account="Binance", asset="BTC", quantity=Decimal("0.2"), unit_price=Decimal("45000"), timestamp=t0)

    holding = ledger.get(exchange.id, "BTC")
    assert holding.quantity == Decimal("0")
    assert holding.avg_cost_basis == Decimal("40000")


def test_oversized_sell_changes_nothing(conn, recorder, ledger, exchange, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("0.2"), unit_price=Decimal("40000"), timestamp=t0)

    with pytest.raises(InsufficientHoldings):
        recorder.sell(account="Binance", asset="BTC", quantity=Decimal("0.3"), unit_price=Decimal("45000"))

    assert ledger.get(exchange.id, "BTC").quantity == Decimal("0.2")
    assert count_transactions(conn) == 1


def test_sell_of_disabled_currency_is_allowed(recorder, catalog, ledger, exchange, t0):
    recorder.buy(account="Binance", asset="SOL", quantity=Decimal("5"), unit_price=Decimal("100"), timestamp=t0)
    catalog.set_enabled("SOL", False)

    recorder.sell(account="Binance", asset="SOL", quantity=Decimal("5"), unit_price=Decimal("120"), timestamp=t0)
    assert ledger.get(exchange.id, "SOL").quantity == Decimal("0")


# Transfer

def test_transfer_with_fee(recorder, ledger, exchange, ledger_wallet, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("0.5"), unit_price=Decimal("40000"), timestamp=t0)

    result = recorder.transfer(from_account="Binance", to_account="Ledger", asset="BTC",
                               quantity=Decimal("0.2"), fee=Decimal("0.001"), timestamp=t0)

    source = ledger.get(exchange.id, "BTC")
    dest = ledger.get(ledger_wallet.id, "BTC")
    assert source.quantity == Decimal("0.3")
    assert source.avg_cost_basis == Decimal("40000")
    assert dest.quantity == Decimal("0.199")
    assert dest.avg_cost_basis == Decimal("40000")
    assert result.fee_loss == Decimal("40")
    assert result.transaction.to_quantity == Decimal("0.199")
    assert result.transaction.fee_asset == "BTC"


def test_transfer_conserves_quantity(recorder, ledger, exchange, ledger_wallet, t0):
    recorder.buy(account="Binance", asset="ETH", quantity=Decimal("3"), unit_price=Decimal("2000"), timestamp=t0)
    recorder.buy(account="Ledger", asset="ETH", quantity=Decimal("1"), unit_price=Decimal("3000"), timestamp=t0)
    fee = Decimal("0.0021")

    result = recorder.transfer(from_account="Binance", to_account="Ledger", asset="ETH",
                               quantity=Decimal("2"), fee=fee, timestamp=t0)

    out_leg, in_leg = result.holdings
    assert out_leg.before.quantity - out_leg.after.quantity - fee == in_leg.after.quantity - in_leg.before.quantity
    # destination blends the carried cost with its own
    expected = (Decimal("1") * Decimal("3000") + (Decimal("2") - fee) * Decimal("2000")) / (Decimal("3") - fee)
    assert abs(in_leg.after.avg_cost_basis - expected) < Decimal("1e-12")


def test_transfer_fee_in_other_asset(recorder, rates, ledger, ledger_wallet, exchange, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("1"), unit_price=Decimal("50000"), timestamp=t0)
    rates.upsert(ExchangeRate(from_currency="BTC", to_currency="USD", rate=Decimal("50000"), timestamp=t0))

    result = recorder.transfer(from_account="Binance", to_account="Ledger", asset="BTC", quantity=Decimal("0.5"),
                               fee=Decimal("25"), fee_asset="USD", timestamp=t0 + timedelta(days=1))

    assert ledger.get(ledger_wallet.id, "BTC").quantity == Decimal("0.4995")
    assert result.transaction.fee == Decimal("25")
    assert result.transaction.fee_asset == "USD"


def test_transfer_fee_rate_too_old(recorder, rates, exchange, ledger_wallet, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("1"), unit_price=Decimal("50000"), timestamp=t0)
    rates.upsert(ExchangeRate(from_currency="BTC", to_currency="USD", rate=Decimal("50000"), timestamp=t0))

    with pytest.raises(RateUnavailable):
        recorder.transfer(from_account="Binance", to_account="Ledger", asset="BTC", quantity=Decimal("0.5"),
                          fee=Decimal("25"), fee_asset="USD", timestamp=t0 + timedelta(days=30))


def test_transfer_validation(recorder, exchange, ledger_wallet, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("1"), unit_price=Decimal("50000"), timestamp=t0)

    with pytest.raises(InvalidInput):
        recorder.transfer(from_account="Binance", to_account="binance", asset="BTC", quantity=Decimal("0.1"))
    with pytest.raises(InvalidInput):
        recorder.transfer(from_account="Binance", to_account="Ledger", asset="BTC",
                          quantity=Decimal("0.1"), fee=Decimal("0.1"))
    with pytest.raises(InvalidInput):
        recorder.transfer(from_account="Binance", to_account="Ledger", asset="BTC",
                          quantity=Decimal("0.1"), fee=Decimal("-0.01"))
    with pytest.raises(InsufficientHoldings):
        recorder.transfer(from_account="Binance", to_account="Ledger", asset="BTC", quantity=Decimal("2"))


# Swap

def test_fiat_swap_captures_implied_rate(conn, recorder, rates, ledger, bank, t0):
    recorder.buy(account="BAC", asset="CRC", quantity=Decimal("250000"), unit_price=Decimal("0.002"), timestamp=t0)

    result = recorder.swap(from_account="BAC", from_asset="CRC", from_quantity=Decimal("100000"),
                           to_asset="USD", to_quantity=Decimal("181.82"), timestamp=t0)

    captured = result.exchange_rate
    assert captured.pair == "USD/CRC"
    assert captured.source == "swap"
    assert abs(captured.rate - Decimal("100000") / Decimal("181.82")) < Decimal("1e-12")
    assert abs(rates.lookup("CRC", "USD", at=t0) - Decimal("0.0018182")) < Decimal("1e-7")
    assert rates.latest("USD", "CRC").id == captured.id
    assert ledger.get(bank.id, "CRC").quantity == Decimal("150000")
    assert ledger.get(bank.id, "USD").quantity == Decimal("181.82")
    assert result.transaction.exchange_rate_pair == "USD/CRC"


def test_fiat_swap_with_manual_rate(recorder, rates, bank, t0):
    recorder.buy(account="BAC", asset="CRC", quantity=Decimal("100000"), unit_price=Decimal("0.002"), timestamp=t0)

    result = recorder.swap(from_account="BAC", from_asset="CRC", from_quantity=Decimal("55000"),
                           to_asset="USD", to_quantity=Decimal("100"), manual_rate=Decimal("549"), timestamp=t0)

    assert result.exchange_rate.rate == Decimal("549")
    assert rates.latest("USD", "CRC").rate == Decimal("549")


def test_crypto_swap_carries_cost(recorder, ledger, exchange, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("1"), unit_price=Decimal("40000"), timestamp=t0)

    result = recorder.swap(from_account="Binance", from_asset="BTC", from_quantity=Decimal("0.5"),
                           to_asset="ETH", to_quantity=Decimal("10"), timestamp=t0)

    eth = ledger.get(exchange.id, "ETH")
    assert eth.quantity == Decimal("10")
    assert eth.avg_cost_basis == Decimal("2000")
    assert ledger.get(exchange.id, "BTC").quantity == Decimal("0.5")
    assert result.exchange_rate is None


def test_swap_into_other_account(recorder, ledger, exchange, ledger_wallet, t0):
    recorder.buy(account="Binance", asset="USDT", quantity=Decimal("1000"), unit_price=Decimal("1"), timestamp=t0)

    recorder.swap(from_account="Binance", from_asset="USDT", from_quantity=Decimal("1000"),
                  to_asset="SOL", to_quantity=Decimal("8"), to_account="Ledger", timestamp=t0)

    assert ledger.get(ledger_wallet.id, "SOL").avg_cost_basis == Decimal("125")
    assert ledger.get(exchange.id, "SOL") is None


def test_swap_zero_destination_quantity(conn, recorder, ledger, bank, t0):
    recorder.buy(account="BAC", asset="CRC", quantity=Decimal("1000"), unit_price=Decimal("0.002"), timestamp=t0)

    with pytest.raises(LedgerArithmeticError) as exc_info:
        recorder.swap(from_account="BAC", from_asset="CRC", from_quantity=Decimal("1000"),
                      to_asset="USD", to_quantity=Decimal("0"), timestamp=t0)

    assert isinstance(exc_info.value, ArithmeticError)
    assert ledger.get(bank.id, "CRC").quantity == Decimal("1000")
    assert conn.execute("SELECT COUNT(*) FROM exchange_rates").fetchone()[0] == 0


def test_swap_into_disabled_currency(recorder, catalog, exchange, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("1"), unit_price=Decimal("40000"), timestamp=t0)
    catalog.set_enabled("BNB", False)

    with pytest.raises(InvalidInput):
        recorder.swap(from_account="Binance", from_asset="BTC", from_quantity=Decimal("0.1"),
                      to_asset="BNB", to_quantity=Decimal("7"), timestamp=t0)


def test_swap_same_asset_same_account(recorder, exchange, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("1"), unit_price=Decimal("40000"), timestamp=t0)
    with pytest.raises(InvalidInput):
        recorder.swap(from_account="Binance", from_asset="BTC", from_quantity=Decimal("0.1"),
                      to_asset="BTC", to_quantity=Decimal("0.1"), timestamp=t0)


# Atomicity

def test_failure_after_legs_applied_rolls_back(conn, recorder, rates, ledger, exchange, monkeypatch, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("1"), unit_price=Decimal("40000"), timestamp=t0)
    recorder.buy(account="Binance", asset="USD", quantity=Decimal("500"), unit_price=Decimal("1"), timestamp=t0)

    def failing_upsert(rate):
        raise RuntimeError("disk full")

    # Both holding legs are written before the captured rate
    monkeypatch.setattr(rates, "upsert", failing_upsert)
    with pytest.raises(RuntimeError):
        recorder.swap(from_account="Binance", from_asset="USD", from_quantity=Decimal("500"),
                      to_asset="EUR", to_quantity=Decimal("460"), timestamp=t0)

    assert ledger.get(exchange.id, "USD").quantity == Decimal("500")
    assert ledger.get(exchange.id, "EUR") is None
    assert count_transactions(conn) == 2


def test_dry_run_changes_nothing(conn, recorder, ledger, exchange, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("0.1"), unit_price=Decimal("50000"), timestamp=t0)

    result = recorder.record(
        Buy(account="Binance", asset="BTC", quantity=Decimal("0.1"), unit_price=Decimal("60000"), timestamp=t0),
        dry_run=True,
    )

    assert result.dry_run
    assert result.holdings[0].after.avg_cost_basis == Decimal("55000")
    assert ledger.get(exchange.id, "BTC").quantity == Decimal("0.1")
    assert count_transactions(conn) == 1


def test_concurrent_writer_raises_conflict(conn, recorder, ledger, exchange, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("1"), unit_price=Decimal("40000"), timestamp=t0)

    other = conn.cursor()
    other_catalog = CurrencyCatalog(other)
    other_recorder = TransactionRecorder(
        other, other_catalog, ExchangeRateStore(other, other_catalog),
        HoldingsLedger(other, other_catalog), AccountRegistry(other),
    )

    with transaction(other):
        other_recorder.sell(account="Binance", asset="BTC", quantity=Decimal("0.3"),
                            unit_price=Decimal("45000"), timestamp=t0)
        with pytest.raises(Conflict):
            recorder.sell(account="Binance", asset="BTC", quantity=Decimal("0.5"),
                          unit_price=Decimal("45000"), timestamp=t0)
    other.close()

    # Only the competing sell landed
    assert ledger.get(exchange.id, "BTC").quantity == Decimal("0.7")
    sells = conn.execute("SELECT COUNT(*) FROM transactions WHERE tx_type = 'sell'").fetchone()[0]
    assert sells == 1


def test_unsupported_request(recorder):
    with pytest.raises(InvalidInput):
        recorder.record({"type": "buy"})


# Transaction log

def test_list_transactions_newest_first(conn, recorder, exchange, ledger_wallet, t0):
    recorder.buy(account="Binance", asset="BTC", quantity=Decimal("1"), unit_price=Decimal("40000"), timestamp=t0)
    recorder.buy(account="Ledger", asset="ETH", quantity=Decimal("1"), unit_price=Decimal("2000"),
                 timestamp=t0 + timedelta(hours=1))
    recorder.record(Transfer(from_account="Binance", to_account="Ledger", asset="BTC", quantity=Decimal("0.5"),
                             timestamp=t0 + timedelta(hours=2)))
    recorder.record(Sell(account="Ledger", asset="ETH", quantity=Decimal("0.5"), unit_price=Decimal("2500"),
                         timestamp=t0 + timedelta(hours=3)))
    recorder.record(Swap(from_account="Ledger", from_asset="BTC", from_quantity=Decimal("0.1"),
                         to_asset="ETH", to_quantity=Decimal("2"), timestamp=t0 + timedelta(hours=4)))

    all_types = [tx.tx_type for tx in list_transactions(conn)]
    assert all_types == [TransactionType.SWAP, TransactionType.SELL, TransactionType.TRANSFER,
                         TransactionType.BUY, TransactionType.BUY]
    assert len(list_transactions(conn, account_id=exchange.id)) == 2
    assert len(list_transactions(conn, limit=2)) == 2

    with pytest.raises(NotFound):
        get_transaction(conn, 999)

"""
Shared fixtures: an isolated in-memory ledger per test.
"""
from datetime import datetime

import pytest

from cryptofolio.core.accounts import AccountRegistry
from cryptofolio.core.currencies import CurrencyCatalog
from cryptofolio.core.db import init_db
from cryptofolio.core.fx import ExchangeRateStore
from cryptofolio.core.holdings import HoldingsLedger
from cryptofolio.core.transactions import TransactionRecorder
from cryptofolio.logging_config import configure_logging

configure_logging("WARNING")


@pytest.fixture
def conn():
    connection = init_db(":memory:")
    yield connection
    connection.close()


@pytest.fixture
def catalog(conn):
    return CurrencyCatalog(conn)


@pytest.fixture
def rates(conn, catalog):
    return ExchangeRateStore(conn, catalog)


@pytest.fixture
def accounts(conn):
    return AccountRegistry(conn)


@pytest.fixture
def ledger(conn, catalog):
    return HoldingsLedger(conn, catalog)


@pytest.fixture
def recorder(conn, catalog, rates, ledger, accounts):
    return TransactionRecorder(conn, catalog, rates, ledger, accounts)


@pytest.fixture
def exchange(accounts):
    return accounts.create("Binance", "exchange", category_id="trading")


@pytest.fixture
def ledger_wallet(accounts):
    return accounts.create("Ledger", "hardware_wallet", category_id="cold-storage")


@pytest.fixture
def bank(accounts):
    return accounts.create("BAC", "bank", category_id="banking")


@pytest.fixture
def t0():
    return datetime(2024, 6, 1, 12, 0, 0)

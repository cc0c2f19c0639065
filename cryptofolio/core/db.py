"""DuckDB initialization, schema management and unit-of-work helpers."""
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN, localcontext
from pathlib import Path
from typing import Iterator

import duckdb

from cryptofolio.core.errors import Conflict, InvalidInput
from cryptofolio.logging_config import get_logger

logger = get_logger(__name__)

# Every amount column is DECIMAL(38, 18): 20 integer and 18 fractional digits,
# enough for 18-decimal tokens such as ETH.
AMOUNT_SCALE = 18
AMOUNT_INTEGER_DIGITS = 38 - AMOUNT_SCALE
AMOUNT_TYPE = f"DECIMAL(38, {AMOUNT_SCALE})"
MAX_AMOUNT = Decimal(10) ** AMOUNT_INTEGER_DIGITS
_QUANTUM = Decimal(1).scaleb(-AMOUNT_SCALE)

DEFAULT_SETTINGS = {
    "base_currency": "USD",
    "cost_basis": "AVERAGE",
    "fx_max_age_days": "7",
}

SEED_CURRENCIES = [
    ("USD", "US Dollar", "$", 2, "fiat"),
    ("CRC", "Costa Rican Colón", "₡", 2, "fiat"),
    ("EUR", "Euro", "€", 2, "fiat"),
    ("BTC", "Bitcoin", "₿", 8, "crypto"),
    ("ETH", "Ethereum", "Ξ", 18, "crypto"),
    ("USDT", "Tether USD", "USDT", 6, "stablecoin"),
    ("USDC", "USD Coin", "USDC", 6, "stablecoin"),
    ("BNB", "Binance Coin", "BNB", 8, "crypto"),
    ("SOL", "Solana", "SOL", 9, "crypto"),
]

SEED_CATEGORIES = [
    ("banking", "Banking", 0),
    ("trading", "Trading", 1),
    ("cold-storage", "Cold Storage", 2),
    ("hot-wallets", "Hot Wallets", 3),
    ("on-ramp", "On-Ramp", 4),
]


def get_db_path(custom_path: str | None = None) -> Path:
    """Get the database file path."""
    if custom_path:
        return Path(custom_path)
    return Path(__file__).parent.parent.parent / "data" / "portfolio.duckdb"


def init_db(db_path: str | None = None) -> duckdb.DuckDBPyConnection:
    """Initialize database and create schema if needed.

    Pass ":memory:" for an isolated in-memory store.
    """
    if db_path == ":memory:":
        conn = duckdb.connect(":memory:")
    else:
        path = get_db_path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = duckdb.connect(str(path))
    _create_schema(conn)
    logger.debug("Database ready", path=db_path or str(get_db_path()))
    return conn


def _create_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create all tables if they don't exist."""

    # Settings table
    conn.execute("""
        CREATE TABLE IF NOT EXISTS settings (
            key VARCHAR PRIMARY KEY,
            value VARCHAR NOT NULL
        )
    """)

    # Initialize default settings
    for key, value in DEFAULT_SETTINGS.items():
        conn.execute("""
            INSERT INTO settings (key, value)
            VALUES (?, ?)
            ON CONFLICT DO NOTHING
        """, [key, value])

    for name in ("seq_exchange_rates", "seq_holdings", "seq_transactions"):
        conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {name} START 1")

    # Categories group accounts in portfolio views
    conn.execute("""
        CREATE TABLE IF NOT EXISTS categories (
            id VARCHAR PRIMARY KEY,
            name VARCHAR NOT NULL UNIQUE,
            sort_order INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.executemany("""
        INSERT INTO categories (id, name, sort_order)
        VALUES (?, ?, ?)
        ON CONFLICT DO NOTHING
    """, SEED_CATEGORIES)

    # Accounts table
    conn.execute("""
        CREATE TABLE IF NOT EXISTS accounts (
            id VARCHAR PRIMARY KEY,
            name VARCHAR NOT NULL UNIQUE,
            account_type VARCHAR NOT NULL CHECK (account_type IN (
                'exchange', 'hardware_wallet', 'software_wallet', 'custodial_service', 'bank')),
            category_id VARCHAR,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Currency catalog
    conn.execute("""
        CREATE TABLE IF NOT EXISTS currencies (
            code VARCHAR PRIMARY KEY,
            name VARCHAR NOT NULL,
            symbol VARCHAR NOT NULL,
            decimals INTEGER NOT NULL DEFAULT 2 CHECK (decimals >= 0),
            asset_type VARCHAR NOT NULL CHECK (asset_type IN ('fiat', 'crypto', 'stablecoin')),
            enabled BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.executemany("""
        INSERT INTO currencies (code, name, symbol, decimals, asset_type)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT DO NOTHING
    """, SEED_CURRENCIES)

    # Exchange rate history
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS exchange_rates (
            id BIGINT PRIMARY KEY DEFAULT nextval('seq_exchange_rates'),
            from_currency VARCHAR NOT NULL,
            to_currency VARCHAR NOT NULL,
            rate {AMOUNT_TYPE} NOT NULL CHECK (rate > 0),
            ts TIMESTAMP NOT NULL,
            source VARCHAR NOT NULL DEFAULT 'manual',
            notes VARCHAR,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(from_currency, to_currency, ts)
        )
    """)

    # Holdings per account
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS holdings (
            id BIGINT PRIMARY KEY DEFAULT nextval('seq_holdings'),
            account_id VARCHAR NOT NULL,
            asset VARCHAR NOT NULL,
            quantity {AMOUNT_TYPE} NOT NULL CHECK (quantity >= 0),
            avg_cost_basis {AMOUNT_TYPE} NOT NULL DEFAULT 0,
            cost_basis_currency VARCHAR NOT NULL,
            updated_at TIMESTAMP,
            UNIQUE(account_id, asset)
        )
    """)

    # Append-only transaction log
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS transactions (
            id BIGINT PRIMARY KEY DEFAULT nextval('seq_transactions'),
            tx_type VARCHAR NOT NULL CHECK (tx_type IN ('buy', 'sell', 'transfer', 'swap')),
            from_account_id VARCHAR,
            from_asset VARCHAR,
            from_quantity {AMOUNT_TYPE},
            to_account_id VARCHAR,
            to_asset VARCHAR,
            to_quantity {AMOUNT_TYPE},
            unit_price {AMOUNT_TYPE},
            price_currency VARCHAR,
            fee {AMOUNT_TYPE},
            fee_asset VARCHAR,
            exchange_rate {AMOUNT_TYPE},
            exchange_rate_pair VARCHAR,
            ts TIMESTAMP NOT NULL,
            notes VARCHAR,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    conn.commit()


def get_setting(conn: duckdb.DuckDBPyConnection, key: str) -> str | None:
    """Get a setting value by key."""
    result = conn.execute("SELECT value FROM settings WHERE key = ?", [key]).fetchone()
    return result[0] if result else None


def set_setting(conn: duckdb.DuckDBPyConnection, key: str, value: str) -> None:
    """Set a setting value."""
    with transaction(conn):
        conn.execute("""
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value
        """, [key, value])


@contextmanager
def transaction(conn: duckdb.DuckDBPyConnection) -> Iterator[duckdb.DuckDBPyConnection]:
    """Run the block as one atomic DuckDB transaction.

    If the connection already has an open transaction (from an enclosing
    block or an explicit ``conn.begin()``), the block joins it and the owner
    decides whether to commit. Otherwise any exception rolls the whole unit
    back; write-write conflicts detected by DuckDB surface as Conflict.
    """
    if in_transaction(conn):
        yield conn
        return

    conn.begin()
    try:
        yield conn
    except duckdb.TransactionException as e:
        conn.rollback()
        logger.warning("Transaction conflict, rolled back", error=str(e))
        raise Conflict(f"Concurrent modification detected: {e}") from e
    except BaseException:
        conn.rollback()
        raise
    try:
        conn.commit()
    except duckdb.TransactionException as e:
        # A failed commit is already rolled back by DuckDB
        logger.warning("Commit conflict", error=str(e))
        raise Conflict(f"Concurrent modification detected at commit: {e}") from e


def in_transaction(conn: duckdb.DuckDBPyConnection) -> bool:
    """Whether the connection has an open transaction.

    DuckDB refuses to BEGIN inside a transaction; an empty BEGIN/ROLLBACK
    pair otherwise leaves no trace.
    """
    try:
        conn.begin()
    except duckdb.TransactionException:
        return True
    conn.rollback()
    return False


def to_db_amount(value: Decimal | None) -> Decimal | None:
    """Quantize an amount to the storage scale."""
    if value is None:
        return None
    try:
        with localcontext() as ctx:
            ctx.prec = 38
            return value.quantize(_QUANTUM, rounding=ROUND_HALF_EVEN)
    except InvalidOperation:
        raise InvalidInput(f"Amount {value} is outside the storable range (below 1e{AMOUNT_INTEGER_DIGITS})") from None


def from_db_amount(value) -> Decimal | None:
    """Normalize a stored DECIMAL back to a trimmed Decimal."""
    if value is None:
        return None
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if amount == 0:
        return Decimal("0")
    # Drop trailing fractional zeros without switching to exponent notation
    sign, digits, exponent = amount.as_tuple()
    digits = list(digits)
    while exponent < 0 and digits and digits[-1] == 0:
        digits.pop()
        exponent += 1
    return Decimal((sign, tuple(digits), exponent))


def to_db_timestamp(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

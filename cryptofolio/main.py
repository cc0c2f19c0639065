"""Main entry point: initialize the ledger database and report its state."""
import sys

from cryptofolio.core.currencies import CurrencyCatalog
from cryptofolio.core.db import get_db_path, get_setting, init_db
from cryptofolio.core.holdings import HoldingsLedger
from cryptofolio.core.transactions import list_transactions
from cryptofolio.logging_config import configure_logging


def main(db_path: str | None = None):
    """Initialize the database and print a short overview."""
    configure_logging("INFO")
    print("Initializing portfolio ledger...")

    conn = init_db(db_path)
    print(f"✓ Database initialized at: {db_path or get_db_path()}")

    base_currency = get_setting(conn, "base_currency")
    cost_basis = get_setting(conn, "cost_basis")
    max_age = get_setting(conn, "fx_max_age_days")
    print(f"✓ Base currency: {base_currency}")
    print(f"✓ Cost basis method: {cost_basis}")
    print(f"✓ FX rate max age: {max_age} days")

    tables = conn.execute("""
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = 'main'
        ORDER BY table_name
    """).fetchall()

    print(f"\n✓ {len(tables)} tables:")
    for table in tables:
        count = conn.execute(f"SELECT COUNT(*) FROM {table[0]}").fetchone()[0]
        print(f"  - {table[0]} ({count} rows)")

    catalog = CurrencyCatalog(conn)
    print("\n✓ Enabled currencies:")
    for currency in catalog.list(enabled_only=True):
        print(f"  - {currency.code:<6} {currency.asset_type.display_name:<15} {currency.name}")

    holdings = HoldingsLedger(conn, catalog).list()
    print(f"\n✓ {len(holdings)} open holdings, {len(list_transactions(conn, limit=1000))} recent transactions")

    conn.close()


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else None)

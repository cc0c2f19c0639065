"""Account registry: resolves account references for the ledger."""
import re
import uuid
from typing import List

import duckdb

from cryptofolio.core.db import transaction
from cryptofolio.core.errors import AlreadyExists, InvalidInput, NotFound
from cryptofolio.core.models import Account, AccountType, Category
from cryptofolio.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_account(row) -> Account:
    account_id, name, account_type, category_id, created_at = row
    return Account(
        id=account_id,
        name=name,
        account_type=AccountType(account_type),
        category_id=category_id,
        created_at=created_at,
    )


class AccountRegistry:
    """Minimal account store. Full account management belongs to the CLI layer."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def create(
        self,
        name: str,
        account_type: AccountType | str,
        category_id: str | None = None,
    ) -> Account:
        name = (name or "").strip()
        if not name:
            raise InvalidInput("Account name must not be empty")
        try:
            account_type = AccountType(account_type)
        except ValueError:
            raise InvalidInput(f"Unknown account type: {account_type}") from None
        if category_id is not None:
            self.get_category(category_id)

        with transaction(self.conn):
            if self._find(name) is not None:
                raise AlreadyExists("Account", name)
            account_id = uuid.uuid4().hex
            self.conn.execute("""
                INSERT INTO accounts (id, name, account_type, category_id)
                VALUES (?, ?, ?, ?)
            """, [account_id, name, account_type.value, category_id])

        logger.info("Created account", account_id=account_id, name=name, account_type=account_type.value)
        return self.resolve(account_id)

    def resolve(self, name_or_id: str) -> Account:
        """Find an account by id, or by case-insensitive name."""
        account = self._find(name_or_id)
        if account is None:
            raise NotFound("Account", name_or_id, candidates=[a.name for a in self.list()])
        return account

    def list(self) -> List[Account]:
        rows = self.conn.execute("""
            SELECT id, name, account_type, category_id, created_at
            FROM accounts
            ORDER BY name
        """).fetchall()
        return [_row_to_account(row) for row in rows]

    def list_categories(self) -> List[Category]:
        rows = self.conn.execute(
            "SELECT id, name, sort_order, created_at FROM categories ORDER BY sort_order, name"
        ).fetchall()
        return [Category(id=r[0], name=r[1], sort_order=r[2], created_at=r[3]) for r in rows]

    def get_category(self, category_id: str) -> Category:
        row = self.conn.execute(
            "SELECT id, name, sort_order, created_at FROM categories WHERE id = ?", [category_id]
        ).fetchone()
        if not row:
            raise NotFound("Category", category_id, candidates=[c.id for c in self.list_categories()])
        return Category(id=row[0], name=row[1], sort_order=row[2], created_at=row[3])

    def create_category(self, name: str) -> Category:
        name = (name or "").strip()
        category_id = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
        if not category_id:
            raise InvalidInput(f"Invalid category name: {name!r}")

        with transaction(self.conn):
            exists = self.conn.execute(
                "SELECT 1 FROM categories WHERE id = ? OR LOWER(name) = LOWER(?)", [category_id, name]
            ).fetchone()
            if exists:
                raise AlreadyExists("Category", name)
            next_order = self.conn.execute(
                "SELECT COALESCE(MAX(sort_order), 0) + 1 FROM categories"
            ).fetchone()[0]
            self.conn.execute(
                "INSERT INTO categories (id, name, sort_order) VALUES (?, ?, ?)",
                [category_id, name, next_order],
            )
        return self.get_category(category_id)

    def _find(self, name_or_id: str) -> Account | None:
        row = self.conn.execute("""
            SELECT id, name, account_type, category_id, created_at
            FROM accounts
            WHERE id = ? OR LOWER(name) = LOWER(?)
            ORDER BY (id = ?) DESC
            LIMIT 1
        """, [name_or_id, name_or_id, name_or_id]).fetchone()
        return _row_to_account(row) if row else None

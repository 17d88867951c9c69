from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Mapping, Optional, Protocol

import asyncpg

from groupledger.db.models import (
    Expense,
    ExpenseItem,
    GroupLedger,
    Member,
    Payer,
    Settlement,
    SettlementStatus,
    ShareMode,
    Split,
)
from groupledger.logging import get_logger, sql_logger
from groupledger.services.money import currency_exponent, to_cents

DEFAULT_CURRENCY = "USD"


class Reader(Protocol):
    async def fetch(self, query: str, *args: Any) -> list[Mapping[str, Any]]: ...

    async def fetchrow(self, query: str, *args: Any) -> Optional[Mapping[str, Any]]: ...


class _SnapshotReader:
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        sql_logger.info("sql.fetch", query=query, args=args)
        return await self._conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        sql_logger.info("sql.fetchrow", query=query, args=args)
        return await self._conn.fetchrow(query, *args)


class Database:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None
        self._log = get_logger(__name__)

    async def connect(self) -> None:
        if self._pool is None:
            # asyncpg expects a plain postgresql:// scheme, without "+asyncpg"
            dsn = self._dsn.replace("+asyncpg", "")
            self._pool = await asyncpg.create_pool(dsn)
            self._log.info("db.pool.created")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._log.info("db.pool.closed")

    @asynccontextmanager
    async def snapshot(self) -> AsyncIterator[_SnapshotReader]:
        """Read-only transaction in which every read sees the same data."""
        await self._ensure_pool()
        assert self._pool
        async with self._pool.acquire() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                yield _SnapshotReader(conn)

    async def _ensure_pool(self) -> None:
        if self._pool is None:
            await self.connect()


def _id(value: Any) -> str:
    return str(value)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


class BalanceRepository:
    """Loads a group's balance-relevant rows into a ``GroupLedger``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def load_ledger(self, group_id: str) -> GroupLedger | None:
        async with self.db.snapshot() as reader:
            group = await reader.fetchrow(
                """
                SELECT id, default_currency_code
                FROM groups
                WHERE id = $1 AND deleted_at IS NULL
                """,
                group_id,
            )
            if group is None:
                return None

            currency = group["default_currency_code"] or DEFAULT_CURRENCY
            exponent = currency_exponent(currency)

            members = await self._members(reader, group_id)
            expenses = await self._expenses(reader, group_id, exponent)
            payers = await self._payers(reader, group_id, exponent)
            items = await self._items(reader, group_id, exponent)
            splits = await self._splits(reader, group_id, exponent)
            settlements = await self._settlements(reader, group_id, exponent)

        return GroupLedger(
            group_id=_id(group["id"]),
            currency=currency,
            members=members,
            expenses=expenses,
            items=items,
            payers=payers,
            splits=splits,
            settlements=settlements,
        )

    async def _members(self, reader: Reader, group_id: str) -> tuple[Member, ...]:
        rows = await reader.fetch(
            """
            SELECT gm.id, gm.group_id, gm.user_id, u.display_name
            FROM group_members gm
            JOIN users u ON u.id = gm.user_id
            WHERE gm.group_id = $1 AND gm.left_at IS NULL
            ORDER BY gm.joined_at, gm.id
            """,
            group_id,
        )
        return tuple(
            Member(
                id=_id(row["id"]),
                group_id=_id(row["group_id"]),
                user_id=_id(row["user_id"]),
                display_name=row["display_name"],
            )
            for row in rows
        )

    async def _expenses(self, reader: Reader, group_id: str, exponent: int) -> tuple[Expense, ...]:
        rows = await reader.fetch(
            """
            SELECT id, group_id, subtotal, deleted_at
            FROM expenses
            WHERE group_id = $1 AND deleted_at IS NULL
            ORDER BY created_at, id
            """,
            group_id,
        )
        return tuple(
            Expense(
                id=_id(row["id"]),
                group_id=_id(row["group_id"]),
                subtotal_cents=to_cents(row["subtotal"], exponent),
                deleted_at=row["deleted_at"],
            )
            for row in rows
        )

    async def _payers(self, reader: Reader, group_id: str, exponent: int) -> tuple[Payer, ...]:
        rows = await reader.fetch(
            """
            SELECT ep.expense_id, ep.member_id, ep.amount
            FROM expense_payers ep
            JOIN expenses e ON e.id = ep.expense_id
            WHERE e.group_id = $1 AND e.deleted_at IS NULL
            ORDER BY ep.created_at, ep.id
            """,
            group_id,
        )
        return tuple(
            Payer(
                expense_id=_id(row["expense_id"]),
                member_id=_id(row["member_id"]),
                amount_cents=to_cents(row["amount"], exponent),
            )
            for row in rows
        )

    async def _items(self, reader: Reader, group_id: str, exponent: int) -> tuple[ExpenseItem, ...]:
        rows = await reader.fetch(
            """
            SELECT ei.id, ei.expense_id, ei.unit_value, ei.quantity
            FROM expense_items ei
            JOIN expenses e ON e.id = ei.expense_id
            WHERE e.group_id = $1 AND e.deleted_at IS NULL
            ORDER BY ei.created_at, ei.id
            """,
            group_id,
        )
        return tuple(
            ExpenseItem(
                id=_id(row["id"]),
                expense_id=_id(row["expense_id"]),
                unit_value_cents=to_cents(row["unit_value"], exponent),
                quantity=Decimal(1) if row["quantity"] is None else _decimal(row["quantity"]),
            )
            for row in rows
        )

    async def _splits(self, reader: Reader, group_id: str, exponent: int) -> tuple[Split, ...]:
        rows = await reader.fetch(
            """
            SELECT eim.item_id, eim.member_id, eim.share_mode, eim.weight, eim.exact_amount
            FROM expense_item_members eim
            JOIN expense_items ei ON ei.id = eim.item_id
            JOIN expenses e ON e.id = ei.expense_id
            WHERE e.group_id = $1 AND e.deleted_at IS NULL
            ORDER BY eim.item_id, eim.id
            """,
            group_id,
        )
        return tuple(
            Split(
                item_id=_id(row["item_id"]),
                member_id=_id(row["member_id"]),
                share_mode=ShareMode(row["share_mode"]),
                weight=_decimal(row["weight"]),
                exact_amount_cents=(
                    to_cents(row["exact_amount"], exponent) if row["exact_amount"] is not None else None
                ),
            )
            for row in rows
        )

    async def _settlements(self, reader: Reader, group_id: str, exponent: int) -> tuple[Settlement, ...]:
        rows = await reader.fetch(
            """
            SELECT id, group_id, payer_member_id, payee_member_id, amount, status
            FROM settlements
            WHERE group_id = $1 AND status = 'confirmed'
            ORDER BY created_at, id
            """,
            group_id,
        )
        return tuple(
            Settlement(
                id=_id(row["id"]),
                group_id=_id(row["group_id"]),
                payer_member_id=_id(row["payer_member_id"]),
                payee_member_id=_id(row["payee_member_id"]),
                amount_cents=to_cents(row["amount"], exponent),
                status=SettlementStatus(row["status"]),
            )
            for row in rows
        )

"""User balances: deposits, withdrawals, transfers, freezes and their logs."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, Optional

from .database import Database
from .entities import (
    SYSTEM_USER_ROOT,
    Asset,
    AssetChangeType,
    AssetFreeze,
    AssetLog,
    FreezeStatus,
    numeric,
)

_ZERO = Decimal(0)


class AssetError(Exception):
    """A balance operation was refused."""


class InsufficientBalanceError(AssetError):
    """The available balance does not cover the requested amount."""

    def __init__(self, message: str = "insufficient balance") -> None:
        super().__init__(message)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _stored_columns(entity_class: type) -> list[str]:
    return [f.name for f in fields(entity_class) if f.metadata.get("sql") is not None]


def _insert(conn: sqlite3.Connection, table: str, record: Any) -> None:
    columns = _stored_columns(type(record))
    names = ", ".join(_quote(c) for c in columns)
    marks = ", ".join("?" for _ in columns)
    conn.execute(
        f"INSERT INTO {_quote(table)} ({names}) VALUES ({marks})",
        [getattr(record, c) for c in columns],
    )


class AssetRepository:
    """Balances per user and symbol, kept in a ledger database.

    Methods taking ``tx`` run on the connection of an open
    ``Database.transaction()`` block; pass ``None`` to run in a transaction
    of their own.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        for entity_class in (Asset, AssetFreeze, AssetLog):
            db.ensure_table(entity_class.TABLE, entity_class)

    @contextmanager
    def _scope(self, tx: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if tx is None:
            with self._db.transaction() as conn:
                yield conn
        else:
            yield tx

    def deposit(self, trans_id: str, user_id: str, symbol: str, amount: Any) -> None:
        """Move an amount from the system root account to a user."""
        with self._db.transaction() as conn:
            self._transfer(conn, symbol, SYSTEM_USER_ROOT, user_id, amount, trans_id)

    def withdraw(self, trans_id: str, user_id: str, symbol: str, amount: Any) -> None:
        """Move an amount from a user back to the system root account."""
        with self._db.transaction() as conn:
            self._transfer(conn, symbol, user_id, SYSTEM_USER_ROOT, amount, trans_id)

    def transfer(
        self, trans_id: str, from_user: str, to_user: str, symbol: str, amount: Any
    ) -> None:
        """Move an amount between two users in a transaction of its own."""
        with self._db.transaction() as conn:
            self._transfer(conn, symbol, from_user, to_user, amount, trans_id)

    def transfer_with_tx(
        self,
        tx: Optional[sqlite3.Connection],
        trans_id: str,
        from_user: str,
        to_user: str,
        symbol: str,
        amount: Any,
    ) -> None:
        """Move an amount between two users inside the caller's transaction."""
        with self._scope(tx) as conn:
            self._transfer(conn, symbol, from_user, to_user, amount, trans_id)

    def freeze(
        self,
        tx: Optional[sqlite3.Connection],
        trans_id: str,
        user_id: str,
        symbol: str,
        amount: Any,
    ) -> AssetFreeze:
        """Hold back an amount of the available balance; zero freezes all of it."""
        amount = numeric(amount)
        if amount < _ZERO:
            raise AssetError("amount must be >= 0")

        with self._scope(tx) as conn:
            asset = self._load_asset(conn, user_id, symbol)
            if amount == _ZERO:
                amount = asset.avail_balance

            asset.avail_balance -= amount
            asset.freeze_balance += amount
            if asset.avail_balance < _ZERO:
                raise InsufficientBalanceError()
            self._save_asset(conn, asset)

            record = AssetFreeze(
                user_id=user_id,
                symbol=symbol,
                amount=amount,
                freeze_amount=amount,
                trans_id=trans_id,
            )
            try:
                _insert(conn, AssetFreeze.TABLE, record)
            except sqlite3.IntegrityError:
                raise AssetError("create freeze log failed") from None
            return record

    def unfreeze(
        self,
        tx: Optional[sqlite3.Connection],
        trans_id: str,
        user_id: str,
        symbol: str,
        amount: Any,
    ) -> None:
        """Release a frozen amount back to available; zero releases the whole remainder."""
        amount = numeric(amount)
        if amount < _ZERO:
            raise AssetError("amount must be > 0")

        with self._scope(tx) as conn:
            row = conn.execute(
                f"SELECT * FROM {_quote(AssetFreeze.TABLE)} "
                "WHERE user_id = ? AND symbol = ? AND trans_id = ?",
                (user_id, symbol, trans_id),
            ).fetchone()
            if row is None:
                raise AssetError("freeze record not found")
            record = AssetFreeze(**dict(row))

            if record.status == FreezeStatus.DONE:
                raise AssetError("unfreeze already done")

            if amount == _ZERO:
                amount = record.freeze_amount

            record.freeze_amount -= amount
            if record.freeze_amount == _ZERO:
                record.status = FreezeStatus.DONE
            conn.execute(
                f"UPDATE {_quote(AssetFreeze.TABLE)} "
                "SET freeze_amount = ?, status = ?, updated_at = ? "
                "WHERE user_id = ? AND symbol = ? AND trans_id = ?",
                (
                    record.freeze_amount,
                    record.status,
                    datetime.now(timezone.utc),
                    user_id,
                    symbol,
                    trans_id,
                ),
            )

            asset = self._load_asset(conn, user_id, symbol)
            asset.freeze_balance -= amount
            asset.avail_balance += amount
            self._save_asset(conn, asset)

    def query_freeze(self, **kwargs: Any) -> list[AssetFreeze]:
        """Freeze records whose columns equal the given keyword values."""
        allowed = set(_stored_columns(AssetFreeze))
        unknown = sorted(set(kwargs) - allowed)
        if unknown:
            raise ValueError(f"unknown freeze column(s): {', '.join(unknown)}")
        sql = f"SELECT * FROM {_quote(AssetFreeze.TABLE)}"
        if kwargs:
            sql += " WHERE " + " AND ".join(f"{_quote(k)} = ?" for k in kwargs)
        sql += " ORDER BY rowid"
        with self._db.transaction() as conn:
            rows = conn.execute(sql, list(kwargs.values())).fetchall()
        return [AssetFreeze(**dict(row)) for row in rows]

    def get(self, user_id: str, symbol: str) -> Optional[Asset]:
        """The balance of a user in a symbol, or None if it was never touched."""
        with self._db.transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {_quote(Asset.TABLE)} WHERE user_id = ? AND symbol = ?",
                (user_id, symbol),
            ).fetchone()
        return None if row is None else Asset(**dict(row))

    def logs(self, user_id: str, symbol: str) -> list[AssetLog]:
        """Balance changes of a user in a symbol, oldest first."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_quote(AssetLog.TABLE)} "
                "WHERE user_id = ? AND symbol = ? ORDER BY rowid",
                (user_id, symbol),
            ).fetchall()
        return [AssetLog(**dict(row)) for row in rows]

    def _load_asset(self, conn: sqlite3.Connection, user_id: str, symbol: str) -> Asset:
        row = conn.execute(
            f"SELECT * FROM {_quote(Asset.TABLE)} WHERE user_id = ? AND symbol = ?",
            (user_id, symbol),
        ).fetchone()
        if row is not None:
            return Asset(**dict(row))
        asset = Asset(user_id=user_id, symbol=symbol)
        _insert(conn, Asset.TABLE, asset)
        return asset

    @staticmethod
    def _save_asset(conn: sqlite3.Connection, asset: Asset) -> None:
        asset.updated_at = datetime.now(timezone.utc)
        conn.execute(
            f"UPDATE {_quote(Asset.TABLE)} "
            "SET total_balance = ?, freeze_balance = ?, avail_balance = ?, updated_at = ? "
            "WHERE user_id = ? AND symbol = ?",
            (
                asset.total_balance,
                asset.freeze_balance,
                asset.avail_balance,
                asset.updated_at,
                asset.user_id,
                asset.symbol,
            ),
        )

    def _transfer(
        self,
        conn: sqlite3.Connection,
        symbol: str,
        from_user: str,
        to_user: str,
        amount: Any,
        trans_id: str,
    ) -> None:
        if from_user == to_user:
            raise AssetError("from and to cannot be the same")
        amount = numeric(amount)
        if amount <= _ZERO:
            raise AssetError("amount must be greater than 0")

        source = self._load_asset(conn, from_user, symbol)
        target = self._load_asset(conn, to_user, symbol)

        source.total_balance -= amount
        source.avail_balance -= amount
        if source.user_id != SYSTEM_USER_ROOT and source.avail_balance < _ZERO:
            raise InsufficientBalanceError()
        self._save_asset(conn, source)

        target.total_balance += amount
        target.avail_balance += amount
        self._save_asset(conn, target)

        _insert(
            conn,
            AssetLog.TABLE,
            AssetLog(
                user_id=from_user,
                symbol=symbol,
                before_balance=source.total_balance + amount,
                amount=-amount,
                after_balance=source.total_balance,
                trans_id=trans_id,
                change_type=AssetChangeType.TRANSFER,
            ),
        )
        _insert(
            conn,
            AssetLog.TABLE,
            AssetLog(
                user_id=to_user,
                symbol=symbol,
                before_balance=target.total_balance - amount,
                amount=amount,
                after_balance=target.total_balance,
                trans_id=trans_id,
                change_type=AssetChangeType.TRANSFER,
            ),
        )
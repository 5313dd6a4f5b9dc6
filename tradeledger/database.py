"""SQLite storage for ledger records, with nestable transactions."""

from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import fields, is_dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterator, Union

from .entities import (
    Asset,
    AssetChangeType,
    AssetFreeze,
    AssetLog,
    FreezeStatus,
    FreezeType,
    OrderSide,
    OrderStatus,
    OrderType,
    TradeBy,
    TradeVariety,
    UnfinishedOrder,
    Variety,
)


def _register_types() -> None:
    sqlite3.register_adapter(Decimal, str)
    sqlite3.register_adapter(datetime, datetime.isoformat)
    for enum_cls in (
        AssetChangeType,
        FreezeStatus,
        FreezeType,
        OrderSide,
        OrderStatus,
        OrderType,
        TradeBy,
    ):
        sqlite3.register_adapter(enum_cls, lambda member: member.value)
    sqlite3.register_converter("DECTEXT", lambda raw: Decimal(raw.decode()))
    sqlite3.register_converter(
        "TIMESTAMPTEXT", lambda raw: datetime.fromisoformat(raw.decode())
    )
    sqlite3.register_converter("BOOLINT", lambda raw: bool(int(raw)))


_register_types()


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class Database:
    """A SQLite database holding ledger tables.

    Rows come back as ``sqlite3.Row`` with Decimal, datetime and bool columns
    already converted, so ``Entity(**dict(row))`` rebuilds a record.
    """

    def __init__(self, path: Union[str, os.PathLike] = ":memory:") -> None:
        self._conn = sqlite3.connect(
            os.fspath(path),
            detect_types=sqlite3.PARSE_DECLTYPES,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically; nested blocks become savepoints."""
        with self._lock:
            if self._depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
                commit, rollback = ("COMMIT",), ("ROLLBACK",)
            else:
                savepoint = f"sp_{self._depth}"
                self._conn.execute(f"SAVEPOINT {savepoint}")
                commit = (f"RELEASE {savepoint}",)
                rollback = (f"ROLLBACK TO {savepoint}", f"RELEASE {savepoint}")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                for statement in rollback:
                    self._conn.execute(statement)
                raise
            self._depth -= 1
            for statement in commit:
                self._conn.execute(statement)

    def ensure_table(self, name: str, entity_class: type) -> None:
        """Create a table and its unique indexes for an entity class if missing."""
        if not name:
            raise ValueError("table name must not be empty")
        if not (isinstance(entity_class, type) and is_dataclass(entity_class)):
            raise TypeError(f"{entity_class!r} is not an entity class")
        columns = []
        for f in fields(entity_class):
            sql = f.metadata.get("sql")
            if sql is None:
                continue
            definition = f"{_quote(f.name)} {sql}"
            if f.name == "id":
                definition += " PRIMARY KEY"
            columns.append(definition)
        if not columns:
            raise TypeError(f"{entity_class.__name__} has no stored columns")

        statements = [f"CREATE TABLE IF NOT EXISTS {_quote(name)} ({', '.join(columns)})"]
        for group in getattr(entity_class, "UNIQUE", ()):
            index = f"{name}_{'_'.join(group)}_key"
            cols = ", ".join(_quote(column) for column in group)
            statements.append(
                f"CREATE UNIQUE INDEX IF NOT EXISTS {_quote(index)} ON {_quote(name)} ({cols})"
            )
        with self._lock:
            for statement in statements:
                self._conn.execute(statement)

    def has_table(self, name: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
            ).fetchone()
        return row is not None

    def tables(self) -> list[str]:
        """Names of all user tables, sorted."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
        return [row["name"] for row in rows]

    def drop_table(self, name: str) -> None:
        """Drop a table together with its indexes; a missing table is ignored."""
        with self._lock:
            self._conn.execute(f"DROP TABLE IF EXISTS {_quote(name)}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()


_CLEAN_TABLES = (
    Asset.TABLE,
    AssetFreeze.TABLE,
    AssetLog.TABLE,
    UnfinishedOrder.TABLE,
    TradeVariety.TABLE,
    Variety.TABLE,
)
_CLEAN_PREFIXES = ("order_", "trade_log_", "kline_")


def migrate_clean(db: Database) -> list[str]:
    """Drop every ledger table, including per-symbol ones; return the names dropped."""
    existing = db.tables()
    dropped = [name for name in _CLEAN_TABLES if name in existing]
    dropped += [
        name
        for name in existing
        if name.startswith(_CLEAN_PREFIXES) and name not in dropped
    ]
    for name in dropped:
        db.drop_table(name)
    return dropped
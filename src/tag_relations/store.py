"""リレーションストア.

(att_id, item_id, value_id, value_sorting) のタプルを永続化するストアのインターフェースと、
SQLite 実装を提供します。タプルの作成・更新・削除は TagReconciler 経由でのみ行う前提です。
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable, Collection, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from typing import NamedTuple, Protocol

from loguru import logger

from .core.database import RELATION_TABLE
from .core.sql import MAX_IN_PARAMS, T, chunked, placeholders, quote_identifier, run_guarded, stage_ids


class RelationTuple(NamedTuple):
    """リレーション1行. (attribute_id, item_id, value_id) が一意キー."""

    attribute_id: int
    item_id: int
    value_id: int
    sort_order: int


class RelationStore(Protocol):
    """TagReconciler / TagAttribute が利用するストアの契約."""

    def load_tuples(self, attribute_id: int, item_ids: Sequence[int]) -> list[RelationTuple]:
        """item_id 昇順に並んだタプル列を返す."""
        ...

    def delete_tuples(self, attribute_id: int, item_id: int, value_ids: Collection[int]) -> int: ...

    def insert_tuples(self, tuples: Sequence[RelationTuple]) -> int: ...

    def update_sort_order(self, attribute_id: int, item_id: int, value_id: int, sort_order: int) -> int: ...

    def delete_all_tuples(self, attribute_id: int, item_ids: Collection[int]) -> int: ...

    def transaction(self) -> AbstractContextManager[None]: ...

    def attribute_lock(self, attribute_id: int) -> AbstractContextManager[object]: ...


class SQLiteRelationStore:
    """SQLite 上の TAG_RELATIONS を扱うストア.

    接続は呼び出し側が所有する（close しない）。transaction() の外で呼ばれた書き込みは
    1文ごとに確定する。
    """

    def __init__(self, conn: sqlite3.Connection, *, table: str = RELATION_TABLE) -> None:
        self._conn = conn
        self._table = quote_identifier(table)
        self._tx_lock = threading.RLock()
        self._tx_depth = 0
        self._locks: dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @property
    def table(self) -> str:
        """クォート済みのリレーションテーブル名."""
        return self._table

    def attribute_lock(self, attribute_id: int) -> threading.RLock:
        """属性ごとのロックを返す（同一属性の reconcile を直列化する）."""
        with self._locks_guard:
            lock = self._locks.get(attribute_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[attribute_id] = lock
            return lock

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """BEGIN IMMEDIATE で書き込みロックを取ってから処理するトランザクション.

        ネストした呼び出しは外側のトランザクションに合流する。
        """
        with self._tx_lock:
            if self._tx_depth > 0:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return

            if self._conn.in_transaction:
                self._run("commit", self._conn.commit)
            self._run("begin", lambda: self._conn.execute("BEGIN IMMEDIATE"))
            self._tx_depth = 1
            try:
                yield
            except BaseException:
                self._conn.rollback()
                logger.debug("Relation transaction rolled back")
                raise
            else:
                self._run("commit", self._conn.commit)
            finally:
                self._tx_depth = 0

    def load_tuples(self, attribute_id: int, item_ids: Sequence[int]) -> list[RelationTuple]:
        if not item_ids:
            return []

        def _load() -> list[sqlite3.Row]:
            staged = stage_ids(self._conn, item_ids)
            return self._conn.execute(
                f"""
                SELECT att_id, item_id, value_id, value_sorting
                FROM {self._table}
                WHERE att_id = ? AND item_id IN ({staged})
                ORDER BY item_id ASC, value_sorting ASC, value_id ASC
                """,
                (attribute_id,),
            ).fetchall()

        rows = self._run("load_tuples", _load)
        self._autocommit()
        return [RelationTuple(int(r[0]), int(r[1]), int(r[2]), int(r[3])) for r in rows]

    def delete_tuples(self, attribute_id: int, item_id: int, value_ids: Collection[int]) -> int:
        values = sorted(set(value_ids))
        deleted = 0
        for chunk in chunked(values, MAX_IN_PARAMS):
            deleted += self._write(
                "delete_tuples",
                f"DELETE FROM {self._table} WHERE att_id = ? AND item_id = ? "
                f"AND value_id IN ({placeholders(len(chunk))})",
                (attribute_id, item_id, *chunk),
            )
        return deleted

    def insert_tuples(self, tuples: Sequence[RelationTuple]) -> int:
        if not tuples:
            return 0
        rows = [(t.attribute_id, t.item_id, t.sort_order, t.value_id) for t in tuples]
        return self._write(
            "insert_tuples",
            f"INSERT INTO {self._table} (att_id, item_id, value_sorting, value_id) VALUES (?, ?, ?, ?)",
            rows,
            many=True,
        )

    def update_sort_order(self, attribute_id: int, item_id: int, value_id: int, sort_order: int) -> int:
        return self._write(
            "update_sort_order",
            f"UPDATE {self._table} SET value_sorting = ? WHERE att_id = ? AND item_id = ? AND value_id = ?",
            (sort_order, attribute_id, item_id, value_id),
        )

    def delete_all_tuples(self, attribute_id: int, item_ids: Collection[int]) -> int:
        if not item_ids:
            return 0

        def _delete() -> int:
            staged = stage_ids(self._conn, item_ids)
            cur = self._conn.execute(
                f"DELETE FROM {self._table} WHERE att_id = ? AND item_id IN ({staged})",
                (attribute_id,),
            )
            return cur.rowcount

        deleted = self._run("delete_all_tuples", _delete)
        self._autocommit()
        return deleted

    def _write(self, operation: str, sql: str, params: Sequence, *, many: bool = False) -> int:
        def _exec() -> int:
            cur = self._conn.executemany(sql, params) if many else self._conn.execute(sql, params)
            return cur.rowcount

        count = self._run(operation, _exec)
        self._autocommit()
        return count

    def _autocommit(self) -> None:
        # 管理外の暗黙トランザクション（isolation_level 既定の接続など）は即確定する
        if self._tx_depth == 0 and self._conn.in_transaction:
            self._run("commit", self._conn.commit)

    def _run(self, operation: str, func: Callable[[], T]) -> T:
        return run_guarded(f"Relation store {operation}", func)

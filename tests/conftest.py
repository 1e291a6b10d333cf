"""テスト共通のフィクスチャ（リレーションDB + ルックアップテーブル）."""

from __future__ import annotations

import sqlite3
from collections import Counter
from collections.abc import Iterator
from pathlib import Path

import pytest

from tag_relations.core.config import TagAttributeConfig
from tag_relations.core.database import connect, create_database
from tag_relations.store import RelationTuple, SQLiteRelationStore

# (id, name, alias, sorting, published)
TAG_ROWS = [
    (1, "witch", "witch", 30, 1),
    (2, "mage", "mage", 10, 1),
    (3, "cat ears", "cat-ears", 20, 1),
    (4, "sword", "sword", 40, 0),
    (5, "50% off", "fifty-off", 50, 1),
]


def create_lookup_table(conn: sqlite3.Connection, rows: list[tuple] = TAG_ROWS) -> None:
    conn.executescript(
        """
        CREATE TABLE tags (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            alias TEXT NOT NULL,
            sorting INTEGER NOT NULL,
            published INTEGER NOT NULL DEFAULT 1
        );
        """
    )
    conn.executemany("INSERT INTO tags (id, name, alias, sorting, published) VALUES (?, ?, ?, ?, ?)", rows)


def seed_relations(conn: sqlite3.Connection, rows: list[tuple[int, int, int, int]]) -> None:
    """(att_id, item_id, value_id, value_sorting) を直接投入する."""
    conn.executemany(
        "INSERT INTO TAG_RELATIONS (att_id, item_id, value_id, value_sorting) VALUES (?, ?, ?, ?)",
        rows,
    )


def fetch_relations(conn: sqlite3.Connection, att_id: int = 1) -> list[tuple[int, int, int]]:
    """(item_id, value_id, value_sorting) を item_id, value_id 順で返す."""
    rows = conn.execute(
        "SELECT item_id, value_id, value_sorting FROM TAG_RELATIONS WHERE att_id = ? ORDER BY item_id, value_id",
        (att_id,),
    ).fetchall()
    return [tuple(r) for r in rows]


class RecordingStore:
    """SQLiteRelationStore を包んで、メソッドごとの呼び出し回数を記録する."""

    def __init__(self, inner: SQLiteRelationStore) -> None:
        self.inner = inner
        self.calls: Counter[str] = Counter()
        self.inserted: list[list[RelationTuple]] = []

    def load_tuples(self, attribute_id, item_ids):
        self.calls["load_tuples"] += 1
        return self.inner.load_tuples(attribute_id, item_ids)

    def delete_tuples(self, attribute_id, item_id, value_ids):
        self.calls["delete_tuples"] += 1
        return self.inner.delete_tuples(attribute_id, item_id, value_ids)

    def insert_tuples(self, tuples):
        self.calls["insert_tuples"] += 1
        self.inserted.append(list(tuples))
        return self.inner.insert_tuples(tuples)

    def update_sort_order(self, attribute_id, item_id, value_id, sort_order):
        self.calls["update_sort_order"] += 1
        return self.inner.update_sort_order(attribute_id, item_id, value_id, sort_order)

    def delete_all_tuples(self, attribute_id, item_ids):
        self.calls["delete_all_tuples"] += 1
        return self.inner.delete_all_tuples(attribute_id, item_ids)

    def transaction(self):
        self.calls["transaction"] += 1
        return self.inner.transaction()

    def attribute_lock(self, attribute_id):
        return self.inner.attribute_lock(attribute_id)

    @property
    def store_calls(self) -> int:
        return sum(n for name, n in self.calls.items() if name != "transaction")


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "relations.db"
    create_database(path)
    conn = sqlite3.connect(path)
    try:
        create_lookup_table(conn)
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture
def conn(db_path: Path) -> Iterator[sqlite3.Connection]:
    connection = connect(db_path)
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture
def config() -> TagAttributeConfig:
    return TagAttributeConfig(
        attribute_id=1,
        tag_table="tags",
        tag_id="id",
        tag_column="name",
        tag_alias="alias",
        tag_sorting="sorting",
    )


@pytest.fixture
def store(conn: sqlite3.Connection) -> SQLiteRelationStore:
    return SQLiteRelationStore(conn)


@pytest.fixture
def recording_store(store: SQLiteRelationStore) -> RecordingStore:
    return RecordingStore(store)

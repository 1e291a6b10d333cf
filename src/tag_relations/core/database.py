"""リレーションDBの作成・接続ユーティリティ.

タグ属性のリレーションテーブル（TAG_RELATIONS）の作成、インデックス作成、
接続ごとの PRAGMA 適用を提供します。

注意:
    ルックアップテーブル（タグ値の実体）は外部所有のため、ここでは作成しません。
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from loguru import logger

RELATION_TABLE = "TAG_RELATIONS"

CONNECTION_DEFAULT_PRAGMAS = [
    "PRAGMA foreign_keys = ON;",
    "PRAGMA busy_timeout = 5000;",  # 並行する reconcile の書き込みロック待ち
]
CONNECTION_BULK_PRAGMAS = [
    *CONNECTION_DEFAULT_PRAGMAS,
    "PRAGMA cache_size = -64000;",  # 64MB cache
    "PRAGMA temp_store = MEMORY;",
]

REQUIRED_INDEXES = [
    # 値 → 所有アイテムの逆引き（使用数集計・searchFor）
    "CREATE INDEX IF NOT EXISTS idx_tag_relations_value ON TAG_RELATIONS(att_id, value_id);",
    # アイテム単位の並び順取得（getDataFor）
    "CREATE INDEX IF NOT EXISTS idx_tag_relations_sorting ON TAG_RELATIONS(att_id, item_id, value_sorting);",
]

SCHEMA_SQL = [
    """
    CREATE TABLE IF NOT EXISTS TAG_RELATIONS (
        att_id INTEGER NOT NULL,
        item_id INTEGER NOT NULL,
        value_id INTEGER NOT NULL,
        value_sorting INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (att_id, item_id, value_id)
    );
    """,
]


def apply_connection_pragmas(conn: sqlite3.Connection, *, profile: str = "default") -> None:
    """接続ごとに適用が必要な PRAGMA を設定する。"""
    if profile == "default":
        pragmas = CONNECTION_DEFAULT_PRAGMAS
    elif profile == "bulk":
        pragmas = CONNECTION_BULK_PRAGMAS
    else:
        raise ValueError(f"Unknown PRAGMA profile: {profile!r}")

    for pragma in pragmas:
        conn.execute(pragma)
        logger.debug(f"Applied: {pragma}")


def create_schema(conn: sqlite3.Connection) -> None:
    """既存接続にリレーションスキーマとインデックスを作成する（冪等）."""
    for stmt in SCHEMA_SQL:
        conn.executescript(stmt)
    for index_sql in REQUIRED_INDEXES:
        conn.execute(index_sql)


def create_database(db_path: Path | str) -> None:
    """リレーションDBファイルを新規作成する.

    Args:
        db_path: 作成するデータベースファイルパス

    Note:
        既存ファイルの場合は警告のみ出して、不足しているテーブル・インデックスだけを作成します。
    """
    db_path = Path(db_path)

    if db_path.exists():
        logger.warning(f"Database already exists: {db_path}")
    else:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Creating database: {db_path}")

    conn = sqlite3.connect(db_path)
    try:
        create_schema(conn)
        conn.commit()
        logger.info("Relation schema ready")

    except Exception as e:
        logger.error(f"Failed to create database: {e}")
        raise
    finally:
        conn.close()


def connect(db_path: Path | str, *, profile: str = "default") -> sqlite3.Connection:
    """リレーションDBへの接続を開く.

    autocommit モード（isolation_level=None）で開くため、複数文をまとめる場合は
    SQLiteRelationStore.transaction() を使うこと。

    Args:
        db_path: データベースファイルパス（":memory:" も可）
        profile: PRAGMA プロファイル（"default" / "bulk"）

    Returns:
        sqlite3.Row を行ファクトリに持つ接続

    Raises:
        FileNotFoundError: ファイルが存在しない場合
    """
    if str(db_path) != ":memory:" and not Path(db_path).exists():
        msg = f"Database does not exist: {db_path}"
        raise FileNotFoundError(msg)

    conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    apply_connection_pragmas(conn, profile=profile)
    return conn

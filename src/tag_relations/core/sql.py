"""SQL 組み立て用の小さなヘルパー.

識別子（テーブル名・列名）は許可パターン／許可リストで検証してからクォートし、
値は常にプレースホルダでバインドする。文字列補間で値を埋め込むことはしない。
"""

from __future__ import annotations

import re
import sqlite3
from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import TypeVar

from loguru import logger

from .exceptions import StoreFailureError

T = TypeVar("T")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# 一時テーブルへバッチ投入する際のチャンクサイズ
STAGE_CHUNK_SIZE = 10_000

# IN (...) に展開するパラメータ数の上限（古い SQLite の既定上限 999 未満）
MAX_IN_PARAMS = 500


def chunked(seq: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(seq), size):
        yield seq[i : i + size]


def validate_identifier(name: str) -> str:
    """識別子として安全な名前か検証する.

    Args:
        name: テーブル名または列名

    Returns:
        検証済みの名前（そのまま）

    Raises:
        ValueError: 英数字とアンダースコア以外を含む場合
    """
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def quote_identifier(name: str) -> str:
    """識別子を検証してダブルクォートで囲む."""
    return f'"{validate_identifier(name)}"'


def qualified(table: str, column: str) -> str:
    return f"{quote_identifier(table)}.{quote_identifier(column)}"


def placeholders(count: int) -> str:
    """`?, ?, ?` 形式のプレースホルダ列を返す."""
    if count < 1:
        raise ValueError("placeholders() requires at least one value")
    return ", ".join("?" for _ in range(count))


def wildcard_to_like(pattern: str, escape: str = "\\") -> str:
    """`*` / `?` ワイルドカードを LIKE パターンへ変換する.

    `*` は任意長、`?` は1文字に対応し、それ以外（`%` `_` を含む）はリテラル扱い。

    Examples:
        >>> wildcard_to_like("wit*")
        'wit%'
        >>> wildcard_to_like("50%?")
        '50\\\\%_'
    """
    out: list[str] = []
    for ch in pattern:
        if ch == "*":
            out.append("%")
        elif ch == "?":
            out.append("_")
        elif ch in ("%", "_", escape):
            out.append(escape + ch)
        else:
            out.append(ch)
    return "".join(out)


def table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    """テーブルの列名集合を返す（存在しない場合は空集合）."""
    rows = conn.execute(f"PRAGMA table_info({quote_identifier(table)});").fetchall()
    return {r[1] for r in rows}


def _ensure_stage_table(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TEMP TABLE IF NOT EXISTS TMP_STAGED_IDS (id INTEGER NOT NULL PRIMARY KEY);")


def stage_ids(conn: sqlite3.Connection, ids: Iterable[int]) -> str:
    """ID 集合を一時テーブルに投入し、JOIN/IN で使えるサブクエリを返す.

    件数に関係なく、後続の SELECT/DELETE を1文で実行するための仕組み。
    投入前に一時テーブルは空にする（直前の投入内容は失われる）。

    Returns:
        `SELECT id FROM TMP_STAGED_IDS`
    """
    _ensure_stage_table(conn)
    conn.execute("DELETE FROM TMP_STAGED_IDS;")
    rows = [(int(i),) for i in set(ids)]
    for chunk in chunked(rows, STAGE_CHUNK_SIZE):
        conn.executemany("INSERT INTO TMP_STAGED_IDS (id) VALUES (?)", chunk)
    return "SELECT id FROM temp.TMP_STAGED_IDS"


def run_guarded(operation: str, func: Callable[[], T]) -> T:
    """sqlite3.Error を StoreFailureError に包んで送出する.

    Args:
        operation: ログと例外に載せる操作名
        func: 実行する処理

    Raises:
        StoreFailureError: func が sqlite3.Error を送出した場合
    """
    try:
        return func()
    except sqlite3.Error as e:
        logger.error(f"{operation} failed: {e}")
        raise StoreFailureError(operation, e) from e

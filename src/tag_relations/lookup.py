"""タグ値ルックアップ（ファサード）.

属性設定（テーブル名・列マッピング）を隠蔽して、以下を提供します。

- 選択肢（エイリアス → 表示値）と使用数の取得
- 所有アイテムに紐づくタグレコードの一括取得（並び順つき）
- 表示値のパターン検索による所有アイテムID集合の取得

ルックアップテーブルは外部所有の読み取り専用データとして扱います。
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from .core.config import TagAttributeConfig
from .core.database import RELATION_TABLE
from .core.sql import (
    MAX_IN_PARAMS,
    chunked,
    placeholders,
    qualified,
    quote_identifier,
    run_guarded,
    stage_ids,
    table_columns,
    wildcard_to_like,
)

# getDataFor 系の結果で所有アイテムIDを運ぶ列名（レコードからは取り除く）
ITEM_KEY_COLUMN = "_relation_item_id"
COUNT_COLUMN = "mm_count"
LIKE_ESCAPE = "\\"


@dataclass
class TagOptions:
    """resolve_options() の結果.

    Attributes:
        options: エイリアス（無ければID） → 表示値
        counts: エイリアス → 使用数（with_counts=False の場合は None）
    """

    options: dict[Any, Any]
    counts: dict[Any, int] | None = None


class LookupTableReader:
    """ルックアップテーブルへの SQLite 読み取り.

    列名は設定由来の許可リスト（実テーブルに存在する列）で検証してからクエリに埋め込み、
    値はすべてバインドする。tag_where は管理者設定として括弧付きでそのまま AND する。
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: TagAttributeConfig,
        *,
        relation_table: str = RELATION_TABLE,
    ) -> None:
        self._conn = conn
        self._config = config
        self._relation = quote_identifier(relation_table)
        self._columns: set[str] | None = None

    def _verify_columns(self) -> None:
        if self._columns is not None:
            return
        cfg = self._config
        columns = run_guarded("Lookup table_info", lambda: table_columns(self._conn, cfg.tag_table))
        if not columns:
            raise ValueError(f"Lookup table not found: {cfg.tag_table}")
        for name in (cfg.tag_id, cfg.tag_column, cfg.tag_alias, cfg.tag_sorting):
            if name and name not in columns:
                raise ValueError(f"Column '{name}' not found in lookup table '{cfg.tag_table}'")
        self._columns = columns

    def _where(self, *conditions: str) -> str:
        parts = [c for c in conditions if c]
        if self._config.tag_where:
            parts.append(f"({self._config.tag_where})")
        return f"WHERE {' AND '.join(parts)}" if parts else ""

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.row_factory = sqlite3.Row
        return cur.execute(sql, params).fetchall()

    def _fetch(self, operation: str, func: Callable[[], list[sqlite3.Row]]) -> list[sqlite3.Row]:
        # 一時テーブルへの投入で暗黙トランザクションが開くと、読み取りロックを握ったままになる。
        # 呼び出し前から続いているトランザクションには触れない。
        outer = self._conn.in_transaction
        try:
            return run_guarded(f"Lookup {operation}", func)
        finally:
            if not outer and self._conn.in_transaction:
                run_guarded("Lookup commit", self._conn.commit)

    def select_options(self, item_ids: Collection[int] | None, *, used_only: bool) -> list[sqlite3.Row]:
        """使用数（mm_count 列）つきで値行を取得する.

        Args:
            item_ids: None なら全アイテムが対象。指定時の意味は used_only によって変わる
                （used_only=True: リレーションの item_id、False: 値テーブルのID列）
            used_only: True なら当該属性で使われている値だけを返す
        """
        self._verify_columns()
        cfg = self._config
        table = quote_identifier(cfg.tag_table)
        id_col = qualified(cfg.tag_table, cfg.tag_id)
        sort_col = qualified(cfg.tag_table, cfg.sort_column)
        join = "JOIN" if used_only else "LEFT JOIN"

        def _select() -> list[sqlite3.Row]:
            condition = ""
            if item_ids is not None:
                staged = stage_ids(self._conn, item_ids)
                condition = f"rel.item_id IN ({staged})" if used_only else f"{id_col} IN ({staged})"
            sql = f"""
                SELECT COUNT(rel.value_id) AS {COUNT_COLUMN}, {table}.*
                FROM {table}
                {join} {self._relation} AS rel
                  ON rel.att_id = ? AND rel.value_id = {id_col}
                {self._where(condition)}
                GROUP BY {id_col}
                ORDER BY {sort_col} ASC, {id_col} ASC
            """
            return self._query(sql, (cfg.attribute_id,))

        return self._fetch("select_options", _select)

    def select_attached(self, item_ids: Collection[int]) -> list[sqlite3.Row]:
        """所有アイテムに紐づく値行を value_sorting 昇順で取得する（ITEM_KEY_COLUMN 付き）."""
        self._verify_columns()
        cfg = self._config
        table = quote_identifier(cfg.tag_table)
        id_col = qualified(cfg.tag_table, cfg.tag_id)

        def _select() -> list[sqlite3.Row]:
            staged = stage_ids(self._conn, item_ids)
            sql = f"""
                SELECT {table}.*, rel.item_id AS {ITEM_KEY_COLUMN}
                FROM {table}
                JOIN {self._relation} AS rel
                  ON rel.att_id = ? AND rel.value_id = {id_col}
                WHERE rel.item_id IN ({staged})
                ORDER BY rel.value_sorting ASC, rel.value_id ASC
            """
            return self._query(sql, (cfg.attribute_id,))

        return self._fetch("select_attached", _select)

    def select_by_column(self, column: str, values: Iterable[Any]) -> list[sqlite3.Row]:
        """指定列の値が values に含まれる行を取得する."""
        self._verify_columns()
        if column not in (self._columns or set()):
            raise ValueError(f"Column '{column}' not found in lookup table '{self._config.tag_table}'")
        table = quote_identifier(self._config.tag_table)
        col = qualified(self._config.tag_table, column)
        values = list(dict.fromkeys(values))

        def _select() -> list[sqlite3.Row]:
            rows: list[sqlite3.Row] = []
            for chunk in chunked(values, MAX_IN_PARAMS):
                rows.extend(
                    self._query(
                        f"SELECT {table}.* FROM {table} WHERE {col} IN ({placeholders(len(chunk))})",
                        tuple(chunk),
                    )
                )
            return rows

        if not values:
            return []
        return self._fetch("select_by_column", _select)

    def matching_item_ids(self, like_pattern: str) -> set[int]:
        """表示値が LIKE パターンに一致する値を参照している item_id 集合を返す."""
        self._verify_columns()
        cfg = self._config
        table = quote_identifier(cfg.tag_table)
        id_col = qualified(cfg.tag_table, cfg.tag_id)
        value_col = qualified(cfg.tag_table, cfg.tag_column)
        where = self._where("rel.att_id = ?", f"{value_col} LIKE ? ESCAPE '{LIKE_ESCAPE}'")

        def _select() -> list[sqlite3.Row]:
            sql = f"""
                SELECT DISTINCT rel.item_id
                FROM {self._relation} AS rel
                JOIN {table} ON rel.value_id = {id_col}
                {where}
            """
            return self._query(sql, (cfg.attribute_id, like_pattern))

        return {int(r[0]) for r in self._fetch("matching_item_ids", _select)}

    def probe(self, predicate: str) -> None:
        """追加条件 predicate でテストクエリを1回実行する（失敗時は sqlite3.Error）."""
        self._verify_columns()
        cfg = self._config
        table = quote_identifier(cfg.tag_table)
        sort_col = qualified(cfg.tag_table, cfg.sort_column)
        self._query(f"SELECT {table}.* FROM {table} WHERE ({predicate}) ORDER BY {sort_col} LIMIT 1")


class TagLookup:
    """タグ値ルックアップのファサード."""

    def __init__(self, config: TagAttributeConfig, reader: LookupTableReader) -> None:
        self._config = config
        self._reader = reader

    @property
    def config(self) -> TagAttributeConfig:
        return self._config

    def resolve_options(
        self,
        item_ids: Collection[int] | None = None,
        used_only: bool = False,
        *,
        with_counts: bool = False,
    ) -> TagOptions:
        """選択肢（エイリアス → 表示値）と、必要なら使用数を返す.

        結果は値IDごとに1件、並び順列の昇順。エイリアスが重複している場合は後勝ちで上書きされる
        （一意性は呼び出し側の責任）。

        Args:
            item_ids: 対象アイテムID（None なら全体）
            used_only: 当該属性で使われている値だけに絞るか
            with_counts: 使用数も返すか

        Returns:
            TagOptions（テーブル／ID列が未設定なら空）
        """
        counts: dict[Any, int] | None = {} if with_counts else None
        if not self._config.is_configured or (item_ids is not None and not item_ids):
            return TagOptions(options={}, counts=counts)

        alias_col = self._config.alias_column
        value_col = self._config.tag_column
        options: dict[Any, Any] = {}
        for row in self._reader.select_options(item_ids, used_only=used_only):
            alias = row[alias_col]
            options[alias] = row[value_col] if value_col else None
            if counts is not None:
                counts[alias] = int(row[COUNT_COLUMN])

        return TagOptions(options=options, counts=counts)

    def resolve_attached(self, item_ids: Collection[int]) -> dict[int, dict[Any, dict[str, Any]]]:
        """所有アイテムごとに紐づくタグレコードを返す.

        Returns:
            item_id → {値ID → レコード} （レコードは value_sorting 昇順）。
            紐づきの無いアイテムはキー自体が含まれない。
        """
        if not self._config.is_configured or not item_ids:
            return {}

        id_col = self._config.tag_id
        result: dict[int, dict[Any, dict[str, Any]]] = {}
        for row in self._reader.select_attached(item_ids):
            record = dict(row)
            item_id = int(record.pop(ITEM_KEY_COLUMN))
            result.setdefault(item_id, {})[record[id_col]] = record
        return result

    def search_matching(self, pattern: str) -> set[int]:
        """表示値がパターンに一致するタグを持つ所有アイテムIDを返す.

        `*` は任意の文字列、`?` は任意の1文字に一致する（大文字小文字は区別しない）。
        """
        if not self._config.is_configured or not self._config.tag_column:
            return set()
        return self._reader.matching_item_ids(wildcard_to_like(pattern, LIKE_ESCAPE))

    def records_by_alias(self, aliases: Iterable[Any]) -> list[dict[str, Any]]:
        """エイリアス列の値でタグレコードを取得する."""
        if not self._config.is_configured:
            return []
        return [dict(r) for r in self._reader.select_by_column(self._config.alias_column, aliases)]

    def check_filter_predicate(self, predicate: str | None, previous: str | None = None) -> str | None:
        """追加条件（tag_where）の候補をテストクエリで検証する.

        クエリが失敗した場合はエラーをログに残し、直前の値 previous を返す。

        Returns:
            有効なら predicate、無効なら previous
        """
        if not predicate or not self._config.is_configured:
            return predicate
        try:
            self._reader.probe(predicate)
        except sqlite3.Error as e:
            logger.warning(f"Rejected tag_where for attribute {self._config.attribute_id}: {e}")
            return previous
        return predicate

"""タグ属性（外部フレームワーク向けの公開インターフェース）.

TagLookup（読み取り）と TagReconciler（書き込み）を束ね、属性フレームワークから
呼ばれる getFilterOptions / getDataFor / setDataFor / unsetDataFor / searchFor 相当の
メソッドを提供します。

インスタンスはアプリケーションの組み立て時に1回作成して渡すこと（グローバルな共有インスタンスは持たない）。
"""

from __future__ import annotations

import sqlite3
from collections.abc import Collection, Mapping, Sequence
from typing import Any

from .core.config import TagAttributeConfig
from .core.database import RELATION_TABLE
from .lookup import LookupTableReader, TagLookup, TagOptions
from .reconcile import SORTING_KEY, ReconcileResult, TagReconciler, coerce_item_ids
from .store import RelationStore, SQLiteRelationStore


class TagAttribute:
    """多対多のタグ属性.

    Args:
        config: 属性設定
        store: リレーションストア
        lookup: ルックアップファサード
    """

    def __init__(self, config: TagAttributeConfig, store: RelationStore, lookup: TagLookup) -> None:
        self._config = config
        self._lookup = lookup
        self._reconciler = TagReconciler(store, config.attribute_id)

    @classmethod
    def from_connection(
        cls,
        conn: sqlite3.Connection,
        config: TagAttributeConfig,
        *,
        store: SQLiteRelationStore | None = None,
        relation_table: str = RELATION_TABLE,
    ) -> TagAttribute:
        """SQLite 接続から属性を組み立てる.

        複数属性で同じストア（＝同じ属性ロック表）を共有する場合は store を渡すこと。
        """
        if store is None:
            store = SQLiteRelationStore(conn, table=relation_table)
        reader = LookupTableReader(conn, config, relation_table=relation_table)
        return cls(config, store, TagLookup(config, reader))

    @property
    def config(self) -> TagAttributeConfig:
        return self._config

    @property
    def lookup(self) -> TagLookup:
        return self._lookup

    @property
    def alias_column(self) -> str | None:
        return self._config.alias_column

    def get_filter_options(
        self,
        ids: Collection[int] | None,
        used_only: bool,
        *,
        with_counts: bool = False,
    ) -> TagOptions:
        return self._lookup.resolve_options(ids, used_only, with_counts=with_counts)

    def get_data_for(self, ids: Collection[int]) -> dict[int, dict[Any, dict[str, Any]]]:
        """アイテムごとのタグレコード（並び順どおり）を返す. 紐づきの無いアイテムは含まれない."""
        return self._lookup.resolve_attached(coerce_item_ids(ids))

    def set_data_for(self, values: Mapping[int, Any]) -> ReconcileResult:
        """アイテムごとのタグを values の状態に同期する.

        Args:
            values: item_id → {value_id → 並び順 | タグレコード | None} | None
        """
        return self._reconciler.reconcile(values)

    def unset_data_for(self, ids: Any) -> int:
        return self._reconciler.unassociate(ids)

    def search_for(self, pattern: str) -> set[int]:
        return self._lookup.search_matching(pattern)

    def value_to_widget(self, value: Mapping[Any, Mapping[str, Any]] | None) -> list[Any]:
        """get_data_for() の1アイテム分をエイリアスのリストに変換する."""
        if not value:
            return []
        alias_col = self.alias_column
        return [record[alias_col] for record in value.values()]

    def widget_to_value(self, aliases: Sequence[Any] | None) -> dict[Any, dict[str, Any]]:
        """エイリアスのリストを set_data_for() 用のタグレコードに変換する.

        リスト内の位置を `tag_value_sorting` として付与する。未知のエイリアスは無視される。
        """
        if not aliases or not isinstance(aliases, Sequence) or isinstance(aliases, str | bytes):
            return {}

        alias_col = self.alias_column
        # ウィジェットは文字列、ID列は INTEGER のことがあるため文字列同士で照合する
        position = {str(alias): index for index, alias in reversed(list(enumerate(aliases)))}
        result: dict[Any, dict[str, Any]] = {}
        for record in self._lookup.records_by_alias(aliases):
            key = str(record[alias_col])
            if key not in position:
                continue
            record[SORTING_KEY] = position[key]
            result[record[self._config.tag_id]] = record
        return dict(sorted(result.items(), key=lambda kv: kv[1][SORTING_KEY]))

    def check_filter_predicate(self, predicate: str | None) -> str | None:
        """tag_where 候補を検証し、無効なら現在の設定値を返す."""
        return self._lookup.check_filter_predicate(predicate, previous=self._config.tag_where)

"""リレーションの差分同期（reconcile）.

所有アイテムごとの目標状態 {item_id -> {value_id -> 並び順 | None} | None} を受け取り、

1. 対象アイテムの現行タプルを1回のバッチ読み込みで取得（item_id 昇順）
2. item_id ごとにグループ化
3. 現行／目標の集合差分（削除・追加・並び順更新）を計算
4. 削除 → 追加（バッチ全体で1回の INSERT）→ 並び順更新 の順に適用

を1トランザクション・属性単位ロックの中で行う。
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from itertools import groupby
from operator import attrgetter
from typing import Any

from loguru import logger

from .core.exceptions import InvalidInputError, StoreFailureError
from .store import RelationStore, RelationTuple

# レコード形式（widget_to_value / get_data_for の戻り値）で並び順を運ぶキー
SORTING_KEY = "tag_value_sorting"

_INT_STRING_RE = re.compile(r"^-?[0-9]+$")

DesiredValues = Mapping[int, int | None]
Target = Mapping[int, DesiredValues | None]


@dataclass(frozen=True)
class ItemDiff:
    """1アイテム分の集合差分.

    Attributes:
        to_remove: current − desired
        to_add: desired − current
        to_update_sort: desired − to_add（残留値。並び順更新の候補）
    """

    item_id: int
    to_remove: frozenset[int]
    to_add: frozenset[int]
    to_update_sort: frozenset[int]


@dataclass
class ItemChange:
    """1アイテムに実際に適用した変更."""

    item_id: int
    removed: list[int] = field(default_factory=list)
    added: list[int] = field(default_factory=list)
    resorted: list[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.added or self.resorted)


@dataclass
class ReconcileResult:
    """reconcile() の結果."""

    attribute_id: int
    items: list[ItemChange] = field(default_factory=list)

    @property
    def removed(self) -> int:
        return sum(len(c.removed) for c in self.items)

    @property
    def added(self) -> int:
        return sum(len(c.added) for c in self.items)

    @property
    def resorted(self) -> int:
        return sum(len(c.resorted) for c in self.items)

    @property
    def changed(self) -> bool:
        return any(c.changed for c in self.items)


def diff_values(item_id: int, current: Iterable[int], desired: Iterable[int]) -> ItemDiff:
    """現行値と目標値の集合差分を計算する.

    Examples:
        >>> d = diff_values(1, {1, 2, 3}, {2, 4})
        >>> sorted(d.to_remove), sorted(d.to_add), sorted(d.to_update_sort)
        ([1, 3], [4], [2])
    """
    current_set = frozenset(current)
    desired_set = frozenset(desired)
    to_add = desired_set - current_set
    return ItemDiff(
        item_id=item_id,
        to_remove=current_set - desired_set,
        to_add=to_add,
        to_update_sort=desired_set - to_add,
    )


def group_by_item(tuples: Iterable[RelationTuple]) -> Iterator[tuple[int, list[RelationTuple]]]:
    """item_id 昇順に並んだタプル列を (item_id, タプル群) に分割する.

    Raises:
        StoreFailureError: 入力が item_id 昇順になっていない場合
            （同じ item_id が離れて現れるとグループが分断されるため）
    """
    previous: int | None = None
    for item_id, group in groupby(tuples, key=attrgetter("item_id")):
        if previous is not None and item_id <= previous:
            raise StoreFailureError(
                "load_tuples",
                ValueError(f"relation rows are not sorted by item_id ({previous} before {item_id})"),
            )
        previous = item_id
        yield item_id, list(group)


def _coerce_int(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise InvalidInputError(f"Invalid {what}: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INT_STRING_RE.match(value.strip()):
        return int(value.strip())
    raise InvalidInputError(f"Invalid {what}: {value!r}")


def coerce_item_ids(item_ids: Any) -> list[int]:
    """IDコレクションを検証して、重複なし昇順の int リストにする.

    Raises:
        InvalidInputError: コレクションでない（文字列・数値など）、または要素が整数IDでない場合
    """
    if isinstance(item_ids, str | bytes) or not isinstance(item_ids, Iterable):
        raise InvalidInputError(f"Collection of ids is needed, got {type(item_ids).__name__}")
    return sorted({_coerce_int(i, "item id") for i in item_ids})


def _coerce_sorting(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, Mapping):
        if SORTING_KEY not in value or value[SORTING_KEY] is None:
            return None
        return _coerce_int(value[SORTING_KEY], SORTING_KEY)
    return _coerce_int(value, SORTING_KEY)


def normalize_target(target: Any) -> dict[int, dict[int, int | None]]:
    """目標状態を {item_id -> {value_id -> 並び順 | None}} に正規化する.

    値の指定は次のいずれでもよい:
        - None: 並び順の指定なし
        - int: 並び順
        - Mapping: タグレコード。`tag_value_sorting` キーがあればそれを並び順とする

    アイテムの値が None（または空）の場合は、そのアイテムの紐づけを全て外す。

    Raises:
        InvalidInputError: target が Mapping でない、またはIDや並び順が整数でない場合
    """
    if not isinstance(target, Mapping):
        raise InvalidInputError(f"Mapping of item id to values is needed, got {type(target).__name__}")

    normalized: dict[int, dict[int, int | None]] = {}
    for raw_item_id, values in target.items():
        item_id = _coerce_int(raw_item_id, "item id")
        if values is None:
            normalized[item_id] = {}
            continue
        if not isinstance(values, Mapping):
            raise InvalidInputError(f"Values for item {item_id} must be a mapping, got {type(values).__name__}")
        normalized[item_id] = {
            _coerce_int(value_id, "value id"): _coerce_sorting(value) for value_id, value in values.items()
        }
    return normalized


class TagReconciler:
    """1属性分のリレーションを目標状態へ同期する."""

    def __init__(self, store: RelationStore, attribute_id: int) -> None:
        self._store = store
        self._attribute_id = attribute_id

    @property
    def attribute_id(self) -> int:
        return self._attribute_id

    def reconcile(self, target: Target) -> ReconcileResult:
        """目標状態に合わせて削除・追加・並び順更新を適用する.

        - 読み込みは対象アイテム数によらず1回
        - 追加はバッチ全体を最後に1回の insert_tuples でまとめて行う
        - 並び順の指定が無い残留値は既存の並び順を維持する（0 にはしない）
        - 指定どおりの並び順が既に保存されている値は更新しない

        Args:
            target: item_id → {value_id → 並び順 | None} | None

        Returns:
            適用した変更の一覧

        Raises:
            InvalidInputError: target の形式が不正な場合（ストアには触れない）
            StoreFailureError: ストア操作に失敗した場合（トランザクションはロールバックされる）
        """
        desired_by_item = normalize_target(target)
        result = ReconcileResult(attribute_id=self._attribute_id)
        if not desired_by_item:
            return result

        attribute_id = self._attribute_id
        item_ids = sorted(desired_by_item)

        with self._store.attribute_lock(attribute_id), self._store.transaction():
            existing = {
                item_id: {t.value_id: t.sort_order for t in rows}
                for item_id, rows in group_by_item(self._store.load_tuples(attribute_id, item_ids))
            }

            staged_inserts: list[RelationTuple] = []
            for item_id in item_ids:
                desired = desired_by_item[item_id]
                current = existing.get(item_id, {})
                diff = diff_values(item_id, current, desired)
                change = ItemChange(item_id=item_id)

                # 1) 不要になった値を削除
                if diff.to_remove:
                    self._store.delete_tuples(attribute_id, item_id, diff.to_remove)
                    change.removed = sorted(diff.to_remove)

                # 2) 新規値はバッチ全体でまとめて INSERT するため溜めておく
                for value_id in sorted(diff.to_add):
                    sort_order = desired[value_id]
                    staged_inserts.append(
                        RelationTuple(attribute_id, item_id, value_id, 0 if sort_order is None else sort_order)
                    )
                    change.added.append(value_id)

                # 3) 残留値の並び順更新（指定がある場合のみ）
                for value_id in sorted(diff.to_update_sort):
                    sort_order = desired[value_id]
                    if sort_order is None or current.get(value_id) == sort_order:
                        continue
                    self._store.update_sort_order(attribute_id, item_id, value_id, sort_order)
                    change.resorted.append(value_id)

                if change.changed:
                    logger.debug(
                        f"att_id={attribute_id} item_id={item_id}: "
                        f"removed={change.removed} added={change.added} resorted={change.resorted}"
                    )
                result.items.append(change)

            if staged_inserts:
                self._store.insert_tuples(staged_inserts)

        logger.info(
            f"Reconciled attribute {attribute_id}: {len(item_ids)} items "
            f"(removed={result.removed}, added={result.added}, resorted={result.resorted})"
        )
        return result

    def unassociate(self, item_ids: Any) -> int:
        """指定アイテムの紐づけを1文でまとめて削除する.

        Args:
            item_ids: 所有アイテムIDのコレクション（None や空なら何もしない）

        Returns:
            削除した行数

        Raises:
            InvalidInputError: コレクションでない値が渡された場合（ストアには触れない）
        """
        if item_ids is None:
            return 0
        ids = coerce_item_ids(item_ids)
        if not ids:
            return 0

        with self._store.attribute_lock(self._attribute_id), self._store.transaction():
            deleted = self._store.delete_all_tuples(self._attribute_id, ids)

        logger.info(f"Unassociated {len(ids)} items from attribute {self._attribute_id} ({deleted} rows)")
        return deleted

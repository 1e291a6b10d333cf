"""TagReconciler のユニットテスト."""

import sqlite3
from unittest.mock import patch

import pytest
from conftest import RecordingStore, fetch_relations, seed_relations

from tag_relations.core.exceptions import InvalidInputError, StoreFailureError
from tag_relations.reconcile import (
    TagReconciler,
    coerce_item_ids,
    diff_values,
    group_by_item,
    normalize_target,
)
from tag_relations.store import RelationTuple, SQLiteRelationStore


class TestDiffValues:
    """diff_values のテスト."""

    def test_set_difference(self) -> None:
        diff = diff_values(10, {1, 2, 3}, {2, 4})

        assert diff.item_id == 10
        assert diff.to_remove == {1, 3}
        assert diff.to_add == {4}
        assert diff.to_update_sort == {2}

    def test_disjoint_and_partition(self) -> None:
        """削除・追加・残留が互いに素で、目標 = 追加 ∪ 残留 になること."""
        current, desired = {1, 2, 5, 8}, {2, 3, 8, 9}
        diff = diff_values(1, current, desired)

        assert not (diff.to_remove & diff.to_add)
        assert not (diff.to_add & diff.to_update_sort)
        assert diff.to_add | diff.to_update_sort == desired
        assert (current - diff.to_remove) | diff.to_add == desired

    def test_empty_desired_removes_everything(self) -> None:
        diff = diff_values(1, {5, 6}, set())
        assert diff.to_remove == {5, 6}
        assert not diff.to_add
        assert not diff.to_update_sort


class TestGroupByItem:
    """group_by_item のテスト."""

    def test_groups_sorted_rows(self) -> None:
        rows = [
            RelationTuple(1, 10, 1, 0),
            RelationTuple(1, 10, 2, 1),
            RelationTuple(1, 11, 1, 0),
        ]

        groups = list(group_by_item(rows))

        assert [item_id for item_id, _ in groups] == [10, 11]
        assert [t.value_id for t in groups[0][1]] == [1, 2]

    def test_unsorted_rows_are_rejected(self) -> None:
        """同じ item_id が離れて現れる入力はエラーになること."""
        rows = [
            RelationTuple(1, 10, 1, 0),
            RelationTuple(1, 11, 1, 0),
            RelationTuple(1, 10, 2, 0),
        ]

        with pytest.raises(StoreFailureError, match="not sorted by item_id"):
            list(group_by_item(rows))

    def test_empty(self) -> None:
        assert list(group_by_item([])) == []


class TestNormalizeTarget:
    """normalize_target のテスト."""

    def test_accepted_value_shapes(self) -> None:
        target = {
            "10": {1: 5, "2": None, 3: {"tag_value_sorting": 7, "name": "x"}, 4: {"name": "y"}},
            11: None,
            12: {},
        }

        assert normalize_target(target) == {
            10: {1: 5, 2: None, 3: 7, 4: None},
            11: {},
            12: {},
        }

    @pytest.mark.parametrize(
        "target",
        [
            None,
            [1, 2, 3],
            "10",
            {True: {1: 0}},
            {"abc": {1: 0}},
            {10: [1, 2]},
            {10: {1: "first"}},
            {10: {1.5: 0}},
            {"²": None},
            {"--5": None},
            {10: {"1-2": 0}},
            {10: {1: "--5"}},
        ],
    )
    def test_invalid_target(self, target) -> None:
        with pytest.raises(InvalidInputError):
            normalize_target(target)

    def test_invalid_input_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            normalize_target("not a mapping")


class TestCoerceItemIds:
    def test_sorted_unique(self) -> None:
        assert coerce_item_ids([3, "1", 3, 2]) == [1, 2, 3]

    @pytest.mark.parametrize("ids", ["1,2", b"12", 5, object()])
    def test_rejects_non_collections(self, ids) -> None:
        with pytest.raises(InvalidInputError, match="Collection of ids is needed"):
            coerce_item_ids(ids)


class TestReconcile:
    """reconcile のシナリオテスト."""

    def test_replace_values_with_sorting(self, conn: sqlite3.Connection, store: SQLiteRelationStore) -> None:
        """既存 {1,2,3} を {2:10, 4:20} に同期すると 1,3 が削除され、2 が並び替え、4 が追加されること."""
        seed_relations(conn, [(1, 10, 1, 0), (1, 10, 2, 1), (1, 10, 3, 2)])

        result = TagReconciler(store, 1).reconcile({10: {2: 10, 4: 20}})

        assert fetch_relations(conn) == [(10, 2, 10), (10, 4, 20)]
        (change,) = result.items
        assert change.removed == [1, 3]
        assert change.added == [4]
        assert change.resorted == [2]
        assert (result.removed, result.added, result.resorted) == (2, 1, 1)

    def test_none_clears_item(self, conn: sqlite3.Connection, store: SQLiteRelationStore) -> None:
        seed_relations(conn, [(1, 20, 5, 0), (1, 20, 6, 1), (1, 21, 5, 0)])

        TagReconciler(store, 1).reconcile({20: None})

        assert fetch_relations(conn) == [(21, 5, 0)]

    def test_other_attributes_untouched(self, conn: sqlite3.Connection, store: SQLiteRelationStore) -> None:
        seed_relations(conn, [(1, 10, 1, 0), (2, 10, 1, 0), (2, 10, 2, 0)])

        TagReconciler(store, 1).reconcile({10: {3: None}})

        assert fetch_relations(conn, att_id=1) == [(10, 3, 0)]
        assert fetch_relations(conn, att_id=2) == [(10, 1, 0), (10, 2, 0)]

    def test_unspecified_sorting_is_preserved(
        self, conn: sqlite3.Connection, store: SQLiteRelationStore
    ) -> None:
        """並び順の指定が無い残留値は既存の並び順のまま、新規値は 0 になること."""
        seed_relations(conn, [(1, 10, 1, 7)])

        result = TagReconciler(store, 1).reconcile({10: {1: None, 2: None}})

        assert fetch_relations(conn) == [(10, 1, 7), (10, 2, 0)]
        assert result.items[0].resorted == []

    def test_idempotent(self, conn: sqlite3.Connection, recording_store: RecordingStore) -> None:
        """同じ目標で2回同期しても2回目は読み込み以外のストア操作をしないこと."""
        reconciler = TagReconciler(recording_store, 1)
        target = {10: {1: 0, 2: 1}, 11: {3: 5}}

        reconciler.reconcile(target)
        after_first = fetch_relations(conn)
        recording_store.calls.clear()

        result = reconciler.reconcile(target)

        assert fetch_relations(conn) == after_first
        assert not result.changed
        assert recording_store.calls["load_tuples"] == 1
        assert recording_store.store_calls == 1

    def test_batch_uses_one_load_and_one_insert(
        self, conn: sqlite3.Connection, recording_store: RecordingStore
    ) -> None:
        """アイテム数によらず読み込み1回・INSERT 1回にまとまること."""
        seed_relations(conn, [(1, item_id, 1, 0) for item_id in range(1, 51)])
        target = {item_id: {1: None, 2: item_id} for item_id in range(1, 101)}

        result = TagReconciler(recording_store, 1).reconcile(target)

        assert recording_store.calls["load_tuples"] == 1
        assert recording_store.calls["insert_tuples"] == 1
        assert recording_store.calls["transaction"] == 1
        assert len(recording_store.inserted[0]) == 150
        assert result.added == 150
        assert len(fetch_relations(conn)) == 200

    def test_empty_target_makes_no_store_calls(self, recording_store: RecordingStore) -> None:
        result = TagReconciler(recording_store, 1).reconcile({})

        assert result.items == []
        assert sum(recording_store.calls.values()) == 0

    def test_invalid_target_makes_no_store_calls(self, recording_store: RecordingStore) -> None:
        with pytest.raises(InvalidInputError):
            TagReconciler(recording_store, 1).reconcile({10: "witch"})

        assert sum(recording_store.calls.values()) == 0

    def test_failure_rolls_back_whole_batch(
        self, conn: sqlite3.Connection, store: SQLiteRelationStore
    ) -> None:
        """INSERT が失敗した場合、同じバッチの削除もロールバックされること."""
        seed_relations(conn, [(1, 10, 1, 0), (1, 11, 1, 0)])

        class FailingInsertStore(RecordingStore):
            def insert_tuples(self, tuples):
                raise StoreFailureError("insert_tuples", sqlite3.OperationalError("disk I/O error"))

        with pytest.raises(StoreFailureError, match="insert_tuples failed"):
            TagReconciler(FailingInsertStore(store), 1).reconcile({10: {2: 0}, 11: None})

        assert fetch_relations(conn) == [(10, 1, 0), (11, 1, 0)]
        assert not conn.in_transaction

    def test_logs_summary(self, store: SQLiteRelationStore) -> None:
        with patch("tag_relations.reconcile.logger") as mock_logger:
            TagReconciler(store, 1).reconcile({10: {1: 0}})

        messages = [c.args[0] for c in mock_logger.info.call_args_list]
        assert any("Reconciled attribute 1" in m and "added=1" in m for m in messages)


class TestUnassociate:
    """unassociate のテスト."""

    def test_removes_all_for_items(self, conn: sqlite3.Connection, recording_store: RecordingStore) -> None:
        seed_relations(conn, [(1, 10, 1, 0), (1, 10, 2, 1), (1, 11, 1, 0), (1, 12, 3, 0)])

        deleted = TagReconciler(recording_store, 1).unassociate({10, 11})

        assert deleted == 3
        assert fetch_relations(conn) == [(12, 3, 0)]
        assert recording_store.calls["delete_all_tuples"] == 1

    def test_empty_ids_make_no_store_calls(self, recording_store: RecordingStore) -> None:
        reconciler = TagReconciler(recording_store, 1)

        assert reconciler.unassociate(set()) == 0
        assert reconciler.unassociate(None) == 0
        assert sum(recording_store.calls.values()) == 0

    @pytest.mark.parametrize("ids", ["10", 10])
    def test_invalid_ids(self, recording_store: RecordingStore, ids) -> None:
        with pytest.raises(InvalidInputError):
            TagReconciler(recording_store, 1).unassociate(ids)

        assert sum(recording_store.calls.values()) == 0

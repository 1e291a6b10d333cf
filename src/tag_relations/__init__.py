"""タグ属性の多対多リレーション同期ライブラリ.

- TagLookup: 選択肢・使用数・紐づきレコードの取得
- TagReconciler: 目標状態との差分を最小の削除／追加／更新で適用
- TagAttribute: 属性フレームワーク向けの公開インターフェース
"""

from .attribute import TagAttribute
from .core.config import TagAttributeConfig, load_attribute_configs
from .core.database import connect, create_database
from .core.exceptions import InvalidInputError, StoreFailureError, TagRelationError
from .lookup import LookupTableReader, TagLookup, TagOptions
from .reconcile import ReconcileResult, TagReconciler, diff_values
from .store import RelationStore, RelationTuple, SQLiteRelationStore

__version__ = "0.1.0"

__all__ = [
    # attribute
    "TagAttribute",
    "TagAttributeConfig",
    "load_attribute_configs",
    # database
    "connect",
    "create_database",
    # errors
    "TagRelationError",
    "InvalidInputError",
    "StoreFailureError",
    # lookup
    "LookupTableReader",
    "TagLookup",
    "TagOptions",
    # reconcile
    "ReconcileResult",
    "TagReconciler",
    "diff_values",
    # store
    "RelationStore",
    "RelationTuple",
    "SQLiteRelationStore",
]

"""リレーション同期のコア部品.

- 属性設定（YAML 読み込み）
- リレーションDBのスキーマと接続
- 識別子検証・プレースホルダなど SQL 組み立て補助
- 例外
"""

from .config import TagAttributeConfig, load_attribute_configs
from .exceptions import InvalidInputError, StoreFailureError, TagRelationError

__all__ = [
    "TagAttributeConfig",
    "load_attribute_configs",
    "TagRelationError",
    "InvalidInputError",
    "StoreFailureError",
]

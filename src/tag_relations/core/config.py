"""タグ属性の設定.

属性ごとのルックアップテーブル／列マッピングを不変オブジェクトとして保持し、
YAML からまとめて読み込む機能を提供します。

YAML形式:
    attributes:
      - attribute_id: 1
        tag_table: tags
        tag_id: id
        tag_column: name
        tag_alias: alias
        tag_where: "published = 1"
        tag_sorting: name
      - attribute_id: 2
        enabled: false
        ...
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from .sql import validate_identifier

_IDENTIFIER_SETTINGS = ("tag_table", "tag_id", "tag_column", "tag_alias", "tag_sorting")


@dataclass(frozen=True)
class TagAttributeConfig:
    """タグ属性の設定.

    Attributes:
        attribute_id: 属性ID（TAG_RELATIONS.att_id）
        tag_table: ルックアップテーブル名
        tag_id: ルックアップテーブルのID列
        tag_column: 表示値の列
        tag_alias: 外部公開用の識別子列（未指定なら tag_id を使う）
        tag_where: ルックアップテーブルに AND される追加条件（管理者設定として信頼する）
        tag_sorting: 並び順の列（未指定なら tag_id を使う）
        tag_as_wizard: 並べ替え可能なウィジェットで編集するか
        mandatory: 必須入力か
        filterable: フィルタ対象にできるか
        searchable: 検索対象にできるか
    """

    attribute_id: int
    tag_table: str | None = None
    tag_id: str | None = None
    tag_column: str | None = None
    tag_alias: str | None = None
    tag_where: str | None = None
    tag_sorting: str | None = None
    tag_as_wizard: bool = False
    mandatory: bool = False
    filterable: bool = False
    searchable: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.attribute_id, bool) or not isinstance(self.attribute_id, int):
            raise ValueError(f"attribute_id must be an integer, got {self.attribute_id!r}")
        for name in _IDENTIFIER_SETTINGS:
            value = getattr(self, name)
            if value:
                validate_identifier(value)
        if self.tag_where is not None and not self.tag_where.strip():
            object.__setattr__(self, "tag_where", None)

    @property
    def alias_column(self) -> str | None:
        """エイリアスとして使う列（エイリアス列が無ければID列）."""
        return self.tag_alias or self.tag_id

    @property
    def sort_column(self) -> str | None:
        return self.tag_sorting or self.tag_id

    @property
    def is_configured(self) -> bool:
        """ルックアップに必要なテーブルとID列が揃っているか."""
        return bool(self.tag_table and self.tag_id)

    @classmethod
    def setting_names(cls) -> list[str]:
        return [f.name for f in fields(cls) if f.name != "attribute_id"]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TagAttributeConfig:
        """辞書から設定を作成する（未知のキーは無視）.

        Raises:
            ValueError: attribute_id が無い、または識別子が不正な場合
        """
        if "attribute_id" not in data:
            raise ValueError(f"Attribute config requires 'attribute_id': {data!r}")
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        return cls(**kwargs)


def load_attribute_configs(config_yml: Path | str) -> dict[int, TagAttributeConfig]:
    """YAML ファイルからタグ属性設定を読み込む.

    Args:
        config_yml: 設定ファイルのパス

    Returns:
        attribute_id → 設定 の辞書（enabled=false の属性は除外）

    Raises:
        FileNotFoundError: ファイルが存在しない場合
        ValueError: YAML 形式が不正、属性IDが重複、または設定値が不正な場合
    """
    config_yml = Path(config_yml)

    if not config_yml.exists():
        raise FileNotFoundError(f"Attribute config file not found: {config_yml}")

    try:
        with open(config_yml, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        msg = f"Invalid YAML in attribute config file: {config_yml}"
        raise ValueError(msg) from e

    if not isinstance(data, dict) or not isinstance(data.get("attributes", []), list):
        msg = f"Attribute config must contain an 'attributes' list: {config_yml}"
        raise ValueError(msg)

    configs: dict[int, TagAttributeConfig] = {}
    for entry in data.get("attributes", []):
        if not isinstance(entry, dict):
            raise ValueError(f"Invalid attribute entry: {entry!r}")
        if not entry.get("enabled", True):
            continue
        config = TagAttributeConfig.from_dict(entry)
        if config.attribute_id in configs:
            raise ValueError(f"Duplicate attribute_id: {config.attribute_id}")
        configs[config.attribute_id] = config

    logger.info(f"Loaded {len(configs)} tag attributes from {config_yml}")
    return configs

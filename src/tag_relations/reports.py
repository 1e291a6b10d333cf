"""同期結果・リレーションのレポート出力.

- reconcile の適用結果（アイテム単位の差分）を CSV として出力
- TAG_RELATIONS のスナップショットを Parquet として出力
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import polars as pl
from loguru import logger

from .core.database import RELATION_TABLE
from .core.sql import quote_identifier, run_guarded
from .reconcile import ReconcileResult

_REPORT_SCHEMA = {
    "attribute_id": pl.Int64,
    "item_id": pl.Int64,
    "removed": pl.String,
    "added": pl.String,
    "resorted": pl.String,
    "removed_count": pl.Int64,
    "added_count": pl.Int64,
    "resorted_count": pl.Int64,
}

_RELATION_SCHEMA = {
    "att_id": pl.Int64,
    "item_id": pl.Int64,
    "value_id": pl.Int64,
    "value_sorting": pl.Int64,
}


def _join_ids(ids: list[int]) -> str:
    return ",".join(str(i) for i in ids)


def reconcile_report_frame(result: ReconcileResult) -> pl.DataFrame:
    """変更のあったアイテムだけを1行ずつ並べた DataFrame を返す."""
    rows = [
        {
            "attribute_id": result.attribute_id,
            "item_id": c.item_id,
            "removed": _join_ids(c.removed),
            "added": _join_ids(c.added),
            "resorted": _join_ids(c.resorted),
            "removed_count": len(c.removed),
            "added_count": len(c.added),
            "resorted_count": len(c.resorted),
        }
        for c in result.items
        if c.changed
    ]
    return pl.DataFrame(rows, schema=_REPORT_SCHEMA).sort("item_id")


def export_reconcile_report(result: ReconcileResult, output_dir: Path | str) -> Path | None:
    """reconcile 結果を CSV ファイルとして出力する.

    Args:
        result: TagReconciler.reconcile() の戻り値
        output_dir: 出力ディレクトリ

    Returns:
        出力した CSV のパス（変更が無ければ None）
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    df = reconcile_report_frame(result)
    if len(df) == 0:
        return None

    report_path = output_dir / f"reconcile_{result.attribute_id}.csv"
    df.write_csv(report_path)
    logger.info(f"Wrote reconcile report: {report_path} ({len(df)} items)")
    return report_path


def export_relations_parquet(
    conn: sqlite3.Connection,
    output_dir: Path | str,
    *,
    attribute_id: int | None = None,
    relation_table: str = RELATION_TABLE,
) -> Path:
    """リレーションテーブルを Parquet 形式で出力する.

    Args:
        conn: リレーションDBへの接続
        output_dir: 出力ディレクトリ
        attribute_id: 指定時はその属性の行だけを出力
        relation_table: リレーションテーブル名

    Returns:
        出力した Parquet ファイルのパス
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    table = quote_identifier(relation_table)
    sql = f"SELECT att_id, item_id, value_id, value_sorting FROM {table}"
    params: tuple = ()
    if attribute_id is not None:
        sql += " WHERE att_id = ?"
        params = (attribute_id,)
    sql += " ORDER BY att_id, item_id, value_sorting, value_id"

    rows = run_guarded("Export relations", lambda: conn.execute(sql, params).fetchall())
    df = pl.DataFrame([tuple(r) for r in rows], schema=_RELATION_SCHEMA, orient="row")

    suffix = "all" if attribute_id is None else str(attribute_id)
    output_path = output_dir / f"tag_relations_{suffix}.parquet"
    df.write_parquet(output_path)
    logger.info(f"Exported {len(df)} relation rows → {output_path.name}")
    return output_path

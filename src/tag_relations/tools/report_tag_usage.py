"""タグ属性ごとの選択肢と使用数を TSV レポートとして出力する。"""

from __future__ import annotations

import argparse
import csv
from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from tag_relations.attribute import TagAttribute
from tag_relations.core.config import TagAttributeConfig, load_attribute_configs
from tag_relations.core.database import connect
from tag_relations.lookup import TagOptions

USAGE_HEADER = ("alias", "value", "count")


def _write_usage_tsv(path: Path, options: TagOptions) -> int:
    """選択肢を並び順のまま1行ずつ書き出し、書いた行数を返す（ヘッダを除く）."""
    counts = options.counts or {}
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f, delimiter="\t")
        writer.writerow(USAGE_HEADER)
        for alias, value in options.options.items():
            writer.writerow([alias, "" if value is None else value, counts.get(alias, 0)])
    return len(options.options)


def report_tag_usage(
    db_path: Path,
    configs: dict[int, TagAttributeConfig],
    out_dir: Path,
    *,
    used_only: bool = False,
) -> list[Path]:
    """属性ごとに usage_<attribute_id>.tsv（alias, value, count）を出力する."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    written: list[Path] = []
    conn = connect(db_path)
    try:
        for attribute_id, config in sorted(configs.items()):
            attribute = TagAttribute.from_connection(conn, config)
            options = attribute.get_filter_options(None, used_only, with_counts=True)
            out_path = out_dir / f"usage_{attribute_id}.tsv"
            n = _write_usage_tsv(out_path, options)
            logger.info(f"attribute {attribute_id}: {n} values → {out_path.name}")
            written.append(out_path)
    finally:
        conn.close()

    return written


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Report tag options and usage counts per attribute")
    parser.add_argument("--db", type=Path, required=True, help="Relation database path")
    parser.add_argument("--attributes", type=Path, required=True, help="Attribute config YAML")
    parser.add_argument(
        "--attribute-id",
        type=int,
        action="append",
        default=None,
        help="Limit to the given attribute id (repeatable)",
    )
    parser.add_argument("--used-only", action="store_true", help="Only list values in use")
    parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path("reports") / "tag_usage",
        help="Report output directory",
    )
    args = parser.parse_args(argv)

    configs = load_attribute_configs(args.attributes)
    if args.attribute_id:
        missing = set(args.attribute_id) - set(configs)
        if missing:
            parser.error(f"Unknown attribute id(s): {sorted(missing)}")
        configs = {k: v for k, v in configs.items() if k in args.attribute_id}

    report_tag_usage(args.db, configs, args.out_dir, used_only=args.used_only)


if __name__ == "__main__":
    main()

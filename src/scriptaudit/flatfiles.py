# src/scriptaudit/flatfiles.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Sequence

from scriptaudit.schema import RELATIONS, Relation, Snapshot

logger = logging.getLogger(__name__)

DELIMITER = "|"


def _writable(row: Sequence[str]) -> bool:
    if any("\n" in v or "\r" in v for v in row):
        return False
    # only the final column may carry the delimiter; readers split at most ncols-1 times
    return not any(DELIMITER in v for v in row[:-1])


def write_relation(path: str | Path, relation: Relation, rows: Iterable[Sequence[str]]) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = []
    for row in rows:
        values = [str(v) for v in row]
        if len(values) != len(relation.columns):
            raise ValueError(f"{relation.name}: expected {len(relation.columns)} columns, got {len(values)}")
        if not _writable(values):
            logger.warning("dropping %s row that cannot be pipe-delimited: %r", relation.name, values)
            continue
        lines.append(DELIMITER.join(values) + "\n")
    # filenames that are not valid UTF-8 arrive surrogate-escaped from os.walk; keep their bytes
    p.write_text("".join(lines), encoding="utf-8", errors="surrogateescape")
    return p


def read_relation(path: str | Path, relation: Relation) -> list[tuple]:
    """Rows in file order; blank and malformed lines are skipped."""
    n = len(relation.columns)
    rows: list[tuple] = []
    for raw in Path(path).read_text(encoding="utf-8", errors="surrogateescape").splitlines():
        if not raw.strip():
            continue
        parts = raw.split(DELIMITER, n - 1)
        if len(parts) != n:
            logger.debug("%s: skipping malformed line %r", relation.name, raw)
            continue
        rows.append(relation.row_type(*parts))
    return rows


def snapshot_paths(out_dir: str | Path, relations: Sequence[Relation] = RELATIONS) -> dict[str, str]:
    return {r.name: str(Path(out_dir) / r.filename) for r in relations}


def write_snapshot(
        out_dir: str | Path,
        snapshot: Snapshot,
        relations: Sequence[Relation] = RELATIONS,
) -> dict[str, str]:
    paths = snapshot_paths(out_dir, relations)
    for r in relations:
        write_relation(paths[r.name], r, snapshot.rows(r))
    return paths


def read_snapshot(src_dir: str | Path) -> Snapshot:
    """Missing relation files read as empty relations."""
    rows_by_name: dict[str, list[tuple]] = {}
    for r in RELATIONS:
        p = Path(src_dir) / r.filename
        rows_by_name[r.name] = read_relation(p, r) if p.is_file() else []
    return Snapshot.from_relations(rows_by_name)


def remove_files(paths: Iterable[str | Path]) -> list[str]:
    removed: list[str] = []
    for p in paths:
        try:
            os.remove(p)
        except FileNotFoundError:
            continue
        removed.append(str(p))
    return removed

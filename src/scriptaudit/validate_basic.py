# src/scriptaudit/validate_basic.py
from __future__ import annotations

from pathlib import Path

from scriptaudit.flatfiles import DELIMITER
from scriptaudit.schema import DEPENDENCY, RELATIONS_BY_NAME, SCHEDULE, Relation


def _must_exist(path: str | Path, label: str) -> None:
    p = Path(path)
    if not p.exists():
        raise RuntimeError(f"Missing artifact: {label} at {p}")
    if not p.is_file():
        raise RuntimeError(f"Artifact path is not a file: {label} at {p}")


def _load_rows(path: str | Path, relation: Relation) -> list[list[str]]:
    p = Path(path)
    text = p.read_text(encoding="utf-8", errors="surrogateescape")

    n = len(relation.columns)
    rows: list[list[str]] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        parts = line.split(DELIMITER, n - 1)
        if len(parts) != n:
            raise RuntimeError(f"{relation.name} line {lineno}: expected {n} fields, got {len(parts)}: {line!r}")
        if any(not v for v in parts):
            raise RuntimeError(f"{relation.name} line {lineno}: empty field: {line!r}")
        rows.append(parts)
    return rows


def validate_basic_artifacts(local_paths: dict[str, str]) -> None:
    """
    Checks every written relation file against the row invariants:
      - exists and parses with the relation's column count
      - Dependency never names the script itself
      - relations other than Schedule hold no duplicate keys
    Schedule is allowed repeated (host, script_name); the load keeps the last.
    """
    for name, path in local_paths.items():
        relation = RELATIONS_BY_NAME.get(name)
        if relation is None:
            raise RuntimeError(f"Unknown relation artifact: {name}")
        _must_exist(path, name)
        rows = _load_rows(path, relation)

        if relation is DEPENDENCY:
            selfrefs = [r for r in rows if r[1] == r[2]]
            if selfrefs:
                raise RuntimeError(f"dependency has self-references: {selfrefs[:5]}")

        if relation is SCHEDULE:
            continue

        key_idx = [relation.columns.index(k) for k in relation.key]
        seen: set[tuple[str, ...]] = set()
        for r in rows:
            k = tuple(r[i] for i in key_idx)
            if k in seen:
                raise RuntimeError(f"{relation.name} has duplicate key {k}")
            seen.add(k)

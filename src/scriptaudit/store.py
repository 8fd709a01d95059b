# src/scriptaudit/store.py
from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, Sequence

from scriptaudit.schema import RELATIONS, Relation, Snapshot

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    def __init__(self, relation: str, inner: Exception):
        super().__init__(f"{relation}: {inner}")
        self.relation = relation
        self.inner = inner


class RelationalStore(Protocol):
    def create_schema(self) -> None: ...

    def upsert_batch(self, relation: Relation, rows: Sequence[tuple]) -> int: ...

    def dump_schema(self) -> dict[str, str]: ...


@dataclass(frozen=True)
class LoadFailure:
    relation: str
    error: str


@dataclass
class LoadReport:
    loaded: dict[str, int] = field(default_factory=dict)
    failures: list[LoadFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "loaded": dict(sorted(self.loaded.items())),
            "failures": [{"relation": f.relation, "error": f.error} for f in self.failures],
        }


def db_connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    # WAL is faster but can be problematic on some synced/networked filesystems.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
        conn.execute("PRAGMA synchronous = NORMAL;")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE;")
        conn.execute("PRAGMA synchronous = FULL;")
    return conn


class SQLiteStore:
    """
    Embedded store. Loads are upserts keyed on each relation's composite key,
    so replaying a snapshot or a bundle leaves the same rows behind.
    One load job at a time: concurrent loaders must be excluded by the caller.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        parent = Path(self.db_path).parent
        parent.mkdir(parents=True, exist_ok=True)
        self.conn = db_connect(self.db_path)

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    def create_schema(self) -> None:
        with self.conn:
            for r in RELATIONS:
                self.conn.execute(r.create_sql())

    def upsert_batch(self, relation: Relation, rows: Sequence[tuple]) -> int:
        # one transaction per relation: a rejected batch leaves the table as it was
        try:
            with self.conn:
                self.conn.executemany(relation.upsert_sql(), [tuple(r) for r in rows])
        except (sqlite3.Error, ValueError) as e:
            # ValueError covers values sqlite cannot bind, e.g. surrogate-escaped names
            raise StoreError(relation.table, e) from e
        return len(rows)

    def dump_schema(self) -> dict[str, str]:
        cur = self.conn.execute("SELECT name, sql FROM sqlite_master WHERE type = 'table' ORDER BY name")
        return {name: sql for name, sql in cur.fetchall()}

    def count(self, relation: Relation) -> int:
        return int(self.conn.execute(f"SELECT COUNT(*) FROM {relation.table}").fetchone()[0])

    def fetch_all(self, relation: Relation) -> list[tuple]:
        cols = ", ".join(relation.columns)
        order = ", ".join(relation.key)
        cur = self.conn.execute(f"SELECT {cols} FROM {relation.table} ORDER BY {order}")
        return [relation.row_type(*r) for r in cur.fetchall()]

    @staticmethod
    def discard(db_path: str | Path) -> list[str]:
        """Remove the database (and WAL side files) for a full rebuild."""
        removed: list[str] = []
        for suffix in ("", "-wal", "-shm", "-journal"):
            p = f"{db_path}{suffix}"
            if os.path.exists(p):
                os.remove(p)
                removed.append(p)
        return removed


def load_snapshot(store: RelationalStore, snapshot: Snapshot) -> LoadReport:
    """
    Create every table (even for empty relations), then upsert relation by
    relation. A rejected batch is recorded and the remaining relations still load.
    """
    store.create_schema()
    report = LoadReport()
    for relation in RELATIONS:
        rows = snapshot.rows(relation)
        try:
            report.loaded[relation.name] = store.upsert_batch(relation, rows)
        except StoreError as e:
            logger.error("load failed for %s: %s", relation.table, e.inner)
            report.failures.append(LoadFailure(relation.name, str(e.inner)))
    return report

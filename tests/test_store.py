import sqlite3

import pytest

from scriptaudit.schema import (
    DEPENDENCY,
    RELATIONS,
    SCHEDULE,
    SCRIPT_LOCATION,
    Dependency,
    Schedule,
    ScriptLocation,
    Snapshot,
)
from scriptaudit.store import SQLiteStore, StoreError, load_snapshot


@pytest.fixture
def store(tmp_path):
    with SQLiteStore(tmp_path / "audit.db") as s:
        yield s


def _snapshot() -> Snapshot:
    return Snapshot(
        locations=[ScriptLocation("H", "a.sh", "/h/a.sh")],
        dependencies=[Dependency("H", "a.sh", "b.sh"), Dependency("H", "a.sh", "c.pl")],
    )


def test_schema_has_every_relation_even_when_empty(store):
    report = load_snapshot(store, Snapshot())
    assert report.ok
    tables = store.dump_schema()
    assert set(tables) == {r.table for r in RELATIONS}
    assert "PRIMARY KEY (host, script_name)" in tables["Schedule"]


def test_loading_twice_is_idempotent(store):
    load_snapshot(store, _snapshot())
    once = store.count(DEPENDENCY)
    report = load_snapshot(store, _snapshot())
    assert report.ok
    assert store.count(DEPENDENCY) == once == 2
    assert store.count(SCRIPT_LOCATION) == 1


def test_schedule_collapses_to_last_loaded(store):
    first = Schedule("H", "a.sh", "0", "01", "*", "*", "*")
    later = Schedule("H", "a.sh", "30", "08", "*", "*", "1,2,3,4,5")
    load_snapshot(store, Snapshot(schedules=[first, later]))
    assert store.fetch_all(SCHEDULE) == [later]

    load_snapshot(store, Snapshot(schedules=[first]))
    assert store.fetch_all(SCHEDULE) == [first]


def test_failed_relation_does_not_stop_the_others(tmp_path):
    class FlakyStore(SQLiteStore):
        def upsert_batch(self, relation, rows):
            if relation is DEPENDENCY:
                raise StoreError(relation.table, sqlite3.OperationalError("database is locked"))
            return super().upsert_batch(relation, rows)

    with FlakyStore(tmp_path / "audit.db") as s:
        report = load_snapshot(s, _snapshot())
        assert not report.ok
        assert [f.relation for f in report.failures] == ["dependency"]
        assert report.loaded["script_location"] == 1
        assert "dependency" not in report.loaded
        assert s.count(SCRIPT_LOCATION) == 1
        assert report.as_dict()["failures"] == [{"relation": "dependency", "error": "database is locked"}]


def test_unbindable_name_fails_only_its_relation(store):
    # a non-UTF-8 filename decoded with surrogateescape cannot be stored as TEXT
    snapshot = Snapshot(
        locations=[ScriptLocation("H", "caf\udce9.sh", "/h/caf\udce9.sh")],
        dependencies=[Dependency("H", "a.sh", "b.sh")],
    )
    report = load_snapshot(store, snapshot)
    assert not report.ok
    assert [f.relation for f in report.failures] == ["script_location"]
    assert report.loaded["dependency"] == 1
    assert store.count(SCRIPT_LOCATION) == 0
    assert store.count(DEPENDENCY) == 1


def test_rejected_batch_rolls_back(store):
    store.create_schema()
    with pytest.raises(StoreError):
        store.upsert_batch(DEPENDENCY, [("H", "a.sh", "b.sh"), ("H", "a.sh", None)])
    assert store.count(DEPENDENCY) == 0


def test_discard_removes_database(tmp_path):
    db = tmp_path / "audit.db"
    with SQLiteStore(db) as s:
        s.create_schema()
    removed = SQLiteStore.discard(db)
    assert str(db) in removed
    assert not db.exists()

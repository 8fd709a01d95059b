import json
import os
import sqlite3

import pytest

from conftest import BUCKET
from scriptaudit.bundle import LOADED_DIRNAME, TarBundle, discover_bundles
from scriptaudit.graph import (
    MODE_AUDIT,
    MODE_INGEST,
    MODE_LOAD,
    MODE_REBUILD,
    MODE_SCHEDULE,
    STAGE_DONE,
    STAGE_DONE_DRY_RUN,
    STAGE_SCAN_INVENTORY,
    AuditStageError,
    run_aggregation_graph,
    run_audit_graph,
)
from scriptaudit.inventory import EmptyInventoryError
from scriptaudit.schema import CONNECTION, DEPENDENCY, PROJECT_MEMBERSHIP, SCHEDULE, SCRIPT_LOCATION, Connection, Dependency
from scriptaudit.store import SQLiteStore, StoreError


def _payload(tmp_path, root, crontab_file, host="ilsdev1", out="out"):
    return {
        "host": host,
        "root": str(root),
        "crontab_file": str(crontab_file),
        "output": {
            "out_dir": str(tmp_path / out),
            "db_path": str(tmp_path / "audit.db"),
            "bundle_dir": str(tmp_path / "bundles"),
        },
    }


def test_load_mode_end_to_end(tmp_path, script_tree, crontab_file):
    result = run_audit_graph(
        payload=_payload(tmp_path, script_tree, crontab_file),
        payload_src="test",
        dry_run=False,
        aws_region=None,
        mode=MODE_LOAD,
    )
    assert result["ok"] is True
    assert result["stage"] == STAGE_DONE
    assert result["counts"] == {
        "script_location": 5,
        "project_membership": 5,
        "dependency": 2,
        "connection": 3,
        "schedule": 3,
    }
    json.dumps(result)

    with SQLiteStore(tmp_path / "audit.db") as store:
        assert store.fetch_all(DEPENDENCY) == [
            Dependency("ilsdev1", "helper.pl", "report.py"),
            Dependency("ilsdev1", "load.sh", "helper.pl"),
        ]
        assert store.fetch_all(CONNECTION) == [
            Connection("ilsdev1", "app.js", "http://api.example.com/v1/items"),
            Connection("ilsdev1", "helper.pl", "ops@example.com"),
            Connection("ilsdev1", "load.sh", "10.0.0.5"),
        ]
        namespaces = {(m.script_name, m.namespace) for m in store.fetch_all(PROJECT_MEMBERSHIP)}
        assert ("load.sh", "proj/a/b") in namespaces
        assert ("load.sh", "proj/c/a") in namespaces
        assert ("Makefile", ".") in namespaces
        assert store.count(SCRIPT_LOCATION) == 5

    # flat files stay behind when not packing
    assert (tmp_path / "out" / "dependency.lst").is_file()


def test_rerun_is_idempotent(tmp_path, script_tree, crontab_file):
    kwargs = dict(payload=_payload(tmp_path, script_tree, crontab_file), payload_src="test", dry_run=False, aws_region=None, mode=MODE_LOAD)
    run_audit_graph(**kwargs)
    with SQLiteStore(tmp_path / "audit.db") as store:
        before = {r.name: store.count(r) for r in (SCRIPT_LOCATION, DEPENDENCY, CONNECTION, SCHEDULE)}
    run_audit_graph(**kwargs)
    with SQLiteStore(tmp_path / "audit.db") as store:
        after = {r.name: store.count(r) for r in (SCRIPT_LOCATION, DEPENDENCY, CONNECTION, SCHEDULE)}
    assert before == after


def test_dry_run_does_not_touch_store(tmp_path, script_tree, crontab_file):
    result = run_audit_graph(
        payload=_payload(tmp_path, script_tree, crontab_file),
        payload_src="test",
        dry_run=True,
        aws_region=None,
        mode=MODE_LOAD,
    )
    assert result["stage"] == STAGE_DONE_DRY_RUN
    assert result["load"] is None
    assert not (tmp_path / "audit.db").exists()


def test_schedule_mode_writes_only_schedule(tmp_path, crontab_file):
    result = run_audit_graph(
        payload=_payload(tmp_path, tmp_path / "does-not-matter", crontab_file),
        payload_src="test",
        dry_run=False,
        aws_region=None,
        mode=MODE_SCHEDULE,
    )
    assert result["counts"] == {"schedule": 3}
    assert sorted(os.listdir(tmp_path / "out")) == ["schedule.lst"]
    lines = (tmp_path / "out" / "schedule.lst").read_text().splitlines()
    assert lines[1] == "ilsdev1|load_discards.sh|30|08|*|*|1,2,3,4,5"


def test_empty_inventory_stops_before_flat_files(tmp_path, crontab_file):
    root = tmp_path / "home"
    (root / ".config").mkdir(parents=True)
    (root / ".config" / "tool.sh").write_text("x\n")

    with pytest.raises(AuditStageError) as ei:
        run_audit_graph(
            payload=_payload(tmp_path, root, crontab_file),
            payload_src="test",
            dry_run=False,
            aws_region=None,
            mode=MODE_AUDIT,
        )
    assert ei.value.stage == STAGE_SCAN_INVENTORY
    assert isinstance(ei.value.inner, EmptyInventoryError)
    assert os.listdir(tmp_path / "out") == []


def test_bundles_from_two_hosts_aggregate(tmp_path, script_tree, crontab_file):
    for host in ("alpha", "beta"):
        result = run_audit_graph(
            payload=_payload(tmp_path, script_tree, crontab_file, host=host, out=f"out-{host}"),
            payload_src="test",
            dry_run=False,
            aws_region=None,
            mode=MODE_AUDIT,
            pack=True,
        )
        assert result["artifacts"]["bundle"].endswith(f"{host}.audit.tar.gz")
        # collected -> packaged: local flat files are gone
        assert os.listdir(tmp_path / f"out-{host}") == []

    central = _payload(tmp_path, script_tree, crontab_file, host="central", out="central")
    result = run_aggregation_graph(payload=central, payload_src="test", dry_run=False, aws_region=None, mode=MODE_INGEST)
    assert result["ok"] is True
    assert [b["host"] for b in result["bundles"]] == ["alpha", "beta"]
    assert all(b["purged"] for b in result["bundles"])
    assert discover_bundles(tmp_path / "bundles") == []
    assert len(os.listdir(tmp_path / "bundles" / LOADED_DIRNAME)) == 2
    assert os.listdir(tmp_path / "central") == []

    with SQLiteStore(tmp_path / "audit.db") as store:
        assert {loc.host for loc in store.fetch_all(SCRIPT_LOCATION)} == {"alpha", "beta"}
        counts = {r.name: store.count(r) for r in (SCRIPT_LOCATION, DEPENDENCY, CONNECTION, SCHEDULE)}
    assert counts["dependency"] == 4

    # nothing new waiting: an incremental ingest is a no-op
    again = run_aggregation_graph(payload=central, payload_src="test", dry_run=False, aws_region=None, mode=MODE_INGEST)
    assert again["bundles"] == []

    rebuilt = run_aggregation_graph(payload=central, payload_src="test", dry_run=False, aws_region=None, mode=MODE_REBUILD)
    assert rebuilt["ok"] is True
    assert str(tmp_path / "audit.db") in rebuilt["discarded"]
    assert len(rebuilt["bundles"]) == 2
    with SQLiteStore(tmp_path / "audit.db") as store:
        assert {r.name: store.count(r) for r in (SCRIPT_LOCATION, DEPENDENCY, CONNECTION, SCHEDULE)} == counts


def test_undecodable_filename_reaches_the_flat_files(tmp_path, script_tree, crontab_file):
    raw = os.path.join(os.fsencode(script_tree), b"caf\xe9.sh")
    with open(raw, "wb") as fh:
        fh.write(b"echo hi\n")

    result = run_audit_graph(
        payload=_payload(tmp_path, script_tree, crontab_file),
        payload_src="test",
        dry_run=False,
        aws_region=None,
        mode=MODE_AUDIT,
    )
    assert result["ok"] is True
    assert result["counts"]["script_location"] == 6
    assert b"|caf\xe9.sh|" in (tmp_path / "out" / "script_location.lst").read_bytes()


def _pack_and_upload(tmp_path, script_tree, crontab_file, host):
    payload = _payload(tmp_path, script_tree, crontab_file, host=host, out=f"out-{host}")
    payload["output"]["bundle_dir"] = str(tmp_path / f"outbox-{host}")
    payload["transport"] = {"s3_bucket": BUCKET, "s3_prefix": "audit"}
    result = run_audit_graph(
        payload=payload,
        payload_src="test",
        dry_run=False,
        aws_region="us-east-1",
        mode=MODE_AUDIT,
        pack=True,
        upload=True,
    )
    assert result["ok"] is True


def test_s3_bundle_is_ingested_once(aws, tmp_path, script_tree, crontab_file):
    _pack_and_upload(tmp_path, script_tree, crontab_file, "alpha")

    central = _payload(tmp_path, script_tree, crontab_file, host="central", out="central")
    central["transport"] = {"s3_bucket": BUCKET, "s3_prefix": "audit"}
    kwargs = dict(payload=central, payload_src="test", dry_run=False, aws_region="us-east-1")

    first = run_aggregation_graph(mode=MODE_INGEST, **kwargs)
    assert first["ok"] is True
    assert [b["host"] for b in first["bundles"]] == ["alpha"]
    assert first["bundles"][0]["remote_deleted"] == "audit/alpha.audit.tar.gz"

    second = run_aggregation_graph(mode=MODE_INGEST, **kwargs)
    assert second["bundles"] == []

    rebuilt = run_aggregation_graph(mode=MODE_REBUILD, **kwargs)
    assert [b["host"] for b in rebuilt["bundles"]] == ["alpha"]


def test_failed_load_leaves_bundle_for_retry(tmp_path, script_tree, crontab_file, monkeypatch):
    run_audit_graph(
        payload=_payload(tmp_path, script_tree, crontab_file, host="alpha", out="out-alpha"),
        payload_src="test",
        dry_run=False,
        aws_region=None,
        mode=MODE_AUDIT,
        pack=True,
    )

    original = SQLiteStore.upsert_batch

    def locked(self, relation, rows):
        if relation is DEPENDENCY:
            raise StoreError(relation.table, sqlite3.OperationalError("database is locked"))
        return original(self, relation, rows)

    monkeypatch.setattr(SQLiteStore, "upsert_batch", locked)

    central = _payload(tmp_path, script_tree, crontab_file, host="central", out="central")
    result = run_aggregation_graph(payload=central, payload_src="test", dry_run=False, aws_region=None, mode=MODE_INGEST)

    assert result["ok"] is False
    outcome = result["bundles"][0]
    assert outcome["purged"] is False
    assert outcome["load"]["failures"] == [{"relation": "dependency", "error": "database is locked"}]
    assert (tmp_path / "bundles" / "alpha.audit.tar.gz").is_file()
    assert not (tmp_path / "bundles" / LOADED_DIRNAME / "alpha.audit.tar.gz").exists()
    assert (tmp_path / "central" / "alpha" / "dependency.lst").is_file()

    # the next ingest retries the same bundle
    monkeypatch.setattr(SQLiteStore, "upsert_batch", original)
    retry = run_aggregation_graph(payload=central, payload_src="test", dry_run=False, aws_region=None, mode=MODE_INGEST)
    assert retry["ok"] is True
    assert [b["host"] for b in retry["bundles"]] == ["alpha"]


def test_stale_unpacked_files_are_not_reloaded(tmp_path, script_tree, crontab_file):
    leftover = tmp_path / "central" / "alpha" / "dependency.lst"
    leftover.parent.mkdir(parents=True)
    leftover.write_text("alpha|stale.sh|gone.sh\n")

    staged = tmp_path / "staged" / "schedule.lst"
    staged.parent.mkdir()
    staged.write_text("alpha|a.sh|0|01|*|*|*\n")
    TarBundle().pack([staged], tmp_path / "bundles", "alpha")

    central = _payload(tmp_path, script_tree, crontab_file, host="central", out="central")
    result = run_aggregation_graph(payload=central, payload_src="test", dry_run=False, aws_region=None, mode=MODE_INGEST)

    assert result["ok"] is True
    with SQLiteStore(tmp_path / "audit.db") as store:
        assert store.count(DEPENDENCY) == 0
        assert store.count(SCHEDULE) == 1
    assert not leftover.exists()

import pytest

from scriptaudit.flatfiles import snapshot_paths, write_snapshot
from scriptaudit.schema import Dependency, Schedule, Snapshot
from scriptaudit.validate_basic import validate_basic_artifacts


def test_valid_snapshot_passes(tmp_path):
    snapshot = Snapshot(
        dependencies=[Dependency("H", "a.sh", "b.sh")],
        schedules=[Schedule("H", "a.sh", "0", "1", "*", "*", "*"), Schedule("H", "a.sh", "5", "1", "*", "*", "*")],
    )
    validate_basic_artifacts(write_snapshot(tmp_path, snapshot))


def test_missing_file_fails(tmp_path):
    with pytest.raises(RuntimeError, match="Missing artifact"):
        validate_basic_artifacts(snapshot_paths(tmp_path))


def test_self_reference_fails(tmp_path):
    paths = write_snapshot(tmp_path, Snapshot())
    (tmp_path / "dependency.lst").write_text("H|a.sh|a.sh\n")
    with pytest.raises(RuntimeError, match="self-references"):
        validate_basic_artifacts(paths)


def test_duplicate_key_fails(tmp_path):
    paths = write_snapshot(tmp_path, Snapshot())
    (tmp_path / "connection.lst").write_text("H|a.sh|localhost\nH|a.sh|localhost\n")
    with pytest.raises(RuntimeError, match="duplicate key"):
        validate_basic_artifacts(paths)

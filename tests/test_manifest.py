import json

import pytest

from riverkv.manifest import FileData, Manifest


def _files():
    return [
        FileData(path="L2/a.blk", size=10, timestamp=5, min_key="a", max_key="f", entry_count=3),
        FileData(path="L2/b.blk", size=20, timestamp=6, min_key="g", max_key="m", entry_count=4),
    ]


def test_new_manifest_has_seven_empty_levels(tmp_path):
    manifest = Manifest(tmp_path)
    assert manifest.path == tmp_path / "manifest" / "manifest.json"
    assert [level.level for level in manifest.data.levels] == list(range(7))
    assert all(manifest.get_level_files(i) == [] for i in range(7))
    assert manifest.current_wal() == ""
    assert manifest.last_checkpoint() == 0


@pytest.mark.parametrize("level", [-1, 7])
def test_invalid_level_is_rejected(tmp_path, level):
    manifest = Manifest(tmp_path)
    with pytest.raises(ValueError, match="invalid level"):
        manifest.update_level(level, _files())
    with pytest.raises(ValueError, match="invalid level"):
        manifest.get_level_files(level)


def test_save_and_reload_round_trip(tmp_path):
    manifest = Manifest(tmp_path)
    files = _files()
    manifest.update_level(2, files)
    manifest.update_current_wal("1700.wal")
    manifest.update_last_checkpoint(99)
    manifest.save()

    reloaded = Manifest(tmp_path)
    assert reloaded.get_level_files(2) == files
    assert reloaded.get_level_files(0) == []
    assert reloaded.current_wal() == "1700.wal"
    assert reloaded.last_checkpoint() == 99
    assert reloaded.data.timestamp == manifest.data.timestamp


def test_get_level_files_returns_copy(tmp_path):
    manifest = Manifest(tmp_path)
    manifest.update_level(1, _files())
    copy = manifest.get_level_files(1)
    copy.clear()
    assert manifest.get_level_files(1) == _files()


def test_update_level_does_not_alias_argument(tmp_path):
    manifest = Manifest(tmp_path)
    files = _files()
    manifest.update_level(3, files)
    files.pop()
    assert manifest.get_level_files(3) == _files()


def test_saved_file_uses_json_field_names(tmp_path):
    manifest = Manifest(tmp_path)
    manifest.update_level(0, _files()[:1])
    manifest.save()
    obj = json.loads(manifest.path.read_text())
    assert set(obj) == {"timestamp", "levels", "current_wal", "last_checkpoint"}
    assert set(obj["levels"][0]) == {"level", "files"}
    assert set(obj["levels"][0]["files"][0]) == {
        "path",
        "size",
        "timestamp",
        "min_key",
        "max_key",
        "entry_count",
    }
    assert obj["timestamp"] == manifest.data.timestamp


def test_save_leaves_no_temporary_file(tmp_path):
    manifest = Manifest(tmp_path)
    manifest.save()
    assert sorted(p.name for p in (tmp_path / "manifest").iterdir()) == ["manifest.json"]


def test_save_refreshes_timestamp(tmp_path):
    manifest = Manifest(tmp_path)
    before = manifest.data.timestamp
    manifest.save()
    assert manifest.data.timestamp >= before


def test_corrupt_manifest_raises(tmp_path):
    directory = tmp_path / "manifest"
    directory.mkdir()
    (directory / "manifest.json").write_text("{not json")
    with pytest.raises(ValueError, match="failed to load manifest"):
        Manifest(tmp_path)
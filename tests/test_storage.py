from database import SnapshotStorage


def test_missing_slot_reads_none(storage):
    assert storage.read("SUE_AHHAHN_DB") is None
    assert storage.keys() == []


def test_write_then_overwrite(storage):
    storage.write("SUE_AHHAHN_DB", '{"version":1}')
    storage.write("SUE_AHHAHN_DB", '{"version":1,"users":[]}')

    assert storage.read("SUE_AHHAHN_DB") == '{"version":1,"users":[]}'
    assert storage.keys() == ["SUE_AHHAHN_DB"]


def test_slots_are_independent(storage):
    storage.write("b-slot", "second")
    storage.write("a-slot", "first")

    assert storage.read("a-slot") == "first"
    assert storage.read("b-slot") == "second"
    assert storage.keys() == ["a-slot", "b-slot"]


def test_file_database_survives_reopen(tmp_path):
    url = f"sqlite:///{tmp_path / 'market.db'}"
    first = SnapshotStorage(url)
    first.write("SUE_AHHAHN_DB", "payload")
    first.dispose()

    second = SnapshotStorage(url)
    try:
        assert second.read("SUE_AHHAHN_DB") == "payload"
    finally:
        second.dispose()

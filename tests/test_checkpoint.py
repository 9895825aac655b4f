"""
Tests for the durable checkpoint store.
"""

import threading
from unittest.mock import patch

import pytest
import yaml

from dracpu.checkpoint import CHECKPOINT_VERSION, CheckpointStore, FileStore
from dracpu.devices import ClaimDevice, ContainerEdits, PreparedDevice
from dracpu.errors import StorageCorruptError, StorageUnavailableError


def make_claims():
    return {
        "uid-1": [
            PreparedDevice(
                device=ClaimDevice(
                    request_names=["main"],
                    pool_name="node-a",
                    device_name="cpu-0",
                    cdi_device_ids=["manager.cpu.com/cpu=common", "manager.cpu.com/cpu=uid-1-cpu-0"],
                ),
                container_edits=ContainerEdits(env=["CPU_DEVICE_0=cpu-0"]),
            )
        ]
    }


@pytest.fixture
def file_store(tmp_path):
    return FileStore(tmp_path / "plugin")


@pytest.fixture
def store(file_store):
    return CheckpointStore(file_store)


class TestFileStore:
    """Tests for the key-addressed file store."""

    def test_creates_directory(self, tmp_path):
        FileStore(tmp_path / "a" / "b")
        assert (tmp_path / "a" / "b").is_dir()

    def test_write_read(self, file_store):
        file_store.write("blob", b"hello")
        assert file_store.read("blob") == b"hello"

    def test_overwrite(self, file_store):
        file_store.write("blob", b"one")
        file_store.write("blob", b"two")
        assert file_store.read("blob") == b"two"

    def test_read_missing(self, file_store):
        with pytest.raises(StorageUnavailableError):
            file_store.read("missing")

    def test_list_keys_skips_temp_files(self, file_store):
        """Test leftover temp files from an interrupted write are not listed."""
        file_store.write("b", b"")
        file_store.write("a", b"")
        (file_store.directory / ".c.tmp").write_bytes(b"partial")
        assert file_store.list_keys() == ["a", "b"]

    def test_delete_idempotent(self, file_store):
        file_store.write("blob", b"x")
        file_store.delete("blob")
        file_store.delete("blob")
        assert file_store.list_keys() == []

    @pytest.mark.parametrize("key", ["", "../escape", "a/b", "..", ".lock"])
    def test_invalid_keys(self, file_store, key):
        with pytest.raises(ValueError):
            file_store.read(key)

    def test_failed_replace_keeps_old_content(self, file_store):
        """Test a crash before rename leaves the previous version intact."""
        file_store.write("blob", b"old")
        with patch("dracpu.checkpoint.os.replace", side_effect=OSError("disk gone")):
            with pytest.raises(StorageUnavailableError):
                file_store.write("blob", b"new")
        assert file_store.read("blob") == b"old"
        assert file_store.list_keys() == ["blob"]
        assert list(file_store.directory.glob(".blob.*.tmp")) == []

    def test_concurrent_writers_on_one_directory(self, file_store):
        """Test two stores writing the same key never clobber each other's temp file."""
        other = FileStore(file_store.directory)
        payloads = {id(file_store): b"a" * 200_000, id(other): b"b" * 200_000}
        errors = []

        def worker(store):
            try:
                for _ in range(20):
                    store.write("checkpoint.yaml", payloads[id(store)])
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(s,)) for s in (file_store, other) * 2]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert file_store.read("checkpoint.yaml") in payloads.values()
        assert list(file_store.directory.glob("*.tmp")) == []

    def test_lock_is_shared_between_stores(self, file_store):
        """Test the directory lock held by one store blocks another on the same directory."""
        other = FileStore(file_store.directory)
        acquired = threading.Event()

        def contender():
            with other.lock():
                acquired.set()

        with file_store.lock():
            thread = threading.Thread(target=contender)
            thread.start()
            assert not acquired.wait(0.2)
        assert acquired.wait(5)
        thread.join()

    def test_lock_file_not_listed(self, file_store):
        with file_store.lock():
            file_store.write("blob", b"x")
        assert file_store.list_keys() == ["blob"]

    def test_storage_unavailable_is_os_error(self, file_store):
        with pytest.raises(OSError):
            file_store.read("missing")


class TestCheckpointStore:
    """Tests for CheckpointStore load/save/initialize."""

    def test_initialize_creates_empty(self, store):
        store.initialize()
        assert store.load() == {}

    def test_initialize_is_idempotent(self, store):
        """Test initialize does not clobber an existing checkpoint."""
        store.initialize()
        store.save(make_claims())
        store.initialize()
        assert "uid-1" in store.load()

    def test_save_load(self, store):
        claims = make_claims()
        store.save(claims)
        assert store.load() == claims

    def test_reload_from_new_instance(self, file_store):
        """Test the table survives a simulated restart."""
        CheckpointStore(file_store).save(make_claims())
        reloaded = CheckpointStore(FileStore(file_store.directory)).load()
        assert reloaded == make_claims()

    def test_on_disk_format(self, store, file_store):
        store.save(make_claims())
        data = yaml.safe_load(file_store.read("checkpoint.yaml"))
        assert data["version"] == CHECKPOINT_VERSION
        assert len(data["checksum"]) == 64
        entry = data["preparedClaims"]["uid-1"][0]
        assert entry["device"]["deviceName"] == "cpu-0"
        assert entry["device"]["requestNames"] == ["main"]
        assert entry["containerEdits"]["env"] == ["CPU_DEVICE_0=cpu-0"]

    def test_load_missing(self, store):
        with pytest.raises(StorageUnavailableError):
            store.load()

    def test_load_malformed_yaml(self, store, file_store):
        file_store.write("checkpoint.yaml", b"version: [broken")
        with pytest.raises(StorageCorruptError):
            store.load()

    def test_load_wrong_type(self, store, file_store):
        file_store.write("checkpoint.yaml", b"- a\n- b\n")
        with pytest.raises(StorageCorruptError):
            store.load()

    def test_load_wrong_version(self, store, file_store):
        store.save(make_claims())
        data = yaml.safe_load(file_store.read("checkpoint.yaml"))
        data["version"] = "v0"
        file_store.write("checkpoint.yaml", yaml.safe_dump(data).encode())
        with pytest.raises(StorageCorruptError) as exc_info:
            store.load()
        assert "version" in str(exc_info.value)

    def test_load_checksum_mismatch(self, store, file_store):
        """Test a hand-edited table is detected."""
        store.save(make_claims())
        data = yaml.safe_load(file_store.read("checkpoint.yaml"))
        data["preparedClaims"]["uid-1"][0]["device"]["deviceName"] = "cpu-7"
        file_store.write("checkpoint.yaml", yaml.safe_dump(data).encode())
        with pytest.raises(StorageCorruptError) as exc_info:
            store.load()
        assert "checksum" in str(exc_info.value)

    def test_load_bad_entry_shape(self, store, file_store):
        from dracpu.checkpoint import _checksum

        payload = {"uid-1": [{"device": {"poolName": "x"}}]}
        document = {"version": CHECKPOINT_VERSION, "checksum": _checksum(payload), "preparedClaims": payload}
        file_store.write("checkpoint.yaml", yaml.safe_dump(document).encode())
        with pytest.raises(StorageCorruptError):
            store.load()

    def test_save_failure_propagates(self, store):
        with patch.object(store.store, "write", side_effect=StorageUnavailableError("read-only")):
            with pytest.raises(StorageUnavailableError):
                store.save(make_claims())

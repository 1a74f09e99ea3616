"""
Tests for storage backends and unit-of-work support
"""

import pytest
import tempfile
import os

from lending_ledger.storage import (
    InMemoryStorage, SQLiteStorage, StorageInterface, create_storage
)
from lending_ledger.errors import DuplicateRecordError, InvalidRequest


def _sqlite_storage(tmpdir: str) -> SQLiteStorage:
    return SQLiteStorage(os.path.join(tmpdir, "ledger.db"))


class StorageContract:
    """Behaviour every backend must provide; subclasses supply make_storage()"""

    def make_storage(self) -> StorageInterface:
        raise NotImplementedError

    def setup_method(self):
        self.storage = self.make_storage()

    def teardown_method(self):
        self.storage.close()

    def test_save_load_and_find(self):
        self.storage.save("things", "1", {"id": "1", "owner": "alice", "amount": 100})
        self.storage.save("things", "2", {"id": "2", "owner": "bob", "amount": 250})

        assert self.storage.load("things", "1") == {"id": "1", "owner": "alice", "amount": 100}
        assert self.storage.load("things", "missing") is None
        assert self.storage.exists("things", "2")
        assert self.storage.count("things") == 2

        found = self.storage.find("things", {"owner": "bob"})
        assert len(found) == 1
        assert found[0]["amount"] == 250
        assert len(self.storage.find("things", {"amount": 100, "owner": "alice"})) == 1

    def test_delete(self):
        self.storage.save("things", "1", {"id": "1"})
        assert self.storage.delete("things", "1")
        assert not self.storage.delete("things", "1")
        assert not self.storage.exists("things", "1")

    def test_insert_rejects_duplicate_key(self):
        self.storage.insert("keys", "k1", {"value": 1})

        with pytest.raises(DuplicateRecordError) as exc_info:
            self.storage.insert("keys", "k1", {"value": 2})

        assert exc_info.value.table == "keys"
        assert self.storage.load("keys", "k1") == {"value": 1}

    def test_update_where_is_compare_and_set(self):
        self.storage.save("rows", "r1", {"status": "PENDING", "n": 1})

        assert self.storage.update_where("rows", "r1", {"status": "PENDING"}, {"status": "DUE"})
        assert not self.storage.update_where("rows", "r1", {"status": "PENDING"}, {"status": "DUE"})
        assert not self.storage.update_where("rows", "missing", {}, {"status": "DUE"})
        assert self.storage.load("rows", "r1") == {"status": "DUE", "n": 1}

    def test_sequences_are_independent_and_increasing(self):
        assert [self.storage.next_sequence("a") for _ in range(3)] == [1, 2, 3]
        assert self.storage.next_sequence("b") == 1
        assert self.storage.next_sequence("a") == 4

    def test_atomic_rolls_back_on_error(self):
        self.storage.save("things", "keep", {"v": 1})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("things", "gone", {"v": 2})
                self.storage.save("things", "keep", {"v": 99})
                raise RuntimeError("boom")

        assert self.storage.load("things", "gone") is None
        assert self.storage.load("things", "keep") == {"v": 1}

    def test_nested_atomic_rolls_back_only_inner_block(self):
        with self.storage.atomic():
            self.storage.save("things", "outer", {"v": 1})
            try:
                with self.storage.atomic():
                    self.storage.save("things", "inner", {"v": 2})
                    raise ValueError("inner failure")
            except ValueError:
                pass
            self.storage.save("things", "after", {"v": 3})

        assert self.storage.load("things", "outer") == {"v": 1}
        assert self.storage.load("things", "inner") is None
        assert self.storage.load("things", "after") == {"v": 3}

    def test_duplicate_insert_inside_unit_of_work_keeps_earlier_writes(self):
        self.storage.insert("keys", "k1", {"value": 1})

        with self.storage.atomic():
            self.storage.save("things", "a", {"v": 1})
            with pytest.raises(DuplicateRecordError):
                self.storage.insert("keys", "k1", {"value": 2})

        assert self.storage.load("things", "a") == {"v": 1}


class TestInMemoryStorage(StorageContract):

    def make_storage(self) -> StorageInterface:
        return InMemoryStorage()

    def test_loaded_records_are_copies(self):
        self.storage.save("things", "1", {"tags": ["a"]})
        loaded = self.storage.load("things", "1")
        loaded["tags"].append("b")

        assert self.storage.load("things", "1") == {"tags": ["a"]}

    def test_clear_table(self):
        self.storage.save("things", "1", {"v": 1})
        self.storage.clear_table("things")
        assert self.storage.count("things") == 0


class TestSQLiteStorage(StorageContract):

    def make_storage(self) -> StorageInterface:
        self.tmpdir = tempfile.TemporaryDirectory()
        return _sqlite_storage(self.tmpdir.name)

    def teardown_method(self):
        super().teardown_method()
        self.tmpdir.cleanup()

    def test_data_survives_reopen(self):
        with self.storage.atomic():
            self.storage.insert("things", "1", {"v": 1})
            self.storage.next_sequence("things")
        self.storage.close()

        reopened = _sqlite_storage(self.tmpdir.name)
        try:
            assert reopened.load("things", "1") == {"v": 1}
            assert reopened.next_sequence("things") == 2
        finally:
            reopened.close()

    def test_sequence_rolls_back_with_unit_of_work(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.next_sequence("ids")
                raise RuntimeError("boom")

        assert self.storage.next_sequence("ids") == 1


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = create_storage(f"sqlite:///{tmpdir}/ledger.db")
            try:
                assert isinstance(storage, SQLiteStorage)
                assert storage.db_path.endswith("ledger.db")
            finally:
                storage.close()

    def test_sqlite_in_memory_url(self):
        storage = create_storage("sqlite://")
        try:
            assert storage.db_path == ":memory:"
        finally:
            storage.close()

    def test_unknown_scheme(self):
        with pytest.raises(InvalidRequest):
            create_storage("mongodb://localhost")

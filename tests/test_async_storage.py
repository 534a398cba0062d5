"""
Tests for Async Storage Interface

Tests the thread-backed async wrapper and the storage URL factory.
"""

import pytest
import pytest_asyncio
from pathlib import Path

from bank_node.async_storage import (
    AsyncStorageInterface,
    ThreadedAsyncStorage,
    check_storage_url,
    create_async_storage,
    create_storage
)
from bank_node.storage import InMemoryStorage, SQLiteStorage, FileStorage


class TestThreadedAsyncStorage:
    """Test ThreadedAsyncStorage functionality"""

    @pytest_asyncio.fixture
    async def storage(self):
        """Create async in-memory storage instance"""
        storage = ThreadedAsyncStorage(InMemoryStorage())
        yield storage
        await storage.close()

    @pytest.mark.asyncio
    async def test_basic_crud_operations(self, storage):
        """Test basic CRUD operations"""
        table = "accounts"
        data = {"id": "12345", "owner": "10.0.0.1", "balance": "0"}

        # Test insert
        assert await storage.insert(table, "12345", data) is True
        assert await storage.insert(table, "12345", data) is False

        # Test load
        assert await storage.load(table, "12345") == data
        assert await storage.exists(table, "12345") is True
        assert await storage.exists(table, "54321") is False

        # Test save
        await storage.save(table, "12345", {**data, "balance": "10"})
        loaded = await storage.load(table, "12345")
        assert loaded["balance"] == "10"

        # Test count and load_all
        assert await storage.count(table) == 1
        assert len(await storage.load_all(table)) == 1

        # Test delete
        assert await storage.delete(table, "12345") is True
        assert await storage.load(table, "12345") is None
        assert await storage.count(table) == 0

    @pytest.mark.asyncio
    async def test_is_async_storage(self, storage):
        """Test the wrapper satisfies the async interface"""
        assert isinstance(storage, AsyncStorageInterface)


class TestStorageFactory:
    """Test storage URL parsing"""

    def test_memory_url(self):
        """Test memory:// selects the in-memory backend"""
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        """Test sqlite:// with an absolute path"""
        db_file = tmp_path / "bank.db"
        storage = create_storage(f"sqlite:///{db_file}")

        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == str(db_file)
        storage.close()

    def test_file_url(self, tmp_path):
        """Test file:// selects the directory backend"""
        storage = create_storage(f"file:///{tmp_path / 'accounts'}")

        assert isinstance(storage, FileStorage)
        assert storage.root == Path(tmp_path / "accounts")

    def test_relative_sqlite_url(self, tmp_path, monkeypatch):
        """Test three slashes mean a path relative to the working directory"""
        monkeypatch.chdir(tmp_path)
        storage = create_storage("sqlite:///data/bank.db")

        assert storage.db_path == "data/bank.db"
        assert (tmp_path / "data").is_dir()
        storage.close()

    def test_unsupported_url(self):
        """Test unknown schemes are rejected"""
        with pytest.raises(ValueError, match="Unsupported storage URL"):
            create_storage("postgresql://localhost/bank")

    def test_url_without_path(self):
        """Test a scheme without a path is rejected"""
        with pytest.raises(ValueError, match="no path"):
            create_storage("sqlite:///")

    def test_async_factory_wraps_backend(self):
        """Test create_async_storage returns a threaded wrapper"""
        storage = create_async_storage("memory://")

        assert isinstance(storage, ThreadedAsyncStorage)
        assert isinstance(storage.storage, InMemoryStorage)

    def test_check_storage_url(self):
        """Test URLs are validated without opening a backend"""
        assert check_storage_url("sqlite:///never/created.db") == "sqlite:///never/created.db"
        assert not Path("never").exists()

        with pytest.raises(ValueError, match="Unsupported storage URL"):
            check_storage_url("file://relative")
        with pytest.raises(ValueError, match="no path"):
            check_storage_url("file:///")

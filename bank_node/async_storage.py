"""
Async Storage Backend Module

Exposes the synchronous storage backends to asyncio code. Blocking backend
calls run in worker threads so a slow disk write never stalls other
connections.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
import asyncio

from .storage import StorageInterface, InMemoryStorage, SQLiteStorage, FileStorage


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Create or replace a record"""
        pass

    @abstractmethod
    async def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Create a record only if the id is free"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


class ThreadedAsyncStorage(AsyncStorageInterface):
    """Runs a synchronous backend's calls in the default thread pool"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.storage.save, table, record_id, data)

    async def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(self.storage.insert, table, record_id, data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.storage.load, table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.storage.load_all, table)

    async def exists(self, table: str, record_id: str) -> bool:
        return await asyncio.to_thread(self.storage.exists, table, record_id)

    async def delete(self, table: str, record_id: str) -> bool:
        return await asyncio.to_thread(self.storage.delete, table, record_id)

    async def count(self, table: str) -> int:
        return await asyncio.to_thread(self.storage.count, table)

    async def close(self) -> None:
        await asyncio.to_thread(self.storage.close)


def _url_path(url: str, scheme: str) -> str:
    # scheme:///relative/path or scheme:////absolute/path
    path = url[len(scheme) + 4:]
    if not path:
        raise ValueError(f"Storage URL has no path: {url!r}")
    return path


def check_storage_url(storage_url: str) -> str:
    """Return storage_url unchanged; raise ValueError unless it names a supported backend"""
    if storage_url == "memory://":
        return storage_url
    for scheme in ("sqlite", "file"):
        if storage_url.startswith(f"{scheme}:///"):
            _url_path(storage_url, scheme)
            return storage_url
    raise ValueError(f"Unsupported storage URL: {storage_url!r}")


def create_storage(storage_url: str) -> StorageInterface:
    """
    Create a synchronous backend from a storage URL.

    Supported forms: ``memory://``, ``sqlite:///<file>`` and
    ``file:///<directory>`` (three slashes for a relative path, four for an
    absolute one).
    """
    check_storage_url(storage_url)
    if storage_url.startswith("sqlite:///"):
        return SQLiteStorage(_url_path(storage_url, "sqlite"))
    if storage_url.startswith("file:///"):
        return FileStorage(_url_path(storage_url, "file"))
    return InMemoryStorage()


def create_async_storage(storage_url: str = "memory://") -> AsyncStorageInterface:
    """Factory function to create async storage instances"""
    return ThreadedAsyncStorage(create_storage(storage_url))

"""Snapshot Storage: tests for SQLite-backed and in-memory key-value storage.

Tests cover:
    - get/set/delete round trip and overwrite
    - Namespace isolation
    - Persistence across engine restarts
    - SQLAlchemy failures mapped to StorageError
"""

import pytest

from skillchain.core.errors import StorageError
from skillchain.infrastructure.snapshot_storage import (
    InMemorySnapshotStorage,
    SqlSnapshotStorage,
)


@pytest.fixture
async def sql_storage(tmp_path):
    storage = SqlSnapshotStorage(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    await storage.init()
    yield storage
    await storage.close()


async def test_missing_key_is_none(sql_storage):
    assert await sql_storage.get("absent") is None


async def test_set_then_get(sql_storage):
    await sql_storage.set("k", '{"a": 1}')
    assert await sql_storage.get("k") == '{"a": 1}'


async def test_set_overwrites(sql_storage):
    await sql_storage.set("k", "one")
    await sql_storage.set("k", "two")
    assert await sql_storage.get("k") == "two"


async def test_delete_removes_value(sql_storage):
    await sql_storage.set("k", "v")
    await sql_storage.delete("k")
    assert await sql_storage.get("k") is None


async def test_delete_missing_key_is_noop(sql_storage):
    await sql_storage.delete("never-set")


async def test_namespaces_are_isolated(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'shared.db'}"
    alice = SqlSnapshotStorage(url, namespace="alice")
    bob = SqlSnapshotStorage(url, namespace="bob")
    await alice.init()
    await bob.init()
    try:
        await alice.set("k", "alice-data")
        assert await bob.get("k") is None
    finally:
        await alice.close()
        await bob.close()


async def test_values_survive_restart(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"
    first = SqlSnapshotStorage(url)
    await first.init()
    await first.set("k", "persisted")
    await first.close()

    second = SqlSnapshotStorage(url)
    await second.init()
    try:
        assert await second.get("k") == "persisted"
    finally:
        await second.close()


async def test_uninitialized_table_raises_storage_error(tmp_path):
    storage = SqlSnapshotStorage(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    try:
        with pytest.raises(StorageError):
            await storage.get("k")
    finally:
        await storage.close()


async def test_in_memory_storage_contract():
    storage = InMemorySnapshotStorage(namespace="a")
    other = InMemorySnapshotStorage(namespace="b")
    await storage.set("k", "v")
    assert await storage.get("k") == "v"
    assert await other.get("k") is None
    await storage.delete("k")
    assert await storage.get("k") is None

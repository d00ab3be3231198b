import pytest

from cypher_mcp.storage import kv as kv_module
from cypher_mcp.storage.kv import MemoryKeyValueStore, RedisKeyValueStore, create_kv_store


@pytest.mark.asyncio
async def test_put_get_delete(kv):
    await kv.put("a", "1")
    assert await kv.get("a") == "1"
    await kv.delete("a")
    assert await kv.get("a") is None
    await kv.delete("a")


@pytest.mark.asyncio
async def test_ttl_is_honoured(kv, clock):
    await kv.put("a", "1", ttl_seconds=10)
    clock.advance(9)
    assert await kv.get("a") == "1"
    clock.advance(1)
    assert await kv.get("a") is None


@pytest.mark.asyncio
async def test_list_pages_by_prefix(kv, monkeypatch):
    monkeypatch.setattr(kv_module, "LIST_PAGE_SIZE", 2)
    for i in range(5):
        await kv.put(f"session:{i}", "x")
    await kv.put("rate:ignored", "x")

    keys, cursor = [], None
    while True:
        page = await kv.list("session:", cursor)
        keys.extend(page.keys)
        cursor = page.cursor
        if cursor is None:
            break
    assert keys == [f"session:{i}" for i in range(5)]


def test_create_kv_store_by_scheme():
    assert isinstance(create_kv_store("memory://"), MemoryKeyValueStore)
    assert isinstance(create_kv_store("redis://localhost:6379/0"), RedisKeyValueStore)
    with pytest.raises(ValueError):
        create_kv_store("cassandra://nope")

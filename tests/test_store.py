import asyncio
import json

import pytest

from dpiwarden.core.errors import StoreError
from dpiwarden.storage.store import PersistentStore


@pytest.mark.asyncio
async def test_set_then_get_round_trips_through_disk(tmp_path):
    store = PersistentStore(tmp_path / "settings")

    await store.set("port", "8008")
    await store.set("startup.scripts", {"before": "echo hi", "after": ""})

    assert await store.get("port") == "8008"
    assert json.loads((tmp_path / "settings").read_text()) == [
        ["port", "8008"],
        ["startup.scripts", {"before": "echo hi", "after": ""}],
    ]
    store.close()


@pytest.mark.asyncio
async def test_get_after_idle_unload_reloads_from_disk(tmp_path):
    store = PersistentStore(tmp_path / "lists", unload_after=0.01)

    await store.set("rulist", {"syncUrl": "https://example.com/rulist.txt"})
    await asyncio.sleep(0.05)

    assert store.is_loaded is False
    assert await store.get("rulist") == {"syncUrl": "https://example.com/rulist.txt"}
    assert store.is_loaded is True
    store.close()


@pytest.mark.asyncio
async def test_access_reschedules_unload(tmp_path):
    store = PersistentStore(tmp_path / "lua", unload_after=0.2)
    await store.set("a", 1)

    for _ in range(3):
        await asyncio.sleep(0.1)
        await store.get("a")

    assert store.is_loaded is True
    store.close()


@pytest.mark.asyncio
async def test_get_returns_a_copy(tmp_path):
    store = PersistentStore(tmp_path / "settings")
    await store.set("startup.scripts", {"before": ""})

    value = await store.get("startup.scripts")
    value["before"] = "changed"

    assert await store.get("startup.scripts") == {"before": ""}
    store.close()


@pytest.mark.asyncio
async def test_delete_reports_presence(tmp_path):
    store = PersistentStore(tmp_path / "blobs")
    await store.set("fake", {"active": True})

    assert await store.delete("fake") is True
    assert await store.delete("fake") is False
    assert await store.get_all() == {}
    store.close()


@pytest.mark.asyncio
async def test_missing_file_reads_as_empty(tmp_path):
    store = PersistentStore(tmp_path / "profiles")

    assert store.exists() is False
    assert await store.get("anything", "default") == "default"
    assert store.exists() is False
    store.close()


@pytest.mark.asyncio
async def test_replace_all_keeps_given_order(tmp_path):
    store = PersistentStore(tmp_path / "profiles")
    await store.set("a", 1)
    await store.set("b", 2)

    await store.replace_all([("b", 2), ("a", 1), ("c", 3)])

    assert list((await store.get_all()).keys()) == ["b", "a", "c"]
    await store.load(force=True)
    assert list((await store.get_all()).keys()) == ["b", "a", "c"]
    store.close()


@pytest.mark.asyncio
async def test_malformed_file_raises_store_error(tmp_path):
    (tmp_path / "settings").write_text('{"not": "pairs"}')
    store = PersistentStore(tmp_path / "settings")

    with pytest.raises(StoreError):
        await store.get("port")


@pytest.mark.asyncio
async def test_invalid_json_raises_store_error(tmp_path):
    (tmp_path / "settings").write_text("[[\"port\", ")
    store = PersistentStore(tmp_path / "settings")

    with pytest.raises(StoreError) as exc_info:
        await store.get_all()

    assert exc_info.value.code == "STORE_ERROR"

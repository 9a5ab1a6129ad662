"""Tests for the document store backends."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from wabot.errors import StoreError
from wabot.store import JsonFileStore, MemoryStore, open_store


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_put_get_delete(self) -> None:
        store = MemoryStore()
        await store.put("plugins", "a.py", {"enabled": True})
        assert await store.get("plugins", "a.py") == {"enabled": True}
        assert await store.get("plugins", "b.py") is None
        assert await store.all("plugins") == {"a.py": {"enabled": True}}
        assert await store.delete("plugins", "a.py") is True
        assert await store.delete("plugins", "a.py") is False
        assert await store.all("plugins") == {}

    @pytest.mark.asyncio
    async def test_documents_are_copied(self) -> None:
        store = MemoryStore()
        doc = {"counts": {"x": 1}}
        await store.put("c", "k", doc)
        doc["counts"]["x"] = 99
        fetched = await store.get("c", "k")
        fetched["counts"]["x"] = 50
        assert (await store.get("c", "k"))["counts"]["x"] == 1

    @pytest.mark.asyncio
    async def test_write_failure(self) -> None:
        store = MemoryStore()
        await store.put("c", "k", {"v": 1})
        store.fail_writes = True
        with pytest.raises(StoreError):
            await store.put("c", "k", {"v": 2})
        assert await store.ping() is False
        assert await store.get("c", "k") == {"v": 1}


# ---------------------------------------------------------------------------
# JsonFileStore
# ---------------------------------------------------------------------------

class TestJsonFileStore:
    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path / "db")
        await store.put("plugin_state", "ping.py", {"enabled": False, "crashes": 2})
        await store.put("plugin_state", "menu.py", {"enabled": True})

        reopened = JsonFileStore(tmp_path / "db")
        assert await reopened.get("plugin_state", "ping.py") == {"enabled": False, "crashes": 2}
        assert set(await reopened.all("plugin_state")) == {"ping.py", "menu.py"}

        on_disk = json.loads((tmp_path / "db" / "plugin_state.json").read_text())
        assert on_disk["menu.py"] == {"enabled": True}
        assert not list((tmp_path / "db").glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path)
        await store.put("c", "k", {"v": 1})
        assert await store.delete("c", "k") is True
        assert await store.delete("c", "k") is False
        assert await JsonFileStore(tmp_path).get("c", "k") is None

    @pytest.mark.asyncio
    async def test_corrupt_collection_raises(self, tmp_path: Path) -> None:
        (tmp_path / "c.json").write_text("{broken")
        store = JsonFileStore(tmp_path)
        with pytest.raises(StoreError, match="cannot read"):
            await store.get("c", "k")

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_state(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        store = JsonFileStore(tmp_path)
        await store.put("c", "k", {"v": 1})

        def _broken(collection, data):
            raise OSError("disk full")

        monkeypatch.setattr(store, "_write", _broken)
        with pytest.raises(StoreError, match="disk full"):
            await store.put("c", "k", {"v": 2})
        assert await store.get("c", "k") == {"v": 1}

    @pytest.mark.asyncio
    async def test_ping(self, tmp_path: Path) -> None:
        assert await JsonFileStore(tmp_path / "new").ping() is True
        assert (tmp_path / "new").is_dir()


class TestOpenStore:
    def test_memory(self) -> None:
        assert isinstance(open_store("memory://", "bot"), MemoryStore)

    def test_file_relative_to_root(self, tmp_path: Path) -> None:
        store = open_store("file://data", "bot", root=tmp_path)
        assert isinstance(store, JsonFileStore)
        assert store._dir == tmp_path / "data" / "bot"

    def test_unsupported(self) -> None:
        with pytest.raises(StoreError):
            open_store("mongodb://localhost", "bot")

"""Tests for PluginRegistry: discovery, command map, persisted state."""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import PING_PLUGIN

from wabot.config import BotConfig
from wabot.errors import PluginLoadError, StoreError, UnknownPluginError
from wabot.plugins import PLUGIN_STATE, PluginRegistry, build_descriptor, discover
from wabot.store import MemoryStore
from wabot.tasks import TaskScheduler

ECHO_PLUGIN = '''
info = {"name": "Echo", "version": "2.0.0", "commands": ["echo"], "category": "fun"}


async def run(ctx):
    await ctx.reply(ctx.text)
'''


def _registry(config: BotConfig, store: MemoryStore) -> PluginRegistry:
    return PluginRegistry(config.plugins_path, store, config)


def _command_plugin(name: str, command: str, priority: int = 0) -> str:
    return f'''
info = {{"name": "{name}", "version": "1.0.0", "commands": ["{command}"], "priority": {priority}}}


async def run(ctx):
    await ctx.reply("{name}")
'''


# ---------------------------------------------------------------------------
# Discovery and descriptors
# ---------------------------------------------------------------------------

class TestDiscovery:
    def test_sorted_and_skips_private(self, tmp_path: Path) -> None:
        for name in ("b.py", "a.py", "_helper.py", ".hidden.py", "notes.txt"):
            (tmp_path / name).write_text("")
        assert [p.name for p in discover(tmp_path)] == ["a.py", "b.py"]

    def test_missing_directory(self, tmp_path: Path) -> None:
        assert discover(tmp_path / "absent") == []

    def test_descriptor_from_snake_or_camel_keys(self) -> None:
        class Unit:
            info = {
                "name": " Tools ",
                "commands": ["Kick", "ban"],
                "aliases": ["k", "ban"],
                "ownerOnly": True,
                "priority": "3",
                "scheduledTasks": [
                    {"name": "sweep", "schedule": "*/5 * * * *", "handler": lambda ctx: None},
                    {"name": "broken", "schedule": "* * * * *"},
                ],
            }

            @staticmethod
            async def run(ctx):
                return None

            @staticmethod
            async def on_message(ctx):
                return None

        desc = build_descriptor("tools.py", Unit)
        assert desc.name == "Tools"
        assert desc.version == "1.0.0"
        assert desc.commands == {"kick", "ban"}
        assert desc.aliases == {"k"}
        assert desc.owner_only is True
        assert desc.priority == 3
        assert [t.name for t in desc.scheduled_tasks] == ["sweep"]
        assert set(desc.listeners) == {"on_message"}


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoad:
    @pytest.mark.asyncio
    async def test_load_builds_command_map(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        plugin_dir("echo.py", ECHO_PLUGIN)
        registry = _registry(config, store)

        assert await registry.load() == 2
        assert registry.command_map == {"echo": "echo.py", "ping": "ping.py", "p": "ping.py"}
        assert registry.resolve("PING").filename == "ping.py"
        assert registry.resolve("nope") is None

        docs = await store.all(PLUGIN_STATE)
        assert set(docs) == {"echo.py", "ping.py"}
        assert docs["ping.py"]["schema_version"] == 1
        assert docs["ping.py"]["enabled"] is True

    @pytest.mark.asyncio
    async def test_invalid_units_are_skipped(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        plugin_dir("no_info.py", "async def run(ctx):\n    pass\n")
        plugin_dir("no_name.py", 'info = {"commands": ["x"]}\nasync def run(ctx):\n    pass\n')
        plugin_dir("no_entry.py", 'info = {"name": "X", "commands": ["x"]}\n')
        plugin_dir("syntax.py", "def broken(:\n")
        plugin_dir("raises.py", "raise RuntimeError('import time failure')\n")
        registry = _registry(config, store)

        assert await registry.load() == 1
        assert set(registry.load_errors) == {"no_info.py", "no_name.py", "no_entry.py", "syntax.py", "raises.py"}
        assert registry.command_map == {"ping": "ping.py", "p": "ping.py"}

    @pytest.mark.asyncio
    async def test_tie_goes_to_later_plugin(self, config, store, plugin_dir) -> None:
        plugin_dir("a_first.py", _command_plugin("First", "hello"))
        plugin_dir("b_second.py", _command_plugin("Second", "hello"))
        registry = _registry(config, store)
        await registry.load()
        assert registry.command_map["hello"] == "b_second.py"

    @pytest.mark.asyncio
    async def test_priority_beats_load_order(self, config, store, plugin_dir) -> None:
        plugin_dir("a_high.py", _command_plugin("High", "hello", priority=5))
        plugin_dir("b_low.py", _command_plugin("Low", "hello"))
        registry = _registry(config, store)
        await registry.load()
        assert registry.command_map["hello"] == "a_high.py"

    @pytest.mark.asyncio
    async def test_disabled_plugin_yields_its_commands(self, config, store, plugin_dir) -> None:
        plugin_dir("a_first.py", _command_plugin("First", "hello"))
        plugin_dir("b_second.py", _command_plugin("Second", "hello"))
        registry = _registry(config, store)
        await registry.load()
        await registry.disable("b_second.py")
        assert registry.command_map["hello"] == "a_first.py"

    @pytest.mark.asyncio
    async def test_reload_is_idempotent(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        registry = _registry(config, store)
        await registry.load()
        await registry.record_execution("ping.py", 12.0)
        before = (registry.command_map, (await store.all(PLUGIN_STATE))["ping.py"]["executions"])

        await registry.load()
        await registry.load()
        after = (registry.command_map, (await store.all(PLUGIN_STATE))["ping.py"]["executions"])
        assert before == after
        assert registry.state("ping.py").executions == 1

    @pytest.mark.asyncio
    async def test_force_reload_keeps_disabled_and_picks_up_changes(self, config, store, plugin_dir) -> None:
        plugin_dir("echo.py", ECHO_PLUGIN)
        registry = _registry(config, store)
        await registry.load()
        await registry.disable("echo.py")

        plugin_dir("echo.py", ECHO_PLUGIN.replace('["echo"]', '["echo", "say"]'))
        await registry.force_reload()

        assert registry.is_enabled("echo.py") is False
        assert registry.get("echo.py").commands == {"echo", "say"}
        assert "say" not in registry.command_map

        await registry.enable("echo.py")
        assert registry.command_map["say"] == "echo.py"

    @pytest.mark.asyncio
    async def test_legacy_state_is_migrated(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        await store.put(PLUGIN_STATE, "ping.py", {
            "_id": "65a1",
            "filename": "ping.py",
            "enabled": False,
            "errors": 2,
            "executions": 7,
            "totalExecutionTime": 70.0,
            "lastError": "TypeError: boom",
        })
        registry = _registry(config, store)
        await registry.load()

        state = registry.state("ping.py")
        assert state.enabled is False
        assert state.crashes == 2
        assert state.avg_execution_time == 10.0
        assert state.last_error == "TypeError: boom"
        doc = await store.get(PLUGIN_STATE, "ping.py")
        assert doc["schema_version"] == 1
        assert doc["crashes"] == 2
        assert "_id" not in doc
        assert "errors" not in doc

    @pytest.mark.asyncio
    async def test_unflushed_state_survives_until_store_recovers(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        store.fail_writes = True
        registry = _registry(config, store)

        assert await registry.load() == 1
        assert registry.pending_writes == 1
        assert registry.resolve("ping") is not None

        store.fail_writes = False
        await registry.flush()
        assert registry.pending_writes == 0
        assert await store.get(PLUGIN_STATE, "ping.py") is not None


# ---------------------------------------------------------------------------
# Enable / disable
# ---------------------------------------------------------------------------

class TestEnableDisable:
    @pytest.mark.asyncio
    async def test_disable_enable_round(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        registry = _registry(config, store)
        await registry.load()

        assert await registry.disable("ping.py", "maintenance") is True
        assert registry.resolve("ping") is None
        assert await registry.disable("ping.py") is False
        doc = await store.get(PLUGIN_STATE, "ping.py")
        assert doc["enabled"] is False
        assert doc["disabled_reason"] == "maintenance"

        assert await registry.enable("ping.py") is True
        assert await registry.enable("ping.py") is False
        assert registry.resolve("p").filename == "ping.py"
        assert (await store.get(PLUGIN_STATE, "ping.py"))["enabled"] is True

    @pytest.mark.asyncio
    async def test_unknown_plugin(self, config, store) -> None:
        registry = _registry(config, store)
        await registry.load()
        with pytest.raises(UnknownPluginError):
            await registry.disable("ghost.py")
        with pytest.raises(KeyError):
            await registry.enable("ghost.py")

    @pytest.mark.asyncio
    async def test_store_failure_rolls_back(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        registry = _registry(config, store)
        await registry.load()

        store.fail_writes = True
        with pytest.raises(StoreError):
            await registry.disable("ping.py")
        assert registry.is_enabled("ping.py") is True
        assert registry.resolve("ping") is not None

        store.fail_writes = False
        await registry.disable("ping.py")
        store.fail_writes = True
        with pytest.raises(StoreError):
            await registry.enable("ping.py")
        assert registry.is_enabled("ping.py") is False
        assert registry.resolve("ping") is None


# ---------------------------------------------------------------------------
# Crash accounting
# ---------------------------------------------------------------------------

class TestCrashAccounting:
    @pytest.mark.asyncio
    async def test_auto_disable_at_threshold(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        registry = _registry(config, store)
        await registry.load()

        await registry.record_execution("ping.py", 5.0, "ValueError: one")
        await registry.record_execution("ping.py", 5.0, "ValueError: two")
        assert registry.is_enabled("ping.py") is True

        state = await registry.record_execution("ping.py", 5.0, "ValueError: three")
        assert state.enabled is False
        assert state.crashes == 3
        assert "auto-disabled" in state.disabled_reason
        assert registry.resolve("ping") is None
        assert (await store.get(PLUGIN_STATE, "ping.py"))["enabled"] is False

        report = registry.health_check()
        assert report.healthy is False
        assert report.critical_issues == 1

    @pytest.mark.asyncio
    async def test_enable_resets_crashes_at_threshold(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        registry = _registry(config, store)
        await registry.load()
        for n in range(3):
            await registry.record_execution("ping.py", 1.0, f"boom {n}")

        await registry.enable("ping.py")
        assert registry.state("ping.py").crashes == 0
        assert registry.state("ping.py").last_error == "boom 2"

    @pytest.mark.asyncio
    async def test_successes_do_not_reset_crashes(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        registry = _registry(config, store)
        await registry.load()
        await registry.record_execution("ping.py", 1.0, "boom")
        await registry.record_execution("ping.py", 3.0)
        state = registry.state("ping.py")
        assert state.crashes == 1
        assert state.executions == 2
        assert state.avg_execution_time == 2.0

    @pytest.mark.asyncio
    async def test_stats(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        plugin_dir("echo.py", ECHO_PLUGIN)
        registry = _registry(config, store)
        await registry.load()
        await registry.disable("echo.py")
        await registry.record_execution("ping.py", 10.0)

        stats = registry.stats()
        assert (stats.total, stats.enabled, stats.disabled, stats.commands) == (2, 1, 1, 2)
        assert stats.executions == 1
        described = {d["filename"]: d for d in registry.describe()}
        assert described["echo.py"]["state"]["enabled"] is False
        assert described["ping.py"]["aliases"] == ["p"]


# ---------------------------------------------------------------------------
# Single-plugin reload
# ---------------------------------------------------------------------------

def _task_plugin(name: str, task: str) -> str:
    return f'''
async def job(ctx):
    pass


info = {{
    "name": "{name}",
    "version": "1.0.0",
    "commands": ["{name.lower()}"],
    "scheduledTasks": [{{"name": "{task}", "schedule": "0 * * * *", "handler": job}}],
}}


async def run(ctx):
    pass
'''


class TestSingleReload:
    @pytest.mark.asyncio
    async def test_picks_up_changes_and_keeps_state(self, config, store, plugin_dir) -> None:
        plugin_dir("echo.py", ECHO_PLUGIN)
        plugin_dir("ping.py", PING_PLUGIN)
        registry = _registry(config, store)
        await registry.load()
        await registry.record_execution("echo.py", 8.0)
        ping = registry.get("ping.py")

        plugin_dir("echo.py", ECHO_PLUGIN.replace('["echo"]', '["echo", "say"]'))
        descriptor = await registry.reload("echo.py")

        assert descriptor.commands == {"echo", "say"}
        assert registry.command_map["say"] == "echo.py"
        assert registry.state("echo.py").executions == 1
        assert registry.get("ping.py") is ping
        assert [d.filename for d in registry.descriptors()] == ["echo.py", "ping.py"]

    @pytest.mark.asyncio
    async def test_broken_edit_keeps_previous_version(self, config, store, plugin_dir) -> None:
        plugin_dir("echo.py", ECHO_PLUGIN)
        registry = _registry(config, store)
        await registry.load()

        plugin_dir("echo.py", "info = {\n")
        with pytest.raises(PluginLoadError):
            await registry.reload("echo.py")
        assert registry.resolve("echo") is not None
        assert "echo.py" in registry.load_errors

        plugin_dir("echo.py", ECHO_PLUGIN)
        await registry.reload("echo.py")
        assert registry.load_errors == {}

    @pytest.mark.asyncio
    async def test_new_file_and_unknown_names(self, config, store, plugin_dir) -> None:
        plugin_dir("ping.py", PING_PLUGIN)
        registry = _registry(config, store)
        await registry.load()

        plugin_dir("echo.py", ECHO_PLUGIN)
        await registry.reload("echo.py")
        assert registry.resolve("echo").filename == "echo.py"
        assert (await store.get(PLUGIN_STATE, "echo.py"))["enabled"] is True

        for name in ("ghost.py", "../ping.py", "ping.txt"):
            with pytest.raises(UnknownPluginError):
                await registry.reload(name)

    @pytest.mark.asyncio
    async def test_only_its_own_tasks_are_rescheduled(self, config, store, plugin_dir) -> None:
        plugin_dir("alpha.py", _task_plugin("Alpha", "first"))
        plugin_dir("beta.py", _task_plugin("Beta", "nightly"))
        scheduler = TaskScheduler(store, config)
        registry = PluginRegistry(config.plugins_path, store, config, scheduler)
        await registry.load()
        try:
            beta_handle = scheduler._handles["beta.py:nightly"]

            plugin_dir("alpha.py", _task_plugin("Alpha", "second"))
            await registry.reload("alpha.py")

            assert scheduler.get("alpha.py:first") is None
            assert scheduler.is_running("alpha.py:second")
            assert scheduler._handles["beta.py:nightly"] is beta_handle
            assert not beta_handle.done()
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_disabled_plugin_stays_disabled(self, config, store, plugin_dir) -> None:
        plugin_dir("alpha.py", _task_plugin("Alpha", "first"))
        scheduler = TaskScheduler(store, config)
        registry = PluginRegistry(config.plugins_path, store, config, scheduler)
        await registry.load()
        try:
            await registry.disable("alpha.py")
            await registry.reload("alpha.py")
            assert registry.is_enabled("alpha.py") is False
            assert registry.resolve("alpha") is None
            assert scheduler.running_ids() == []
        finally:
            await scheduler.stop()

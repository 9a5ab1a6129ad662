"""PluginRegistry -- discovery, descriptor validation, command map, persisted state.

A plugin unit is a Python file in the plugins directory exposing:

    info = {
        "name": "Basic", "version": "1.0.0",
        "commands": ["ping"], "aliases": ["p"],
        "category": "utility", "ownerOnly": False, "priority": 0,
        "scheduledTasks": [{"name": "tick", "schedule": "*/5 * * * *", "handler": tick}],
    }

    async def run(ctx): ...

Keys may be camelCase or snake_case. `info["entry_point"]` overrides `run`.
Optional module-level listeners: on_message, on_group_update, on_group_participants.
"""

from __future__ import annotations

import asyncio
import dataclasses
import importlib.util
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wabot.config import _convert_keys
from wabot.errors import PluginLoadError, StoreError, UnknownPluginError
from wabot.log import logger
from wabot.metrics import (
    HealthReport,
    PluginStats,
    RegistryStats,
    aggregate_plugin_stats,
    assess_health,
    compute_plugin_stats,
)
from wabot.types import PluginDescriptor, PluginState, TaskSpec, migrate_document, utcnow

if TYPE_CHECKING:
    from wabot.store import DocumentStore
    from wabot.tasks import TaskScheduler

PLUGIN_STATE = "plugin_state"
LISTENER_NAMES = ("on_message", "on_group_update", "on_group_participants")
DEFAULT_VERSION = "1.0.0"


def discover(plugins_dir: Path) -> list[Path]:
    """Plugin files in deterministic (sorted) order; `_`/`.` prefixed files are skipped."""
    if not plugins_dir.is_dir():
        return []
    return sorted(
        p for p in plugins_dir.glob("*.py")
        if p.is_file() and not p.name.startswith(("_", "."))
    )


def import_unit(path: Path) -> Any:
    """Execute a plugin file as a fresh module. Every call re-reads the source."""
    module_name = f"wabot_plugins.{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise PluginLoadError(f"{path.name}: not importable")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise PluginLoadError(f"{path.name}: import failed: {e!r}") from e
    return module


def _tokens(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        return []
    return [str(v).strip().lower() for v in value if str(v).strip()]


def _task_specs(filename: str, raw_tasks: Any) -> tuple[TaskSpec, ...]:
    specs: list[TaskSpec] = []
    seen: set[str] = set()
    for raw in raw_tasks or []:
        if not isinstance(raw, dict):
            logger.warning(f"{filename}: scheduled task entry is not a mapping, skipped")
            continue
        name, schedule, handler = raw.get("name"), raw.get("schedule"), raw.get("handler")
        if not name or not isinstance(schedule, str) or not callable(handler):
            logger.warning(f"{filename}: scheduled task {name or '?'} needs name, schedule and handler")
            continue
        if name in seen:
            logger.warning(f"{filename}: duplicate scheduled task '{name}' skipped")
            continue
        seen.add(name)
        specs.append(TaskSpec(
            name=str(name),
            schedule=schedule.strip(),
            handler=handler,
            description=str(raw.get("description", "")),
        ))
    return tuple(specs)


def build_descriptor(filename: str, module: Any) -> PluginDescriptor:
    """Extract and validate the descriptor of an imported plugin module."""
    info = getattr(module, "info", None)
    if not isinstance(info, dict):
        raise PluginLoadError(f"{filename}: missing `info` mapping")
    info = _convert_keys(info)

    name = info.get("name")
    if not isinstance(name, str) or not name.strip():
        raise PluginLoadError(f"{filename}: `name` is required")

    entry_point = info.get("entry_point") or getattr(module, "run", None)
    if not callable(entry_point):
        raise PluginLoadError(f"{filename}: no callable entry point")

    version = info.get("version")
    if not version:
        logger.warning(f"{filename}: no version declared, assuming {DEFAULT_VERSION}")
        version = DEFAULT_VERSION

    commands = _tokens(info.get("commands"))
    if not commands:
        logger.warning(f"{filename}: declares no commands")
    aliases = _tokens(info.get("aliases"))
    overlap = set(commands) & set(aliases)
    if overlap:
        logger.warning(f"{filename}: aliases {sorted(overlap)} duplicate commands, dropped")
        aliases = [a for a in aliases if a not in overlap]

    try:
        priority = int(info.get("priority", 0) or 0)
    except (TypeError, ValueError):
        logger.warning(f"{filename}: priority must be an integer, using 0")
        priority = 0

    listeners = {
        n: getattr(module, n) for n in LISTENER_NAMES if callable(getattr(module, n, None))
    }

    return PluginDescriptor(
        filename=filename,
        name=name.strip(),
        version=str(version),
        entry_point=entry_point,
        author=str(info.get("author", "Unknown")),
        description=str(info.get("description", "")),
        category=str(info.get("category", "general")),
        commands=frozenset(commands),
        aliases=frozenset(aliases),
        scheduled_tasks=_task_specs(filename, info.get("scheduled_tasks")),
        owner_only=bool(info.get("owner_only", False)),
        priority=priority,
        listeners=listeners,
    )


class PluginRegistry:
    """Loaded plugins, their persisted state and the command map.

    Every mutation of descriptors, states or the command map runs under one
    asyncio.Lock, one plugin at a time. The command map is derived: it is
    rebuilt from the enabled descriptors in load order after each change.
    """

    def __init__(
        self,
        plugins_dir: Path,
        store: DocumentStore,
        config: Any,
        scheduler: TaskScheduler | None = None,
    ) -> None:
        self.plugins_dir = plugins_dir
        self._store = store
        self._config = config
        self.scheduler = scheduler
        self._descriptors: dict[str, PluginDescriptor] = {}
        self._states: dict[str, PluginState] = {}
        self._command_map: dict[str, str] = {}
        self._dirty: set[str] = set()
        self._load_errors: dict[str, str] = {}
        self._lock = asyncio.Lock()

    # ---- read side ----

    @property
    def command_map(self) -> dict[str, str]:
        return dict(self._command_map)

    @property
    def load_errors(self) -> dict[str, str]:
        return dict(self._load_errors)

    def descriptors(self) -> list[PluginDescriptor]:
        return list(self._descriptors.values())

    def get(self, filename: str) -> PluginDescriptor | None:
        return self._descriptors.get(filename)

    def state(self, filename: str) -> PluginState | None:
        return self._states.get(filename)

    def is_enabled(self, filename: str) -> bool:
        state = self._states.get(filename)
        return bool(state and state.enabled)

    def resolve(self, command: str) -> PluginDescriptor | None:
        filename = self._command_map.get(command.lower())
        if filename is None or not self.is_enabled(filename):
            return None
        return self._descriptors.get(filename)

    def listeners_for(self, kind: str) -> list[PluginDescriptor]:
        return [
            d for f, d in self._descriptors.items()
            if kind in d.listeners and self.is_enabled(f)
        ]

    # ---- load ----

    async def load(self, force_reload: bool = False) -> int:
        """(Re)load every unit from disk. Returns the number of loaded plugins."""
        async with self._lock:
            if self.scheduler is not None:
                await self.scheduler.clear()
            # Unflushed rows are newer than the store copy
            pending = {f: self._states[f] for f in self._dirty if f in self._states}
            self._descriptors.clear()
            self._states.clear()
            self._command_map.clear()
            self._load_errors.clear()

            persisted = await self._read_states()
            persisted.update(pending)
            files = await asyncio.to_thread(discover, self.plugins_dir)
            for path in files:
                try:
                    descriptor = build_descriptor(path.name, import_unit(path))
                except PluginLoadError as e:
                    logger.warning(f"Skipping plugin {e}")
                    self._load_errors[path.name] = str(e)
                    continue
                state = persisted.get(path.name)
                if state is None:
                    state = PluginState(filename=path.name)
                    self._dirty.add(path.name)
                self._descriptors[path.name] = descriptor
                self._states[path.name] = state

            self._rebuild_command_map()
            await self._flush_dirty()

            if self.scheduler is not None:
                for filename, descriptor in self._descriptors.items():
                    if descriptor.scheduled_tasks and self._states[filename].enabled:
                        await self.scheduler.register_plugin(descriptor)

            enabled = sum(1 for s in self._states.values() if s.enabled)
            verb = "Reloaded" if force_reload else "Loaded"
            logger.info(
                f"{verb} {len(self._descriptors)} plugins ({enabled} enabled, "
                f"{len(self._command_map)} commands, {len(self._load_errors)} skipped)"
            )
            return len(self._descriptors)

    async def force_reload(self) -> int:
        return await self.load(force_reload=True)

    async def reload(self, filename: str) -> PluginDescriptor:
        """Re-import one unit from disk, keeping its state and every other plugin untouched.

        A file that was not loaded before is picked up as a new plugin. If the
        import fails the previous registration stays in place.
        """
        path = self.plugins_dir / filename
        if Path(filename).name != filename or path.suffix != ".py" or filename.startswith(("_", ".")):
            raise UnknownPluginError(filename)
        async with self._lock:
            if not await asyncio.to_thread(path.is_file):
                raise UnknownPluginError(filename)
            try:
                descriptor = build_descriptor(filename, import_unit(path))
            except PluginLoadError as e:
                logger.warning(f"Reload of {filename} failed, keeping previous version: {e}")
                self._load_errors[filename] = str(e)
                raise

            self._load_errors.pop(filename, None)
            state = self._states.get(filename)
            if state is None:
                state = await self._read_state(filename)
            self._descriptors[filename] = descriptor
            self._descriptors = dict(sorted(self._descriptors.items()))
            self._states[filename] = state
            self._rebuild_command_map()
            await self._flush_dirty()

            if self.scheduler is not None:
                await self.scheduler.remove_plugin(filename)
                if descriptor.scheduled_tasks and state.enabled:
                    await self.scheduler.register_plugin(descriptor)
            logger.info(
                f"Reloaded plugin {filename} (v{descriptor.version}, "
                f"{len(descriptor.tokens)} commands, {len(descriptor.scheduled_tasks)} tasks)"
            )
            return descriptor

    async def _read_state(self, filename: str) -> PluginState:
        try:
            doc = await self._store.get(PLUGIN_STATE, filename)
        except StoreError as e:
            logger.error(f"Plugin state for {filename} unavailable, using defaults: {e}")
            doc = None
        if doc is not None:
            try:
                return PluginState.from_doc({"filename": filename, **doc})
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring unreadable plugin state '{filename}': {e}")
        self._dirty.add(filename)
        return PluginState(filename=filename)

    async def _read_states(self) -> dict[str, PluginState]:
        try:
            docs = await self._store.all(PLUGIN_STATE)
        except StoreError as e:
            logger.error(f"Plugin state unavailable, starting from defaults: {e}")
            return {}
        states: dict[str, PluginState] = {}
        for key, doc in docs.items():
            try:
                state = PluginState.from_doc({"filename": key, **doc})
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring unreadable plugin state '{key}': {e}")
                continue
            if migrate_document(doc) != doc:
                self._dirty.add(key)
            states[key] = state
        return states

    def _rebuild_command_map(self) -> None:
        """Enabled plugins in load order; higher priority wins, ties go to the later plugin."""
        cmap: dict[str, str] = {}
        for filename, descriptor in self._descriptors.items():
            if not self._states[filename].enabled:
                continue
            for token in sorted(descriptor.tokens):
                owner = cmap.get(token)
                if owner is not None:
                    incumbent = self._descriptors[owner]
                    if incumbent.priority > descriptor.priority:
                        logger.warning(
                            f"Command '{token}' of {filename} ignored: {owner} has higher priority"
                        )
                        continue
                    logger.warning(f"Command conflict on '{token}': {filename} overrides {owner}")
                cmap[token] = filename
        self._command_map = cmap

    # ---- enable / disable ----

    def _require(self, filename: str) -> tuple[PluginDescriptor, PluginState]:
        descriptor = self._descriptors.get(filename)
        if descriptor is None:
            raise UnknownPluginError(filename)
        return descriptor, self._states[filename]

    async def enable(self, filename: str) -> bool:
        """Re-enable a plugin. Returns False if it was already enabled."""
        async with self._lock:
            descriptor, state = self._require(filename)
            if state.enabled:
                return False
            previous = dataclasses.replace(state)
            state.enabled = True
            state.disabled_reason = ""
            if state.crashes >= self._config.crash_threshold:
                state.crashes = 0
            state.updated_at = utcnow()
            self._rebuild_command_map()
            try:
                await self._store.put(PLUGIN_STATE, filename, state.to_doc())
            except StoreError:
                self._states[filename] = previous
                self._rebuild_command_map()
                raise
            self._dirty.discard(filename)
            if self.scheduler is not None and descriptor.scheduled_tasks:
                await self.scheduler.register_plugin(descriptor, reset_failures=True)
            logger.info(f"Plugin {filename} enabled")
            return True

    async def disable(self, filename: str, reason: str = "disabled by admin") -> bool:
        """Deregister commands and tasks, then persist. Returns False if already disabled."""
        async with self._lock:
            descriptor, state = self._require(filename)
            if not state.enabled:
                return False
            previous = dataclasses.replace(state)
            state.enabled = False
            state.disabled_reason = reason
            state.updated_at = utcnow()
            self._rebuild_command_map()
            if self.scheduler is not None:
                await self.scheduler.stop_plugin_tasks(filename)
            try:
                await self._store.put(PLUGIN_STATE, filename, state.to_doc())
            except StoreError:
                self._states[filename] = previous
                self._rebuild_command_map()
                if self.scheduler is not None and descriptor.scheduled_tasks:
                    await self.scheduler.register_plugin(descriptor)
                raise
            self._dirty.discard(filename)
            logger.info(f"Plugin {filename} disabled: {reason}")
            return True

    # ---- execution bookkeeping ----

    async def record_execution(self, filename: str, elapsed_ms: float, error: str | None = None) -> PluginState | None:
        """Account one handler run; auto-disable at the crash threshold."""
        async with self._lock:
            state = self._states.get(filename)
            if state is None:
                return None
            now = utcnow()
            state.executions += 1
            state.total_execution_time += max(elapsed_ms, 0.0)
            state.last_execution = now
            state.updated_at = now
            if error is not None:
                state.crashes += 1
                state.last_error = error
                state.last_crash_time = now
                if state.enabled and state.crashes >= self._config.crash_threshold:
                    state.enabled = False
                    state.disabled_reason = f"auto-disabled after {state.crashes} crashes"
                    logger.error(f"Plugin {filename} auto-disabled after {state.crashes} crashes")
                    self._rebuild_command_map()
                    if self.scheduler is not None:
                        await self.scheduler.stop_plugin_tasks(filename)
            self._dirty.add(filename)
            await self._flush_dirty()
            return state

    async def _flush_dirty(self) -> None:
        """Persist pending state rows; failures stay dirty for the next attempt."""
        for filename in sorted(self._dirty):
            state = self._states.get(filename)
            if state is None:
                self._dirty.discard(filename)
                continue
            try:
                await self._store.put(PLUGIN_STATE, filename, state.to_doc())
            except StoreError as e:
                logger.warning(f"Plugin state for {filename} not persisted, will retry: {e}")
                continue
            self._dirty.discard(filename)

    async def flush(self) -> None:
        async with self._lock:
            await self._flush_dirty()

    @property
    def pending_writes(self) -> int:
        return len(self._dirty)

    # ---- reporting ----

    def plugin_stats(self) -> list[PluginStats]:
        return [compute_plugin_stats(d, self._states[f]) for f, d in self._descriptors.items()]

    def stats(self) -> RegistryStats:
        return aggregate_plugin_stats(self.plugin_stats(), len(self._command_map))

    def health_check(self) -> HealthReport:
        tasks = self.scheduler.list_tasks() if self.scheduler is not None else []
        return assess_health(
            self.plugin_stats(),
            tasks,
            self._config.crash_threshold,
            self._config.task_failure_threshold,
        )

    def describe(self) -> list[dict[str, Any]]:
        out = []
        for filename, descriptor in self._descriptors.items():
            entry = descriptor.to_dict()
            entry["state"] = compute_plugin_stats(descriptor, self._states[filename]).to_dict()
            out.append(entry)
        return out
